import re
from typing import Dict, Iterable, List, Optional, Tuple

from costbook.config_loader import load_config
from costbook.models import FinancialRecord, MatchCandidate, MatchScore
from costbook.normalizer import categories_compatible
from costbook.payee_matcher import fuzzy_match_payee


PAYEE_TYPES = ("quote", "change_order")
# 同点時のフォールバック順
TYPE_PRIORITY = ("quote", "change_order", "estimate")


def _matching_cfg(cfg: Optional[Dict]) -> Dict:
    return cfg if cfg is not None else load_config()["matching"]


def eligible_candidates(record: FinancialRecord, candidates: Iterable[MatchCandidate]) -> List[MatchCandidate]:
    """同じ案件で、経費カテゴリと対応する明細カテゴリを持つ候補だけ"""
    return [
        c for c in candidates
        if c.project_id == record.project_id and categories_compatible(record.category, c.category)
    ]


def _keywords(text: str, stopwords: Iterable[str]) -> set:
    stop = set(stopwords)
    return {w for w in re.split(r"\s+", (text or "").lower()) if len(w) > 3 and w not in stop}


def payee_points(confidence: float, thresholds: Dict) -> int:
    if confidence >= thresholds["high"]:
        return 30
    if confidence >= thresholds["medium"]:
        return 20
    if confidence >= thresholds["low"]:
        return 10
    return 0


def percent_diff(amount: float, total: float) -> Optional[float]:
    if not total:
        return None
    return abs((amount - total) / total) * 100


def amount_points(diff: Optional[float], thresholds: Dict) -> int:
    if diff is None:
        return 0
    if diff <= thresholds["close"]:
        return 15
    if diff <= thresholds["near"]:
        return 10
    if diff <= thresholds["loose"]:
        return 5
    return 0


def _payee_confidence(payee_name: Optional[str], candidates: List[MatchCandidate]) -> Tuple[float, Optional[str]]:
    """候補の業者名との最大類似度 (0-100) と、その候補ID"""
    with_payee = [c for c in candidates if c.type in PAYEE_TYPES and c.payee_name]
    if not payee_name or not with_payee:
        return 0.0, None
    payees = [{"id": c.id, "payee_name": c.payee_name} for c in with_payee]
    result = fuzzy_match_payee(payee_name, payees)
    if not result.matches:
        return 0.0, None
    top = result.matches[0]
    return top.confidence, top.payee["id"]


def score_candidate(record: FinancialRecord, candidate: MatchCandidate, cfg: Optional[Dict] = None) -> MatchScore:
    """1候補に対する 0-100 のスコア。案件かカテゴリが合わない候補は 0"""
    cfg = _matching_cfg(cfg)
    reasons: List[str] = []
    if not eligible_candidates(record, [candidate]):
        return MatchScore(candidate.id, 0, ("ineligible",))

    score = 50
    reasons.append("project+category")

    confidence, _ = _payee_confidence(record.payee_name, [candidate])
    p = payee_points(confidence, cfg["payee_thresholds"])
    if p:
        score += p
        reasons.append(f"payee~{confidence:.0f}")

    diff = percent_diff(record.amount, candidate.total)
    a = amount_points(diff, cfg["amount_thresholds"])
    if a:
        score += a
        reasons.append(f"amount_diff={diff:.1f}%")

    common = _keywords(record.description, cfg["stopwords"]) & _keywords(candidate.description, ())
    if common:
        score += 5
        reasons.append("keyword=" + ",".join(sorted(common)))

    return MatchScore(candidate.id, min(score, 100), tuple(reasons))


def rank_candidates(record: FinancialRecord, candidates: List[MatchCandidate],
                    cfg: Optional[Dict] = None) -> List[MatchScore]:
    scores = [score_candidate(record, c, cfg) for c in candidates]
    scores = [s for s in scores if s.score > 0]
    scores.sort(key=lambda s: s.score, reverse=True)
    return scores


def calculate_match_confidence(record: FinancialRecord, candidates: List[MatchCandidate],
                               cfg: Optional[Dict] = None) -> int:
    """候補群全体に対する確信度

    カテゴリ一致 +50、業者名の最大類似度 +10〜30、最も近い金額 +5〜15、
    摘要のキーワード一致 +5。上限 100。
    """
    cfg = _matching_cfg(cfg)
    eligible = eligible_candidates(record, candidates)
    if not eligible:
        return 0

    confidence = 50
    payee_conf, _ = _payee_confidence(record.payee_name, eligible)
    confidence += payee_points(payee_conf, cfg["payee_thresholds"])

    diffs = [d for d in (percent_diff(record.amount, c.total) for c in eligible) if d is not None]
    if diffs:
        confidence += amount_points(min(diffs), cfg["amount_thresholds"])

    words = _keywords(record.description, cfg["stopwords"])
    if words and any(words & _keywords(c.description, ()) for c in eligible):
        confidence += 5

    return min(confidence, 100)


def suggest_line_item_allocation(record: FinancialRecord, candidates: List[MatchCandidate],
                                 cfg: Optional[Dict] = None) -> Tuple[Optional[MatchCandidate], str]:
    """配賦先の候補を1つ選ぶ。戻り値は (候補, 選んだ理由)

    優先順:
      1. 見積依頼/変更指示の業者名が自動採用しきい値以上で一致
      2. 金額差が 10% 以内で最も近いもの
      3. 同カテゴリで quote → change_order → estimate の順
    書き込みはしない。確定は呼び出し側で人が行う。
    """
    cfg = _matching_cfg(cfg)
    eligible = eligible_candidates(record, candidates)
    if not eligible:
        return None, "no_candidates"

    payee_conf, payee_id = _payee_confidence(record.payee_name, eligible)
    if payee_id and payee_conf >= cfg["auto_match_threshold"]:
        return next(c for c in eligible if c.id == payee_id), "payee"

    best, best_diff = None, None
    for c in eligible:
        d = percent_diff(record.amount, c.total)
        if d is not None and (best_diff is None or d < best_diff):
            best, best_diff = c, d
    if best is not None and best_diff <= cfg["amount_thresholds"]["near"]:
        return best, "amount"

    for t in TYPE_PRIORITY:
        for c in eligible:
            if c.type == t:
                return c, f"fallback:{t}"
    return eligible[0], "fallback"


def suggest(record: FinancialRecord, candidates: List[MatchCandidate],
            cfg: Optional[Dict] = None) -> Optional[MatchScore]:
    """推奨候補と全体の確信度をまとめて返す。候補が無ければ None"""
    chosen, rule = suggest_line_item_allocation(record, candidates, cfg)
    if chosen is None:
        return None
    confidence = calculate_match_confidence(record, candidates, cfg)
    return MatchScore(chosen.id, confidence, (rule,))


def is_allocatable(record: FinancialRecord, excluded_project_ids: Iterable[str] = ()) -> bool:
    """分割済みやシステム案件に付いた経費は明細に紐付けない"""
    if record.is_split or not record.project_id:
        return False
    return record.project_id not in set(excluded_project_ids)
