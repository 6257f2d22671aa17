"""
業者名・プロジェクト名のあいまい照合

会計ソフトから来る業者名（"ABC Plumbing, LLC" など）を登録済みの支払先に、
案件列（"24-001 Kitchen" など）を案件に寄せる。
"""

import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from rapidfuzz.distance import JaroWinkler, Levenshtein

from costbook.config_loader import load_config


_SUFFIXES = re.compile(r"\b(inc|llc|corp|company|co|construction|const|ltd|limited)\b")
_PROJECT_NUMBER = re.compile(r"^(\d{2,4}-\d{2,4})")


def normalize_business_name(text: str) -> str:
    """小文字化・記号除去・法人格などの接尾語除去"""
    if not text:
        return ""
    s = text.lower()
    s = re.sub(r"[^\w\s]", "", s)
    s = _SUFFIXES.sub("", s)
    s = re.sub(r"\s+", " ", s)
    return s.strip()


def jaro_winkler(a: str, b: str) -> float:
    if not a or not b:
        return 0.0
    return JaroWinkler.normalized_similarity(a, b)


def levenshtein_ratio(a: str, b: str) -> float:
    """1 - 編集距離 / 長い方の長さ"""
    max_len = max(len(a or ""), len(b or ""))
    if max_len == 0:
        return 0.0
    return (max_len - Levenshtein.distance(a, b)) / max_len


def _tokens(text: str) -> set:
    return {t for t in normalize_business_name(text).split(" ") if len(t) > 1}


def token_similarity(a: str, b: str) -> float:
    """単語集合の Jaccard 係数"""
    t1, t2 = _tokens(a), _tokens(b)
    union = t1 | t2
    if not union:
        return 0.0
    return len(t1 & t2) / len(union)


def name_confidence(name: str, candidate: str) -> float:
    """0-100。正規化後に一致すれば 100"""
    if not name or not candidate:
        return 0.0
    n1, n2 = normalize_business_name(name), normalize_business_name(candidate)
    if n1 and n1 == n2:
        return 100.0
    jw = jaro_winkler(n1, n2) * 100
    lev = levenshtein_ratio(name, candidate) * 100
    tok = token_similarity(name, candidate) * 100
    # 単語の一致が多い名前は別の重み付けでも評価して高い方を採る
    confidence = max(jw * 0.4 + lev * 0.3 + tok * 0.3, tok * 0.6 + jw * 0.4)
    return round(confidence, 2)


@dataclass
class PayeeMatch:
    payee: Dict
    confidence: float
    match_type: str  # exact|fuzzy


@dataclass
class PayeeMatchResult:
    name: str
    matches: List[PayeeMatch] = field(default_factory=list)
    best_match: Optional[PayeeMatch] = None


def fuzzy_match_payee(name: str, payees: List[Dict], auto_threshold: Optional[float] = None,
                      review_threshold: Optional[float] = None) -> PayeeMatchResult:
    """支払先候補を信頼度順に返す。最上位が自動採用しきい値以上なら best_match に入る。"""
    cfg = load_config()["matching"]
    if auto_threshold is None:
        auto_threshold = float(cfg["auto_match_threshold"])
    if review_threshold is None:
        review_threshold = float(cfg["review_threshold"])

    result = PayeeMatchResult(name=name)
    if not name:
        return result

    lowered = name.strip().lower()
    for payee in payees:
        names = [n for n in (payee.get("payee_name"), payee.get("full_name")) if n]
        if any(n.strip().lower() == lowered for n in names):
            result.matches.append(PayeeMatch(payee=payee, confidence=100.0, match_type="exact"))
            continue
        confidence = max((name_confidence(name, n) for n in names), default=0.0)
        if confidence >= review_threshold:
            result.matches.append(PayeeMatch(payee=payee, confidence=confidence, match_type="fuzzy"))

    result.matches.sort(key=lambda m: m.confidence, reverse=True)
    if result.matches and result.matches[0].confidence >= auto_threshold:
        result.best_match = result.matches[0]
    return result


@dataclass
class ProjectMatch:
    project_id: str
    confidence: int
    match_type: str


def fuzzy_match_project(text: str, projects: List[Dict],
                        aliases: Optional[List[Dict]] = None) -> Optional[ProjectMatch]:
    """案件列の値を案件に解決する。

    優先順: 案件番号完全一致 → 案件名完全一致 → 別名(exact/starts_with/contains)
    → 案件番号の Jaro-Winkler ≥85 → 先頭の "24-001" 形式の番号抽出
    """
    if not text or not text.strip():
        return None
    normalized = text.strip().lower()

    for p in projects:
        if (p.get("project_number") or "").strip().lower() == normalized:
            return ProjectMatch(p["id"], 100, "exact_number")
    for p in projects:
        if (p.get("project_name") or "").strip().lower() == normalized:
            return ProjectMatch(p["id"], 100, "exact_name")

    active = [a for a in (aliases or []) if a.get("is_active", True)]
    alnum = re.sub(r"[^a-z0-9]", "", normalized)
    for match_type, confidence in (("exact", 95), ("starts_with", 90), ("contains", 85)):
        for a in active:
            if a.get("match_type") != match_type:
                continue
            alias = (a.get("alias") or "").strip().lower()
            if not alias:
                continue
            if match_type == "exact" and normalized == alias:
                return ProjectMatch(a["project_id"], confidence, "alias_exact")
            if match_type == "starts_with" and alnum.startswith(alias):
                return ProjectMatch(a["project_id"], confidence, "alias_starts_with")
            if match_type == "contains" and alias in alnum:
                return ProjectMatch(a["project_id"], confidence, "alias_contains")

    best = None
    for p in projects:
        sim = jaro_winkler(normalized, (p.get("project_number") or "").strip().lower()) * 100
        if sim >= 85 and (best is None or sim > best[1]):
            best = (p["id"], sim)
    if best:
        return ProjectMatch(best[0], int(round(best[1])), "fuzzy")

    m = _PROJECT_NUMBER.match(text.strip())
    if m:
        extracted = m.group(1).lower()
        for p in projects:
            if (p.get("project_number") or "").strip().lower() == extracted:
                return ProjectMatch(p["id"], 80, "regex")
    return None
