"""
複合行の分割

1行に複数のコスト（「Drywall materials + labor」や 労務/材料/外注 列の同時記入）が
入っている行を、合計が元行と一致する子行に分ける。
"""

import re
from dataclasses import replace
from typing import Iterable, List, Optional, Tuple

from costbook.config_loader import load_config
from costbook.models import BudgetRow
from costbook.normalizer import (
    CATEGORY_KEYWORDS,
    LABOR,
    MATERIALS,
    SUBCONTRACTOR,
    parse_currency,
    round2,
)


# 摘要末尾の ", $1,200" を金額として取り出す
_TRAILING_AMOUNT = re.compile(r"[,\s]+\$\s*([\d,]+(?:\.\d+)?)\s*$")

COMPONENT_LABELS = {
    LABOR: "Labor",
    MATERIALS: "Materials",
    SUBCONTRACTOR: "Subcontractor",
}


def _category_words() -> List[str]:
    words = []
    for _, keywords in CATEGORY_KEYWORDS:
        words.extend(keywords)
    return sorted(set(words), key=len, reverse=True)


def _mentions_category(text: str) -> bool:
    s = text.lower()
    return any(re.search(rf"\b{re.escape(w)}", s) for w in _category_words())


def _is_bare_category(text: str) -> bool:
    s = text.strip().lower()
    return bool(s) and " " not in s and _mentions_category(s)


def _subject_of(text: str) -> str:
    """'Drywall materials' → 'Drywall'（コスト種別語を取り除いた主語）"""
    s = text
    for w in _category_words():
        s = re.sub(rf"\b{re.escape(w)}\w*", "", s, flags=re.IGNORECASE)
    return re.sub(r"\s+", " ", s).strip()


def strip_embedded_amount(description: str) -> Tuple[str, Optional[float]]:
    """摘要に埋め込まれた金額を切り出す。無ければ (description, None)"""
    if not description:
        return description, None
    m = _TRAILING_AMOUNT.search(description)
    if not m:
        return description, None
    return description[:m.start()].strip(), parse_currency(m.group(1))


def split_description(description: str, strong: Iterable[str], weak: Iterable[str]) -> List[str]:
    """摘要を品目フレーズに分ける。分割できなければ要素1つのリストを返す。"""
    text = (description or "").strip()
    if not text:
        return [text]

    for pattern in strong:
        parts = [p.strip() for p in re.split(pattern, text, flags=re.IGNORECASE)]
        if len(parts) > 1 and all(parts):
            return _attach_subject(parts) or [text]

    # and / & は "Remove and replace" のような通常の文にも出るので、全パートがコスト種別語を含む時だけ
    for pattern in weak:
        parts = [p.strip() for p in re.split(pattern, text, flags=re.IGNORECASE)]
        if len(parts) > 1 and all(parts) and all(_mentions_category(p) for p in parts):
            return _attach_subject(parts) or [text]

    return [text]


def _attach_subject(parts: List[str]) -> List[str]:
    subject = _subject_of(parts[0])
    out = [parts[0]]
    for p in parts[1:]:
        if subject and _is_bare_category(p):
            out.append(f"{subject} {p}")
        else:
            out.append(p)
    # 重複フレーズは区別できないので分割しない
    if len({p.lower() for p in out}) != len(out):
        return []
    return out


def _shares(total: float, count: int) -> List[float]:
    """均等割り。端数は最後の子に寄せて合計を一致させる"""
    each = round2(total / count)
    shares = [each] * (count - 1)
    shares.append(round2(total - each * (count - 1)))
    return shares


def split_compound_rows(rows: List[BudgetRow], epsilon: Optional[float] = None) -> Tuple[List[BudgetRow], int]:
    """複合行を子行に展開する。戻り値は (rows, 分割した元行の数)

    - 分割済みの行（was_split=True）はそのまま通すので2回かけても結果は変わらない
    - 子行は元行のカテゴリ・業者を引き継ぎ、cost/price の合計は元行と一致する
    - 金額が数値でない行は分割しない（後段の変換で警告になる）
    """
    cfg = load_config()["compound"]
    if epsilon is None:
        epsilon = float(cfg.get("epsilon", 0.01))
    strong = cfg.get("strong_separators", [])
    weak = cfg.get("weak_separators", [])

    out: List[BudgetRow] = []
    split_count = 0
    for row in rows:
        if row.was_split:
            out.append(row)
            continue

        description, embedded = strip_embedded_amount(row.description)
        cost_value = row.cost
        if embedded is not None and parse_currency(cost_value) is None:
            cost_value = embedded
        if description != row.description or cost_value is not row.cost:
            row = replace(row, description=description, cost=cost_value)

        parts = split_description(row.description, strong, weak)
        cost = parse_currency(row.cost)
        if len(parts) < 2 or cost is None:
            out.append(row)
            continue

        cost_shares = _shares(cost, len(parts))
        if cost > 0 and min(cost_shares) < epsilon:
            out.append(row)
            continue

        price = parse_currency(row.price)
        price_shares = _shares(price, len(parts)) if price is not None else [None] * len(parts)

        children = [
            replace(
                row,
                description=part,
                cost=c,
                price=p,
                was_split=True,
                split_from=row.description,
            )
            for part, c, p in zip(parts, cost_shares, price_shares)
        ]
        if abs(sum(c.cost for c in children) - cost) > epsilon:
            out.append(row)
            continue

        out.extend(children)
        split_count += 1

    return out, split_count


def split_components(base: BudgetRow, components: List[Tuple[str, float]]) -> List[BudgetRow]:
    """労務/材料/外注の各列に金額がある行を列ごとの子行にする。

    components は (カテゴリ, 金額) のリスト。1件だけなら元行の名前のまま返す。
    price があれば各子のコスト比で按分する。
    """
    if len(components) <= 1:
        if not components:
            return []
        category, amount = components[0]
        return [replace(base, category=category, cost=amount, component=category)]

    numeric = all(isinstance(a, (int, float)) for _, a in components)
    total_cost = sum(a for _, a in components) if numeric else 0
    price = parse_currency(base.price) if numeric else None
    children = []
    allocated_price = 0.0
    for i, (category, amount) in enumerate(components):
        child_price = None
        if price is not None and total_cost:
            if i == len(components) - 1:
                child_price = round2(price - allocated_price)
            else:
                child_price = round2(price * amount / total_cost)
                allocated_price += child_price

        # 材料子行は "<品目> - Materials" の名前で区別する
        description = base.description
        if category == MATERIALS:
            description = f"{base.description} - {COMPONENT_LABELS[MATERIALS]}"
        children.append(replace(
            base,
            description=description,
            category=category,
            cost=amount,
            price=child_price,
            component=category,
            was_split=True,
            split_from=base.description,
        ))
    return children
