"""
予算シート（見積の元になる表）の読み取り

手作りのスプレッドシートはヘッダ行の位置も列名もばらばらなので、
1. 列名らしさのスコアでヘッダ行を探す
2. 同義語と編集距離で列を対応付ける
3. 終了マーカーか連続空行で表の範囲を決める
4. 行を BudgetRow にする（労務/材料/外注の同時記入は列ごとに分ける）
の順で処理する。
"""

import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from rapidfuzz.distance import Levenshtein

from costbook.column_mapper import RowPredicate, make_metadata_predicate
from costbook.config_loader import load_config
from costbook.models import BudgetRow, ColumnMapping, ImportWarning
from costbook.normalizer import (
    LABOR,
    MANAGEMENT,
    MATERIALS,
    OTHER,
    SUBCONTRACTOR,
    normalize_category,
    parse_currency,
    parse_percent,
)
from costbook.row_splitter import split_components
from costbook.sheet_reader import Grid


# 辞書順に評価する。完全一致が見つかればそこで確定
HEADER_SYNONYMS: Dict[str, List[str]] = {
    "item": ["item", "items", "scope", "description", "desc", "line item", "task", "work item"],
    "subcontractor": ["subcontractor", "sub contractor", "vendor", "trade", "company", "contractor"],
    "labor": ["labor", "labour", "labor cost", "labor $", "labor amt", "labor amount", "labor total"],
    "material": ["material", "materials", "mat", "material cost", "material $", "mat cost"],
    "sub": ["sub", "subs", "sub cost", "sub $", "sub amount", "subcontract", "subcontract cost", "sub total"],
    "cost": ["cost", "amount", "budget", "est cost", "estimated cost"],
    "markup": ["markup", "mark up", "mu", "margin %", "markup %", "mark-up"],
    "total": ["total", "cost total", "total cost", "ext", "extended"],
    "total_with_markup": ["total with mark up", "total w markup", "total w/ mark up", "sell", "price",
                          "sell price", "total price"],
    "profit": ["profit", "margin $", "gross profit", "gp"],
    "category": ["category", "cost type", "type"],
    "quantity": ["qty", "quantity"],
    "unit": ["unit", "units", "uom"],
}

COST_COLUMNS = ("labor", "material", "sub", "cost")

_HEADER_WEIGHTS = {"item": 5, "labor": 3, "material": 3, "sub": 3, "cost": 3, "markup": 3, "total": 3,
                   "subcontractor": 2}

STOP_MARKERS = [
    "expenses", "expense tracking", "expense log", "rcg labor", "labor tracking", "timecard",
    "payroll", "subcontractor expenses", "sub expenses", "reconciliation", "total cost",
    "total contract", "total job proposal", "construction contract", "terms and conditions",
    "signature", "hereby", "contingency",
]

SUMMARY_INDICATORS = ("total", "subtotal", "summary", "grand total")

HEADER_THRESHOLD = 8
MAX_EMPTY_ROWS = 3

_MANAGEMENT_NAME = re.compile(r"supervision|management|project manager|\bpm\b")

_COMPONENT_CATEGORY = {"labor": LABOR, "material": MATERIALS, "sub": SUBCONTRACTOR}


def _normalize(text: str) -> str:
    s = (text or "").lower().strip()
    s = re.sub(r"[:\-_]", " ", s)
    return re.sub(r"\s+", " ", s).strip()


def _positive_currency_cells(row: List[str]) -> int:
    count = 0
    for c in row:
        v = parse_currency(c)
        if v is not None and v > 0:
            count += 1
    return count


def score_header_row(row: List[str]) -> Tuple[int, List[str]]:
    """ヘッダ行らしさ。品目列 5点、コスト系 3点、業者 2点、その他 1点、綴り違いは 2点"""
    score = 0
    matched: List[str] = []
    for cell in row:
        normalized = _normalize(cell)
        if not normalized:
            continue
        for canonical, synonyms in HEADER_SYNONYMS.items():
            for synonym in synonyms:
                if synonym in normalized:
                    score += _HEADER_WEIGHTS.get(canonical, 1)
                    matched.append(canonical)
                    break
                if len(synonym) >= 5 and Levenshtein.distance(normalized, synonym) <= 2:
                    score += 2
                    matched.append(f"{canonical}(fuzzy)")
                    break
    # 金額が多い行はデータ行
    if _positive_currency_cells(row) > 3:
        score -= 3
    return score, matched


def find_header_row(grid: Grid, max_rows: Optional[int] = None,
                    skip_predicate: Optional[RowPredicate] = None) -> Optional[int]:
    """しきい値以上で最もスコアの高い行。同点は上の行。見つからなければ None"""
    if max_rows is None:
        max_rows = int(load_config()["import"]["budget_header_scan_rows"])
    if skip_predicate is None:
        skip_predicate = make_metadata_predicate()

    best_index, best_score = None, HEADER_THRESHOLD - 1
    for i, row in enumerate(grid[:max_rows]):
        if skip_predicate(row):
            continue
        score, _ = score_header_row(row)
        if score > best_score:
            best_index, best_score = i, score
    return best_index


def _best_canonical(normalized: str) -> Optional[Tuple[str, float]]:
    best = None
    for canonical, synonyms in HEADER_SYNONYMS.items():
        for synonym in synonyms:
            if normalized == synonym:
                best = (canonical, 1.0)
                break
            if synonym in normalized or normalized in synonym:
                conf = min(len(normalized), len(synonym)) / max(len(normalized), len(synonym)) * 0.9
                if best is None or conf > best[1]:
                    best = (canonical, conf)
            if len(synonym) >= 5:
                dist = Levenshtein.distance(normalized, synonym)
                if dist <= 2:
                    conf = (1 - dist / len(synonym)) * 0.8
                    if best is None or conf > best[1]:
                        best = (canonical, conf)
        if best and best[1] == 1.0:
            break
    return best


def map_columns(grid: Grid, header_index: int) -> Tuple[ColumnMapping, List[ImportWarning]]:
    """ヘッダ行の各セルを正規列名に対応付ける。fields の値は列番号（文字列）"""
    header_row = grid[header_index]
    columns: Dict[str, int] = {}
    unmapped: List[str] = []
    warnings: List[ImportWarning] = []

    for idx, cell in enumerate(header_row):
        normalized = _normalize(cell)
        if not normalized:
            continue
        best = _best_canonical(normalized)
        if best and best[1] >= 0.6:
            # 同じ正規列名が複数あれば左の列を採用
            columns.setdefault(best[0], idx)
        else:
            unmapped.append(cell)

    missing = []
    confidence = 1.0
    if "item" not in columns:
        missing.append("item")
        confidence -= 0.4
        warnings.append(ImportWarning(code="COLUMN_MISSING", message="Item column not found",
                                      row_index=header_index))
    if not any(c in columns for c in COST_COLUMNS):
        missing.append("cost")
        confidence -= 0.4
        warnings.append(ImportWarning(code="COLUMN_MISSING", message="No cost columns (Labor/Material/Sub/Cost) found",
                                      row_index=header_index))
    if "markup" not in columns:
        confidence -= 0.1
    if len(unmapped) > 3:
        confidence -= 0.1
    confidence = round(max(0.0, confidence), 2)

    mapping = ColumnMapping(
        fields={k: str(v) for k, v in columns.items()},
        header_row_index=header_index,
        confidence=confidence,
        missing_required=missing,
        unmapped_headers=unmapped,
    )
    if mapping.ok and confidence < 0.7:
        warnings.append(ImportWarning(code="LOW_CONFIDENCE_MAPPING",
                                      message=f"Column mapping confidence is {confidence:.0%}",
                                      row_index=header_index, details={"unmapped": unmapped}))
    return mapping, warnings


def _cell(row: List[str], mapping: ColumnMapping, canonical: str) -> str:
    col = mapping.column_for(canonical)
    if col is None:
        return ""
    idx = int(col)
    return (row[idx] if idx < len(row) else "").strip()


@dataclass
class TableRegion:
    start_row: int
    end_row: int
    stop_reason: Optional[str] = None
    warnings: List[ImportWarning] = field(default_factory=list)


def detect_table_region(grid: Grid, header_index: int, mapping: ColumnMapping) -> TableRegion:
    """ヘッダ直下から、終了マーカー行の手前か連続空行の先頭までを表とみなす"""
    start = header_index + 1
    empty_run = 0
    for i in range(start, len(grid)):
        row = grid[i]
        text = " ".join(row).lower()
        for marker in STOP_MARKERS:
            if marker in text:
                reason = f'Stop marker found: "{marker}"'
                return TableRegion(start, i, reason, [ImportWarning(code="STOP_MARKER_FOUND", message=reason,
                                                                     row_index=i)])

        has_item = bool(_cell(row, mapping, "item"))
        has_cost = any((parse_currency(_cell(row, mapping, c)) or 0) != 0 for c in COST_COLUMNS)
        if not has_item and not has_cost:
            empty_run += 1
            if empty_run >= MAX_EMPTY_ROWS:
                end = i - (MAX_EMPTY_ROWS - 1)
                reason = f"Stopped after {MAX_EMPTY_ROWS} consecutive empty rows"
                return TableRegion(start, end, reason, [ImportWarning(code="STOP_BY_STRUCTURE", message=reason,
                                                                       row_index=i)])
        else:
            empty_run = 0
    return TableRegion(start, len(grid))


def assign_category(name: str, component: Optional[str], vendor_name: Optional[str],
                    markup_percent: Optional[float], internal_vendor: str = "RCG") -> str:
    """列の種類と品目名からカテゴリを決める。同じ入力には常に同じ結果。"""
    vendor = (vendor_name or "").strip().lower()
    is_internal = vendor in ("", internal_vendor.lower())
    if is_internal and markup_percent == 0:
        return MANAGEMENT
    if _MANAGEMENT_NAME.search((name or "").lower()):
        return MANAGEMENT
    return _COMPONENT_CATEGORY.get(component, SUBCONTRACTOR)


def _component_vendor(component: str, sub_cell: str, internal_vendor: str) -> Optional[str]:
    if component == "sub":
        return sub_cell or None
    if not sub_cell or sub_cell.upper() == internal_vendor.upper():
        return internal_vendor
    return sub_cell


def extract_rows(grid: Grid, mapping: ColumnMapping, region: TableRegion,
                 internal_vendor: Optional[str] = None) -> Tuple[List[BudgetRow], List[ImportWarning], int]:
    """表の範囲から BudgetRow を作る。戻り値は (rows, warnings, 列分割した行数)"""
    if internal_vendor is None:
        internal_vendor = load_config()["import"]["internal_vendor"]

    rows: List[BudgetRow] = []
    warnings: List[ImportWarning] = []
    split_count = 0
    has_components = any(mapping.column_for(c) is not None for c in ("labor", "material", "sub"))

    for i in range(region.start_row, region.end_row):
        row = grid[i]
        item = _cell(row, mapping, "item")
        if not item:
            continue
        if any(ind in item.lower() for ind in SUMMARY_INDICATORS):
            warnings.append(ImportWarning(code="SKIPPED_SUMMARY_ROW", message=f'Skipped summary row: "{item}"',
                                          row_index=i))
            continue

        sub_cell = _cell(row, mapping, "subcontractor")
        markup = parse_percent(_cell(row, mapping, "markup"))
        price_cell = _cell(row, mapping, "total_with_markup")
        base = BudgetRow(
            source_row=i + 1,
            description=item,
            category=OTHER,
            cost=None,
            price=price_cell or None,
            markup_percent=markup,
            quantity=_cell(row, mapping, "quantity") or 1,
            unit=_cell(row, mapping, "unit") or None,
        )

        components: List[Tuple[str, object]] = []
        if has_components:
            for comp in ("labor", "material", "sub"):
                raw = _cell(row, mapping, comp)
                value = parse_currency(raw)
                if value is None and raw:
                    # 数値でない記入は後段で INVALID_AMOUNT にする
                    components.append((comp, raw))
                elif value is not None and abs(value) > 0.005:
                    components.append((comp, abs(value)))

        if components:
            expanded = split_components(base, [
                (assign_category(item, comp, _component_vendor(comp, sub_cell, internal_vendor), markup,
                                 internal_vendor), amount)
                for comp, amount in components
            ])
            for child, (comp, _) in zip(expanded, components):
                child.vendor_name = _component_vendor(comp, sub_cell, internal_vendor)
                child.component = comp
            if len(expanded) > 1:
                split_count += 1
            rows.extend(expanded)
            continue

        cost_cell = _cell(row, mapping, "cost")
        # 空欄や文字の金額はそのまま渡し、変換時に INVALID_AMOUNT として除外する
        if mapping.column_for("cost") is None or parse_currency(cost_cell) == 0:
            warnings.append(ImportWarning(code="SKIPPED_EMPTY_ROW", message=f'Skipped row with no costs: "{item}"',
                                          row_index=i))
            continue

        base.cost = cost_cell or None
        base.vendor_name = sub_cell or None
        category_cell = _cell(row, mapping, "category")
        base.category = normalize_category(category_cell or item, default=OTHER)
        rows.append(base)

    return rows, warnings, split_count


@dataclass
class BudgetExtraction:
    success: bool
    rows: List[BudgetRow]
    warnings: List[ImportWarning]
    mapping: Optional[ColumnMapping] = None
    metadata: Dict = field(default_factory=dict)


def extract_budget_sheet(grid: Grid, skip_predicate: Optional[RowPredicate] = None) -> BudgetExtraction:
    """グリッドからヘッダ検出・列対応付け・範囲検出・行抽出までを行う"""
    header_index = find_header_row(grid, skip_predicate=skip_predicate)
    if header_index is None:
        return BudgetExtraction(
            success=False,
            rows=[],
            warnings=[ImportWarning(code="HEADER_NOT_FOUND", message="Could not detect header row")],
            metadata={"header_row_index": -1, "stop_reason": "Header not found"},
        )

    mapping, warnings = map_columns(grid, header_index)
    if "item" in mapping.missing_required:
        return BudgetExtraction(success=False, rows=[], warnings=warnings, mapping=mapping,
                                metadata={"header_row_index": header_index,
                                          "stop_reason": "Required columns missing"})

    region = detect_table_region(grid, header_index, mapping)
    warnings.extend(region.warnings)
    rows, row_warnings, split_count = extract_rows(grid, mapping, region)
    warnings.extend(row_warnings)

    if not rows:
        warnings.append(ImportWarning(code="NO_DATA_ROWS", message="No budget rows found after header",
                                      row_index=header_index))

    return BudgetExtraction(
        success=bool(rows),
        rows=rows,
        warnings=warnings,
        mapping=mapping,
        metadata={
            "header_row_index": header_index,
            "stop_row_index": region.end_row,
            "stop_reason": region.stop_reason,
            "rows_scanned": region.end_row - region.start_row,
            "rows_extracted": len(rows),
            "compound_rows_split": split_count,
            "mapping_confidence": mapping.confidence,
        },
    )
