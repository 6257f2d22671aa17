"""
取引CSVのヘッダ行検出と列マッピング

会計ソフトの出力はヘッダの上に会社名やレポート名などのメタ行が付くことがある。
先頭数行からメタ行を読み飛ばしてヘッダ行を探し、列を意味フィールドに対応付ける。
"""

from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from costbook.config_loader import load_config
from costbook.models import ColumnMapping, ImportWarning
from costbook.sheet_reader import Grid, clean_headers, rows_to_records


RowPredicate = Callable[[List[str]], bool]

REQUIRED_FIELDS = ("expense_date", "description", "amount")

# 優先順に評価する。先に割り当てられた列は後のフィールドに使わない
FIELD_KEYWORDS: List[Tuple[str, Tuple[str, ...]]] = [
    ("expense_date", ("date", "txn date", "posted")),
    ("amount", ("amount", "total", "debit", "cost")),
    ("transaction_type", ("transaction type", "txn type", "type")),
    ("project_name", ("project", "wo#", "work order", "job", "customer")),
    ("invoice_number", ("invoice", "num", "ref", "no.")),
    ("category", ("category", "account", "class")),
    ("payee_name", ("payee", "vendor", "supplier", "name")),
    ("description", ("description", "memo", "desc", "details")),
]


def make_metadata_predicate(keywords: Optional[Iterable[str]] = None) -> RowPredicate:
    """メタ行判定関数を作る。全セル空、またはキーワードを含むセルがある行をメタ行とする。"""
    if keywords is None:
        keywords = load_config()["import"]["metadata_keywords"]
    lowered = [k.lower() for k in keywords if k]

    def is_metadata(row: List[str]) -> bool:
        cells = [(c or "").strip().lower() for c in row]
        non_empty = [c for c in cells if c]
        if not non_empty:
            return True
        return any(k in c for c in non_empty for k in lowered)

    return is_metadata


def map_headers(headers: List[str]) -> Tuple[Dict[str, str], List[str]]:
    """列名リストを意味フィールドに対応付ける。戻り値は (mapping, unmapped)"""
    available = clean_headers(headers)
    lowered = {h: h.lower() for h in available}
    used = set()
    mapping: Dict[str, str] = {}

    for semantic, keywords in FIELD_KEYWORDS:
        chosen = None
        # 完全一致を部分一致より優先
        for h in available:
            if h not in used and lowered[h] in keywords:
                chosen = h
                break
        if chosen is None:
            for h in available:
                if h not in used and any(k in lowered[h] for k in keywords):
                    chosen = h
                    break
        if chosen is not None:
            mapping[semantic] = chosen
            used.add(chosen)

    unmapped = [h for h in available if h not in used]
    return mapping, unmapped


def _header_score(row: List[str]) -> int:
    score = 0
    for cell in row:
        c = (cell or "").strip().lower()
        if not c:
            continue
        if any(any(k in c for k in keywords) for _, keywords in FIELD_KEYWORDS):
            score += 1
    return score


def find_header_row(grid: Grid, scan_rows: int = 5,
                    skip_predicate: Optional[RowPredicate] = None) -> Tuple[Optional[int], List[int]]:
    """ヘッダ行のインデックスと、読み飛ばしたメタ行のインデックスを返す"""
    if skip_predicate is None:
        skip_predicate = make_metadata_predicate()

    skipped: List[int] = []
    best_index, best_score = None, 0
    for i, row in enumerate(grid[:scan_rows]):
        if skip_predicate(row):
            skipped.append(i)
            continue
        score = _header_score(row)
        if score > best_score:
            best_index, best_score = i, score
    return best_index, skipped


@dataclass
class MappingResult:
    mapping: Optional[ColumnMapping]
    records: List[Dict[str, str]] = field(default_factory=list)
    warnings: List[ImportWarning] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.mapping is not None and self.mapping.ok and bool(self.records)


def detect_columns(grid: Grid, scan_rows: Optional[int] = None,
                   skip_predicate: Optional[RowPredicate] = None) -> MappingResult:
    """ヘッダ検出から列マッピングまで。失敗は例外ではなく MappingResult で返す。"""
    if scan_rows is None:
        scan_rows = int(load_config()["import"]["header_scan_rows"])

    warnings: List[ImportWarning] = []
    header_index, skipped = find_header_row(grid, scan_rows, skip_predicate)

    if skipped:
        warnings.append(ImportWarning(
            code="METADATA_ROWS_SKIPPED",
            message=f"Skipped {len(skipped)} report metadata row(s)",
            details={"rows": skipped},
        ))

    if header_index is None:
        warnings.append(ImportWarning(code="HEADER_NOT_FOUND", message="Could not detect header row"))
        return MappingResult(mapping=None, warnings=warnings)

    fields, unmapped = map_headers(grid[header_index])
    missing = [f for f in REQUIRED_FIELDS if f not in fields]
    confidence = (len(REQUIRED_FIELDS) - len(missing)) / len(REQUIRED_FIELDS)

    mapping = ColumnMapping(
        fields=fields,
        header_row_index=header_index,
        confidence=round(confidence, 4),
        missing_required=missing,
        unmapped_headers=unmapped,
    )

    for f in missing:
        warnings.append(ImportWarning(code="COLUMN_MISSING", message=f"Required column '{f}' not found",
                                      row_index=header_index))

    records = [r for r in rows_to_records(grid, header_index) if not _looks_like_footer(r)]
    if not records:
        warnings.append(ImportWarning(code="NO_DATA_ROWS", message="No data rows found after header",
                                      row_index=header_index))

    return MappingResult(mapping=mapping, records=records, warnings=warnings)


def _looks_like_footer(record: Dict[str, str]) -> bool:
    # 会計ソフト出力の末尾にある "TOTAL" 行やタイムスタンプ行
    values = [v for v in record.values() if v]
    if not values:
        return True
    first = values[0].strip().lower()
    return len(values) <= 2 and (first.startswith("total") or "gmt" in first)
