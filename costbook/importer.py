"""
取込の一連の流れ

予算シート: 読み込み → ヘッダ検出/列対応付け → 複合行の分割 → 見積明細への変換 → 合計チェック
取引CSV:   読み込み → メタ行除去/列対応付け → 経費 payload 化 → （必要なら）登録
どちらも取込1回ごとに state_store にバッチとして記録する。
"""

import hashlib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Union

from costbook.budget_sheet import extract_budget_sheet
from costbook.column_mapper import RowPredicate, detect_columns
from costbook.config_loader import load_config
from costbook.errors import RemoteError
from costbook.expense_import import map_expense_rows, validate_expense_rows
from costbook.line_items import convert_rows, validate_totals
from costbook.models import ColumnMapping, ImportWarning, NormalizedLineItem
from costbook.normalizer import round2
from costbook.row_splitter import split_compound_rows
from costbook.sheet_reader import Grid, read_grid
from costbook.state_store import find_batch_by_sha1, init_db, record_import_batch


@dataclass
class BudgetImportResult:
    success: bool
    items: List[NormalizedLineItem] = field(default_factory=list)
    warnings: List[ImportWarning] = field(default_factory=list)
    metadata: Dict = field(default_factory=dict)

    @property
    def total_cost(self) -> float:
        return round2(sum(i.total_cost for i in self.items))

    @property
    def total_price(self) -> float:
        return round2(sum(i.total for i in self.items if i.total is not None))

    @property
    def labor_cushion(self) -> float:
        return round2(sum(i.labor_cushion for i in self.items))


@dataclass
class ExpenseImportResult:
    success: bool
    expenses: List[Dict] = field(default_factory=list)
    warnings: List[ImportWarning] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    mapping: Optional[ColumnMapping] = None
    inserted: int = 0


def _sha1_of_file(path: Union[str, Path]) -> str:
    h = hashlib.sha1()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(65536), b""):
            h.update(chunk)
    return h.hexdigest()


def import_budget_grid(grid: Grid, default_markup: Optional[float] = None, billing_rate: Optional[float] = None,
                       actual_rate: Optional[float] = None,
                       skip_predicate: Optional[RowPredicate] = None) -> BudgetImportResult:
    """読み込み済みグリッドから見積明細を作る（I/O なし）"""
    extraction = extract_budget_sheet(grid, skip_predicate=skip_predicate)
    warnings = list(extraction.warnings)
    if not extraction.rows:
        return BudgetImportResult(success=False, warnings=warnings, metadata=extraction.metadata)

    rows, compound_count = split_compound_rows(extraction.rows)
    items, convert_warnings = convert_rows(rows, default_markup, billing_rate, actual_rate)
    warnings.extend(convert_warnings)
    warnings.extend(validate_totals(items))

    metadata = dict(extraction.metadata)
    metadata["compound_rows_split"] = metadata.get("compound_rows_split", 0) + compound_count
    metadata["items_emitted"] = len(items)
    result = BudgetImportResult(success=bool(items), items=items, warnings=warnings, metadata=metadata)
    metadata["computed_totals"] = {"total_cost": result.total_cost, "total_price": result.total_price}
    return result


def import_budget_sheet(path: Union[str, Path], default_markup: Optional[float] = None,
                        billing_rate: Optional[float] = None, actual_rate: Optional[float] = None,
                        skip_predicate: Optional[RowPredicate] = None, record: bool = True) -> BudgetImportResult:
    """予算シートファイルを見積明細に変換する。ファイルが読めなければ ImportFileError"""
    grid = read_grid(path)
    print(f"📄 {Path(path).name}: {len(grid)}行を読み込みました")
    result = import_budget_grid(grid, default_markup, billing_rate, actual_rate, skip_predicate)

    if result.success:
        print(f"✅ 見積明細 {len(result.items)}件 (原価 ${result.total_cost:,.2f} / 売価 ${result.total_price:,.2f})")
    else:
        print(f"❌ 予算シートから明細を取り出せませんでした: {Path(path).name}")
    for w in result.warnings:
        print(f"  ⚠️ [{w.code}] {w.message}")

    if record:
        _record_batch("budget", path, len(grid), len(result.items), result.warnings)
    return result


def _record_batch(kind: str, path, rows_read: int, rows_imported: int, warnings: List[ImportWarning]) -> int:
    init_db()
    sha1 = _sha1_of_file(path)
    previous = find_batch_by_sha1(sha1)
    if previous:
        print(f"⚠️ 同じ内容のファイルを {previous['created_at']} に取り込み済みです（バッチ {previous['id']}）")
    return record_import_batch(kind, Path(path).name, rows_read, rows_imported,
                               [w.to_dict() for w in warnings], file_sha1=sha1)


def save_estimate_items(client, estimate_id: str, items: List[NormalizedLineItem]) -> List[Dict]:
    """見積明細を estimate_line_items に登録する"""
    payloads = [item.to_estimate_payload(estimate_id, sort_order=i) for i, item in enumerate(items)]
    return client.insert("estimate_line_items", payloads)


def load_reference_data(client) -> Dict[str, List[Dict]]:
    """案件・案件別名・支払先（取引CSVの名寄せ用）"""
    return {
        "projects": client.select("projects", columns="id, project_number, project_name"),
        "aliases": client.select("project_aliases", filters={"is_active": True}),
        "payees": client.select("payees", columns="id, payee_name, full_name"),
    }


def import_expense_grid(grid: Grid, projects: Optional[List[Dict]] = None, aliases: Optional[List[Dict]] = None,
                        payees: Optional[List[Dict]] = None, default_project_id: Optional[str] = None,
                        skip_predicate: Optional[RowPredicate] = None) -> ExpenseImportResult:
    detection = detect_columns(grid, skip_predicate=skip_predicate)
    warnings = list(detection.warnings)
    if detection.mapping is None:
        return ExpenseImportResult(success=False, warnings=warnings, errors=["Could not detect header row"])

    errors = validate_expense_rows(detection.records, detection.mapping, default_project_id)
    expenses, row_warnings = map_expense_rows(detection.records, detection.mapping, projects, aliases, payees,
                                              default_project_id)
    warnings.extend(row_warnings)
    return ExpenseImportResult(
        success=detection.success and bool(expenses),
        expenses=expenses,
        warnings=warnings,
        errors=errors,
        mapping=detection.mapping,
    )


def import_expense_file(path: Union[str, Path], client=None, default_project_id: Optional[str] = None,
                        skip_predicate: Optional[RowPredicate] = None, dry_run: bool = False,
                        record: bool = True) -> ExpenseImportResult:
    """取引CSVを経費として取り込む。client があれば案件・支払先を名寄せして登録する"""
    grid = read_grid(path)
    reference = {"projects": [], "aliases": [], "payees": []}
    if client is not None:
        reference = load_reference_data(client)
        if default_project_id is None:
            unassigned = load_config()["splits"]["unassigned_project_number"]
            row = client.select_one("projects", {"project_number": unassigned}, columns="id")
            default_project_id = row["id"] if row else None

    result = import_expense_grid(grid, reference["projects"], reference["aliases"], reference["payees"],
                                 default_project_id, skip_predicate)
    for e in result.errors:
        print(f"  ⚠️ {e}")

    if result.success and client is not None and not dry_run:
        try:
            inserted = client.insert("expenses", result.expenses)
            result.inserted = len(inserted)
            print(f"✅ 経費 {result.inserted}件を登録しました")
        except RemoteError as e:
            print(f"❌ 経費の登録に失敗しました: {e}")
            result.errors.append(str(e))
            result.success = False
    elif result.success:
        print(f"🔍 経費 {len(result.expenses)}件を変換しました（登録なし）")

    if record:
        _record_batch("expenses", path, len(grid), result.inserted or len(result.expenses), result.warnings)
    return result
