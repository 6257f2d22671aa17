"""
会計ソフトの取引CSV → 経費レコード

列マッピング済みの行を expenses テーブルへの insert 用 dict にする。
案件列は案件番号/案件名/別名/あいまい一致で案件IDに、業者名は支払先IDに寄せる。
"""

from datetime import date, datetime
from typing import Dict, List, Optional, Tuple

from costbook.models import ColumnMapping, ImportWarning
from costbook.normalizer import EXPENSE_CATEGORIES, categorize_expense, parse_currency
from costbook.payee_matcher import fuzzy_match_payee, fuzzy_match_project


DATE_FORMATS = ("%m/%d/%Y", "%Y-%m-%d", "%m/%d/%y", "%m-%d-%Y", "%Y/%m/%d", "%b %d, %Y", "%d-%b-%Y")

TRANSACTION_TYPES = (
    ("bill", "bill"),
    ("check", "check"),
    ("credit", "credit_card"),
    ("card", "credit_card"),
    ("cash", "cash"),
    ("expense", "expense"),
)


def parse_date(value) -> Optional[date]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    s = str(value).strip()
    if not s:
        return None
    # Excel 由来の "2024-03-05 00:00:00"
    s = s.split(" 00:00:00")[0]
    for fmt in DATE_FORMATS:
        try:
            return datetime.strptime(s, fmt).date()
        except ValueError:
            continue
    return None


def map_transaction_type(value: Optional[str]) -> str:
    s = (value or "").strip().lower()
    for keyword, tx_type in TRANSACTION_TYPES:
        if keyword in s:
            return tx_type
    return "expense"


def _get(record: Dict[str, str], mapping: ColumnMapping, semantic: str) -> str:
    col = mapping.column_for(semantic)
    if not col:
        return ""
    return (record.get(col) or "").strip()


def validate_expense_rows(records: List[Dict[str, str]], mapping: ColumnMapping,
                          default_project_id: Optional[str] = None) -> List[str]:
    """取込前にまとめて表示する検証エラー（人が読む文言）"""
    errors: List[str] = []
    for semantic, label in (("expense_date", "Date"), ("description", "Description"), ("amount", "Amount")):
        if not mapping.column_for(semantic):
            errors.append(f"{label} column is required")
    if not default_project_id and not mapping.column_for("project_name"):
        errors.append("Project must be selected or project column must be mapped")
    if not records:
        errors.append("No data rows found")
        return errors

    if mapping.column_for("expense_date"):
        empty = sum(1 for r in records if not _get(r, mapping, "expense_date"))
        if empty:
            errors.append(f"{empty} rows have empty dates")
    if mapping.column_for("description"):
        empty = sum(1 for r in records if not _get(r, mapping, "description"))
        if empty:
            errors.append(f"{empty} rows have empty descriptions")
    if mapping.column_for("amount"):
        invalid = sum(1 for r in records if parse_currency(_get(r, mapping, "amount")) is None)
        if invalid:
            errors.append(f"{invalid} rows have invalid amounts")
    return errors


def resolve_project(value: str, projects: List[Dict], aliases: Optional[List[Dict]] = None,
                    default_project_id: Optional[str] = None) -> Tuple[Optional[str], Optional[str]]:
    """(案件ID, 一致方法)。解決できなければ既定案件"""
    if value and projects:
        match = fuzzy_match_project(value, projects, aliases)
        if match:
            return match.project_id, match.match_type
    return default_project_id, None


def map_expense_rows(records: List[Dict[str, str]], mapping: ColumnMapping,
                     projects: Optional[List[Dict]] = None, aliases: Optional[List[Dict]] = None,
                     payees: Optional[List[Dict]] = None,
                     default_project_id: Optional[str] = None) -> Tuple[List[Dict], List[ImportWarning]]:
    """行を経費 payload にする。金額・日付が読めない行は警告を残して除外する。"""
    payloads: List[Dict] = []
    warnings: List[ImportWarning] = []
    payee_cache: Dict[str, Optional[str]] = {}
    unresolved_projects = set()

    for i, record in enumerate(records):
        description = _get(record, mapping, "description")
        raw_amount = _get(record, mapping, "amount")
        amount = parse_currency(raw_amount)
        if amount is None or amount == 0:
            warnings.append(ImportWarning(code="INVALID_AMOUNT", message=f"Invalid amount '{raw_amount}'",
                                          row_index=i, details={"description": description}))
            continue

        raw_date = _get(record, mapping, "expense_date")
        expense_date = parse_date(raw_date)
        if expense_date is None:
            warnings.append(ImportWarning(code="INVALID_DATE", message=f"Invalid date '{raw_date}'",
                                          row_index=i, details={"description": description}))
            continue

        category_cell = _get(record, mapping, "category")
        if category_cell.lower() in EXPENSE_CATEGORIES:
            category = category_cell.lower()
        else:
            category = categorize_expense(description, category_cell or None)

        project_cell = _get(record, mapping, "project_name")
        project_id, how = resolve_project(project_cell, projects or [], aliases, default_project_id)
        if project_cell and how is None:
            unresolved_projects.add(project_cell)

        payee_name = _get(record, mapping, "payee_name") or None
        payload = {
            "project_id": project_id,
            "description": description,
            "category": category,
            "transaction_type": map_transaction_type(_get(record, mapping, "transaction_type")),
            "amount": abs(amount),
            "expense_date": expense_date.isoformat(),
            "is_planned": False,
        }
        if payee_name and payees:
            if payee_name not in payee_cache:
                best = fuzzy_match_payee(payee_name, payees).best_match
                payee_cache[payee_name] = best.payee["id"] if best else None
            if payee_cache[payee_name]:
                payload["payee_id"] = payee_cache[payee_name]
        invoice = _get(record, mapping, "invoice_number")
        if invoice:
            payload["invoice_number"] = invoice
        payloads.append(payload)

    if unresolved_projects:
        warnings.append(ImportWarning(
            code="LOW_CONFIDENCE_MAPPING",
            message=f"{len(unresolved_projects)} project value(s) could not be matched; assigned to default project",
            details={"values": sorted(unresolved_projects)},
        ))
    return payloads, warnings
