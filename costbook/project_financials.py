"""
案件単位の集計と、配賦候補明細の読み込み

どちらも互いに独立したテーブル読み込みなので、スレッドプールで並列に投げてから結合する。
"""

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from costbook.models import FinancialRecord, MatchCandidate, SplitRecord
from costbook.splits import SPLIT_KINDS, calculate_project_total


MAX_WORKERS = 6


def _run_parallel(calls: Dict[str, tuple]) -> Dict[str, object]:
    """{name: (func, args, kwargs)} を並列実行して {name: result}。例外はそのまま上げる"""
    with ThreadPoolExecutor(max_workers=min(MAX_WORKERS, len(calls))) as executor:
        futures = {name: executor.submit(fn, *args, **kwargs) for name, (fn, args, kwargs) in calls.items()}
        return {name: f.result() for name, f in futures.items()}


@dataclass
class ProjectFinancials:
    project_id: str
    project_name: Optional[str]
    project_number: Optional[str]
    estimate_total: float
    expense_total: float
    revenue_total: float
    expenses: List[FinancialRecord] = field(default_factory=list)
    revenues: List[FinancialRecord] = field(default_factory=list)

    @property
    def margin(self) -> float:
        return round(self.revenue_total - self.expense_total, 2)

    @property
    def margin_percent(self) -> Optional[float]:
        if not self.revenue_total:
            return None
        return round(self.margin / self.revenue_total * 100, 2)


def _split_parents(client, kind: str, split_rows: List[Dict],
                   direct: List[FinancialRecord]) -> List[FinancialRecord]:
    """この案件に配賦行がある親レコード。splits にはこの案件向けの行だけを入れる"""
    split_kind = SPLIT_KINDS[kind]
    by_parent: Dict[str, List[SplitRecord]] = {}
    for row in split_rows:
        rec = SplitRecord.from_row(row, split_kind.parent_key)
        by_parent.setdefault(str(rec.parent_id), []).append(rec)
    direct_ids = set()
    for d in direct:
        direct_ids.add(d.id)
        if d.is_split:
            d.splits = by_parent.get(d.id, [])
    parent_ids = [pid for pid in by_parent if pid not in direct_ids]
    if not parent_ids:
        return []

    date_key = "expense_date" if kind == "expense" else "invoice_date"
    parents = [FinancialRecord.from_row(r, date_key=date_key)
               for r in client.select(split_kind.parent_table, filters={"id": parent_ids})]
    out = []
    for p in parents:
        if p.is_split:
            p.splits = by_parent.get(p.id, [])
            out.append(p)
    return out


def load_project_financials(client, project_id: str) -> ProjectFinancials:
    """案件・見積・経費・売上・配賦行を並列に読み、配賦ルールで案件の金額を出す"""
    results = _run_parallel({
        "project": (client.select_one, ("projects", {"id": project_id}), {}),
        "estimates": (client.select, ("estimates",),
                      {"filters": {"project_id": project_id, "is_current_version": True}}),
        "expenses": (client.select, ("expenses",), {"filters": {"project_id": project_id}}),
        "revenues": (client.select, ("project_revenues",), {"filters": {"project_id": project_id}}),
        "expense_splits": (client.select, ("expense_splits",), {"filters": {"project_id": project_id}}),
        "revenue_splits": (client.select, ("revenue_splits",), {"filters": {"project_id": project_id}}),
    })

    project = results["project"] or {}
    expenses = [FinancialRecord.from_row(r, "expense_date") for r in results["expenses"]]
    revenues = [FinancialRecord.from_row(r, "invoice_date") for r in results["revenues"]]
    expenses += _split_parents(client, "expense", results["expense_splits"], expenses)
    revenues += _split_parents(client, "revenue", results["revenue_splits"], revenues)

    estimate_total = sum(float(e.get("total_amount") or 0) for e in results["estimates"])

    return ProjectFinancials(
        project_id=project_id,
        project_name=project.get("project_name"),
        project_number=project.get("project_number"),
        estimate_total=round(estimate_total, 2),
        expense_total=calculate_project_total(project_id, expenses),
        revenue_total=calculate_project_total(project_id, revenues),
        expenses=expenses,
        revenues=revenues,
    )


def _line_total(item: Dict) -> float:
    total = item.get("total_cost")
    if total:
        return float(total)
    return float(item.get("cost_per_unit") or 0) * float(item.get("quantity") or 0)


def load_line_item_candidates(client, project_id: Optional[str] = None) -> List[MatchCandidate]:
    """現行見積・承諾済み見積依頼・承認済み変更指示の明細を候補にする

    見積依頼の明細が紐付いている見積明細は、見積依頼側と重複するので除く。
    """
    scope = {"project_id": project_id} if project_id else {}
    results = _run_parallel({
        "estimates": (client.select, ("estimates",), {
            "columns": "id, project_id, projects(project_name), estimate_line_items(*)",
            "filters": dict(scope, is_current_version=True),
        }),
        "quotes": (client.select, ("quotes",), {
            "columns": ("id, project_id, status, projects(project_name), payees(payee_name), "
                        "quote_line_items(id, estimate_line_item_id, category, description, total_cost, "
                        "quantity, cost_per_unit)"),
            "filters": dict(scope, status="accepted"),
        }),
        "change_orders": (client.select, ("change_orders",), {
            "columns": ("id, change_order_number, status, project_id, projects(project_name), "
                        "change_order_line_items(id, category, description, total_cost)"),
            "filters": dict(scope, status="approved"),
        }),
    })

    quoted_estimate_items = {
        qli.get("estimate_line_item_id")
        for q in results["quotes"]
        for qli in (q.get("quote_line_items") or [])
        if qli.get("estimate_line_item_id")
    }

    candidates: List[MatchCandidate] = []
    for est in results["estimates"]:
        project_name = (est.get("projects") or {}).get("project_name")
        for item in est.get("estimate_line_items") or []:
            if item.get("id") in quoted_estimate_items:
                continue
            candidates.append(MatchCandidate(
                id=str(item["id"]), type="estimate", source_id=str(est["id"]), project_id=est.get("project_id"),
                category=item.get("category") or "other", description=item.get("description") or "",
                total=_line_total(item), project_name=project_name,
            ))
    for q in results["quotes"]:
        project_name = (q.get("projects") or {}).get("project_name")
        payee_name = (q.get("payees") or {}).get("payee_name")
        for item in q.get("quote_line_items") or []:
            candidates.append(MatchCandidate(
                id=str(item["id"]), type="quote", source_id=str(q["id"]), project_id=q.get("project_id"),
                category=item.get("category") or "other", description=item.get("description") or "",
                total=_line_total(item), payee_name=payee_name, project_name=project_name,
            ))
    for co in results["change_orders"]:
        project_name = (co.get("projects") or {}).get("project_name")
        for item in co.get("change_order_line_items") or []:
            candidates.append(MatchCandidate(
                id=str(item["id"]), type="change_order", source_id=str(co["id"]), project_id=co.get("project_id"),
                category=item.get("category") or "other", description=item.get("description") or "",
                total=_line_total(item), project_name=project_name,
            ))
    return candidates
