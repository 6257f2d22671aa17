from dataclasses import dataclass, field, asdict
from datetime import date, datetime
from typing import Any, Dict, List, Optional


@dataclass
class ImportWarning:
    code: str
    message: str
    row_index: Optional[int] = None
    details: Optional[dict] = None

    def to_dict(self):
        return asdict(self)


@dataclass(frozen=True)
class ColumnMapping:
    """意味フィールド名 → アップロード側の列名。信頼度はマッピング全体に1つ。"""
    fields: Dict[str, str]
    header_row_index: int
    confidence: float
    missing_required: List[str] = field(default_factory=list)
    unmapped_headers: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.missing_required

    def column_for(self, semantic: str) -> Optional[str]:
        return self.fields.get(semantic)


@dataclass
class BudgetRow:
    """分割・変換前の正規化済み行。cost/price は未検証の生値が入ることもある。"""
    source_row: int
    description: str
    category: str
    cost: Any
    price: Any = None
    markup_percent: Optional[float] = None
    vendor_name: Optional[str] = None
    quantity: Any = 1
    unit: Optional[str] = None
    component: Optional[str] = None
    was_split: bool = False
    split_from: Optional[str] = None
    actual_cost: Any = None


@dataclass(frozen=True)
class NormalizedLineItem:
    category: str
    description: str
    quantity: float
    unit: str
    cost_per_unit: float
    price_per_unit: Optional[float]
    vendor_name: Optional[str]
    was_split: bool
    labor_cushion: float
    markup_percent: float
    source_row: Optional[int] = None
    labor_hours: Optional[float] = None
    billing_rate: Optional[float] = None
    actual_cost_rate: Optional[float] = None
    split_from: Optional[str] = None

    @property
    def total_cost(self) -> float:
        return self.quantity * self.cost_per_unit

    @property
    def total(self) -> Optional[float]:
        if self.price_per_unit is None:
            return None
        return self.quantity * self.price_per_unit

    @property
    def actual_cost(self) -> float:
        # 労務行は社内実コスト、それ以外は表示コストと同じ
        if self.labor_hours is not None and self.actual_cost_rate is not None:
            return self.labor_hours * self.actual_cost_rate
        return self.total_cost

    def to_estimate_payload(self, estimate_id: Optional[str] = None, sort_order: int = 0) -> Dict:
        """estimate_line_items テーブルへの insert 用 dict"""
        total = self.total if self.total is not None else self.total_cost
        payload = {
            "category": self.category,
            "description": self.description,
            "quantity": self.quantity,
            "unit": self.unit,
            "cost_per_unit": self.cost_per_unit,
            "price_per_unit": self.price_per_unit,
            "markup_percent": self.markup_percent,
            "total": round(total, 2),
            "total_cost": round(self.total_cost, 2),
            "total_markup": round(total - self.total_cost, 2),
            "labor_hours": self.labor_hours,
            "billing_rate_per_hour": self.billing_rate,
            "actual_cost_rate_per_hour": self.actual_cost_rate,
            "labor_cushion_amount": self.labor_cushion if self.labor_hours is not None else None,
            "notes": f"Split from: {self.split_from}" if self.was_split and self.split_from else None,
            "sort_order": sort_order,
        }
        if estimate_id:
            payload["estimate_id"] = estimate_id
        return payload


@dataclass
class SplitInput:
    project_id: str
    split_amount: float
    notes: Optional[str] = None


@dataclass
class SplitRecord:
    id: Optional[str]
    parent_id: str
    project_id: str
    split_amount: float
    split_percentage: float
    notes: Optional[str] = None
    created_at: Optional[str] = None
    project_name: Optional[str] = None
    project_number: Optional[str] = None

    @classmethod
    def from_row(cls, row: Dict, parent_key: str) -> "SplitRecord":
        project = row.get("projects") or {}
        return cls(
            id=row.get("id"),
            parent_id=row.get(parent_key),
            project_id=row.get("project_id"),
            split_amount=float(row.get("split_amount") or 0),
            split_percentage=float(row.get("split_percentage") or 0),
            notes=row.get("notes"),
            created_at=row.get("created_at"),
            project_name=project.get("project_name"),
            project_number=project.get("project_number"),
        )


@dataclass
class SplitResult:
    """分割操作の結果。例外ではなくこのタグ付き結果で呼び出し元に返す。

    status:
      ok                 すべての手順が成功
      validation_error   書き込み前の検証で失敗（副作用なし）
      remote_error       リモート呼び出し失敗（補償不要な段階）
      rolled_back        途中失敗し、親レコードを元に戻した
      rollback_failed    途中失敗し、親レコードの復元にも失敗した（不整合あり）
    """
    status: str
    error: Optional[str] = None
    splits: List[SplitRecord] = field(default_factory=list)
    rolled_back: bool = False

    @property
    def success(self) -> bool:
        return self.status == "ok"


@dataclass
class FinancialRecord:
    """経費または売上。分割済みなら splits に配賦先が入る。"""
    id: str
    amount: float
    project_id: Optional[str]
    category: str = "other"
    payee_name: Optional[str] = None
    description: Optional[str] = None
    record_date: Optional[date] = None
    is_split: bool = False
    splits: List[SplitRecord] = field(default_factory=list)

    @classmethod
    def from_row(cls, row: Dict, date_key: str = "expense_date") -> "FinancialRecord":
        raw_date = row.get(date_key)
        record_date = None
        if isinstance(raw_date, date):
            record_date = raw_date
        elif raw_date:
            try:
                record_date = datetime.fromisoformat(str(raw_date)[:10]).date()
            except ValueError:
                record_date = None
        payee = row.get("payees") or {}
        return cls(
            id=str(row.get("id")),
            amount=float(row.get("amount") or 0),
            project_id=row.get("project_id"),
            category=row.get("category") or "other",
            payee_name=row.get("payee_name") or payee.get("payee_name"),
            description=row.get("description"),
            record_date=record_date,
            is_split=bool(row.get("is_split")),
        )


@dataclass(frozen=True)
class MatchCandidate:
    id: str
    type: str  # estimate|quote|change_order
    source_id: str
    project_id: str
    category: str
    description: str
    total: float
    payee_name: Optional[str] = None
    allocated_amount: float = 0.0
    project_name: Optional[str] = None


@dataclass(frozen=True)
class MatchScore:
    line_item_id: str
    score: int
    reasons: tuple = ()
