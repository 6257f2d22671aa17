"""
予算行 → 見積明細への変換

労務行は時間単価に換算し、請求単価と社内実コストの差額をクッションとして記録する。
それ以外の行は一式（LS）または元の単位で、マークアップから販売価格を出す。
"""

from typing import List, Optional, Tuple

from costbook.config_loader import load_config
from costbook.models import BudgetRow, ImportWarning, NormalizedLineItem
from costbook.normalizer import LABOR, normalize_unit, parse_currency, round2


def labor_cushion(hours: float, billing_rate: float, actual_rate: float) -> float:
    """請求単価と実コスト単価の差額 × 時間"""
    return round2(hours * (billing_rate - actual_rate))


def price_from_markup(cost: float, markup_percent: float) -> float:
    return round2(cost * (1 + markup_percent / 100.0))


def _coerce_quantity(value) -> Optional[float]:
    if value is None or (isinstance(value, str) and not value.strip()):
        return 1.0
    qty = parse_currency(value)
    return qty


def convert_row(row: BudgetRow, default_markup: float, billing_rate: float,
                actual_rate: float) -> Tuple[Optional[NormalizedLineItem], List[ImportWarning]]:
    """1行を変換する。金額や数量が解釈できなければ (None, [INVALID_AMOUNT])"""
    warnings: List[ImportWarning] = []

    cost = parse_currency(row.cost)
    if cost is None:
        return None, [ImportWarning(
            code="INVALID_AMOUNT",
            message=f"Cost '{row.cost}' is not a number",
            row_index=row.source_row,
            details={"description": row.description},
        )]

    quantity = _coerce_quantity(row.quantity)
    if quantity is None or quantity <= 0:
        return None, [ImportWarning(
            code="INVALID_AMOUNT",
            message=f"Quantity '{row.quantity}' is not a positive number",
            row_index=row.source_row,
            details={"description": row.description},
        )]

    markup = row.markup_percent
    if markup is None:
        markup = default_markup
        warnings.append(ImportWarning(
            code="MARKUP_MISSING",
            message=f"No markup for '{row.description}', using default {default_markup:g}%",
            row_index=row.source_row,
        ))

    given_price = parse_currency(row.price)
    total_price = round2(given_price) if given_price is not None else price_from_markup(cost, markup)

    if row.category == LABOR and cost > 0 and billing_rate > 0:
        # 数量列が時間で入っていればそれを使い、無ければ金額 ÷ 請求単価
        # 時間と単価は丸めずに持つ。時間 × 単価で元の金額に戻ること
        rate_billed = billing_rate
        if quantity != 1.0 and normalize_unit(row.unit, default="HR") == "HR":
            hours = quantity
            rate_billed = cost / hours
        else:
            hours = cost / billing_rate
        actual_cost = parse_currency(row.actual_cost)
        rate = actual_rate
        if actual_cost is not None and hours > 0:
            rate = actual_cost / hours
        cushion = labor_cushion(hours, rate_billed, rate)
        item = NormalizedLineItem(
            category=LABOR,
            description=row.description,
            quantity=hours,
            unit="HR",
            cost_per_unit=rate_billed,
            price_per_unit=total_price / hours if hours else None,
            vendor_name=row.vendor_name,
            was_split=row.was_split,
            labor_cushion=cushion,
            markup_percent=markup,
            source_row=row.source_row,
            labor_hours=hours,
            billing_rate=rate_billed,
            actual_cost_rate=rate,
            split_from=row.split_from,
        )
        return item, warnings

    unit = normalize_unit(row.unit, default="LS") if row.unit else "LS"
    item = NormalizedLineItem(
        category=row.category,
        description=row.description,
        quantity=quantity,
        unit=unit,
        cost_per_unit=cost / quantity,
        price_per_unit=total_price / quantity,
        vendor_name=row.vendor_name,
        was_split=row.was_split,
        labor_cushion=0.0,
        markup_percent=markup,
        source_row=row.source_row,
        split_from=row.split_from,
    )
    return item, warnings


def convert_rows(rows: List[BudgetRow], default_markup: Optional[float] = None,
                 billing_rate: Optional[float] = None,
                 actual_rate: Optional[float] = None) -> Tuple[List[NormalizedLineItem], List[ImportWarning]]:
    """予算行をまとめて変換する。変換できない行は除外して警告に残す。"""
    cfg = load_config()["import"]
    if default_markup is None:
        default_markup = float(cfg["default_markup_percent"])
    if billing_rate is None:
        billing_rate = float(cfg["labor_billing_rate"])
    if actual_rate is None:
        actual_rate = float(cfg["labor_actual_rate"])

    items: List[NormalizedLineItem] = []
    warnings: List[ImportWarning] = []
    for row in rows:
        item, row_warnings = convert_row(row, default_markup, billing_rate, actual_rate)
        warnings.extend(row_warnings)
        if item is not None:
            items.append(item)
    return items, warnings


def validate_totals(items: List[NormalizedLineItem], tolerance: float = 0.9) -> List[ImportWarning]:
    """販売合計がコスト合計の 90% を下回ればシート全体の警告を出す"""
    total_cost = sum(i.total_cost for i in items)
    total_price = sum(i.total for i in items if i.total is not None)
    if total_cost > 0 and total_price < total_cost * tolerance:
        return [ImportWarning(
            code="TOTAL_MISMATCH",
            message=(f"Total price (${total_price:,.2f}) is less than total cost "
                     f"(${total_cost:,.2f}). Check markup values."),
            details={"total_cost": round2(total_cost), "total_price": round2(total_price)},
        )]
    return []
