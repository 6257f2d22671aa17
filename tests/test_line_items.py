import pytest

from costbook.line_items import convert_row, convert_rows, labor_cushion, price_from_markup, validate_totals
from costbook.models import BudgetRow


def _row(**kw):
    defaults = dict(source_row=4, description="Framing", category="subcontractor", cost=100.0)
    defaults.update(kw)
    return BudgetRow(**defaults)


def test_price_from_markup_and_cushion():
    assert price_from_markup(100, 25) == 125.0
    assert labor_cushion(10, 75, 35) == 400.0


def test_markup_applied_when_price_missing():
    item, warnings = convert_row(_row(markup_percent=25.0), 25.0, 75.0, 35.0)
    assert warnings == []
    assert item.unit == "LS"
    assert item.cost_per_unit == 100.0
    assert item.total == 125.0


def test_given_price_is_trusted():
    item, _ = convert_row(_row(markup_percent=25.0, price="$140"), 25.0, 75.0, 35.0)
    assert item.total == 140.0


def test_missing_markup_uses_default_with_warning():
    item, warnings = convert_row(_row(), 20.0, 75.0, 35.0)
    assert item.markup_percent == 20.0
    assert item.total == 120.0
    assert [w.code for w in warnings] == ["MARKUP_MISSING"]


def test_labor_row_uses_billing_rate_as_cost():
    item, _ = convert_row(_row(category="labor", cost=750.0, markup_percent=25.0), 25.0, 75.0, 35.0)

    assert item.unit == "HR"
    assert item.labor_hours == 10.0
    assert item.cost_per_unit == 75.0
    assert item.total_cost == pytest.approx(750.0)
    assert item.labor_cushion == 400.0
    assert item.actual_cost == pytest.approx(350.0)
    assert item.total == pytest.approx(937.5)


def test_labor_hours_from_quantity_column():
    item, _ = convert_row(_row(category="labor", cost=800.0, quantity="10", unit="hrs", markup_percent=0.0),
                          25.0, 75.0, 35.0)
    assert item.labor_hours == 10.0
    assert item.billing_rate == 80.0
    assert item.labor_cushion == 450.0


def test_invalid_cost_and_quantity_are_warnings():
    items, warnings = convert_rows([
        _row(cost="TBD", markup_percent=10.0),
        _row(quantity="0", markup_percent=10.0),
        _row(description="Trim", markup_percent=10.0),
    ], 25.0, 75.0, 35.0)

    assert [i.description for i in items] == ["Trim"]
    assert [w.code for w in warnings] == ["INVALID_AMOUNT", "INVALID_AMOUNT"]


def test_quantity_gives_unit_cost():
    item, _ = convert_row(_row(cost=500.0, quantity="200", unit="sq ft", markup_percent=0.0), 25.0, 75.0, 35.0)
    assert item.unit == "SF"
    assert item.cost_per_unit == 2.5


def test_estimate_payload_notes_split_origin():
    item, _ = convert_row(_row(was_split=True, split_from="Drywall materials + labor", markup_percent=0.0),
                          25.0, 75.0, 35.0)
    payload = item.to_estimate_payload("est-1", sort_order=3)
    assert payload["estimate_id"] == "est-1"
    assert payload["notes"] == "Split from: Drywall materials + labor"
    assert payload["total_markup"] == 0.0


def test_validate_totals_flags_price_below_cost():
    items, _ = convert_rows([_row(price="50", markup_percent=0.0)], 25.0, 75.0, 35.0)
    assert [w.code for w in validate_totals(items)] == ["TOTAL_MISMATCH"]


def test_labor_actual_cost_round_trip():
    item, _ = convert_row(_row(category="labor", cost=750.0, actual_cost="333.33", markup_percent=25.0),
                          25.0, 75.0, 35.0)
    assert item.actual_cost_rate == pytest.approx(33.333)
    assert item.labor_hours * item.actual_cost_rate == pytest.approx(333.33)
    assert item.labor_cushion == pytest.approx(416.67)


def test_labor_fractional_hours_keep_cost_and_actual_cost():
    item, _ = convert_row(_row(category="labor", cost=1000.0, actual_cost="500", markup_percent=0.0),
                          25.0, 75.0, 35.0)

    assert item.labor_hours == pytest.approx(13.3333333)
    assert item.actual_cost == pytest.approx(500.0, abs=1e-9)
    assert item.total_cost == pytest.approx(1000.0, abs=1e-9)
    assert item.labor_cushion == 500.0
    payload = item.to_estimate_payload()
    assert payload["total_cost"] == 1000.0
    assert payload["total"] == 1000.0


def test_unit_cost_times_quantity_restores_cost():
    item, _ = convert_row(_row(cost=1000.0, quantity="3", unit="EA", markup_percent=0.0), 25.0, 75.0, 35.0)
    assert item.total_cost == pytest.approx(1000.0, abs=1e-9)
