from costbook.normalizer import (
    categories_compatible,
    categorize_expense,
    line_item_category_for_expense,
    normalize_category,
    normalize_unit,
    parse_currency,
    parse_percent,
    recommended_units,
    validate_unit_compatibility,
)


def test_normalize_category():
    assert normalize_category("Subcontractors") == "subcontractor"
    assert normalize_category("Lumber & supplies") == "materials"
    assert normalize_category("Equipment Rental") == "equipment"
    assert normalize_category("Building permit") == "permits"
    assert normalize_category("") == "other"
    assert normalize_category("mystery") == "other"


def test_expense_category_mapping_is_many_to_one():
    for expense_category in ("gas", "tools", "vehicle_maintenance"):
        assert line_item_category_for_expense(expense_category) == "equipment"
    assert categories_compatible("gas", "equipment")
    assert not categories_compatible("gas", "labor")
    assert not categories_compatible(None, "labor")


def test_categorize_expense_prefers_account_path():
    assert categorize_expense("Anything", "Cost of Goods Sold:Contract Labor") == "subcontractor"
    assert categorize_expense("Shell station fuel") == "gas"
    assert categorize_expense("Adobe subscription") == "software"
    assert categorize_expense("Lunch") == "other"


def test_normalize_unit():
    assert normalize_unit("sq ft") == "SF"
    assert normalize_unit("hrs") == "HR"
    assert normalize_unit("ea.") == "EA"
    assert normalize_unit("LF") == "LF"
    assert normalize_unit("bananas", default="LS") == "LS"


def test_unit_compatibility():
    assert validate_unit_compatibility("LF", "FT")[0]
    assert validate_unit_compatibility("EA", "BOX")[0]
    ok, message = validate_unit_compatibility("SF", "HR")
    assert not ok
    assert message == "Unit mismatch: SF vs HR"
    assert recommended_units("labor") == ["HR", "DAY", "WK"]
    assert recommended_units("permits") == ["EA"]


def test_parse_currency():
    assert parse_currency("$1,234.50") == 1234.5
    assert parse_currency("(200)") == -200.0
    assert parse_currency("-") == 0.0
    assert parse_currency("") is None
    assert parse_currency("n/a") is None
    assert parse_currency(12) == 12.0


def test_parse_percent_returns_percent_units():
    assert parse_percent("25%") == 25.0
    assert parse_percent("0.25") == 25.0
    assert parse_percent(0.5) == 50.0
    assert parse_percent("20") == 20.0
    assert parse_percent("0%") == 0.0
    assert parse_percent("abc") is None
