from costbook.budget_sheet import (
    assign_category,
    detect_table_region,
    extract_budget_sheet,
    find_header_row,
    map_columns,
    score_header_row,
)
from costbook.importer import import_budget_grid


QUICKBOOKS_SHEET = [
    ["QuickBooks Desktop Report", "", ""],
    ["Description", "Cost", "Markup"],
    ["Framing", "$100", "25%"],
]

COMPONENT_SHEET = [
    ["Smith Kitchen Remodel", "", "", "", "", ""],
    ["", "", "", "", "", ""],
    ["Item", "Subcontractor", "Labor", "Material", "Sub", "Markup"],
    ["Demo", "RCG", "$1,500", "", "", "20%"],
    ["Cabinets", "", "$400", "$2,000", "", "25%"],
    ["Electrical", "Bright Electric", "", "", "$3,000", "15%"],
    ["Project management", "RCG", "$1,000", "", "", "0%"],
    ["Subtotal", "", "$2,900", "$2,000", "$3,000", ""],
    ["", "", "", "", "", ""],
    ["Expense Tracking", "", "", "", "", ""],
    ["Home Depot", "", "", "$250", "", ""],
]


def test_header_score_prefers_real_header():
    score, matched = score_header_row(["Description", "Cost", "Markup"])
    assert score >= 8
    assert "item" in matched
    assert score_header_row(["Framing", "$100", "25%"])[0] < 8


def test_find_header_row_skips_metadata_row():
    assert find_header_row(QUICKBOOKS_SHEET) == 1
    assert find_header_row([["nothing", "here"], ["a", "b"]]) is None


def test_map_columns_component_sheet():
    mapping, warnings = map_columns(COMPONENT_SHEET, 2)
    assert mapping.ok
    assert mapping.column_for("item") == "0"
    assert mapping.column_for("subcontractor") == "1"
    assert mapping.column_for("labor") == "2"
    assert mapping.column_for("material") == "3"
    assert mapping.column_for("sub") == "4"
    assert mapping.column_for("markup") == "5"
    assert warnings == []


def test_map_columns_reports_missing_item():
    mapping, warnings = map_columns([["Cost", "Markup"]], 0)
    assert mapping.missing_required == ["item"]
    assert [w.code for w in warnings] == ["COLUMN_MISSING"]


def test_table_region_stops_at_marker():
    mapping, _ = map_columns(COMPONENT_SHEET, 2)
    region = detect_table_region(COMPONENT_SHEET, 2, mapping)
    assert (region.start_row, region.end_row) == (3, 9)
    assert region.warnings[0].code == "STOP_MARKER_FOUND"


def test_table_region_stops_after_empty_rows():
    grid = [["Item", "Cost"], ["Demo", "100"], [], [], [], ["Stray", "5"]]
    mapping, _ = map_columns(grid, 0)
    region = detect_table_region(grid, 0, mapping)
    assert region.end_row == 2
    assert region.warnings[0].code == "STOP_BY_STRUCTURE"


def test_assign_category():
    assert assign_category("Demo", "labor", "RCG", 20.0) == "labor"
    assert assign_category("Project management", "labor", "RCG", 0.0) == "management"
    assert assign_category("PM oversight", "labor", "RCG", 10.0) == "management"
    assert assign_category("Equipment rental", "material", "RCG", 10.0) == "materials"
    assert assign_category("Electrical", "sub", "Bright Electric", 15.0) == "subcontractor"


def test_extract_component_sheet():
    extraction = extract_budget_sheet(COMPONENT_SHEET)

    assert extraction.success
    rows = [(r.description, r.category, r.cost, r.vendor_name) for r in extraction.rows]
    assert rows == [
        ("Demo", "labor", 1500.0, "RCG"),
        ("Cabinets", "labor", 400.0, "RCG"),
        ("Cabinets - Materials", "materials", 2000.0, "RCG"),
        ("Electrical", "subcontractor", 3000.0, "Bright Electric"),
        ("Project management", "management", 1000.0, "RCG"),
    ]
    assert extraction.metadata["compound_rows_split"] == 1
    codes = [w.code for w in extraction.warnings]
    assert "SKIPPED_SUMMARY_ROW" in codes
    assert "STOP_MARKER_FOUND" in codes


def test_extract_without_header():
    extraction = extract_budget_sheet([["hello"], ["world"]])
    assert not extraction.success
    assert extraction.warnings[0].code == "HEADER_NOT_FOUND"


def test_quickbooks_three_row_sheet_gives_one_item():
    result = import_budget_grid(QUICKBOOKS_SHEET)

    assert result.success
    assert len(result.items) == 1
    item = result.items[0]
    assert item.description == "Framing"
    assert item.total == 125.00
    assert result.metadata["items_emitted"] == 1


def test_compound_description_with_default_markup():
    grid = [
        ["Description", "Cost", "Markup", "Category"],
        ["Drywall materials + labor", "$1,200", "", "Materials"],
        ["Cleanup", "abc", "10%", "Other"],
        ["Haul off", "0", "10%", "Other"],
    ]
    result = import_budget_grid(grid, default_markup=25.0)

    assert [(i.description, i.total_cost) for i in result.items] == [
        ("Drywall materials", 600.0),
        ("Drywall labor", 600.0),
    ]
    assert all(i.was_split for i in result.items)
    assert result.total_price == 1500.0
    codes = [w.code for w in result.warnings]
    assert codes.count("MARKUP_MISSING") == 2
    assert "INVALID_AMOUNT" in codes
    assert "SKIPPED_EMPTY_ROW" in codes
    assert result.metadata["compound_rows_split"] == 1
