import pandas as pd
import pytest

from costbook.errors import ImportFileError
from costbook.sheet_reader import clean_headers, frame_to_grid, read_grid, rows_to_records


def test_read_csv_with_short_metadata_row(tmp_path):
    path = tmp_path / "budget.csv"
    path.write_text("Acme Report\nItem,Cost,Markup\nDemo,\"$1,500\",20%\n\n", encoding="utf-8")

    grid = read_grid(path)

    assert grid == [
        ["Acme Report", "", ""],
        ["Item", "Cost", "Markup"],
        ["Demo", "$1,500", "20%"],
    ]


def test_read_grid_rejects_unknown_extension(tmp_path):
    path = tmp_path / "budget.pdf"
    path.write_bytes(b"%PDF")
    with pytest.raises(ImportFileError):
        read_grid(path)
    with pytest.raises(ImportFileError):
        read_grid(tmp_path / "missing.csv")


def test_frame_to_grid_blanks_missing_cells():
    df = pd.DataFrame([["a", None], [None, None]])
    assert frame_to_grid(df) == [["a", ""]]


def test_clean_headers_and_records():
    header = ["Date", "", "Amount", "Unnamed: 3", "Amount"]
    assert clean_headers(header) == ["Date", "Amount"]

    grid = [header, ["01/02/2024", "x", "10", "y", "99"], ["", "", "", "", ""]]
    assert rows_to_records(grid, 0) == [{"Date": "01/02/2024", "Amount": "10"}]
    assert rows_to_records(grid, 5) == []
