"""
アップロードされた表形式ファイル（CSV/XLSX/XLS）を文字列グリッドに読み込む
"""

import csv
from pathlib import Path
from typing import Dict, List, Union

import pandas as pd

from costbook.errors import ImportFileError


Grid = List[List[str]]

CSV_EXTS = {".csv", ".txt"}
EXCEL_EXTS = {".xlsx", ".xlsm", ".xls"}

# パーサが自動で付ける列名。マッピング前に捨てる
PLACEHOLDER_PREFIXES = ("__parsed_extra", "Unnamed:")


def read_grid(path: Union[str, Path]) -> Grid:
    """ファイルをヘッダ推定前の生グリッドとして読む。空セルは "" に揃える。"""
    p = Path(path)
    ext = p.suffix.lower()
    if ext not in CSV_EXTS | EXCEL_EXTS:
        raise ImportFileError(f"Unsupported file type '{ext}'. Use .csv, .xlsx, or .xls")
    if not p.exists():
        raise ImportFileError(f"File not found: {p}")

    try:
        if ext in CSV_EXTS:
            # 先頭のメタ行は列数が少ないので、最大列数を先に数えて列名を与える
            width = _csv_width(p)
            if width == 0:
                return []
            df = pd.read_csv(p, header=None, names=list(range(width)), dtype=str, keep_default_na=False,
                             skip_blank_lines=False, encoding_errors="replace")
        else:
            # xls は xlrd、xlsx は openpyxl が pandas 経由で使われる
            df = pd.read_excel(p, header=None, dtype=str, sheet_name=0)
    except (ValueError, OSError, pd.errors.ParserError) as e:
        raise ImportFileError(f"Failed to parse {p.name}: {e}") from e

    return frame_to_grid(df)


def _csv_width(path: Path) -> int:
    with open(path, newline="", encoding="utf-8", errors="replace") as f:
        return max((len(row) for row in csv.reader(f)), default=0)


def frame_to_grid(df: pd.DataFrame) -> Grid:
    df = df.fillna("")
    grid = [[str(v).strip() for v in row] for row in df.itertuples(index=False, name=None)]
    # 末尾の完全空行は落とす
    while grid and not any(grid[-1]):
        grid.pop()
    return grid


def clean_headers(header_row: List[str]) -> List[str]:
    """空・重複・パーサ内部の列名を除外した列名リスト（出現順）"""
    seen = set()
    headers = []
    for h in header_row:
        name = (h or "").strip()
        if not name or name.startswith(PLACEHOLDER_PREFIXES):
            continue
        if name in seen:
            continue
        seen.add(name)
        headers.append(name)
    return headers


def rows_to_records(grid: Grid, header_index: int) -> List[Dict[str, str]]:
    """ヘッダ行より下をヘッダ名キーの dict にする。重複列は最初の出現を採用。"""
    if header_index < 0 or header_index >= len(grid):
        return []
    header_row = grid[header_index]
    keep = set(clean_headers(header_row))
    positions = {}
    for idx, h in enumerate(header_row):
        name = (h or "").strip()
        if name in keep and name not in positions:
            positions[name] = idx

    records = []
    for row in grid[header_index + 1:]:
        if not any((c or "").strip() for c in row):
            continue
        records.append({name: (row[idx] if idx < len(row) else "").strip() for name, idx in positions.items()})
    return records
