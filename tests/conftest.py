import copy
import itertools

import pytest

from costbook.errors import RemoteError


@pytest.fixture(autouse=True)
def state_db(tmp_path, monkeypatch):
    db = tmp_path / "state.db"
    monkeypatch.setenv("COSTBOOK_STATE_DB", str(db))
    monkeypatch.delenv("DRY_RUN", raising=False)
    return db


def _matches(row, filters):
    for column, value in (filters or {}).items():
        actual = row.get(column)
        if value is None:
            if actual is not None:
                return False
        elif isinstance(value, (list, tuple, set)):
            if actual not in value:
                return False
        elif actual != value:
            return False
    return True


class FakeBackend:
    """SupabaseClient と同じ select/select_one/insert/update/delete を持つメモリ上のテーブル"""

    def __init__(self, tables=None):
        self.tables = {name: [dict(r) for r in rows] for name, rows in (tables or {}).items()}
        self.calls = []
        self._failures = {}
        self._counts = {}
        self._ids = itertools.count(1)
        self._clock = itertools.count(1)

    def fail(self, operation, table, after=0, message="boom"):
        """(operation, table) の after 回目以降の呼び出しを RemoteError にする"""
        self._failures[(operation, table)] = (after, message)

    def _record(self, operation, table):
        self.calls.append((operation, table))
        key = (operation, table)
        n = self._counts.get(key, 0)
        self._counts[key] = n + 1
        if key in self._failures:
            after, message = self._failures[key]
            if n >= after:
                raise RemoteError(table, operation, message)

    def _embed(self, row, columns):
        out = copy.deepcopy(row)
        if "projects(" in columns and row.get("project_id") is not None:
            project = next((p for p in self.tables.get("projects", []) if p["id"] == row["project_id"]), None)
            out["projects"] = dict(project) if project else None
        return out

    def select(self, table, columns="*", filters=None, order=None, limit=None):
        self._record("select", table)
        rows = [r for r in self.tables.get(table, []) if _matches(r, filters)]
        if order:
            column, _, direction = order.partition(".")
            rows.sort(key=lambda r: r.get(column) or "", reverse=(direction == "desc"))
        if limit:
            rows = rows[:limit]
        return [self._embed(r, columns) for r in rows]

    def select_one(self, table, filters, columns="*"):
        rows = self.select(table, columns=columns, filters=filters, limit=1)
        return rows[0] if rows else None

    def insert(self, table, rows):
        self._record("insert", table)
        created = []
        for r in rows:
            new = dict(r)
            new.setdefault("id", f"{table}-{next(self._ids)}")
            new.setdefault("created_at", f"2024-01-01T00:00:{next(self._clock):02d}")
            self.tables.setdefault(table, []).append(new)
            created.append(dict(new))
        return created

    def update(self, table, values, filters):
        self._record("update", table)
        updated = []
        for r in self.tables.get(table, []):
            if _matches(r, filters):
                r.update(values)
                updated.append(dict(r))
        return updated

    def delete(self, table, filters):
        self._record("delete", table)
        keep, removed = [], []
        for r in self.tables.get(table, []):
            (removed if _matches(r, filters) else keep).append(r)
        self.tables[table] = keep
        return removed

    def row(self, table, row_id):
        return next(r for r in self.tables[table] if r["id"] == row_id)


@pytest.fixture
def backend():
    return FakeBackend({
        "projects": [
            {"id": "sys", "project_number": "SYS-000", "project_name": "Split bucket"},
            {"id": "unassigned", "project_number": "000-UNASSIGNED", "project_name": "Unassigned"},
            {"id": "p1", "project_number": "24-001", "project_name": "Smith Kitchen"},
            {"id": "p2", "project_number": "24-002", "project_name": "Jones Bath"},
            {"id": "p3", "project_number": "24-003", "project_name": "Lee Deck"},
        ],
        "expenses": [
            {"id": "e1", "amount": 1000.0, "project_id": "p1", "is_split": False, "category": "materials",
             "description": "Lumber package", "expense_date": "2024-03-05"},
        ],
        "project_revenues": [
            {"id": "r1", "amount": 5000.0, "project_id": "p2", "is_split": False, "invoice_date": "2024-03-10"},
        ],
        "expense_splits": [],
        "revenue_splits": [],
    })
