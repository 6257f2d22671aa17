import pytest

from costbook.errors import SplitValidationError
from costbook.models import FinancialRecord, SplitInput, SplitRecord
from costbook.splits import (
    SplitAllocator,
    calculate_project_total,
    calculate_split_percentage,
    calculate_totals,
    check_split_inputs,
    format_split_info,
    validate_split_total,
)
from costbook.state_store import list_audit


def _splits(*pairs):
    return [SplitInput(project_id=p, split_amount=a) for p, a in pairs]


def _attributed(backend, project_id):
    allocator = SplitAllocator(backend, audit=False)
    records = [FinancialRecord.from_row(r) for r in backend.tables["expenses"]]
    allocator.hydrate(records)
    return calculate_project_total(project_id, records)


def test_validate_split_total_within_one_cent():
    assert validate_split_total(1000.0, [600.0, 400.01]).valid
    bad = validate_split_total(1000.0, [600.0, 399.0])
    assert not bad.valid
    assert "Difference: $1.00" in bad.error
    assert bad.difference == pytest.approx(1.0)


def test_check_split_inputs_rejects_single_and_non_positive():
    with pytest.raises(SplitValidationError):
        check_split_inputs(_splits(("p1", 100.0)))
    with pytest.raises(SplitValidationError):
        check_split_inputs(_splits(("p1", 100.0), ("p2", 0.0)))
    check_split_inputs(_splits(("p1", 100.0), ("p2", 1.0)))


def test_calculate_split_percentage():
    assert calculate_split_percentage(250, 1000) == 25
    assert calculate_split_percentage(250, 0) == 0.0


def test_create_splits_redirects_parent_to_system_project(backend):
    result = SplitAllocator(backend).create_splits("e1", _splits(("p1", 600.0), ("p2", 400.0)))

    assert result.success
    parent = backend.row("expenses", "e1")
    assert parent["project_id"] == "sys"
    assert parent["is_split"] is True
    rows = backend.tables["expense_splits"]
    assert [r["project_id"] for r in rows] == ["p1", "p2"]
    assert [r["split_percentage"] for r in rows] == [60.0, 40.0]
    assert all(r["expense_id"] == "e1" for r in rows)


def test_create_splits_validation_error_makes_no_writes(backend):
    allocator = SplitAllocator(backend)
    result = allocator.create_splits("e1", _splits(("p1", 600.0), ("p2", 300.0)))

    assert result.status == "validation_error"
    assert "must equal expense amount" in result.error
    assert ("update", "expenses") not in backend.calls
    assert ("insert", "expense_splits") not in backend.calls
    assert backend.row("expenses", "e1")["project_id"] == "p1"


def test_create_splits_unknown_parent(backend):
    result = SplitAllocator(backend).create_splits("missing", _splits(("p1", 1.0), ("p2", 1.0)))
    assert result.status == "validation_error"


def test_insert_failure_rolls_parent_back(backend):
    backend.fail("insert", "expense_splits")
    result = SplitAllocator(backend).create_splits("e1", _splits(("p1", 600.0), ("p2", 400.0)))

    assert result.status == "rolled_back"
    assert result.rolled_back
    parent = backend.row("expenses", "e1")
    assert parent["project_id"] == "p1"
    assert parent["is_split"] is False
    assert list_audit("expense:rollback")[0]["result"] == "rolled_back"


def test_rollback_failure_is_reported(backend):
    backend.fail("insert", "expense_splits")
    # 1回目（システム案件への付け替え）は通し、復元の update だけ失敗させる
    backend.fail("update", "expenses", after=1)
    result = SplitAllocator(backend).create_splits("e1", _splits(("p1", 600.0), ("p2", 400.0)))

    assert result.status == "rollback_failed"
    assert not result.rolled_back
    assert "rollback failed" in result.error
    assert backend.row("expenses", "e1")["project_id"] == "sys"
    entry = list_audit("expense:rollback")[0]
    assert entry["level"] == "ERROR"
    assert entry["result"] == "rollback_failed"


def test_delete_reverts_to_first_split_project(backend):
    allocator = SplitAllocator(backend)
    allocator.create_splits("e1", _splits(("p2", 300.0), ("p1", 700.0)))

    result = allocator.delete_splits("e1")

    assert result.success
    parent = backend.row("expenses", "e1")
    assert parent["project_id"] == "p2"
    assert parent["is_split"] is False
    assert backend.tables["expense_splits"] == []


def test_delete_only_split_of_removed_project_falls_back_to_unassigned(backend):
    backend.tables["expenses"][0].update(project_id="sys", is_split=True)
    backend.tables["expense_splits"].append(
        {"id": "s1", "expense_id": "e1", "project_id": "gone", "split_amount": 1000.0,
         "split_percentage": 100.0, "created_at": "2024-01-01T00:00:00"})

    result = SplitAllocator(backend).delete_splits("e1")

    assert result.success
    assert backend.row("expenses", "e1")["project_id"] == "unassigned"
    assert backend.tables["expense_splits"] == []


def test_create_then_delete_keeps_original_attribution(backend):
    before = _attributed(backend, "p1")
    allocator = SplitAllocator(backend)
    allocator.create_splits("e1", _splits(("p1", 600.0), ("p2", 400.0)))

    assert _attributed(backend, "p1") == 600.0
    assert _attributed(backend, "p2") == 400.0

    allocator.delete_splits("e1")
    assert _attributed(backend, "p1") == before == 1000.0
    assert _attributed(backend, "p2") == 0.0


def test_update_splits_replaces_rows(backend):
    allocator = SplitAllocator(backend)
    allocator.create_splits("e1", _splits(("p1", 600.0), ("p2", 400.0)))

    result = allocator.update_splits("e1", _splits(("p2", 500.0), ("p3", 500.0)))

    assert result.success
    rows = backend.tables["expense_splits"]
    assert sorted(r["project_id"] for r in rows) == ["p2", "p3"]
    assert backend.row("expenses", "e1")["project_id"] == "sys"


def test_update_splits_failure_restores_previous_first_project(backend):
    allocator = SplitAllocator(backend)
    allocator.create_splits("e1", _splits(("p2", 600.0), ("p1", 400.0)))
    backend.fail("insert", "expense_splits", after=1)

    result = allocator.update_splits("e1", _splits(("p1", 500.0), ("p3", 500.0)))

    assert result.status == "rolled_back"
    parent = backend.row("expenses", "e1")
    assert parent["project_id"] == "p2"
    assert parent["is_split"] is False


def test_update_splits_rejects_wrong_total_before_deleting(backend):
    allocator = SplitAllocator(backend)
    allocator.create_splits("e1", _splits(("p1", 600.0), ("p2", 400.0)))

    result = allocator.update_splits("e1", _splits(("p1", 600.0), ("p2", 300.0)))

    assert result.status == "validation_error"
    assert len(backend.tables["expense_splits"]) == 2


def test_revenue_splits_use_revenue_tables(backend):
    allocator = SplitAllocator(backend, kind="revenue")
    result = allocator.create_splits("r1", _splits(("p2", 2500.0), ("p3", 2500.0)))

    assert result.success
    assert all(r["revenue_id"] == "r1" for r in backend.tables["revenue_splits"])
    assert backend.row("project_revenues", "r1")["project_id"] == "sys"


def test_unknown_kind_is_rejected(backend):
    with pytest.raises(ValueError):
        SplitAllocator(backend, kind="invoice")


def test_calculate_totals_counts_each_split_parent_once():
    splits = [SplitRecord("s1", "e1", "p1", 60.0, 60.0), SplitRecord("s2", "e1", "p2", 40.0, 40.0)]
    split_parent = FinancialRecord(id="e1", amount=100.0, project_id="sys", is_split=True, splits=splits)
    plain = FinancialRecord(id="e2", amount=50.0, project_id="p1")

    total, adjusted = calculate_totals([split_parent, plain, split_parent])
    assert total == 250.0
    assert adjusted == 150.0
    assert calculate_project_total("p1", [split_parent, plain]) == 110.0


def test_format_split_info():
    splits = [SplitRecord("s1", "e1", "p1", 60.0, 60.0, project_number="24-001"),
              SplitRecord("s2", "e1", "p2", 40.5, 40.5)]
    assert format_split_info(splits) == "24-001: $60.00, p2: $40.50"
    assert format_split_info([]) == ""


def _assert_consistent(backend, parent_id="e1"):
    parent = backend.row("expenses", parent_id)
    rows = [r for r in backend.tables["expense_splits"] if r["expense_id"] == parent_id]
    assert parent["is_split"] is bool(rows)
    if rows:
        assert sum(r["split_amount"] for r in rows) == pytest.approx(parent["amount"], abs=0.01)


def test_create_on_already_split_parent_is_rejected(backend):
    allocator = SplitAllocator(backend)
    allocator.create_splits("e1", _splits(("p1", 600.0), ("p2", 400.0)))

    result = allocator.create_splits("e1", _splits(("p2", 500.0), ("p3", 500.0)))

    assert result.status == "validation_error"
    assert "already split" in result.error
    assert len(backend.tables["expense_splits"]) == 2
    assert backend.calls.count(("update", "expenses")) == 1
    assert _attributed(backend, "p1") == 600.0
    assert _attributed(backend, "p3") == 0.0
    _assert_consistent(backend)


def test_create_with_leftover_split_rows_is_rejected(backend):
    backend.tables["expense_splits"].append(
        {"id": "s1", "expense_id": "e1", "project_id": "p2", "split_amount": 1000.0,
         "split_percentage": 100.0, "created_at": "2024-01-01T00:00:00"})

    result = SplitAllocator(backend).create_splits("e1", _splits(("p1", 600.0), ("p2", 400.0)))

    assert result.status == "validation_error"
    assert backend.row("expenses", "e1")["project_id"] == "p1"
    assert ("update", "expenses") not in backend.calls


def test_update_splits_system_lookup_failure_leaves_parent_unsplit(backend):
    allocator = SplitAllocator(backend)
    allocator.create_splits("e1", _splits(("p2", 600.0), ("p1", 400.0)))
    # 戻し先の存在確認は通し、作り直し時のシステム案件の検索で失敗させる
    backend.fail("select", "projects", after=2)

    result = allocator.update_splits("e1", _splits(("p1", 500.0), ("p3", 500.0)))

    assert result.status == "remote_error"
    parent = backend.row("expenses", "e1")
    assert parent["project_id"] == "p2"
    assert parent["is_split"] is False
    assert backend.tables["expense_splits"] == []
    assert _attributed(backend, "p2") == 1000.0
    _assert_consistent(backend)


def test_update_splits_redirect_failure_leaves_parent_unsplit(backend):
    allocator = SplitAllocator(backend)
    allocator.create_splits("e1", _splits(("p2", 600.0), ("p1", 400.0)))
    # 1回目は作成時、2回目は戻し。3回目の付け替えで失敗させる
    backend.fail("update", "expenses", after=2)

    result = allocator.update_splits("e1", _splits(("p1", 500.0), ("p3", 500.0)))

    assert result.status == "remote_error"
    assert backend.row("expenses", "e1")["project_id"] == "p2"
    _assert_consistent(backend)
    assert list_audit("expense:update")[0]["result"] == "remote_error"


def test_update_splits_revert_failure_keeps_old_splits(backend):
    allocator = SplitAllocator(backend)
    allocator.create_splits("e1", _splits(("p1", 600.0), ("p2", 400.0)))
    backend.fail("update", "expenses", after=1)

    result = allocator.update_splits("e1", _splits(("p2", 500.0), ("p3", 500.0)))

    assert result.status == "remote_error"
    assert backend.row("expenses", "e1")["project_id"] == "sys"
    assert sorted(r["project_id"] for r in backend.tables["expense_splits"]) == ["p1", "p2"]
    _assert_consistent(backend)


def test_update_splits_on_unsplit_parent_creates(backend):
    result = SplitAllocator(backend).update_splits("e1", _splits(("p2", 500.0), ("p3", 500.0)))

    assert result.success
    assert backend.row("expenses", "e1")["project_id"] == "sys"
    assert ("delete", "expense_splits") not in backend.calls
    _assert_consistent(backend)
