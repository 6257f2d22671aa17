"""
経費・売上の案件間配賦（スプリット）

1件の経費/売上を複数案件に金額で割り振る。親レコードは配賦中はシステム案件
（SYS-000）を指し is_split=True になる。バックエンドに複数文のトランザクションは
無いので、途中で失敗したときは親レコードを元に戻す補償処理で整合性を保つ。

補償処理そのものが失敗した場合や、手順の間でプロセスが落ちた場合は
「親がシステム案件を指したまま配賦行が無い」状態が残り得る。その場合は
status=rollback_failed と監査ログで検知し、手で直す。
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional, Tuple

from costbook.config_loader import load_config
from costbook.errors import RemoteError, SplitValidationError
from costbook.models import FinancialRecord, SplitInput, SplitRecord, SplitResult
from costbook.state_store import init_db, write_audit


@dataclass(frozen=True)
class SplitKind:
    parent_table: str
    split_table: str
    parent_key: str
    label: str


SPLIT_KINDS = {
    "expense": SplitKind("expenses", "expense_splits", "expense_id", "expense"),
    "revenue": SplitKind("project_revenues", "revenue_splits", "revenue_id", "revenue"),
}


@dataclass
class SplitValidation:
    valid: bool
    total: float
    difference: float
    error: Optional[str] = None


def validate_split_total(parent_amount: float, split_amounts: Iterable[float], tolerance: float = 0.01,
                         label: str = "expense") -> SplitValidation:
    total = sum(split_amounts)
    diff = abs(total - parent_amount)
    # 浮動小数の誤差で 0.01 ちょうどが弾かれないように丸めてから比較
    if round(diff, 6) > tolerance:
        return SplitValidation(
            valid=False,
            total=total,
            difference=diff,
            error=(f"Split total (${total:.2f}) must equal {label} amount (${parent_amount:.2f}). "
                   f"Difference: ${diff:.2f}"),
        )
    return SplitValidation(valid=True, total=total, difference=diff)


def check_split_inputs(splits: List[SplitInput], min_splits: int = 2):
    """件数と金額の符号だけを見る。親の金額が要らない検査はここで先に済ませる"""
    if len(splits) < min_splits:
        raise SplitValidationError(f"At least {min_splits} splits are required")
    for s in splits:
        if s.split_amount is None or s.split_amount <= 0:
            raise SplitValidationError("All split amounts must be positive")
        if not s.project_id:
            raise SplitValidationError("Every split needs a project")


def calculate_split_percentage(split_amount: float, total_amount: float) -> float:
    if not total_amount:
        return 0.0
    return split_amount / total_amount * 100


def calculate_project_total(project_id: str, records: Iterable[FinancialRecord]) -> float:
    """案件に帰属する金額の合計

    分割済みのレコードはその案件向けの配賦額だけ、未分割のレコードは
    自分の案件が一致するときだけ全額を数える。親と配賦の二重計上はしない。
    records の splits は呼び出し側で読み込んでおくこと。
    """
    total = 0.0
    for r in records:
        if r.is_split:
            total += sum(s.split_amount for s in r.splits if s.project_id == project_id)
        elif r.project_id == project_id:
            total += r.amount
    return round(total, 2)


def calculate_totals(records: Iterable[FinancialRecord]) -> Tuple[float, float]:
    """(元の合計, 配賦後の合計)。同じ親が複数回現れても配賦は1回だけ数える"""
    total = 0.0
    split_adjusted = 0.0
    processed = set()
    for r in records:
        total += r.amount
        if r.is_split:
            if r.id not in processed:
                split_adjusted += sum(s.split_amount for s in r.splits)
                processed.add(r.id)
        else:
            split_adjusted += r.amount
    return round(total, 2), round(split_adjusted, 2)


def format_split_info(splits: List[SplitRecord]) -> str:
    if not splits:
        return ""
    return ", ".join(f"{s.project_number or s.project_id}: ${s.split_amount:.2f}" for s in splits)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class SplitAllocator:
    """配賦の作成・更新・削除

    すべての操作は例外ではなく SplitResult を返す。client は
    select/select_one/insert/update/delete を持つバックエンド（SupabaseClient など）。
    """

    def __init__(self, client, kind: str = "expense", audit: bool = True):
        if kind not in SPLIT_KINDS:
            raise ValueError(f"unknown split kind: {kind}")
        self.client = client
        self.kind = SPLIT_KINDS[kind]
        cfg = load_config()["splits"]
        self.tolerance = float(cfg["tolerance"])
        self.min_splits = int(cfg["min_splits"])
        self.system_project_number = cfg["system_project_number"]
        self.unassigned_project_number = cfg["unassigned_project_number"]
        self.audit = audit
        if audit:
            init_db()

    def _audit(self, level: str, action: str, target_ids: list, amount: Optional[float], result: str,
               error: Optional[str] = None):
        if self.audit:
            write_audit(level, "splits", f"{self.kind.label}:{action}", target_ids, amount, result, error)

    def _project_id_by_number(self, project_number: str) -> Optional[str]:
        row = self.client.select_one("projects", {"project_number": project_number}, columns="id")
        return row["id"] if row else None

    def _project_exists(self, project_id: str) -> bool:
        return self.client.select_one("projects", {"id": project_id}, columns="id") is not None

    # ---- 読み取り ----

    def get_splits(self, parent_id: str) -> List[SplitRecord]:
        rows = self.client.select(
            self.kind.split_table,
            columns="*, projects(project_name, project_number)",
            filters={self.kind.parent_key: parent_id},
            order="created_at.asc",
        )
        return [SplitRecord.from_row(r, self.kind.parent_key) for r in rows]

    def has_splits(self, parent_id: str) -> bool:
        rows = self.client.select(self.kind.split_table, columns="id",
                                  filters={self.kind.parent_key: parent_id}, limit=1)
        return bool(rows)

    def hydrate(self, records: List[FinancialRecord]) -> List[FinancialRecord]:
        """分割済みレコードに配賦行を読み込む"""
        for r in records:
            if r.is_split and not r.splits:
                r.splits = self.get_splits(r.id)
        return records

    # ---- 作成 ----

    def create_splits(self, parent_id: str, splits: List[SplitInput]) -> SplitResult:
        """親レコードを複数案件に配賦する

        1. 件数・金額の検査（失敗なら何も書かない）
        2. 親の金額を取得し合計を検査。配賦済みの親は update_splits を使う
        3. 親をシステム案件へ付け替えて is_split=True
        4. 配賦行を挿入。失敗したら親を元の案件に戻す
        """
        label = self.kind.label
        try:
            check_split_inputs(splits, self.min_splits)
        except SplitValidationError as e:
            return SplitResult(status="validation_error", error=str(e))

        try:
            parent = self.client.select_one(self.kind.parent_table, {"id": parent_id},
                                            columns="id, amount, project_id, is_split")
        except RemoteError as e:
            return SplitResult(status="remote_error", error=str(e))
        if not parent:
            return SplitResult(status="validation_error", error=f"Parent {label} record not found")

        try:
            already_split = bool(parent.get("is_split")) or self.has_splits(parent_id)
        except RemoteError as e:
            return SplitResult(status="remote_error", error=str(e))
        if already_split:
            return SplitResult(status="validation_error",
                               error=f"This {label} is already split; use update_splits to change it")

        parent_amount = float(parent.get("amount") or 0)
        validation = validate_split_total(parent_amount, [s.split_amount for s in splits], self.tolerance, label)
        if not validation.valid:
            return SplitResult(status="validation_error", error=validation.error)

        try:
            system_project_id = self._project_id_by_number(self.system_project_number)
        except RemoteError as e:
            return SplitResult(status="remote_error", error=str(e))
        if not system_project_id:
            return SplitResult(status="remote_error",
                               error=f"System project ({self.system_project_number}) not found")

        original_project_id = parent.get("project_id")
        if original_project_id == system_project_id:
            original_project_id = splits[0].project_id

        try:
            self.client.update(self.kind.parent_table,
                               {"project_id": system_project_id, "is_split": True, "updated_at": _now()},
                               {"id": parent_id})
        except RemoteError as e:
            self._audit("ERROR", "create", [parent_id], parent_amount, "remote_error", str(e))
            return SplitResult(status="remote_error", error=str(e))

        rows = [
            {
                self.kind.parent_key: parent_id,
                "project_id": s.project_id,
                "split_amount": s.split_amount,
                "split_percentage": calculate_split_percentage(s.split_amount, parent_amount),
                "notes": s.notes,
            }
            for s in splits
        ]
        try:
            created = self.client.insert(self.kind.split_table, rows)
        except RemoteError as e:
            return self._rollback_parent(parent_id, original_project_id, parent_amount, str(e))

        records = [SplitRecord.from_row(r, self.kind.parent_key) for r in created]
        self._audit("INFO", "create", [parent_id] + [s.project_id for s in splits], parent_amount, "ok")
        print(f"✅ {label} {parent_id} を {len(splits)} 案件に配賦しました")
        return SplitResult(status="ok", splits=records)

    def _rollback_parent(self, parent_id: str, original_project_id: Optional[str], amount: float,
                         cause: str) -> SplitResult:
        print(f"🔄 配賦行の作成に失敗したため {self.kind.label} {parent_id} を元に戻します: {cause}")
        try:
            self.client.update(self.kind.parent_table,
                               {"project_id": original_project_id, "is_split": False, "updated_at": _now()},
                               {"id": parent_id})
        except RemoteError as e:
            msg = f"{cause}; rollback failed: {e}"
            print(f"❌ {self.kind.label} {parent_id} の復元に失敗しました。手動で確認してください: {e}")
            self._audit("ERROR", "rollback", [parent_id, original_project_id], amount, "rollback_failed", msg)
            return SplitResult(status="rollback_failed", error=msg, rolled_back=False)

        self._audit("WARN", "rollback", [parent_id, original_project_id], amount, "rolled_back", cause)
        return SplitResult(status="rolled_back", error=cause, rolled_back=True)

    # ---- 削除 ----

    def _revert_target(self, parent_id: str) -> Optional[str]:
        """最初に作られた配賦行の案件。無いか、その案件が消えていれば未割当案件"""
        first = self.client.select(self.kind.split_table, columns="project_id, created_at",
                                   filters={self.kind.parent_key: parent_id}, order="created_at.asc", limit=1)
        if first and first[0].get("project_id") and self._project_exists(first[0]["project_id"]):
            return first[0]["project_id"]
        return self._project_id_by_number(self.unassigned_project_number)

    def delete_splits(self, parent_id: str) -> SplitResult:
        """配賦を解除する。親を先に戻してから配賦行を消す"""
        label = self.kind.label
        try:
            revert_project_id = self._revert_target(parent_id)
        except RemoteError as e:
            return SplitResult(status="remote_error", error=str(e))
        if not revert_project_id:
            return SplitResult(
                status="remote_error",
                error=(f"Cannot revert {label}: {self.unassigned_project_number} project not found "
                       f"and no splits exist"),
            )

        try:
            self.client.update(self.kind.parent_table,
                               {"project_id": revert_project_id, "is_split": False, "updated_at": _now()},
                               {"id": parent_id})
        except RemoteError as e:
            self._audit("ERROR", "delete", [parent_id], None, "remote_error", str(e))
            return SplitResult(status="remote_error", error=str(e))

        try:
            self.client.delete(self.kind.split_table, {self.kind.parent_key: parent_id})
        except RemoteError as e:
            # 親はもう未分割なので、残った配賦行は集計に使われない
            print(f"⚠️ {label} {parent_id} は戻しましたが配賦行の削除に失敗しました: {e}")
            self._audit("ERROR", "delete", [parent_id, revert_project_id], None, "remote_error", str(e))
            return SplitResult(status="remote_error", error=str(e))

        self._audit("INFO", "delete", [parent_id, revert_project_id], None, "ok")
        print(f"✅ {label} {parent_id} の配賦を解除しました（戻し先: {revert_project_id}）")
        return SplitResult(status="ok")

    # ---- 更新 ----

    def update_splits(self, parent_id: str, splits: List[SplitInput]) -> SplitResult:
        """配賦を作り直す

        delete_splits と同じく親を先に最初の配賦先へ戻してから配賦行を消し、
        そのあと create_splits で付け替える。どこで失敗しても、親は配賦行付きの
        配賦中か、未分割のどちらかになる。
        """
        label = self.kind.label
        try:
            check_split_inputs(splits, self.min_splits)
            parent = self.client.select_one(self.kind.parent_table, {"id": parent_id},
                                            columns="id, amount, is_split")
            if not parent:
                raise SplitValidationError(f"Parent {label} record not found")
            validation = validate_split_total(float(parent.get("amount") or 0),
                                              [s.split_amount for s in splits], self.tolerance, label)
            if not validation.valid:
                raise SplitValidationError(validation.error)
            was_split = bool(parent.get("is_split")) or self.has_splits(parent_id)
        except SplitValidationError as e:
            return SplitResult(status="validation_error", error=str(e))
        except RemoteError as e:
            return SplitResult(status="remote_error", error=str(e))

        if was_split:
            removed = self.delete_splits(parent_id)
            if not removed.success:
                return removed

        result = self.create_splits(parent_id, splits)
        if result.success:
            self._audit("INFO", "update", [parent_id], None, "ok")
        elif result.status == "remote_error":
            print(f"⚠️ {label} {parent_id} の配賦の作り直しに失敗しました。未分割に戻っています: {result.error}")
            self._audit("WARN", "update", [parent_id], None, "remote_error", result.error)
        return result


def load_records(client, kind: str, filters: Dict) -> List[FinancialRecord]:
    """経費/売上の行を FinancialRecord にする（配賦行は読み込まない）"""
    split_kind = SPLIT_KINDS[kind]
    date_key = "expense_date" if kind == "expense" else "invoice_date"
    rows = client.select(split_kind.parent_table, filters=filters)
    return [FinancialRecord.from_row(r, date_key=date_key) for r in rows]
