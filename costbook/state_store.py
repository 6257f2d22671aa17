import json
import os
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Dict, List, Optional


def _get_db_path() -> str:
    """環境変数から毎回DBパスを取得（テストでの monkeypatch に追従するため）。"""
    return os.getenv("COSTBOOK_STATE_DB", "costbook_state.db")


@contextmanager
def _conn():
    con = sqlite3.connect(_get_db_path())
    con.execute("PRAGMA journal_mode=WAL;")
    try:
        yield con
        con.commit()
    finally:
        con.close()


def init_db():
    with _conn() as con:
        con.execute(
            """
            CREATE TABLE IF NOT EXISTS import_batches (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              kind TEXT,
              file_name TEXT,
              file_sha1 TEXT,
              rows_read INTEGER,
              rows_imported INTEGER,
              warning_count INTEGER,
              warnings_json TEXT,
              created_at TEXT
            );
            """
        )
        con.execute(
            """
            CREATE TABLE IF NOT EXISTS audit_log (
              ts TEXT,
              level TEXT,
              actor TEXT,
              action TEXT,
              target_ids TEXT,
              amount REAL,
              result TEXT,
              error TEXT
            );
            """
        )


def write_audit(level: str, actor: str, action: str, target_ids: list, amount: Optional[float], result: str,
                error: Optional[str] = None):
    with _conn() as con:
        con.execute(
            "INSERT INTO audit_log(ts, level, actor, action, target_ids, amount, result, error) VALUES (?,?,?,?,?,?,?,?)",
            (datetime.now(timezone.utc).isoformat(), level, actor, action, json.dumps(target_ids), amount, result, error),
        )


def list_audit(action_prefix: Optional[str] = None, limit: int = 100) -> List[Dict]:
    with _conn() as con:
        if action_prefix:
            cur = con.execute(
                "SELECT ts, level, actor, action, target_ids, amount, result, error FROM audit_log "
                "WHERE action LIKE ? ORDER BY rowid DESC LIMIT ?",
                (f"{action_prefix}%", limit),
            )
        else:
            cur = con.execute(
                "SELECT ts, level, actor, action, target_ids, amount, result, error FROM audit_log "
                "ORDER BY rowid DESC LIMIT ?",
                (limit,),
            )
        rows = cur.fetchall()
    return [
        {
            "ts": ts,
            "level": level,
            "actor": actor,
            "action": action,
            "target_ids": json.loads(target_ids or "[]"),
            "amount": amount,
            "result": result,
            "error": error,
        }
        for ts, level, actor, action, target_ids, amount, result, error in rows
    ]


def record_import_batch(kind: str, file_name: str, rows_read: int, rows_imported: int,
                        warnings: List[Dict], file_sha1: Optional[str] = None) -> int:
    """取込1回分の集計を記録し、バッチIDを返す"""
    with _conn() as con:
        cur = con.execute(
            "INSERT INTO import_batches(kind, file_name, file_sha1, rows_read, rows_imported, warning_count, "
            "warnings_json, created_at) VALUES (?,?,?,?,?,?,?,?)",
            (
                kind,
                file_name,
                file_sha1,
                rows_read,
                rows_imported,
                len(warnings),
                json.dumps(warnings, ensure_ascii=False),
                datetime.now(timezone.utc).isoformat(),
            ),
        )
        return cur.lastrowid


def list_import_batches(kind: Optional[str] = None, limit: int = 20) -> List[Dict]:
    with _conn() as con:
        sql = ("SELECT id, kind, file_name, file_sha1, rows_read, rows_imported, warning_count, warnings_json, "
               "created_at FROM import_batches")
        params: tuple = ()
        if kind:
            sql += " WHERE kind=?"
            params = (kind,)
        sql += " ORDER BY id DESC LIMIT ?"
        cur = con.execute(sql, params + (limit,))
        rows = cur.fetchall()
    return [
        {
            "id": bid,
            "kind": k,
            "file_name": file_name,
            "file_sha1": sha1,
            "rows_read": rows_read,
            "rows_imported": rows_imported,
            "warning_count": warning_count,
            "warnings": json.loads(warnings_json or "[]"),
            "created_at": created_at,
        }
        for bid, k, file_name, sha1, rows_read, rows_imported, warning_count, warnings_json, created_at in rows
    ]


def find_batch_by_sha1(file_sha1: str) -> Optional[Dict]:
    """同じ内容のファイルを以前に取り込んでいればそのバッチを返す"""
    with _conn() as con:
        cur = con.execute(
            "SELECT id, kind, file_name, created_at FROM import_batches WHERE file_sha1=? ORDER BY id LIMIT 1",
            (file_sha1,),
        )
        row = cur.fetchone()
    if not row:
        return None
    bid, kind, file_name, created_at = row
    return {"id": bid, "kind": kind, "file_name": file_name, "created_at": created_at}
