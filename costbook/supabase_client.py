import os
import time
from typing import Dict, List, Optional

import requests

from costbook.errors import RemoteError


RETRY_STATUS = (429, 500, 502, 503, 504)


def _call_with_backoff(method, url, headers=None, json=None, params=None, max_retries=5, timeout=30):
    backoff = 1
    r = None
    for i in range(max_retries):
        r = requests.request(method, url, headers=headers, json=json, params=params, timeout=timeout)
        if r.status_code not in RETRY_STATUS:
            r.raise_for_status()
            return r
        time.sleep(backoff)
        backoff = min(backoff * 2, 16)
    r.raise_for_status()
    return r


def _filter_params(filters: Optional[Dict]) -> Dict[str, str]:
    """{"id": "x", "project_id": ["a", "b"], "deleted_at": None} → PostgREST の演算子付きクエリ"""
    params = {}
    for column, value in (filters or {}).items():
        if value is None:
            params[column] = "is.null"
        elif isinstance(value, (list, tuple, set)):
            params[column] = "in.(" + ",".join(str(v) for v in value) + ")"
        elif isinstance(value, bool):
            params[column] = f"eq.{str(value).lower()}"
        else:
            params[column] = f"eq.{value}"
    return params


class SupabaseClient:
    """Supabase (PostgREST) クライアント

    テーブル操作は行の dict のリストを返す。失敗は RemoteError にして投げる。
    """

    def __init__(self, url: str, api_key: str):
        self.url = url.rstrip("/")
        self.base_url = f"{self.url}/rest/v1"
        self.headers = {
            "apikey": api_key,
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
            "Prefer": "return=representation",
        }

    @classmethod
    def from_env(cls) -> "SupabaseClient":
        url = os.getenv("SUPABASE_URL")
        key = os.getenv("SUPABASE_KEY")
        if not url or not key:
            raise RemoteError("-", "connect", "SUPABASE_URL and SUPABASE_KEY must be set")
        return cls(url, key)

    def _request(self, method: str, table: str, operation: str, params: Dict = None, json=None) -> List[Dict]:
        url = f"{self.base_url}/{table}"
        try:
            r = _call_with_backoff(method, url, headers=self.headers, json=json, params=params)
        except requests.exceptions.HTTPError as e:
            status = e.response.status_code if e.response is not None else None
            detail = e.response.text if e.response is not None else str(e)
            raise RemoteError(table, operation, detail, status) from e
        except requests.exceptions.RequestException as e:
            raise RemoteError(table, operation, str(e)) from e

        if not r.content:
            return []
        data = r.json()
        return data if isinstance(data, list) else [data]

    def select(self, table: str, columns: str = "*", filters: Optional[Dict] = None,
               order: Optional[str] = None, limit: Optional[int] = None) -> List[Dict]:
        """行を取得。columns には埋め込み（"*, projects(project_name)"）も書ける"""
        params = {"select": columns}
        params.update(_filter_params(filters))
        if order:
            params["order"] = order
        if limit:
            params["limit"] = str(limit)
        return self._request("GET", table, "select", params=params)

    def select_one(self, table: str, filters: Dict, columns: str = "*") -> Optional[Dict]:
        rows = self.select(table, columns=columns, filters=filters, limit=1)
        return rows[0] if rows else None

    def insert(self, table: str, rows: List[Dict]) -> List[Dict]:
        if not rows:
            return []
        return self._request("POST", table, "insert", json=rows)

    def update(self, table: str, values: Dict, filters: Dict) -> List[Dict]:
        # フィルタなしの update は全行更新になるので受け付けない
        if not filters:
            raise RemoteError(table, "update", "refusing to update without filters")
        return self._request("PATCH", table, "update", params=_filter_params(filters), json=values)

    def delete(self, table: str, filters: Dict) -> List[Dict]:
        if not filters:
            raise RemoteError(table, "delete", "refusing to delete without filters")
        return self._request("DELETE", table, "delete", params=_filter_params(filters))

    def invoke_function(self, name: str, payload: Dict) -> Dict:
        """Edge Function を呼ぶ"""
        url = f"{self.url}/functions/v1/{name}"
        try:
            r = _call_with_backoff("POST", url, headers=self.headers, json=payload)
        except requests.exceptions.RequestException as e:
            raise RemoteError(name, "invoke", str(e)) from e
        return r.json() if r.content else {}
