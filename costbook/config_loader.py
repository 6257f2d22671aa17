import os
import yaml
from dotenv import load_dotenv


load_dotenv()

DEFAULTS = {
    "import": {
        "default_markup_percent": 25.0,
        "labor_billing_rate": 75.0,
        "labor_actual_rate": 35.0,
        "header_scan_rows": 5,
        "budget_header_scan_rows": 60,
        "metadata_keywords": ["quickbooks", "transaction report", "report", "akc llc"],
        "internal_vendor": "RCG",
    },
    "splits": {
        "tolerance": 0.01,
        "min_splits": 2,
        "system_project_number": "SYS-000",
        "unassigned_project_number": "000-UNASSIGNED",
    },
    "matching": {
        "payee_thresholds": {"high": 90, "medium": 75, "low": 60},
        "amount_thresholds": {"close": 5, "near": 10, "loose": 20},
        "auto_match_threshold": 75,
        "review_threshold": 40,
        "stopwords": ["the", "and", "for", "with", "from"],
    },
    "compound": {
        # 常に分割する区切り
        "strong_separators": [r"\s+\+\s+", r"\s*;\s*"],
        # 両側にコスト種別語があるときだけ分割する区切り
        "weak_separators": [r"\s+and\s+", r"\s*&\s*"],
        "epsilon": 0.01,
    },
}


def _config_path() -> str:
    # テストで monkeypatch した環境変数に追従するため毎回参照する
    default = os.path.join(os.path.dirname(os.path.dirname(__file__)), "config", "costbook.yml")
    return os.getenv("COSTBOOK_CONFIG", default)


def load_config() -> dict:
    path = _config_path()
    try:
        with open(path, "r", encoding="utf-8") as f:
            cfg = yaml.safe_load(f) or {}
    except FileNotFoundError:
        return DEFAULTS

    # shallow merge defaults
    merged = dict(DEFAULTS)
    for k, v in (cfg or {}).items():
        if isinstance(v, dict) and isinstance(merged.get(k), dict):
            mv = dict(merged[k])
            mv.update(v)
            merged[k] = mv
        else:
            merged[k] = v
    return merged


def is_dry_run() -> bool:
    return os.getenv("DRY_RUN", "false").lower() == "true"
