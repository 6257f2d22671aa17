"""
単位・カテゴリの正規化

自由記述の単位/カテゴリを正規の列挙値に寄せる。I/Oなしの純粋関数のみ。
"""

import re
from typing import Dict, List, Optional, Tuple


# 見積明細カテゴリ
LABOR = "labor"
MATERIALS = "materials"
EQUIPMENT = "equipment"
SUBCONTRACTOR = "subcontractor"
PERMITS = "permits"
MANAGEMENT = "management"
OTHER = "other"

LINE_ITEM_CATEGORIES = (LABOR, MATERIALS, EQUIPMENT, SUBCONTRACTOR, PERMITS, MANAGEMENT, OTHER)

# 経費カテゴリ → 見積明細カテゴリ（多対一）
EXPENSE_TO_LINE_ITEM_CATEGORY = {
    "labor": LABOR,
    "subcontractor": SUBCONTRACTOR,
    "materials": MATERIALS,
    "equipment": EQUIPMENT,
    "permits": PERMITS,
    "management": MANAGEMENT,
    "tools": EQUIPMENT,
    "software": MANAGEMENT,
    "vehicle_maintenance": EQUIPMENT,
    "gas": EQUIPMENT,
    "meals": MANAGEMENT,
    "office_expenses": MANAGEMENT,
    "vehicle_expenses": EQUIPMENT,
    "other": OTHER,
}

EXPENSE_CATEGORIES = tuple(EXPENSE_TO_LINE_ITEM_CATEGORY.keys())

# 表記ゆれ → 正規カテゴリ。先にマッチしたものを採用するので順序に意味がある
CATEGORY_KEYWORDS: List[Tuple[str, Tuple[str, ...]]] = [
    (SUBCONTRACTOR, ("subcontract", "sub contractor", "subs", "contractor", "contract labor")),
    (LABOR, ("labor", "labour", "wage", "payroll", "labor_internal", "internal")),
    (MATERIALS, ("material", "supply", "supplies", "lumber", "concrete", "dumpster")),
    (EQUIPMENT, ("equipment", "rental", "tool", "machinery")),
    (PERMITS, ("permit", "license", "fee")),
    (MANAGEMENT, ("management", "supervision", "admin", "office", "project manager")),
]

# 会計ソフトの勘定科目パス → 経費カテゴリ
ACCOUNT_CATEGORY_MAP = {
    "cost of goods sold:contract labor": "subcontractor",
    "cost of goods sold:supplies & materials": "materials",
    "cost of goods sold:equipment rental - cogs": "equipment",
    "cost of goods sold:equipment rental": "equipment",
    "cost of goods sold:job site dumpsters": "materials",
    "office expenses:office equipment & supplies": "office_expenses",
    "vehicle expenses:vehicle gas & fuel": "gas",
    "vehicle expenses:vehicle repairs": "vehicle_maintenance",
    "general business expenses:uniforms": "management",
    "rent:building & land rent": "management",
    "insurance:business insurance": "management",
    "legal & accounting services:legal fees": "management",
}

# 単位マスタ: code -> (名称, グループ)
CONSTRUCTION_UNITS: Dict[str, Tuple[str, str]] = {
    "EA": ("Each", "count"),
    "IN": ("Inch", "length"),
    "FT": ("Foot", "length"),
    "LF": ("Linear Foot", "length"),
    "YD": ("Yard", "length"),
    "M": ("Meter", "length"),
    "SF": ("Square Foot", "area"),
    "SY": ("Square Yard", "area"),
    "SQ": ("Square (100 SF)", "area"),
    "ACRE": ("Acre", "area"),
    "SM": ("Square Meter", "area"),
    "CF": ("Cubic Foot", "volume"),
    "CY": ("Cubic Yard", "volume"),
    "CM3": ("Cubic Meter", "volume"),
    "LB": ("Pound", "weight"),
    "TON": ("Ton", "weight"),
    "KG": ("Kilogram", "weight"),
    "HR": ("Hour", "time"),
    "DAY": ("Day", "time"),
    "WK": ("Week", "time"),
    "MO": ("Month", "time"),
    "PT": ("Pint", "liquid"),
    "QT": ("Quart", "liquid"),
    "GAL": ("Gallon", "liquid"),
    "L": ("Liter", "liquid"),
    "BAG": ("Bag", "material"),
    "ROLL": ("Roll", "material"),
    "BOX": ("Box", "material"),
    "PALLET": ("Pallet", "material"),
    "SHEET": ("Sheet", "material"),
    "LS": ("Lump Sum", "count"),
}

UNIT_ALIASES = {
    "each": "EA", "ea.": "EA", "pc": "EA", "pcs": "EA", "piece": "EA",
    "lin ft": "LF", "linear ft": "LF", "linear feet": "LF", "l.f.": "LF",
    "sq ft": "SF", "sqft": "SF", "square feet": "SF", "s.f.": "SF", "ft2": "SF",
    "square": "SQ", "squares": "SQ",
    "cu yd": "CY", "cubic yard": "CY", "cubic yards": "CY", "yd3": "CY",
    "cu ft": "CF", "cubic feet": "CF",
    "hour": "HR", "hours": "HR", "hrs": "HR", "hr.": "HR",
    "days": "DAY", "week": "WK", "weeks": "WK", "month": "MO", "months": "MO",
    "gallon": "GAL", "gallons": "GAL", "lbs": "LB", "pound": "LB", "pounds": "LB",
    "tons": "TON", "bags": "BAG", "rolls": "ROLL", "boxes": "BOX", "sheets": "SHEET",
    "lump sum": "LS", "lot": "LS",
}

# 単位グループ。material と count は互いに互換とみなす
_COMPATIBLE_GROUPS = {"material": "count"}

CATEGORY_UNIT_RECOMMENDATIONS = {
    LABOR: ["HR", "DAY", "WK"],
    MATERIALS: ["SF", "LF", "EA", "BAG", "ROLL", "BOX", "PALLET", "SHEET", "CY", "CF", "GAL", "LB", "TON"],
    EQUIPMENT: ["HR", "DAY", "WK", "MO", "EA"],
}


def normalize_category(text: Optional[str], default: str = OTHER) -> str:
    """自由記述のカテゴリを見積明細カテゴリに寄せる"""
    if not text:
        return default
    s = text.strip().lower()
    if s in LINE_ITEM_CATEGORIES:
        return s
    if s in EXPENSE_TO_LINE_ITEM_CATEGORY:
        return EXPENSE_TO_LINE_ITEM_CATEGORY[s]
    if s == "subcontractors":
        return SUBCONTRACTOR
    for category, keywords in CATEGORY_KEYWORDS:
        if any(k in s for k in keywords):
            return category
    return default


def line_item_category_for_expense(expense_category: Optional[str]) -> Optional[str]:
    if not expense_category:
        return None
    return EXPENSE_TO_LINE_ITEM_CATEGORY.get(expense_category.strip().lower())


def categories_compatible(expense_category: Optional[str], line_item_category: Optional[str]) -> bool:
    target = line_item_category_for_expense(expense_category)
    return target is not None and target == normalize_category(line_item_category, default="")


def categorize_expense(description: str, account_path: Optional[str] = None) -> str:
    """経費カテゴリを推定する。勘定科目パス → 摘要キーワード → other の順。"""
    if account_path:
        mapped = ACCOUNT_CATEGORY_MAP.get(account_path.strip().lower())
        if mapped:
            return mapped
        by_account = _keyword_category(account_path)
        if by_account:
            return by_account

    by_description = _keyword_category(description or "")
    return by_description or "other"


def _keyword_category(text: str) -> Optional[str]:
    s = text.lower()
    if "gas" in s or "fuel" in s:
        return "gas"
    if "vehicle" in s:
        return "vehicle_expenses"
    if "software" in s or "subscription" in s:
        return "software"
    if "meal" in s or "restaurant" in s:
        return "meals"
    if "tool" in s:
        return "tools"
    category = normalize_category(s, default="")
    return category or None


def normalize_unit(text: Optional[str], default: str = "EA") -> str:
    if not text:
        return default
    s = text.strip()
    upper = s.upper().rstrip(".")
    if upper in CONSTRUCTION_UNITS:
        return upper
    return UNIT_ALIASES.get(s.lower(), default)


def unit_group(code: Optional[str]) -> Optional[str]:
    if not code or code not in CONSTRUCTION_UNITS:
        return None
    group = CONSTRUCTION_UNITS[code][1]
    return _COMPATIBLE_GROUPS.get(group, group)


def validate_unit_compatibility(estimate_unit: Optional[str], quote_unit: Optional[str]) -> Tuple[bool, str]:
    if not estimate_unit and not quote_unit:
        return True, "No units specified"
    if estimate_unit == quote_unit:
        return True, "Units match"
    g1, g2 = unit_group(estimate_unit), unit_group(quote_unit)
    if g1 and g1 == g2:
        return True, "Compatible units within same category"
    return False, f"Unit mismatch: {estimate_unit or 'none'} vs {quote_unit or 'none'}"


def recommended_units(category: str) -> List[str]:
    return CATEGORY_UNIT_RECOMMENDATIONS.get(category, ["EA"])


_CURRENCY_STRIP = re.compile(r"[$,\s()]")


def parse_currency(value) -> Optional[float]:
    """'$1,234.50' / '(200)' / '-' を数値化。解釈できなければ None。"""
    if value is None:
        return None
    if isinstance(value, (int, float)):
        return float(value)
    s = str(value).strip()
    if not s:
        return None
    negative = s.startswith("(") and s.endswith(")")
    cleaned = _CURRENCY_STRIP.sub("", s)
    if cleaned in ("", "-"):
        return 0.0
    try:
        num = float(cleaned)
    except ValueError:
        return None
    return -abs(num) if negative else num


def parse_percent(value) -> Optional[float]:
    """パーセント単位で返す。'25%' → 25.0、'0.25' → 25.0、'25' → 25.0"""
    if value is None:
        return None
    if isinstance(value, (int, float)):
        num = float(value)
        return num * 100 if 0 < num <= 1 else num
    s = str(value).strip().replace(" ", "")
    if not s:
        return None
    has_sign = "%" in s
    try:
        num = float(s.replace("%", ""))
    except ValueError:
        return None
    if has_sign:
        return num
    return num * 100 if 0 < num <= 1 else num


def round2(value: float) -> float:
    return round(float(value), 2)
