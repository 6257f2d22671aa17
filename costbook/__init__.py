"""
costbook

予算シートの取込、見積明細への変換、経費/売上の分割配賦、
明細マッチング候補の提示を行う工事会計ユーティリティ。
"""

__version__ = "0.4.0"

from costbook.models import (
    ImportWarning,
    ColumnMapping,
    BudgetRow,
    NormalizedLineItem,
    SplitInput,
    SplitRecord,
    SplitResult,
    FinancialRecord,
    MatchCandidate,
    MatchScore,
)

__all__ = [
    "ImportWarning",
    "ColumnMapping",
    "BudgetRow",
    "NormalizedLineItem",
    "SplitInput",
    "SplitRecord",
    "SplitResult",
    "FinancialRecord",
    "MatchCandidate",
    "MatchScore",
]
