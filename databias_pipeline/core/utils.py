"""Utility functions for record inspection.

Includes missing-value and favorable-outcome predicates, numeric coercion and
detection of binary and outcome-like columns.
"""
from typing import Any, List, Optional
import math

import pandas as pd

FAVORABLE_STRINGS = {"1", "true", "yes", "approved"}
OUTCOME_KEYWORDS = ["target", "label", "outcome", "result", "accepted", "approved", "hired", "decision", "selected", "churn"]


def is_missing(value: Any) -> bool:
    """Null, NaN or empty string."""
    if value is None:
        return True
    if isinstance(value, float) and math.isnan(value):
        return True
    return isinstance(value, str) and value == ""


def is_favorable(value: Any) -> bool:
    """True for truthy outcome encodings: True, 1, "1", "true", "yes", "approved"."""
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value == 1
    if isinstance(value, str):
        return value.strip().lower() in FAVORABLE_STRINGS
    return False


def present_values(s: pd.Series) -> pd.Series:
    """Drop null, NaN and empty-string entries."""
    mask = s.map(lambda v: not is_missing(v))
    return s[mask.astype(bool)]


def coerce_numeric(s: pd.Series) -> Optional[pd.Series]:
    """Return the series as floats when every value parses as a number, else None.

    Values go through ``str`` first so booleans and mixed objects are rejected
    rather than silently cast.
    """
    if s.empty:
        return None
    as_num = pd.to_numeric(s.map(lambda v: str(v).strip()), errors="coerce")
    if as_num.isna().any():
        return None
    return as_num.astype(float)


def detect_binary_columns(df: pd.DataFrame, max_unique: int = 2) -> List[str]:
    """Return columns with between one and `max_unique` unique non-missing values."""
    binary_cols: List[str] = []
    for col in df.columns:
        uniq = present_values(df[col]).map(str).nunique()
        if 0 < uniq <= max_unique:
            binary_cols.append(col)
    return binary_cols


def detect_outcome_column(df: pd.DataFrame) -> Optional[str]:
    """Pick a binary column whose name looks like an outcome, or None.

    Only outcome-like names qualify; an arbitrary binary column is never
    promoted to outcome.
    """
    candidates = detect_binary_columns(df)
    preferred = [c for c in candidates if any(k in str(c).lower() for k in OUTCOME_KEYWORDS)]
    return preferred[0] if preferred else None
