"""Outcome correlation for feature influence.

Scores each column by the absolute correlation between its values and the
favorable-outcome indicator. Categorical columns are integer-coded first.
"""
from typing import Dict

import pandas as pd

from .utils import coerce_numeric, is_favorable, is_missing


def _encode(s: pd.Series) -> pd.Series:
    numeric = coerce_numeric(s)
    if numeric is not None:
        return numeric
    return pd.Series(
        pd.Categorical(s.map(lambda v: "missing" if is_missing(v) else str(v))).codes,
        index=s.index,
        dtype=float,
    )


def explain_feature_influence(df: pd.DataFrame, outcome: str) -> Dict[str, float]:
    """Return ``{column: |corr(column, outcome)|}`` sorted by influence, descending.

    Rows with a missing outcome are excluded. Constant columns (undefined
    correlation) score 0.0.
    """
    if outcome not in df.columns:
        return {}
    rows = df[~df[outcome].map(is_missing).astype(bool)]
    if len(rows) < 2:
        return {}
    target = rows[outcome].map(is_favorable).astype(float)

    influence: Dict[str, float] = {}
    for c in rows.columns:
        if c == outcome:
            continue
        corr_val = abs(_encode(rows[c]).corr(target))
        influence[c] = float(corr_val) if corr_val == corr_val else 0.0  # NaN check
    return dict(sorted(influence.items(), key=lambda x: x[1], reverse=True))
