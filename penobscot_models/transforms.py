"""
Forward/inverse transforms for skewed predictors and responses.

Non-positive input to ``log`` (or input <= -1 to ``log1p``) raises DomainError
instead of quietly producing -inf/NaN that would flow into fits and plots.
"""

import numpy as np
import pandas as pd

from .errors import DomainError

KINDS = ("log", "log1p")

# model column -> (raw column, transform)
TRANSFORMED_PREDICTORS = {
    "log_turb": ("turbidity", "log"),
    "log_chl": ("chl", "log"),
    "log1p_herring": ("herring", "log1p"),
}


def _check_kind(kind: str):
    if kind not in KINDS:
        raise ValueError(f"unknown transform '{kind}', expected one of {KINDS}")


def check_domain(kind: str, values, name: str = "values"):
    _check_kind(kind)
    arr = np.asarray(values, dtype=float)
    finite = arr[~np.isnan(arr)]
    lower = 0.0 if kind == "log" else -1.0
    bad = finite[finite <= lower]
    if bad.size:
        shown = ", ".join(f"{v:g}" for v in bad[:5])
        raise DomainError(f"{kind} is undefined for {name} <= {lower:g} (got {shown})")


def forward(kind: str, values, name: str = "values"):
    """Apply ``kind`` to values (NaN stays NaN); series keep their index."""
    check_domain(kind, values, name)
    fn = np.log if kind == "log" else np.log1p
    if isinstance(values, pd.Series):
        return fn(values.astype(float))
    return fn(np.asarray(values, dtype=float))


def inverse(kind: str, values):
    _check_kind(kind)
    fn = np.exp if kind == "log" else np.expm1
    if isinstance(values, pd.Series):
        return fn(values.astype(float))
    return fn(np.asarray(values, dtype=float))


def raw_predictor(column: str) -> tuple:
    """(raw column, transform kind or None) for a model column."""
    return TRANSFORMED_PREDICTORS.get(column, (column, None))
