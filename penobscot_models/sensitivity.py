"""Refit-without-a-row checks for influential observations."""

import logging
from typing import Iterable, Optional, Sequence

import numpy as np
import pandas as pd

from .errors import ModelSpecError
from .models import FittedModel, fit_model

logger = logging.getLogger(__name__)


def refit_excluding(fitted: FittedModel, indices: Iterable, reselect_penalty: bool = False) -> FittedModel:
    """
    Refit the same spec without the rows labelled ``indices``.

    GAM fits keep the smoothing weights of the original fit unless
    ``reselect_penalty`` is set, so a coefficient change reflects the rows
    and not a different amount of smoothing.
    """
    indices = list(indices)
    unknown = [i for i in indices if i not in fitted.data.index]
    if unknown:
        raise ModelSpecError(f"rows {unknown} were not used in the fit")
    spec = fitted.spec
    if fitted.engine == "gam" and not reselect_penalty and fitted.alpha is not None:
        spec = spec.replace(penalty=fitted.penalty_weights())
    kwds = {"criterion": fitted.criterion} if fitted.criterion else {}
    logger.info("Refitting %s without rows %s", fitted.spec.label, indices)
    return fit_model(spec, fitted.data.drop(index=indices), **kwds)


def compare_coefficients(a: FittedModel, b: FittedModel) -> pd.DataFrame:
    """Parametric coefficients of two fits side by side, with absolute and relative change."""
    left = a.coefficients().set_index("term")
    right = b.coefficients().set_index("term")
    table = pd.DataFrame({
        "estimate_a": left["estimate"],
        "std_error_a": left["std_error"],
        "estimate_b": right["estimate"],
        "std_error_b": right["std_error"],
    })
    table["change"] = table["estimate_b"] - table["estimate_a"]
    denom = table["estimate_a"].abs().replace(0, np.nan)
    table["relative_change"] = table["change"].abs() / denom
    table["sign_flip"] = np.sign(table["estimate_a"]) != np.sign(table["estimate_b"])
    return table.reset_index().rename(columns={"index": "term"})


def leave_one_out(fitted: FittedModel, terms: Optional[Sequence[str]] = None,
                  indices: Optional[Iterable] = None) -> pd.DataFrame:
    """
    Coefficient changes from dropping each row in turn.

    indices limits the refits to some rows (e.g. those flag_influential
    reports); terms limits the columns reported.
    """
    base = fitted.coefficients().set_index("term")["estimate"]
    terms = list(base.index) if terms is None else list(terms)
    missing = [t for t in terms if t not in base.index]
    if missing:
        raise ModelSpecError(f"not parametric coefficients: {missing}")

    rows = []
    for idx in (fitted.data.index if indices is None else indices):
        refit = refit_excluding(fitted, [idx])
        est = refit.coefficients().set_index("term")["estimate"]
        row = {"row": idx}
        for term in terms:
            row[term] = est[term] - base[term]
        row["flagged"] = refit.flagged
        rows.append(row)
    return pd.DataFrame(rows).set_index("row")
