"""Residual and influence tables for a fitted model."""

import logging

import numpy as np
import pandas as pd

from . import config
from .models import FittedModel

logger = logging.getLogger(__name__)


def residual_table(fitted: FittedModel) -> pd.DataFrame:
    """
    Per-row residual diagnostics, indexed like the rows used in the fit.

    Everything is on the scale the model was fitted on (log density for a
    log-response Gaussian). Pearson residuals divide by sqrt(scale * V(mu));
    standardized residuals also divide by sqrt(1 - leverage). Cook's distance
    uses the total effective degrees of freedom as p.
    """
    mu = fitted.fitted_values
    resid = fitted.endog - mu
    variance = fitted.family.variance(mu.to_numpy())
    pearson = resid / np.sqrt(fitted.scale * variance)
    h = fitted.leverage().clip(upper=1 - 1e-10)
    std_resid = pearson / np.sqrt(1 - h)
    p = float(fitted.edf.sum())
    cooks = std_resid ** 2 * h / (p * (1 - h))
    return pd.DataFrame({
        "observed": fitted.endog,
        "fitted": mu,
        "residual": resid,
        "pearson": pearson,
        "std_resid": std_resid,
        "leverage": h,
        "cooks_d": cooks,
    })


def influence_thresholds(fitted: FittedModel) -> dict:
    n = fitted.nobs
    p = float(fitted.edf.sum())
    return {
        "leverage": config.LEVERAGE_MULTIPLIER * p / n,
        "std_resid": config.RESIDUAL_CUTOFF,
        "cooks_d": 4.0 / n,
    }


def flag_influential(fitted: FittedModel) -> pd.DataFrame:
    """
    Rows with high leverage, a large standardized residual or a large Cook's
    distance, with the reasons. Reporting only: nothing is dropped.
    """
    table = residual_table(fitted)
    limits = influence_thresholds(fitted)
    checks = {
        "high leverage": table["leverage"] > limits["leverage"],
        "large residual": table["std_resid"].abs() > limits["std_resid"],
        "high Cook's D": table["cooks_d"] > limits["cooks_d"],
    }
    reasons = pd.Series(
        ["; ".join(label for label, hit in checks.items() if hit[idx]) for idx in table.index],
        index=table.index,
    )

    flagged = table.loc[reasons != ""].copy()
    flagged["reasons"] = reasons[reasons != ""]
    extra = [c for c in ("date", "station", "SampleEvent") if c in fitted.data.columns]
    if extra:
        flagged = fitted.data.loc[flagged.index, extra].join(flagged)
    logger.info("%s: %d of %d rows flagged as influential", fitted.spec.label, len(flagged), len(table))
    return flagged.sort_values("cooks_d", ascending=False)
