"""Marginal (partial-dependence style) predictions over one focal predictor."""

import logging
from dataclasses import dataclass
from typing import Callable, Mapping, Optional, Union

import numpy as np
import pandas as pd

from . import config
from .errors import ModelSpecError
from .models import FittedModel
from .transforms import TRANSFORMED_PREDICTORS, forward, raw_predictor

logger = logging.getLogger(__name__)


@dataclass
class MarginalGrid:
    focal: str
    column: str
    transform: Optional[str]
    values: np.ndarray
    model_values: np.ndarray
    predicted: np.ndarray
    lower: np.ndarray
    upper: np.ndarray
    level: float
    response: str
    scale: str
    categorical: bool
    reference: dict

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame({
            self.focal: self.values,
            "model_value": self.model_values,
            "predicted": self.predicted,
            "lower": self.lower,
            "upper": self.upper,
        })


def _resolve_focal(fitted: FittedModel, focal: str):
    """(model column, raw column, transform) for a focal name given raw or transformed."""
    predictors = fitted.spec.predictors
    if focal in predictors:
        raw, kind = raw_predictor(focal)
        if kind is not None and raw in fitted.data.columns:
            return focal, raw, kind
        return focal, focal, None
    for column, (raw, kind) in TRANSFORMED_PREDICTORS.items():
        if raw == focal and column in predictors:
            return column, raw, kind
    raise ModelSpecError(f"'{focal}' is not a predictor of {fitted.spec.label}")


def _is_categorical(series: pd.Series, grouping: bool = False) -> bool:
    return grouping or not pd.api.types.is_numeric_dtype(series) or isinstance(series.dtype, pd.CategoricalDtype)


def _typical_value(series: pd.Series, typical: Union[str, Callable], grouping: bool = False):
    if _is_categorical(series, grouping):
        return series.mode().iloc[0]
    if callable(typical):
        return typical(series)
    if typical == "median":
        return series.median()
    if typical == "mean":
        return series.mean()
    raise ValueError("typical must be 'median', 'mean' or a callable")


def _reference_values(fitted: FittedModel, exclude: str, typical, at: Optional[Mapping]) -> dict:
    at = dict(at or {})
    unknown = [k for k in at if k not in fitted.spec.predictors]
    if unknown:
        raise ModelSpecError(f"cannot hold {unknown} fixed: not predictors of {fitted.spec.label}")
    base = {}
    for col in fitted.spec.predictors:
        if col == exclude:
            continue
        grouping = col in fitted.spec.factors or col in fitted.spec.random
        base[col] = at[col] if col in at else _typical_value(fitted.data[col], typical, grouping)
    return base


def _as_column(series: pd.Series, values):
    # keep the fitted categories so patsy rebuilds the same contrasts
    if isinstance(series.dtype, pd.CategoricalDtype):
        return pd.Categorical(values, categories=series.cat.categories, ordered=series.cat.ordered)
    return values


def marginal_prediction(fitted: FittedModel, focal: str, grid=None, n: int = config.GRID_SIZE,
                        typical: Union[str, Callable] = "median", at: Optional[Mapping] = None,
                        level: float = config.CI_LEVEL, scale: str = "response") -> MarginalGrid:
    """
    Predict the response across ``focal`` with everything else held fixed.

    Other numeric predictors sit at their typical value (median by default),
    categorical ones at their most common level, and random intercepts at the
    population level. ``grid`` is in raw units (turbidity in NTU, not log NTU);
    when the model uses a transformed column it is transformed here, so a zero
    turbidity raises DomainError. ``at`` overrides the reference value of
    named predictors.

    A categorical focal predictor gives one row per level.
    """
    column, raw, kind = _resolve_focal(fitted, focal)
    data = fitted.data
    grouping = column in fitted.spec.factors or column in fitted.spec.random
    categorical = _is_categorical(data[column], grouping)

    if grid is None:
        if categorical:
            observed = data[column]
            if isinstance(observed.dtype, pd.CategoricalDtype):
                values = np.array([c for c in observed.cat.categories if (observed == c).any()], dtype=object)
            else:
                values = np.array(sorted(observed.unique()), dtype=object)
        else:
            source = data[raw].astype(float)
            values = np.linspace(source.min(), source.max(), n)
    else:
        values = np.asarray(grid, dtype=object if categorical else float)
        if values.ndim != 1 or values.size == 0:
            raise ValueError("grid must be a non-empty 1-D sequence")

    model_values = forward(kind, values, name=raw) if kind else values
    reference = _reference_values(fitted, column, typical, at)

    newdata = pd.DataFrame({column: _as_column(data[column], model_values)})
    for col, value in reference.items():
        newdata[col] = _as_column(data[col], [value] * len(newdata))

    include_random = [column] if categorical and column in fitted.spec.random else False
    pred = fitted.predict(newdata, level=level, scale=scale, include_random=include_random)
    logger.debug("Marginal %s over %s: %d grid points", fitted.spec.response, focal, len(values))

    return MarginalGrid(
        focal=raw if kind else column,
        column=column,
        transform=kind,
        values=values,
        model_values=np.asarray(model_values),
        predicted=pred["mean"].to_numpy(),
        lower=pred["lower"].to_numpy(),
        upper=pred["upper"].to_numpy(),
        level=level,
        response=fitted.spec.response,
        scale=scale,
        categorical=categorical,
        reference=reference,
    )
