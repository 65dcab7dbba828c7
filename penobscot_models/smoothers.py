"""
Smooth and random-effect components for the penalized GAM engine.

Both classes plug into statsmodels' GLMGam through GenericSmoothers: GLMGam
penalizes each component with ``alpha * cov_der2``, so all a component has to
do is provide a basis, a ``transform`` for new data and its penalty matrix.

ShrinkageBSplines
    Centered cubic B-splines with a second-derivative penalty whose null space
    (the straight-line part) also gets a small penalty, so with a large enough
    weight the whole term shrinks to zero. This is the "cs"-style shrinkage
    smoother: term selection happens inside the fit.

RandomIntercepts
    Indicator columns for the levels of a grouping factor with an identity
    penalty, i.e. a random intercept written as a ridge-penalized smooth.
"""

import numpy as np
import pandas as pd
from statsmodels.gam.smooth_basis import UnivariateBSplines, UnivariateGamSmoother

from . import config
from .errors import DomainError


def shrink_penalty(penalty: np.ndarray, fraction: float = config.SHRINKAGE) -> np.ndarray:
    """Give the penalty's null space ``fraction`` x its smallest positive eigenvalue."""
    penalty = (penalty + penalty.T) / 2
    eigvals, eigvecs = np.linalg.eigh(penalty)
    top = eigvals.max()
    if top <= 0:
        return np.eye(penalty.shape[0]) * fraction
    positive = eigvals > top * 1e-8
    floor = fraction * eigvals[positive].min()
    eigvals = np.where(positive, eigvals, floor)
    return (eigvecs * eigvals) @ eigvecs.T


class ShrinkageBSplines(UnivariateBSplines):
    """``df`` B-splines (mgcv's k) centered to df - 1 columns."""

    def __init__(self, x, df=config.SPLINE_DF, degree=config.SPLINE_DEGREE,
                 shrinkage=config.SHRINKAGE, variable_name="x"):
        x = np.asarray(x, dtype=float)
        # transform() is called while the parent builds the penalty, so the
        # range has to exist first
        self.lower = float(x.min())
        self.upper = float(x.max())
        self.shrinkage = shrinkage
        super().__init__(x, df, degree=degree, include_intercept=True,
                         constraints="center", variable_name=variable_name)
        self.cov_der2 = shrink_penalty(self.cov_der2, shrinkage)

    def transform(self, x_new, deriv=0, skip_ctransf=False):
        x_new = np.asarray(x_new, dtype=float)
        tol = 1e-9 * max(self.upper - self.lower, 1.0)
        outside = (x_new < self.lower - tol) | (x_new > self.upper + tol)
        if outside.any():
            raise DomainError(
                f"{self.variable_name}: values {np.unique(x_new[outside])[:5].tolist()} fall outside "
                f"the fitted range [{self.lower:g}, {self.upper:g}] of the smooth term"
            )
        x_new = np.clip(x_new, self.lower, self.upper)
        return super().transform(x_new, deriv=deriv, skip_ctransf=skip_ctransf)


class RandomIntercepts(UnivariateGamSmoother):

    def __init__(self, x, variable_name="group"):
        values = pd.Series(np.asarray(x, dtype=object))
        self.levels = np.array(sorted(set(values.dropna().tolist())), dtype=object)
        super().__init__(values.to_numpy(), constraints=None, variable_name=variable_name)
        self.col_names = [f"{variable_name}[{level}]" for level in self.levels]

    def _smooth_basis_for_single_variable(self):
        basis = self.transform(self.x)
        return basis, None, None, np.eye(basis.shape[1])

    def transform(self, x_new):
        # unseen levels get an all-zero row: the population-level prediction
        x_new = np.asarray(x_new, dtype=object).reshape(-1, 1)
        return (x_new == self.levels.reshape(1, -1)).astype(float)

    def codes(self) -> np.ndarray:
        lookup = {level: i for i, level in enumerate(self.levels)}
        return np.array([lookup.get(v, -1) for v in self.x], dtype=float)
