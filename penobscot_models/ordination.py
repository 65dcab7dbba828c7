"""
Community ordination of the taxa table.

NMDS on Bray-Curtis dissimilarities of log1p densities, then environmental
vectors fitted onto the ordination (direction cosines, r^2 and a permutation
p-value per predictor). Both steps are randomised; pass random_state to
reproduce a run.
"""

import logging
from dataclasses import dataclass
from typing import Sequence

import numpy as np
import pandas as pd
from scipy.spatial.distance import pdist, squareform
from sklearn.manifold import smacof

from . import config
from .errors import EmptyDataError, ModelSpecError
from .transforms import forward

logger = logging.getLogger(__name__)


@dataclass
class Ordination:
    scores: pd.DataFrame
    species: pd.DataFrame
    stress: float
    taxa: list
    dropped: pd.Index


def nmds(df: pd.DataFrame, taxa: Sequence[str] = tuple(config.TAXA), k: int = 2,
         random_state: int = 0, n_init: int = 10, max_iter: int = 300) -> Ordination:
    """
    Non-metric MDS of the community table.

    Rows with a missing taxon or with no individuals at all are left out
    (Bray-Curtis is undefined for an empty sample); their labels are kept in
    ``dropped``. Species scores are abundance-weighted averages of the site
    scores.
    """
    taxa = list(taxa)
    missing = [t for t in taxa if t not in df.columns]
    if missing:
        raise ModelSpecError(f"taxa not in the data: {missing}")

    community = df[taxa].dropna()
    community = community.loc[community.sum(axis=1) > 0]
    dropped = df.index.difference(community.index)
    if len(community) <= k + 1:
        raise EmptyDataError(f"NMDS needs more than {k + 1} non-empty samples, got {len(community)}")

    abundance = forward("log1p", community.to_numpy(float), name="taxa densities")
    dissimilarity = squareform(pdist(abundance, metric="braycurtis"))
    coords, stress = smacof(
        dissimilarity, metric=False, n_components=k, n_init=n_init, max_iter=max_iter,
        random_state=random_state, normalized_stress=True,
    )
    axes = [f"NMDS{i + 1}" for i in range(k)]
    scores = pd.DataFrame(coords, index=community.index, columns=axes)

    weights = abundance / np.where(abundance.sum(axis=0) > 0, abundance.sum(axis=0), np.nan)
    species = pd.DataFrame(weights.T @ coords, index=taxa, columns=axes)

    logger.info("NMDS on %d samples x %d taxa: stress %.3f (%d rows dropped)",
                len(community), len(taxa), stress, len(dropped))
    return Ordination(scores=scores, species=species, stress=float(stress), taxa=taxa, dropped=dropped)


def _r_squared(y: np.ndarray, X: np.ndarray) -> float:
    coef, *_ = np.linalg.lstsq(X, y, rcond=None)
    resid = y - X @ coef
    return 1.0 - float(resid @ resid) / float(y @ y)


def fit_vectors(scores: pd.DataFrame, df: pd.DataFrame, predictors: Sequence[str],
                permutations: int = 999, random_state: int = 0) -> pd.DataFrame:
    """
    Fit each predictor as a vector onto the ordination.

    The (centered) predictor is regressed on the (centered) site scores; the
    normalised coefficients give the arrow direction, r^2 its length, and the
    p-value is the share of permuted predictors that fit at least as well.
    """
    rng = np.random.default_rng(random_state)
    axes = list(scores.columns)
    rows = []
    for predictor in predictors:
        if predictor not in df.columns:
            raise ModelSpecError(f"'{predictor}' is not in the data")
        x = df.loc[scores.index, predictor].astype(float)
        keep = x.notna()
        if keep.sum() <= len(axes) + 1:
            logger.warning("%s: too few values to fit a vector", predictor)
            continue
        X = scores.loc[keep].to_numpy(float)
        X = X - X.mean(axis=0)
        y = x[keep].to_numpy()
        y = y - y.mean()
        if not np.any(y):
            continue

        coef, *_ = np.linalg.lstsq(X, y, rcond=None)
        direction = coef / np.linalg.norm(coef)
        r2 = _r_squared(y, X)
        null = np.array([_r_squared(rng.permutation(y), X) for _ in range(permutations)])
        p_value = (np.sum(null >= r2) + 1) / (permutations + 1)

        row = {"predictor": predictor}
        row.update({axis: d for axis, d in zip(axes, direction)})
        row.update({"r2": r2, "p_value": p_value, "n": int(keep.sum())})
        rows.append(row)
    return pd.DataFrame(rows, columns=["predictor"] + axes + ["r2", "p_value", "n"])
