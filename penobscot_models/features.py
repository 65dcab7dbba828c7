"""Derived time keys, transformed predictors and station summaries."""

import logging
from typing import Optional, Sequence

import pandas as pd

from . import config
from .errors import DomainError
from .transforms import TRANSFORMED_PREDICTORS, forward

logger = logging.getLogger(__name__)


def assign_season(dates: pd.Series) -> pd.Series:
    months = dates.dt.month
    season = months.map(config.SEASON_BY_MONTH)
    unsampled = dates.notna() & season.isna()
    if unsampled.any():
        shown = ", ".join(f"{d:%Y-%m-%d}" for d in dates[unsampled].head(5))
        raise DomainError(f"no season defined for winter dates: {shown}")
    return pd.Series(
        pd.Categorical(season, categories=config.SEASON_LEVELS, ordered=True),
        index=dates.index,
        name="season",
    )


def _transform_column(df: pd.DataFrame, column: str, raw: str, kind: str, invalid: str) -> pd.DataFrame:
    if raw not in df.columns:
        return df
    values = df[raw].astype(float)
    try:
        df[column] = forward(kind, values, name=raw)
    except DomainError:
        if invalid == "raise":
            raise
        lower = 0.0 if kind == "log" else -1.0
        bad = values <= lower
        logger.warning("%s: %d rows outside the %s domain set to NaN", raw, int(bad.sum()), kind)
        df[f"{column}_invalid"] = bad
        df[column] = forward(kind, values.where(~bad), name=raw)
    return df


def derive_features(df: pd.DataFrame, baseline_year: Optional[int] = None,
                    invalid: str = "raise") -> pd.DataFrame:
    """
    Add the grouping keys and transformed predictors every analysis uses.

    sample_event numbers the (year, season) visits consecutively:
        season_index + 3 * (year - baseline_year)
    with Spring=1, Summer=2, Fall=3 and baseline_year defaulting to the first
    surveyed year, so the first spring is event 1.

    invalid="raise" stops on a value outside a transform's domain (e.g. a zero
    turbidity); invalid="flag" sets it to NaN, marks it in ``<column>_invalid``
    and leaves the row to be dropped by the fits that need that column.
    """
    if invalid not in ("raise", "flag"):
        raise ValueError("invalid must be 'raise' or 'flag'")

    out = df.copy()
    dates = pd.to_datetime(out["date"])
    out["month"] = dates.dt.month_name()
    out["doy"] = dates.dt.dayofyear
    out["season"] = assign_season(dates)
    out["year"] = dates.dt.year.astype(int)
    out["year_f"] = pd.Categorical(out["year"], categories=sorted(out["year"].unique()))

    if baseline_year is None:
        baseline_year = int(out["year"].min())
    season_index = out["season"].cat.codes.astype(int) + 1
    out["season_index"] = season_index
    out["sample_event"] = season_index + 3 * (out["year"] - baseline_year)

    labels = out["year"].astype(str) + "-" + out["season"].astype(str)
    order = (pd.DataFrame({"label": labels, "event": out["sample_event"]})
             .drop_duplicates()
             .sort_values("event"))
    out["SampleEvent"] = pd.Categorical(labels, categories=order["label"].tolist(), ordered=True)

    for column, (raw, kind) in TRANSFORMED_PREDICTORS.items():
        out = _transform_column(out, column, raw, kind, invalid)

    if {"station", "latitude", "longitude"}.issubset(out.columns):
        grouped = out.groupby("station")
        out["station_lat"] = grouped["latitude"].transform("mean")
        out["station_lon"] = grouped["longitude"].transform("mean")

    return out


def taxa_long(df: pd.DataFrame, taxa: Sequence[str] = tuple(config.TAXA),
              value_name: str = "density") -> pd.DataFrame:
    """One row per (observation, taxon), for mapping a model over taxa."""
    taxa = [t for t in taxa if t in df.columns]
    id_cols = [c for c in df.columns if c not in taxa]
    long = df.melt(id_vars=id_cols, value_vars=taxa, var_name="taxon", value_name=value_name)
    long["taxon"] = pd.Categorical(long["taxon"], categories=taxa)
    long["log1p_" + value_name] = forward("log1p", long[value_name], name=value_name)
    return long
