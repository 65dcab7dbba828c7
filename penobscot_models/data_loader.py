"""
Workbook loader for the Penobscot Estuary survey.

The workbook has two sheets we care about:
    Final - one row per (date, station) sampling event: water chemistry,
            river-herring catch and the zooplankton community summaries
    Taxa  - one row per (date, station) with densities for the six taxa

Each sheet has a declared layout (header text, order and type). Anything that
does not match is a SchemaError: we would rather stop than model a shifted
column.
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Tuple

import pandas as pd

from . import config
from .errors import EmptyDataError, ModelSpecError, SchemaError

logger = logging.getLogger(__name__)

COLUMN_KINDS = ("date", "text", "numeric")


@dataclass(frozen=True)
class Column:
    raw: str
    name: str
    kind: str


@dataclass(frozen=True)
class SheetSchema:
    sheet: str
    columns: Tuple[Column, ...]

    @property
    def names(self) -> List[str]:
        return [c.name for c in self.columns]


EVENT_SCHEMA = SheetSchema(config.EVENT_SHEET, (
    Column("Date", "date", "date"),
    Column("Station", "station_code", "text"),
    Column("Latitude", "latitude", "numeric"),
    Column("Longitude", "longitude", "numeric"),
    Column("Temp (C)", "temp", "numeric"),
    Column("Salinity (ppt)", "salinity", "numeric"),
    Column("Turbidity (NTU)", "turbidity", "numeric"),
    Column("Chl a (ug/L)", "chl", "numeric"),
    Column("DO (% sat)", "do_sat", "numeric"),
    Column("River herring (catch)", "herring", "numeric"),
    Column("Total density (ind/m3)", "zoo_density", "numeric"),
    Column("Shannon H", "shannon", "numeric"),
))

TAXA_SCHEMA = SheetSchema(config.TAXA_SHEET, (
    Column("Date", "date", "date"),
    Column("Station", "station_code", "text"),
    Column("Acartia", "acartia", "numeric"),
    Column("Bosmina", "bosmina", "numeric"),
    Column("Eurytemora", "eurytemora", "numeric"),
    Column("Polychaeta", "polychaeta", "numeric"),
    Column("Calanoida", "calanoida", "numeric"),
    Column("Cyclopoida", "cyclopoida", "numeric"),
))

KEY = ["date", "station_code"]


# --- cell coercion
def _as_text(value):
    # Excel hands back station codes typed as numbers as floats (1.0)
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value).strip()


def _coerce(series: pd.Series, column: Column, sheet: str) -> pd.Series:
    if column.kind == "date":
        if pd.api.types.is_numeric_dtype(series) and series.notna().any():
            raise SchemaError(f"sheet '{sheet}', column '{column.raw}': expected dates, found numbers")
        out = pd.to_datetime(series, errors="coerce")
    elif column.kind == "numeric":
        if pd.api.types.is_datetime64_any_dtype(series):
            raise SchemaError(f"sheet '{sheet}', column '{column.raw}': expected numbers, found dates")
        out = pd.to_numeric(series, errors="coerce")
    elif column.kind == "text":
        if pd.api.types.is_datetime64_any_dtype(series):
            raise SchemaError(f"sheet '{sheet}', column '{column.raw}': expected text, found dates")
        out = series.map(_as_text, na_action="ignore")
    else:
        raise SchemaError(f"unknown column type '{column.kind}' for '{column.raw}'")

    # a filled cell that turned into NA did not parse as the declared type
    bad = series.notna() & out.isna()
    if bad.any():
        rows = [int(i) + 2 for i in series.index[bad][:5]]  # +2: header row and 1-based rows
        values = series[bad].head(5).tolist()
        raise SchemaError(
            f"sheet '{sheet}', column '{column.raw}' expects {column.kind}; "
            f"rows {rows} hold {values}"
        )
    return out


def _check_headers(raw: pd.DataFrame, schema: SheetSchema) -> pd.DataFrame:
    # trailing formatted-but-empty columns come through as "Unnamed: n"
    empty_unnamed = [c for c in raw.columns
                     if str(c).startswith("Unnamed:") and raw[c].isna().all()]
    raw = raw.drop(columns=empty_unnamed)

    headers = [str(c).strip() for c in raw.columns]
    expected = [c.raw for c in schema.columns]
    if len(headers) != len(expected):
        raise SchemaError(
            f"sheet '{schema.sheet}' has {len(headers)} columns, expected {len(expected)}: "
            f"got {headers}"
        )
    mismatched = [(i + 1, got, want) for i, (got, want) in enumerate(zip(headers, expected)) if got != want]
    if mismatched:
        pos, got, want = mismatched[0]
        raise SchemaError(f"sheet '{schema.sheet}', column {pos}: found '{got}', expected '{want}'")
    raw.columns = headers
    return raw


# --- loading
def load_sheet(path, sheet: str, schema: SheetSchema) -> pd.DataFrame:
    """
    Read one sheet, check it against its schema and standardise it.

    Returns the sheet with clean column names and typed columns, minus any
    row that has no date. Raises SchemaError on a layout/type mismatch and
    EmptyDataError when nothing survives the date filter.
    """
    path = Path(path)
    try:
        # only empty cells are missing; "NA" or "n/a" in a numeric column is a type error
        raw = pd.read_excel(path, sheet_name=sheet, engine="openpyxl", keep_default_na=False, na_values=[""])
    except ValueError as e:
        # pandas raises ValueError for a missing worksheet
        raise SchemaError(f"{path.name}: cannot read sheet '{sheet}': {e}") from e

    raw = _check_headers(raw, schema)

    df = pd.DataFrame(index=raw.index)
    for column in schema.columns:
        df[column.name] = _coerce(raw[column.raw], column, sheet)

    date_col = next((c.name for c in schema.columns if c.kind == "date"), None)
    if date_col is not None:
        missing = df[date_col].isna()
        if missing.any():
            logger.info("%s/%s: dropping %d rows without a date", path.name, sheet, int(missing.sum()))
        df = df.loc[~missing]

    if df.empty:
        raise EmptyDataError(f"{path.name}/{sheet}: no rows left after dropping undated rows")

    logger.debug("%s/%s: loaded %d rows", path.name, sheet, len(df))
    return df.reset_index(drop=True)


def remap_stations(df: pd.DataFrame, column: str = "station_code") -> Tuple[pd.DataFrame, Dict[str, int]]:
    """Map raw station labels, in sorted order, onto 1..k."""
    labels = sorted(df[column].dropna().unique())
    mapping = {label: idx for idx, label in enumerate(labels, start=1)}
    out = df.copy()
    mapped = out[column].map(mapping)
    out["station"] = mapped.astype("Int64") if mapped.isna().any() else mapped.astype(int)
    return out, mapping


def _check_unique(df: pd.DataFrame, sheet: str):
    dup = df.duplicated(subset=KEY, keep=False)
    if dup.any():
        pairs = df.loc[dup, KEY].drop_duplicates().head(5)
        listed = ", ".join(f"{d:%Y-%m-%d}/{s}" for d, s in pairs.itertuples(index=False))
        raise SchemaError(f"sheet '{sheet}': repeated (date, station) pairs: {listed}")


def load_survey(path=config.DEFAULT_WORKBOOK) -> pd.DataFrame:
    """
    Load the event and taxa sheets and join them into one observation table.

    The station mapping (raw label -> 1..k) is kept in ``df.attrs["station_mapping"]``.
    """
    events = load_sheet(path, EVENT_SCHEMA.sheet, EVENT_SCHEMA)
    taxa = load_sheet(path, TAXA_SCHEMA.sheet, TAXA_SCHEMA)
    _check_unique(events, EVENT_SCHEMA.sheet)
    _check_unique(taxa, TAXA_SCHEMA.sheet)

    orphans = ~taxa.set_index(KEY).index.isin(events.set_index(KEY).index)
    if orphans.any():
        logger.warning("%d taxa rows have no matching sampling event and are ignored", int(orphans.sum()))

    merged = events.merge(taxa, on=KEY, how="left", validate="one_to_one")
    merged, mapping = remap_stations(merged)
    merged = merged.sort_values(["date", "station"]).reset_index(drop=True)
    merged.attrs["station_mapping"] = mapping
    logger.info("Loaded %d sampling events at %d stations", len(merged), len(mapping))
    return merged


def complete_cases(df: pd.DataFrame, columns) -> pd.DataFrame:
    """Rows with every column in ``columns`` present (used per fit, never globally)."""
    columns = list(dict.fromkeys(columns))
    missing = [c for c in columns if c not in df.columns]
    if missing:
        raise ModelSpecError(f"columns not in the data: {missing}")
    return df.dropna(subset=columns)
