import numpy as np
import pandas as pd
import pytest

from penobscot_models.data_loader import EVENT_SCHEMA, TAXA_SCHEMA, remap_stations
from penobscot_models.features import derive_features

STATIONS = ["PB-04", "PB-01", "PB-03", "PB-02"]
SAMPLE_DAYS = ["05-15", "07-15", "09-15"]
YEARS = [2016, 2017, 2018, 2019, 2020]


def make_survey(seed=42):
    """5 years x 3 seasons x 4 stations, already in clean column names."""
    rng = np.random.default_rng(seed)
    rows = []
    for year in YEARS:
        for s_idx, day in enumerate(SAMPLE_DAYS):
            for st_idx, code in enumerate(sorted(STATIONS)):
                rows.append({
                    "date": pd.Timestamp(f"{year}-{day}"),
                    "station_code": code,
                    "latitude": 44.50 + 0.05 * st_idx + rng.normal(0, 0.001),
                    "longitude": -68.80 + 0.02 * st_idx + rng.normal(0, 0.001),
                    "season_base": (12.0, 20.0, 16.0)[s_idx],
                    "station_effect": (-0.3, -0.1, 0.1, 0.3)[st_idx],
                })
    df = pd.DataFrame(rows)
    n = len(df)
    df["temp"] = df.pop("season_base") + rng.normal(0, 1.5, n)
    df["salinity"] = rng.uniform(2, 30, n)
    df["turbidity"] = np.exp(rng.normal(1.5, 0.5, n))
    df["chl"] = np.exp(rng.normal(1.0, 0.4, n))
    df["do_sat"] = rng.normal(95, 5, n)
    df["herring"] = rng.poisson(20, n).astype(float)
    log_density = (5 + 0.03 * df["salinity"] - 0.2 * np.log(df["turbidity"])
                   + df.pop("station_effect") + rng.normal(0, 0.3, n))
    df["zoo_density"] = np.exp(log_density)
    df["shannon"] = np.exp(0.2 + 0.01 * df["salinity"] + 0.01 * df["temp"] + rng.normal(0, 0.15, n))

    taxa_rates = {
        "acartia": (2.0, 0.06), "bosmina": (4.0, -0.08), "eurytemora": (3.0, 0.02),
        "polychaeta": (1.0, 0.03), "calanoida": (2.5, 0.0), "cyclopoida": (1.5, -0.02),
    }
    for taxon, (a, b) in taxa_rates.items():
        df[taxon] = rng.poisson(np.exp(a + b * df["salinity"])).astype(float)
    return df


def to_raw_sheets(df):
    """Split a clean survey table back into the two workbook sheets with raw headers."""
    events = df[EVENT_SCHEMA.names].rename(columns={c.name: c.raw for c in EVENT_SCHEMA.columns})
    taxa = df[TAXA_SCHEMA.names].rename(columns={c.name: c.raw for c in TAXA_SCHEMA.columns})
    return events.copy(), taxa.copy()


def write_workbook(path, events, taxa):
    with pd.ExcelWriter(path, engine="openpyxl") as writer:
        events.to_excel(writer, sheet_name=EVENT_SCHEMA.sheet, index=False)
        taxa.to_excel(writer, sheet_name=TAXA_SCHEMA.sheet, index=False)
    return path


@pytest.fixture
def survey():
    df, mapping = remap_stations(make_survey())
    df = df.sort_values(["date", "station"]).reset_index(drop=True)
    df.attrs["station_mapping"] = mapping
    return df


@pytest.fixture
def features(survey):
    return derive_features(survey)


@pytest.fixture
def raw_sheets():
    return to_raw_sheets(make_survey())


@pytest.fixture
def workbook(tmp_path, raw_sheets):
    events, taxa = raw_sheets
    return write_workbook(tmp_path / "survey.xlsx", events, taxa)


@pytest.fixture
def salinity_outlier():
    """59 ordinary samples plus one low-salinity, low-abundance sample that drives the slope."""
    rng = np.random.default_rng(7)
    salinity = np.append(rng.uniform(15, 30, 59), 0.5)
    log_density = np.append(5 + rng.normal(0, 0.3, 59), np.log(1.0))
    return pd.DataFrame({"salinity": salinity, "zoo_density": np.exp(log_density)})
