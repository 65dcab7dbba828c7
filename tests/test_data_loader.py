import numpy as np
import pandas as pd
import pytest

from penobscot_models.data_loader import (
    EVENT_SCHEMA, TAXA_SCHEMA, complete_cases, load_sheet, load_survey, remap_stations,
)
from penobscot_models.errors import EmptyDataError, ModelSpecError, SchemaError

from conftest import write_workbook


def test_load_survey_joins_sheets(workbook):
    df = load_survey(workbook)
    assert len(df) == 60
    assert set(df["station"]) == {1, 2, 3, 4}
    assert df.attrs["station_mapping"] == {"PB-01": 1, "PB-02": 2, "PB-03": 3, "PB-04": 4}
    assert pd.api.types.is_datetime64_any_dtype(df["date"])
    for taxon in ("acartia", "cyclopoida"):
        assert df[taxon].notna().all()
    assert not df.duplicated(["date", "station"]).any()


def test_load_sheet_renames_and_types(workbook):
    df = load_sheet(workbook, EVENT_SCHEMA.sheet, EVENT_SCHEMA)
    assert list(df.columns) == EVENT_SCHEMA.names
    assert pd.api.types.is_numeric_dtype(df["salinity"])
    assert df["station_code"].str.startswith("PB-").all()


def test_extra_column_is_a_schema_error(tmp_path, raw_sheets):
    events, taxa = raw_sheets
    events["Secchi (m)"] = 1.0
    path = write_workbook(tmp_path / "extra.xlsx", events, taxa)
    with pytest.raises(SchemaError, match="columns"):
        load_sheet(path, EVENT_SCHEMA.sheet, EVENT_SCHEMA)


def test_reordered_headers_are_a_schema_error(tmp_path, raw_sheets):
    events, taxa = raw_sheets
    cols = list(events.columns)
    cols[4], cols[5] = cols[5], cols[4]
    path = write_workbook(tmp_path / "swapped.xlsx", events[cols], taxa)
    with pytest.raises(SchemaError, match="Salinity"):
        load_sheet(path, EVENT_SCHEMA.sheet, EVENT_SCHEMA)


@pytest.mark.parametrize("text", ["abc", "n/a", "NA", "null"])
def test_text_in_numeric_column_is_a_schema_error(tmp_path, raw_sheets, text):
    events, taxa = raw_sheets
    events["Salinity (ppt)"] = events["Salinity (ppt)"].astype(object)
    events.loc[3, "Salinity (ppt)"] = text
    path = write_workbook(tmp_path / "text.xlsx", events, taxa)
    with pytest.raises(SchemaError, match="rows \\[5\\]"):
        load_sheet(path, EVENT_SCHEMA.sheet, EVENT_SCHEMA)


def test_undated_rows_are_dropped(tmp_path, raw_sheets):
    events, taxa = raw_sheets
    events.loc[[0, 1], "Date"] = pd.NaT
    path = write_workbook(tmp_path / "undated.xlsx", events, taxa)
    assert len(load_sheet(path, EVENT_SCHEMA.sheet, EVENT_SCHEMA)) == 58


def test_no_dated_rows_is_empty_data(tmp_path, raw_sheets):
    events, taxa = raw_sheets
    events["Date"] = pd.NaT
    path = write_workbook(tmp_path / "empty.xlsx", events, taxa)
    with pytest.raises(EmptyDataError):
        load_sheet(path, EVENT_SCHEMA.sheet, EVENT_SCHEMA)


def test_missing_sheet_is_a_schema_error(workbook):
    with pytest.raises(SchemaError, match="Zooplankton"):
        load_sheet(workbook, "Zooplankton", TAXA_SCHEMA)


def test_repeated_date_station_is_rejected(tmp_path, raw_sheets):
    events, taxa = raw_sheets
    events = pd.concat([events, events.iloc[[0]]], ignore_index=True)
    path = write_workbook(tmp_path / "dup.xlsx", events, taxa)
    with pytest.raises(SchemaError, match="repeated"):
        load_survey(path)


def test_remap_stations_is_sorted_bijection():
    df = pd.DataFrame({"station_code": ["C7", "A1", "B2", "A1", "D0", "C7"]})
    out, mapping = remap_stations(df)
    labels = sorted(mapping)
    assert [mapping[label] for label in labels] == list(range(1, len(labels) + 1))
    assert list(out["station"]) == [3, 1, 2, 1, 4, 3]
    assert list(out["station_code"]) == list(df["station_code"])


def test_complete_cases_only_looks_at_named_columns():
    df = pd.DataFrame({"a": [1.0, np.nan, 3.0], "b": [np.nan, 2.0, 3.0]})
    assert list(complete_cases(df, ["a"]).index) == [0, 2]
    assert list(complete_cases(df, ["a", "b"]).index) == [2]
    with pytest.raises(ModelSpecError):
        complete_cases(df, ["c"])


def test_empty_numeric_cell_is_missing(tmp_path, raw_sheets):
    events, taxa = raw_sheets
    events.loc[3, "Salinity (ppt)"] = np.nan
    path = write_workbook(tmp_path / "blank.xlsx", events, taxa)
    df = load_sheet(path, EVENT_SCHEMA.sheet, EVENT_SCHEMA)
    assert np.isnan(df.at[3, "salinity"])
    assert df["salinity"].isna().sum() == 1
