from typing import Any

import duckdb  # type: ignore
import numpy as np
import pandas as pd
import pytest

from icu_features.errors import ConfigurationError
from icu_features.feature_extraction import (
    WindowSource,
    extract_features,
    materialize_features,
    quality_summary,
)
from icu_features.queries import query_candidate_events, query_icustays, query_proxy_events
from icu_features.registry import get_feature_config
from icu_features.windows import WindowFallback


def _ts(s: str) -> pd.Timestamp:

    return pd.Timestamp(s)


def _insert(con: Any, table: str, df: pd.DataFrame) -> None:

    con.register(f"{table}_df", df)
    con.execute(f"INSERT INTO {table} SELECT * FROM {table}_df")
    con.unregister(f"{table}_df")


def create_in_memory_mimic() -> Any:

    con = duckdb.connect(database=":memory:")

    # Minimal schemas with only the columns referenced in queries
    con.execute(
        """
        CREATE TABLE admissions (
            subject_id INTEGER,
            hadm_id INTEGER,
            admittime TIMESTAMP,
            dischtime TIMESTAMP,
            ethnicity VARCHAR,
            hospital_expire_flag INTEGER,
            has_chartevents_data INTEGER
        );
        """
    )

    con.execute(
        """
        CREATE TABLE patients (
            subject_id INTEGER,
            gender VARCHAR,
            dob TIMESTAMP,
            dod TIMESTAMP
        );
        """
    )

    con.execute(
        """
        CREATE TABLE icustays (
            subject_id INTEGER,
            hadm_id INTEGER,
            icustay_id INTEGER,
            intime TIMESTAMP,
            outtime TIMESTAMP
        );
        """
    )

    con.execute(
        """
        CREATE TABLE chartevents (
            row_id INTEGER,
            subject_id INTEGER,
            hadm_id INTEGER,
            icustay_id INTEGER,
            itemid INTEGER,
            charttime TIMESTAMP,
            value VARCHAR,
            valuenum DOUBLE,
            error INTEGER
        );
        """
    )

    con.execute(
        """
        CREATE TABLE labevents (
            row_id INTEGER,
            subject_id INTEGER,
            hadm_id INTEGER,
            itemid INTEGER,
            charttime TIMESTAMP,
            value VARCHAR,
            valuenum DOUBLE
        );
        """
    )

    # Subject 1 has heart rate charting, subject 2 has none
    _insert(con, "admissions", pd.DataFrame([
        {"subject_id": 1, "hadm_id": 10, "admittime": _ts("2100-01-01 00:00"), "dischtime": _ts("2100-01-10 00:00"),
         "ethnicity": "WHITE", "hospital_expire_flag": 0, "has_chartevents_data": 1},
        {"subject_id": 2, "hadm_id": 20, "admittime": _ts("2100-02-01 00:00"), "dischtime": _ts("2100-02-05 00:00"),
         "ethnicity": "ASIAN", "hospital_expire_flag": 1, "has_chartevents_data": 1},
    ]))

    _insert(con, "patients", pd.DataFrame([
        {"subject_id": 1, "gender": "M", "dob": _ts("2040-01-01 08:00"), "dod": pd.NaT},
        {"subject_id": 2, "gender": "F", "dob": _ts("1800-02-01 06:00"), "dod": _ts("2100-02-05 00:00")},
    ]))

    _insert(con, "icustays", pd.DataFrame([
        {"subject_id": 1, "hadm_id": 10, "icustay_id": 100,
         "intime": _ts("2100-01-01 08:00"), "outtime": _ts("2100-01-04 08:00")},
        {"subject_id": 2, "hadm_id": 20, "icustay_id": 200,
         "intime": _ts("2100-02-01 06:00"), "outtime": _ts("2100-02-03 06:00")},
    ]))

    chartevents = pd.DataFrame([
        # Heart rate: an error-flagged reading precedes the first valid one
        {"itemid": 220045, "charttime": _ts("2100-01-01 06:00"), "value": "500", "valuenum": 500.0, "error": 1},
        {"itemid": 220045, "charttime": _ts("2100-01-01 07:00"), "value": "95", "valuenum": 95.0, "error": 0},
        {"itemid": 211, "charttime": _ts("2100-01-01 09:00"), "value": "88", "valuenum": 88.0, "error": 0},
        {"itemid": 220045, "charttime": _ts("2100-01-03 20:00"), "value": "80", "valuenum": 80.0, "error": 0},
        # Rhythm text
        {"itemid": 220048, "charttime": _ts("2100-01-01 08:30"), "value": "SR (Sinus Rhythm)", "valuenum": np.nan,
         "error": 0},
    ])
    chartevents.insert(0, "row_id", range(1, len(chartevents) + 1))
    chartevents.insert(1, "subject_id", 1)
    chartevents.insert(2, "hadm_id", 10)
    chartevents.insert(3, "icustay_id", 100)
    chartevents = chartevents[["row_id", "subject_id", "hadm_id", "icustay_id", "itemid", "charttime",
                               "value", "valuenum", "error"]]
    _insert(con, "chartevents", chartevents)

    labevents = pd.DataFrame([
        {"subject_id": 1, "hadm_id": 10, "itemid": 50912, "charttime": _ts("2100-01-01 05:00"), "valuenum": 1.2},
        {"subject_id": 1, "hadm_id": 10, "itemid": 50912, "charttime": _ts("2100-01-01 12:00"), "valuenum": 1.5},
        {"subject_id": 1, "hadm_id": 10, "itemid": 50904, "charttime": _ts("2099-12-28 08:00"), "valuenum": 45.0},
        {"subject_id": 1, "hadm_id": 10, "itemid": 50904, "charttime": _ts("2100-01-03 00:00"), "valuenum": 50.0},
        {"subject_id": 2, "hadm_id": 20, "itemid": 50912, "charttime": _ts("2100-02-01 07:00"), "valuenum": 0.9},
    ])
    labevents.insert(0, "row_id", range(1, len(labevents) + 1))
    labevents["value"] = labevents["valuenum"].astype(str)
    labevents = labevents[["row_id", "subject_id", "hadm_id", "itemid", "charttime", "value", "valuenum"]]
    _insert(con, "labevents", labevents)

    return con


def _value(runs, feature: str, icustay_id: int):

    result = runs[feature].result
    return result.loc[result["icustay_id"] == icustay_id, "value"].iloc[0]


def test_query_layer_shapes():

    con = create_in_memory_mimic()

    entities = query_icustays(con)
    assert entities["icustay_id"].tolist() == [100, 200]

    events = query_candidate_events(con, get_feature_config("heartrate"), entities)
    assert len(events) == 4
    assert set(events.columns) >= {"icustay_id", "charttime", "itemid", "valuenum", "value", "error"}
    assert events["charttime"].is_monotonic_increasing

    labs = query_candidate_events(con, get_feature_config("creatinine"), entities)
    assert sorted(labs["icustay_id"].tolist()) == [100, 100, 200]

    proxy = query_proxy_events(con)
    assert len(proxy) == 4

    con.close()


def test_administrative_extraction():

    con = create_in_memory_mimic()
    runs = extract_features(con, ["heartrate", "creatinine", "hdl", "rhythm"])

    assert list(runs) == ["heartrate", "creatinine", "hdl", "rhythm"]
    for run in runs.values():
        assert sorted(run.result["icustay_id"].tolist()) == [100, 200]

    # Error-flagged 06:00 reading is skipped
    assert _value(runs, "heartrate", 100) == 95.0
    assert pd.isna(_value(runs, "heartrate", 200))

    assert _value(runs, "creatinine", 100) == 1.2
    assert _value(runs, "creatinine", 200) == 0.9

    # 1 day 16 hours after admission is closer than 4 days before
    assert _value(runs, "hdl", 100) == 50.0

    assert _value(runs, "rhythm", 100) == "SR (Sinus Rhythm)"

    summary = quality_summary(runs).set_index("feature")
    assert summary.loc["heartrate", "with_result"] == 1
    assert summary.loc["heartrate", "no_candidates"] == 1

    con.close()


def test_clinical_windows_need_explicit_fallback():

    con = create_in_memory_mimic()
    with pytest.raises(ConfigurationError):
        extract_features(con, ["creatinine"], window_source=WindowSource.CLINICAL)
    con.close()


def test_clinical_windows_without_fallback():

    con = create_in_memory_mimic()
    runs = extract_features(con, ["creatinine"], window_source=WindowSource.CLINICAL,
                            window_fallback=WindowFallback.NONE)

    # Window starts 6 hours before the first heart rate (06:00), so 05:00 qualifies
    assert _value(runs, "creatinine", 100) == 1.2
    # Subject 2 has no heart rate, so no window and no value
    assert pd.isna(_value(runs, "creatinine", 200))
    assert runs["creatinine"].report.absent_windows == 1

    con.close()


def test_clinical_windows_with_administrative_fallback():

    con = create_in_memory_mimic()
    runs = extract_features(con, ["creatinine"], window_source=WindowSource.CLINICAL,
                            window_fallback=WindowFallback.ADMINISTRATIVE)

    assert _value(runs, "creatinine", 200) == 0.9
    assert runs["creatinine"].report.absent_windows == 0

    con.close()


def test_unknown_feature_fails_before_extraction():

    con = create_in_memory_mimic()
    with pytest.raises(ConfigurationError):
        extract_features(con, ["heartrate", "not_a_feature"])
    con.close()


def test_materialize_features():

    con = create_in_memory_mimic()
    runs = extract_features(con, ["heartrate", "rhythm"])
    tables = materialize_features(con, runs)

    assert tables == ["icu_first_heartrate", "icu_first_rhythm"]
    df = con.execute("SELECT * FROM icu_first_heartrate ORDER BY icustay_id").fetchdf()
    assert len(df) == 2
    assert "offset_from_reference_hours" in df.columns
    assert df.loc[0, "offset_from_reference_hours"] == pytest.approx(-1.0)
    assert pd.isna(df.loc[1, "value"])

    # Re-running replaces the table rather than appending
    materialize_features(con, runs)
    assert con.execute("SELECT COUNT(*) FROM icu_first_heartrate").fetchone()[0] == 2

    con.close()


def test_stay_tables():

    from extract_features import extract_stay_tables

    con = create_in_memory_mimic()
    extract_stay_tables(con)

    age = con.execute("SELECT icustay_id, age FROM icu_age ORDER BY icustay_id").fetchdf()
    assert age.loc[0, "age"] == pytest.approx(60.0, abs=0.01)
    assert age.loc[1, "age"] == 91.4

    detail = con.execute("SELECT * FROM icustay_detail ORDER BY icustay_id").fetchdf()
    assert detail["ethnicity_grouped"].tolist() == ["white", "asian"]

    readmission = con.execute("SELECT * FROM icu_readmission_30d ORDER BY icustay_id").fetchdf()
    assert readmission["is_last_icu_stay"].tolist() == [1, 1]

    con.close()
