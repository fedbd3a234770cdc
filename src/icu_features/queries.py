"""
DuckDB Query Layer for MIMIC-III

This module holds the SQL used to read the source tables the feature extraction
needs and to write the resulting feature tables back:

1. Entity scans: ICU stays, hospital admissions, patients
2. Candidate event scans: chartevents/labevents filtered by item ID and stay
3. Proxy event scan: heart rate charting for monitoring window estimation
4. Materialisation of per-stay result frames as tables

ID filters are registered with DuckDB as temporary tables (tmp_*) rather than
inlined into the SQL text.
"""
from typing import List, Optional

import duckdb
import pandas as pd

from .config import HEART_RATE_ITEMIDS
from .errors import ConfigurationError
from .extractor import FeatureConfig
from .logging_utils import logger
from .windows import ENTITY_COLUMN

ICUSTAYS_SQL = """
    SELECT
        ie.icustay_id::INTEGER AS icustay_id,
        ie.subject_id::INTEGER AS subject_id,
        ie.hadm_id::INTEGER AS hadm_id,
        ie.intime::TIMESTAMP AS intime,
        ie.outtime::TIMESTAMP AS outtime
    FROM icustays ie
    {where}
    ORDER BY ie.icustay_id
    """

ADMISSIONS_SQL = """
    SELECT
        a.subject_id::INTEGER AS subject_id,
        a.hadm_id::INTEGER AS hadm_id,
        a.admittime::TIMESTAMP AS admittime,
        a.dischtime::TIMESTAMP AS dischtime,
        a.ethnicity,
        a.hospital_expire_flag::INTEGER AS hospital_expire_flag,
        a.has_chartevents_data::INTEGER AS has_chartevents_data
    FROM admissions a
    {where}
    ORDER BY a.subject_id, a.admittime
    """

PATIENTS_SQL = """
    SELECT
        p.subject_id::INTEGER AS subject_id,
        p.gender,
        p.dob::TIMESTAMP AS dob,
        p.dod::TIMESTAMP AS dod
    FROM patients p
    ORDER BY p.subject_id
    """

# Chart events are attributed to the ICU stay they were charted against
CHARTEVENTS_SQL = """
    SELECT
        c.icustay_id::INTEGER AS icustay_id,
        c.charttime::TIMESTAMP AS charttime,
        c.itemid::INTEGER AS itemid,
        c.valuenum::DOUBLE AS valuenum,
        c.value::VARCHAR AS value,
        c.error::DOUBLE AS error
    FROM chartevents c
    WHERE c.icustay_id::INTEGER IN (SELECT icustay_id FROM tmp_entities)
      AND c.itemid::INTEGER IN (SELECT itemid FROM tmp_itemids)
    ORDER BY c.icustay_id, c.charttime, c.itemid, c.row_id
    """

# Lab events carry no icustay_id; every ICU stay of the patient sees every lab
# and the stay's window decides which ones count
LABEVENTS_SQL = """
    SELECT
        e.icustay_id::INTEGER AS icustay_id,
        l.charttime::TIMESTAMP AS charttime,
        l.itemid::INTEGER AS itemid,
        l.valuenum::DOUBLE AS valuenum,
        l.value::VARCHAR AS value,
        NULL::DOUBLE AS error
    FROM labevents l
    JOIN tmp_entities e ON l.{join_key}::INTEGER = e.{join_key}
    WHERE l.itemid::INTEGER IN (SELECT itemid FROM tmp_itemids)
    ORDER BY e.icustay_id, l.charttime, l.itemid, l.row_id
    """

PROXY_EVENTS_SQL = """
    SELECT
        c.icustay_id::INTEGER AS icustay_id,
        c.hadm_id::INTEGER AS hadm_id,
        c.charttime::TIMESTAMP AS charttime
    FROM chartevents c
    WHERE c.itemid::INTEGER IN (SELECT itemid FROM tmp_itemids)
      {hadm_filter}
    ORDER BY c.hadm_id, c.charttime
    """


def _id_filter(con: duckdb.DuckDBPyConnection, column: str, ids: Optional[List[int]], alias: str) -> str:
    """Register ids as tmp_<column>s and return the matching WHERE clause, or '' for no filter."""
    if ids is None:
        return ""
    table = f"tmp_{column}s"
    con.register(table, pd.DataFrame({column: pd.Series(list(ids), dtype="int64")}))
    return f"WHERE {alias}.{column}::INTEGER IN (SELECT {column} FROM {table})"


def query_icustays(con: duckdb.DuckDBPyConnection, icustay_ids: Optional[List[int]] = None) -> pd.DataFrame:
    """
    Read ICU stays with their administrative intime/outtime.

    Args:
        con (duckdb.DuckDBPyConnection): Connection to the MIMIC-III database
        icustay_ids (Optional[List[int]]): Restrict to these stays, all stays if None

    Returns:
        pd.DataFrame: icustay_id, subject_id, hadm_id, intime, outtime
    """
    logger.log_start("query_icustays")
    where = _id_filter(con, "icustay_id", icustay_ids, "ie")
    df = con.execute(ICUSTAYS_SQL.format(where=where)).fetchdf()
    logger.log_end("query_icustays")
    return df


def query_admissions(con: duckdb.DuckDBPyConnection, subject_ids: Optional[List[int]] = None) -> pd.DataFrame:
    logger.log_start("query_admissions")
    where = _id_filter(con, "subject_id", subject_ids, "a")
    df = con.execute(ADMISSIONS_SQL.format(where=where)).fetchdf()
    logger.log_end("query_admissions")
    return df


def query_patients(con: duckdb.DuckDBPyConnection) -> pd.DataFrame:
    logger.log_start("query_patients")
    df = con.execute(PATIENTS_SQL).fetchdf()
    logger.log_end("query_patients")
    return df


def query_candidate_events(con: duckdb.DuckDBPyConnection, config: FeatureConfig, entities: pd.DataFrame) -> pd.DataFrame:
    """
    Read the candidate events of one feature for the given ICU stays.

    Args:
        con (duckdb.DuckDBPyConnection): Connection to the MIMIC-III database
        config (FeatureConfig): Feature whose source table and item IDs to read
        entities (pd.DataFrame): ICU stays with icustay_id, subject_id, hadm_id

    Returns:
        pd.DataFrame: icustay_id, charttime, itemid, valuenum, value, error in a
            deterministic order (stay, charttime, itemid, row_id)
    """
    con.register("tmp_entities", entities[[ENTITY_COLUMN, "subject_id", "hadm_id"]].reset_index(drop=True))
    con.register("tmp_itemids", pd.DataFrame({"itemid": pd.Series(config.source_tags, dtype="int64")}))

    if config.source_table == "chartevents":
        if config.join_key != ENTITY_COLUMN:
            raise ConfigurationError(f"Feature '{config.name}' reads chartevents but joins on '{config.join_key}'")
        sql = CHARTEVENTS_SQL
    else:
        if config.join_key == ENTITY_COLUMN:
            raise ConfigurationError(f"Feature '{config.name}' reads labevents, which has no {ENTITY_COLUMN}")
        sql = LABEVENTS_SQL.format(join_key=config.join_key)

    logger.log_start(f"query_candidate_events[{config.name}]")
    df = con.execute(sql).fetchdf()
    logger.log_info(f"{len(df)} candidate events for {config.name}")
    logger.log_end(f"query_candidate_events[{config.name}]")
    return df


def query_proxy_events(con: duckdb.DuckDBPyConnection, hadm_ids: Optional[List[int]] = None) -> pd.DataFrame:
    """Read heart rate events (icustay_id, hadm_id, charttime) for monitoring window estimation."""
    logger.log_start("query_proxy_events")
    con.register("tmp_itemids", pd.DataFrame({"itemid": pd.Series(HEART_RATE_ITEMIDS, dtype="int64")}))
    hadm_filter = ""
    if hadm_ids is not None:
        con.register("tmp_hadm_ids", pd.DataFrame({"hadm_id": pd.Series(list(hadm_ids), dtype="int64")}))
        hadm_filter = "AND c.hadm_id::INTEGER IN (SELECT hadm_id FROM tmp_hadm_ids)"
    df = con.execute(PROXY_EVENTS_SQL.format(hadm_filter=hadm_filter)).fetchdf()
    logger.log_end("query_proxy_events")
    return df


def materialize_table(con: duckdb.DuckDBPyConnection, table_name: str, frame: pd.DataFrame) -> None:
    """
    Write a result frame to the database as a table, replacing any previous version.

    Timedelta columns are stored as fractional hours, since not every reader of
    the database understands DuckDB INTERVALs.
    """
    if not table_name.isidentifier():
        raise ConfigurationError(f"Invalid table name '{table_name}'")
    logger.log_start(f"materialize_table[{table_name}]")

    out = frame.copy()
    hour_columns = {}
    for column in out.columns:
        if pd.api.types.is_timedelta64_dtype(out[column]):
            out[column] = out[column].dt.total_seconds() / 3600.0
            hour_columns[column] = f"{column}_hours"
    out = out.rename(columns=hour_columns)

    con.register("tmp_materialize", out)
    con.execute(f"CREATE OR REPLACE TABLE {table_name} AS SELECT * FROM tmp_materialize")
    con.unregister("tmp_materialize")
    logger.log_info(f"Wrote {len(out)} rows to {table_name}")
    logger.log_end(f"materialize_table[{table_name}]")
