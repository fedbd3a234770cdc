"""
Batch Feature Extraction

Main entry point for extracting registered features for all (or selected) ICU
stays of a MIMIC-III DuckDB database.

The batch coordinates:
1. Reading the ICU stays (entities)
2. Optionally estimating clinical monitoring windows and re-anchoring every
   feature window on them
3. Querying candidate events and running the extractor once per feature
4. Materialising one icu_first_<feature> table per feature

Features are independent of each other; a data-quality problem in one stay or
one feature never aborts the batch, while a ConfigurationError does.
"""
from dataclasses import dataclass, replace
from enum import Enum
from typing import Dict, List, Optional

import duckdb
import pandas as pd

from .config import FEATURE_TABLE_PREFIX, MONITORING_FUZZ_AFTER, MONITORING_FUZZ_BEFORE
from .errors import ConfigurationError
from .extractor import FeatureConfig, QualityReport, extract_feature
from .logging_utils import logger
from .monitoring_window import estimate_monitoring_windows
from .queries import (
    materialize_table,
    query_admissions,
    query_candidate_events,
    query_icustays,
    query_proxy_events,
)
from .registry import FEATURE_REGISTRY, get_feature_config
from .windows import WindowFallback, attach_monitoring_windows

# Administrative anchor -> monitoring window anchor
CLINICAL_ANCHORS = {"intime": "intime_hr", "outtime": "outtime_hr"}


class WindowSource(Enum):
    """Which stay interval feature windows are anchored on."""
    ADMINISTRATIVE = "administrative"   # icustays.intime / outtime
    CLINICAL = "clinical"               # First / last heart rate of the stay


@dataclass
class FeatureRun:
    """Result frame and quality report of one feature extraction."""
    result: pd.DataFrame
    report: QualityReport


def clinically_anchored(config: FeatureConfig) -> FeatureConfig:
    """Return a copy of config whose window and reference use the monitoring window anchors."""
    window = replace(
        config.window,
        start_anchor=CLINICAL_ANCHORS.get(config.window.start_anchor, config.window.start_anchor),
        end_anchor=CLINICAL_ANCHORS.get(config.window.end_anchor, config.window.end_anchor),
    )
    reference = CLINICAL_ANCHORS.get(config.reference, config.reference)
    return replace(config, window=window, reference=reference, raw_validity=dict(config.raw_validity))


def prepare_entities(con: duckdb.DuckDBPyConnection,
                     window_source: WindowSource,
                     window_fallback: Optional[WindowFallback],
                     icustay_ids: Optional[List[int]] = None) -> pd.DataFrame:
    """
    Read the ICU stays and, for clinical windows, attach intime_hr/outtime_hr.

    Raises:
        ConfigurationError: If clinical windows are requested without an explicit fallback
    """
    if not isinstance(window_source, WindowSource):
        raise ConfigurationError(f"window_source must be a WindowSource, got {window_source!r}")
    if window_source is WindowSource.CLINICAL and not isinstance(window_fallback, WindowFallback):
        raise ConfigurationError("Clinical windows need an explicit WindowFallback (NONE or ADMINISTRATIVE)")

    entities = query_icustays(con, icustay_ids)
    if window_source is WindowSource.CLINICAL:
        admissions = query_admissions(con, entities["subject_id"].unique().tolist())
        proxy_events = query_proxy_events(con, entities["hadm_id"].unique().tolist())
        windows = estimate_monitoring_windows(entities, admissions, proxy_events,
                                              MONITORING_FUZZ_BEFORE, MONITORING_FUZZ_AFTER)
        entities = attach_monitoring_windows(entities, windows, window_fallback)
    return entities


def extract_features(con: duckdb.DuckDBPyConnection,
                     feature_names: Optional[List[str]] = None,
                     window_source: WindowSource = WindowSource.ADMINISTRATIVE,
                     window_fallback: Optional[WindowFallback] = None,
                     icustay_ids: Optional[List[int]] = None) -> Dict[str, FeatureRun]:
    """
    Extract registered features for ICU stays of a MIMIC-III database.

    Args:
        con (duckdb.DuckDBPyConnection): Connection to the MIMIC-III database
        feature_names (Optional[List[str]]): Features to extract, all registered if None
        window_source (WindowSource): Anchor windows on administrative or clinical times
        window_fallback (Optional[WindowFallback]): Required for clinical windows; what
            to do with stays that have no heart rate
        icustay_ids (Optional[List[int]]): Restrict to these stays, all stays if None

    Returns:
        Dict[str, FeatureRun]: Result frame and quality report per feature, in request order

    Raises:
        ConfigurationError: For unknown features or a missing window fallback, before
            any extraction runs
    """
    logger.log_start("extract_features")

    names = list(FEATURE_REGISTRY) if feature_names is None else list(feature_names)
    configs = [get_feature_config(name) for name in names]
    if window_source is WindowSource.CLINICAL:
        configs = [clinically_anchored(config) for config in configs]

    entities = prepare_entities(con, window_source, window_fallback, icustay_ids)

    runs = {}
    for config in configs:
        events = query_candidate_events(con, config, entities)
        result, report = extract_feature(entities, events, config)
        runs[config.name] = FeatureRun(result=result, report=report)

    logger.log_end("extract_features")
    return runs


def materialize_features(con: duckdb.DuckDBPyConnection, runs: Dict[str, FeatureRun],
                         prefix: str = FEATURE_TABLE_PREFIX) -> List[str]:
    """Write every feature result as table <prefix><feature> and return the table names."""
    logger.log_start("materialize_features")
    tables = []
    for name, run in runs.items():
        table_name = f"{prefix}{name}"
        materialize_table(con, table_name, run.result)
        tables.append(table_name)
    logger.log_end("materialize_features")
    return tables


def quality_summary(runs: Dict[str, FeatureRun]) -> pd.DataFrame:
    """One row of quality counts per feature."""
    return pd.DataFrame([run.report.to_dict() for run in runs.values()])
