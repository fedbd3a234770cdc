"""
Temporal Feature Extractor

One parameterised engine for every "first/closest measurement per ICU stay"
table. Given the ICU stays, their candidate events and a FeatureConfig, it:

1. Gathers the events recorded under the feature's source tags and normalises
   their units
2. Drops error-flagged rows, implausible values and rows outside the stay's
   window (validity is applied before the window, so an impossible value is
   never chosen because it happens to be earliest)
3. Orders the survivors of each stay by the selection policy with a
   deterministic tie-break: policy key, tag priority, tag value, event order
4. Takes rank 1 per stay and measures its offset from the reference instant
5. Left-joins onto all stays, so every stay has exactly one row

Stays without a qualifying event get a row of NaN/NaT. Per-stay problems
(inverted or missing windows) are absorbed into absent results and summarised
in a QualityReport; only configuration errors abort the run.
"""
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Tuple

import numpy as np
import pandas as pd

from .errors import ConfigurationError, InvalidWindowError
from .logging_utils import logger
from .normalization import UnitNormalizer
from .validity import ACCEPT_ANY
from .windows import (
    ENTITY_COLUMN,
    UNBOUNDED_WINDOW,
    WINDOW_ABSENT,
    WINDOW_INVALID,
    WINDOW_OK,
    Window,
)

RESULT_COLUMNS = [ENTITY_COLUMN, "value", "observed_at", "source_tag", "offset_from_reference"]

VALUE_KINDS = {"numeric": "valuenum", "categorical": "value"}
SOURCE_TABLES = {"chartevents", "labevents"}
JOIN_KEYS = {"icustay_id", "hadm_id", "subject_id"}


class SelectionPolicy(Enum):
    """Total ordering used to pick one event among a stay's candidates."""
    EARLIEST = "earliest"                              # charttime ascending
    CLOSEST_TO_REFERENCE = "closest_to_reference"      # |charttime - reference| ascending


@dataclass(frozen=True)
class FeatureConfig:
    """
    Static description of one feature extraction.

    Attributes:
        name: Feature name, also the suffix of the materialised table
        source_tags: Item IDs whose events are candidates
        unit_normalizer: Conversion of each tag's raw value to the common unit
        validity: Predicate on normalised values (ACCEPT_ANY for no filtering)
        window: Per-stay extraction window
        policy: EARLIEST or CLOSEST_TO_REFERENCE
        reference: Entity column the offset (and CLOSEST ordering) is measured from
        tag_priority: Ranked tags; earlier tags win ties
        priority_first: Sort by tag priority before the policy key
        raw_validity: Optional per-tag predicates on the raw, unconverted value
        value_kind: "numeric" reads valuenum, "categorical" reads value
        source_table: chartevents or labevents
        join_key: Column used to attribute events to stays
        round_digits: Round the selected value to this many decimals
        unit: Unit of the normalised value, carried into the quality report
    """
    name: str
    source_tags: Tuple[int, ...]
    unit_normalizer: UnitNormalizer
    validity: object = ACCEPT_ANY
    window: Window = UNBOUNDED_WINDOW
    policy: SelectionPolicy = SelectionPolicy.EARLIEST
    reference: Optional[str] = "intime"
    tag_priority: Tuple[int, ...] = ()
    priority_first: bool = False
    raw_validity: Dict[int, object] = field(default_factory=dict, hash=False, compare=False)
    value_kind: str = "numeric"
    source_table: str = "chartevents"
    join_key: str = "icustay_id"
    round_digits: Optional[int] = None
    unit: str = ""

    def __post_init__(self):
        object.__setattr__(self, "source_tags", tuple(self.source_tags))
        object.__setattr__(self, "tag_priority", tuple(self.tag_priority))
        self.validate()

    def validate(self) -> None:
        """Raise ConfigurationError if any part of the configuration is unusable."""
        if not self.source_tags:
            raise ConfigurationError(f"Feature '{self.name}' has no source tags")
        if len(set(self.source_tags)) != len(self.source_tags):
            raise ConfigurationError(f"Feature '{self.name}' lists a source tag twice")
        if not isinstance(self.unit_normalizer, UnitNormalizer):
            raise ConfigurationError(f"Feature '{self.name}' needs a UnitNormalizer, got {self.unit_normalizer!r}")
        self.unit_normalizer.check_covers(self.source_tags, self.name)
        if not callable(self.validity):
            raise ConfigurationError(f"Validity predicate of feature '{self.name}' is not callable")
        for tag, predicate in self.raw_validity.items():
            if tag not in self.source_tags:
                raise ConfigurationError(f"Raw bound of feature '{self.name}' names unknown source tag {tag}")
            if not callable(predicate):
                raise ConfigurationError(f"Raw bound for tag {tag} of feature '{self.name}' is not callable")
        unknown = set(self.tag_priority) - set(self.source_tags)
        if unknown:
            raise ConfigurationError(f"Tag priority of feature '{self.name}' names unknown tags {sorted(unknown)}")
        if len(set(self.tag_priority)) != len(self.tag_priority):
            raise ConfigurationError(f"Tag priority of feature '{self.name}' lists a tag twice")
        if not isinstance(self.policy, SelectionPolicy):
            raise ConfigurationError(f"Feature '{self.name}' has unknown selection policy {self.policy!r}")
        if self.policy is SelectionPolicy.CLOSEST_TO_REFERENCE and self.reference is None:
            raise ConfigurationError(f"Feature '{self.name}' selects closest to reference but has no reference")
        if not isinstance(self.window, Window):
            raise ConfigurationError(f"Feature '{self.name}' needs a Window, got {self.window!r}")
        if self.value_kind not in VALUE_KINDS:
            raise ConfigurationError(f"Feature '{self.name}' has unknown value kind '{self.value_kind}'")
        if self.source_table not in SOURCE_TABLES:
            raise ConfigurationError(f"Feature '{self.name}' reads unknown table '{self.source_table}'")
        if self.join_key not in JOIN_KEYS:
            raise ConfigurationError(f"Feature '{self.name}' joins on unknown key '{self.join_key}'")

    @property
    def value_column(self) -> str:
        return VALUE_KINDS[self.value_kind]

    def required_entity_columns(self) -> List[str]:
        columns = [ENTITY_COLUMN] + self.window.required_columns()
        if self.reference is not None:
            columns.append(self.reference)
        return list(dict.fromkeys(columns))


@dataclass
class QualityReport:
    """
    Data-quality summary of one extraction.

    Every stay lands in exactly one of: with_result, no_candidates,
    rejected_by_validity, rejected_by_window, absent_reference. absent_windows and
    invalid_windows break rejected_by_window down further. absent_reference counts
    stays with valid in-window events but no reference instant to rank them by.
    """
    feature: str
    unit: str = ""
    total_entities: int = 0
    with_result: int = 0
    no_candidates: int = 0
    rejected_by_validity: int = 0
    rejected_by_window: int = 0
    absent_reference: int = 0
    absent_windows: int = 0
    invalid_windows: List[InvalidWindowError] = field(default_factory=list)

    @property
    def absent(self) -> int:
        return self.total_entities - self.with_result

    @property
    def coverage(self) -> float:
        return self.with_result / self.total_entities if self.total_entities else 0.0

    def to_dict(self) -> Dict[str, object]:
        return {
            "feature": self.feature,
            "unit": self.unit,
            "total_entities": self.total_entities,
            "with_result": self.with_result,
            "no_candidates": self.no_candidates,
            "rejected_by_validity": self.rejected_by_validity,
            "rejected_by_window": self.rejected_by_window,
            "absent_reference": self.absent_reference,
            "absent_windows": self.absent_windows,
            "invalid_windows": len(self.invalid_windows),
        }

    def summary(self) -> str:
        return (f"{self.feature}: {self.with_result}/{self.total_entities} stays with a value "
                f"({100 * self.coverage:.2f}%), no candidates {self.no_candidates}, "
                f"rejected by validity {self.rejected_by_validity}, rejected by window {self.rejected_by_window}, "
                f"no reference {self.absent_reference}")


def _gather_candidates(events: pd.DataFrame, entity_ids: pd.Series, config: FeatureConfig) -> pd.DataFrame:
    """Keep the feature's tags for known stays and normalise units."""
    candidates = pd.DataFrame({
        ENTITY_COLUMN: events[ENTITY_COLUMN].values,
        "charttime": pd.to_datetime(events["charttime"]).values,
        "source_tag": events["itemid"].values,
        "raw_value": events[config.value_column].values,
        "error": events["error"].values if "error" in events.columns else np.nan,
    })
    # Event order in the input frame is the final tie-break
    candidates["event_seq"] = np.arange(len(candidates))

    keep = candidates["source_tag"].isin(config.source_tags) & candidates[ENTITY_COLUMN].isin(entity_ids)
    candidates = candidates[keep].reset_index(drop=True)

    if config.value_kind == "numeric":
        candidates["raw_value"] = pd.to_numeric(candidates["raw_value"], errors="coerce").astype(float)
    candidates["normalized_value"] = config.unit_normalizer.normalize_series(candidates["source_tag"], candidates["raw_value"])
    return candidates


def _validity_mask(candidates: pd.DataFrame, config: FeatureConfig) -> pd.Series:
    """Rows that are not error-flagged and pass the raw and normalised predicates."""
    error_flag = pd.to_numeric(candidates["error"], errors="coerce").fillna(0) != 0
    valid = ~error_flag

    for tag, predicate in config.raw_validity.items():
        tag_rows = candidates["source_tag"] == tag
        if tag_rows.any():
            raw_ok = pd.Series(True, index=candidates.index)
            raw_ok.loc[tag_rows] = predicate(candidates.loc[tag_rows, "raw_value"]).values
            valid &= raw_ok

    valid &= config.validity(candidates["normalized_value"]).astype(bool)
    return valid


def _sort_columns(config: FeatureConfig) -> List[str]:
    policy_key = "charttime" if config.policy is SelectionPolicy.EARLIEST else "distance"
    if config.priority_first:
        return ["priority_rank", policy_key, "source_tag", "event_seq"]
    return [policy_key, "priority_rank", "source_tag", "event_seq"]


def _empty_result(entity_ids: pd.Series, config: FeatureConfig) -> pd.DataFrame:
    result = pd.DataFrame({ENTITY_COLUMN: entity_ids.values})
    result["value"] = np.nan if config.value_kind == "numeric" else None
    result["observed_at"] = pd.Series(pd.NaT, index=result.index, dtype="datetime64[ns]")
    result["source_tag"] = pd.Series(pd.NA, index=result.index, dtype="Int64")
    result["offset_from_reference"] = pd.Series(pd.NaT, index=result.index, dtype="timedelta64[ns]")
    return result


def extract_feature(entities: pd.DataFrame, events: pd.DataFrame, config: FeatureConfig) -> Tuple[pd.DataFrame, QualityReport]:
    """
    Select at most one measurement per ICU stay for a feature.

    Args:
        entities (pd.DataFrame): One row per ICU stay with icustay_id and the
            window/reference anchor columns the config needs
        events (pd.DataFrame): Candidate events with icustay_id, charttime,
            itemid, valuenum or value, and optionally error
        config (FeatureConfig): Feature configuration

    Returns:
        Tuple[pd.DataFrame, QualityReport]:
            - One row per stay: icustay_id, value, observed_at, source_tag,
              offset_from_reference (NaN/NaT when no event qualifies)
            - Data-quality summary of the run

    Raises:
        ConfigurationError: Before any output, if the configuration or the
            input frames cannot be used
    """
    config.validate()

    missing = [c for c in config.required_entity_columns() if c not in entities.columns]
    if missing:
        raise ConfigurationError(f"Entity frame for feature '{config.name}' lacks columns {missing}")
    if entities[ENTITY_COLUMN].duplicated().any():
        raise ConfigurationError(f"Entity frame for feature '{config.name}' has duplicate {ENTITY_COLUMN} values")
    missing = [c for c in (ENTITY_COLUMN, "charttime", "itemid", config.value_column) if c not in events.columns]
    if missing:
        raise ConfigurationError(f"Event frame for feature '{config.name}' lacks columns {missing}")

    entities = entities.reset_index(drop=True)
    entity_ids = entities[ENTITY_COLUMN]
    report = QualityReport(feature=config.name, unit=config.unit, total_entities=len(entities))
    logger.log_start(f"extract_feature[{config.name}]")

    # Step 1: candidate gathering and unit normalisation
    candidates = _gather_candidates(events, entity_ids, config)

    # Step 2: validity, then window
    windows = config.window.resolve(entities)
    candidates["is_valid"] = _validity_mask(candidates, config).values
    candidates = candidates.merge(windows, on=ENTITY_COLUMN, how="left")
    candidates["in_window"] = (candidates["window_status"] == WINDOW_OK) & config.window.contains(
        candidates["charttime"], candidates["window_start"], candidates["window_end"])
    survivors = candidates[candidates["is_valid"] & candidates["in_window"]].copy()
    unranked_ids = set()

    # Step 3: deterministic ordering
    priority = {tag: rank for rank, tag in enumerate(config.tag_priority)}
    survivors["priority_rank"] = survivors["source_tag"].map(priority).fillna(len(priority)).astype(int)
    if config.reference is not None:
        reference_times = pd.to_datetime(entities.set_index(ENTITY_COLUMN)[config.reference])
        survivors["reference_time"] = survivors[ENTITY_COLUMN].map(reference_times).values
    if config.policy is SelectionPolicy.CLOSEST_TO_REFERENCE:
        survivors["distance"] = (survivors["charttime"] - survivors["reference_time"]).abs()
        # A stay without a reference instant cannot be ranked by distance
        unranked_ids = set(survivors.loc[survivors["distance"].isna(), ENTITY_COLUMN])
        survivors = survivors[survivors["distance"].notna()]
    survivors = survivors.sort_values([ENTITY_COLUMN] + _sort_columns(config), kind="mergesort")

    # Step 4: rank 1 per stay and its offset
    selected = survivors.groupby(ENTITY_COLUMN, sort=False).head(1)
    if config.reference is not None:
        offsets = selected["charttime"] - selected["reference_time"]
    else:
        offsets = selected["charttime"] - selected["window_start"]
    values = selected["normalized_value"]
    if config.round_digits is not None and config.value_kind == "numeric":
        values = values.astype(float).round(config.round_digits)

    # Step 5: left-extend over every stay
    result = _empty_result(entity_ids, config)
    position = pd.Series(result.index, index=result[ENTITY_COLUMN])
    rows = position.loc[selected[ENTITY_COLUMN]].values
    if len(rows):
        result.loc[rows, "value"] = values.values
        result.loc[rows, "observed_at"] = selected["charttime"].values
        result.loc[rows, "source_tag"] = selected["source_tag"].astype("Int64").values
        result.loc[rows, "offset_from_reference"] = offsets.values

    _fill_report(report, candidates, windows, set(selected[ENTITY_COLUMN]), unranked_ids)
    _log_report(report)
    logger.log_end(f"extract_feature[{config.name}]")
    return result[RESULT_COLUMNS], report


def _fill_report(report: QualityReport, candidates: pd.DataFrame, windows: pd.DataFrame, selected_ids, unranked_ids) -> None:
    any_candidate = set(candidates[ENTITY_COLUMN])
    any_valid = set(candidates.loc[candidates["is_valid"], ENTITY_COLUMN])

    report.with_result = len(selected_ids)
    for row in windows.itertuples(index=False):
        entity_id = getattr(row, ENTITY_COLUMN)
        if entity_id in selected_ids:
            continue
        if entity_id not in any_candidate:
            report.no_candidates += 1
        elif entity_id not in any_valid:
            report.rejected_by_validity += 1
        elif entity_id in unranked_ids:
            report.absent_reference += 1
        else:
            report.rejected_by_window += 1
            if row.window_status == WINDOW_ABSENT:
                report.absent_windows += 1
            elif row.window_status == WINDOW_INVALID:
                report.invalid_windows.append(InvalidWindowError(entity_id, row.window_start, row.window_end))


def _log_report(report: QualityReport) -> None:
    logger.log_info(report.summary())
    if report.invalid_windows:
        shown = ", ".join(str(e.entity_id) for e in report.invalid_windows[:5])
        logger.log_warning(f"{report.feature}: {len(report.invalid_windows)} stays with inverted windows treated as absent (e.g. {shown})")
    if report.absent_windows:
        logger.log_warning(f"{report.feature}: {report.absent_windows} stays with qualifying events but no window")
    if report.absent_reference:
        logger.log_warning(f"{report.feature}: {report.absent_reference} stays with qualifying events but no reference time")
