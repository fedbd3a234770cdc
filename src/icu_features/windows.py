"""
Per-stay extraction windows.

A Window names the entity columns its start and end are anchored on and the fuzz
applied to each side, e.g. "six hours before ICU intime through ICU outtime".
Resolving a window against an entity frame yields one [start, end] pair per stay
and a status telling whether the window can be used:

- ok: both bounded sides are defined and start <= end
- absent: a bounded side's anchor is NaT (e.g. no heart rate to estimate it)
- invalid: start > end

Clinically anchored windows come from the monitoring window estimator. Whether a
stay without an estimated window falls back to its administrative times is a
choice the caller makes explicitly through attach_monitoring_windows.
"""
from dataclasses import dataclass
from enum import Enum
from typing import Optional

import pandas as pd

from .errors import ConfigurationError
from .logging_utils import logger

ENTITY_COLUMN = "icustay_id"

WINDOW_OK = "ok"
WINDOW_ABSENT = "absent"
WINDOW_INVALID = "invalid"

ZERO = pd.Timedelta(0)


@dataclass(frozen=True)
class Window:
    """
    Extraction window anchored on entity columns.

    Attributes:
        start_anchor: Entity column the window starts from, None for no lower bound
        before: Fuzz subtracted from the start anchor
        end_anchor: Entity column the window ends at, None for no upper bound
        after: Fuzz added to the end anchor
    """
    start_anchor: Optional[str] = None
    before: pd.Timedelta = ZERO
    end_anchor: Optional[str] = None
    after: pd.Timedelta = ZERO

    def __post_init__(self):
        for name in ("before", "after"):
            value = getattr(self, name)
            if not isinstance(value, pd.Timedelta):
                try:
                    value = pd.Timedelta(value)
                except (TypeError, ValueError) as exc:
                    raise ConfigurationError(f"Window fuzz '{name}' must be a duration, got {value!r}") from exc
                object.__setattr__(self, name, value)
            if value < ZERO:
                raise ConfigurationError(f"Window fuzz '{name}' must not be negative, got {value}")

    def required_columns(self):
        return [c for c in (self.start_anchor, self.end_anchor) if c is not None]

    def resolve(self, entities: pd.DataFrame) -> pd.DataFrame:
        """
        Compute window bounds for every entity.

        Args:
            entities (pd.DataFrame): One row per ICU stay with the anchor columns

        Returns:
            pd.DataFrame: icustay_id, window_start, window_end, window_status.
                Unbounded sides are NaT and do not make the window absent.
        """
        missing = [c for c in self.required_columns() if c not in entities.columns]
        if missing:
            raise ConfigurationError(f"Entity frame lacks window anchor columns {missing}")

        frame = entities.reset_index(drop=True)
        windows = pd.DataFrame({ENTITY_COLUMN: frame[ENTITY_COLUMN]})
        absent = pd.Series(False, index=windows.index)
        if self.start_anchor is not None:
            windows["window_start"] = pd.to_datetime(frame[self.start_anchor]) - self.before
            absent |= windows["window_start"].isna()
        else:
            windows["window_start"] = pd.Series(pd.NaT, index=windows.index, dtype="datetime64[ns]")
        if self.end_anchor is not None:
            windows["window_end"] = pd.to_datetime(frame[self.end_anchor]) + self.after
            absent |= windows["window_end"].isna()
        else:
            windows["window_end"] = pd.Series(pd.NaT, index=windows.index, dtype="datetime64[ns]")

        inverted = ~absent & (windows["window_start"] > windows["window_end"])

        windows["window_status"] = WINDOW_OK
        windows.loc[absent, "window_status"] = WINDOW_ABSENT
        windows.loc[inverted, "window_status"] = WINDOW_INVALID
        return windows

    def contains(self, times: pd.Series, window_start: pd.Series, window_end: pd.Series) -> pd.Series:
        """Inclusive membership test of aligned timestamps in resolved bounds."""
        inside = times.notna()
        if self.start_anchor is not None:
            inside &= times >= window_start
        if self.end_anchor is not None:
            inside &= times <= window_end
        return inside

    def __str__(self):
        def side(anchor, fuzz, sign):
            if anchor is None:
                return "unbounded"
            return anchor if fuzz == ZERO else f"{anchor} {sign} {fuzz}"
        return f"[{side(self.start_anchor, self.before, '-')}, {side(self.end_anchor, self.after, '+')}]"


UNBOUNDED_WINDOW = Window()


class WindowFallback(Enum):
    """What to do with stays that have no estimated monitoring window."""
    NONE = "none"                      # No window, so no feature value
    ADMINISTRATIVE = "administrative"  # Use the recorded intime/outtime instead


def attach_monitoring_windows(entities: pd.DataFrame, windows: pd.DataFrame, fallback: WindowFallback) -> pd.DataFrame:
    """
    Add estimated monitoring windows (intime_hr, outtime_hr) to an entity frame.

    Args:
        entities (pd.DataFrame): ICU stays with intime/outtime
        windows (pd.DataFrame): Output of estimate_monitoring_windows
        fallback (WindowFallback): Required choice for stays without an estimate

    Returns:
        pd.DataFrame: Copy of entities with intime_hr, outtime_hr and a boolean
            window_fallback_used column
    """
    if not isinstance(fallback, WindowFallback):
        raise ConfigurationError(f"fallback must be a WindowFallback, got {fallback!r}")
    logger.log_start("attach_monitoring_windows")

    base = entities.drop(columns=[c for c in ("intime_hr", "outtime_hr", "window_fallback_used") if c in entities.columns])
    merged = base.merge(windows[[ENTITY_COLUMN, "intime_hr", "outtime_hr"]], on=ENTITY_COLUMN, how="left")
    missing = merged["intime_hr"].isna() | merged["outtime_hr"].isna()

    if fallback is WindowFallback.ADMINISTRATIVE:
        merged.loc[missing, "intime_hr"] = merged.loc[missing, "intime"]
        merged.loc[missing, "outtime_hr"] = merged.loc[missing, "outtime"]
        merged["window_fallback_used"] = missing
        if missing.any():
            logger.log_warning(f"{int(missing.sum())} of {len(merged)} stays use administrative times instead of a monitoring window")
    else:
        merged["window_fallback_used"] = False
        if missing.any():
            logger.log_info(f"{int(missing.sum())} of {len(merged)} stays have no monitoring window and will yield no value")

    logger.log_end("attach_monitoring_windows")
    return merged
