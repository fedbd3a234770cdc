"""
Monitoring Window Estimation from Heart Rate Charting

Administrative ICU times record when a patient was officially admitted and
discharged; actual bedside monitoring usually starts a little later and stops a
little earlier. This module estimates the clinical monitoring window of every
ICU stay as the first and last heart rate charted for it:

1. Every hospital admission gets fuzzy extraction bounds, 12 hours before
   admittime to 12 hours after dischtime. If the same patient's previous
   admission ended (or next one starts) closer than the two fuzz widths
   combined, the shared boundary is placed at the midpoint of the gap.
2. Heart rate events whose charttime lies in [data_start, data_end) of their
   admission are kept, and the earliest/latest per ICU stay become
   intime_hr/outtime_hr.
3. Stays without any heart rate keep a row with NaT bounds.

The bounds are half-open, so an event exactly at a midpoint belongs to the later
admission and is never counted for both.
"""
import pandas as pd

from .config import MIN_MONITORING_COVERAGE, MONITORING_FUZZ_AFTER, MONITORING_FUZZ_BEFORE
from .errors import ConfigurationError
from .logging_utils import logger
from .windows import ENTITY_COLUMN

WINDOW_COLUMNS = [ENTITY_COLUMN, "subject_id", "hadm_id", "intime_hr", "outtime_hr"]


def _half_gap(later: pd.Series, earlier: pd.Series) -> pd.Series:
    """Half of the gap between two timestamps, truncated to whole seconds."""
    gap_seconds = (later - earlier).dt.total_seconds()
    return pd.to_timedelta((gap_seconds // 2), unit="s")


def compute_extraction_bounds(admissions: pd.DataFrame,
                              fuzz_before: pd.Timedelta = MONITORING_FUZZ_BEFORE,
                              fuzz_after: pd.Timedelta = MONITORING_FUZZ_AFTER) -> pd.DataFrame:
    """
    Compute the fuzzy [data_start, data_end) bounds of every hospital admission.

    Args:
        admissions (pd.DataFrame): subject_id, hadm_id, admittime, dischtime
        fuzz_before (pd.Timedelta): Look-back before admittime
        fuzz_after (pd.Timedelta): Look-ahead after dischtime

    Returns:
        pd.DataFrame: subject_id, hadm_id, data_start, data_end
    """
    fuzz_before, fuzz_after = pd.Timedelta(fuzz_before), pd.Timedelta(fuzz_after)
    if fuzz_before < pd.Timedelta(0) or fuzz_after < pd.Timedelta(0):
        raise ConfigurationError(f"Monitoring fuzz must not be negative, got {fuzz_before} and {fuzz_after}")
    total_fuzz = fuzz_before + fuzz_after

    adm = admissions[["subject_id", "hadm_id", "admittime", "dischtime"]].copy()
    adm["admittime"] = pd.to_datetime(adm["admittime"])
    adm["dischtime"] = pd.to_datetime(adm["dischtime"])
    adm = adm.sort_values(["subject_id", "admittime", "hadm_id"], kind="mergesort").reset_index(drop=True)

    by_subject = adm.groupby("subject_id", sort=False)
    dischtime_lag = by_subject["dischtime"].shift(1)
    admittime_lead = by_subject["admittime"].shift(-1)

    # Previous discharge closer than the combined fuzz: split the gap at its midpoint
    close_before = dischtime_lag.notna() & (dischtime_lag > adm["admittime"] - total_fuzz)
    adm["data_start"] = adm["admittime"] - fuzz_before
    adm.loc[close_before, "data_start"] = (dischtime_lag + _half_gap(adm["admittime"], dischtime_lag))[close_before]

    close_after = admittime_lead.notna() & (admittime_lead < adm["dischtime"] + total_fuzz)
    adm["data_end"] = adm["dischtime"] + fuzz_after
    adm.loc[close_after, "data_end"] = (adm["dischtime"] + _half_gap(admittime_lead, adm["dischtime"]))[close_after]

    return adm[["subject_id", "hadm_id", "data_start", "data_end"]]


def estimate_monitoring_windows(icustays: pd.DataFrame,
                                admissions: pd.DataFrame,
                                proxy_events: pd.DataFrame,
                                fuzz_before: pd.Timedelta = MONITORING_FUZZ_BEFORE,
                                fuzz_after: pd.Timedelta = MONITORING_FUZZ_AFTER) -> pd.DataFrame:
    """
    Estimate the clinical monitoring window of every ICU stay.

    Args:
        icustays (pd.DataFrame): icustay_id, subject_id, hadm_id
        admissions (pd.DataFrame): subject_id, hadm_id, admittime, dischtime
        proxy_events (pd.DataFrame): Heart rate events with icustay_id, hadm_id, charttime
        fuzz_before (pd.Timedelta): Look-back before admittime
        fuzz_after (pd.Timedelta): Look-ahead after dischtime

    Returns:
        pd.DataFrame: One row per ICU stay with icustay_id, subject_id, hadm_id,
            intime_hr and outtime_hr (NaT when no proxy event qualifies)
    """
    bounds = compute_extraction_bounds(admissions, fuzz_before, fuzz_after)
    logger.log_start("estimate_monitoring_windows")

    events = proxy_events[[ENTITY_COLUMN, "hadm_id", "charttime"]].copy()
    events["charttime"] = pd.to_datetime(events["charttime"])
    events = events.merge(bounds[["hadm_id", "data_start", "data_end"]], on="hadm_id", how="inner")
    in_bounds = (events["charttime"] >= events["data_start"]) & (events["charttime"] < events["data_end"])
    events = events[in_bounds & events[ENTITY_COLUMN].notna()]

    hr_range = events.groupby(ENTITY_COLUMN)["charttime"].agg(intime_hr="min", outtime_hr="max").reset_index()

    stays = icustays[[ENTITY_COLUMN, "subject_id", "hadm_id"]].drop_duplicates(ENTITY_COLUMN)
    windows = stays.merge(hr_range, on=ENTITY_COLUMN, how="left")
    windows = windows.sort_values(["subject_id", "hadm_id", ENTITY_COLUMN], kind="mergesort").reset_index(drop=True)

    n_stays = len(windows)
    n_covered = int(windows["intime_hr"].notna().sum())
    coverage = n_covered / n_stays if n_stays else 0.0
    message = f"Monitoring windows estimated for {n_covered}/{n_stays} stays ({100 * coverage:.2f}%)"
    if n_stays and coverage < MIN_MONITORING_COVERAGE:
        logger.log_warning(message)
    else:
        logger.log_info(message)

    logger.log_end("estimate_monitoring_windows")
    return windows[WINDOW_COLUMNS]
