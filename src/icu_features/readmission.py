"""
ICU Readmission Flags

For every ICU stay, finds the patient's next ICU stay (in any hospital
admission) and flags readmissions within the readmission window:

- leads_to_readmission_30d: the next ICU stay starts within 30 days of this
  stay's outtime
- is_readmission_30d: this stay starts within 30 days of the previous stay's
  outtime
- is_last_icu_stay: the patient has no later ICU stay
"""
import pandas as pd

from .config import READMISSION_WINDOW_DAYS
from .logging_utils import logger
from .utils import get_day_difference


def compute_readmission_30d(icustays: pd.DataFrame, window_days: float = READMISSION_WINDOW_DAYS) -> pd.DataFrame:
    """
    Compute next-stay links and readmission flags for every ICU stay.

    Args:
        icustays (pd.DataFrame): icustay_id, subject_id, hadm_id, intime, outtime
        window_days (float): Readmission window in days (inclusive)

    Returns:
        pd.DataFrame: icustay_id, subject_id, hadm_id, icu_intime, icu_outtime,
            next_icustay_id, next_hadm_id, next_icu_intime, days_to_next_icu,
            leads_to_readmission_30d, is_readmission_30d, is_last_icu_stay
            ordered by icustay_id
    """
    logger.log_start("compute_readmission_30d")

    df = icustays[["icustay_id", "subject_id", "hadm_id", "intime", "outtime"]].copy()
    df = df.rename(columns={"intime": "icu_intime", "outtime": "icu_outtime"})
    df["icu_intime"] = pd.to_datetime(df["icu_intime"])
    df["icu_outtime"] = pd.to_datetime(df["icu_outtime"])
    df = df.sort_values(["subject_id", "icu_intime", "icustay_id"], kind="mergesort")

    by_subject = df.groupby("subject_id", sort=False)
    df["next_icustay_id"] = by_subject["icustay_id"].shift(-1).astype("Int64")
    df["next_hadm_id"] = by_subject["hadm_id"].shift(-1).astype("Int64")
    df["next_icu_intime"] = by_subject["icu_intime"].shift(-1)
    previous_outtime = by_subject["icu_outtime"].shift(1)

    df["days_to_next_icu"] = get_day_difference(df["next_icu_intime"], df["icu_outtime"])
    days_since_previous = get_day_difference(df["icu_intime"], previous_outtime)

    # Missing neighbours compare False, so stays without one are not readmissions
    df["leads_to_readmission_30d"] = (df["days_to_next_icu"] <= window_days).astype(int)
    df["is_readmission_30d"] = (days_since_previous <= window_days).astype(int)
    df["is_last_icu_stay"] = df["next_icustay_id"].isna().astype(int)

    df = df.sort_values("icustay_id").reset_index(drop=True)

    logger.log_info(f"{int(df['leads_to_readmission_30d'].sum())} of {len(df)} stays followed by an ICU readmission "
                    f"within {window_days} days")
    logger.log_end("compute_readmission_30d")
    return df
