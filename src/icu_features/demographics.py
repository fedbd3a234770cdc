"""
ICU Stay Demographics

Per-stay demographic and administrative features:

1. compute_icu_age: fractional age at ICU admission, ICU length of stay and the
   position of the stay among the patient's and the admission's stays
2. compute_icustay_detail: hospital and ICU length of stay in whole days, age in
   calendar years, grouped ethnicity, and first-stay flags

MIMIC-III shifts the date of birth of patients older than 89 so that their
computed age is around 300 years. recode_deidentified_age replaces those ages
with the median age of the shifted group; it is a separate step so the raw age
stays available.
"""
import numpy as np
import pandas as pd

from .config import DEIDENTIFIED_AGE_SENTINEL, DEIDENTIFIED_AGE_THRESHOLD
from .logging_utils import logger
from .utils import DAYS_PER_YEAR, get_day_difference, get_whole_day_difference, get_year_difference

# Free-text ethnicity values of the admissions table, grouped
ETHNICITY_GROUPS = {
    "white": [
        "WHITE",
        "WHITE - RUSSIAN",
        "WHITE - OTHER EUROPEAN",
        "WHITE - BRAZILIAN",
        "WHITE - EASTERN EUROPEAN",
    ],
    "black": [
        "BLACK/AFRICAN AMERICAN",
        "BLACK/CAPE VERDEAN",
        "BLACK/HAITIAN",
        "BLACK/AFRICAN",
        "CARIBBEAN ISLAND",
    ],
    "hispanic": [
        "HISPANIC OR LATINO",
        "HISPANIC/LATINO - PUERTO RICAN",
        "HISPANIC/LATINO - DOMINICAN",
        "HISPANIC/LATINO - GUATEMALAN",
        "HISPANIC/LATINO - CUBAN",
        "HISPANIC/LATINO - SALVADORAN",
        "HISPANIC/LATINO - CENTRAL AMERICAN (OTHER)",
        "HISPANIC/LATINO - MEXICAN",
        "HISPANIC/LATINO - COLOMBIAN",
        "HISPANIC/LATINO - HONDURAN",
    ],
    "asian": [
        "ASIAN",
        "ASIAN - CHINESE",
        "ASIAN - ASIAN INDIAN",
        "ASIAN - VIETNAMESE",
        "ASIAN - FILIPINO",
        "ASIAN - CAMBODIAN",
        "ASIAN - OTHER",
        "ASIAN - KOREAN",
        "ASIAN - JAPANESE",
        "ASIAN - THAI",
    ],
    "native": [
        "AMERICAN INDIAN/ALASKA NATIVE",
        "AMERICAN INDIAN/ALASKA NATIVE FEDERALLY RECOGNIZED TRIBE",
    ],
    "unknown": [
        "UNKNOWN/NOT SPECIFIED",
        "UNABLE TO OBTAIN",
        "PATIENT DECLINED TO ANSWER",
    ],
}
ETHNICITY_LOOKUP = {ethnicity: group for group, values in ETHNICITY_GROUPS.items() for ethnicity in values}
OTHER_ETHNICITY = "other"


def recode_deidentified_age(age: pd.Series,
                            threshold: float = DEIDENTIFIED_AGE_THRESHOLD,
                            sentinel: float = DEIDENTIFIED_AGE_SENTINEL) -> pd.Series:
    """Replace ages above the de-identification threshold with the sentinel age; NaN stays NaN."""
    return age.where(~(age > threshold), sentinel)


def group_ethnicity(ethnicity: pd.Series) -> pd.Series:
    return ethnicity.map(ETHNICITY_LOOKUP).fillna(OTHER_ETHNICITY)


def compute_icu_age(icustays: pd.DataFrame, patients: pd.DataFrame) -> pd.DataFrame:
    """
    Compute age at ICU admission and stay ordering for every ICU stay.

    Args:
        icustays (pd.DataFrame): icustay_id, subject_id, hadm_id, intime, outtime
        patients (pd.DataFrame): subject_id, gender, dob

    Returns:
        pd.DataFrame: One row per stay (stays of unknown patients are dropped)
            with icu_intime, icu_outtime, dob, gender, age_raw, age,
            icu_los_days, icustay_num and icustay_num_hosp, ordered by icustay_id
    """
    logger.log_start("compute_icu_age")

    df = icustays[["icustay_id", "subject_id", "hadm_id", "intime", "outtime"]].merge(
        patients[["subject_id", "gender", "dob"]], on="subject_id", how="inner")
    df = df.rename(columns={"intime": "icu_intime", "outtime": "icu_outtime"})
    for column in ("icu_intime", "icu_outtime", "dob"):
        df[column] = pd.to_datetime(df[column])

    # Whole seconds between birth and admission, over the mean year length
    age_seconds = np.floor((df["icu_intime"] - df["dob"]).dt.total_seconds())
    df["age_raw"] = age_seconds / (DAYS_PER_YEAR * 24 * 60 * 60)
    df["age"] = recode_deidentified_age(df["age_raw"])
    df["icu_los_days"] = get_day_difference(df["icu_outtime"], df["icu_intime"])

    df = df.sort_values(["icu_intime", "icustay_id"], kind="mergesort")
    df["icustay_num"] = df.groupby("subject_id").cumcount() + 1
    df["icustay_num_hosp"] = df.groupby("hadm_id").cumcount() + 1
    df = df.sort_values("icustay_id").reset_index(drop=True)

    n_recoded = int((df["age_raw"] > DEIDENTIFIED_AGE_THRESHOLD).sum())
    if n_recoded:
        logger.log_info(f"{n_recoded} stays with de-identified age recoded to {DEIDENTIFIED_AGE_SENTINEL}")

    logger.log_end("compute_icu_age")
    return df[["icustay_id", "subject_id", "hadm_id", "icu_intime", "icu_outtime", "dob", "gender",
               "age_raw", "age", "icu_los_days", "icustay_num", "icustay_num_hosp"]]


def compute_icustay_detail(icustays: pd.DataFrame, admissions: pd.DataFrame, patients: pd.DataFrame) -> pd.DataFrame:
    """
    Compute administrative detail for ICU stays of admissions with charted data.

    Length of stay is counted in calendar-day boundaries crossed and age in
    calendar-year boundaries crossed, so both are whole numbers.

    Args:
        icustays (pd.DataFrame): icustay_id, subject_id, hadm_id, intime, outtime
        admissions (pd.DataFrame): hadm_id, admittime, dischtime, ethnicity,
            hospital_expire_flag, has_chartevents_data
        patients (pd.DataFrame): subject_id, gender, dob, dod

    Returns:
        pd.DataFrame: One row per qualifying stay ordered by subject, admittime, intime
    """
    logger.log_start("compute_icustay_detail")

    adm_columns = ["hadm_id", "admittime", "dischtime", "ethnicity", "hospital_expire_flag", "has_chartevents_data"]
    df = icustays[["icustay_id", "subject_id", "hadm_id", "intime", "outtime"]] \
        .merge(admissions[adm_columns], on="hadm_id", how="inner") \
        .merge(patients[["subject_id", "gender", "dob", "dod"]], on="subject_id", how="inner")
    df = df[df["has_chartevents_data"] == 1].copy()
    for column in ("intime", "outtime", "admittime", "dischtime", "dob"):
        df[column] = pd.to_datetime(df[column])

    df["los_hospital"] = get_whole_day_difference(df["dischtime"], df["admittime"])
    df["admission_age"] = get_year_difference(df["intime"], df["dob"])
    df["ethnicity_grouped"] = group_ethnicity(df["ethnicity"])
    df["los_icu"] = get_whole_day_difference(df["outtime"], df["intime"])

    df["hospstay_seq"] = df.groupby("subject_id")["admittime"].rank(method="dense").astype(int)
    df["first_hosp_stay"] = (df["hospstay_seq"] == 1).astype(int)
    df["icustay_seq"] = df.groupby("hadm_id")["intime"].rank(method="dense").astype(int)
    df["first_icu_stay"] = (df["icustay_seq"] == 1).astype(int)

    df = df.sort_values(["subject_id", "admittime", "intime"], kind="mergesort").reset_index(drop=True)

    logger.log_info(f"{len(df)} ICU stays with charted data")
    logger.log_end("compute_icustay_detail")
    return df[["icustay_id", "subject_id", "hadm_id", "gender", "dod", "admittime", "dischtime",
               "los_hospital", "admission_age", "ethnicity", "ethnicity_grouped", "hospital_expire_flag",
               "hospstay_seq", "first_hosp_stay", "intime", "outtime", "los_icu", "icustay_seq", "first_icu_stay"]]
