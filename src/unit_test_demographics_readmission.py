"""
Unit tests for demographics and readmission flags
"""

import numpy as np
import pandas as pd
import pytest

from icu_features.demographics import (
    compute_icu_age,
    compute_icustay_detail,
    group_ethnicity,
    recode_deidentified_age,
)
from icu_features.readmission import compute_readmission_30d
from icu_features.utils import DAYS_PER_YEAR


def _ts(s: str) -> pd.Timestamp:
    return pd.Timestamp(s)


def _icustays():
    """Subject 1: two stays in one admission and a readmission 20 days later. Subject 2: one stay."""
    return pd.DataFrame({
        "icustay_id": [100, 101, 102, 200],
        "subject_id": [1, 1, 1, 2],
        "hadm_id": [10, 10, 11, 20],
        "intime": [_ts("2150-01-01 10:00"), _ts("2150-01-05 12:00"), _ts("2150-01-28 09:00"), _ts("2150-06-01 23:00")],
        "outtime": [_ts("2150-01-03 10:00"), _ts("2150-01-08 12:00"), _ts("2150-02-02 09:00"), _ts("2150-06-02 01:00")],
    })


def _admissions():
    return pd.DataFrame({
        "subject_id": [1, 1, 2],
        "hadm_id": [10, 11, 20],
        "admittime": [_ts("2150-01-01 08:00"), _ts("2150-01-28 07:00"), _ts("2150-06-01 20:00")],
        "dischtime": [_ts("2150-01-10 08:00"), _ts("2150-02-05 07:00"), _ts("2150-06-03 10:00")],
        "ethnicity": ["WHITE - RUSSIAN", "WHITE - RUSSIAN", "MULTI RACE ETHNICITY"],
        "hospital_expire_flag": [0, 0, 1],
        "has_chartevents_data": [1, 1, 1],
    })


def _patients():
    return pd.DataFrame({
        "subject_id": [1, 2],
        "gender": ["F", "M"],
        "dob": [_ts("2100-01-01 10:00"), _ts("1850-06-01 00:00")],
        "dod": [pd.NaT, _ts("2150-06-03 10:00")],
    })


class TestRecodeAge:

    def test_ages_above_threshold_are_recoded(self):
        ages = pd.Series([45.0, 89.0, 89.01, 300.2, np.nan])
        recoded = recode_deidentified_age(ages)
        assert recoded.iloc[:4].tolist() == [45.0, 89.0, 91.4, 91.4]
        assert np.isnan(recoded.iloc[4])

    def test_custom_threshold(self):
        assert recode_deidentified_age(pd.Series([70.0]), threshold=65, sentinel=66.0).tolist() == [66.0]


class TestIcuAge:

    def setup_method(self):
        self.df = compute_icu_age(_icustays(), _patients()).set_index("icustay_id")

    def test_fractional_age(self):
        expected = (_ts("2150-01-01 10:00") - _ts("2100-01-01 10:00")).total_seconds() / (DAYS_PER_YEAR * 86400)
        assert self.df.loc[100, "age_raw"] == pytest.approx(expected)
        assert self.df.loc[100, "age"] == pytest.approx(expected)

    def test_shifted_age_is_recoded(self):
        assert self.df.loc[200, "age_raw"] > 299
        assert self.df.loc[200, "age"] == 91.4

    def test_icu_los_days(self):
        assert self.df.loc[100, "icu_los_days"] == pytest.approx(2.0)
        assert self.df.loc[200, "icu_los_days"] == pytest.approx(2 / 24)

    def test_stay_numbering(self):
        assert self.df.loc[[100, 101, 102], "icustay_num"].tolist() == [1, 2, 3]
        assert self.df.loc[[100, 101, 102], "icustay_num_hosp"].tolist() == [1, 2, 1]


class TestIcustayDetail:

    def setup_method(self):
        self.df = compute_icustay_detail(_icustays(), _admissions(), _patients()).set_index("icustay_id")

    def test_whole_day_los(self):
        # 23:00 to 01:00 next day crosses one date boundary
        assert self.df.loc[200, "los_icu"] == 1
        assert self.df.loc[100, "los_hospital"] == 9

    def test_calendar_year_age(self):
        assert self.df.loc[100, "admission_age"] == 50
        assert self.df.loc[200, "admission_age"] == 300

    def test_ethnicity_grouping(self):
        assert self.df.loc[100, "ethnicity_grouped"] == "white"
        assert self.df.loc[200, "ethnicity_grouped"] == "other"

    def test_sequence_flags(self):
        assert self.df.loc[[100, 101, 102], "hospstay_seq"].tolist() == [1, 1, 2]
        assert self.df.loc[[100, 101, 102], "first_hosp_stay"].tolist() == [1, 1, 0]
        assert self.df.loc[[100, 101, 102], "icustay_seq"].tolist() == [1, 2, 1]
        assert self.df.loc[[100, 101, 102], "first_icu_stay"].tolist() == [1, 0, 1]

    def test_admissions_without_charted_data_are_dropped(self):
        admissions = _admissions()
        admissions.loc[admissions["hadm_id"] == 20, "has_chartevents_data"] = 0
        df = compute_icustay_detail(_icustays(), admissions, _patients())
        assert 200 not in df["icustay_id"].tolist()

    def test_group_ethnicity(self):
        groups = group_ethnicity(pd.Series(["BLACK/HAITIAN", "ASIAN - THAI", "UNABLE TO OBTAIN", None]))
        assert groups.tolist() == ["black", "asian", "unknown", "other"]


class TestReadmission:

    def setup_method(self):
        self.df = compute_readmission_30d(_icustays()).set_index("icustay_id")

    def test_next_stay_links(self):
        assert self.df.loc[100, "next_icustay_id"] == 101
        assert self.df.loc[101, "next_hadm_id"] == 11
        assert self.df.loc[101, "next_icu_intime"] == _ts("2150-01-28 09:00")
        assert pd.isna(self.df.loc[102, "next_icustay_id"])

    def test_days_to_next_icu(self):
        assert self.df.loc[101, "days_to_next_icu"] == pytest.approx(19 + 21 / 24)
        assert np.isnan(self.df.loc[200, "days_to_next_icu"])

    def test_readmission_flags(self):
        assert self.df.loc[[100, 101, 102, 200], "leads_to_readmission_30d"].tolist() == [1, 1, 0, 0]
        assert self.df.loc[[100, 101, 102, 200], "is_readmission_30d"].tolist() == [0, 1, 1, 0]
        assert self.df.loc[[100, 101, 102, 200], "is_last_icu_stay"].tolist() == [0, 0, 1, 1]

    def test_window_is_configurable(self):
        df = compute_readmission_30d(_icustays(), window_days=10).set_index("icustay_id")
        assert df.loc[101, "leads_to_readmission_30d"] == 0
        assert df.loc[100, "leads_to_readmission_30d"] == 1
