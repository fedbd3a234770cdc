"""
Unit tests for monitoring window estimation and window fallback

Covers:
- Fuzzy admission bounds and midpoint splitting of close admissions
- First/last heart rate per ICU stay
- Stays without heart rate
- Explicit administrative fallback
"""

import pandas as pd
import pytest

from icu_features.errors import ConfigurationError
from icu_features.monitoring_window import compute_extraction_bounds, estimate_monitoring_windows
from icu_features.windows import WindowFallback, attach_monitoring_windows

FUZZ = pd.Timedelta(hours=12)
DISCH_1 = pd.Timestamp("2100-03-05 10:00:00")
ADMIT_2 = DISCH_1 + pd.Timedelta(hours=10)
MIDPOINT = DISCH_1 + pd.Timedelta(hours=5)


def _ts(s: str) -> pd.Timestamp:
    return pd.Timestamp(s)


def _admissions():
    """Subject 1 has two admissions 10 hours apart, subject 2 a single admission."""
    return pd.DataFrame({
        "subject_id": [1, 1, 2],
        "hadm_id": [11, 12, 21],
        "admittime": [_ts("2100-03-01 08:00"), ADMIT_2, _ts("2100-05-01 00:00")],
        "dischtime": [DISCH_1, _ts("2100-03-09 12:00"), _ts("2100-05-04 00:00")],
    })


def _icustays():
    return pd.DataFrame({
        "icustay_id": [111, 121, 211, 212],
        "subject_id": [1, 1, 2, 2],
        "hadm_id": [11, 12, 21, 21],
        "intime": [_ts("2100-03-01 09:00"), _ts("2100-03-05 22:00"), _ts("2100-05-01 02:00"), _ts("2100-05-03 00:00")],
        "outtime": [_ts("2100-03-05 09:00"), _ts("2100-03-08 12:00"), _ts("2100-05-02 02:00"), _ts("2100-05-03 20:00")],
    })


class TestExtractionBounds:

    def setup_method(self):
        self.bounds = compute_extraction_bounds(_admissions(), FUZZ, FUZZ).set_index("hadm_id")

    def test_isolated_admission_gets_full_fuzz(self):
        assert self.bounds.loc[21, "data_start"] == _ts("2100-04-30 12:00")
        assert self.bounds.loc[21, "data_end"] == _ts("2100-05-04 12:00")

    def test_close_admissions_split_at_midpoint(self):
        assert self.bounds.loc[11, "data_end"] == MIDPOINT
        assert self.bounds.loc[12, "data_start"] == MIDPOINT
        assert self.bounds.loc[11, "data_start"] == _ts("2100-02-28 20:00")
        assert self.bounds.loc[12, "data_end"] == _ts("2100-03-10 00:00")

    def test_gap_wider_than_fuzz_is_not_split(self):
        admissions = _admissions()
        admissions.loc[1, "admittime"] = DISCH_1 + pd.Timedelta(hours=30)
        bounds = compute_extraction_bounds(admissions, FUZZ, FUZZ).set_index("hadm_id")
        assert bounds.loc[11, "data_end"] == DISCH_1 + FUZZ
        assert bounds.loc[12, "data_start"] == DISCH_1 + pd.Timedelta(hours=18)

    def test_midpoint_is_truncated_to_seconds(self):
        admissions = _admissions()
        admissions.loc[1, "admittime"] = DISCH_1 + pd.Timedelta(seconds=3)
        bounds = compute_extraction_bounds(admissions, FUZZ, FUZZ).set_index("hadm_id")
        assert bounds.loc[11, "data_end"] == DISCH_1 + pd.Timedelta(seconds=1)
        assert bounds.loc[12, "data_start"] == DISCH_1 + pd.Timedelta(seconds=1)

    def test_negative_fuzz_is_rejected(self):
        with pytest.raises(ConfigurationError):
            compute_extraction_bounds(_admissions(), pd.Timedelta(hours=-1), FUZZ)


class TestMonitoringWindows:

    def _proxy(self, rows):
        return pd.DataFrame(rows, columns=["icustay_id", "hadm_id", "charttime"])

    def test_first_and_last_heart_rate(self):
        proxy = self._proxy([
            [111, 11, _ts("2100-03-01 09:40")],
            [111, 11, _ts("2100-03-03 12:00")],
            [111, 11, _ts("2100-03-05 07:00")],
            [211, 21, _ts("2100-05-01 02:30")],
        ])
        windows = estimate_monitoring_windows(_icustays(), _admissions(), proxy, FUZZ, FUZZ).set_index("icustay_id")

        assert windows.loc[111, "intime_hr"] == _ts("2100-03-01 09:40")
        assert windows.loc[111, "outtime_hr"] == _ts("2100-03-05 07:00")
        assert windows.loc[211, "intime_hr"] == windows.loc[211, "outtime_hr"]

    def test_every_stay_is_returned(self):
        proxy = self._proxy([[111, 11, _ts("2100-03-02 00:00")]])
        windows = estimate_monitoring_windows(_icustays(), _admissions(), proxy, FUZZ, FUZZ)

        assert sorted(windows["icustay_id"]) == [111, 121, 211, 212]
        missing = windows[windows["icustay_id"] != 111]
        assert missing["intime_hr"].isna().all()
        assert missing["outtime_hr"].isna().all()

    def test_events_outside_admission_bounds_are_ignored(self):
        proxy = self._proxy([
            [211, 21, _ts("2100-04-30 11:59")],
            [211, 21, _ts("2100-05-04 12:00")],
            [211, 21, _ts("2100-05-01 03:00")],
        ])
        windows = estimate_monitoring_windows(_icustays(), _admissions(), proxy, FUZZ, FUZZ).set_index("icustay_id")
        assert windows.loc[211, "intime_hr"] == _ts("2100-05-01 03:00")
        assert windows.loc[211, "outtime_hr"] == _ts("2100-05-01 03:00")

    def test_midpoint_event_belongs_to_later_admission(self):
        proxy = self._proxy([
            [111, 11, _ts("2100-03-02 00:00")],
            [121, 12, MIDPOINT],
        ])
        windows = estimate_monitoring_windows(_icustays(), _admissions(), proxy, FUZZ, FUZZ).set_index("icustay_id")
        assert windows.loc[121, "intime_hr"] == MIDPOINT
        assert windows.loc[111, "outtime_hr"] == _ts("2100-03-02 00:00")

    def test_midpoint_event_never_counted_for_earlier_admission(self):
        proxy = self._proxy([
            [111, 11, _ts("2100-03-02 00:00")],
            [111, 11, MIDPOINT],
            [121, 12, MIDPOINT - pd.Timedelta(seconds=1)],
        ])
        windows = estimate_monitoring_windows(_icustays(), _admissions(), proxy, FUZZ, FUZZ).set_index("icustay_id")
        assert windows.loc[111, "outtime_hr"] == _ts("2100-03-02 00:00")
        assert pd.isna(windows.loc[121, "intime_hr"])

    def test_odd_gap_leaves_no_unowned_second(self):
        admissions = _admissions()
        admissions.loc[1, "admittime"] = DISCH_1 + pd.Timedelta(hours=10, seconds=1)
        proxy = self._proxy([
            [111, 11, MIDPOINT - pd.Timedelta(seconds=1)],
            [111, 11, MIDPOINT],
            [121, 12, MIDPOINT],
        ])
        windows = estimate_monitoring_windows(_icustays(), admissions, proxy, FUZZ, FUZZ).set_index("icustay_id")
        assert windows.loc[111, "outtime_hr"] == MIDPOINT - pd.Timedelta(seconds=1)
        assert windows.loc[121, "intime_hr"] == MIDPOINT
        assert windows["intime_hr"].notna().sum() == 2

    def test_no_event_in_both_windows(self):
        times = [MIDPOINT + pd.Timedelta(minutes=m) for m in range(-90, 91, 15)]
        proxy = self._proxy([[111, 11, t] for t in times] + [[121, 12, t] for t in times])
        windows = estimate_monitoring_windows(_icustays(), _admissions(), proxy, FUZZ, FUZZ).set_index("icustay_id")
        assert windows.loc[111, "outtime_hr"] < windows.loc[121, "intime_hr"]


class TestWindowFallback:

    def setup_method(self):
        proxy = pd.DataFrame({
            "icustay_id": [111],
            "hadm_id": [11],
            "charttime": [_ts("2100-03-02 00:00")],
        })
        self.entities = _icustays()
        self.windows = estimate_monitoring_windows(self.entities, _admissions(), proxy, FUZZ, FUZZ)

    def test_none_keeps_missing_windows(self):
        attached = attach_monitoring_windows(self.entities, self.windows, WindowFallback.NONE)
        assert attached["intime_hr"].isna().sum() == 3
        assert not attached["window_fallback_used"].any()

    def test_administrative_fills_missing_windows(self):
        attached = attach_monitoring_windows(self.entities, self.windows, WindowFallback.ADMINISTRATIVE).set_index("icustay_id")
        assert attached.loc[121, "intime_hr"] == attached.loc[121, "intime"]
        assert attached.loc[121, "outtime_hr"] == attached.loc[121, "outtime"]
        assert attached.loc[111, "intime_hr"] == _ts("2100-03-02 00:00")
        assert attached["window_fallback_used"].sum() == 3
        assert not attached.loc[111, "window_fallback_used"]

    def test_fallback_must_be_explicit(self):
        with pytest.raises(ConfigurationError):
            attach_monitoring_windows(self.entities, self.windows, None)
        with pytest.raises(ConfigurationError):
            attach_monitoring_windows(self.entities, self.windows, "administrative")
