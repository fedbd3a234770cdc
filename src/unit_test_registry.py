"""
Unit tests for the feature registry and clinical re-anchoring
"""

import pandas as pd
import pytest

from icu_features.config import HEART_RATE_ITEMIDS
from icu_features.errors import ConfigurationError
from icu_features.extractor import SelectionPolicy, extract_feature
from icu_features.feature_extraction import clinically_anchored
from icu_features.registry import FEATURE_REGISTRY, FIRST_LABS, LIPID_LABS, get_feature_config
from icu_features.windows import ZERO


def _ts(s: str) -> pd.Timestamp:
    return pd.Timestamp(s)


class TestRegistry:

    def test_expected_features_are_registered(self):
        expected = {"heartrate", "sysbp", "diasbp", "meanbp", "spo2", "resprate", "tempc", "glucose",
                    "rhythm", "height", "weight"} | set(FIRST_LABS) | set(LIPID_LABS)
        assert set(FEATURE_REGISTRY) == expected

    def test_every_config_validates(self):
        for config in FEATURE_REGISTRY.values():
            config.validate()

    def test_unknown_feature(self):
        with pytest.raises(ConfigurationError, match="heart_rate"):
            get_feature_config("heart_rate")

    def test_labs_join_on_subject(self):
        for name in list(FIRST_LABS) + list(LIPID_LABS):
            config = get_feature_config(name)
            assert config.source_table == "labevents"
            assert config.join_key == "subject_id"

    def test_lipids_select_closest_within_a_week(self):
        for name in LIPID_LABS:
            config = get_feature_config(name)
            assert config.policy is SelectionPolicy.CLOSEST_TO_REFERENCE
            assert config.window.before == pd.Timedelta(days=7)

    def test_heart_rate_matches_monitoring_proxy(self):
        assert get_feature_config("heartrate").source_tags == tuple(HEART_RATE_ITEMIDS)

    def test_weight_window_and_priority(self):
        weight = get_feature_config("weight")
        assert weight.priority_first
        assert weight.tag_priority[:2] == (762, 226512)
        assert weight.window.end_anchor == "intime"
        assert weight.window.after == pd.Timedelta(days=1)


class TestRegisteredFeatures:
    """A few registered features run end to end on small frames."""

    def setup_method(self):
        self.entities = pd.DataFrame({
            "icustay_id": [1],
            "intime": [_ts("2100-01-01 08:00")],
            "outtime": [_ts("2100-01-04 08:00")],
        })

    def _events(self, rows):
        return pd.DataFrame(rows, columns=["icustay_id", "charttime", "itemid", "valuenum", "error"])

    def test_temperature_mixed_units(self):
        events = self._events([
            [1, _ts("2100-01-01 09:00"), 223761, 100.4, 0],
            [1, _ts("2100-01-01 10:00"), 223762, 37.5, 0],
        ])
        result, _ = extract_feature(self.entities, events, get_feature_config("tempc"))
        assert result.iloc[0]["value"] == pytest.approx(38.0)
        assert result.iloc[0]["source_tag"] == 223761

    def test_report_carries_unit(self):
        events = self._events([[1, _ts("2100-01-01 09:00"), 223762, 37.0, 0]])
        _, report = extract_feature(self.entities, events, get_feature_config("tempc"))
        assert report.to_dict()["unit"] == "degC"

    def test_height_in_inches_is_converted_and_rounded(self):
        events = self._events([[1, _ts("2100-01-01 07:00"), 920, 67.0, 0]])
        result, _ = extract_feature(self.entities, events, get_feature_config("height"))
        assert result.iloc[0]["value"] == 170.2

    def test_admission_weight_beats_earlier_daily_weight(self):
        events = self._events([
            [1, _ts("2100-01-01 06:00"), 763, 80.0, 0],
            [1, _ts("2100-01-01 12:00"), 226512, 82.346, 0],
            [1, _ts("2100-01-01 13:00"), 762, 25.0, 0],
        ])
        result, _ = extract_feature(self.entities, events, get_feature_config("weight"))
        assert result.iloc[0]["value"] == 82.35
        assert result.iloc[0]["source_tag"] == 226512

    def test_weight_after_first_day_is_ignored(self):
        events = self._events([[1, _ts("2100-01-02 09:00"), 762, 80.0, 0]])
        result, report = extract_feature(self.entities, events, get_feature_config("weight"))
        assert pd.isna(result.iloc[0]["value"])
        assert report.rejected_by_window == 1


class TestClinicalAnchoring:

    def test_anchors_and_reference_are_replaced(self):
        config = clinically_anchored(get_feature_config("hdl"))
        assert config.window.start_anchor == "intime_hr"
        assert config.window.end_anchor == "outtime_hr"
        assert config.window.before == pd.Timedelta(days=7)
        assert config.reference == "intime_hr"
        assert config.name == "hdl"

    def test_raw_bounds_are_kept(self):
        config = clinically_anchored(get_feature_config("tempc"))
        assert set(config.raw_validity) == {676, 678, 223761, 223762}
        assert config.window.after == ZERO

    def test_registry_entry_is_unchanged(self):
        clinically_anchored(get_feature_config("heartrate"))
        assert get_feature_config("heartrate").window.start_anchor == "intime"
