"""
Unit tests for the temporal feature extractor

Covers:
- Earliest and closest-to-reference selection
- Absent results for stays without qualifying events
- Validity filtering before selection
- Tag priority and deterministic tie-breaking
- Inverted and missing windows
- Configuration errors
"""

import numpy as np
import pandas as pd
import pytest

from icu_features.errors import ConfigurationError, InvalidWindowError
from icu_features.extractor import RESULT_COLUMNS, FeatureConfig, SelectionPolicy, extract_feature
from icu_features.normalization import UnitNormalizer, fahrenheit_to_celsius, identity
from icu_features.validity import ACCEPT_ANY, ValueRange, positive
from icu_features.windows import ZERO, Window

T0 = pd.Timestamp("2100-01-01 08:00:00")

TAG_A = 1001
TAG_B = 1002


def _ts(hours: float) -> pd.Timestamp:
    """Timestamp relative to T0 in hours."""
    return T0 + pd.Timedelta(hours=hours)


def _entities(rows):
    return pd.DataFrame(rows, columns=["icustay_id", "intime", "outtime"])


def _events(rows):
    return pd.DataFrame(rows, columns=["icustay_id", "charttime", "itemid", "valuenum", "error"])


def _config(**overrides) -> FeatureConfig:
    params = dict(
        name="test_feature",
        source_tags=(TAG_A, TAG_B),
        unit_normalizer=UnitNormalizer.unconverted([TAG_A, TAG_B]),
        validity=positive(),
        window=Window("intime", pd.Timedelta(hours=6), "intime", pd.Timedelta(hours=48)),
    )
    params.update(overrides)
    return FeatureConfig(**params)


class TestEarliestSelection:
    """EARLIEST policy over a standard window."""

    def setup_method(self):
        self.entities = _entities([[1, T0, _ts(72)]])

    def test_earliest_event_is_selected(self):
        events = _events([
            [1, _ts(2), TAG_B, 80.0, 0],
            [1, _ts(1), TAG_A, 90.0, 0],
        ])
        result, report = extract_feature(self.entities, events, _config())

        row = result.iloc[0]
        assert row["value"] == 90.0
        assert row["observed_at"] == _ts(1)
        assert row["source_tag"] == TAG_A
        assert row["offset_from_reference"] == pd.Timedelta(hours=1)
        assert report.with_result == 1

    def test_result_columns(self):
        events = _events([[1, _ts(1), TAG_A, 90.0, 0]])
        result, _ = extract_feature(self.entities, events, _config())
        assert list(result.columns) == RESULT_COLUMNS

    def test_offset_is_negative_before_reference(self):
        events = _events([[1, _ts(-3), TAG_A, 90.0, 0]])
        result, _ = extract_feature(self.entities, events, _config())
        assert result.iloc[0]["offset_from_reference"] == pd.Timedelta(hours=-3)

    def test_window_bounds_are_inclusive(self):
        events = _events([
            [1, _ts(-6), TAG_A, 70.0, 0],
            [1, _ts(48), TAG_A, 75.0, 0],
        ])
        result, _ = extract_feature(self.entities, events, _config())
        assert result.iloc[0]["observed_at"] == _ts(-6)

    def test_events_outside_window_are_ignored(self):
        events = _events([
            [1, _ts(-6.5), TAG_A, 70.0, 0],
            [1, _ts(48.5), TAG_A, 75.0, 0],
        ])
        result, report = extract_feature(self.entities, events, _config())
        assert np.isnan(result.iloc[0]["value"])
        assert report.rejected_by_window == 1

    def test_offset_from_window_start_without_reference(self):
        events = _events([[1, _ts(1), TAG_A, 90.0, 0]])
        result, _ = extract_feature(self.entities, events, _config(reference=None))
        assert result.iloc[0]["offset_from_reference"] == pd.Timedelta(hours=7)


class TestClosestSelection:
    """CLOSEST_TO_REFERENCE policy."""

    def setup_method(self):
        self.entities = _entities([[1, T0, _ts(72)]])
        self.config = _config(
            window=Window("intime", pd.Timedelta(days=7), "outtime", ZERO),
            policy=SelectionPolicy.CLOSEST_TO_REFERENCE,
        )

    def test_closest_event_wins_over_earliest(self):
        events = _events([
            [1, _ts(5), TAG_A, 100.0, 0],
            [1, _ts(-3), TAG_A, 120.0, 0],
        ])
        result, _ = extract_feature(self.entities, events, self.config)
        assert result.iloc[0]["observed_at"] == _ts(-3)
        assert result.iloc[0]["offset_from_reference"] == pd.Timedelta(hours=-3)

    def test_selected_distance_is_minimal(self):
        offsets = [-100, -30, -2.5, 4, 20, 60]
        events = _events([[1, _ts(h), TAG_A, 50.0 + i, 0] for i, h in enumerate(offsets)])
        result, _ = extract_feature(self.entities, events, self.config)

        selected = abs(result.iloc[0]["offset_from_reference"])
        for h in offsets:
            assert selected <= abs(pd.Timedelta(hours=h))

    def test_equal_distance_uses_tag_then_order(self):
        events = _events([
            [1, _ts(2), TAG_B, 100.0, 0],
            [1, _ts(-2), TAG_A, 120.0, 0],
        ])
        result, _ = extract_feature(self.entities, events, self.config)
        assert result.iloc[0]["source_tag"] == TAG_A

    def test_missing_reference_is_reported_separately(self):
        entities = _entities([[1, pd.NaT, _ts(72)], [2, T0, _ts(72)]])
        config = _config(
            window=Window("outtime", pd.Timedelta(days=7), "outtime", ZERO),
            policy=SelectionPolicy.CLOSEST_TO_REFERENCE,
        )
        events = _events([
            [1, _ts(1), TAG_A, 100.0, 0],
            [2, _ts(1), TAG_A, 110.0, 0],
        ])
        result, report = extract_feature(entities, events, config)

        assert np.isnan(result.iloc[0]["value"])
        assert result.iloc[1]["value"] == 110.0
        assert report.absent_reference == 1
        assert report.rejected_by_window == 0
        assert report.to_dict()["absent_reference"] == 1


class TestAbsentResults:
    """Every stay has exactly one row."""

    def test_stay_without_events_is_absent(self):
        entities = _entities([[1, T0, _ts(72)], [2, T0, _ts(72)]])
        events = _events([[1, _ts(1), TAG_A, 90.0, 0]])
        result, report = extract_feature(entities, events, _config())

        absent = result[result["icustay_id"] == 2].iloc[0]
        assert np.isnan(absent["value"])
        assert pd.isna(absent["observed_at"])
        assert pd.isna(absent["source_tag"])
        assert pd.isna(absent["offset_from_reference"])
        assert report.no_candidates == 1

    def test_every_stay_has_one_row(self):
        entities = _entities([[i, T0, _ts(72)] for i in range(1, 6)])
        events = _events([
            [1, _ts(1), TAG_A, 90.0, 0],
            [1, _ts(1), TAG_B, 91.0, 0],
            [3, _ts(-20), TAG_A, 92.0, 0],
            [4, _ts(2), TAG_A, -1.0, 0],
            [99, _ts(2), TAG_A, 93.0, 0],
        ])
        result, report = extract_feature(entities, events, _config())

        assert sorted(result["icustay_id"]) == [1, 2, 3, 4, 5]
        assert result["icustay_id"].is_unique
        assert report.total_entities == 5
        assert report.with_result + report.no_candidates + report.rejected_by_validity \
            + report.rejected_by_window + report.absent_reference == 5

    def test_empty_event_frame(self):
        entities = _entities([[1, T0, _ts(72)]])
        result, report = extract_feature(entities, _events([]), _config())
        assert len(result) == 1
        assert report.with_result == 0


class TestValidity:
    """Validity filtering happens before selection."""

    def setup_method(self):
        self.entities = _entities([[1, T0, _ts(72)]])

    def test_invalid_earliest_value_falls_back_to_next(self):
        events = _events([
            [1, _ts(1), TAG_A, -5.0, 0],
            [1, _ts(2), TAG_A, 80.0, 0],
        ])
        result, _ = extract_feature(self.entities, events, _config())
        assert result.iloc[0]["value"] == 80.0

    def test_only_invalid_values_give_absent_result(self):
        events = _events([[1, _ts(1), TAG_A, -5.0, 0]])
        result, report = extract_feature(self.entities, events, _config())
        assert np.isnan(result.iloc[0]["value"])
        assert report.rejected_by_validity == 1

    def test_error_flagged_rows_are_dropped(self):
        events = _events([
            [1, _ts(1), TAG_A, 90.0, 1],
            [1, _ts(2), TAG_A, 80.0, np.nan],
        ])
        result, _ = extract_feature(self.entities, events, _config())
        assert result.iloc[0]["value"] == 80.0

    def test_null_value_fails_range(self):
        events = _events([
            [1, _ts(1), TAG_A, np.nan, 0],
            [1, _ts(2), TAG_A, 80.0, 0],
        ])
        result, _ = extract_feature(self.entities, events, _config())
        assert result.iloc[0]["value"] == 80.0

    def test_accept_any_keeps_every_value(self):
        events = _events([[1, _ts(1), TAG_A, -5.0, 0]])
        result, _ = extract_feature(self.entities, events, _config(validity=ACCEPT_ANY))
        assert result.iloc[0]["value"] == -5.0

    def test_raw_bounds_apply_before_conversion(self):
        config = FeatureConfig(
            name="temperature",
            source_tags=(676, 678),
            unit_normalizer=UnitNormalizer.from_groups({identity: [676], fahrenheit_to_celsius: [678]}),
            raw_validity={676: ValueRange(10, 50, False, False), 678: ValueRange(70, 120, False, False)},
            window=Window("intime", pd.Timedelta(hours=6), "outtime", ZERO),
        )
        events = _events([
            [1, _ts(1), 678, 37.0, 0],   # Celsius charted under the Fahrenheit item
            [1, _ts(2), 678, 98.6, 0],
        ])
        result, _ = extract_feature(self.entities, events, config)
        assert result.iloc[0]["value"] == pytest.approx(37.0)
        assert result.iloc[0]["observed_at"] == _ts(2)


class TestTieBreaking:
    """Priority lists and stable ordering."""

    def setup_method(self):
        self.entities = _entities([[1, T0, _ts(72)]])

    def test_priority_tag_wins_at_equal_time(self):
        events = _events([
            [1, _ts(1), TAG_A, 90.0, 0],
            [1, _ts(1), TAG_B, 80.0, 0],
        ])
        config = _config(tag_priority=(TAG_B, TAG_A))
        for _ in range(3):
            result, _ = extract_feature(self.entities, events, config)
            assert result.iloc[0]["source_tag"] == TAG_B
            assert result.iloc[0]["value"] == 80.0

    def test_lower_tag_wins_without_priority(self):
        events = _events([
            [1, _ts(1), TAG_B, 80.0, 0],
            [1, _ts(1), TAG_A, 90.0, 0],
        ])
        result, _ = extract_feature(self.entities, events, _config())
        assert result.iloc[0]["source_tag"] == TAG_A

    def test_event_order_breaks_full_ties(self):
        events = _events([
            [1, _ts(1), TAG_A, 85.0, 0],
            [1, _ts(1), TAG_A, 95.0, 0],
        ])
        result, _ = extract_feature(self.entities, events, _config())
        assert result.iloc[0]["value"] == 85.0

    def test_priority_first_overrides_time(self):
        events = _events([
            [1, _ts(-3), TAG_B, 80.0, 0],
            [1, _ts(10), TAG_A, 82.5, 0],
        ])
        config = _config(tag_priority=(TAG_A, TAG_B), priority_first=True)
        result, _ = extract_feature(self.entities, events, config)
        assert result.iloc[0]["source_tag"] == TAG_A

    def test_rerun_is_identical(self):
        rng = np.random.default_rng(7)
        n = 200
        events = pd.DataFrame({
            "icustay_id": rng.integers(1, 6, n),
            "charttime": [_ts(int(h)) for h in rng.integers(-8, 50, n)],
            "itemid": rng.choice([TAG_A, TAG_B], n),
            "valuenum": rng.integers(-10, 200, n).astype(float),
            "error": rng.choice([0, 0, 0, 1], n),
        })
        entities = _entities([[i, T0, _ts(72)] for i in range(1, 7)])

        first, _ = extract_feature(entities, events, _config())
        second, _ = extract_feature(entities, events.copy(), _config())
        pd.testing.assert_frame_equal(first, second)


class TestWindows:
    """Inverted and missing windows never abort the batch."""

    def test_inverted_window_is_reported_not_raised(self):
        entities = _entities([[1, T0, _ts(-10)], [2, T0, _ts(72)]])
        events = _events([
            [1, _ts(-7), TAG_A, 90.0, 0],
            [2, _ts(1), TAG_A, 80.0, 0],
        ])
        config = _config(window=Window("intime", ZERO, "outtime", ZERO))
        result, report = extract_feature(entities, events, config)

        assert np.isnan(result.loc[result["icustay_id"] == 1, "value"].iloc[0])
        assert result.loc[result["icustay_id"] == 2, "value"].iloc[0] == 80.0
        assert len(report.invalid_windows) == 1
        error = report.invalid_windows[0]
        assert isinstance(error, InvalidWindowError)
        assert error.entity_id == 1

    def test_missing_anchor_gives_absent_result(self):
        entities = _entities([[1, T0, pd.NaT]])
        events = _events([[1, _ts(1), TAG_A, 90.0, 0]])
        config = _config(window=Window("intime", ZERO, "outtime", ZERO))
        result, report = extract_feature(entities, events, config)
        assert np.isnan(result.iloc[0]["value"])
        assert report.absent_windows == 1

    def test_unbounded_window_accepts_any_time(self):
        entities = _entities([[1, T0, _ts(72)]])
        events = _events([[1, _ts(-1000), TAG_A, 90.0, 0]])
        result, _ = extract_feature(entities, events, _config(window=Window()))
        assert result.iloc[0]["value"] == 90.0


class TestCategoricalAndRounding:

    def test_categorical_value_column(self):
        entities = _entities([[1, T0, _ts(72)]])
        events = pd.DataFrame({
            "icustay_id": [1, 1],
            "charttime": [_ts(2), _ts(1)],
            "itemid": [212, 212],
            "value": ["AF (Atrial Fibrillation)", "SR (Sinus Rhythm)"],
        })
        config = FeatureConfig(
            name="rhythm",
            source_tags=(212,),
            unit_normalizer=UnitNormalizer.unconverted([212]),
            value_kind="categorical",
        )
        result, _ = extract_feature(entities, events, config)
        assert result.iloc[0]["value"] == "SR (Sinus Rhythm)"

    def test_round_digits(self):
        entities = _entities([[1, T0, _ts(72)]])
        events = _events([[1, _ts(1), TAG_A, 70.123456, 0]])
        result, _ = extract_feature(entities, events, _config(round_digits=2))
        assert result.iloc[0]["value"] == 70.12


class TestConfigurationErrors:
    """Configuration problems are raised before any output."""

    def test_unmapped_source_tag(self):
        with pytest.raises(ConfigurationError, match="1002"):
            _config(unit_normalizer=UnitNormalizer.unconverted([TAG_A]))

    def test_non_callable_validity(self):
        with pytest.raises(ConfigurationError):
            _config(validity=(0, 300))

    def test_unknown_priority_tag(self):
        with pytest.raises(ConfigurationError):
            _config(tag_priority=(TAG_A, 9999))

    def test_closest_without_reference(self):
        with pytest.raises(ConfigurationError):
            _config(policy=SelectionPolicy.CLOSEST_TO_REFERENCE, reference=None)

    def test_missing_entity_columns(self):
        entities = pd.DataFrame({"icustay_id": [1]})
        with pytest.raises(ConfigurationError):
            extract_feature(entities, _events([]), _config())

    def test_duplicate_entities(self):
        entities = _entities([[1, T0, _ts(72)], [1, T0, _ts(72)]])
        with pytest.raises(ConfigurationError):
            extract_feature(entities, _events([]), _config())

    def test_missing_value_column(self):
        entities = _entities([[1, T0, _ts(72)]])
        events = pd.DataFrame({"icustay_id": [1], "charttime": [_ts(1)], "itemid": [TAG_A]})
        with pytest.raises(ConfigurationError):
            extract_feature(entities, events, _config())
