"""
Unit tests for unit normalisation, validity predicates and windows
"""

import numpy as np
import pandas as pd
import pytest

from icu_features.errors import ConfigurationError
from icu_features.normalization import (
    UnitNormalizer,
    fahrenheit_to_celsius,
    identity,
    inches_to_centimeters,
)
from icu_features.validity import ACCEPT_ANY, AcceptSet, ValueRange, positive
from icu_features.windows import WINDOW_ABSENT, WINDOW_INVALID, WINDOW_OK, ZERO, Window


class TestUnitNormalizer:

    def setup_method(self):
        self.temperature = UnitNormalizer.from_groups({
            identity: [676, 223762],
            fahrenheit_to_celsius: [678, 223761],
        })

    def test_fahrenheit_and_celsius_agree(self):
        assert self.temperature.normalize(678, 98.6) == pytest.approx(self.temperature.normalize(676, 37.0))

    def test_inches_and_centimeters_agree(self):
        height = UnitNormalizer.from_groups({inches_to_centimeters: [920], identity: [226730]})
        assert height.normalize(920, 70.0) == pytest.approx(height.normalize(226730, 177.8))

    def test_normalize_series_converts_per_tag(self):
        tags = pd.Series([676, 678, 223761, 223762])
        raw = pd.Series([37.0, 98.6, 212.0, 36.5])
        normalized = self.temperature.normalize_series(tags, raw)

        assert list(normalized.index) == list(raw.index)
        assert normalized.tolist() == pytest.approx([37.0, 37.0, 100.0, 36.5])
        assert raw.tolist() == [37.0, 98.6, 212.0, 36.5]

    def test_unmapped_tag_is_rejected(self):
        with pytest.raises(ConfigurationError, match="999"):
            self.temperature.normalize_series(pd.Series([676, 999]), pd.Series([37.0, 1.0]))
        with pytest.raises(ConfigurationError):
            self.temperature.normalize(999, 1.0)

    def test_check_covers_names_missing_tags(self):
        with pytest.raises(ConfigurationError, match=r"\[1, 2\]"):
            self.temperature.check_covers([676, 1, 2], "tempc")

    def test_duplicate_tag_in_groups(self):
        with pytest.raises(ConfigurationError):
            UnitNormalizer.from_groups({identity: [676], fahrenheit_to_celsius: [676]})

    def test_non_callable_rule(self):
        with pytest.raises(ConfigurationError):
            UnitNormalizer({676: 1.8})

    def test_equality(self):
        assert UnitNormalizer.unconverted([1, 2]) == UnitNormalizer({1: identity, 2: identity})
        assert UnitNormalizer.unconverted([1, 2]).tags == {1, 2}


class TestValueRange:

    def test_exclusive_bounds(self):
        heart_rate = ValueRange(0, 300, min_inclusive=False, max_inclusive=False)
        mask = heart_rate(pd.Series([-1.0, 0.0, 0.1, 299.9, 300.0]))
        assert mask.tolist() == [False, False, True, True, False]

    def test_inclusive_bounds(self):
        height = ValueRange(120, 230)
        assert height(pd.Series([119.9, 120.0, 230.0, 230.1])).tolist() == [False, True, True, False]

    def test_positive_with_inclusive_maximum(self):
        spo2 = positive(100)
        assert spo2(pd.Series([0.0, 100.0, 100.5])).tolist() == [False, True, False]
        assert str(spo2) == "(0, 100]"

    def test_open_maximum(self):
        glucose = positive()
        assert glucose(pd.Series([0.0, 1e6])).tolist() == [False, True]

    def test_nulls_and_text_are_rejected(self):
        mask = ValueRange(0, 10)(pd.Series([np.nan, None, "abc", "5"], dtype=object))
        assert mask.tolist() == [False, False, False, True]

    def test_accepts(self):
        assert ValueRange(0, 10).accepts(10)
        assert not ValueRange(0, 10, max_inclusive=False).accepts(10)

    @pytest.mark.parametrize("minimum,maximum,kwargs", [
        (10, 0, {}),
        (5, 5, {"min_inclusive": False}),
        (np.nan, 10, {}),
        (0, np.inf, {}),
        (True, 10, {}),
    ])
    def test_malformed_range(self, minimum, maximum, kwargs):
        with pytest.raises(ConfigurationError):
            ValueRange(minimum, maximum, **kwargs)


class TestCategoricalPredicates:

    def test_accept_set(self):
        rhythm = AcceptSet({"SR (Sinus Rhythm)", "AF (Atrial Fibrillation)"})
        mask = rhythm(pd.Series(["SR (Sinus Rhythm)", "ST (Sinus Tachycardia)", None]))
        assert mask.tolist() == [True, False, False]

    def test_empty_accept_set(self):
        with pytest.raises(ConfigurationError):
            AcceptSet(set())

    def test_accept_any_includes_nulls(self):
        mask = ACCEPT_ANY(pd.Series([None, -1.0, "x"], dtype=object))
        assert mask.all()


class TestWindow:

    def setup_method(self):
        self.entities = pd.DataFrame({
            "icustay_id": [1, 2, 3],
            "intime": pd.to_datetime(["2100-01-01 08:00", "2100-01-01 08:00", pd.NaT]),
            "outtime": pd.to_datetime(["2100-01-03 08:00", "2100-01-01 06:00", "2100-01-03 08:00"]),
        })

    def test_resolve_applies_fuzz_and_status(self):
        window = Window("intime", pd.Timedelta(hours=6), "outtime", ZERO)
        resolved = window.resolve(self.entities).set_index("icustay_id")

        assert resolved.loc[1, "window_start"] == pd.Timestamp("2100-01-01 02:00")
        assert resolved.loc[1, "window_end"] == pd.Timestamp("2100-01-03 08:00")
        assert resolved.loc[1, "window_status"] == WINDOW_OK
        assert resolved.loc[2, "window_status"] == WINDOW_OK
        assert resolved.loc[3, "window_status"] == WINDOW_ABSENT

    def test_inverted_window(self):
        window = Window("intime", ZERO, "outtime", ZERO)
        resolved = window.resolve(self.entities).set_index("icustay_id")
        assert resolved.loc[2, "window_status"] == WINDOW_INVALID

    def test_unbounded_side_is_not_absent(self):
        window = Window(None, ZERO, "outtime", ZERO)
        resolved = window.resolve(self.entities)
        assert (resolved["window_status"] == WINDOW_OK).all()
        assert resolved["window_start"].isna().all()

    def test_fuzz_accepts_strings_and_rejects_negatives(self):
        assert Window("intime", "6h").before == pd.Timedelta(hours=6)
        with pytest.raises(ConfigurationError):
            Window("intime", pd.Timedelta(hours=-1))
        with pytest.raises(ConfigurationError):
            Window("intime", "soon")

    def test_missing_anchor_column(self):
        with pytest.raises(ConfigurationError):
            Window("intime_hr", ZERO, "outtime_hr", ZERO).resolve(self.entities)

    def test_str(self):
        assert str(Window("intime", pd.Timedelta(hours=6), "outtime", ZERO)) == "[intime - 0 days 06:00:00, outtime]"
        assert str(Window()) == "[unbounded, unbounded]"
