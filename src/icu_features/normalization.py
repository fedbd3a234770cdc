"""
Unit Normalisation for Candidate Events

Different MIMIC-III item IDs record the same quantity in different units
(temperature in Fahrenheit or Celsius, height in inches or centimetres). A UnitNormalizer maps every item ID of a feature to a
conversion so that validity bounds and selection work on one common scale.

Every source tag of a feature must have a rule; a missing rule is a
ConfigurationError rather than a silent pass-through of unconverted values.
"""
from typing import Callable, Dict, Iterable

import pandas as pd

from .errors import ConfigurationError

# Unit conversion factors
IN_TO_CM_FACTOR = 2.54            # Inches to centimeters
FAHRENHEIT_OFFSET = 32.0
FAHRENHEIT_SCALE = 1.8


def identity(values):
    return values


def fahrenheit_to_celsius(values):
    return (values - FAHRENHEIT_OFFSET) / FAHRENHEIT_SCALE


def inches_to_centimeters(values):
    return values * IN_TO_CM_FACTOR


class UnitNormalizer:
    """
    Maps source tags (item IDs) to unit conversion functions.

    Conversions take and return pandas Series (they also work on scalars), so a
    whole candidate frame is converted one tag group at a time.

    Example:
        >>> normalizer = UnitNormalizer.from_groups({
        ...     fahrenheit_to_celsius: [678, 223761],
        ...     identity: [676, 223762],
        ... })
        >>> round(normalizer.normalize(678, 98.6), 1)
        37.0
    """

    def __init__(self, rules: Dict[int, Callable]):
        for tag, rule in rules.items():
            if not callable(rule):
                raise ConfigurationError(f"Unit rule for source tag {tag} is not callable: {rule!r}")
        self._rules = dict(rules)

    @classmethod
    def from_groups(cls, groups: Dict[Callable, Iterable[int]]) -> "UnitNormalizer":
        """Build a normalizer from {conversion: [tags]} groups."""
        rules = {}
        for rule, tags in groups.items():
            for tag in tags:
                if tag in rules:
                    raise ConfigurationError(f"Source tag {tag} is mapped to more than one unit rule")
                rules[tag] = rule
        return cls(rules)

    @classmethod
    def unconverted(cls, tags: Iterable[int]) -> "UnitNormalizer":
        """Normalizer for tags that are all recorded in the target unit already."""
        return cls({tag: identity for tag in tags})

    @property
    def tags(self):
        return set(self._rules)

    def check_covers(self, tags: Iterable[int], feature_name: str = "") -> None:
        """Raise ConfigurationError naming every tag that has no unit rule."""
        missing = sorted(set(tags) - set(self._rules))
        if missing:
            where = f" for feature '{feature_name}'" if feature_name else ""
            raise ConfigurationError(f"No unit normalisation rule{where} for source tags {missing}")

    def normalize(self, tag: int, raw_value):
        """Normalise a single raw value recorded under the given tag."""
        if tag not in self._rules:
            raise ConfigurationError(f"No unit normalisation rule for source tag {tag}")
        return self._rules[tag](raw_value)

    def normalize_series(self, tags: pd.Series, raw_values: pd.Series) -> pd.Series:
        """
        Normalise a column of raw values given the column of their source tags.

        Args:
            tags (pd.Series): Source tag of each row
            raw_values (pd.Series): Raw value of each row, aligned with tags

        Returns:
            pd.Series: Normalised values with the same index as raw_values
        """
        self.check_covers(tags.dropna().unique())
        normalized = raw_values.copy()
        for tag, rule in self._rules.items():
            mask = tags == tag
            if mask.any():
                normalized.loc[mask] = rule(raw_values.loc[mask])
        return normalized

    def __eq__(self, other):
        return isinstance(other, UnitNormalizer) and self._rules == other._rules

    def __hash__(self):
        return hash(frozenset(self._rules.items()))

    def __repr__(self):
        return f"UnitNormalizer({sorted(self._rules)})"
