"""
Validity predicates applied to normalised values before selection.

A predicate takes a pandas Series of values and returns a boolean Series of the
same index. Predicates reject data-entry errors and implausible outliers so that
an impossible value is never selected just because it is the earliest one.

"No filtering" is expressed with the explicit ACCEPT_ANY predicate rather than
by leaving the predicate out.
"""
from dataclasses import dataclass
from typing import FrozenSet, Optional

import numpy as np
import pandas as pd

from .errors import ConfigurationError


@dataclass(frozen=True)
class ValueRange:
    """
    Numeric range with independently inclusive or exclusive ends.

    A missing bound means the range is open on that side. Non-numeric and null
    values never satisfy a ValueRange.

    Example:
        ValueRange(0, 300, min_inclusive=False, max_inclusive=False)  # 0 < x < 300
    """
    minimum: Optional[float] = None
    maximum: Optional[float] = None
    min_inclusive: bool = True
    max_inclusive: bool = True

    def __post_init__(self):
        for bound in (self.minimum, self.maximum):
            if bound is not None and (isinstance(bound, bool) or not np.isfinite(bound)):
                raise ConfigurationError(f"ValueRange bound must be a finite number, got {bound!r}")
        if self.minimum is not None and self.maximum is not None:
            if self.minimum > self.maximum:
                raise ConfigurationError(f"ValueRange minimum {self.minimum} exceeds maximum {self.maximum}")
            if self.minimum == self.maximum and not (self.min_inclusive and self.max_inclusive):
                raise ConfigurationError(f"ValueRange ({self.minimum}, {self.maximum}) accepts no value")

    def __call__(self, values: pd.Series) -> pd.Series:
        numeric = pd.to_numeric(values, errors="coerce")
        mask = numeric.notna()
        if self.minimum is not None:
            mask &= (numeric >= self.minimum) if self.min_inclusive else (numeric > self.minimum)
        if self.maximum is not None:
            mask &= (numeric <= self.maximum) if self.max_inclusive else (numeric < self.maximum)
        return mask

    def accepts(self, value) -> bool:
        return bool(self(pd.Series([value])).iloc[0])

    def __str__(self):
        low = "-inf" if self.minimum is None else f"{self.minimum}"
        high = "inf" if self.maximum is None else f"{self.maximum}"
        left = "[" if self.min_inclusive and self.minimum is not None else "("
        right = "]" if self.max_inclusive and self.maximum is not None else ")"
        return f"{left}{low}, {high}{right}"


@dataclass(frozen=True)
class AcceptSet:
    """Categorical acceptance set; values outside the set are rejected."""
    values: FrozenSet

    def __post_init__(self):
        if not self.values:
            raise ConfigurationError("AcceptSet must contain at least one value")
        object.__setattr__(self, "values", frozenset(self.values))

    def __call__(self, values: pd.Series) -> pd.Series:
        return values.isin(self.values)

    def accepts(self, value) -> bool:
        return value in self.values

    def __str__(self):
        return "{" + ", ".join(sorted(str(v) for v in self.values)) + "}"


class AcceptAny:
    """Identity predicate: every value, including null, passes."""

    def __call__(self, values: pd.Series) -> pd.Series:
        return pd.Series(True, index=values.index)

    def accepts(self, value) -> bool:
        return True

    def __eq__(self, other):
        return isinstance(other, AcceptAny)

    def __hash__(self):
        return hash(AcceptAny)

    def __str__(self):
        return "any"


ACCEPT_ANY = AcceptAny()


def positive(maximum: Optional[float] = None, max_inclusive: bool = True) -> ValueRange:
    """Shorthand for the lab bounds 0 < x <= maximum used by most features."""
    return ValueRange(0, maximum, min_inclusive=False, max_inclusive=max_inclusive)
