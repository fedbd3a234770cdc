"""
Time-difference helpers shared across the extraction modules.

All helpers take pandas Series of timestamps and keep NaT as NaN in the result,
so absent measurements stay absent after conversion.
"""

import pandas as pd

# Year length used for age at ICU admission
DAYS_PER_YEAR = 365.242


def get_day_difference(end: pd.Series, start: pd.Series) -> pd.Series:
    """
    Calculate the difference between two datetime series in fractional days.

    Example:
        >>> get_day_difference(pd.Series([pd.Timestamp('2100-01-02 12:00')]),
        ...                    pd.Series([pd.Timestamp('2100-01-01 00:00')]))
        0    1.5
        dtype: float64
    """
    return (end - start) / pd.Timedelta(days=1)


def get_whole_day_difference(end: pd.Series, start: pd.Series) -> pd.Series:
    """
    Count calendar-day boundaries crossed between two datetime series.

    Matches DuckDB's DATE_DIFF('day', start, end): only the dates are compared,
    so 23:00 -> 01:00 the next morning counts as one day.
    """
    return (end.dt.normalize() - start.dt.normalize()).dt.days


def get_year_difference(end: pd.Series, start: pd.Series) -> pd.Series:
    """
    Calculate the calendar year difference between two datetime series.

    Only the year component is compared, as DuckDB's DATE_DIFF('year', ...) does.
    """
    return end.dt.year - start.dt.year
