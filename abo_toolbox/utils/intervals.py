"""
Interval utilities for time series and tabular runs.

Detects runs of identical values (where two NaNs count as identical) and
tests closed time intervals for overlap.
"""

from typing import Sequence, Tuple
import numpy as np
import pandas as pd

from ..models.schemas import is_missing_value


def _is_distinct(left, right) -> bool:
    if is_missing_value(left) and is_missing_value(right):
        return False
    if is_missing_value(left) or is_missing_value(right):
        return True
    return left != right


def nan_intervals(values: Sequence) -> np.ndarray:
    """
    Find the bounds of runs of identical consecutive values.

    Missing values (NaN, None, ...) compare equal to each other, so a run of
    NaNs is one interval.

    Args:
        values: 1-D sequence

    Returns:
        np.ndarray: Start index of every run followed by len(values), so
            run i spans [bounds[i], bounds[i + 1])

    Example:
        >>> nan_intervals([0, 0, 1, np.nan, np.nan, 2])
        array([0, 2, 3, 5, 6])
    """
    values = list(values)
    if len(values) == 0:
        return np.array([0], dtype=int)

    bounds = [0]
    for index in range(1, len(values)):
        if _is_distinct(values[index], values[index - 1]):
            bounds.append(index)
    bounds.append(len(values))
    return np.array(bounds, dtype=int)


def intervals_overlap(a: Tuple[float, float], b: Tuple[float, float]) -> bool:
    """
    Check whether two closed intervals overlap.

    Args:
        a: (start, stop) of the first interval
        b: (start, stop) of the second interval

    Returns:
        bool: True if max(a0, b0) <= min(a1, b1)

    Example:
        >>> intervals_overlap((10.0, 12.0), (11.5, 13.0))
        True
        >>> intervals_overlap((0, 1), (2, 3))
        False
    """
    return max(a[0], b[0]) <= min(a[1], b[1])


def overlapping_rows(starts: np.ndarray, stops: np.ndarray,
                     intervals: pd.DataFrame) -> np.ndarray:
    """
    Mark rows whose [start, stop] overlaps any of the given intervals.

    Args:
        starts: Row start times
        stops: Row stop times
        intervals: Table with start_time and stop_time columns

    Returns:
        Boolean array, one entry per row
    """
    starts = np.asarray(starts, dtype=float)
    stops = np.asarray(stops, dtype=float)
    mask = np.zeros(len(starts), dtype=bool)
    for start_time, stop_time in zip(intervals['start_time'], intervals['stop_time']):
        mask |= np.maximum(starts, start_time) <= np.minimum(stops, stop_time)
    return mask
