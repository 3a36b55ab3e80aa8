"""
Data structures for Brain Observatory data access.

This module defines type-safe dataclasses and enums used across the cache,
manifest and session analysis layers.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Dict, FrozenSet
import numpy as np


class SessionKind(Enum):
    """
    Dataset modality of a manifest or session.

    Every modality-specific branch dispatches on this enum and raises for
    any member it does not handle.
    """
    OPHYS = 'ophys'
    ECEPHYS = 'ecephys'

    @classmethod
    def parse(cls, value) -> 'SessionKind':
        """
        Coerce a string or SessionKind to a SessionKind.

        Args:
            value: 'ophys', 'ecephys' (case-insensitive) or a SessionKind

        Returns:
            The matching SessionKind

        Raises:
            ValueError: If value names no known modality
        """
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            raise ValueError(f"Unknown session kind '{value}', expected one of "
                             f"{[k.value for k in cls]}") from None


@dataclass(frozen=True)
class CacheEntry:
    """
    One persisted entry of the remote content cache.

    Attributes:
        key: Normalized request URL the entry was fetched from
        path: Local path of the payload file
        created: UNIX timestamp of the write
    """
    key: str
    path: str
    created: float = 0.0

    def read_bytes(self) -> bytes:
        """Return the raw payload."""
        with open(self.path, 'rb') as f:
            return f.read()


@dataclass(frozen=True)
class InvalidTimeInterval:
    """
    A tagged recording period whose data is known to be unreliable.

    Attributes:
        start_time: Interval start (seconds)
        stop_time: Interval stop (seconds)
        tags: Labels such as 'stimulus', a probe name or 'all_probes'
    """
    start_time: float
    stop_time: float
    tags: FrozenSet[str] = frozenset()

    def overlaps(self, start_time: float, stop_time: float) -> bool:
        """Closed-interval overlap test against [start_time, stop_time]."""
        return max(self.start_time, start_time) <= min(self.stop_time, stop_time)


@dataclass
class BulkFetchResult:
    """
    Outcome of a bulk fetch.

    Attributes:
        succeeded: Mapping of key -> local path
        failed: Mapping of key -> last exception raised for that key
    """
    succeeded: Dict[str, str] = field(default_factory=dict)
    failed: Dict[str, Exception] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        """True when every key was fetched."""
        return not self.failed


@dataclass
class SpikeCountHistogram:
    """
    Spike counts binned around each stimulus presentation.

    Attributes:
        counts: Array of shape (presentations, bins, units)
        stimulus_presentation_ids: Presentation ids along axis 0
        time_relative_to_stimulus_onset: Bin centers along axis 1 (seconds)
        unit_ids: Unit ids along axis 2
        binarized: Whether counts were clipped to 0/1

    Example:
        >>> hist.counts.shape
        (120, 40, 35)
        >>> hist.sel(unit_id=951, stimulus_presentation_id=3800)
        array([0, 1, 0, ...])
    """
    counts: np.ndarray
    stimulus_presentation_ids: np.ndarray
    time_relative_to_stimulus_onset: np.ndarray
    unit_ids: np.ndarray
    binarized: bool = False

    @property
    def shape(self):
        return self.counts.shape

    def sel(self,
            unit_id: Optional[int] = None,
            stimulus_presentation_id: Optional[int] = None) -> np.ndarray:
        """
        Select counts by unit and/or presentation id.

        Args:
            unit_id: Unit to select (all units if None)
            stimulus_presentation_id: Presentation to select (all if None)

        Returns:
            Sub-array with the selected axes squeezed out

        Raises:
            KeyError: If an id is not on the corresponding axis
        """
        data = self.counts
        if stimulus_presentation_id is not None:
            data = data[_axis_position(self.stimulus_presentation_ids, stimulus_presentation_id,
                                       'stimulus_presentation_id')]
        if unit_id is not None:
            data = data[..., _axis_position(self.unit_ids, unit_id, 'unit_id')]
        return data

    def to_frame(self):
        """
        Flatten to a long DataFrame with one row per (presentation, bin, unit).

        Returns:
            pd.DataFrame with columns stimulus_presentation_id,
            time_relative_to_stimulus_onset, unit_id and spike_counts
        """
        import pandas as pd

        n_pres, n_bins, n_units = self.counts.shape
        return pd.DataFrame({
            'stimulus_presentation_id': np.repeat(self.stimulus_presentation_ids, n_bins * n_units),
            'time_relative_to_stimulus_onset': np.tile(np.repeat(self.time_relative_to_stimulus_onset, n_units), n_pres),
            'unit_id': np.tile(self.unit_ids, n_pres * n_bins),
            'spike_counts': self.counts.reshape(-1),
        })


def _axis_position(axis: np.ndarray, value, name: str) -> int:
    matches = np.flatnonzero(axis == value)
    if len(matches) == 0:
        raise KeyError(f"{name} {value} not present")
    return int(matches[0])
