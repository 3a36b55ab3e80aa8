"""
Alignment of spike trains to stimulus presentations.

This module implements the session-level algorithms as pure functions over
pandas tables and numpy arrays:

- stimulus condition deduplication
- invalid-time masking of presentations
- inter-presentation intervals
- spike-to-presentation assignment
- binned spike histograms around presentation onsets
- stimulus epoch extraction
- per-condition spike statistics

Presentation tables are indexed by stimulus_presentation_id and carry at
least start_time, stop_time and stimulus_name. Spike trains map unit ids to
ascending arrays of spike times.
"""

from typing import Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple
import warnings

import numpy as np
import pandas as pd
from scipy import stats

from ..config import (
    CONDITION_EXCLUDED_COLUMNS,
    DETAILED_STIMULUS_PARAMETERS,
    EPOCH_DURATION_THRESHOLDS,
    LARGE_BIN_SIZE_THRESHOLD,
    NON_STIMULUS_PARAMETERS,
    OVERLAP_STRICTNESS,
    OVERLAP_STRICTNESS_LEVELS,
)
from ..exceptions import BinarizationWarning, OverlappingWindowsWarning
from ..models.data_structures import SpikeCountHistogram
from ..models.schemas import is_missing_value, missing_mask
from ..utils.intervals import nan_intervals, overlapping_rows


# Sentinel that makes missing parameter values compare equal to each other
CONDITION_MISSING_SENTINEL = np.inf

INVALID_PRESENTATION_NAME = 'invalid_presentation'
MASK_PRESERVED_COLUMNS = ['start_time', 'stop_time', 'stimulus_presentation_id', 'duration']

SPIKE_TIMES_COLUMNS = ['spike_time', 'stimulus_presentation_id', 'unit_id',
                       'time_since_stimulus_presentation_onset']


def _hashable(value):
    """Normalize one parameter value for row-uniqueness comparisons."""
    if is_missing_value(value):
        return CONDITION_MISSING_SENTINEL
    if isinstance(value, dict):
        return tuple(sorted((k, _hashable(v)) for k, v in value.items()))
    if isinstance(value, (list, tuple, np.ndarray)):
        return tuple(_hashable(v) for v in value)
    if isinstance(value, (set, frozenset)):
        return frozenset(_hashable(v) for v in value)
    return value


def _condition_keys(params: pd.DataFrame) -> List[tuple]:
    columns = []
    for name in params.columns:
        column = params[name]
        if pd.api.types.is_numeric_dtype(column) and not pd.api.types.is_bool_dtype(column):
            values = pd.to_numeric(column, errors='coerce').astype(float)
            columns.append(values.fillna(CONDITION_MISSING_SENTINEL).tolist())
        else:
            columns.append([_hashable(v) for v in column])
    if not columns:
        return [()] * len(params)
    return list(zip(*columns))


# ============================================================================
# PRESENTATION TABLES
# ============================================================================

def build_stimulus_conditions(presentations: pd.DataFrame) -> Tuple[pd.DataFrame, pd.DataFrame]:
    """
    Deduplicate stimulus parameters into conditions.

    Missing values are replaced with +inf (numeric) or one shared sentinel
    (other columns) so that missing compares equal to missing. Timing and id
    columns are ignored. Unique parameter rows are numbered from zero in
    order of first occurrence.

    Args:
        presentations: Raw presentations indexed by stimulus_presentation_id

    Returns:
        tuple: (presentations, conditions) where:
            - presentations: copy with duration and stimulus_condition_id
              columns, and without stimulus_index
            - conditions: first-occurrence parameter rows indexed by
              stimulus_condition_id

    Example:
        >>> presentations, conditions = build_stimulus_conditions(raw)
        >>> conditions.loc[0]
        stimulus_name    gabors
        orientation      45.0
        ...
    """
    presentations = presentations.drop(columns=['stimulus_index'], errors='ignore').copy()
    presentations['duration'] = presentations['stop_time'] - presentations['start_time']

    params = presentations.drop(columns=[c for c in CONDITION_EXCLUDED_COLUMNS if c in presentations.columns])
    keys = _condition_keys(params)

    ids_by_key: Dict[tuple, int] = {}
    first_rows: List[int] = []
    condition_ids = np.empty(len(keys), dtype=np.int64)
    for position, key in enumerate(keys):
        if key not in ids_by_key:
            ids_by_key[key] = len(first_rows)
            first_rows.append(position)
        condition_ids[position] = ids_by_key[key]

    presentations['stimulus_condition_id'] = pd.array(condition_ids, dtype='Int64')

    conditions = params.iloc[first_rows].copy()
    conditions.index = pd.RangeIndex(len(first_rows), name='stimulus_condition_id')
    return presentations, conditions


def _has_any_tag(cell, tags: set) -> bool:
    if isinstance(cell, str):
        items = [item.strip() for item in cell.split(',')]
    elif isinstance(cell, (list, tuple, set, frozenset, np.ndarray)):
        items = [str(item) for item in cell]
    else:
        return False
    return any(item in tags for item in items)


def filter_invalid_times_by_tags(invalid_times: pd.DataFrame, tags: Iterable[str]) -> pd.DataFrame:
    """
    Keep invalid time intervals carrying any of the given tags.

    Args:
        invalid_times: Table with start_time, stop_time and tags columns
        tags: Tags to look for

    Returns:
        Filtered table (empty tables are returned unchanged)
    """
    if invalid_times is None or len(invalid_times) == 0:
        return invalid_times
    wanted = set(tags)
    return invalid_times[invalid_times['tags'].map(lambda c: _has_any_tag(c, wanted)).astype(bool)]


def mask_invalid_presentations(presentations: pd.DataFrame,
                               invalid_times: Optional[pd.DataFrame]) -> pd.DataFrame:
    """
    Mask presentations overlapping an invalid interval tagged 'stimulus'.

    Overlap is inclusive: [a0, a1] and [b0, b1] overlap iff
    max(a0, b0) <= min(a1, b1). Masked rows keep start_time, stop_time,
    duration and their id, get stimulus_name 'invalid_presentation', and
    every other field becomes missing.

    Args:
        presentations: Presentations indexed by stimulus_presentation_id
        invalid_times: Table with start_time, stop_time and tags, or None

    Returns:
        Masked copy of presentations
    """
    presentations = presentations.copy()
    if invalid_times is None or len(invalid_times) == 0 or len(presentations) == 0:
        return presentations

    stimulus_intervals = filter_invalid_times_by_tags(invalid_times, ['stimulus'])
    if len(stimulus_intervals) == 0:
        return presentations

    mask = overlapping_rows(presentations['start_time'].to_numpy(),
                            presentations['stop_time'].to_numpy(),
                            stimulus_intervals)
    if not mask.any():
        return presentations

    for column in presentations.columns:
        if column in MASK_PRESERVED_COLUMNS or column == 'stimulus_name':
            continue
        presentations[column] = presentations[column].mask(mask)
    presentations['stimulus_name'] = presentations['stimulus_name'].mask(mask, INVALID_PRESENTATION_NAME)
    return presentations


def inter_presentation_intervals(presentations: pd.DataFrame) -> pd.DataFrame:
    """
    Gap between each presentation and the next one, ordered by id.

    Interval i is start_time[i + 1] - stop_time[i].

    Returns:
        pd.DataFrame with an 'interval' column, indexed by
        (from_presentation_id, to_presentation_id)
    """
    ordered = presentations.sort_index()
    ids = ordered.index.to_numpy()
    intervals = pd.DataFrame({
        'from_presentation_id': ids[:-1],
        'to_presentation_id': ids[1:],
        'interval': ordered['start_time'].to_numpy()[1:] - ordered['stop_time'].to_numpy()[:-1],
    })
    return intervals.set_index(['from_presentation_id', 'to_presentation_id'])


def remove_unused_columns(presentations: pd.DataFrame) -> pd.DataFrame:
    """Drop columns whose every value is missing."""
    unused = [c for c in presentations.columns if missing_mask(presentations[c]).all()]
    return presentations.drop(columns=unused)


def remove_detailed_parameters(presentations: pd.DataFrame) -> pd.DataFrame:
    """Drop rendering parameters (colorSpace, mask, opacity, ...)."""
    return presentations.drop(columns=[c for c in DETAILED_STIMULUS_PARAMETERS if c in presentations.columns])


def stimulus_parameter_values(presentations: pd.DataFrame, drop_nulls: bool = True) -> Dict[str, np.ndarray]:
    """
    Distinct values taken by each stimulus parameter.

    Args:
        presentations: Presentations to scan
        drop_nulls: Omit missing values (default: True). Otherwise a NaN is
            appended for parameters that are sometimes missing.

    Returns:
        Mapping of parameter name -> array of distinct values
    """
    params = presentations.drop(columns=[c for c in ['stimulus_name', 'stimulus_presentation_id'] + NON_STIMULUS_PARAMETERS
                                         if c in presentations.columns])
    params = remove_unused_columns(params)

    values = {}
    for column in params.columns:
        missing = missing_mask(params[column])
        distinct = list(dict.fromkeys(_hashable(v) for v in params[column][~missing]))
        try:
            distinct = sorted(distinct)
        except TypeError:
            pass
        if not drop_nulls and missing.any():
            distinct.append(np.nan)
        values[column] = pd.Series(distinct, dtype=object).infer_objects().to_numpy()
    return values


def valid_time_points(time_points: Sequence[float], invalid_times: Optional[pd.DataFrame]) -> np.ndarray:
    """
    Mark time points outside every invalid interval.

    Args:
        time_points: Times to test
        invalid_times: Table with start_time and stop_time (closed intervals)

    Returns:
        Boolean array, True where the time point is valid
    """
    time_points = np.asarray(time_points, dtype=float)
    valid = np.ones(len(time_points), dtype=bool)
    if invalid_times is None:
        return valid
    for start_time, stop_time in zip(invalid_times['start_time'], invalid_times['stop_time']):
        valid &= ~((time_points >= start_time) & (time_points <= stop_time))
    return valid


# ============================================================================
# SPIKE ALIGNMENT
# ============================================================================

def presentationwise_spike_times(presentations: pd.DataFrame,
                                 spike_times: Mapping[int, np.ndarray],
                                 unit_ids: Optional[Iterable[int]] = None) -> pd.DataFrame:
    """
    Assign every spike to the presentation during which it occurred.

    Presentation starts and stops are interleaved into one ascending
    boundary sequence. A spike's slot is the number of boundaries at or
    before it, minus one; even slots fall inside a presentation, odd slots
    fall in the gap between two presentations and are dropped. Spikes at an
    onset belong to that presentation, spikes at an offset do not.

    Args:
        presentations: Presentations indexed by stimulus_presentation_id
        spike_times: Mapping unit_id -> ascending spike times
        unit_ids: Units to consider (default: all units in spike_times)

    Returns:
        pd.DataFrame with columns spike_time, stimulus_presentation_id,
        unit_id and time_since_stimulus_presentation_onset, sorted by
        spike_time. Empty (with those columns) when nothing matches.

    Raises:
        ValueError: If the presentation boundaries are not ascending

    Example:
        >>> presentations = pd.DataFrame({'start_time': [1.0, 3.0], 'stop_time': [2.0, 4.0]},
        ...                              index=pd.Index([0, 1], name='stimulus_presentation_id'))
        >>> presentationwise_spike_times(presentations, {7: np.array([1.5, 2.5])})
           spike_time  stimulus_presentation_id  unit_id  time_since_stimulus_presentation_onset
        0         1.5                         0        7                                     0.5
    """
    ordered = presentations.sort_values('start_time', kind='stable')
    starts = ordered['start_time'].to_numpy(dtype=float)
    stops = ordered['stop_time'].to_numpy(dtype=float)
    ids = ordered.index.to_numpy()

    boundaries = np.empty(2 * len(starts), dtype=float)
    boundaries[0::2] = starts
    boundaries[1::2] = stops
    out_of_order = np.flatnonzero(np.diff(boundaries) < 0)
    if len(out_of_order) > 0:
        raise ValueError(f"Presentation boundaries are not ascending at boundary indices {out_of_order.tolist()}")

    if unit_ids is None:
        unit_ids = list(spike_times.keys())

    frames = []
    for unit_id in unit_ids:
        data = np.asarray(spike_times.get(unit_id, []), dtype=float)
        if len(data) == 0 or len(boundaries) == 0:
            continue
        slots = np.searchsorted(boundaries, data, side='right') - 1
        valid = (slots >= 0) & (slots % 2 == 0)
        if not valid.any():
            continue
        owner = slots[valid] // 2
        frames.append(pd.DataFrame({
            'spike_time': data[valid],
            'stimulus_presentation_id': ids[owner],
            'unit_id': np.full(valid.sum(), unit_id),
            'time_since_stimulus_presentation_onset': data[valid] - starts[owner],
        }))

    if not frames:
        return pd.DataFrame({
            'spike_time': pd.Series([], dtype=float),
            'stimulus_presentation_id': pd.Series([], dtype=ids.dtype if len(ids) else np.int64),
            'unit_id': pd.Series([], dtype=np.int64),
            'time_since_stimulus_presentation_onset': pd.Series([], dtype=float),
        })

    spikes = pd.concat(frames, ignore_index=True)
    return spikes.sort_values('spike_time', kind='stable').reset_index(drop=True)[SPIKE_TIMES_COLUMNS]


def build_time_window_domain(bin_edges: np.ndarray,
                             offsets: np.ndarray,
                             callback: Optional[Callable[[np.ndarray], np.ndarray]] = None) -> np.ndarray:
    """
    Absolute bin edges for every presentation.

    Args:
        bin_edges: Edges relative to onset, shape (n_edges,)
        offsets: Presentation onsets, shape (n_presentations,)
        callback: Optional transform applied to the whole domain

    Returns:
        Array of shape (n_presentations, n_edges)
    """
    domain = np.asarray(offsets, dtype=float)[:, np.newaxis] + np.asarray(bin_edges, dtype=float)[np.newaxis, :]
    if callback is not None:
        domain = np.asarray(callback(domain), dtype=float)
    return domain


def build_spike_histogram(time_domain: np.ndarray,
                          spike_times: Mapping[int, np.ndarray],
                          unit_ids: Sequence[int],
                          binarize: bool = False) -> np.ndarray:
    """
    Count spikes of each unit in each bin of the time domain.

    A spike t falls in bin [left, right) when left <= t < right.

    Args:
        time_domain: Absolute edges, shape (n_presentations, n_edges)
        spike_times: Mapping unit_id -> ascending spike times
        unit_ids: Units to count, in output order
        binarize: Clip counts to 0/1

    Returns:
        Array of shape (n_presentations, n_edges - 1, n_units), uint16
        (uint8 when binarized)
    """
    n_presentations, n_edges = time_domain.shape
    n_bins = max(n_edges - 1, 0)
    tiled = np.zeros((n_presentations, n_bins, len(unit_ids)), dtype=np.uint8 if binarize else np.uint16)

    starts = time_domain[:, :-1].ravel()
    ends = time_domain[:, 1:].ravel()

    for index, unit_id in enumerate(unit_ids):
        data = np.asarray(spike_times.get(unit_id, []), dtype=float)
        start_positions = np.searchsorted(data, starts, side='left')
        end_positions = np.searchsorted(data, ends, side='left')
        counts = (end_positions - start_positions).reshape(n_presentations, n_bins)
        tiled[:, :, index] = counts > 0 if binarize else counts
    return tiled


def presentationwise_spike_counts(presentations: pd.DataFrame,
                                  spike_times: Mapping[int, np.ndarray],
                                  bin_edges: Sequence[float],
                                  unit_ids: Optional[Sequence[int]] = None,
                                  binarize: bool = False,
                                  large_bin_size_threshold: float = LARGE_BIN_SIZE_THRESHOLD,
                                  time_domain_callback: Optional[Callable[[np.ndarray], np.ndarray]] = None,
                                  overlap_strictness: str = OVERLAP_STRICTNESS) -> SpikeCountHistogram:
    """
    Histogram spikes around each presentation's onset.

    Args:
        presentations: Presentations indexed by stimulus_presentation_id
        spike_times: Mapping unit_id -> ascending spike times
        bin_edges: Edges relative to onset (seconds), strictly increasing
        unit_ids: Units along the last axis (default: all in spike_times)
        binarize: Clip counts to 0/1
        large_bin_size_threshold: Warn when binarizing bins wider than this
        time_domain_callback: Optional transform of the absolute time domain
        overlap_strictness: 'warn', 'error' or 'ignore' when neighbouring
            presentation windows overlap

    Returns:
        SpikeCountHistogram indexed by (presentation, bin, unit)

    Raises:
        ValueError: If bin_edges are not strictly increasing, the time
            domain is out of order within a row (indices reported), or
            windows overlap under overlap_strictness='error'

    Example:
        >>> hist = presentationwise_spike_counts(presentations, {7: np.array([0.05, 0.12, 0.30])},
        ...                                      bin_edges=[0.0, 0.1, 0.2, 0.3, 0.4])
        >>> hist.counts[0, :, 0]
        array([1, 1, 0, 1], dtype=uint16)
    """
    if overlap_strictness not in OVERLAP_STRICTNESS_LEVELS:
        raise ValueError(f"overlap_strictness must be one of {OVERLAP_STRICTNESS_LEVELS}")

    bin_edges = np.asarray(bin_edges, dtype=float)
    if bin_edges.ndim != 1 or len(bin_edges) < 2:
        raise ValueError("bin_edges must be a 1-D sequence of at least two edges")
    not_increasing = np.flatnonzero(np.diff(bin_edges) <= 0)
    if len(not_increasing) > 0:
        raise ValueError(f"bin_edges must be strictly increasing; violated at indices {(not_increasing + 1).tolist()}")

    largest_bin_size = float(np.max(np.diff(bin_edges)))
    if binarize and largest_bin_size > large_bin_size_threshold:
        warnings.warn(
            f"Binarizing spike counts with a maximum bin width of {largest_bin_size:2.5f} seconds "
            f"can cause significant loss of accuracy. Consider bins <= {large_bin_size_threshold} seconds.",
            BinarizationWarning, stacklevel=2
        )

    if unit_ids is None:
        unit_ids = list(spike_times.keys())
    unit_ids = list(unit_ids)

    domain = build_time_window_domain(bin_edges, presentations['start_time'].to_numpy(), time_domain_callback)

    rows, cols = np.nonzero(np.diff(domain, axis=1) < 0)
    if len(rows) > 0:
        pairs = list(zip(rows.tolist(), (cols + 1).tolist()))
        raise ValueError(f"The time domain contains out-of-order bin edges at (row, column) indices {pairs}")

    if len(domain) > 1 and overlap_strictness != 'ignore':
        time_diffs = domain[1:, 0] - domain[:-1, -1]
        overlapping = np.flatnonzero(time_diffs < 0)
        if len(overlapping) > 0:
            message = (f"Overlapping time windows between neighbouring presentations at rows "
                       f"{[(int(i), int(i) + 1) for i in overlapping]}, with a maximum overlap of "
                       f"{abs(float(time_diffs.min())):.2f} seconds")
            if overlap_strictness == 'error':
                raise ValueError(message)
            warnings.warn(message, OverlappingWindowsWarning, stacklevel=2)

    counts = build_spike_histogram(domain, spike_times, unit_ids, binarize)
    return SpikeCountHistogram(
        counts=counts,
        stimulus_presentation_ids=presentations.index.to_numpy(),
        time_relative_to_stimulus_onset=bin_edges[:-1] + np.diff(bin_edges) / 2,
        unit_ids=np.asarray(unit_ids),
        binarized=binarize,
    )


# ============================================================================
# SUMMARIES
# ============================================================================

def stimulus_epochs(presentations: pd.DataFrame,
                    duration_thresholds: Optional[Dict[str, float]] = None) -> pd.DataFrame:
    """
    Contiguous runs of presentations sharing a stimulus block.

    Two missing block values count as the same block. Epochs of a stimulus
    named in duration_thresholds that are shorter than its threshold are
    dropped.

    Args:
        presentations: Presentations in chronological order
        duration_thresholds: Minimum duration per stimulus name
            (default: {'spontaneous_activity': 90})

    Returns:
        pd.DataFrame with columns start_time, stop_time, duration,
        stimulus_name and stimulus_block
    """
    thresholds = duration_thresholds if duration_thresholds is not None else EPOCH_DURATION_THRESHOLDS
    bounds = nan_intervals(presentations['stimulus_block'].tolist())
    first, last = bounds[:-1], bounds[1:] - 1

    epochs = pd.DataFrame({
        'start_time': presentations['start_time'].to_numpy()[first],
        'stop_time': presentations['stop_time'].to_numpy()[last],
        'stimulus_name': presentations['stimulus_name'].to_numpy()[first],
        'stimulus_block': presentations['stimulus_block'].to_numpy()[first],
    })
    epochs['duration'] = epochs['stop_time'] - epochs['start_time']

    for name, threshold in thresholds.items():
        epochs = epochs[(epochs['stimulus_name'] != name) | (epochs['duration'] >= threshold)]

    return epochs[['start_time', 'stop_time', 'duration', 'stimulus_name', 'stimulus_block']].reset_index(drop=True)


def _sem(values: pd.Series) -> float:
    if len(values) < 2:
        return np.nan
    return float(stats.sem(values.to_numpy(dtype=float)))


def conditionwise_spike_statistics(presentations: pd.DataFrame,
                                   spikes: pd.DataFrame,
                                   unit_ids: Optional[Sequence[int]] = None,
                                   use_rates: bool = False) -> pd.DataFrame:
    """
    Summary statistics of spike counts (or rates) per condition and unit.

    Every (presentation, unit) pair contributes, including those with no
    spikes. Presentations without a condition (masked) are ignored.

    Args:
        presentations: Presentations with stimulus_condition_id and duration,
            indexed by stimulus_presentation_id
        spikes: Output of presentationwise_spike_times for these presentations
        unit_ids: Units to summarize (default: units found in spikes)
        use_rates: Summarize count / duration instead of counts

    Returns:
        pd.DataFrame indexed by (stimulus_condition_id, unit_id) with columns
        spike_count (counts only), stimulus_presentation_count, spike_mean,
        spike_std and spike_sem
    """
    if unit_ids is None:
        unit_ids = pd.unique(spikes['unit_id']).tolist()
    unit_ids = list(unit_ids)
    value_column = 'spike_rate' if use_rates else 'spike_count'

    grid = pd.MultiIndex.from_product([presentations.index.to_numpy(), unit_ids],
                                      names=['stimulus_presentation_id', 'unit_id'])
    counts = (spikes.groupby(['stimulus_presentation_id', 'unit_id']).size()
              .reindex(grid, fill_value=0)
              .rename('spike_count')
              .reset_index())

    counts = counts.join(presentations[['stimulus_condition_id', 'duration']], on='stimulus_presentation_id')
    counts = counts[~missing_mask(counts['stimulus_condition_id'])].copy()
    if use_rates:
        counts['spike_rate'] = counts['spike_count'] / counts['duration']

    columns = (['spike_count'] if not use_rates else []) + \
              ['stimulus_presentation_count', 'spike_mean', 'spike_std', 'spike_sem']
    if len(counts) == 0:
        index = pd.MultiIndex.from_arrays([[], []], names=['stimulus_condition_id', 'unit_id'])
        return pd.DataFrame({column: [] for column in columns}, index=index)

    counts['stimulus_condition_id'] = counts['stimulus_condition_id'].astype('int64')
    grouped = counts.groupby(['stimulus_condition_id', 'unit_id'])[value_column]
    summary = grouped.agg(
        spike_count='sum',
        stimulus_presentation_count='size',
        spike_mean='mean',
        spike_std='std',
        spike_sem=_sem,
    )
    return summary[columns]
