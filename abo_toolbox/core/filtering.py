"""
Row filtering for manifest tables.

This module handles the unit quality filter applied while building the
ecephys units manifest, and EntityFilterSet, which narrows a manifest table
under successive predicates and summarizes what remains.
"""

from typing import Callable, Dict, List, Optional, Sequence
import numpy as np
import pandas as pd

from ..config import UNIT_FILTER_DEFAULTS, stimuli_for_session_types
from ..exceptions import EmptyResultError, UsageError
from ..models.schemas import is_missing_value, missing_mask
from ..utils.logging import ToolboxLogger
from .aggregation import explode_sets


_SET_TYPES = (set, frozenset, list, tuple)


def filter_units_by_quality(units: pd.DataFrame,
                            thresholds: Optional[Dict[str, float]] = None) -> pd.DataFrame:
    """
    Keep units passing the quality thresholds.

    Units must satisfy amplitude_cutoff <= maximum, presence_ratio >= minimum
    and isi_violations <= maximum. When present, quality must be 'good' and
    ecephys_structure_id must be set. Units with NaN metrics fail.

    Args:
        units: Units table
        thresholds: Keys amplitude_cutoff_maximum, presence_ratio_minimum,
            isi_violations_maximum (default: UNIT_FILTER_DEFAULTS). Missing
            keys do not constrain.

    Returns:
        Filtered units with a fresh RangeIndex
    """
    thresholds = thresholds if thresholds is not None else UNIT_FILTER_DEFAULTS
    keep = np.ones(len(units), dtype=bool)

    def _numeric(column: str) -> np.ndarray:
        return pd.to_numeric(units[column], errors='coerce').to_numpy(dtype=float, na_value=np.nan)

    if 'amplitude_cutoff' in units.columns:
        keep &= _numeric('amplitude_cutoff') <= thresholds.get('amplitude_cutoff_maximum', np.inf)
    if 'presence_ratio' in units.columns:
        keep &= _numeric('presence_ratio') >= thresholds.get('presence_ratio_minimum', -np.inf)
    if 'isi_violations' in units.columns:
        keep &= _numeric('isi_violations') <= thresholds.get('isi_violations_maximum', np.inf)
    if 'quality' in units.columns:
        keep &= (units['quality'] == 'good').fillna(False).to_numpy(dtype=bool)
    if 'ecephys_structure_id' in units.columns:
        keep &= ~missing_mask(units['ecephys_structure_id']).to_numpy()

    return units[keep].reset_index(drop=True)


def _as_values(value) -> list:
    if isinstance(value, (str, bytes)) or not hasattr(value, '__iter__'):
        return [value]
    return list(value)


def _cell_matches(cell, wanted: set) -> bool:
    if isinstance(cell, _SET_TYPES):
        return any(item in wanted for item in cell)
    if is_missing_value(cell):
        return False
    return cell in wanted


def _matches(series: pd.Series, values) -> np.ndarray:
    wanted = set(_as_values(values))
    if len(series) == 0:
        return np.zeros(0, dtype=bool)
    return series.map(lambda cell: _cell_matches(cell, wanted)).to_numpy(dtype=bool)


def _first_column(table: pd.DataFrame, candidates: Sequence[str], kind: str) -> str:
    for column in candidates:
        if column in table.columns:
            return column
    raise UsageError(f"Cannot filter by '{kind}': table has none of the columns {list(candidates)}")


def _distinct(series: pd.Series) -> list:
    values = set()
    for cell in series:
        items = cell if isinstance(cell, _SET_TYPES) else [cell]
        values.update(item for item in items if not is_missing_value(item))
    return sorted(values, key=str)


class EntityFilterSet:
    """
    Working subset of a manifest table under cumulative filters.

    Filters narrow the current working table and can be chained. refresh()
    restores the full base table. In restrictive mode a filter that removes
    every remaining row raises EmptyResultError naming that filter, and the
    set stays empty (reading it raises the same error) until refresh().

    Attributes:
        base_table: Full table the filters start from
        working_table: Rows that passed every filter since the last refresh
        restrictive: Raise instead of returning an empty table
        applied_filters: Descriptions of filters since the last refresh

    Example:
        >>> sessions = EntityFilterSet(store.table('sessions'))
        >>> sessions.filter_by('session_type', 'brain_observatory_1.1') \\
        ...         .filter_by('structure', 'VISp')
        >>> sessions.structure_acronyms
        ['APN', 'CA1', 'VISp', ...]
        >>> sessions.summary_by('session_type', 'full_genotype')
        >>> sessions.refresh()
    """

    PREDICATE_KINDS = ('id', 'container_id', 'session_type', 'imaging_depth', 'structure',
                       'genotype', 'stimulus', 'eye_tracking', 'column')

    def __init__(self, base_table: pd.DataFrame, restrictive: bool = True, name: str = 'items'):
        """
        Initialize filter set.

        Args:
            base_table: Manifest table to filter
            restrictive: Raise EmptyResultError when a filter empties the set
            name: Label used in log messages
        """
        self.base_table = base_table
        self.working_table = base_table
        self.restrictive = restrictive
        self.name = name
        self.applied_filters: List[str] = []
        self.log = ToolboxLogger(f'abo_toolbox.filter.{name}')

    @classmethod
    def from_manifest(cls, manifest, table: str = 'sessions', restrictive: bool = True) -> 'EntityFilterSet':
        """Build a filter set over one table of a ManifestStore."""
        return cls(manifest.table(table), restrictive=restrictive, name=f'{manifest.kind.value}_{table}')

    # ------------------------------------------------------------------
    # Filtering
    # ------------------------------------------------------------------

    def _predicates(self) -> Dict[str, Callable[[pd.DataFrame, object], np.ndarray]]:
        return {
            'id': lambda t, v: _matches(t['id'], v),
            'container_id': lambda t, v: _matches(
                t[_first_column(t, ['experiment_container_id', 'id'], 'container_id')], v),
            'session_type': lambda t, v: _matches(
                t[_first_column(t, ['session_type', 'session_types'], 'session_type')], v),
            'imaging_depth': lambda t, v: _matches(t[_first_column(t, ['imaging_depth'], 'imaging_depth')], v),
            'structure': lambda t, v: _matches(t[_first_column(
                t, ['ecephys_structure_acronyms', 'ecephys_structure_acronym', 'targeted_structure_acronym'],
                'structure')], v),
            'genotype': lambda t, v: _matches(t[_first_column(t, ['cre_line', 'full_genotype'], 'genotype')], v),
            'stimulus': self._stimulus_mask,
            'eye_tracking': self._eye_tracking_mask,
            'column': self._column_mask,
        }

    @staticmethod
    def _stimulus_mask(table: pd.DataFrame, value) -> np.ndarray:
        wanted = set(_as_values(value))
        column = _first_column(table, ['session_type', 'session_types'], 'stimulus')

        def shows(cell) -> bool:
            types = cell if isinstance(cell, _SET_TYPES) else [cell]
            types = [t for t in types if not is_missing_value(t)]
            return bool(wanted & set(stimuli_for_session_types(types)))

        return table[column].map(shows).to_numpy(dtype=bool)

    @staticmethod
    def _eye_tracking_mask(table: pd.DataFrame, value) -> np.ndarray:
        column = _first_column(table, ['fail_eye_tracking'], 'eye_tracking')
        failed = table[column].map(lambda v: (not is_missing_value(v)) and bool(v)).to_numpy(dtype=bool)
        return ~failed if bool(value) else failed

    @staticmethod
    def _column_mask(table: pd.DataFrame, value) -> np.ndarray:
        if not isinstance(value, tuple) or len(value) != 2:
            raise UsageError("A 'column' filter takes a (column_name, value) tuple")
        column, expected = value
        if column not in table.columns:
            raise UsageError(f"Cannot filter by column '{column}': not present in table")
        return _matches(table[column], expected)

    def filter_by(self, kind: str, value) -> 'EntityFilterSet':
        """
        Narrow the working table by one predicate.

        Args:
            kind: One of PREDICATE_KINDS
            value: Value or list of values to match (a bool for
                'eye_tracking', a (column, value) tuple for 'column')

        Returns:
            self, for chaining

        Raises:
            UsageError: For unknown kinds or tables lacking the needed column
            EmptyResultError: In restrictive mode, if no rows remain
        """
        predicates = self._predicates()
        if kind not in predicates:
            raise UsageError(f"Unknown filter kind '{kind}', expected one of {list(predicates)}")

        description = f"{kind}={value!r}"
        current = self.table
        mask = predicates[kind](current, value)
        self.working_table = current[mask]
        self.applied_filters.append(description)
        self.log.log_filter(f"{description}: {len(current)} -> {len(self.working_table)} {self.name}")

        if self.restrictive and len(self.working_table) == 0:
            raise EmptyResultError(description)
        return self

    def refresh(self) -> 'EntityFilterSet':
        """Reset the working table to the full base table."""
        self.working_table = self.base_table
        self.applied_filters = []
        self.log.log_filter(f"refresh: {len(self.base_table)} {self.name}")
        return self

    @property
    def table(self) -> pd.DataFrame:
        """
        Current working table.

        Raises:
            EmptyResultError: In restrictive mode when the last filter left no rows
        """
        if self.restrictive and len(self.working_table) == 0 and self.applied_filters:
            raise EmptyResultError(self.applied_filters[-1])
        return self.working_table

    def __len__(self) -> int:
        return len(self.working_table)

    # ------------------------------------------------------------------
    # Derived values (always from the working table)
    # ------------------------------------------------------------------

    def _distinct_in(self, candidates: Sequence[str]) -> list:
        table = self.table
        for column in candidates:
            if column in table.columns:
                return _distinct(table[column])
        return []

    @property
    def ids(self) -> list:
        return self._distinct_in(['id'])

    @property
    def container_ids(self) -> list:
        return self._distinct_in(['experiment_container_id'])

    @property
    def num_containers(self) -> int:
        return len(self.container_ids)

    @property
    def session_types(self) -> list:
        return self._distinct_in(['session_type', 'session_types'])

    @property
    def imaging_depths(self) -> list:
        return self._distinct_in(['imaging_depth'])

    @property
    def stimulus_names(self) -> List[str]:
        """Stimuli shown in any session type present in the working table."""
        return stimuli_for_session_types(self.session_types)

    @property
    def structure_acronyms(self) -> list:
        return self._distinct_in(['ecephys_structure_acronyms', 'ecephys_structure_acronym',
                                  'targeted_structure_acronym'])

    @property
    def genotypes(self) -> list:
        return self._distinct_in(['cre_line', 'full_genotype'])

    def summary_by(self, rows: str, columns: Optional[str] = None,
                   unique_by: Optional[str] = None) -> pd.DataFrame:
        """
        Cross-tabulate the working table with row and column totals.

        Set-valued dimensions (e.g. ecephys_structure_acronyms) are exploded
        to one row per element first, so totals count rows per element.
        Pass unique_by='id' to count distinct entities instead.

        Args:
            rows: Column for the row dimension
            columns: Optional column for the column dimension
            unique_by: Count distinct values of this column instead of rows

        Returns:
            pd.DataFrame of counts with a 'total' row (and column)

        Raises:
            UsageError: If a named column is not in the table
        """
        table = self.table
        for column in [rows, columns, unique_by]:
            if column is not None and column not in table.columns:
                raise UsageError(f"Cannot summarize by '{column}': not present in table")

        for dimension in [rows, columns]:
            if dimension is not None and table[dimension].map(lambda c: isinstance(c, _SET_TYPES)).any():
                table = explode_sets(table, dimension, missing_label='none')

        if columns is None:
            grouped = table.groupby(rows)
            counts = grouped[unique_by].nunique() if unique_by else grouped.size()
            summary = counts.rename('count').to_frame()
            total = table[unique_by].nunique() if unique_by else len(table)
            summary.loc['total'] = total
            return summary.astype(int)

        if unique_by:
            summary = pd.crosstab(table[rows], table[columns], values=table[unique_by],
                                  aggfunc='nunique', margins=True, margins_name='total')
        else:
            summary = pd.crosstab(table[rows], table[columns], margins=True, margins_name='total')
        return summary.fillna(0).astype(int)

    def __repr__(self) -> str:
        return (f"EntityFilterSet(name='{self.name}', rows={len(self.working_table)}/"
                f"{len(self.base_table)}, filters={self.applied_filters})")
