"""
Column schemas for manifest and session tables.

Remote rows carry heterogeneous missing markers (empty strings, "null",
None, NaN). A TableSchema gives each column one semantic kind and one
canonical missing value, and normalizes a table to it.
"""

from dataclasses import dataclass
from typing import Dict, List, Optional
import numpy as np
import pandas as pd

from ..exceptions import MalformedResponseError


# Strings treated as "no value" in remote payloads
MISSING_STRINGS = frozenset(['', 'null', 'NULL', 'None', 'nan', 'NaN'])

# Canonical missing value for every column kind
CANONICAL_MISSING = {
    'id': pd.NA,
    'int': pd.NA,
    'float': np.nan,
    'bool': pd.NA,
    'string': None,
    'datetime': pd.NaT,
    'set': None,
    'object': None,
}


def is_missing_value(value) -> bool:
    """
    Check whether a single cell holds any of the known missing markers.

    Args:
        value: Cell value of any type

    Returns:
        bool: True for None, NaN, pd.NA, NaT and the MISSING_STRINGS
    """
    if value is None or value is pd.NA or value is pd.NaT:
        return True
    if isinstance(value, str):
        return value.strip() in MISSING_STRINGS
    if isinstance(value, (float, np.floating)):
        return bool(np.isnan(value))
    return False


def missing_mask(series: pd.Series) -> pd.Series:
    """Boolean mask of cells holding a missing marker."""
    if len(series) == 0:
        return pd.Series([], index=series.index, dtype=bool)
    return series.map(is_missing_value).astype(bool)


def _as_bool(value):
    if isinstance(value, str):
        return value.strip().lower() in ('true', 't', '1', 'yes')
    return bool(value)


def _as_frozenset(value):
    if isinstance(value, (set, frozenset, list, tuple, np.ndarray)):
        return frozenset(value)
    return frozenset([value])


@dataclass(frozen=True)
class ColumnSpec:
    """
    Declared kind of one column.

    Attributes:
        kind: One of CANONICAL_MISSING's keys
        required: Whether a table without this column is malformed
    """
    kind: str
    required: bool = False

    def __post_init__(self):
        if self.kind not in CANONICAL_MISSING:
            raise ValueError(f"Unknown column kind '{self.kind}'")

    @property
    def missing(self):
        return CANONICAL_MISSING[self.kind]

    def coerce(self, series: pd.Series) -> pd.Series:
        """
        Convert a column to this kind with the canonical missing value.

        Args:
            series: Raw column

        Returns:
            Converted column with the same index
        """
        mask = missing_mask(series)
        present = series[~mask]

        if self.kind in ('id', 'int'):
            values = pd.to_numeric(present, errors='coerce')
            out = pd.Series(pd.NA, index=series.index, dtype='Float64')
            out[~mask] = values.astype('Float64')
            return out.astype('UInt64' if self.kind == 'id' else 'Int64')

        if self.kind == 'float':
            out = pd.Series(np.nan, index=series.index, dtype=float)
            out[~mask] = pd.to_numeric(present, errors='coerce').astype(float)
            return out

        if self.kind == 'bool':
            out = pd.Series(pd.NA, index=series.index, dtype='boolean')
            out[~mask] = present.map(_as_bool).astype(bool)
            return out

        if self.kind == 'datetime':
            out = pd.Series(pd.NaT, index=series.index, dtype='datetime64[ns, UTC]')
            out[~mask] = pd.to_datetime(present, utc=True, errors='coerce')
            return out

        if self.kind == 'string':
            convert = str
        elif self.kind == 'set':
            convert = _as_frozenset
        else:
            def convert(value):
                return value
        values = [None if missing else convert(value)
                  for value, missing in zip(series.tolist(), mask.tolist())]
        return pd.Series(values, index=series.index, dtype=object)


class TableSchema:
    """
    Declared kinds for the columns of one table.

    Columns not named in the schema are passed through untouched.

    Attributes:
        name: Table name used in error messages
        columns: Mapping of column name -> ColumnSpec
        unique_key: Column whose values must be unique (None to skip)

    Example:
        >>> schema = TableSchema('probes', {
        ...     'id': ColumnSpec('id', required=True),
        ...     'ecephys_session_id': ColumnSpec('id', required=True),
        ...     'has_lfp_data': ColumnSpec('bool'),
        ... })
        >>> probes = schema.apply(raw_probes)
    """

    def __init__(self, name: str, columns: Dict[str, ColumnSpec], unique_key: Optional[str] = 'id'):
        self.name = name
        self.columns = columns
        self.unique_key = unique_key

    @property
    def required_columns(self) -> List[str]:
        return [col for col, spec in self.columns.items() if spec.required]

    def validate(self, table: pd.DataFrame) -> None:
        """
        Check required columns and key uniqueness.

        Raises:
            MalformedResponseError: If a required column is absent or the
                unique key has duplicates
        """
        absent = [col for col in self.required_columns if col not in table.columns]
        if absent:
            raise MalformedResponseError(f"{self.name} table is missing expected column(s): {absent}")

        if self.unique_key is not None and self.unique_key in table.columns:
            duplicated = table[self.unique_key][table[self.unique_key].duplicated()]
            if len(duplicated) > 0:
                raise MalformedResponseError(
                    f"{self.name} table has duplicate {self.unique_key} values: "
                    f"{sorted(set(duplicated.tolist()))[:10]}"
                )

    def apply(self, table: pd.DataFrame) -> pd.DataFrame:
        """
        Validate a table and coerce its declared columns.

        An empty table (e.g. a query with no rows) gets every declared
        column, so downstream joins and aggregations see the usual shape.

        Args:
            table: Raw table

        Returns:
            New DataFrame with declared columns converted

        Raises:
            MalformedResponseError: See validate()
        """
        result = table.copy()
        if len(result) == 0:
            for col in self.columns:
                if col not in result.columns:
                    result[col] = pd.Series([], dtype=object)
        self.validate(result)
        for col, spec in self.columns.items():
            if col in result.columns:
                result[col] = spec.coerce(result[col])
        return result

    def __repr__(self) -> str:
        return f"TableSchema(name='{self.name}', columns={list(self.columns)})"


def _id(required: bool = False) -> ColumnSpec:
    return ColumnSpec('id', required=required)


OPHYS_CONTAINERS_SCHEMA = TableSchema('containers', {
    'id': _id(True),
    'imaging_depth': ColumnSpec('int'),
    'isi_experiment_id': _id(),
    'specimen_id': _id(),
    'failed': ColumnSpec('bool'),
})

OPHYS_SESSIONS_SCHEMA = TableSchema('sessions', {
    'id': _id(True),
    'experiment_container_id': _id(True),
    'imaging_depth': ColumnSpec('int'),
    'specimen_id': _id(),
    'date_of_acquisition': ColumnSpec('datetime'),
    'fail_eye_tracking': ColumnSpec('bool'),
})

ECEPHYS_SESSIONS_SCHEMA = TableSchema('sessions', {
    'id': _id(True),
    'specimen_id': _id(),
    'date_of_acquisition': ColumnSpec('datetime'),
    'age_in_days': ColumnSpec('float'),
    'sex': ColumnSpec('string'),
    'genotype': ColumnSpec('string'),
    'stimulus_name': ColumnSpec('string'),
})

ECEPHYS_PROBES_SCHEMA = TableSchema('probes', {
    'id': _id(True),
    'ecephys_session_id': _id(True),
    'sampling_rate': ColumnSpec('float'),
    'lfp_sampling_rate': ColumnSpec('float'),
    'lfp_temporal_subsampling_factor': ColumnSpec('float'),
    'use_lfp_data': ColumnSpec('bool'),
})

ECEPHYS_CHANNELS_SCHEMA = TableSchema('channels', {
    'id': _id(True),
    'ecephys_probe_id': _id(True),
    'local_index': ColumnSpec('int'),
    'probe_horizontal_position': ColumnSpec('float'),
    'probe_vertical_position': ColumnSpec('float'),
    'anterior_posterior_ccf_coordinate': ColumnSpec('float'),
    'dorsal_ventral_ccf_coordinate': ColumnSpec('float'),
    'left_right_ccf_coordinate': ColumnSpec('float'),
    'ecephys_structure_id': _id(),
    'ecephys_structure_acronym': ColumnSpec('string'),
})

ECEPHYS_UNITS_SCHEMA = TableSchema('units', {
    'id': _id(True),
    'ecephys_channel_id': _id(True),
    'amplitude_cutoff': ColumnSpec('float'),
    'presence_ratio': ColumnSpec('float'),
    'isi_violations': ColumnSpec('float'),
    'quality': ColumnSpec('string'),
    'snr': ColumnSpec('float'),
    'firing_rate': ColumnSpec('float'),
})
