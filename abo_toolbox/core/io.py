"""
Session data file access.

This module defines the field-source interface SessionDataView reads raw
session data through, and NwbFieldReader, which serves those fields from an
NWB 2 (HDF5) session file with h5py.

Every fetch returns plain pandas/numpy structures. A field that is absent
from the file raises KeyError; the session view decides whether that is an
error or a warning.
"""

from typing import Dict, List, Optional
import numpy as np
import pandas as pd
import h5py


RIG_METADATA_PATH = '/processing/eye_tracking_rig_metadata/eye_tracking_rig_metadata'
RIG_GEOMETRY_FIELDS = {
    'camera_position_mm': 'camera_position',
    'camera_rotation_deg': 'camera_rotation',
    'monitor_position_mm': 'monitor_position',
    'monitor_rotation_deg': 'monitor_rotation',
    'led_position': 'led_position',
}
RUNNING_SPEED_PATH = '/processing/running/running_speed'
OPTOGENETIC_STIMULATION_PATH = '/processing/optotagging/optogenetic_stimulation'
INVALID_TIMES_PATH = '/intervals/invalid_times'
PRESENTATION_TABLE_SUFFIX = '_presentations'

# Ragged per-unit columns kept out of the units table
UNIT_ARRAY_COLUMNS = ['spike_times', 'spike_amplitudes', 'waveform_mean']


class SessionFieldSource:
    """
    Raw session fields consumed by SessionDataView.

    Subclasses override the fetch methods they can serve. Each fetch
    raises KeyError when the field is not available for the session.
    """

    def fetch_stimulus_presentations(self) -> pd.DataFrame:
        """
        Every stimulus presentation of the session.

        Returns:
            pd.DataFrame indexed by stimulus_presentation_id with at least
            start_time, stop_time, stimulus_name and stimulus_block
        """
        raise NotImplementedError

    def fetch_spike_times(self) -> Dict[int, np.ndarray]:
        """Mapping of unit id -> ascending spike times (seconds)."""
        raise NotImplementedError

    def fetch_spike_amplitudes(self) -> Dict[int, np.ndarray]:
        """Mapping of unit id -> spike amplitudes, aligned with spike times."""
        raise NotImplementedError

    def fetch_units(self) -> pd.DataFrame:
        raise NotImplementedError

    def fetch_invalid_times(self) -> pd.DataFrame:
        """Table with start_time, stop_time and tags (list of str) columns."""
        raise NotImplementedError

    def fetch_running_speed(self) -> pd.DataFrame:
        raise NotImplementedError

    def fetch_optogenetic_stimulation(self) -> pd.DataFrame:
        raise NotImplementedError

    def fetch_session_start_time(self) -> pd.Timestamp:
        raise NotImplementedError

    def fetch_rig_metadata(self) -> dict:
        """
        Eye-tracking rig description.

        Returns:
            dict with keys 'rig_geometry_data' (pd.DataFrame indexed by
            x, y, z) and 'rig_equipment' (str)
        """
        raise NotImplementedError


def _is_plain(dataset: h5py.Dataset) -> bool:
    """True for datasets holding values rather than compound rows or object references."""
    return dataset.dtype.kind != 'V' and h5py.check_ref_dtype(dataset.dtype) is None


def _read_values(dataset: h5py.Dataset) -> np.ndarray:
    if h5py.check_string_dtype(dataset.dtype) is not None:
        return np.asarray(dataset.asstr()[()], dtype=object)
    return np.asarray(dataset[()])


def _split_ragged(group: h5py.Group, name: str) -> List[np.ndarray]:
    values = _read_values(group[name])
    ends = np.asarray(group[f'{name}_index'][()], dtype=np.int64)
    return np.split(values, ends[:-1]) if len(ends) > 0 else []


def _read_dynamic_table(group: h5py.Group, skip: Optional[List[str]] = None) -> pd.DataFrame:
    """
    Read an NWB DynamicTable group into a DataFrame.

    Ragged columns (those with a companion '<name>_index' dataset) become
    lists of arrays. Multi-dimensional columns become one array per row.
    Columns holding object references (e.g. timeseries links) are skipped.
    """
    skip = set(skip or [])
    columns = {}
    for name, item in group.items():
        if name in skip or name.endswith('_index') or not isinstance(item, h5py.Dataset):
            continue
        if not _is_plain(item):
            continue
        if f'{name}_index' in group:
            columns[name] = _split_ragged(group, name)
            continue
        values = _read_values(item)
        columns[name] = list(values) if values.ndim > 1 else values
    return pd.DataFrame(columns)


def _to_utc(value) -> pd.Timestamp:
    if isinstance(value, bytes):
        value = value.decode('utf-8')
    timestamp = pd.Timestamp(str(value))
    if timestamp.tzinfo is None:
        return timestamp.tz_localize('UTC')
    return timestamp.tz_convert('UTC')


class NwbFieldReader(SessionFieldSource):
    """
    Field source backed by an NWB 2 session file.

    The file is opened read-only for each fetch and closed afterwards.

    Attributes:
        path: Local path of the NWB file

    Example:
        >>> reader = NwbFieldReader('/cache/files/ecephys/715093703/session_715093703.nwb')
        >>> presentations = reader.fetch_stimulus_presentations()
        >>> spikes = reader.fetch_spike_times()
        >>> len(spikes[950911873])
        24783
    """

    def __init__(self, path: str):
        self.path = path

    def _open(self) -> h5py.File:
        return h5py.File(self.path, 'r')

    def fetch_stimulus_presentations(self) -> pd.DataFrame:
        with self._open() as f:
            if 'intervals' not in f:
                raise KeyError(f"No stimulus intervals in {self.path}")
            tables = [_read_dynamic_table(group, skip=['tags'])
                      for name, group in f['intervals'].items()
                      if name.endswith(PRESENTATION_TABLE_SUFFIX)]
        if not tables:
            raise KeyError(f"No stimulus presentation tables in {self.path}")

        presentations = pd.concat(tables, ignore_index=True, sort=False)
        presentations = presentations.sort_values('start_time', kind='stable')
        presentations = presentations.rename(columns={'id': 'stimulus_presentation_id'})
        return presentations.set_index('stimulus_presentation_id')

    def _unit_arrays(self, column: str) -> Dict[int, np.ndarray]:
        with self._open() as f:
            units = f['units']
            if column not in units:
                raise KeyError(f"No '{column}' in the units table of {self.path}")
            unit_ids = units['id'][()]
            arrays = _split_ragged(units, column)
        return {int(unit_id): np.asarray(values) for unit_id, values in zip(unit_ids, arrays)}

    def fetch_spike_times(self) -> Dict[int, np.ndarray]:
        return self._unit_arrays('spike_times')

    def fetch_spike_amplitudes(self) -> Dict[int, np.ndarray]:
        return self._unit_arrays('spike_amplitudes')

    def fetch_units(self) -> pd.DataFrame:
        with self._open() as f:
            units = _read_dynamic_table(f['units'], skip=UNIT_ARRAY_COLUMNS)
        return units.rename(columns={'id': 'unit_id'}).set_index('unit_id')

    def fetch_invalid_times(self) -> pd.DataFrame:
        with self._open() as f:
            if INVALID_TIMES_PATH not in f:
                return pd.DataFrame({'start_time': pd.Series([], dtype=float),
                                     'stop_time': pd.Series([], dtype=float),
                                     'tags': pd.Series([], dtype=object)})
            invalid_times = _read_dynamic_table(f[INVALID_TIMES_PATH])
        invalid_times['tags'] = invalid_times['tags'].map(list)
        return invalid_times.drop(columns=['id'], errors='ignore')

    def fetch_running_speed(self) -> pd.DataFrame:
        with self._open() as f:
            group = f[RUNNING_SPEED_PATH]
            running_speed = pd.DataFrame({
                'start_time': group['timestamps'][()],
                'velocity': group['data'][()],
            })
            end_times = f'{RUNNING_SPEED_PATH}_end_times'
            if end_times in f:
                running_speed['end_time'] = f[end_times]['data'][()]
        return running_speed

    def fetch_optogenetic_stimulation(self) -> pd.DataFrame:
        with self._open() as f:
            table = _read_dynamic_table(f[OPTOGENETIC_STIMULATION_PATH], skip=['tags'])
        return table.rename(columns={'id': 'optogenetic_stimulation_id'}).set_index('optogenetic_stimulation_id')

    def fetch_session_start_time(self) -> pd.Timestamp:
        with self._open() as f:
            return _to_utc(f['session_start_time'][()])

    def fetch_rig_metadata(self) -> dict:
        with self._open() as f:
            group = f[RIG_METADATA_PATH]
            geometry = {label: np.asarray(group[name][()], dtype=float)
                        for label, name in RIG_GEOMETRY_FIELDS.items()}
            equipment = group.attrs['equipment']
        if isinstance(equipment, bytes):
            equipment = equipment.decode('utf-8')
        return {
            'rig_geometry_data': pd.DataFrame(geometry, index=['x', 'y', 'z']),
            'rig_equipment': str(equipment),
        }

    def __repr__(self) -> str:
        return f"NwbFieldReader(path='{self.path}')"
