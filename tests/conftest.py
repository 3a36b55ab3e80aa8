"""
Shared fixtures: an in-memory RMA service, a fake session field source and
small ecephys/ophys manifests built on top of them.
"""

import copy
import json
import re
import threading

import numpy as np
import pandas as pd
import pytest
import requests

from abo_toolbox.config import ToolboxConfig
from abo_toolbox.core.cache import RemoteContentCache
from abo_toolbox.core.io import SessionFieldSource
from abo_toolbox.pipeline.manifest import ManifestStore


# ============================================================================
# FAKE REMOTE SERVICE
# ============================================================================

class FakeTransport:
    """
    Serves paged RMA responses and files from memory.

    Attributes:
        tables: Mapping model name -> list of row dicts
        files: Mapping URL -> bytes (served by get() and download())
        failures: Mapping URL substring -> number of calls that fail first
        calls: Every URL requested, in order
    """

    def __init__(self, tables=None, files=None, failures=None):
        self.tables = tables or {}
        self.files = files or {}
        self.failures = dict(failures or {})
        self.calls = []
        self._lock = threading.Lock()

    def _record(self, url):
        with self._lock:
            self.calls.append(url)
            for pattern, remaining in self.failures.items():
                if pattern in url and remaining > 0:
                    self.failures[pattern] = remaining - 1
                    raise requests.ConnectionError(f"simulated failure for {url}")

    def calls_matching(self, pattern):
        return [url for url in self.calls if pattern in url]

    def get(self, url):
        self._record(url)
        if url in self.files:
            return self.files[url]

        model = re.search(r'model::(\w+)', url)
        if model is None:
            raise requests.HTTPError(f"404 Not Found: {url}")
        start_row = int(re.search(r'start_row\$eq(\d+)', url).group(1))
        num_rows = int(re.search(r'num_rows\$eq(\d+)', url).group(1))
        rows = self.tables.get(model.group(1), [])
        body = {
            'success': True,
            'id': 0,
            'start_row': start_row,
            'num_rows': len(rows[start_row:start_row + num_rows]),
            'total_rows': len(rows),
            'msg': rows[start_row:start_row + num_rows],
        }
        return json.dumps(body).encode('utf-8')

    def download(self, url, file_obj):
        self._record(url)
        if url not in self.files:
            raise requests.HTTPError(f"404 Not Found: {url}")
        file_obj.write(self.files[url])


def _nwb_file(file_id, path, type_name='EcephysNwb'):
    return {
        'id': file_id,
        'download_link': f'/api/v2/well_known_file_download/{file_id}',
        'path': path,
        'well_known_file_type': {'name': type_name},
    }


ECEPHYS_ROWS = {
    'EcephysSession': [
        {'id': 1, 'stimulus_name': 'brain_observatory_1.1', 'date_of_acquisition': '2019-01-09T00:26:20Z',
         'specimen': {'name': 'Sst-IRES-Cre;Ai32-386129',
                      'donor': {'age': {'days': 112.0}, 'sex': 'M', 'full_genotype': 'Sst-IRES-Cre/wt;Ai32/wt'}},
         'well_known_files': [_nwb_file(11, '/data/session_1/session_1.nwb')]},
        {'id': 2, 'stimulus_name': 'functional_connectivity', 'date_of_acquisition': '2019-03-01T00:00:00Z',
         'specimen': {'name': 'C57BL6J-404553', 'donor': {'age': {'days': 95.0}, 'sex': 'F', 'full_genotype': None}},
         'well_known_files': [_nwb_file(12, '/data/session_2/session_2.nwb')]},
        {'id': 3, 'stimulus_name': 'brain_observatory_1.1', 'date_of_acquisition': '2019-04-01T00:00:00Z',
         'specimen': {'name': 'C57BL6J-404554', 'donor': {'age': {'days': 90.0}, 'sex': 'M', 'full_genotype': ''}},
         'well_known_files': []},
    ],
    'EcephysProbe': [
        {'id': 10, 'ecephys_session_id': 1, 'name': 'probeA', 'phase': '3a', 'sampling_rate': 30000.0,
         'lfp_sampling_rate': 2500.0, 'lfp_temporal_subsampling_factor': 2.0, 'use_lfp_data': True},
        {'id': 20, 'ecephys_session_id': 2, 'name': 'probeB', 'phase': '3a', 'sampling_rate': 30000.0,
         'lfp_sampling_rate': 2500.0, 'lfp_temporal_subsampling_factor': None, 'use_lfp_data': False},
    ],
    'EcephysChannel': [
        {'id': 100, 'ecephys_probe_id': 10, 'local_index': 1, 'probe_vertical_position': 20,
         'probe_horizontal_position': 43, 'ecephys_structure_id': 385, 'ecephys_structure_acronym': 'VISp'},
        {'id': 101, 'ecephys_probe_id': 10, 'local_index': 2, 'probe_vertical_position': 40,
         'probe_horizontal_position': 11, 'ecephys_structure_id': 385, 'ecephys_structure_acronym': 'VISp'},
        {'id': 102, 'ecephys_probe_id': 10, 'local_index': 3, 'probe_vertical_position': 60,
         'probe_horizontal_position': 59, 'ecephys_structure_id': 215, 'ecephys_structure_acronym': 'APN'},
        {'id': 200, 'ecephys_probe_id': 20, 'local_index': 1, 'probe_vertical_position': 20,
         'probe_horizontal_position': 43, 'ecephys_structure_id': None, 'ecephys_structure_acronym': None},
    ],
    'EcephysUnit': [
        {'id': 1000, 'ecephys_channel_id': 100, 'amplitude_cutoff': 0.05, 'presence_ratio': 0.99,
         'isi_violations': 0.1, 'quality': 'good', 'PT_ratio': 0.5, 'l_ratio': 0.01, 'snr': 3.2},
        {'id': 1001, 'ecephys_channel_id': 101, 'amplitude_cutoff': 0.01, 'presence_ratio': 0.97,
         'isi_violations': 0.0, 'quality': 'good', 'PT_ratio': 0.4, 'l_ratio': 0.02, 'snr': 2.1},
        {'id': 1002, 'ecephys_channel_id': 102, 'amplitude_cutoff': 0.5, 'presence_ratio': 0.99,
         'isi_violations': 0.1, 'quality': 'good', 'PT_ratio': 0.3, 'l_ratio': 0.03, 'snr': 1.0},
        {'id': 1003, 'ecephys_channel_id': 200, 'amplitude_cutoff': 0.02, 'presence_ratio': 0.96,
         'isi_violations': 0.2, 'quality': 'good', 'PT_ratio': 0.6, 'l_ratio': 0.04, 'snr': 4.0},
    ],
}


def _transgenic_lines(driver):
    return [{'name': driver, 'transgenic_line_type_name': 'driver'},
            {'name': 'Ai93(TITL-GCaMP6f)', 'transgenic_line_type_name': 'reporter'}]


OPHYS_ROWS = {
    'ExperimentContainer': [
        {'id': 500, 'imaging_depth': 175, 'failed': False, 'targeted_structure': {'acronym': 'VISp'},
         'specimen': {'donor': {'transgenic_lines': _transgenic_lines('Cux2-CreERT2')}}},
        {'id': 501, 'imaging_depth': 275, 'failed': True, 'targeted_structure': {'acronym': 'VISp'},
         'specimen': {'donor': {'transgenic_lines': _transgenic_lines('Cux2-CreERT2')}}},
        {'id': 502, 'imaging_depth': 375, 'failed': False, 'targeted_structure': {'acronym': 'VISl'},
         'specimen': {'donor': {'transgenic_lines': _transgenic_lines('Rbp4-Cre_KL100')}}},
    ],
    'OphysExperiment': [
        {'id': 600, 'experiment_container_id': 500, 'stimulus_name': 'three_session_A', 'imaging_depth': 175,
         'fail_eye_tracking': False, 'date_of_acquisition': '2016-02-04T10:25:24Z',
         'targeted_structure': {'acronym': 'VISp'},
         'specimen': {'donor': {'age': {'days': 104}, 'transgenic_lines': _transgenic_lines('Cux2-CreERT2')}},
         'well_known_files': [_nwb_file(61, '/data/600.nwb', 'NWBOphys')]},
        {'id': 601, 'experiment_container_id': 500, 'stimulus_name': 'three_session_B', 'imaging_depth': 175,
         'fail_eye_tracking': True, 'date_of_acquisition': '2016-02-05T10:25:24Z',
         'targeted_structure': {'acronym': 'VISp'},
         'specimen': {'donor': {'age': {'days': 105}, 'transgenic_lines': _transgenic_lines('Cux2-CreERT2')}},
         'well_known_files': [_nwb_file(62, '/data/601.nwb', 'NWBOphys')]},
        {'id': 602, 'experiment_container_id': 501, 'stimulus_name': 'three_session_A', 'imaging_depth': 275,
         'fail_eye_tracking': False, 'date_of_acquisition': '2016-03-01T10:25:24Z',
         'targeted_structure': {'acronym': 'VISp'},
         'specimen': {'donor': {'age': {'days': 98}, 'transgenic_lines': _transgenic_lines('Cux2-CreERT2')}},
         'well_known_files': []},
        {'id': 603, 'experiment_container_id': 502, 'stimulus_name': 'three_session_C2', 'imaging_depth': 375,
         'fail_eye_tracking': False, 'date_of_acquisition': '2016-04-01T10:25:24Z',
         'targeted_structure': {'acronym': 'VISl'},
         'specimen': {'donor': {'age': {'days': 120}, 'transgenic_lines': _transgenic_lines('Rbp4-Cre_KL100')}},
         'well_known_files': [_nwb_file(63, '/data/603.nwb', 'NWBOphys')]},
    ],
}


@pytest.fixture
def make_transport():
    """Factory for FakeTransport instances."""
    return FakeTransport


@pytest.fixture
def quiet_config(tmp_path):
    """Config with a temporary cache root, no progress output and 2-row pages."""
    return ToolboxConfig(cache_dir=str(tmp_path / 'cache'), page_size=2, show_progress=False)


@pytest.fixture
def ecephys_transport():
    return FakeTransport(tables=copy.deepcopy(ECEPHYS_ROWS))


@pytest.fixture
def ophys_transport():
    return FakeTransport(tables=copy.deepcopy(OPHYS_ROWS))


@pytest.fixture
def ecephys_store(quiet_config, ecephys_transport):
    """Ecephys manifest store backed by the in-memory service."""
    cache = RemoteContentCache(transport=ecephys_transport, config=quiet_config)
    return ManifestStore('ecephys', cache=cache, config=quiet_config)


@pytest.fixture
def ophys_store(quiet_config, ophys_transport):
    """Ophys manifest store backed by the in-memory service."""
    cache = RemoteContentCache(transport=ophys_transport, config=quiet_config)
    return ManifestStore('ophys', cache=cache, config=quiet_config)


# ============================================================================
# FAKE SESSION DATA
# ============================================================================

class FakeFieldSource(SessionFieldSource):
    """
    In-memory session fields.

    Fields passed as None are treated as absent and raise KeyError. Every
    fetch is counted in `calls`.
    """

    def __init__(self, presentations, spike_times, invalid_times=None, running_speed=None,
                 optogenetic_stimulation=None, rig_metadata=None, session_start_time=None):
        self.presentations = presentations
        self.spike_times = spike_times
        self.invalid_times = invalid_times
        self.running_speed = running_speed
        self.optogenetic_stimulation = optogenetic_stimulation
        self.rig_metadata = rig_metadata
        self.session_start_time = session_start_time
        self.calls = {}

    def _get(self, name, value):
        self.calls[name] = self.calls.get(name, 0) + 1
        if value is None:
            raise KeyError(name)
        return copy.deepcopy(value)

    def fetch_stimulus_presentations(self):
        return self._get('stimulus_presentations', self.presentations)

    def fetch_spike_times(self):
        return self._get('spike_times', self.spike_times)

    def fetch_spike_amplitudes(self):
        amplitudes = {unit_id: np.full(len(times), 1e-4) for unit_id, times in self.spike_times.items()}
        return self._get('spike_amplitudes', amplitudes)

    def fetch_invalid_times(self):
        if self.invalid_times is None:
            self.calls['invalid_times'] = self.calls.get('invalid_times', 0) + 1
            return pd.DataFrame({'start_time': pd.Series([], dtype=float),
                                 'stop_time': pd.Series([], dtype=float),
                                 'tags': pd.Series([], dtype=object)})
        return self._get('invalid_times', self.invalid_times)

    def fetch_running_speed(self):
        return self._get('running_speed', self.running_speed)

    def fetch_optogenetic_stimulation(self):
        return self._get('optogenetic_stimulation', self.optogenetic_stimulation)

    def fetch_session_start_time(self):
        return self._get('session_start_time', self.session_start_time)

    def fetch_rig_metadata(self):
        return self._get('rig_metadata', self.rig_metadata)


def make_presentations():
    """
    Seven presentations of session 1.

    Spontaneous activity [0, 100], four gabors (block 0) between 100 and
    101.75, one flash (block 1) at 102 and a short spontaneous epoch [110, 130].
    """
    presentations = pd.DataFrame({
        'start_time': [0.0, 100.0, 100.5, 101.0, 101.5, 102.0, 110.0],
        'stop_time': [100.0, 100.25, 100.75, 101.25, 101.75, 102.25, 130.0],
        'stimulus_name': ['spontaneous_activity', 'gabors', 'gabors', 'gabors', 'gabors', 'flashes',
                          'spontaneous_activity'],
        'stimulus_block': [np.nan, 0.0, 0.0, 0.0, 0.0, 1.0, np.nan],
        'stimulus_index': [0, 1, 1, 1, 1, 2, 0],
        'orientation': [np.nan, 45.0, 90.0, 45.0, np.nan, np.nan, np.nan],
        'contrast': [np.nan, 0.8, 0.8, 0.8, 0.8, 0.8, np.nan],
        'mask': [None, 'circle', 'circle', 'circle', 'circle', None, None],
        'size': [np.nan] * 7,
    }, index=pd.Index(range(7), name='stimulus_presentation_id'))
    return presentations


def make_spike_times():
    return {
        1000: np.array([50.0, 100.1, 100.2, 100.6, 101.1, 101.6, 101.7, 102.1, 105.0]),
        1001: np.array([100.05, 101.05, 101.1]),
        9999: np.array([100.1, 100.2]),
    }


@pytest.fixture
def presentations():
    return make_presentations()


@pytest.fixture
def spike_times():
    return make_spike_times()


@pytest.fixture
def field_source():
    """Field source for session 1 with a probe-tagged invalid interval."""
    invalid_times = pd.DataFrame({
        'start_time': [100.0],
        'stop_time': [100.01],
        'tags': [['probeA']],
    })
    rig_metadata = {
        'rig_geometry_data': pd.DataFrame({'camera_position_mm': [130.0, 0.0, 0.0]}, index=['x', 'y', 'z']),
        'rig_equipment': 'NP.1',
    }
    running_speed = pd.DataFrame({'start_time': [0.0, 0.1, 0.2], 'velocity': [1.5, 2.0, 0.0]})
    return FakeFieldSource(
        make_presentations(),
        make_spike_times(),
        invalid_times=invalid_times,
        running_speed=running_speed,
        rig_metadata=rig_metadata,
        session_start_time=pd.Timestamp('2019-01-09T00:26:20Z'),
    )
