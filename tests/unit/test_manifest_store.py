"""
Tests for ManifestStore: paging, table assembly for both modalities,
memoization, refresh and data file caching.
"""

import json
import os

import pandas as pd
import pytest

from abo_toolbox.config import ToolboxConfig
from abo_toolbox.core.cache import RemoteContentCache
from abo_toolbox.exceptions import BulkFetchError, MalformedResponseError, NotFoundError, UsageError
from abo_toolbox.models.data_structures import SessionKind
from abo_toolbox.pipeline.manifest import (
    ManifestStore,
    default_manifest,
    reset_default_manifests,
)
from abo_toolbox.core.cache import reset_default_cache


NWB_URL_1 = 'http://api.brain-map.org/api/v2/well_known_file_download/11'
NWB_URL_2 = 'http://api.brain-map.org/api/v2/well_known_file_download/12'


def _by_id(table):
    return table.set_index(table['id'].astype(int))


# ============================================================================
# PAGING TESTS
# ============================================================================

class TestQuery:
    """Test paged RMA queries."""

    def test_pages_until_total_rows(self, ecephys_store, ecephys_transport):
        """Test three rows with two-row pages take two requests."""
        table = ecephys_store.query('EcephysSession')

        assert len(table) == 3
        pages = ecephys_transport.calls_matching('model::EcephysSession')
        assert len(pages) == 2
        assert 'start_row$eq0' in pages[0]
        assert 'start_row$eq2' in pages[1]

    def test_custom_page_size(self, ecephys_store, ecephys_transport):
        """Test one large page is enough."""
        table = ecephys_store.query('EcephysChannel', page_size=10)

        assert len(table) == 4
        assert len(ecephys_transport.calls_matching('model::EcephysChannel')) == 1

    def test_empty_model(self, ecephys_store):
        """Test a model without rows gives an empty table."""
        assert len(ecephys_store.query('EcephysNothing')) == 0

    def test_progress_output(self, tmp_path, ecephys_transport, capsys):
        """Test paging progress is printed when enabled."""
        config = ToolboxConfig(cache_dir=str(tmp_path / 'c'), page_size=2, show_progress=True)
        store = ManifestStore('ecephys', cache=RemoteContentCache(transport=ecephys_transport, config=config))

        store.query('EcephysChannel')

        assert "Downloading.... [50%]" in capsys.readouterr().out

    def test_inconsistent_totals_are_malformed(self, quiet_config, make_transport):
        """Test pages that disagree on total_rows fail the query."""
        class DriftingTransport(make_transport):
            def get(self, url):
                body = json.loads(super().get(url))
                if 'start_row$eq2' in url:
                    body['total_rows'] += 1
                return json.dumps(body).encode('utf-8')

        transport = DriftingTransport(tables={'EcephysProbe': [{'id': i} for i in range(3)]})
        store = ManifestStore('ecephys', cache=RemoteContentCache(transport=transport, config=quiet_config))

        with pytest.raises(MalformedResponseError, match='Inconsistent'):
            store.query('EcephysProbe')

    def test_failed_query_is_malformed(self, quiet_config, make_transport):
        """Test a response reporting failure is rejected."""
        class FailingTransport(make_transport):
            def get(self, url):
                return json.dumps({'success': False, 'msg': 'Syntax error'}).encode('utf-8')

        store = ManifestStore('ecephys', cache=RemoteContentCache(transport=FailingTransport(), config=quiet_config))

        with pytest.raises(MalformedResponseError, match='Syntax error'):
            store.query('EcephysProbe')

    def test_rejected_page_is_not_cached(self, quiet_config, make_transport):
        """Test a query succeeds once the service recovers from a failed response."""
        class BusyTransport(make_transport):
            busy = True

            def get(self, url):
                if self.busy:
                    self.calls.append(url)
                    return json.dumps({'success': False, 'msg': 'Service busy'}).encode('utf-8')
                return super().get(url)

        transport = BusyTransport(tables={'EcephysProbe': [{'id': 10}, {'id': 20}]})
        store = ManifestStore('ecephys', cache=RemoteContentCache(transport=transport, config=quiet_config))
        with pytest.raises(MalformedResponseError, match='Service busy'):
            store.query('EcephysProbe')

        transport.busy = False
        cache = RemoteContentCache(transport=transport, config=quiet_config)
        probes = ManifestStore('ecephys', cache=cache).query('EcephysProbe')

        assert probes['id'].tolist() == [10, 20]
        assert len(transport.calls_matching('EcephysProbe')) == 2
        assert len(cache.keys()) == 1

    def test_invalid_json_is_malformed(self, quiet_config, make_transport):
        """Test a truncated body fails the query and is not kept in the cache."""
        class TruncatedTransport(make_transport):
            def get(self, url):
                return b'{"success": true, "msg": ['

        cache = RemoteContentCache(transport=TruncatedTransport(), config=quiet_config)
        with pytest.raises(MalformedResponseError, match='not valid JSON'):
            ManifestStore('ecephys', cache=cache).query('EcephysProbe')

        assert cache.keys() == []


# ============================================================================
# ECEPHYS TABLE TESTS
# ============================================================================

class TestEcephysTables:
    """Test the four ecephys manifest tables."""

    def test_sessions(self, ecephys_store):
        """Test sessions without an NWB file are dropped and counts derived."""
        sessions = _by_id(ecephys_store.table('sessions'))

        assert sessions.index.tolist() == [1, 2]
        assert sessions['unit_count'].tolist() == [2, 1]
        assert sessions['channel_count'].tolist() == [3, 1]
        assert sessions['probe_count'].tolist() == [1, 1]
        assert sessions.loc[1, 'ecephys_structure_acronyms'] == frozenset({'VISp', 'APN'})
        assert sessions.loc[2, 'ecephys_structure_acronyms'] == frozenset({None})

    def test_session_metadata(self, ecephys_store):
        """Test donor fields are flattened and genotypes defaulted."""
        sessions = _by_id(ecephys_store.sessions)

        assert sessions.loc[1, 'session_type'] == 'brain_observatory_1.1'
        assert sessions.loc[1, 'age_in_days'] == 112.0
        assert sessions.loc[1, 'sex'] == 'M'
        assert sessions.loc[1, 'full_genotype'] == 'Sst-IRES-Cre/wt;Ai32/wt'
        assert sessions.loc[2, 'full_genotype'] == 'wt'
        assert bool(sessions.loc[1, 'has_nwb'])

    def test_probes(self, ecephys_store):
        """Test LFP sampling rates are divided by the subsampling factor."""
        probes = _by_id(ecephys_store.table('probes'))

        assert probes.loc[10, 'lfp_sampling_rate'] == 1250.0
        assert probes.loc[20, 'lfp_sampling_rate'] == 2500.0
        assert 'has_lfp_data' in probes.columns
        assert 'use_lfp_data' not in probes.columns
        assert probes['unit_count'].tolist() == [2, 1]
        assert probes.loc[10, 'ecephys_structure_acronyms'] == frozenset({'VISp', 'APN'})
        assert probes.loc[10, 'session_type'] == 'brain_observatory_1.1'

    def test_channels(self, ecephys_store):
        """Test channels carry their probe and session."""
        channels = _by_id(ecephys_store.table('channels'))

        assert channels.index.tolist() == [100, 101, 102, 200]
        assert channels.loc[102, 'probe_name'] == 'probeA'
        assert channels.loc[200, 'ecephys_session_id'] == 2
        assert channels['unit_count'].tolist() == [1, 1, 0, 1]

    def test_units(self, ecephys_store):
        """Test the quality filter and the probe/channel annotations."""
        units = _by_id(ecephys_store.table('units'))

        assert units.index.tolist() == [1000, 1001, 1003]
        assert units.loc[1000, 'ecephys_session_id'] == 1
        assert units.loc[1003, 'ecephys_session_id'] == 2
        assert units.loc[1000, 'probe_name'] == 'probeA'
        assert units.loc[1001, 'peak_channel'] == 2
        assert units.loc[1000, 'ecephys_structure_acronym'] == 'VISp'
        assert 'waveform_PT_ratio' in units.columns
        assert 'L_ratio' in units.columns

    def test_unfiltered_units(self, tmp_path, ecephys_transport):
        """Test the unit quality filter can be disabled."""
        config = ToolboxConfig(cache_dir=str(tmp_path / 'c'), page_size=2, show_progress=False,
                               filter_units=False)
        store = ManifestStore('ecephys', cache=RemoteContentCache(transport=ecephys_transport, config=config))

        assert sorted(store.table('units')['id'].astype(int)) == [1000, 1001, 1002, 1003]
        assert _by_id(store.sessions).loc[1, 'unit_count'] == 3

    def test_unknown_table(self, ecephys_store):
        """Test asking for a table of the other modality fails."""
        with pytest.raises(UsageError):
            ecephys_store.table('containers')

    def test_tables(self, ecephys_store):
        """Test every table can be built at once."""
        assert sorted(ecephys_store.tables()) == ['channels', 'probes', 'sessions', 'units']


# ============================================================================
# OPHYS TABLE TESTS
# ============================================================================

class TestOphysTables:
    """Test the ophys manifest tables."""

    def test_containers(self, ophys_store):
        """Test failed containers are dropped and sessions counted."""
        containers = _by_id(ophys_store.table('containers'))

        assert containers.index.tolist() == [500, 502]
        assert containers['session_count'].tolist() == [2, 1]
        assert containers.loc[500, 'session_types'] == frozenset({'three_session_A', 'three_session_B'})
        assert containers.loc[500, 'cre_line'] == 'Cux2-CreERT2'
        assert containers.loc[502, 'targeted_structure_acronym'] == 'VISl'

    def test_sessions(self, ophys_store):
        """Test sessions of failed containers are dropped."""
        sessions = _by_id(ophys_store.sessions)

        assert sessions.index.tolist() == [600, 601, 603]
        assert sessions.loc[603, 'session_type'] == 'three_session_C2'
        assert sessions.loc[603, 'cre_line'] == 'Rbp4-Cre_KL100'
        assert sessions.loc[600, 'age_in_days'] == 104.0
        assert bool(sessions.loc[601, 'fail_eye_tracking'])

    def test_cell_id_mapping(self, ophys_store, ophys_transport):
        """Test the mapping CSV is read through the cache."""
        ophys_transport.files['http://api.brain-map.org/api/v2/well_known_file_download/590985414'] = \
            b'cell_specimen_id,previous_cell_specimen_id\n1,2\n3,4\n'

        mapping = ophys_store.cell_id_mapping()

        assert mapping['cell_specimen_id'].tolist() == [1, 3]

    def test_cell_id_mapping_is_ophys_only(self, ecephys_store):
        """Test ecephys manifests have no cell id mapping."""
        with pytest.raises(UsageError):
            ecephys_store.cell_id_mapping()

    def test_stimulus_templates(self, ophys_store, ophys_transport):
        """Test template numbers are parsed from file paths."""
        ophys_transport.tables['WellKnownFile'] = [
            {'id': 1, 'attachable_id': 714914585, 'attachable_type': 'Product',
             'download_link': '/api/v2/well_known_file_download/1', 'path': '/templates/natural_movie_3.npy'},
            {'id': 2, 'attachable_id': 714914585, 'attachable_type': 'Product',
             'download_link': '/api/v2/well_known_file_download/2', 'path': '/templates/42.tiff'},
        ]

        templates = ophys_store.stimulus_templates()

        assert templates.loc[0, 'movie_number'] == 3.0
        assert pd.isna(templates.loc[0, 'scene_number'])
        assert templates.loc[1, 'scene_number'] == 42.0


# ============================================================================
# MEMOIZATION AND REFRESH TESTS
# ============================================================================

class TestRefresh:
    """Test memoization, persistence and update_manifests."""

    def test_tables_are_memoized(self, ecephys_store, ecephys_transport):
        """Test a second request does not fetch again."""
        first = ecephys_store.table('sessions')
        calls = len(ecephys_transport.calls)

        assert ecephys_store.table('sessions') is first
        assert len(ecephys_transport.calls) == calls

    def test_new_store_reads_from_disk(self, ecephys_store, ecephys_transport, quiet_config):
        """Test a fresh store over the same cache never hits the network."""
        ecephys_store.tables()
        calls = len(ecephys_transport.calls)

        store = ManifestStore('ecephys', cache=RemoteContentCache(transport=ecephys_transport,
                                                                  config=quiet_config))
        probes = _by_id(store.table('probes'))

        assert probes.index.tolist() == [10, 20]
        assert probes['lfp_sampling_rate'].tolist() == [1250.0, 2500.0]
        assert len(ecephys_transport.calls) == calls

    def test_update_manifests_refetches(self, ecephys_store, ecephys_transport):
        """Test update_manifests sees new remote rows."""
        assert len(ecephys_store.table('probes')) == 2

        ecephys_transport.tables['EcephysProbe'].append(
            {'id': 30, 'ecephys_session_id': 2, 'name': 'probeC', 'phase': '3a', 'sampling_rate': 30000.0,
             'lfp_sampling_rate': 2500.0, 'lfp_temporal_subsampling_factor': 2.0, 'use_lfp_data': True})
        assert len(ecephys_store.table('probes')) == 2

        tables = ecephys_store.update_manifests()

        assert len(tables['probes']) == 3
        assert _by_id(tables['sessions']).loc[2, 'probe_count'] == 2

    def test_invalidate_counts_entries(self, ecephys_store):
        """Test every cached query of the modality is purged."""
        ecephys_store.tables()
        # 2 session pages + 1 probe page + 2 channel pages + 2 unit pages
        assert ecephys_store.invalidate() == 7

    def test_default_manifest(self, quiet_config):
        """Test one store per modality is shared."""
        reset_default_cache()
        reset_default_manifests()
        try:
            store = default_manifest('ecephys', quiet_config)
            assert default_manifest(SessionKind.ECEPHYS) is store
            assert default_manifest('ophys') is not store
        finally:
            reset_default_manifests()
            reset_default_cache()


# ============================================================================
# SESSION AND FILE TESTS
# ============================================================================

class TestSessionFiles:
    """Test session lookup and NWB file caching."""

    def test_session_row(self, ecephys_store):
        """Test a session row is found by id."""
        assert ecephys_store.session_row(2)['session_type'] == 'functional_connectivity'

    def test_unknown_session(self, ecephys_store):
        """Test unknown and dropped sessions are not found."""
        with pytest.raises(NotFoundError) as exc_info:
            ecephys_store.session_row(3)
        assert exc_info.value.item_id == 3

    def test_session_nwb_url(self, ecephys_store):
        """Test the download URL of the session's NWB file."""
        assert ecephys_store.session_nwb_url(1) == NWB_URL_1

    def test_cache_files(self, ecephys_store, ecephys_transport):
        """Test NWB files are downloaded once into per-session folders."""
        ecephys_transport.files[NWB_URL_1] = b'nwb-1'
        ecephys_transport.files[NWB_URL_2] = b'nwb-2'

        paths = ecephys_store.cache_files_for_session_ids([1, 2])

        assert paths[0].endswith(os.path.join('ecephys', '1', 'session_1.nwb'))
        assert paths[1].endswith(os.path.join('ecephys', '2', 'session_2.nwb'))
        with open(paths[1], 'rb') as f:
            assert f.read() == b'nwb-2'

        ecephys_store.cache_files_for_session_ids([1, 2], use_parallel=False)
        assert len(ecephys_transport.calls_matching('well_known_file_download')) == 2

    def test_cache_files_partial_failure(self, ecephys_store, ecephys_transport):
        """Test a failing file is reported alongside the ones that succeeded."""
        ecephys_transport.files[NWB_URL_1] = b'nwb-1'

        with pytest.raises(BulkFetchError) as exc_info:
            ecephys_store.cache_files_for_session_ids([1, 2], max_retries=2)

        assert list(exc_info.value.failed) == [NWB_URL_2]
        assert list(exc_info.value.succeeded) == [NWB_URL_1]
        assert ecephys_store.cache.exists(NWB_URL_1)

    def test_cache_files_unknown_session(self, ecephys_store):
        """Test unknown sessions fail before anything is downloaded."""
        with pytest.raises(NotFoundError):
            ecephys_store.cache_files_for_session_ids([1, 99])
