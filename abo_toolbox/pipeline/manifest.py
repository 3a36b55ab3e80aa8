"""
Manifest tables for the Brain Observatory datasets.

ManifestStore pages through remote RMA queries (through the content cache),
normalizes the rows with a table schema, joins child tables onto their
parents and derives count and structure columns. Tables are built on first
request and memoized for the lifetime of the store.

Ophys tables: sessions, containers.
Ecephys tables: sessions, probes, channels, units.
"""

import os
import re
import threading
from typing import Callable, Dict, Iterable, List, Optional, Tuple

import numpy as np
import pandas as pd

from ..config import (
    ToolboxConfig,
    CELL_ID_MAPPING_PATH,
    NWB_FILE_TYPES,
    STIMULUS_TEMPLATE_PRODUCT_ID,
)
from ..core.aggregation import (
    merge_pages,
    count_owned,
    grouped_uniques,
    join_parent,
    rename_columns,
    drop_failed,
    keep_owned,
)
from ..core.cache import RemoteContentCache, default_cache, make_key
from ..core.filtering import filter_units_by_quality
from ..exceptions import MalformedResponseError, NotFoundError, UsageError
from ..models.data_structures import SessionKind
from ..models.schemas import (
    TableSchema,
    ColumnSpec,
    OPHYS_CONTAINERS_SCHEMA,
    OPHYS_SESSIONS_SCHEMA,
    ECEPHYS_SESSIONS_SCHEMA,
    ECEPHYS_PROBES_SCHEMA,
    ECEPHYS_CHANNELS_SCHEMA,
    ECEPHYS_UNITS_SCHEMA,
    is_missing_value,
)
from ..utils.logging import ToolboxLogger
from .validation import validate_rma_page, validate_row_count


# Remote models backing each modality's manifest
MANIFEST_MODELS = {
    SessionKind.OPHYS: ('ExperimentContainer', 'OphysExperiment'),
    SessionKind.ECEPHYS: ('EcephysSession', 'EcephysUnit', 'EcephysProbe', 'EcephysChannel'),
}

MANIFEST_TABLES = {
    SessionKind.OPHYS: ('sessions', 'containers'),
    SessionKind.ECEPHYS: ('sessions', 'probes', 'channels', 'units'),
}

OPHYS_CONTAINER_INCLUDE = ('rma::include,ophys_experiments,isi_experiment,'
                           'specimen(donor(conditions,age,transgenic_lines)),targeted_structure')
OPHYS_SESSION_INCLUDE = ('rma::include,experiment_container,well_known_files(well_known_file_type),'
                         'targeted_structure,specimen(donor(age,transgenic_lines))')
ECEPHYS_SESSION_INCLUDE = 'rma::include,specimen(donor(age)),well_known_files(well_known_file_type)'
ECEPHYS_CHANNEL_INCLUDE = ("rma::include,structure,rma::options[tabular$eq'"
                           "ecephys_channels.id,ecephys_probe_id,local_index,"
                           "probe_horizontal_position,probe_vertical_position,"
                           "anterior_posterior_ccf_coordinate,dorsal_ventral_ccf_coordinate,"
                           "left_right_ccf_coordinate,structures.id as ecephys_structure_id,"
                           "structures.acronym as ecephys_structure_acronym']")
STIMULUS_TEMPLATE_INCLUDE = ("rma::criteria,well_known_file_type[name$eq'Stimulus']"
                             "[attachable_type$eq'Product'][attachable_id$eq{product_id}]")

UNIT_WAVEFORM_RENAMES = {
    'PT_ratio': 'waveform_PT_ratio',
    'amplitude': 'waveform_amplitude',
    'duration': 'waveform_duration',
    'halfwidth': 'waveform_halfwidth',
    'recovery_slope': 'waveform_recovery_slope',
    'repolarization_slope': 'waveform_repolarization_slope',
    'spread': 'waveform_spread',
    'velocity_above': 'waveform_velocity_above',
    'velocity_below': 'waveform_velocity_below',
    'l_ratio': 'L_ratio',
}

UNIT_PROBE_RENAMES = {
    'name': 'probe_name',
    'phase': 'probe_phase',
    'sampling_rate': 'probe_sampling_rate',
    'lfp_sampling_rate': 'probe_lfp_sampling_rate',
    'local_index': 'peak_channel',
}

STIMULUS_TEMPLATES_SCHEMA = TableSchema('stimulus_templates', {
    'id': ColumnSpec('id', required=True),
    'attachable_id': ColumnSpec('id'),
    'attachable_type': ColumnSpec('string'),
    'download_link': ColumnSpec('string', required=True),
    'path': ColumnSpec('string', required=True),
    'well_known_file_type_id': ColumnSpec('id'),
})


def _nested(value, *path, default=None):
    """Follow a path of keys through nested dicts, returning default on any miss."""
    for key in path:
        if not isinstance(value, dict) or key not in value:
            return default
        value = value[key]
    return value


def _cre_line(specimen) -> Optional[str]:
    """Name of the driver transgenic line containing 'Cre', if any."""
    lines = _nested(specimen, 'donor', 'transgenic_lines', default=None) or []
    for line in lines:
        line_type = str(line.get('transgenic_line_type_name') or '')
        name = str(line.get('name') or '')
        if 'driver' in line_type and 'Cre' in name:
            return name
    return None


def _well_known_files(value) -> List[dict]:
    if isinstance(value, dict):
        return [value]
    if isinstance(value, (list, tuple)):
        return [item for item in value if isinstance(item, dict)]
    return []


def _has_file_type(files, type_name: str) -> bool:
    return any(_nested(f, 'well_known_file_type', 'name') == type_name for f in _well_known_files(files))


def _template_numbers(path: str) -> Tuple[float, float]:
    """(movie_number, scene_number) parsed from a stimulus template path."""
    name = os.path.splitext(os.path.basename(path))[0]
    movie = re.match(r'natural_movie_(\d+)', name)
    if movie:
        return float(movie.group(1)), np.nan
    if path.endswith('.tiff') and name.isdigit():
        return np.nan, float(name)
    return np.nan, np.nan


class ManifestStore:
    """
    Builds and memoizes the manifest tables of one dataset modality.

    Every remote query goes through the content cache, so a second process
    reads manifests from disk. Within one store, each table is built once;
    update_manifests() purges both the cache entries and the memo.

    Attributes:
        kind: SessionKind of this manifest
        cache: RemoteContentCache used for every query
        config: ToolboxConfig in use
        log: ToolboxLogger with fetch/build messages

    Example:
        >>> store = ManifestStore('ecephys')
        >>> sessions = store.table('sessions')
        >>> sessions[['id', 'session_type', 'unit_count']].head()
        >>> units = store.table('units')
        >>> store.update_manifests()  # purge cached queries and rebuild
    """

    def __init__(self,
                 kind,
                 cache: Optional[RemoteContentCache] = None,
                 config: Optional[ToolboxConfig] = None):
        """
        Initialize manifest store.

        Args:
            kind: SessionKind or 'ophys'/'ecephys'
            cache: Content cache (default: the process-wide cache)
            config: Optional ToolboxConfig (default: the cache's config)
        """
        self.kind = SessionKind.parse(kind)
        if config is None:
            config = cache.config if cache is not None else ToolboxConfig()
        self.config = config
        self.cache = cache if cache is not None else default_cache(config)
        self.log = ToolboxLogger(f'abo_toolbox.manifest.{self.kind.value}')
        self._memo: Dict[str, pd.DataFrame] = {}
        self._lock = threading.RLock()

    # ------------------------------------------------------------------
    # Public table access
    # ------------------------------------------------------------------

    @property
    def table_names(self) -> Tuple[str, ...]:
        return MANIFEST_TABLES[self.kind]

    def table(self, name: str) -> pd.DataFrame:
        """
        Return one manifest table, building it on first use.

        Args:
            name: One of table_names

        Returns:
            pd.DataFrame with a unique 'id' column

        Raises:
            UsageError: If name is not a table of this modality
            MalformedResponseError: If a remote response is malformed
            NetworkFailure: If a query could not be fetched
        """
        builders = self._table_builders()
        if name not in builders:
            raise UsageError(f"Unknown {self.kind.value} manifest table '{name}', "
                             f"expected one of {list(builders)}")
        return self._memoized(name, builders[name])

    @property
    def sessions(self) -> pd.DataFrame:
        return self.table('sessions')

    def tables(self) -> Dict[str, pd.DataFrame]:
        """Build (or recall) every table of this modality."""
        return {name: self.table(name) for name in self.table_names}

    def _table_builders(self) -> Dict[str, Callable[[], pd.DataFrame]]:
        if self.kind is SessionKind.OPHYS:
            return {
                'sessions': self._build_ophys_sessions,
                'containers': self._build_ophys_containers,
            }
        if self.kind is SessionKind.ECEPHYS:
            return {
                'sessions': self._build_ecephys_sessions,
                'probes': self._build_ecephys_probes,
                'channels': self._build_ecephys_channels,
                'units': self._build_ecephys_units,
            }
        raise ValueError(f"Unhandled session kind: {self.kind}")

    def _memoized(self, key: str, builder: Callable[[], pd.DataFrame]) -> pd.DataFrame:
        with self._lock:
            if key not in self._memo:
                self._memo[key] = builder()
            return self._memo[key]

    # ------------------------------------------------------------------
    # Remote queries
    # ------------------------------------------------------------------

    def _page_url(self, model: str, include: str, start_row: int, page_size: int) -> str:
        url = f"{self.config.rma_url}?criteria=model::{model}"
        if include:
            url += f",{include}"
        url += f",rma::options[start_row$eq{start_row}][num_rows$eq{page_size}][order$eq'id']"
        return make_key(url)

    def query(self, model: str, include: str = '', page_size: Optional[int] = None) -> pd.DataFrame:
        """
        Run a paged RMA query and return every row.

        Pages are requested with (start_row, num_rows) until start_row
        reaches the total_rows declared by the service. Pages with differing
        fields are merged schema-safely.

        Args:
            model: RMA model name, e.g. 'EcephysProbe'
            include: Optional include/criteria clause
            page_size: Rows per page (default: config.page_size)

        Returns:
            pd.DataFrame of raw rows

        Raises:
            MalformedResponseError: If a page is malformed or the pages
                disagree on the row count
            NetworkFailure: If a page could not be fetched
        """
        page_size = page_size or self.config.page_size
        pages = []
        total_rows = None
        start_row = 0

        while total_rows is None or start_row < total_rows:
            url = self._page_url(model, include, start_row, page_size)
            try:
                try:
                    response = self.cache.fetch_json(url)
                except ValueError as e:
                    raise MalformedResponseError(f"Response from {url} is not valid JSON: {e}") from e
                total_rows = validate_rma_page(response, url, total_rows)
            except MalformedResponseError:
                # A rejected page must not be served from the cache again
                self.cache.remove(url)
                raise
            pages.append(response['msg'])

            start_row += page_size
            if start_row < total_rows and self.config.show_progress:
                print(f"Downloading.... [{round(start_row / total_rows * 100):.0f}%]")

        table = merge_pages(pages)
        validate_row_count(table, total_rows, model)
        self.log.log_fetch(f"{model}: {len(pages)} page(s), {total_rows} rows")
        return table

    def _announce(self, label: str) -> None:
        if self.config.show_progress:
            print(f"Fetching {label} manifest...")

    # ------------------------------------------------------------------
    # Ophys tables
    # ------------------------------------------------------------------

    def _ophys_containers_raw(self) -> pd.DataFrame:
        def build():
            self._announce('OPhys containers')
            containers = self.query('ExperimentContainer', OPHYS_CONTAINER_INCLUDE)
            containers = OPHYS_CONTAINERS_SCHEMA.apply(containers)
            if 'specimen' in containers.columns:
                containers['cre_line'] = containers['specimen'].map(_cre_line)
            if 'targeted_structure' in containers.columns:
                containers['targeted_structure_acronym'] = containers['targeted_structure'].map(
                    lambda s: _nested(s, 'acronym'))
            if self.config.drop_failed:
                before = len(containers)
                containers = drop_failed(containers)
                self.log.log_build(f"Dropped {before - len(containers)} failed containers")
            return containers
        return self._memoized('containers_raw', build)

    def _build_ophys_sessions(self) -> pd.DataFrame:
        self._announce('OPhys sessions')
        sessions = self.query('OphysExperiment', OPHYS_SESSION_INCLUDE)
        sessions = OPHYS_SESSIONS_SCHEMA.apply(sessions)
        sessions = rename_columns(sessions, {'stimulus_name': 'session_type'})

        if 'specimen' in sessions.columns:
            sessions['cre_line'] = sessions['specimen'].map(_cre_line)
            sessions['age_in_days'] = sessions['specimen'].map(
                lambda s: _nested(s, 'donor', 'age', 'days')).astype(float)
        if 'targeted_structure' in sessions.columns:
            sessions['targeted_structure_acronym'] = sessions['targeted_structure'].map(
                lambda s: _nested(s, 'acronym'))
        if 'well_known_files' in sessions.columns:
            sessions['has_nwb'] = sessions['well_known_files'].map(
                lambda files: _has_file_type(files, NWB_FILE_TYPES[SessionKind.OPHYS.value]))

        before = len(sessions)
        sessions = keep_owned(sessions, self._ophys_containers_raw(), 'experiment_container_id')
        self.log.log_build(f"Dropped {before - len(sessions)} sessions without a valid container")
        return sessions

    def _build_ophys_containers(self) -> pd.DataFrame:
        containers = self._ophys_containers_raw()
        sessions = self.table('sessions')
        containers = count_owned(containers, sessions, 'id', 'experiment_container_id', 'session_count')
        if 'session_type' in sessions.columns:
            containers = grouped_uniques(containers, sessions, 'id', 'experiment_container_id',
                                         'session_type', 'session_types')
        return containers

    def cell_id_mapping(self) -> pd.DataFrame:
        """
        Table mapping cell specimen ids across ophys releases.

        Raises:
            UsageError: For non-ophys manifests
        """
        if self.kind is not SessionKind.OPHYS:
            raise UsageError("The cell id mapping is only available for ophys manifests")
        return self.cache.fetch_table(make_key(self.config.api_base_url + CELL_ID_MAPPING_PATH))

    # ------------------------------------------------------------------
    # Ecephys tables
    # ------------------------------------------------------------------

    def _ecephys_sessions_raw(self) -> pd.DataFrame:
        def build():
            self._announce('ECEPhys sessions')
            sessions = self.query('EcephysSession', ECEPHYS_SESSION_INCLUDE)

            specimens = sessions['specimen'] if 'specimen' in sessions.columns else pd.Series(None, index=sessions.index)
            sessions['age_in_days'] = specimens.map(lambda s: _nested(s, 'donor', 'age', 'days'))
            sessions['sex'] = specimens.map(lambda s: _nested(s, 'donor', 'sex'))
            sessions['genotype'] = specimens.map(lambda s: _nested(s, 'donor', 'full_genotype'))
            sessions['genotype'] = sessions['genotype'].map(lambda g: 'wt' if is_missing_value(g) else g)
            files = sessions['well_known_files'] if 'well_known_files' in sessions.columns else pd.Series(None, index=sessions.index)
            sessions['has_nwb'] = files.map(
                lambda f: _has_file_type(f, NWB_FILE_TYPES[SessionKind.ECEPHYS.value])).astype(bool)

            sessions = ECEPHYS_SESSIONS_SCHEMA.apply(sessions)
            sessions = rename_columns(sessions, {'stimulus_name': 'session_type'})

            if self.config.drop_failed:
                before = len(sessions)
                sessions = sessions[sessions['has_nwb']].reset_index(drop=True)
                self.log.log_build(f"Dropped {before - len(sessions)} sessions without an NWB file")
            return sessions
        return self._memoized('sessions_raw', build)

    def _ecephys_probes_raw(self) -> pd.DataFrame:
        def build():
            self._announce('ECEPhys probes')
            probes = ECEPHYS_PROBES_SCHEMA.apply(self.query('EcephysProbe'))
            probes = rename_columns(probes, {'use_lfp_data': 'has_lfp_data'})
            if {'lfp_sampling_rate', 'lfp_temporal_subsampling_factor'} <= set(probes.columns):
                factor = probes['lfp_temporal_subsampling_factor'].fillna(1.0)
                probes['lfp_sampling_rate'] = probes['lfp_sampling_rate'] / factor
            return probes
        return self._memoized('probes_raw', build)

    def _ecephys_channels_raw(self) -> pd.DataFrame:
        def build():
            self._announce('ECEPhys channels')
            return ECEPHYS_CHANNELS_SCHEMA.apply(self.query('EcephysChannel', ECEPHYS_CHANNEL_INCLUDE))
        return self._memoized('channels_raw', build)

    def _ecephys_units_raw(self) -> pd.DataFrame:
        def build():
            self._announce('ECEPhys units')
            units = ECEPHYS_UNITS_SCHEMA.apply(self.query('EcephysUnit'))
            units = rename_columns(units, UNIT_WAVEFORM_RENAMES)
            if self.config.filter_units:
                before = len(units)
                units = filter_units_by_quality(units, self.config.unit_filter)
                self.log.log_build(f"Unit quality filter kept {len(units)} of {before} units")
            return units
        return self._memoized('units_raw', build)

    def _annotated_probes(self) -> pd.DataFrame:
        return self._memoized('annotated_probes', lambda: join_parent(
            self._ecephys_probes_raw(), self._ecephys_sessions_raw(), 'ecephys_session_id'))

    def _annotated_channels(self) -> pd.DataFrame:
        return self._memoized('annotated_channels', lambda: join_parent(
            self._ecephys_channels_raw(), self._annotated_probes(), 'ecephys_probe_id'))

    def _annotated_units(self) -> pd.DataFrame:
        def build():
            units = join_parent(self._ecephys_units_raw(), self._annotated_channels(), 'ecephys_channel_id')
            return rename_columns(units, UNIT_PROBE_RENAMES)
        return self._memoized('annotated_units', build)

    def _build_ecephys_sessions(self) -> pd.DataFrame:
        sessions = self._ecephys_sessions_raw()
        units = self._annotated_units()
        channels = self._annotated_channels()
        probes = self._annotated_probes()

        sessions = count_owned(sessions, units, 'id', 'ecephys_session_id', 'unit_count')
        sessions = count_owned(sessions, channels, 'id', 'ecephys_session_id', 'channel_count')
        sessions = count_owned(sessions, probes, 'id', 'ecephys_session_id', 'probe_count')
        sessions = grouped_uniques(sessions, channels, 'id', 'ecephys_session_id',
                                   'ecephys_structure_acronym', 'ecephys_structure_acronyms')
        sessions = rename_columns(sessions, {'genotype': 'full_genotype'})
        self.log.log_build(f"Built {len(sessions)} ecephys sessions")
        return sessions

    def _build_ecephys_probes(self) -> pd.DataFrame:
        probes = self._annotated_probes()
        probes = count_owned(probes, self._annotated_units(), 'id', 'ecephys_probe_id', 'unit_count')
        probes = count_owned(probes, self._annotated_channels(), 'id', 'ecephys_probe_id', 'channel_count')
        probes = grouped_uniques(probes, self._annotated_channels(), 'id', 'ecephys_probe_id',
                                 'ecephys_structure_acronym', 'ecephys_structure_acronyms')
        return probes

    def _build_ecephys_channels(self) -> pd.DataFrame:
        channels = count_owned(self._annotated_channels(), self._annotated_units(),
                               'id', 'ecephys_channel_id', 'unit_count')
        return rename_columns(channels, {'name': 'probe_name'})

    def _build_ecephys_units(self) -> pd.DataFrame:
        return self._annotated_units()

    def stimulus_templates(self) -> pd.DataFrame:
        """
        Table of stimulus template files (natural movies and scenes).

        Returns:
            pd.DataFrame of well-known files with movie_number and
            scene_number columns (NaN where not applicable)
        """
        def build():
            include = STIMULUS_TEMPLATE_INCLUDE.format(product_id=STIMULUS_TEMPLATE_PRODUCT_ID)
            templates = STIMULUS_TEMPLATES_SCHEMA.apply(self.query('WellKnownFile', include))
            numbers = [_template_numbers(path or '') for path in templates['path']]
            templates['movie_number'] = [movie for movie, _ in numbers]
            templates['scene_number'] = [scene for _, scene in numbers]
            return templates
        return self._memoized('stimulus_templates', build)

    # ------------------------------------------------------------------
    # Sessions and data files
    # ------------------------------------------------------------------

    def session_row(self, session_id) -> pd.Series:
        """
        Look up one session.

        Raises:
            NotFoundError: If session_id is not in the sessions table
        """
        sessions = self.table('sessions')
        matches = sessions[(sessions['id'] == session_id).fillna(False).astype(bool)]
        if len(matches) == 0:
            raise NotFoundError(session_id, f'{self.kind.value} sessions')
        return matches.iloc[0]

    def session_files(self, session_id) -> List[Tuple[str, str, Optional[str]]]:
        """
        Data files of one session.

        Returns:
            List of (url, local_name, file_type_name); local names are
            relative to the cache's files directory

        Raises:
            NotFoundError: If the session is unknown
        """
        row = self.session_row(session_id)
        files = []
        for wkf in _well_known_files(row.get('well_known_files')):
            url = self.config.api_base_url + wkf['download_link']
            file_name = os.path.basename(wkf.get('path') or '') or f"{wkf.get('id', 'file')}.nwb"
            files.append((url, os.path.join(self.kind.value, str(session_id), file_name),
                          _nested(wkf, 'well_known_file_type', 'name')))
        return files

    def session_nwb_file(self, session_id) -> Tuple[str, str]:
        """
        (url, local_name) of a session's NWB file.

        Raises:
            NotFoundError: If the session is unknown or has no NWB file
        """
        type_name = NWB_FILE_TYPES[self.kind.value]
        for url, local_name, file_type in self.session_files(session_id):
            if file_type == type_name:
                return url, local_name
        raise NotFoundError(session_id, f'{type_name} files')

    def session_nwb_url(self, session_id) -> str:
        """
        Download URL of a session's NWB file.

        Raises:
            NotFoundError: If the session is unknown or has no NWB file
        """
        return self.session_nwb_file(session_id)[0]

    def cache_files_for_session_ids(self,
                                    session_ids: Iterable[int],
                                    use_parallel: bool = True,
                                    max_retries: Optional[int] = None,
                                    max_workers: Optional[int] = None) -> List[str]:
        """
        Download every data file of the given sessions into the cache.

        Args:
            session_ids: Session ids from this manifest
            use_parallel: Download across worker threads (default: True)
            max_retries: Attempts per file (default: config.max_retries)
            max_workers: Worker threads (default: config.max_workers)

        Returns:
            Local paths, in session order

        Raises:
            NotFoundError: If a session id is unknown
            BulkFetchError: If some files failed after retries; carries the
                failed and succeeded URLs
        """
        urls = []
        local_names = {}
        for session_id in session_ids:
            for url, local_name, _ in self.session_files(session_id):
                urls.append(url)
                local_names[url] = local_name

        result = self.cache.fetch_many(urls, parallel=use_parallel, max_retries=max_retries,
                                       max_workers=max_workers, local_names=local_names)
        return [result.succeeded[url] for url in urls]

    # ------------------------------------------------------------------
    # Refresh
    # ------------------------------------------------------------------

    def invalidate(self) -> int:
        """
        Purge this modality's cached queries and forget every built table.

        Returns:
            int: Number of cache entries removed
        """
        removed = 0
        for model in MANIFEST_MODELS[self.kind]:
            removed += self.cache.invalidate(f'criteria=model::{model}')
        with self._lock:
            self._memo.clear()
        self.log.log_fetch(f"Invalidated {removed} cached queries")
        return removed

    def update_manifests(self) -> Dict[str, pd.DataFrame]:
        """
        Refetch every manifest table from the remote service.

        Returns:
            Mapping of table name -> freshly built table
        """
        self.invalidate()
        return self.tables()

    def __repr__(self) -> str:
        return f"ManifestStore(kind='{self.kind.value}', built={sorted(self._memo)})"


_default_manifests: Dict[SessionKind, ManifestStore] = {}
_default_manifests_lock = threading.Lock()


def default_manifest(kind, config: Optional[ToolboxConfig] = None) -> ManifestStore:
    """
    Return the process-wide manifest store of a modality, creating it on first use.

    Args:
        kind: SessionKind or 'ophys'/'ecephys'
        config: Config used only when the store is first created

    Returns:
        ManifestStore backed by default_cache()
    """
    kind = SessionKind.parse(kind)
    with _default_manifests_lock:
        if kind not in _default_manifests:
            _default_manifests[kind] = ManifestStore(kind, cache=default_cache(config), config=config)
        return _default_manifests[kind]


def reset_default_manifests() -> None:
    """Forget the process-wide manifest stores."""
    with _default_manifests_lock:
        _default_manifests.clear()
