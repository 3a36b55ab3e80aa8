"""
Session-level access to one ecephys recording.

SessionDataView binds a manifest session row to that session's data file
and exposes presentation tables, spike trains and the alignment analyses.
Every derived value is computed on first access and kept for the lifetime
of the view through a single fetch_cached() memo.
"""

from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from ..config import ToolboxConfig
from ..core import alignment
from ..core.cache import RemoteContentCache
from ..core.io import NwbFieldReader, SessionFieldSource
from ..exceptions import DataNotPresentWarning, InvalidIntervalsWarning, NotFoundError, UsageError
from ..models.data_structures import SessionKind, SpikeCountHistogram
from ..models.schemas import is_missing_value
from ..utils.intervals import nan_intervals
from ..utils.logging import ToolboxLogger
from .manifest import ManifestStore, default_manifest
from .validation import validate_session_row


OPTOGENETIC_COLUMNS = ['start_time', 'stop_time', 'condition', 'level']


class SessionDataView:
    """
    Lazily evaluated view of one ecephys session.

    The session's probes, channels and units come from the manifest. Raw
    fields (presentations, spike times, running speed, ...) come from a
    SessionFieldSource, by default an NwbFieldReader over the session's NWB
    file, which is downloaded into the content cache on first use.

    Attributes:
        id: Session id
        metadata: Manifest row of the session
        manifest: ManifestStore the session belongs to
        probes: Probes of this session
        channels: Channels of this session
        units: Units of this session (after the manifest's quality filter)
        config: ToolboxConfig in use
        log: ToolboxLogger with alignment messages

    Example:
        >>> session = SessionDataView(715093703)
        >>> session.stimulus_names
        ['drifting_gratings', 'flashes', 'gabors', ...]
        >>> gabors = session.fetch_stimulus_table('gabors')
        >>> hist = session.presentationwise_spike_counts(
        ...     bin_edges=np.arange(0, 0.25, 0.01),
        ...     stimulus_presentation_ids=gabors.index,
        ...     unit_ids=session.units['id'][:10])
        >>> stats = session.conditionwise_spike_statistics(gabors.index)
    """

    def __init__(self,
                 session,
                 manifest: Optional[ManifestStore] = None,
                 reader: Optional[SessionFieldSource] = None,
                 cache: Optional[RemoteContentCache] = None,
                 config: Optional[ToolboxConfig] = None):
        """
        Initialize session view.

        Args:
            session: Session id, one-row sessions table or sessions Series
            manifest: Ecephys ManifestStore (default: the process-wide one)
            reader: Field source (default: NwbFieldReader over the cached NWB file)
            cache: Content cache for the NWB download (default: manifest.cache)
            config: Optional ToolboxConfig (default: manifest.config)

        Raises:
            UsageError: If session is not an integer id, a one-row table or
                a Series, or the manifest is not an ecephys manifest
            NotFoundError: If the session id is not in the manifest
        """
        if manifest is None:
            manifest = default_manifest(SessionKind.ECEPHYS, config)
        if SessionKind.parse(manifest.kind) is not SessionKind.ECEPHYS:
            raise UsageError("SessionDataView only supports ecephys sessions")

        if isinstance(session, (pd.DataFrame, pd.Series)):
            row = validate_session_row(session)
        elif isinstance(session, (int, np.integer)) and not isinstance(session, bool):
            row = manifest.session_row(int(session))
        else:
            raise UsageError(f"Expected a session id, a one-row table or a Series, "
                             f"got {type(session).__name__}")

        self.manifest = manifest
        self.config = config if config is not None else manifest.config
        self.cache = cache if cache is not None else getattr(manifest, 'cache', None)
        self.metadata = row
        self.id = int(row['id'])
        self.log = ToolboxLogger(f'abo_toolbox.session.{self.id}')

        self.probes = self._owned('probes')
        self.channels = self._owned('channels')
        self.units = self._owned('units')

        self._reader = reader
        self._property_cache: Dict[str, object] = {}

    def _owned(self, table_name: str) -> pd.DataFrame:
        table = self.manifest.table(table_name)
        owned = (table['ecephys_session_id'] == self.id).fillna(False).to_numpy(dtype=bool)
        return table[owned].reset_index(drop=True)

    # ------------------------------------------------------------------
    # Memoization
    # ------------------------------------------------------------------

    def fetch_cached(self, key: str, supplier: Callable[[], object]):
        """
        Return the value stored under key, computing it with supplier on first use.

        Args:
            key: Name of the cached value
            supplier: Zero-argument callable producing the value

        Returns:
            The cached value
        """
        if key not in self._property_cache:
            self._property_cache[key] = supplier()
        return self._property_cache[key]

    def in_cache(self, key: str) -> bool:
        """True if a value is already stored under key."""
        return key in self._property_cache

    # ------------------------------------------------------------------
    # Data file
    # ------------------------------------------------------------------

    @property
    def nwb_url(self) -> str:
        return self.manifest.session_nwb_url(self.id)

    def _open_reader(self) -> SessionFieldSource:
        if self.cache is None:
            raise UsageError("No field source was given and no content cache is available")
        url, local_name = self.manifest.session_nwb_file(self.id)
        return NwbFieldReader(self.cache.fetch_file(url, local_name=local_name))

    @property
    def field_source(self) -> SessionFieldSource:
        """Raw field source, opened on first use."""
        if self._reader is None:
            self._reader = self.fetch_cached('field_source', self._open_reader)
        return self._reader

    # ------------------------------------------------------------------
    # Metadata
    # ------------------------------------------------------------------

    @property
    def specimen_name(self) -> Optional[str]:
        specimen = self.metadata.get('specimen')
        if isinstance(specimen, dict):
            return specimen.get('name')
        return self.metadata.get('specimen_name')

    @property
    def age_in_days(self):
        return self.metadata.get('age_in_days')

    @property
    def sex(self):
        return self.metadata.get('sex')

    @property
    def full_genotype(self):
        return self.metadata.get('full_genotype')

    @property
    def session_type(self):
        return self.metadata.get('session_type')

    @property
    def num_units(self) -> int:
        return len(self.units)

    @property
    def num_probes(self) -> int:
        return len(self.probes)

    @property
    def num_channels(self) -> int:
        return len(self.channels)

    @property
    def structure_acronyms(self) -> List[str]:
        """Distinct structures the session's channels are in."""
        acronyms = self.channels.get('ecephys_structure_acronym', pd.Series([], dtype=object))
        return sorted({a for a in acronyms if isinstance(a, str) and not is_missing_value(a)})

    @property
    def structurewise_unit_counts(self) -> pd.DataFrame:
        """Number of units per structure, largest first."""
        counts = self.units['ecephys_structure_acronym'].value_counts(dropna=False)
        counts = counts.rename_axis('ecephys_structure_acronym').rename('count').reset_index()
        return counts.sort_values('count', ascending=False, kind='stable').reset_index(drop=True)

    # ------------------------------------------------------------------
    # Stimulus presentations
    # ------------------------------------------------------------------

    def _cache_stimulus_presentations(self) -> None:
        if self.in_cache('stimulus_presentations_raw') and self.in_cache('stimulus_conditions_raw'):
            return
        raw = self.field_source.fetch_stimulus_presentations()
        presentations, conditions = alignment.build_stimulus_conditions(raw)
        presentations = alignment.mask_invalid_presentations(presentations, self.invalid_times)
        self._property_cache['stimulus_presentations_raw'] = presentations
        self._property_cache['stimulus_conditions_raw'] = conditions
        self.log.log_align(f"{len(presentations)} presentations, {len(conditions)} conditions")

    @property
    def _stimulus_presentations_raw(self) -> pd.DataFrame:
        self._cache_stimulus_presentations()
        return self._property_cache['stimulus_presentations_raw']

    @property
    def stimulus_presentations(self) -> pd.DataFrame:
        """Every presentation, without detailed rendering parameters."""
        return alignment.remove_detailed_parameters(self._stimulus_presentations_raw)

    @property
    def stimulus_conditions(self) -> pd.DataFrame:
        self._cache_stimulus_presentations()
        return self._property_cache['stimulus_conditions_raw']

    @property
    def num_stimulus_presentations(self) -> int:
        return len(self.stimulus_presentations)

    @property
    def stimulus_names(self) -> List[str]:
        return sorted(set(self.stimulus_presentations['stimulus_name'].dropna()))

    @property
    def inter_presentation_intervals(self) -> pd.DataFrame:
        return self.fetch_cached('inter_presentation_intervals',
                                 lambda: alignment.inter_presentation_intervals(self._stimulus_presentations_raw))

    @property
    def stimulus_epochs(self) -> pd.DataFrame:
        return self.fetch_stimulus_epochs()

    def fetch_stimulus_epochs(self, duration_thresholds: Optional[Dict[str, float]] = None) -> pd.DataFrame:
        """
        Continuous periods during which one stimulus block was shown.

        Args:
            duration_thresholds: Minimum epoch duration per stimulus name
                (default: config.epoch_duration_thresholds)

        Returns:
            pd.DataFrame with start_time, stop_time, duration,
            stimulus_name and stimulus_block
        """
        thresholds = duration_thresholds if duration_thresholds is not None else self.config.epoch_duration_thresholds
        presentations = self.stimulus_presentations.sort_values('start_time', kind='stable')
        return alignment.stimulus_epochs(presentations, thresholds)

    def fetch_stimulus_table(self,
                             stimulus_names: Optional[Iterable[str]] = None,
                             include_detailed_parameters: bool = False,
                             include_unused_parameters: bool = False) -> pd.DataFrame:
        """
        Presentations of the named stimuli.

        Args:
            stimulus_names: Stimulus name or names (default: all)
            include_detailed_parameters: Keep rendering parameters
            include_unused_parameters: Keep columns that are missing for
                every selected presentation

        Returns:
            pd.DataFrame indexed by stimulus_presentation_id
        """
        presentations = self._stimulus_presentations_raw
        if stimulus_names is not None:
            names = [stimulus_names] if isinstance(stimulus_names, str) else list(stimulus_names)
            presentations = presentations[presentations['stimulus_name'].isin(names)]
        if not include_detailed_parameters:
            presentations = alignment.remove_detailed_parameters(presentations)
        if not include_unused_parameters:
            presentations = alignment.remove_unused_columns(presentations)
        return presentations

    def fetch_inter_presentation_intervals_for_stimulus(self, stimulus_names: Iterable[str]) -> pd.DataFrame:
        """Inter-presentation intervals between presentations of the named stimuli."""
        names = [stimulus_names] if isinstance(stimulus_names, str) else list(stimulus_names)
        raw = self._stimulus_presentations_raw
        ids = set(raw.index[raw['stimulus_name'].isin(names)])

        intervals = self.inter_presentation_intervals
        from_ids = intervals.index.get_level_values('from_presentation_id')
        to_ids = intervals.index.get_level_values('to_presentation_id')
        return intervals[from_ids.isin(ids) & to_ids.isin(ids)]

    def fetch_stimulus_parameter_values(self,
                                        stimulus_presentation_ids: Optional[Sequence[int]] = None,
                                        drop_nulls: bool = True) -> Dict[str, np.ndarray]:
        """
        Distinct values taken by each stimulus parameter.

        Args:
            stimulus_presentation_ids: Presentations to scan (default: all)
            drop_nulls: Omit missing values (default: True)

        Returns:
            Mapping of parameter name -> array of distinct values
        """
        presentations = self.stimulus_presentations
        if stimulus_presentation_ids is not None:
            presentations = presentations[presentations.index.isin(list(stimulus_presentation_ids))]
        return alignment.stimulus_parameter_values(presentations, drop_nulls)

    def fetch_parameter_values_for_stimulus(self, stimulus_name: str,
                                            drop_nulls: bool = True) -> Dict[str, np.ndarray]:
        """Distinct parameter values while the named stimulus was shown."""
        ids = self.fetch_stimulus_table(stimulus_name).index
        return self.fetch_stimulus_parameter_values(ids, drop_nulls)

    def _filter_owned(self, table: pd.DataFrame, ids, table_name: str) -> pd.DataFrame:
        if ids is None:
            return table
        ids = list(ids)
        missing = [i for i in ids if i not in table.index]
        if missing:
            raise NotFoundError(missing[0], table_name)
        selected = table.loc[ids]
        if len(selected) == 0:
            self.log.warn('align', f"Filtering to an empty set of {table_name}!")
        return selected

    # ------------------------------------------------------------------
    # Recorded fields
    # ------------------------------------------------------------------

    @property
    def invalid_times(self) -> pd.DataFrame:
        return self.fetch_cached('invalid_times', self.field_source.fetch_invalid_times)

    def filter_invalid_times_by_tags(self, tags: Iterable[str]) -> pd.DataFrame:
        """Invalid time intervals carrying any of the given tags."""
        tags = [tags] if isinstance(tags, str) else list(tags)
        return alignment.filter_invalid_times_by_tags(self.invalid_times, tags)

    def fetch_valid_time_points(self, time_points: Sequence[float],
                                invalid_time_intervals: Optional[pd.DataFrame] = None) -> np.ndarray:
        """
        Mark time points that fall outside every invalid interval.

        Args:
            time_points: Times to test
            invalid_time_intervals: Intervals to exclude (default: invalid_times)

        Returns:
            Boolean array, True where the time point is valid
        """
        intervals = invalid_time_intervals if invalid_time_intervals is not None else self.invalid_times
        return alignment.valid_time_points(time_points, intervals)

    def _warn_invalid_spike_intervals(self) -> None:
        probe_names = self.probes['name'].tolist() if 'name' in self.probes.columns else []
        fail_tags = [name for name in probe_names if isinstance(name, str)] + ['all_probes']
        if len(self.filter_invalid_times_by_tags(fail_tags)) > 0:
            self.log.warn(
                'align',
                "Session includes invalid time intervals that could be accessed with the attribute "
                "'invalid_times'. Spikes within these intervals are invalid and may need to be "
                "excluded from the analysis.",
                InvalidIntervalsWarning
            )

    @property
    def spike_times(self) -> Dict[int, np.ndarray]:
        """Spike times of the session's units, keyed by unit id."""
        if not self.in_cache('checked_spike_times'):
            self._warn_invalid_spike_intervals()
            self._property_cache['checked_spike_times'] = True

        def build():
            retained = set(int(u) for u in self.units['id'])
            raw = self.field_source.fetch_spike_times()
            return {unit_id: times for unit_id, times in raw.items() if int(unit_id) in retained}
        return self.fetch_cached('spike_times', build)

    @property
    def spike_amplitudes(self) -> Dict[int, np.ndarray]:
        return self.fetch_cached('spike_amplitudes', self.field_source.fetch_spike_amplitudes)

    @property
    def running_speed(self) -> pd.DataFrame:
        return self.fetch_cached('running_speed', self.field_source.fetch_running_speed)

    @property
    def session_start_time(self) -> pd.Timestamp:
        return self.fetch_cached('session_start_time', self.field_source.fetch_session_start_time)

    @property
    def optogenetic_stimulation_epochs(self) -> pd.DataFrame:
        """Optogenetic stimulation epochs; empty (with a warning) when not recorded."""
        try:
            return self.fetch_cached('optogenetic_stimulation_epochs',
                                     self.field_source.fetch_optogenetic_stimulation)
        except KeyError:
            self.log.warn('align', "Optogenetic stimulation data is not present for this session",
                          DataNotPresentWarning)
            return pd.DataFrame(columns=OPTOGENETIC_COLUMNS)

    @property
    def rig_metadata(self) -> Optional[dict]:
        try:
            return self.fetch_cached('rig_metadata', self.field_source.fetch_rig_metadata)
        except KeyError:
            return None

    @property
    def rig_geometry_data(self) -> Optional[pd.DataFrame]:
        metadata = self.rig_metadata
        return metadata['rig_geometry_data'] if metadata is not None else None

    @property
    def rig_equipment_name(self) -> Optional[str]:
        metadata = self.rig_metadata
        return metadata['rig_equipment'] if metadata is not None else None

    @property
    def mean_waveforms(self):
        raise NotImplementedError("Mean waveforms are not available in this toolbox")

    def fetch_natural_movie_template(self, number: int):
        raise NotImplementedError("Natural movie templates are not available in this toolbox")

    def fetch_natural_scene_template(self, number: int):
        raise NotImplementedError("Natural scene templates are not available in this toolbox")

    # ------------------------------------------------------------------
    # Spike alignment
    # ------------------------------------------------------------------

    def _unit_ids(self, unit_ids) -> List[int]:
        known = [int(u) for u in self.units['id']]
        if unit_ids is None:
            return known
        unit_ids = [int(u) for u in unit_ids]
        known_set = set(known)
        for unit_id in unit_ids:
            if unit_id not in known_set:
                raise NotFoundError(unit_id, 'units')
        return unit_ids

    def presentationwise_spike_times(self,
                                     stimulus_presentation_ids: Optional[Sequence[int]] = None,
                                     unit_ids: Optional[Sequence[int]] = None) -> pd.DataFrame:
        """
        Spikes that occurred during the selected presentations.

        Args:
            stimulus_presentation_ids: Presentations to consider (default: all)
            unit_ids: Units to consider (default: all units of the session)

        Returns:
            pd.DataFrame with spike_time, stimulus_presentation_id, unit_id
            and time_since_stimulus_presentation_onset, sorted by spike_time

        Raises:
            NotFoundError: If a presentation or unit id is unknown
        """
        presentations = self._filter_owned(self._stimulus_presentations_raw, stimulus_presentation_ids,
                                           'stimulus_presentations')
        unit_ids = self._unit_ids(unit_ids)
        spikes = alignment.presentationwise_spike_times(presentations, self.spike_times, unit_ids)
        self.log.log_align(f"Assigned {len(spikes)} spikes to {len(presentations)} presentations")
        return spikes

    def presentationwise_spike_counts(self,
                                      bin_edges: Sequence[float],
                                      stimulus_presentation_ids: Sequence[int],
                                      unit_ids: Optional[Sequence[int]] = None,
                                      binarize: bool = False,
                                      large_bin_size_threshold: Optional[float] = None,
                                      time_domain_callback: Optional[Callable[[np.ndarray], np.ndarray]] = None
                                      ) -> SpikeCountHistogram:
        """
        Spike counts in bins around each presentation's onset.

        Args:
            bin_edges: Edges relative to onset (seconds), strictly increasing
            stimulus_presentation_ids: Presentations to align to
            unit_ids: Units to count (default: all units of the session)
            binarize: Clip counts to 0/1
            large_bin_size_threshold: Warn when binarizing wider bins
                (default: config.large_bin_size_threshold)
            time_domain_callback: Optional transform of the absolute time domain

        Returns:
            SpikeCountHistogram of shape (presentations, bins, units)

        Raises:
            ValueError: For malformed bin edges or an out-of-order time
                domain, or overlapping windows when config.overlap_strictness
                is 'error'
            NotFoundError: If a presentation or unit id is unknown
        """
        presentations = self._filter_owned(self._stimulus_presentations_raw, stimulus_presentation_ids,
                                           'stimulus_presentations')
        threshold = (large_bin_size_threshold if large_bin_size_threshold is not None
                     else self.config.large_bin_size_threshold)
        return alignment.presentationwise_spike_counts(
            presentations,
            self.spike_times,
            bin_edges,
            unit_ids=self._unit_ids(unit_ids),
            binarize=binarize,
            large_bin_size_threshold=threshold,
            time_domain_callback=time_domain_callback,
            overlap_strictness=self.config.overlap_strictness,
        )

    def conditionwise_spike_statistics(self,
                                       stimulus_presentation_ids: Optional[Sequence[int]] = None,
                                       unit_ids: Optional[Sequence[int]] = None,
                                       use_rates: bool = False) -> pd.DataFrame:
        """
        Spike count (or rate) statistics per stimulus condition and unit.

        Args:
            stimulus_presentation_ids: Presentations to include (default: all)
            unit_ids: Units to include (default: all units of the session)
            use_rates: Summarize spike rates instead of counts

        Returns:
            pd.DataFrame indexed by (stimulus_condition_id, unit_id)
        """
        presentations = self._filter_owned(self._stimulus_presentations_raw, stimulus_presentation_ids,
                                           'stimulus_presentations')
        unit_ids = self._unit_ids(unit_ids)
        spikes = alignment.presentationwise_spike_times(presentations, self.spike_times, unit_ids)
        return alignment.conditionwise_spike_statistics(presentations, spikes, unit_ids, use_rates)

    def channel_structure_intervals(self, channel_ids: Sequence[int]) -> Tuple[np.ndarray, np.ndarray]:
        """
        Runs of consecutive channels inserted into the same structure.

        Args:
            channel_ids: Channels to scan

        Returns:
            tuple: (labels, intervals) where:
                - labels: structure acronym of each run
                - intervals: run bounds, one longer than labels
        """
        selected = self.channels[self.channels['id'].isin(sorted(int(c) for c in channel_ids))]
        if selected['ecephys_probe_id'].nunique() > 1:
            self.log.warn('align', "Calculating structure boundaries across channels from multiple probes.")
        intervals = nan_intervals(selected['ecephys_structure_id'].tolist())
        labels = selected['ecephys_structure_acronym'].to_numpy()[intervals[:-1]]
        return labels, intervals

    def __repr__(self) -> str:
        return f"SessionDataView(id={self.id}, units={self.num_units}, probes={self.num_probes})"
