"""
Global configuration constants for Brain Observatory data access.

These values control where data is fetched from, how remote queries are
paged and retried, and the default thresholds used by the alignment engine.
"""

import os
from typing import Dict, List, Optional


# Remote service
API_BASE_URL = 'http://api.brain-map.org'
RMA_QUERY_PATH = '/api/v2/data/query.json'
PAGE_SIZE = 5000  # Rows requested per RMA page
REQUEST_TIMEOUT = 60  # Seconds, per HTTP request
MAX_RETRIES = 3  # Attempts per key before a NetworkFailure is raised
MAX_WORKERS = 4  # Upper bound on parallel downloads

# Local cache
CACHE_DIR_ENV = 'ABO_TOOLBOX_CACHE_DIR'
DEFAULT_CACHE_DIR = os.environ.get(
    CACHE_DIR_ENV,
    os.path.join(os.path.expanduser('~'), '.cache', 'abo_toolbox')
)

# Well-known files
CELL_ID_MAPPING_PATH = '/api/v2/well_known_file_download/590985414'
STIMULUS_TEMPLATE_PRODUCT_ID = 714914585
NWB_FILE_TYPES = {'ophys': 'NWBOphys', 'ecephys': 'EcephysNwb'}

# Unit quality filter applied to the ecephys units manifest
UNIT_FILTER_DEFAULTS = {
    'amplitude_cutoff_maximum': 0.1,
    'presence_ratio_minimum': 0.95,
    'isi_violations_maximum': 0.5,
}

# Stimulus presentation columns that are not stimulus parameters
NON_STIMULUS_PARAMETERS = [
    'start_time',
    'stop_time',
    'duration',
    'stimulus_block',
    'stimulus_condition_id',
    'stimulus_index',
]

# Rendering parameters hidden from stimulus tables unless requested
DETAILED_STIMULUS_PARAMETERS = [
    'colorSpace', 'flipHoriz', 'flipVert', 'depth', 'interpolate', 'mask',
    'opacity', 'rgbPedestal', 'tex', 'texRes', 'units', 'rgb',
    'signalDots', 'noiseDots', 'fieldSize', 'fieldShape', 'fieldPos',
    'nDots', 'dotSize', 'dotLife', 'color_triplet',
]

# Columns ignored when deduplicating stimulus conditions
CONDITION_EXCLUDED_COLUMNS = [
    'start_time',
    'stop_time',
    'duration',
    'stimulus_block',
    'stimulus_presentation_id',
    'stimulus_block_id',
    'id',
    'stimulus_condition_id',
]

# Epochs of these stimuli shorter than the threshold (seconds) are dropped
EPOCH_DURATION_THRESHOLDS = {'spontaneous_activity': 90.0}

# Binarized histograms warn when a bin is wider than this (seconds)
LARGE_BIN_SIZE_THRESHOLD = 0.001

# What to do when neighbouring presentation windows overlap
OVERLAP_STRICTNESS_LEVELS = ['warn', 'error', 'ignore']
OVERLAP_STRICTNESS = 'warn'

# Stimuli shown in each session type
OPHYS_SESSION_STIMULI = {
    'three_session_A': ['drifting_gratings', 'natural_movie_one',
                        'natural_movie_three', 'spontaneous_activity'],
    'three_session_B': ['static_gratings', 'natural_scene',
                        'natural_movie_one', 'spontaneous_activity'],
    'three_session_C': ['locally_sparse_noise_four_degree', 'natural_movie_one',
                        'natural_movie_two', 'spontaneous_activity'],
    'three_session_C2': ['locally_sparse_noise_four_degree',
                         'locally_sparse_noise_eight_degree',
                         'natural_movie_one', 'natural_movie_two',
                         'spontaneous_activity'],
}

ECEPHYS_SESSION_STIMULI = {
    'brain_observatory_1.1': ['spontaneous', 'gabors', 'flashes',
                              'drifting_gratings', 'natural_movie_three',
                              'natural_movie_one', 'static_gratings',
                              'natural_scenes'],
    'functional_connectivity': ['spontaneous', 'gabors', 'flashes',
                                'drifting_gratings_contrast',
                                'drifting_gratings_75_repeats',
                                'natural_movie_one_more_repeats',
                                'natural_movie_one_shuffled', 'dot_motion'],
}


class ToolboxConfig:
    """
    Configuration object for customizing data access and analysis parameters.

    Every component (cache, manifest store, session view) accepts a config,
    so a single object can redirect the cache, tighten the unit filter or
    make overlapping presentation windows a hard error.

    Attributes:
        api_base_url: Scheme and host of the remote service
        page_size: Rows requested per RMA page
        timeout: HTTP request timeout in seconds
        max_retries: Attempts per key before giving up
        max_workers: Worker threads used for bulk downloads
        cache_dir: Root directory of the local content cache
        filter_units: Apply the unit quality filter to the units manifest
        unit_filter: Unit quality thresholds
        drop_failed: Drop failed containers/sessions from manifests
        epoch_duration_thresholds: Minimum epoch duration per stimulus name
        large_bin_size_threshold: Bin width above which binarizing warns
        overlap_strictness: 'warn', 'error' or 'ignore' for overlapping windows
        show_progress: Print download progress and show tqdm bars

    Example:
        >>> # Keep the cache next to the analysis
        >>> config = ToolboxConfig(cache_dir='./abo_cache')
        >>>
        >>> # Refuse overlapping presentation windows
        >>> config = ToolboxConfig(overlap_strictness='error')
    """

    def __init__(self,
                 api_base_url: Optional[str] = None,
                 page_size: Optional[int] = None,
                 timeout: Optional[float] = None,
                 max_retries: Optional[int] = None,
                 max_workers: Optional[int] = None,
                 cache_dir: Optional[str] = None,
                 filter_units: bool = True,
                 unit_filter: Optional[Dict[str, float]] = None,
                 drop_failed: bool = True,
                 epoch_duration_thresholds: Optional[Dict[str, float]] = None,
                 large_bin_size_threshold: Optional[float] = None,
                 overlap_strictness: Optional[str] = None,
                 show_progress: bool = True):
        """
        Initialize toolbox configuration.

        Args:
            api_base_url: Remote service root (default: API_BASE_URL)
            page_size: RMA page size (default: 5000)
            timeout: Request timeout in seconds (default: 60)
            max_retries: Attempts per key (default: 3)
            max_workers: Bulk download workers (default: 4)
            cache_dir: Cache root (default: $ABO_TOOLBOX_CACHE_DIR or ~/.cache/abo_toolbox)
            filter_units: Apply unit quality filter (default: True)
            unit_filter: Unit quality thresholds (default: UNIT_FILTER_DEFAULTS)
            drop_failed: Drop failed entities from manifests (default: True)
            epoch_duration_thresholds: Epoch thresholds (default: {'spontaneous_activity': 90})
            large_bin_size_threshold: Binarization warning threshold (default: 0.001 s)
            overlap_strictness: 'warn', 'error' or 'ignore' (default: 'warn')
            show_progress: Print progress messages (default: True)

        Raises:
            ValueError: If overlap_strictness or page_size is invalid
        """
        self.api_base_url = (api_base_url if api_base_url is not None else API_BASE_URL).rstrip('/')
        self.page_size = page_size if page_size is not None else PAGE_SIZE
        self.timeout = timeout if timeout is not None else REQUEST_TIMEOUT
        self.max_retries = max_retries if max_retries is not None else MAX_RETRIES
        self.max_workers = max_workers if max_workers is not None else MAX_WORKERS
        self.cache_dir = cache_dir if cache_dir is not None else DEFAULT_CACHE_DIR

        # Manifest settings
        self.filter_units = filter_units
        self.unit_filter = unit_filter if unit_filter is not None else UNIT_FILTER_DEFAULTS.copy()
        self.drop_failed = drop_failed

        # Alignment settings
        self.epoch_duration_thresholds = (epoch_duration_thresholds
                                          if epoch_duration_thresholds is not None
                                          else EPOCH_DURATION_THRESHOLDS.copy())
        self.large_bin_size_threshold = (large_bin_size_threshold
                                         if large_bin_size_threshold is not None
                                         else LARGE_BIN_SIZE_THRESHOLD)
        self.overlap_strictness = overlap_strictness if overlap_strictness is not None else OVERLAP_STRICTNESS
        self.show_progress = show_progress

        if self.overlap_strictness not in OVERLAP_STRICTNESS_LEVELS:
            raise ValueError(f"overlap_strictness must be one of {OVERLAP_STRICTNESS_LEVELS}, "
                             f"got '{self.overlap_strictness}'")
        if self.page_size < 1:
            raise ValueError(f"page_size must be positive, got {self.page_size}")

    @property
    def rma_url(self) -> str:
        """Full URL of the RMA query endpoint."""
        return self.api_base_url + RMA_QUERY_PATH

    def __repr__(self) -> str:
        return (f"ToolboxConfig(cache_dir='{self.cache_dir}', "
                f"page_size={self.page_size}, "
                f"overlap_strictness='{self.overlap_strictness}')")


def stimuli_for_session_types(session_types: List[str]) -> List[str]:
    """
    Collect the stimulus names shown in any of the given session types.

    Args:
        session_types: Ophys or ecephys session type names

    Returns:
        Sorted list of distinct stimulus names
    """
    names = set()
    for session_type in session_types:
        names.update(OPHYS_SESSION_STIMULI.get(session_type, []))
        names.update(ECEPHYS_SESSION_STIMULI.get(session_type, []))
    return sorted(names)
