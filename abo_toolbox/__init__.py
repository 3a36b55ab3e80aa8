"""
Allen Brain Observatory Toolbox - Data Access and Spike Alignment Library

A Python package for querying the Allen Brain Observatory manifests
(two-photon "ophys" and Neuropixels "ecephys"), caching remote content
locally, filtering entities, and aligning spike trains to stimulus
presentations.

Quick Start:
    >>> from abo_toolbox import ManifestStore, EntityFilterSet, SessionDataView
    >>> store = ManifestStore('ecephys')
    >>> sessions = EntityFilterSet(store.table('sessions'))
    >>> sessions.filter_by('structure', 'VISp').summary_by('session_type')
    >>> session = SessionDataView(715093703, manifest=store)
    >>> session.conditionwise_spike_statistics()

Main Components:
    - RemoteContentCache: On-disk cache of remote queries and files
    - ManifestStore: Manifest tables per dataset modality
    - EntityFilterSet: Chainable filters over a manifest table
    - SessionDataView: Lazily evaluated analysis of one session
    - ToolboxConfig: Configuration object for custom parameters
"""

__version__ = '0.3.0'
__author__ = 'Brain Observatory Toolbox contributors'

# Main public API
from .config import ToolboxConfig
from .core.cache import RemoteContentCache, default_cache, reset_default_cache
from .core.filtering import EntityFilterSet, filter_units_by_quality
from .core.io import SessionFieldSource, NwbFieldReader
from .pipeline.manifest import ManifestStore, default_manifest, reset_default_manifests
from .pipeline.session import SessionDataView
from .models.data_structures import SessionKind, SpikeCountHistogram, BulkFetchResult

# Alignment functions (usable on plain tables)
from .core.alignment import (
    build_stimulus_conditions,
    mask_invalid_presentations,
    presentationwise_spike_times,
    presentationwise_spike_counts,
    conditionwise_spike_statistics,
    stimulus_epochs,
)
from .core.aggregation import count_owned, grouped_uniques

from .exceptions import (
    ToolboxError,
    UsageError,
    NotFoundError,
    EmptyResultError,
    NetworkFailure,
    BulkFetchError,
    MalformedResponseError,
    DataNotPresentWarning,
)


__all__ = [
    # Main classes
    'ToolboxConfig',
    'RemoteContentCache',
    'ManifestStore',
    'EntityFilterSet',
    'SessionDataView',
    'SessionFieldSource',
    'NwbFieldReader',
    'SessionKind',
    'SpikeCountHistogram',
    'BulkFetchResult',

    # Process-wide defaults
    'default_cache',
    'reset_default_cache',
    'default_manifest',
    'reset_default_manifests',

    # Table functions
    'filter_units_by_quality',
    'count_owned',
    'grouped_uniques',
    'build_stimulus_conditions',
    'mask_invalid_presentations',
    'presentationwise_spike_times',
    'presentationwise_spike_counts',
    'conditionwise_spike_statistics',
    'stimulus_epochs',

    # Errors
    'ToolboxError',
    'UsageError',
    'NotFoundError',
    'EmptyResultError',
    'NetworkFailure',
    'BulkFetchError',
    'MalformedResponseError',
    'DataNotPresentWarning',

    # Metadata
    '__version__',
]


def get_version():
    """Get package version string."""
    return __version__
