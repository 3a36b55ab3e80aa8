"""
Exception and warning types raised by the toolbox.

Every error raised on purpose derives from ToolboxError, and most also
derive from the builtin they specialise, so callers can catch either.
"""

from typing import Dict, Optional


class ToolboxError(Exception):
    """Base class for all toolbox errors."""


class UsageError(ToolboxError, ValueError):
    """Invalid argument shape or type. Never retried."""


class NotFoundError(ToolboxError, LookupError):
    """
    An id does not resolve in the relevant manifest table.

    Attributes:
        item_id: The id that failed to resolve
        table_name: Name of the table that was searched
    """

    def __init__(self, item_id, table_name: str = 'sessions'):
        self.item_id = item_id
        self.table_name = table_name
        super().__init__(f"No item with id {item_id} in the {table_name} table")


class EmptyResultError(ToolboxError):
    """
    A filter chain eliminated all rows of a restrictive filter set.

    Attributes:
        filter_name: Description of the filter that emptied the set
    """

    def __init__(self, filter_name: str):
        self.filter_name = filter_name
        super().__init__(
            f"Filter '{filter_name}' removed all remaining rows. "
            f"Call refresh() to restore the full table."
        )


class NetworkFailure(ToolboxError, IOError):
    """
    A fetch failed after all retries were exhausted.

    The last underlying exception is chained as __cause__.

    Attributes:
        key: Cache key (normalized URL) that could not be fetched
        attempts: Number of attempts made
    """

    def __init__(self, key: str, attempts: int, message: Optional[str] = None):
        self.key = key
        self.attempts = attempts
        super().__init__(message or f"Failed to fetch {key} after {attempts} attempt(s)")


class BulkFetchError(NetworkFailure):
    """
    Some keys of a bulk fetch failed after retries.

    Attributes:
        failed: Mapping of failed key -> last exception
        succeeded: Mapping of fetched key -> local path
    """

    def __init__(self, failed: Dict[str, Exception], succeeded: Dict[str, str], attempts: int):
        self.failed = failed
        self.succeeded = succeeded
        keys = ', '.join(sorted(failed))
        super().__init__(
            key=keys,
            attempts=attempts,
            message=f"{len(failed)} of {len(failed) + len(succeeded)} downloads failed: {keys}"
        )


class MalformedResponseError(ToolboxError, ValueError):
    """A remote query response is missing fields or has inconsistent row counts."""


class DataNotPresentWarning(UserWarning):
    """An optional dataset field is absent for this entity."""


class BinarizationWarning(UserWarning):
    """Binarizing spike counts with wide bins may lose spikes."""


class OverlappingWindowsWarning(UserWarning):
    """Neighbouring presentation windows overlap in time."""


class InvalidIntervalsWarning(UserWarning):
    """The session contains invalid spike time intervals."""
