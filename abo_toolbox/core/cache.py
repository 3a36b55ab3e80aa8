"""
Durable, content-addressed cache for remote query results and data files.

Each entry is keyed by the normalized request URL. The on-disk layout is:

    <root>/index/<sha256(key)>.json   sidecar: {"key", "path", "created"}
    <root>/blobs/<sha256(key)>        payload of query responses
    <root>/files/<local_name>         payload of named data files (NWB)

Payloads are written to a temporary file in the destination directory and
renamed into place, and the sidecar is written only after its payload, so
an entry visible under its key is always complete. There is no
cross-process locking: two processes writing the same key concurrently
each produce a complete file and the last rename wins.
"""

import hashlib
import io
import json
import logging
import os
import tempfile
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Dict, Iterable, List, Optional

import pandas as pd
import requests
from tqdm import tqdm

from ..config import ToolboxConfig
from ..exceptions import NetworkFailure, BulkFetchError
from ..models.data_structures import CacheEntry, BulkFetchResult


logger = logging.getLogger(__name__)

_CHUNK_SIZE = 1024 * 1024


def make_key(url: str, params: Optional[Dict[str, object]] = None) -> str:
    """
    Normalize a request into a deterministic cache key.

    Query parameters are sorted so the same request always maps to the same
    key. Non-HTTP URLs (file://) are returned unchanged.

    Args:
        url: Request URL, possibly already carrying a query string
        params: Optional extra query parameters

    Returns:
        str: Normalized URL

    Example:
        >>> make_key('http://api.brain-map.org/q.json', {'b': 2, 'a': 1})
        'http://api.brain-map.org/q.json?a=1&b=2'
    """
    items = sorted(params.items()) if params else None
    return requests.Request('GET', url, params=items).prepare().url


def key_digest(key: str) -> str:
    """SHA-256 hex digest of a cache key."""
    return hashlib.sha256(key.encode('utf-8')).hexdigest()


def _atomic_write(path: str, write) -> None:
    """Run write(file_obj) against a temp file, then rename it to path."""
    directory = os.path.dirname(path)
    os.makedirs(directory, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=directory, prefix='.partial-')
    try:
        with os.fdopen(fd, 'wb') as f:
            write(f)
        os.replace(tmp_path, path)
    except BaseException:
        if os.path.exists(tmp_path):
            os.remove(tmp_path)
        raise


class HttpTransport:
    """
    Blocking HTTP transport backed by a requests.Session.

    Attributes:
        timeout: Per-request timeout in seconds
        session: Underlying requests.Session
    """

    def __init__(self, timeout: float = 60, session: Optional[requests.Session] = None):
        self.timeout = timeout
        self.session = session if session is not None else requests.Session()

    def get(self, url: str) -> bytes:
        """
        Fetch a URL into memory.

        Raises:
            requests.RequestException: On connection errors or HTTP error status
        """
        response = self.session.get(url, timeout=self.timeout)
        response.raise_for_status()
        return response.content

    def download(self, url: str, file_obj) -> None:
        """Stream a URL into an open binary file object."""
        with self.session.get(url, timeout=self.timeout, stream=True) as response:
            response.raise_for_status()
            for chunk in response.iter_content(chunk_size=_CHUNK_SIZE):
                if chunk:
                    file_obj.write(chunk)


class RemoteContentCache:
    """
    Key -> payload cache that persists across process restarts.

    fetch() never touches the network for a key that already has an entry.
    Transient failures are retried up to max_retries times per key before a
    NetworkFailure wrapping the last cause is raised.

    Attributes:
        root: Cache root directory
        transport: Object with get(url) -> bytes and download(url, file_obj)
        config: ToolboxConfig in use

    Example:
        >>> cache = RemoteContentCache('/tmp/abo_cache')
        >>> payload = cache.fetch_json('http://api.brain-map.org/api/v2/data/query.json?criteria=...')
        >>> cache.exists('http://api.brain-map.org/api/v2/data/query.json?criteria=...')
        True
        >>> cache.invalidate('model::EcephysSession')
        1
    """

    def __init__(self,
                 cache_dir: Optional[str] = None,
                 transport=None,
                 config: Optional[ToolboxConfig] = None):
        """
        Initialize the cache.

        Args:
            cache_dir: Root directory (default: config.cache_dir)
            transport: Fetch backend (default: HttpTransport)
            config: Optional ToolboxConfig
        """
        self.config = config if config is not None else ToolboxConfig()
        self.root = os.path.abspath(os.path.expanduser(cache_dir if cache_dir is not None else self.config.cache_dir))
        self.transport = transport if transport is not None else HttpTransport(timeout=self.config.timeout)

        self._index_dir = os.path.join(self.root, 'index')
        self._blob_dir = os.path.join(self.root, 'blobs')
        self._file_dir = os.path.join(self.root, 'files')
        for directory in (self._index_dir, self._blob_dir, self._file_dir):
            os.makedirs(directory, exist_ok=True)

    # ------------------------------------------------------------------
    # Entry bookkeeping
    # ------------------------------------------------------------------

    def _sidecar_path(self, key: str) -> str:
        return os.path.join(self._index_dir, key_digest(key) + '.json')

    def _read_sidecar(self, sidecar_path: str) -> Optional[CacheEntry]:
        try:
            with open(sidecar_path, 'r') as f:
                record = json.load(f)
        except FileNotFoundError:
            return None
        return CacheEntry(key=record['key'],
                          path=os.path.join(self.root, record['path']),
                          created=record.get('created', 0.0))

    def _commit(self, key: str, payload_path: str) -> CacheEntry:
        entry = CacheEntry(key=key, path=payload_path, created=time.time())
        record = {
            'key': key,
            'path': os.path.relpath(payload_path, self.root),
            'created': entry.created,
        }
        data = json.dumps(record).encode('utf-8')
        _atomic_write(self._sidecar_path(key), lambda f: f.write(data))
        return entry

    def entry(self, key: str) -> Optional[CacheEntry]:
        """
        Look up the entry for a key.

        Returns:
            CacheEntry, or None if the key is not cached (or its payload
            was removed behind the cache's back)
        """
        entry = self._read_sidecar(self._sidecar_path(key))
        if entry is None or not os.path.exists(entry.path):
            return None
        return entry

    def exists(self, key: str) -> bool:
        """Check whether a key is cached without touching the network."""
        return self.entry(key) is not None

    def keys(self) -> List[str]:
        """List all cached keys."""
        result = []
        for name in sorted(os.listdir(self._index_dir)):
            if not name.endswith('.json'):
                continue
            entry = self._read_sidecar(os.path.join(self._index_dir, name))
            if entry is not None:
                result.append(entry.key)
        return result

    # ------------------------------------------------------------------
    # Fetching
    # ------------------------------------------------------------------

    def _with_retries(self, key: str, action, max_retries: Optional[int] = None):
        attempts = max(1, max_retries if max_retries is not None else self.config.max_retries)
        last_error = None
        for attempt in range(1, attempts + 1):
            try:
                return action()
            except (requests.RequestException, OSError) as e:
                last_error = e
                logger.warning(f"Attempt {attempt}/{attempts} for {key} failed: {e}")
        raise NetworkFailure(key, attempts) from last_error

    def fetch(self, key: str, max_retries: Optional[int] = None) -> bytes:
        """
        Return the payload for a key, downloading it on first use.

        Args:
            key: Normalized request URL (see make_key)
            max_retries: Attempts before giving up (default: config.max_retries)

        Returns:
            bytes: Payload, byte-identical on every call

        Raises:
            NetworkFailure: If the download failed on every attempt
        """
        entry = self.entry(key)
        if entry is None:
            entry = self._store_blob(key, max_retries)
        else:
            logger.debug(f"Cache hit: {key}")
        return entry.read_bytes()

    def _store_blob(self, key: str, max_retries: Optional[int]) -> CacheEntry:
        logger.debug(f"Cache miss, fetching: {key}")
        payload = self._with_retries(key, lambda: self.transport.get(key), max_retries)
        blob_path = os.path.join(self._blob_dir, key_digest(key))
        _atomic_write(blob_path, lambda f: f.write(payload))
        return self._commit(key, blob_path)

    def fetch_json(self, key: str, max_retries: Optional[int] = None):
        """Fetch a key and decode its payload as JSON."""
        return json.loads(self.fetch(key, max_retries).decode('utf-8'))

    def fetch_table(self, key: str, max_retries: Optional[int] = None) -> pd.DataFrame:
        """Fetch a key and parse its payload as a CSV table."""
        return pd.read_csv(io.BytesIO(self.fetch(key, max_retries)))

    def fetch_file(self, url: str, local_name: Optional[str] = None,
                   max_retries: Optional[int] = None) -> str:
        """
        Stream a (large) file into the cache and return its local path.

        Args:
            url: Download URL
            local_name: Relative file name under <root>/files
                (default: the URL digest)
            max_retries: Attempts before giving up

        Returns:
            str: Local path of the cached file

        Raises:
            NetworkFailure: If the download failed on every attempt
        """
        entry = self.entry(url)
        if entry is not None:
            return entry.path

        if self.config.show_progress:
            print(f"Downloading URL: [{url}]")

        file_path = os.path.join(self._file_dir, local_name or key_digest(url))
        self._with_retries(
            url,
            lambda: _atomic_write(file_path, lambda f: self.transport.download(url, f)),
            max_retries
        )
        return self._commit(url, file_path).path

    def fetch_many(self,
                   keys: Iterable[str],
                   parallel: bool = True,
                   max_retries: Optional[int] = None,
                   max_workers: Optional[int] = None,
                   local_names: Optional[Dict[str, str]] = None) -> BulkFetchResult:
        """
        Fetch a batch of keys, optionally across a bounded worker pool.

        Each key is retried independently. Keys present in local_names are
        streamed as files; others are stored as blobs.

        Args:
            keys: Keys to fetch (duplicates are fetched once)
            parallel: Fan out across worker threads (default: True)
            max_retries: Attempts per key (default: config.max_retries)
            max_workers: Worker threads (default: config.max_workers)
            local_names: Optional mapping key -> relative file name

        Returns:
            BulkFetchResult with the local path of every key

        Raises:
            BulkFetchError: If any key failed, after retries or with any other
                error. The error carries both the failed keys and the ones
                that succeeded.
        """
        unique_keys = list(dict.fromkeys(keys))
        local_names = local_names or {}
        result = BulkFetchResult()

        def _fetch_one(key: str) -> str:
            if key in local_names:
                return self.fetch_file(key, local_names[key], max_retries)
            entry = self.entry(key) or self._store_blob(key, max_retries)
            return entry.path

        progress = tqdm(total=len(unique_keys), desc='Caching files',
                        disable=not self.config.show_progress or len(unique_keys) == 0)
        try:
            if parallel and len(unique_keys) > 1:
                workers = max(1, min(max_workers or self.config.max_workers, len(unique_keys)))
                with ThreadPoolExecutor(max_workers=workers) as executor:
                    future_to_key = {executor.submit(_fetch_one, key): key for key in unique_keys}
                    for future in as_completed(future_to_key):
                        key = future_to_key[future]
                        try:
                            result.succeeded[key] = future.result()
                        except Exception as e:
                            result.failed[key] = e
                        progress.update(1)
            else:
                for key in unique_keys:
                    try:
                        result.succeeded[key] = _fetch_one(key)
                    except Exception as e:
                        result.failed[key] = e
                    progress.update(1)
        finally:
            progress.close()

        if result.failed:
            attempts = max_retries if max_retries is not None else self.config.max_retries
            raise BulkFetchError(result.failed, result.succeeded, attempts)
        return result

    # ------------------------------------------------------------------
    # Invalidation
    # ------------------------------------------------------------------

    def _remove_entry(self, sidecar_path: str, entry: CacheEntry) -> None:
        # Sidecar first so a crash never leaves a visible key without payload
        os.remove(sidecar_path)
        if os.path.exists(entry.path):
            os.remove(entry.path)

    def remove(self, key: str) -> bool:
        """
        Remove the entry for exactly this key.

        Returns:
            bool: True if an entry was removed
        """
        sidecar_path = self._sidecar_path(key)
        entry = self._read_sidecar(sidecar_path)
        if entry is None:
            return False
        self._remove_entry(sidecar_path, entry)
        logger.debug(f"Removed cache entry {key}")
        return True

    def invalidate(self, pattern: str) -> int:
        """
        Remove every entry whose key contains pattern.

        Args:
            pattern: Substring matched against each key

        Returns:
            int: Number of entries removed
        """
        removed = 0
        for name in os.listdir(self._index_dir):
            if not name.endswith('.json'):
                continue
            sidecar_path = os.path.join(self._index_dir, name)
            entry = self._read_sidecar(sidecar_path)
            if entry is None or pattern not in entry.key:
                continue
            self._remove_entry(sidecar_path, entry)
            removed += 1
        logger.info(f"Invalidated {removed} cache entries matching '{pattern}'")
        return removed

    def __repr__(self) -> str:
        return f"RemoteContentCache(root='{self.root}')"


_default_cache: Optional[RemoteContentCache] = None
_default_cache_lock = threading.Lock()


def default_cache(config: Optional[ToolboxConfig] = None) -> RemoteContentCache:
    """
    Return the process-wide cache, creating it on first use.

    Args:
        config: Config used only when the cache is first created

    Returns:
        RemoteContentCache shared by default-constructed components
    """
    global _default_cache
    with _default_cache_lock:
        if _default_cache is None:
            _default_cache = RemoteContentCache(config=config)
        return _default_cache


def reset_default_cache() -> None:
    """Forget the process-wide cache so the next default_cache() builds a new one."""
    global _default_cache
    with _default_cache_lock:
        _default_cache = None
