"""In-process TTL cache with copy-on-read semantics.

Entries expire a fixed time after insertion (not after last access).  Values
are deep-copied both when stored and when returned so callers never share
mutable state with the cache.
"""

import copy
import logging
import threading
import time

import cachetools

from bandrec.config import DEFAULT_CACHE_TTL

logger = logging.getLogger(__name__)

DEFAULT_MAXSIZE = 10000

_MISSING = object()


class TTLCache:
    """Thread-safe wrapper around :class:`cachetools.TTLCache`."""

    def __init__(self, ttl_seconds: int = DEFAULT_CACHE_TTL, clock=time.monotonic, name: str = 'cache',
                 maxsize: int = DEFAULT_MAXSIZE):
        self.ttl_seconds = ttl_seconds
        self.name = name
        self._entries = cachetools.TTLCache(maxsize=maxsize, ttl=ttl_seconds, timer=clock)
        # cachetools caches are not thread-safe
        self._lock = threading.Lock()

    def has(self, key: str) -> bool:
        with self._lock:
            return key in self._entries

    def get(self, key: str, default=None):
        with self._lock:
            value = self._entries.get(key, _MISSING)
        if value is _MISSING:
            return default
        return copy.deepcopy(value)

    def set(self, key: str, value) -> None:
        snapshot = copy.deepcopy(value)
        with self._lock:
            self._entries[key] = snapshot

    def get_or_load(self, key: str, loader):
        """Return the cached value for ``key`` or load, store and return it.

        The loader runs outside the lock; two concurrent misses may both load
        and the last write wins.  ``None`` results are not cached."""
        value = self.get(key, _MISSING)
        if value is not _MISSING:
            return value
        value = loader()
        if value is not None:
            self.set(key, value)
        return value

    def purge_all(self) -> None:
        with self._lock:
            self._entries.expire()
            count = len(self._entries)
            self._entries.clear()
        logger.info("Purged %d entries from %s", count, self.name)

    def __len__(self) -> int:
        with self._lock:
            self._entries.expire()
            return len(self._entries)


def admin_key(email: str) -> str:
    return f"admin:{email}"


def member_key(member_id: str) -> str:
    return f"member:{member_id}"


def project_key(requester_id: str, project_id: str) -> str:
    # The assembled view differs per requester (tokens are admin only)
    return f"project:{requester_id}:{project_id}"
