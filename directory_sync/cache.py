"""
In-memory TTL caches for registry and remote directory objects.

Each ``EntityCache`` holds one population of objects keyed by an identifying
field. Staleness is tracked at two levels: every entry records when it was
inserted, and the cache as a whole records when it was last fully populated.
Reads never evict; callers use ``is_expired()`` to decide when to reseed.
"""

import time
import logging
from typing import Any, Callable, Dict, Iterable, Iterator, Optional, Set, Union

logger = logging.getLogger(__name__)


def remote_group_key(group: Dict[str, Any]) -> str:
    """Remote groups are keyed by their primary address."""
    return group['email']


def remote_user_key(user: Dict[str, Any]) -> str:
    """Remote users are keyed by their primary address."""
    return user['primaryEmail']


class CacheEntry:
    """A cached value and the time it was inserted."""

    def __init__(self, value: Any, inserted_at: float):
        self.value = value
        self.inserted_at = inserted_at

    def is_valid(self, now: float, validity_seconds: float) -> bool:
        return now - self.inserted_at < validity_seconds

    def __repr__(self):
        return f"CacheEntry({self.value!r}, inserted_at={self.inserted_at})"


class EntityCache:
    """
    Key/value cache for a single entity type.

    The key for a value is derived with ``key_func`` so ``put`` only needs the
    value itself.
    """

    def __init__(self, key_func: Callable[[Any], str], name: str = 'cache',
                 clock: Optional[Callable[[], float]] = None):
        """
        Initialize an empty cache.

        Args:
            key_func: Function returning the cache key for a value
            name: Label used in log messages
            clock: Time source in seconds (defaults to time.time)
        """
        self.name = name
        self._key_func = key_func
        self._clock = clock or time.time
        self._entries: Dict[str, CacheEntry] = {}
        self._cache_validity = 0.0
        self._populated_at: Optional[float] = None

    @property
    def cache_validity(self) -> float:
        """Validity window in seconds."""
        return self._cache_validity

    @property
    def populated_at(self) -> Optional[float]:
        return self._populated_at

    def set_cache_validity(self, minutes: float) -> 'EntityCache':
        """Set the validity window, in minutes. Must be called before first use."""
        if minutes < 0:
            raise ValueError(f"Cache validity for {self.name} cannot be negative: {minutes}")
        self._cache_validity = float(minutes) * 60
        return self

    def seed(self, values: Union[Iterable[Any], int]) -> None:
        """
        Fully populate the cache and reset its population time.

        Args:
            values: Objects to load, or an expected size to start an empty cache
        """
        now = self._clock()
        if isinstance(values, int):
            self._entries = {}
        else:
            self._entries = {self._key_func(value): CacheEntry(value, now) for value in values}
        self._populated_at = now
        logger.debug(f"Seeded {self.name} cache with {len(self._entries)} entries")

    def get(self, key: str) -> Optional[Any]:
        """Return the cached value for ``key`` regardless of its age, or None."""
        entry = self._entries.get(key)
        if entry is None:
            return None
        return entry.value

    def get_entry(self, key: str) -> Optional[CacheEntry]:
        return self._entries.get(key)

    def is_entry_valid(self, key: str) -> bool:
        """True if ``key`` is cached and its entry is younger than the validity window."""
        entry = self._entries.get(key)
        return entry is not None and entry.is_valid(self._clock(), self._cache_validity)

    def put(self, value: Any) -> str:
        """Insert or replace ``value`` under its derived key. Returns the key."""
        key = self._key_func(value)
        self._entries[key] = CacheEntry(value, self._clock())
        return key

    def remove(self, key: str) -> None:
        """Drop ``key`` if present."""
        self._entries.pop(key, None)

    def is_expired(self) -> bool:
        """True if the cache was never populated or the last full population is too old."""
        if self._populated_at is None:
            return True
        return self._clock() - self._populated_at >= self._cache_validity

    def keys(self) -> Iterator[str]:
        return iter(list(self._entries))

    def __contains__(self, key: str) -> bool:
        return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def __repr__(self):
        return f"EntityCache({self.name!r}, entries={len(self._entries)})"


class DirectoryCacheManager:
    """
    Owner of the remote group and user caches.

    One manager is created per process and handed to every connector, so all
    connectors talking to the same directory share the same caches. Connectors
    register themselves with ``attach`` so the sharing is visible.
    """

    def __init__(self, clock: Optional[Callable[[], float]] = None):
        self._groups = EntityCache(remote_group_key, name='remote groups', clock=clock)
        self._users = EntityCache(remote_user_key, name='remote users', clock=clock)
        self._consumers: Set[str] = set()

    @property
    def groups(self) -> EntityCache:
        return self._groups

    @property
    def users(self) -> EntityCache:
        return self._users

    @property
    def consumers(self) -> Set[str]:
        return set(self._consumers)

    def attach(self, consumer_name: str) -> None:
        if consumer_name in self._consumers:
            logger.debug(f"Connector '{consumer_name}' is already attached to the directory caches")
            return
        self._consumers.add(consumer_name)
        logger.debug(f"Connector '{consumer_name}' attached to the directory caches "
                     f"({len(self._consumers)} attached)")

    def detach(self, consumer_name: str) -> None:
        self._consumers.discard(consumer_name)
