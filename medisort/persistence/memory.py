from collections import OrderedDict
from datetime import UTC, datetime, timedelta
from typing import NamedTuple

from medisort.helpers.config_models.cache import MemoryModel
from medisort.models.readiness import ReadinessEnum
from medisort.persistence.icache import ICache


class _Entry(NamedTuple):
    expires_at: datetime
    value: bytes | None


class MemoryCache(ICache):
    """
    In-process cache, lost on restart.

    Entries are kept in access order, the least recently used one is evicted when the cache is full.

    See: https://en.wikipedia.org/wiki/Cache_replacement_policies#Least_recently_used_(LRU)
    """

    _config: MemoryModel
    _entries: OrderedDict[str, _Entry]

    def __init__(self, config: MemoryModel):
        self._config = config
        self._entries = OrderedDict()

    async def readiness(self) -> ReadinessEnum:
        return ReadinessEnum.OK  # Always ready, it's memory :)

    async def get(self, key: str) -> bytes | None:
        """
        Get a value from the cache.

        If the key does not exist, is expired or is empty, return `None`.
        """
        entry = self._entries.get(key)
        if not entry:
            return None

        if entry.expires_at < datetime.now(UTC):
            del self._entries[key]
            return None

        # Most recently used is last
        self._entries.move_to_end(key)
        return entry.value or None

    async def set(
        self,
        key: str,
        ttl_sec: int,
        value: str | bytes | None,
    ) -> bool:
        if key not in self._entries and len(self._entries) >= self._config.max_size:
            self._entries.popitem(last=False)

        self._entries[key] = _Entry(
            expires_at=datetime.now(UTC) + timedelta(seconds=ttl_sec),
            value=value.encode() if isinstance(value, str) else value,
        )
        self._entries.move_to_end(key)
        return True

    async def delete(self, key: str) -> bool:
        self._entries.pop(key, None)
        return True

    async def delete_many(self, keys: list[str]) -> bool:
        """
        Delete multiple values from the cache.

        No await happens between the deletions, so no other task can observe a partial state.
        """
        for key in keys:
            self._entries.pop(key, None)
        return True
