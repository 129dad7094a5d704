"""Content-hash caches with a time-to-live.

``TieredCache`` keeps recent entries in memory and, when a persistent
``KeyValueStore`` is supplied, mirrors writes to it and consults it on memory
misses. Backend failures surface as ``CacheError``, which the cache logs and
treats as a miss. Writes are last
write wins.
"""

from __future__ import annotations
import copy
import hashlib
import logging
import time
from collections import OrderedDict
from typing import Any, Callable, Dict, Optional, Protocol, Tuple

import numpy as np
from PIL import Image

from .errors import CacheError
from .metrics import record_cache_lookup

DAY_SECONDS = 24 * 60 * 60

logger = logging.getLogger(__name__)


class KeyValueStore(Protocol):
    """Async key-value store used as the persistent cache tier."""

    async def get(self, key: str) -> Optional[Any]:
        ...

    async def put(self, key: str, value: Any, ttl: float) -> None:
        ...


class MemoryStore:
    """In-process ``KeyValueStore``; entries expire after their ttl."""

    def __init__(self, clock: Callable[[], float] = time.time):
        self._data: Dict[str, Tuple[float, Any]] = {}
        self._clock = clock

    async def get(self, key: str) -> Optional[Any]:
        item = self._data.get(key)
        if item is None:
            return None
        expires, value = item
        if self._clock() >= expires:
            self._data.pop(key, None)
            return None
        return copy.deepcopy(value)

    async def put(self, key: str, value: Any, ttl: float) -> None:
        self._data[key] = (self._clock() + ttl, copy.deepcopy(value))

    def __len__(self) -> int:
        return len(self._data)


class TieredCache:
    """Bounded in-memory cache in front of an optional persistent store."""

    def __init__(
        self,
        name: str,
        ttl: float = DAY_SECONDS,
        maxsize: int = 500,
        backend: Optional[KeyValueStore] = None,
        clock: Callable[[], float] = time.time,
    ):
        """Initializes the cache.

        Args:
            name: Label used in logs and metrics.
            ttl: Seconds after creation at which an entry expires.
            maxsize: Memory tier capacity; the oldest entry is evicted first.
            backend: Optional persistent tier.
            clock: Time source, in seconds.
        """
        self.name = name
        self.ttl = ttl
        self.maxsize = maxsize
        self.backend = backend
        self._clock = clock
        self._entries: "OrderedDict[str, Tuple[float, Any]]" = OrderedDict()

    def _fresh(self, created: float) -> bool:
        return self._clock() - created < self.ttl

    async def get(self, key: str) -> Optional[Any]:
        """Returns the cached value for ``key`` or None when missing/expired."""
        item = self._entries.get(key)
        if item is not None:
            created, value = item
            if self._fresh(created):
                record_cache_lookup(self.name, True)
                return copy.deepcopy(value)
            self._entries.pop(key, None)
        value = await self._backend_get(key)
        record_cache_lookup(self.name, value is not None)
        return value

    async def _backend_get(self, key: str) -> Optional[Any]:
        if self.backend is None:
            return None
        try:
            stored = await self._backend_read(key)
        except CacheError as e:
            logger.warning(str(e))
            return None
        if not isinstance(stored, dict) or "created" not in stored:
            return None
        if not self._fresh(stored["created"]):
            return None
        self._remember(key, stored["created"], stored["value"])
        return copy.deepcopy(stored["value"])

    async def _backend_read(self, key: str) -> Any:
        try:
            return await self.backend.get(key)
        except Exception as e:
            raise CacheError(f"[{self.name}] cache backend read failed: {e}") from e

    async def _backend_write(self, key: str, entry: Dict[str, Any]) -> None:
        try:
            await self.backend.put(key, entry, self.ttl)
        except Exception as e:
            raise CacheError(f"[{self.name}] cache backend write failed: {e}") from e

    def _remember(self, key: str, created: float, value: Any) -> None:
        self._entries[key] = (created, copy.deepcopy(value))
        self._entries.move_to_end(key)
        while len(self._entries) > self.maxsize:
            self._entries.popitem(last=False)

    async def put(self, key: str, value: Any) -> None:
        """Stores ``value`` under ``key`` in both tiers."""
        created = self._clock()
        self._remember(key, created, value)
        if self.backend is None:
            return
        try:
            await self._backend_write(key, {"created": created, "value": value})
        except CacheError as e:
            logger.warning(str(e))

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        item = self._entries.get(key)
        return item is not None and self._fresh(item[0])


def text_hash(text: str, salt: str = "") -> str:
    """Cache key for a message: sha256 of the trimmed, lower-cased text.

    ``salt`` namespaces the key, e.g. by the rule set that produced the verdict.
    """
    digest = hashlib.sha256(salt.encode("utf-8"))
    digest.update(text.strip().lower().encode("utf-8"))
    return digest.hexdigest()


def image_content_hash(pixels: np.ndarray, side: int = 32) -> str:
    """Cache key for an image.

    Hashes a ``side`` x ``side`` RGB downsample together with the original
    dimensions, so identical pixel buffers always map to the same key.
    """
    h, w = pixels.shape[:2]
    small = Image.fromarray(pixels).resize((side, side), Image.Resampling.BOX)
    digest = hashlib.sha256()
    digest.update(f"{w}x{h}".encode("ascii"))
    digest.update(np.asarray(small, dtype=np.uint8).tobytes())
    return digest.hexdigest()
