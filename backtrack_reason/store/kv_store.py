"""Key-value store contract for persisted state stacks.

The engine never owns durable storage.  Hosts inject any object that
satisfies KeyValueStore; InMemoryKeyValueStore covers tests and
single-process sessions.

Design notes:
    - An asyncio.Lock guards all mutations so concurrent runs sharing one
      store never observe a half-written entry.
    - Values are opaque bytes; serialisation belongs to the caller.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Protocol, runtime_checkable

from backtrack_reason.domain.errors import NotFoundError

logger = logging.getLogger(__name__)


@runtime_checkable
class KeyValueStore(Protocol):
    """Minimal async persistence contract."""

    async def put(self, key: str, data: bytes) -> None: ...

    async def get(self, key: str) -> bytes:
        """Return the bytes stored under *key* or raise NotFoundError."""
        ...

    async def delete(self, key: str) -> None: ...


class InMemoryKeyValueStore:
    """Process-local KeyValueStore backed by a dict."""

    def __init__(self) -> None:
        self._data: dict[str, bytes] = {}
        self._lock = asyncio.Lock()

    async def put(self, key: str, data: bytes) -> None:
        async with self._lock:
            self._data[key] = bytes(data)
        logger.debug("Stored %d bytes under %s", len(data), key)

    async def get(self, key: str) -> bytes:
        async with self._lock:
            try:
                return self._data[key]
            except KeyError:
                raise NotFoundError(key) from None

    async def delete(self, key: str) -> None:
        async with self._lock:
            self._data.pop(key, None)

    async def keys(self) -> list[str]:
        async with self._lock:
            return sorted(self._data)

    async def count(self) -> int:
        async with self._lock:
            return len(self._data)
