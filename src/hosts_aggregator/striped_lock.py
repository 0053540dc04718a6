"""
Striped lock module for the hosts aggregator.

Serializes host-store mutations per normalized domain without one lock per
key: each key hashes onto a fixed shard of asyncio locks, so merges of
different domains proceed independently while two merges of the same domain
never interleave.
"""

import asyncio
import zlib
from contextlib import asynccontextmanager
from typing import AsyncIterator


class StripedLock:
    """
    Fixed pool of asyncio locks addressed by key hash.

    Usage:
        async with striped_lock.acquire(normalized):
            # mutate the host keyed by ``normalized``
    """

    DEFAULT_STRIPES = 64

    def __init__(self, stripes: int = DEFAULT_STRIPES) -> None:
        if stripes < 1:
            raise ValueError("stripes must be at least 1")
        self._locks = [asyncio.Lock() for _ in range(stripes)]
        self._acquisitions = 0
        self._contended = 0

    @property
    def stripes(self) -> int:
        return len(self._locks)

    @property
    def acquisitions(self) -> int:
        return self._acquisitions

    @property
    def contended(self) -> int:
        """Number of acquisitions that had to wait for another holder."""
        return self._contended

    def stripe_for(self, key: str) -> int:
        # crc32 is stable across processes, unlike hash()
        return zlib.crc32(key.encode("utf-8")) % len(self._locks)

    @asynccontextmanager
    async def acquire(self, key: str) -> AsyncIterator[int]:
        """
        Hold the shard lock for ``key`` for the duration of the block.

        Yields:
            Index of the shard that is held
        """
        index = self.stripe_for(key)
        lock = self._locks[index]
        if lock.locked():
            self._contended += 1
        async with lock:
            self._acquisitions += 1
            yield index
