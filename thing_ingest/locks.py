"""Exclusión mutua por nombre (Thing / dispositivo) con locks fragmentados."""

from __future__ import annotations

import threading
import zlib
from contextlib import contextmanager
from typing import Iterator

DEFAULT_SHARDS = 64


class KeyedLocks:
    """Pool fijo de locks; cada clave cae siempre en el mismo shard.

    Dos claves distintas pueden compartir shard, por eso los locks son
    reentrantes y los llamadores nunca sostienen dos claves a la vez.
    """

    def __init__(self, shards: int = DEFAULT_SHARDS):
        if shards < 1:
            raise ValueError("shards must be >= 1")
        self._locks = [threading.RLock() for _ in range(shards)]

    def _shard(self, key: str) -> int:
        return zlib.crc32(key.encode("utf-8")) % len(self._locks)

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        lock = self._locks[self._shard(key)]
        with lock:
            yield

    @property
    def shards(self) -> int:
        return len(self._locks)
