"""RateGuard: antirebote por dispositivo para pushes de paquetes.

Admite un paquete si no hay entrada previa para la clave o si
`now - last_accepted >= window`. La comprobación y el sellado del nuevo
timestamp son un único paso atómico por clave (check-and-set), así dos
duplicados casi simultáneos nunca se admiten ambos.

Implementaciones:
- InMemoryRateGuard: por proceso, LRU acotado (MAX entries) en lugar del
  mapa global sin límite.
- RedisRateGuard: compartido entre réplicas, check-and-set en un script Lua.
"""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from collections import OrderedDict
from typing import Optional

import redis

from ..errors import StorageError

logger = logging.getLogger(__name__)

DEFAULT_WINDOW_SECONDS = 5.0
DEFAULT_MAX_ENTRIES = 10000


class RateGuard(ABC):
    """Interface: Admit(key, now) -> bool."""

    @abstractmethod
    def admit(self, key: str, now: float) -> bool:
        """True si el paquete se admite (y queda sellado), False si es duplicado."""

    @property
    @abstractmethod
    def window_seconds(self) -> float:
        pass

    @property
    def stats(self) -> dict:
        return {}


class InMemoryRateGuard(RateGuard):
    """RateGuard en memoria con tamaño acotado.

    Al superar `max_entries` se desaloja la clave admitida hace más tiempo.
    """

    def __init__(
        self,
        window_seconds: float = DEFAULT_WINDOW_SECONDS,
        max_entries: int = DEFAULT_MAX_ENTRIES,
    ):
        if window_seconds < 0:
            raise ValueError("window_seconds must be >= 0")
        if max_entries < 1:
            raise ValueError("max_entries must be >= 1")
        self._window = float(window_seconds)
        self._max_entries = max_entries
        self._lock = threading.Lock()
        self._last_accepted: "OrderedDict[str, float]" = OrderedDict()

        # Stats
        self._admitted = 0
        self._rejected = 0
        self._evicted = 0

    @property
    def window_seconds(self) -> float:
        return self._window

    def admit(self, key: str, now: float) -> bool:
        with self._lock:
            last = self._last_accepted.get(key)
            if last is not None and now - last < self._window:
                self._rejected += 1
                logger.debug("[RATE_GUARD] Rejected key=%s elapsed=%.3fs", key, now - last)
                return False

            self._last_accepted[key] = now
            self._last_accepted.move_to_end(key)
            while len(self._last_accepted) > self._max_entries:
                self._last_accepted.popitem(last=False)
                self._evicted += 1
            self._admitted += 1
            return True

    def __len__(self) -> int:
        with self._lock:
            return len(self._last_accepted)

    @property
    def stats(self) -> dict:
        with self._lock:
            return {
                "backend": "memory",
                "window_seconds": self._window,
                "size": len(self._last_accepted),
                "max_entries": self._max_entries,
                "admitted": self._admitted,
                "rejected": self._rejected,
                "evicted": self._evicted,
            }


class RedisRateGuard(RateGuard):
    """RateGuard compartido entre réplicas sobre Redis.

    Un script Lua hace el check-and-set en el servidor de forma atómica:
    compara `now` con el timestamp guardado igual que la implementación
    en memoria y, si admite, sella `now` con expiración de la ventana.
    La expiración sólo limpia claves viejas; la decisión depende de `now`.
    """

    KEY_PREFIX = "piot:rate_guard:"

    ADMIT_SCRIPT = """
local last = redis.call('GET', KEYS[1])
if last and (tonumber(ARGV[1]) - tonumber(last)) < tonumber(ARGV[2]) then
    return 0
end
redis.call('SET', KEYS[1], ARGV[1], 'PX', ARGV[3])
return 1
"""

    def __init__(
        self,
        client: "redis.Redis",
        window_seconds: float = DEFAULT_WINDOW_SECONDS,
    ):
        if window_seconds <= 0:
            raise ValueError("window_seconds must be > 0 for RedisRateGuard")
        self._redis = client
        self._window = float(window_seconds)
        self._admit_script = client.register_script(self.ADMIT_SCRIPT)
        self._admitted = 0
        self._rejected = 0

    @property
    def window_seconds(self) -> float:
        return self._window

    def admit(self, key: str, now: float) -> bool:
        redis_key = f"{self.KEY_PREFIX}{key}"
        try:
            result = self._admit_script(
                keys=[redis_key],
                args=[repr(now), repr(self._window), max(1, int(self._window * 1000))],
            )
        except redis.RedisError as e:
            logger.warning("[RATE_GUARD] redis_error key=%s err=%s", key, e)
            raise StorageError(f"Rate guard unavailable: {e}") from e

        if not result:
            self._rejected += 1
            logger.debug("[RATE_GUARD] Rejected key=%s", key)
            return False

        self._admitted += 1
        return True

    @property
    def stats(self) -> dict:
        return {
            "backend": "redis",
            "window_seconds": self._window,
            "admitted": self._admitted,
            "rejected": self._rejected,
        }


def create_rate_guard(
    backend: str,
    *,
    window_seconds: float,
    max_entries: int = DEFAULT_MAX_ENTRIES,
    redis_url: Optional[str] = None,
) -> RateGuard:
    """Factory: crea el RateGuard según configuración."""
    if backend == "redis":
        client = redis.Redis.from_url(
            redis_url or "redis://localhost:6379/0",
            decode_responses=False,
            socket_timeout=5.0,
            socket_connect_timeout=5.0,
        )
        logger.info("[RATE_GUARD] backend=redis window=%.2fs", window_seconds)
        return RedisRateGuard(client, window_seconds=window_seconds)

    if backend != "memory":
        logger.warning("[RATE_GUARD] Unknown backend=%s, using memory", backend)
    logger.info(
        "[RATE_GUARD] backend=memory window=%.2fs max_entries=%d",
        window_seconds, max_entries,
    )
    return InMemoryRateGuard(window_seconds=window_seconds, max_entries=max_entries)
