"""Pool de workers particionado por topic.

El hilo de red de paho sólo encola y vuelve. Cada topic se asigna por
hash a un único worker con su propia cola acotada, así los mensajes de un
mismo topic se procesan en orden de llegada aunque haya varios workers.
Una cola llena descarta el mensaje en lugar de bloquear el loop de red.
"""

from __future__ import annotations

import logging
import queue
import threading
import zlib
from dataclasses import dataclass
from typing import Callable, List, Optional, Tuple

from ..metrics import MESSAGES_TOTAL

logger = logging.getLogger(__name__)

DEFAULT_QUEUE_SIZE = 1000
DEFAULT_NUM_WORKERS = 4

Job = Tuple[str, bytes]


@dataclass
class _Shard:
    jobs: "queue.Queue[Job]"
    thread: Optional[threading.Thread] = None
    processed: int = 0
    errors: int = 0


class AsyncMessageProcessor:
    """Colas por shard + un hilo por shard para mensajes (topic, payload).

    `max_queue_size` es la capacidad total, repartida entre los shards.
    """

    def __init__(
        self,
        handle: Callable[[str, bytes], None],
        max_queue_size: int = DEFAULT_QUEUE_SIZE,
        num_workers: int = DEFAULT_NUM_WORKERS,
    ):
        if num_workers <= 0:
            raise ValueError("num_workers must be positive")
        self._handle = handle
        per_shard = max(1, max_queue_size // num_workers)
        self._shards: List[_Shard] = [_Shard(jobs=queue.Queue(maxsize=per_shard)) for _ in range(num_workers)]
        self._stop_event = threading.Event()
        self._lock = threading.Lock()
        self._enqueued = 0
        self._dropped = 0

    def shard_for(self, topic: str) -> int:
        return zlib.crc32(topic.encode("utf-8")) % len(self._shards)

    def start(self) -> None:
        self._stop_event.clear()
        for index, shard in enumerate(self._shards):
            shard.thread = threading.Thread(
                target=self._run_shard,
                args=(index, shard),
                daemon=True,
                name=f"piot-mqtt-worker-{index}",
            )
            shard.thread.start()
        logger.info(
            "[ASYNC_PROC] Started shards=%d queue_per_shard=%d",
            len(self._shards), self._shards[0].jobs.maxsize,
        )

    def stop(self, drain: bool = True) -> None:
        """Detiene los workers; con drain=True procesa antes lo pendiente."""
        if drain:
            for shard in self._shards:
                shard.jobs.join()
        self._stop_event.set()
        for shard in self._shards:
            if shard.thread is not None:
                shard.thread.join(timeout=5.0)
                shard.thread = None
        logger.info("[ASYNC_PROC] Stopped. %s", self.metrics)

    def enqueue(self, topic: str, payload: bytes) -> bool:
        """Encola en el shard del topic. False si esa cola está llena."""
        shard = self._shards[self.shard_for(topic)]
        try:
            shard.jobs.put_nowait((topic, payload))
        except queue.Full:
            with self._lock:
                self._dropped += 1
            MESSAGES_TOTAL.labels(result="dropped").inc()
            logger.warning("[ASYNC_PROC] Shard queue full, dropped topic=%s", topic)
            return False
        with self._lock:
            self._enqueued += 1
        return True

    def _run_shard(self, index: int, shard: _Shard) -> None:
        while not self._stop_event.is_set():
            try:
                topic, payload = shard.jobs.get(timeout=0.5)
            except queue.Empty:
                continue

            try:
                self._handle(topic, payload)
                with self._lock:
                    shard.processed += 1
            except Exception:
                with self._lock:
                    shard.errors += 1
                logger.exception("[ASYNC_PROC] Shard %d failed topic=%s", index, topic)
            finally:
                shard.jobs.task_done()

    @property
    def metrics(self) -> dict:
        with self._lock:
            return {
                "shards": len(self._shards),
                "queue_depth": sum(s.jobs.qsize() for s in self._shards),
                "enqueued": self._enqueued,
                "dropped": self._dropped,
                "processed": sum(s.processed for s in self._shards),
                "errors": sum(s.errors for s in self._shards),
            }
