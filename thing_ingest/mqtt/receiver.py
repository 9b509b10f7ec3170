"""Receptor MQTT de ingesta.

Se suscribe al comodín de orgs (`org/#`) y entrega cada mensaje a
MessageService.process_message. Ningún fallo de un mensaje detiene el
camino de ingesta: se registra, se cuenta y se continúa.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Optional

from ..context import IngestContext
from ..core.domain.interfaces import BusClient
from ..errors import IngestError
from .async_processor import DEFAULT_QUEUE_SIZE, AsyncMessageProcessor
from .message_service import MessageService

logger = logging.getLogger(__name__)

DEFAULT_SUBSCRIBE_TOPIC = "org/#"
DEFAULT_MESSAGE_TIMEOUT = 10.0


class ReceiverStats:
    """Estadísticas del receptor."""

    def __init__(self):
        self.received = 0
        self.processed = 0
        self.unmatched = 0
        self.failed = 0
        self.last_message_at: float = 0

    def __str__(self) -> str:
        return (
            f"Stats: received={self.received} processed={self.processed} "
            f"unmatched={self.unmatched} failed={self.failed}"
        )

    def to_dict(self) -> dict:
        return {
            "received": self.received,
            "processed": self.processed,
            "unmatched": self.unmatched,
            "failed": self.failed,
            "last_message_at": self.last_message_at,
        }


class MqttIngestReceiver:
    def __init__(
        self,
        bus: BusClient,
        service: MessageService,
        *,
        subscribe_topic: str = DEFAULT_SUBSCRIBE_TOPIC,
        message_timeout: Optional[float] = DEFAULT_MESSAGE_TIMEOUT,
        num_workers: int = 0,
        max_queue_size: int = DEFAULT_QUEUE_SIZE,
    ):
        self._bus = bus
        self._service = service
        self._subscribe_topic = subscribe_topic
        self._message_timeout = message_timeout
        # num_workers=0: procesamiento síncrono en el hilo de paho
        self._async: Optional[AsyncMessageProcessor] = None
        if num_workers > 0:
            self._async = AsyncMessageProcessor(
                self.handle_message,
                max_queue_size=max_queue_size,
                num_workers=num_workers,
            )
        self._running = False

        self._stats = ReceiverStats()
        self._stats_lock = threading.Lock()

    def start(self) -> None:
        if self._async is not None:
            self._async.start()
        self._bus.subscribe(self._subscribe_topic, self._on_message)
        self._running = True
        logger.info("[MQTT] Ingest receiver listening on %s", self._subscribe_topic)

    def stop(self) -> None:
        self._running = False
        if self._async is not None:
            self._async.stop(drain=True)
        logger.info("[MQTT] Ingest receiver stopped. %s", self._stats)

    def _on_message(self, topic: str, payload: bytes) -> None:
        with self._stats_lock:
            self._stats.received += 1
            self._stats.last_message_at = time.time()

        if self._async is not None:
            self._async.enqueue(topic, payload)
        else:
            self.handle_message(topic, payload)

    def handle_message(self, topic: str, payload: bytes) -> None:
        """Procesa un mensaje capturando cualquier error."""
        ctx = IngestContext(timeout=self._message_timeout)
        try:
            results = self._service.process_message(ctx, topic, payload)
        except IngestError as e:
            self._count("failed")
            logger.warning("[MQTT] Message failed topic=%s err=%s", topic, e)
            return
        except Exception as e:
            self._count("failed")
            logger.exception("[MQTT] Processing error topic=%s: %s", topic, e)
            return

        if results:
            self._count("processed")
        else:
            self._count("unmatched")

    def _count(self, field: str) -> None:
        with self._stats_lock:
            setattr(self._stats, field, getattr(self._stats, field) + 1)
            processed = self._stats.processed
        if field == "processed" and processed % 100 == 0:
            logger.info("[MQTT] %s", self._stats)

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def stats(self) -> dict:
        with self._stats_lock:
            data = self._stats.to_dict()
        data.update({
            "running": self._running,
            "connected": self._bus.is_connected(),
            "subscribe_topic": self._subscribe_topic,
        })
        if self._async is not None:
            data["queue"] = self._async.metrics
        return data
