"""Abstract interfaces for the external collaborators of the core.

This decouples ingestion from concrete adapters: any time-series store,
relational store or bus client can implement these.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Callable, Optional

from .thing import Thing

MessageHandler = Callable[[str, bytes], None]


class MeasurementSink(ABC):
    """Destination for (thing, value, timestamp) tuples.

    Implementations:
    - TimescaleSink: time-series hypertable
    - SqlRelationalSink: relational table
    - ThrottledRelationalSink: per-thing write interval wrapper
    """

    name: str = "sink"

    @abstractmethod
    def write(self, thing: Thing, value: str, timestamp: datetime) -> None:
        """Persist one value. Raises StorageError on failure.

        Writes must be idempotent for the same (thing, timestamp, value).
        """


class BusClient(ABC):
    """Publish/subscribe bus (MQTT).

    Only topic strings and payload encodings are prescribed here; transport
    and reconnect handling belong to the implementation.
    """

    @abstractmethod
    def subscribe(self, pattern: str, handler: MessageHandler) -> None:
        pass

    @abstractmethod
    def publish(
        self,
        topic: str,
        payload: str,
        *,
        thing: Optional[Thing] = None,
        timeout: Optional[float] = None,
    ) -> None:
        """Publish a payload. Raises PublishError on failure.

        `thing` identifies the endpoint the message is addressed to.
        """

    @abstractmethod
    def is_connected(self) -> bool:
        pass
