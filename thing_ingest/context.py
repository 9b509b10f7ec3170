"""Contexto por mensaje/paquete: deadline y cancelación."""

from __future__ import annotations

import threading
import time
from typing import Optional

from .errors import DeadlineExceeded


class IngestContext:
    """Deadline + señal de cancelación para un mensaje o paquete.

    - La escritura primaria llama a check() y falla con DeadlineExceeded
      si el tiempo se agotó.
    - El fan-out (sinks y publicaciones) consulta `active` y se omite si
      el contexto fue cancelado o expiró.
    """

    def __init__(self, timeout: Optional[float] = None):
        self._deadline = time.monotonic() + timeout if timeout is not None else None
        self._cancelled = threading.Event()

    @classmethod
    def background(cls) -> "IngestContext":
        return cls(timeout=None)

    def cancel(self) -> None:
        self._cancelled.set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    @property
    def expired(self) -> bool:
        return self._deadline is not None and time.monotonic() >= self._deadline

    @property
    def active(self) -> bool:
        return not self.cancelled and not self.expired

    def remaining(self, default: Optional[float] = None) -> Optional[float]:
        """Segundos restantes, acotados por `default` si se indica."""
        if self._deadline is None:
            return default
        left = max(0.0, self._deadline - time.monotonic())
        if default is not None:
            return min(left, default)
        return left

    def check(self) -> None:
        if self.cancelled:
            raise DeadlineExceeded("Processing cancelled")
        if self.expired:
            raise DeadlineExceeded("Processing deadline exceeded")
