"""Módulo de endpoints HTTP."""

from .health import router as health_router
from .packet_ingest import router as packet_ingest_router

__all__ = [
    "health_router",
    "packet_ingest_router",
]
