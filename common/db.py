from __future__ import annotations

import logging
from typing import Optional

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine

logger = logging.getLogger(__name__)


def _safe_url(url: str) -> str:
    # No exponer credenciales en logs
    return url.split("@")[-1]


def build_engine(url: str, *, timeout_seconds: float = 5.0) -> Engine:
    """Crea un engine SQLAlchemy con timeouts acotados.

    SQLite (tests / desarrollo) no acepta pool_size ni connect_timeout,
    así que sólo se configuran para backends de red.
    """
    if url.startswith("sqlite"):
        return create_engine(
            url,
            connect_args={"check_same_thread": False, "timeout": timeout_seconds},
            future=True,
        )

    return create_engine(
        url,
        pool_size=5,
        max_overflow=10,
        pool_pre_ping=True,
        pool_recycle=300,
        pool_timeout=timeout_seconds,
        connect_args={"connect_timeout": int(max(1, timeout_seconds))},
        future=True,
    )


def get_engine(url: Optional[str], *, timeout_seconds: float = 5.0) -> Optional[Engine]:
    """Crea el engine y hace un test de conexión.

    Returns:
        Engine si la URL está configurada, None si no.
    """
    if not url:
        return None

    logger.info("[DB] Crear engine url=%s", _safe_url(url))
    engine = build_engine(url, timeout_seconds=timeout_seconds)

    # Test de conexión: ayuda a ver en logs si el servicio realmente llega a la BD
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        logger.info("[DB] Test de conexión OK url=%s", _safe_url(url))
    except Exception:
        logger.exception("[DB] Test de conexión FALLÓ url=%s", _safe_url(url))

    return engine
