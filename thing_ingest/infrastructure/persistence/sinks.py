"""Sinks de mediciones sobre SQLAlchemy.

- TimescaleSink: tabla de series temporales (hypertable en TimescaleDB,
  tabla normal en cualquier otro dialecto).
- SqlRelationalSink: tabla relacional de lecturas (MySQL u otra URL).
- ThrottledRelationalSink: limita escrituras por Thing según
  `store_mysqldb_interval` del sensor.

Las escrituras son idempotentes: (thing, ts) es UNIQUE y reescribir la
misma fila se trata como éxito.
"""

from __future__ import annotations

import logging
import threading
import time
from datetime import datetime
from typing import Callable, Dict, Optional

from sqlalchemy import (
    Column,
    DateTime,
    Float,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    insert,
    text,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from ...core.domain.interfaces import MeasurementSink
from ...core.domain.thing import Thing
from ...errors import StorageError

logger = logging.getLogger(__name__)

TIMESERIES_TABLE = "thing_measurements"
RELATIONAL_TABLE = "sensor_readings"


def _measurement_table(name: str, metadata: MetaData) -> Table:
    return Table(
        name,
        metadata,
        Column("id", Integer, primary_key=True, autoincrement=True),
        Column("thing_name", String(255), nullable=False, index=True),
        Column("org_id", String(32), nullable=True),
        Column("ts", DateTime(timezone=True), nullable=False),
        Column("value", Text, nullable=False),
        # NULL si el valor no es numérico
        Column("value_num", Float, nullable=True),
        UniqueConstraint("thing_name", "ts", name=f"uq_{name}_thing_ts"),
    )


def _numeric(value: str) -> Optional[float]:
    try:
        return float(value)
    except ValueError:
        return None


class _SqlMeasurementSink(MeasurementSink):
    def __init__(self, engine: Engine, table_name: str):
        self._engine = engine
        self._metadata = MetaData()
        self._table = _measurement_table(table_name, self._metadata)

    @property
    def table(self) -> Table:
        return self._table

    def create_schema(self) -> None:
        try:
            self._metadata.create_all(self._engine)
        except SQLAlchemyError as e:
            raise StorageError(f"Could not create {self._table.name}: {e}") from e

    def write(self, thing: Thing, value: str, timestamp: datetime) -> None:
        try:
            with self._engine.begin() as conn:
                conn.execute(
                    insert(self._table).values(
                        thing_name=thing.name,
                        org_id=thing.org_id,
                        ts=timestamp,
                        value=value,
                        value_num=_numeric(value),
                    )
                )
        except IntegrityError:
            logger.debug("[SINK] %s already has thing=%s ts=%s", self.name, thing.name, timestamp)
        except SQLAlchemyError as e:
            raise StorageError(f"{self.name} write failed: {e}") from e


class TimescaleSink(_SqlMeasurementSink):
    name = "timeseries"

    def __init__(self, engine: Engine, table_name: str = TIMESERIES_TABLE):
        super().__init__(engine, table_name)

    def create_schema(self) -> None:
        super().create_schema()
        if self._engine.dialect.name != "postgresql":
            return
        try:
            with self._engine.begin() as conn:
                conn.execute(
                    text("SELECT create_hypertable(:table, 'ts', if_not_exists => TRUE, migrate_data => TRUE)"),
                    {"table": self._table.name},
                )
            logger.info("[SINK] Hypertable ready table=%s", self._table.name)
        except SQLAlchemyError as e:
            # PostgreSQL sin extensión TimescaleDB: tabla normal
            logger.warning("[SINK] Hypertable not created table=%s err=%s", self._table.name, e)


class SqlRelationalSink(_SqlMeasurementSink):
    name = "relational"

    def __init__(self, engine: Engine, table_name: str = RELATIONAL_TABLE):
        super().__init__(engine, table_name)


class ThrottledRelationalSink(MeasurementSink):
    """Sink con intervalo mínimo por Thing.

    El intervalo sale de `sensor.store_mysqldb_interval` (segundos);
    0 o Things que no son sensores escriben siempre.
    """

    def __init__(self, inner: MeasurementSink, *, clock: Callable[[], float] = time.time):
        self._inner = inner
        self._clock = clock
        self._last_written_by_thing: Dict[str, float] = {}
        self._lock = threading.Lock()
        self.name = inner.name

    def write(self, thing: Thing, value: str, timestamp: datetime) -> None:
        interval = thing.sensor.store_mysqldb_interval if thing.sensor is not None else 0
        now = self._clock()

        if interval > 0:
            with self._lock:
                last = self._last_written_by_thing.get(thing.name)
                if last is not None and now - last < interval:
                    logger.debug("[SINK] Throttled %s thing=%s", self.name, thing.name)
                    return

        self._inner.write(thing, value, timestamp)
        # Sólo se sella tras una escritura exitosa
        with self._lock:
            self._last_written_by_thing[thing.name] = now
