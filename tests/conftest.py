"""Fixtures compartidas: store en memoria, bus y sinks que registran llamadas,
reloj controlable y servicios cableados como en producción."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional, Set

import pytest

from thing_ingest.core.domain import BusClient, MeasurementSink, Org, Thing, ThingType
from thing_ingest.core.rate_guard import InMemoryRateGuard
from thing_ingest.directory import InMemoryThingStore, ThingDirectory
from thing_ingest.dispatch import Dispatcher
from thing_ingest.errors import PublishError, StorageError
from thing_ingest.locks import KeyedLocks
from thing_ingest.mqtt.message_service import MessageService
from thing_ingest.packets import DevicePacketProcessor
from thing_ingest.routing import TopicRouter

T0 = 1_700_000_000.0


# =============================================================================
# DOBLES DE PRUEBA
# =============================================================================

class FakeClock:
    def __init__(self, now: float = T0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@dataclass
class PublishCall:
    topic: str
    payload: str
    thing_name: Optional[str]


class RecordingBus(BusClient):
    """Bus que registra publicaciones; `fail_topics` fuerza PublishError."""

    def __init__(self):
        self.calls: List[PublishCall] = []
        self.handlers: Dict[str, Any] = {}
        self.fail_topics: Set[str] = set()

    def subscribe(self, pattern, handler):
        self.handlers[pattern] = handler

    def publish(self, topic, payload, *, thing=None, timeout=None):
        if topic in self.fail_topics:
            raise PublishError(f"broker rejected {topic}")
        self.calls.append(PublishCall(topic, payload, thing.name if thing is not None else None))

    def is_connected(self):
        return True

    def pairs(self):
        return [(c.topic, c.payload) for c in self.calls]


@dataclass
class SinkCall:
    thing_name: str
    value: str
    timestamp: datetime


class RecordingSink(MeasurementSink):
    def __init__(self, name: str):
        self.name = name
        self.calls: List[SinkCall] = []
        self.fail = False

    def write(self, thing, value, timestamp):
        if self.fail:
            raise StorageError(f"{self.name} unavailable")
        self.calls.append(SinkCall(thing.name, value, timestamp))


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store() -> InMemoryThingStore:
    return InMemoryThingStore()


@pytest.fixture
def directory(store, clock) -> ThingDirectory:
    return ThingDirectory(store, clock=clock)


@pytest.fixture
def bus() -> RecordingBus:
    return RecordingBus()


@pytest.fixture
def timeseries_sink() -> RecordingSink:
    return RecordingSink("timeseries")


@pytest.fixture
def relational_sink() -> RecordingSink:
    return RecordingSink("relational")


@pytest.fixture
def dispatcher(directory, bus, timeseries_sink, relational_sink, clock) -> Dispatcher:
    return Dispatcher(
        directory,
        bus,
        timeseries_sink=timeseries_sink,
        relational_sink=relational_sink,
        locks=KeyedLocks(shards=8),
        clock=clock,
    )


@pytest.fixture
def router(directory) -> TopicRouter:
    return TopicRouter(directory)


@pytest.fixture
def message_service(router, dispatcher) -> MessageService:
    return MessageService(router, dispatcher)


@pytest.fixture
def rate_guard() -> InMemoryRateGuard:
    return InMemoryRateGuard(window_seconds=5.0, max_entries=100)


@pytest.fixture
def processor(rate_guard, directory, dispatcher, clock) -> DevicePacketProcessor:
    return DevicePacketProcessor(rate_guard, directory, dispatcher, clock=clock)


# =============================================================================
# HELPERS DE DATOS
# =============================================================================

@pytest.fixture
def make_org(store):
    def _make(name: str) -> str:
        return store.insert_org(Org(name=name)).id
    return _make


@pytest.fixture
def make_sensor(store):
    """Sensor de temperatura con ambos sinks habilitados."""
    def _make(name: str, org_id: Optional[str] = None, **sensor_fields) -> Thing:
        doc: Dict[str, Any] = {
            "name": name,
            "type": ThingType.SENSOR.value,
            "enabled": True,
            "org_id": org_id,
            "sensor": {
                "class": "temperature",
                "measurement_topic": "value",
                "store_influxdb": True,
                "store_mysqldb": True,
            },
        }
        doc["sensor"].update(sensor_fields)
        return store.insert(Thing.from_document(doc))
    return _make


@pytest.fixture
def make_switch(store):
    def _make(name: str, org_id: Optional[str] = None) -> Thing:
        doc = {
            "name": name,
            "type": ThingType.SWITCH.value,
            "enabled": True,
            "org_id": org_id,
            "switch": {
                "state_topic": "state",
                "state_on": "ON",
                "state_off": "OFF",
                "command_topic": "cmnd",
                "command_on": "ON",
                "command_off": "OFF",
                "store_influxdb": True,
            },
        }
        return store.insert(Thing.from_document(doc))
    return _make


@pytest.fixture
def make_device(store):
    def _make(name: str, org_id: Optional[str] = None, **fields) -> Thing:
        doc: Dict[str, Any] = {
            "name": name,
            "type": ThingType.DEVICE.value,
            "enabled": True,
            "org_id": org_id,
            "availability_topic": "available",
            "availability_yes": "yes",
            "availability_no": "no",
        }
        doc.update(fields)
        return store.insert(Thing.from_document(doc))
    return _make
