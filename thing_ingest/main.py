"""Aplicación FastAPI + cableado del núcleo de ingesta.

El lifespan construye los servicios desde Settings, arranca el receptor
MQTT y el barrido de disponibilidad, y los detiene en shutdown.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from prometheus_client import make_asgi_app

from common.config import Settings, get_settings
from common.db import build_engine, get_engine
from common.logging_setup import configure_logging

from . import __version__
from .core.domain.interfaces import BusClient
from .core.extraction.value_extractor import ValueExtractor
from .core.rate_guard import create_rate_guard
from .directory.store import ThingStore
from .directory.thing_directory import ThingDirectory
from .dispatch.dispatcher import AvailabilitySweeper, Dispatcher
from .endpoints import health_router, packet_ingest_router
from .endpoints.deps import IngestServices
from .errors import IngestError
from .infrastructure.persistence import (
    SqlRelationalSink,
    SqlThingStore,
    ThrottledRelationalSink,
    TimescaleSink,
)
from .locks import KeyedLocks
from .mqtt import (
    MessageService,
    MqttIngestReceiver,
    NullBusClient,
    PahoBusClient,
)
from .packets.processor import DevicePacketProcessor
from .routing.topic_router import TopicRouter

logger = logging.getLogger(__name__)

DEFAULT_PACKET_TIMEOUT = 10.0


class SweepLoop:
    """Hilo que ejecuta AvailabilitySweeper.sweep() periódicamente."""

    def __init__(self, sweeper: AvailabilitySweeper, interval_seconds: float):
        self._sweeper = sweeper
        self._interval = interval_seconds
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def start(self) -> None:
        self._thread = threading.Thread(target=self._run, daemon=True, name="piot-availability-sweep")
        self._thread.start()
        logger.info("[DISPATCH] Availability sweep every %.1fs", self._interval)

    def stop(self) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=5.0)

    def _run(self) -> None:
        while not self._stop_event.wait(self._interval):
            try:
                self._sweeper.sweep()
            except IngestError as e:
                logger.warning("[DISPATCH] Availability sweep failed: %s", e)
            except Exception:
                logger.exception("[DISPATCH] Availability sweep crashed")


def build_services(
    settings: Settings,
    *,
    store: Optional[ThingStore] = None,
    bus: Optional[BusClient] = None,
) -> IngestServices:
    """Construye el grafo de servicios a partir de la configuración."""
    closers = []

    if store is None:
        engine = build_engine(settings.database_url, timeout_seconds=settings.storage_timeout_seconds)
        sql_store = SqlThingStore(engine)
        sql_store.create_schema()
        store = sql_store
        closers.append(engine.dispose)

    timeseries_sink = None
    ts_engine = get_engine(settings.timeseries_url, timeout_seconds=settings.storage_timeout_seconds)
    if ts_engine is not None:
        timeseries_sink = TimescaleSink(ts_engine)
        timeseries_sink.create_schema()
        closers.append(ts_engine.dispose)

    relational_sink = None
    rel_engine = get_engine(settings.relational_url, timeout_seconds=settings.storage_timeout_seconds)
    if rel_engine is not None:
        inner = SqlRelationalSink(rel_engine)
        inner.create_schema()
        relational_sink = ThrottledRelationalSink(inner)
        closers.append(rel_engine.dispose)

    if bus is None:
        if settings.mqtt_enabled:
            bus = PahoBusClient(
                broker_host=settings.mqtt_broker_host,
                broker_port=settings.mqtt_broker_port,
                username=settings.mqtt_username,
                password=settings.mqtt_password,
            )
        else:
            bus = NullBusClient()

    directory = ThingDirectory(store)
    router = TopicRouter(directory)
    extractor = ValueExtractor()
    locks = KeyedLocks()
    executor = None
    if settings.sink_workers > 0:
        executor = ThreadPoolExecutor(max_workers=settings.sink_workers, thread_name_prefix="piot-sink")

    dispatcher = Dispatcher(
        directory,
        bus,
        timeseries_sink=timeseries_sink,
        relational_sink=relational_sink,
        locks=locks,
        extractor=extractor,
        executor=executor,
        publish_timeout=settings.publish_timeout_seconds,
    )
    rate_guard = create_rate_guard(
        settings.rate_guard_backend,
        window_seconds=settings.rate_guard_window_seconds,
        max_entries=settings.rate_guard_max_entries,
        redis_url=settings.redis_url,
    )
    processor = DevicePacketProcessor(rate_guard, directory, dispatcher)
    message_service = MessageService(router, dispatcher, extractor)

    receiver = None
    if settings.mqtt_enabled:
        receiver = MqttIngestReceiver(
            bus,
            message_service,
            subscribe_topic=settings.mqtt_subscribe_topic,
            num_workers=settings.ingest_workers,
            max_queue_size=settings.ingest_queue_size,
        )

    return IngestServices(
        directory=directory,
        rate_guard=rate_guard,
        bus=bus,
        dispatcher=dispatcher,
        processor=processor,
        message_service=message_service,
        sweeper=AvailabilitySweeper(dispatcher, directory),
        receiver=receiver,
        packet_timeout=DEFAULT_PACKET_TIMEOUT,
        executor=executor,
        closers=closers,
    )


def create_app(services: Optional[IngestServices] = None) -> FastAPI:
    """Crea la app. Con `services` se usa ese grafo (tests) sin arrancar nada."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if services is not None:
            app.state.services = services
            yield
            return

        settings = get_settings()
        configure_logging(settings.log_level)
        built = build_services(settings)
        app.state.services = built

        sweep_loop = None
        if settings.availability_sweep_seconds > 0:
            sweep_loop = SweepLoop(built.sweeper, settings.availability_sweep_seconds)
            sweep_loop.start()

        bus = built.bus
        if isinstance(bus, PahoBusClient):
            bus.start()
        if built.receiver is not None:
            built.receiver.start()

        logger.info("[APP] piot ingest %s started", __version__)
        try:
            yield
        finally:
            if built.receiver is not None:
                built.receiver.stop()
            if isinstance(bus, PahoBusClient):
                bus.stop()
            if sweep_loop is not None:
                sweep_loop.stop()
            if built.executor is not None:
                built.executor.shutdown(wait=True)
            for close in built.closers:
                close()
            logger.info("[APP] piot ingest stopped")

    app = FastAPI(title="PIOT Ingest Service", version=__version__, lifespan=lifespan)
    if services is not None:
        app.state.services = services
    app.include_router(health_router)
    app.include_router(packet_ingest_router)
    app.mount("/metrics", make_asgi_app())
    return app


app = create_app()
