"""Procesamiento de paquetes push de dispositivos.

Máquina de estados por paquete:

    Received → RateChecked → DeviceResolved → ReadingsApplied → Done
                    ↓               ↓                ↓
                Rejected         Failed           Failed

El orden de publicaciones es parte del contrato (los consumidores
correlacionan por orden de llegada):

1. device: AvailabilityYes, luego SSID en `net/wifi/ssid` si viene
2. por lectura, en orden: AvailabilityYes del sensor → valor → unidad
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Optional

from ..context import IngestContext
from ..core.domain.thing import Thing, ThingType
from ..core.rate_guard import RateGuard
from ..directory.thing_directory import ThingDirectory
from ..dispatch.dispatcher import Dispatcher
from ..errors import DuplicatePacket, ExtractionError, IngestError
from ..metrics import PACKETS_TOTAL
from ..routing.topic_router import WIFI_SSID_TOPIC, TopicRouter
from ..schemas import DevicePacket, SensorReading

logger = logging.getLogger(__name__)


class PacketState(str, Enum):
    RECEIVED = "received"
    RATE_CHECKED = "rate_checked"
    DEVICE_RESOLVED = "device_resolved"
    READINGS_APPLIED = "readings_applied"
    DONE = "done"
    REJECTED = "rejected"
    FAILED = "failed"


@dataclass
class PacketOutcome:
    device: str
    state: PacketState = PacketState.RECEIVED
    readings: int = 0
    published: int = 0
    publish_failures: int = 0
    # Lecturas cuyo valor no se pudo extraer (sólo liveness)
    skipped: int = 0
    sensors: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, object]:
        return {
            "device": self.device,
            "state": self.state.value,
            "readings": self.readings,
            "published": self.published,
            "publish_failures": self.publish_failures,
            "skipped": self.skipped,
        }


class DevicePacketProcessor:
    """Orquesta RateGuard + ThingDirectory + Dispatcher para un paquete."""

    def __init__(
        self,
        rate_guard: RateGuard,
        directory: ThingDirectory,
        dispatcher: Dispatcher,
        *,
        clock: Callable[[], float] = time.time,
    ):
        self._rate_guard = rate_guard
        self._directory = directory
        self._dispatcher = dispatcher
        self._clock = clock

    def process_packet(
        self,
        ctx: Optional[IngestContext],
        packet: DevicePacket,
        now: Optional[float] = None,
    ) -> PacketOutcome:
        """Procesa un paquete completo.

        Raises:
            DuplicatePacket: el dispositivo ya envió un paquete dentro de la ventana
            StorageError / NotFound / ValidationError: fallo del directorio;
                el paquete se aborta
        """
        ctx = ctx or IngestContext.background()
        now = self._clock() if now is None else now
        outcome = PacketOutcome(device=packet.device)

        try:
            admitted = self._rate_guard.admit(packet.device, now)
        except IngestError:
            outcome.state = PacketState.FAILED
            PACKETS_TOTAL.labels(result="failed").inc()
            raise
        if not admitted:
            outcome.state = PacketState.REJECTED
            PACKETS_TOTAL.labels(result="duplicate").inc()
            logger.info("[PACKET] Duplicate packet rejected device=%s", packet.device)
            raise DuplicatePacket(packet.device)
        self._advance(outcome, PacketState.RATE_CHECKED)

        try:
            device = self._directory.resolve_or_create(packet.device, ThingType.DEVICE)
            device = self._dispatcher.touch(device, ctx)
            self._advance(outcome, PacketState.DEVICE_RESOLVED)

            if device.assigned:
                self._count(outcome, self._dispatcher.announce(device, ctx))
                if packet.wifi_ssid:
                    self._count(
                        outcome,
                        self._dispatcher.publish(device, WIFI_SSID_TOPIC, packet.wifi_ssid, ctx),
                    )

            for reading in packet.readings:
                self._apply_reading(reading, ctx, outcome)
            self._advance(outcome, PacketState.READINGS_APPLIED)
        except IngestError:
            outcome.state = PacketState.FAILED
            PACKETS_TOTAL.labels(result="failed").inc()
            logger.warning(
                "[PACKET] Packet failed device=%s after %d readings",
                packet.device, outcome.readings,
            )
            raise

        self._advance(outcome, PacketState.DONE)
        PACKETS_TOTAL.labels(result="accepted").inc()
        logger.info(
            "[PACKET] Done device=%s readings=%d published=%d",
            packet.device, outcome.readings, outcome.published,
        )
        return outcome

    def _apply_reading(self, reading: SensorReading, ctx: IngestContext, outcome: PacketOutcome) -> None:
        sensor_class = reading.populated_class()
        defaults = {"sensor.class": sensor_class} if sensor_class else None
        sensor = self._directory.resolve_or_create(reading.address, ThingType.SENSOR, defaults)

        data = sensor.sensor
        if data is None:
            # La dirección pertenece a un Thing que no es sensor: sólo liveness
            logger.warning("[PACKET] Address %s is a %s, not a sensor", reading.address, sensor.type.value)
            self._dispatcher.touch(sensor, ctx)
            return

        try:
            value = reading.value_for(data.sensor_class)
        except ExtractionError as e:
            # Se omite la escritura de esta lectura; el resto del paquete sigue
            logger.warning("[PACKET] Unusable reading address=%s err=%s", reading.address, e)
            self._dispatcher.touch(sensor, ctx)
            outcome.skipped += 1
            return

        if value is None:
            sensor = self._dispatcher.touch(sensor, ctx)
        else:
            sensor = self._dispatcher.store_reading(sensor, value, ctx)
        outcome.readings += 1
        outcome.sensors.append(sensor.name)

        if not sensor.assigned:
            return

        self._count(outcome, self._dispatcher.announce(sensor, ctx))
        if value is None:
            return
        self._publish_measurement(sensor, value, ctx, outcome)

    def _publish_measurement(self, sensor: Thing, value: str, ctx: IngestContext, outcome: PacketOutcome) -> None:
        topic = TopicRouter.measurement_topic(sensor)
        if topic is None:
            return
        self._count(outcome, self._dispatcher.publish(sensor, topic, value, ctx))

        unit = sensor.sensor.effective_unit
        unit_topic = TopicRouter.unit_topic(sensor)
        if unit and unit_topic:
            self._count(outcome, self._dispatcher.publish(sensor, unit_topic, unit, ctx))

    @staticmethod
    def _count(outcome: PacketOutcome, ok: bool) -> None:
        if ok:
            outcome.published += 1
        else:
            outcome.publish_failures += 1

    @staticmethod
    def _advance(outcome: PacketOutcome, state: PacketState) -> None:
        logger.debug("[PACKET] device=%s %s -> %s", outcome.device, outcome.state.value, state.value)
        outcome.state = state
