"""Dispatcher: aplica un valor resuelto al estado persistido de un Thing.

Orden de operaciones para cada (Thing, tipo de mensaje):
1. Bajo el lock del nombre: releer, mutar, persistir (fuente de verdad).
2. Fan-out best-effort a sinks (series temporales / relacional), cada uno
   aislado: el fallo de uno no bloquea ni revierte al otro.
3. Eco: publicar AvailabilityYes en AvailabilityTopic (sólo Things con org).

Los fallos del paso 1 se propagan; los de 2 y 3 se registran en
DispatchResult y en logs, nunca revierten el estado.
"""

from __future__ import annotations

import logging
import time
from concurrent.futures import Executor, Future
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

from ..context import IngestContext
from ..core.domain.interfaces import BusClient, MeasurementSink
from ..core.domain.thing import Thing, apply_field_updates
from ..core.extraction.value_extractor import ValueExtractor
from ..directory.thing_directory import ThingDirectory
from ..errors import IngestError
from ..locks import KeyedLocks
from ..metrics import PUBLISHES_TOTAL, SINK_WRITES_TOTAL
from ..routing.topic_router import MessageKind, TopicRouter

logger = logging.getLogger(__name__)

SWITCH_ON_VALUE = "1"
SWITCH_OFF_VALUE = "0"

DEFAULT_PUBLISH_TIMEOUT = 2.0

FieldBuilder = Callable[[Thing], Optional[Dict[str, Any]]]


@dataclass
class DispatchResult:
    """Resultado de un Apply: estado primario + errores de fan-out por destino."""
    thing_name: str
    kind: Optional[MessageKind] = None
    applied: bool = False
    sink_value: Optional[str] = None
    sink_errors: Dict[str, str] = field(default_factory=dict)
    publish_errors: Dict[str, str] = field(default_factory=dict)
    pending: List[Future] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.applied and not self.sink_errors and not self.publish_errors

    def wait(self, timeout: Optional[float] = None) -> None:
        """Espera a las escrituras de sinks encoladas en el executor."""
        for fut in self.pending:
            fut.exception(timeout=timeout)


class Dispatcher:
    """Aplica valores a Things y reparte el resultado a sinks y al bus."""

    def __init__(
        self,
        directory: ThingDirectory,
        bus: BusClient,
        *,
        timeseries_sink: Optional[MeasurementSink] = None,
        relational_sink: Optional[MeasurementSink] = None,
        locks: Optional[KeyedLocks] = None,
        extractor: Optional[ValueExtractor] = None,
        executor: Optional[Executor] = None,
        clock: Callable[[], float] = time.time,
        publish_timeout: float = DEFAULT_PUBLISH_TIMEOUT,
    ):
        self._directory = directory
        self._bus = bus
        self._timeseries = timeseries_sink
        self._relational = relational_sink
        self._locks = locks or KeyedLocks()
        self._extractor = extractor or ValueExtractor()
        self._executor = executor
        self._clock = clock
        self._publish_timeout = publish_timeout

    @property
    def clock(self) -> Callable[[], float]:
        return self._clock

    # ------------------------------------------------------------------
    # Apply
    # ------------------------------------------------------------------

    def apply(
        self,
        thing: Thing,
        kind: MessageKind,
        value: str,
        ctx: Optional[IngestContext] = None,
    ) -> DispatchResult:
        """Aplica `value` (ya extraído) al Thing según el tipo de mensaje.

        Raises:
            ExtractionError: coordenadas de localización no parseables
            StorageError / NotFound: fallo de la escritura primaria
        """
        ctx = ctx or IngestContext.background()
        result = DispatchResult(thing_name=thing.name, kind=kind)
        fanout: List[MeasurementSink] = []

        def build(current: Thing) -> Optional[Dict[str, Any]]:
            update = self._state_update(current, kind, value)
            if update is None:
                return None
            fields, sink_value, sinks = update
            result.sink_value = sink_value
            fanout.extend(sinks)
            return fields

        updated, now = self._commit(thing, build, ctx)
        if updated is None:
            logger.debug("[DISPATCH] Ignored kind=%s thing=%s", kind.value, thing.name)
            return result
        result.applied = True

        if not updated.assigned:
            return result

        if result.sink_value is not None:
            timestamp = datetime.fromtimestamp(now, tz=timezone.utc)
            for sink in fanout:
                self._fan_out(sink, updated, result.sink_value, timestamp, ctx, result)

        self.announce(updated, ctx, result)
        return result

    def _state_update(
        self,
        thing: Thing,
        kind: MessageKind,
        value: str,
    ) -> Optional[Tuple[Dict[str, Any], Optional[str], List[MeasurementSink]]]:
        """Campos a persistir, valor para sinks y sinks destino.

        None = el mensaje no aplica a este Thing (variante equivocada o
        payload de switch desconocido).
        """
        if kind is MessageKind.MEASUREMENT:
            sensor = thing.sensor
            if sensor is None:
                return None
            sinks: List[MeasurementSink] = []
            if sensor.store_influxdb and self._timeseries is not None:
                sinks.append(self._timeseries)
            if sensor.store_mysqldb and self._relational is not None:
                sinks.append(self._relational)
            fields = {
                "sensor.value": value,
                "sensor.measurement_last": int(self._clock()),
            }
            return fields, value, sinks

        if kind is MessageKind.UNIT:
            if thing.sensor is None:
                return None
            return {"sensor.unit": value}, None, []

        if kind is MessageKind.STATE:
            switch = thing.switch
            if switch is None:
                return None
            if switch.state_on and value == switch.state_on:
                state, sink_value = True, SWITCH_ON_VALUE
            elif switch.state_off and value == switch.state_off:
                state, sink_value = False, SWITCH_OFF_VALUE
            else:
                return None
            sinks = []
            if switch.store_influxdb and self._timeseries is not None:
                sinks.append(self._timeseries)
            return {"switch.state": state}, sink_value, sinks

        if kind is MessageKind.TELEMETRY:
            if thing.device is None:
                return None
            return {"telemetry": value}, None, []

        if kind is MessageKind.LOCATION:
            device = thing.device
            if device is None:
                return None
            lat = self._extractor.extract_float(value, device.lat_template)
            lng = self._extractor.extract_float(value, device.lng_template)
            return {"location.latitude": lat, "location.longitude": lng}, None, []

        return None

    # ------------------------------------------------------------------
    # Primary state
    # ------------------------------------------------------------------

    def _commit(
        self,
        thing: Thing,
        build: FieldBuilder,
        ctx: IngestContext,
    ) -> Tuple[Optional[Thing], float]:
        """Releer → mutar → persistir bajo el lock del nombre.

        Devuelve el Thing con los campos ya aplicados (o None si `build`
        decidió no actualizar) y el instante usado.
        """
        with self._locks.hold(thing.name):
            ctx.check()
            current = self._directory.refresh(thing)
            now = self._clock()
            fields = build(current)
            if fields is None:
                return None, now

            fields.update(self._directory.liveness_fields(now))
            # LastSeen nunca retrocede
            fields["last_seen"] = max(current.last_seen, fields["last_seen"])
            self._directory.update(current, fields)

        doc = apply_field_updates(current.to_document(), fields)
        return Thing.from_document(doc, thing_id=current.id), now

    def touch(self, thing: Thing, ctx: Optional[IngestContext] = None) -> Thing:
        """Actualiza LastSeen y Available=true."""
        updated, _ = self._commit(thing, lambda current: {}, ctx or IngestContext.background())
        return updated

    def store_reading(self, thing: Thing, value: str, ctx: Optional[IngestContext] = None) -> Thing:
        """Guarda localmente el valor de un sensor (sin fan-out a sinks).

        No-op para Things que no son sensores (sólo toca LastSeen).
        """
        def build(current: Thing) -> Dict[str, Any]:
            if current.sensor is None:
                return {}
            return {"sensor.value": value, "sensor.measurement_last": int(self._clock())}

        updated, _ = self._commit(thing, build, ctx or IngestContext.background())
        return updated

    def mark_unavailable(
        self,
        thing: Thing,
        now: Optional[float] = None,
        ctx: Optional[IngestContext] = None,
    ) -> bool:
        """Marca un Thing caducado como no disponible y publica AvailabilityNo.

        Se relee bajo lock: si hubo actividad entre medias no se toca.
        """
        ctx = ctx or IngestContext.background()
        with self._locks.hold(thing.name):
            ctx.check()
            current = self._directory.refresh(thing)
            if now is None:
                now = self._clock()
            if not current.available or current.last_seen_interval <= 0:
                return False
            if now - current.last_seen <= current.last_seen_interval:
                return False
            self._directory.update(current, {"available": False})
            current.available = False

        logger.info("[DISPATCH] Thing %s marked unavailable", current.name)
        if current.assigned:
            topic, payload = TopicRouter.availability(current, available=False)
            self.publish(current, topic, payload, ctx)
        return True

    # ------------------------------------------------------------------
    # Fan-out
    # ------------------------------------------------------------------

    def _fan_out(
        self,
        sink: MeasurementSink,
        thing: Thing,
        value: str,
        timestamp: datetime,
        ctx: IngestContext,
        result: DispatchResult,
    ) -> None:
        if not ctx.active:
            logger.debug("[DISPATCH] Context inactive, skipping sink=%s thing=%s", sink.name, thing.name)
            SINK_WRITES_TOTAL.labels(sink=sink.name, result="skipped").inc()
            return

        if self._executor is not None:
            result.pending.append(
                self._executor.submit(self._write_sink, sink, thing, value, timestamp, ctx, result)
            )
        else:
            self._write_sink(sink, thing, value, timestamp, ctx, result)

    def _write_sink(
        self,
        sink: MeasurementSink,
        thing: Thing,
        value: str,
        timestamp: datetime,
        ctx: IngestContext,
        result: DispatchResult,
    ) -> None:
        if not ctx.active:
            SINK_WRITES_TOTAL.labels(sink=sink.name, result="skipped").inc()
            return
        try:
            sink.write(thing, value, timestamp)
            SINK_WRITES_TOTAL.labels(sink=sink.name, result="success").inc()
        except Exception as e:
            # Aislado por sink: el resto del fan-out continúa
            result.sink_errors[sink.name] = str(e)
            SINK_WRITES_TOTAL.labels(sink=sink.name, result="failed").inc()
            logger.warning("[SINK] Write failed sink=%s thing=%s err=%s", sink.name, thing.name, e)

    # ------------------------------------------------------------------
    # Bus echo / publish
    # ------------------------------------------------------------------

    def announce(
        self,
        thing: Thing,
        ctx: Optional[IngestContext] = None,
        result: Optional[DispatchResult] = None,
    ) -> bool:
        """Publica AvailabilityYes en AvailabilityTopic (sólo Things con org)."""
        if not thing.assigned:
            return False
        topic, payload = TopicRouter.availability(thing, available=True)
        return self.publish(thing, topic, payload, ctx, result)

    def publish(
        self,
        thing: Thing,
        topic: str,
        payload: str,
        ctx: Optional[IngestContext] = None,
        result: Optional[DispatchResult] = None,
    ) -> bool:
        """Publicación best-effort; los fallos se registran, no se propagan."""
        ctx = ctx or IngestContext.background()
        if not ctx.active:
            logger.debug("[DISPATCH] Context inactive, skipping publish topic=%s", topic)
            return False
        try:
            self._bus.publish(
                topic,
                payload,
                thing=thing,
                timeout=ctx.remaining(self._publish_timeout),
            )
            PUBLISHES_TOTAL.labels(result="success").inc()
            return True
        except IngestError as e:
            self._publish_failed(thing, topic, e, result)
            return False
        except Exception as e:
            # Aislado por destino, como los sinks
            logger.exception("[DISPATCH] Unexpected bus error topic=%s thing=%s", topic, thing.name)
            self._publish_failed(thing, topic, e, result)
            return False

    @staticmethod
    def _publish_failed(
        thing: Thing,
        topic: str,
        error: Exception,
        result: Optional[DispatchResult],
    ) -> None:
        if result is not None:
            result.publish_errors[topic] = str(error)
        PUBLISHES_TOTAL.labels(result="failed").inc()
        logger.warning("[DISPATCH] Publish failed topic=%s thing=%s err=%s", topic, thing.name, error)

    def command_switch(self, thing: Thing, on: bool, ctx: Optional[IngestContext] = None) -> bool:
        """Envía CommandOn/CommandOff al CommandTopic del switch."""
        target = TopicRouter.command(thing, on)
        if target is None:
            logger.debug("[DISPATCH] No command topic for thing=%s", thing.name)
            return False
        return self.publish(thing, target[0], target[1], ctx)


class AvailabilitySweeper:
    """Marca como no disponibles los Things sin actividad reciente.

    Sólo considera Things con org, disponibles y con LastSeenInterval > 0.
    """

    def __init__(self, dispatcher: Dispatcher, directory: ThingDirectory):
        self._dispatcher = dispatcher
        self._directory = directory

    def sweep(self, now: Optional[float] = None, ctx: Optional[IngestContext] = None) -> List[str]:
        if now is None:
            now = self._dispatcher.clock()
        expired: List[str] = []
        for thing in self._directory.all_things():
            if not thing.assigned or not thing.available or thing.last_seen_interval <= 0:
                continue
            if now - thing.last_seen <= thing.last_seen_interval:
                continue
            if self._dispatcher.mark_unavailable(thing, now, ctx):
                expired.append(thing.name)
        if expired:
            logger.info("[DISPATCH] Availability sweep expired=%d", len(expired))
        return expired
