"""Enrutamiento de topics MQTT.

Inbound: `org/<orgId-o-nombre>/<resto>`. Se quita el segmento de org, se
resuelve la org y `<resto>` se compara con los topics configurados de cada
Thing de esa org:

- device: telemetry_topic, location_topic
- sensor: measurement_topic y la convención fija `<name>/unit`
- switch: state_topic

Un topic configurado sin `/` es un sufijo local y se califica con el nombre
del Thing (`<name>/<topic>`); con `/` se compara literal. Varios Things
pueden compartir un topic literal: el mensaje se reparte a todos.

Outbound: los topics se publican tal cual están configurados en el Thing,
sin prefijo de org.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Tuple

from ..core.domain.thing import Thing
from ..directory.thing_directory import (
    DEFAULT_AVAILABILITY_NO,
    DEFAULT_AVAILABILITY_TOPIC,
    DEFAULT_AVAILABILITY_YES,
    ThingDirectory,
)

logger = logging.getLogger(__name__)

ORG_SEGMENT = "org"
UNIT_SUFFIX = "unit"
WIFI_SSID_TOPIC = "net/wifi/ssid"


class MessageKind(str, Enum):
    TELEMETRY = "telemetry"
    LOCATION = "location"
    MEASUREMENT = "measurement"
    UNIT = "unit"
    STATE = "state"


@dataclass(frozen=True)
class InboundTopic:
    org_key: str
    remainder: str


@dataclass(frozen=True)
class Route:
    thing: Thing
    kind: MessageKind


def qualify_topic(thing_name: str, topic: str) -> str:
    """Califica un sufijo local con el nombre del Thing."""
    if not topic:
        return ""
    if "/" in topic:
        return topic
    return f"{thing_name}/{topic}"


def parse_inbound(topic: str) -> Optional[InboundTopic]:
    """Separa `org/<org>/<resto>`; None si el topic no tiene esa forma."""
    parts = topic.split("/", 2)
    if len(parts) < 3 or parts[0] != ORG_SEGMENT or not parts[1] or not parts[2]:
        return None
    return InboundTopic(org_key=parts[1], remainder=parts[2])


def inbound_topics(thing: Thing) -> List[Tuple[str, MessageKind]]:
    """Topics (ya calificados) que escucha un Thing, con su tipo de mensaje."""
    topics: List[Tuple[str, MessageKind]] = []

    device = thing.device
    if device is not None:
        if device.telemetry_topic:
            topics.append((qualify_topic(thing.name, device.telemetry_topic), MessageKind.TELEMETRY))
        if device.location_topic:
            topics.append((qualify_topic(thing.name, device.location_topic), MessageKind.LOCATION))

    sensor = thing.sensor
    if sensor is not None:
        if sensor.measurement_topic:
            topics.append((qualify_topic(thing.name, sensor.measurement_topic), MessageKind.MEASUREMENT))
        topics.append((f"{thing.name}/{UNIT_SUFFIX}", MessageKind.UNIT))

    switch = thing.switch
    if switch is not None and switch.state_topic:
        topics.append((qualify_topic(thing.name, switch.state_topic), MessageKind.STATE))

    return topics


class TopicRouter:
    """Clasifica topics inbound y resuelve los topics outbound de un Thing."""

    def __init__(self, directory: ThingDirectory):
        self._directory = directory

    def route(self, topic: str) -> List[Route]:
        """Devuelve los (Thing, tipo) afectados por un mensaje.

        Lista vacía si el topic no es de org, la org no existe o ningún
        Thing escucha ese topic: no todo mensaje del bus es para este servidor.
        """
        inbound = parse_inbound(topic)
        if inbound is None:
            logger.debug("[ROUTER] Ignored topic=%s (not org scoped)", topic)
            return []

        org = self._directory.resolve_org(inbound.org_key)
        if org is None or org.id is None:
            logger.debug("[ROUTER] Unknown org=%s topic=%s", inbound.org_key, topic)
            return []

        routes: List[Route] = []
        for thing in self._directory.things_in_org(org.id):
            for candidate, kind in inbound_topics(thing):
                if candidate == inbound.remainder:
                    routes.append(Route(thing=thing, kind=kind))

        if not routes:
            logger.debug("[ROUTER] No thing matches topic=%s", topic)
        return routes

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------

    @staticmethod
    def availability(thing: Thing, available: bool = True) -> Tuple[str, str]:
        """(topic, payload) de disponibilidad; campos vacíos usan los literales por defecto."""
        topic = thing.availability_topic or DEFAULT_AVAILABILITY_TOPIC
        if available:
            return topic, thing.availability_yes or DEFAULT_AVAILABILITY_YES
        return topic, thing.availability_no or DEFAULT_AVAILABILITY_NO

    @staticmethod
    def measurement_topic(thing: Thing) -> Optional[str]:
        sensor = thing.sensor
        if sensor is None or not sensor.measurement_topic:
            return None
        return sensor.measurement_topic

    @staticmethod
    def unit_topic(thing: Thing) -> Optional[str]:
        topic = TopicRouter.measurement_topic(thing)
        if topic is None:
            return None
        return f"{topic}/{UNIT_SUFFIX}"

    @staticmethod
    def command(thing: Thing, on: bool) -> Optional[Tuple[str, str]]:
        switch = thing.switch
        if switch is None or not switch.command_topic:
            return None
        return switch.command_topic, switch.command_on if on else switch.command_off
