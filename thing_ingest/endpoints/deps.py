"""Contenedor de servicios compartido por los routers."""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import List, Optional

from fastapi import HTTPException, Request

from ..core.domain.interfaces import BusClient
from ..core.rate_guard import RateGuard
from ..directory.thing_directory import ThingDirectory
from ..dispatch.dispatcher import AvailabilitySweeper, Dispatcher
from ..mqtt.message_service import MessageService
from ..mqtt.receiver import MqttIngestReceiver
from ..packets.processor import DevicePacketProcessor


@dataclass
class IngestServices:
    directory: ThingDirectory
    rate_guard: RateGuard
    bus: BusClient
    dispatcher: Dispatcher
    processor: DevicePacketProcessor
    message_service: MessageService
    sweeper: AvailabilitySweeper
    receiver: Optional[MqttIngestReceiver] = None
    packet_timeout: Optional[float] = None
    executor: Optional[ThreadPoolExecutor] = None
    # Callables de cierre para shutdown (engines)
    closers: List = field(default_factory=list)


def get_services(request: Request) -> IngestServices:
    services = getattr(request.app.state, "services", None)
    if services is None:
        raise HTTPException(status_code=503, detail="Service not ready")
    return services
