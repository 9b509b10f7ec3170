"""Endpoint de ingesta de paquetes push por dispositivo."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException

from ..context import IngestContext
from ..errors import (
    DuplicatePacket,
    IngestError,
    NameConflict,
    NotFound,
    StorageError,
    ValidationError,
)
from ..schemas import DevicePacket, PacketIngestResult
from .deps import IngestServices, get_services

router = APIRouter(tags=["ingest"])
logger = logging.getLogger(__name__)


@router.post("/piot/packets", response_model=PacketIngestResult)
def ingest_packet(
    packet: DevicePacket,
    services: IngestServices = Depends(get_services),
):
    """Procesa un DevicePacket (ProcessPacket).

    - 429: paquete duplicado dentro de la ventana del RateGuard
    - 422: tipo de Thing inválido
    - 503: fallo de almacenamiento (el dispositivo puede reintentar)
    """
    ctx = IngestContext(timeout=services.packet_timeout)
    try:
        outcome = services.processor.process_packet(ctx, packet)
    except DuplicatePacket as e:
        raise HTTPException(status_code=429, detail=str(e))
    except ValidationError as e:
        raise HTTPException(status_code=422, detail=str(e))
    except NotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except NameConflict as e:
        raise HTTPException(status_code=409, detail=str(e))
    except StorageError as e:
        logger.warning("[PACKET] Storage error device=%s err=%s", packet.device, e)
        raise HTTPException(status_code=503, detail=f"Storage error: {type(e).__name__}")
    except IngestError as e:
        logger.exception("[PACKET] Unexpected ingest error device=%s", packet.device)
        raise HTTPException(status_code=500, detail=type(e).__name__)

    return PacketIngestResult(accepted=True, device=packet.device, readings=outcome.readings)
