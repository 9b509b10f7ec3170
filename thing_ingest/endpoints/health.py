"""Health endpoint."""

from fastapi import APIRouter, Depends

from .deps import IngestServices, get_services

router = APIRouter(tags=["health"])


@router.get("/health")
def health(services: IngestServices = Depends(get_services)):
    store = services.directory.store.health_check()
    receiver = services.receiver.stats if services.receiver is not None else None
    return {
        "status": "ok" if store.get("healthy") else "degraded",
        "store": store,
        "receiver": receiver,
        "rate_guard": services.rate_guard.stats,
    }
