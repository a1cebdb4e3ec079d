"""Health check router."""

import logging
from datetime import datetime

from fastapi import APIRouter
from fastapi.responses import JSONResponse

from ..core.config import settings
from ..schemas.health import HealthResponse, HealthStatus
from ..workers.manager import worker_manager

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/health", tags=["health"])


@router.post("/ping", response_model=HealthResponse)
async def health_ping() -> JSONResponse:
    """
    Health check endpoint.

    Reports ``degraded`` when workers are enabled but one of them has stopped.
    """
    workers = worker_manager.get_worker_status()
    degraded = settings.workers_enabled and bool(workers) and not all(workers.values())

    response_data = HealthResponse(
        status=HealthStatus.DEGRADED if degraded else HealthStatus.HEALTHY,
        timestamp=datetime.utcnow(),
        version="1.0.0",
        workers=workers,
    )

    logger.debug(
        "Health check requested",
        extra={
            "status": response_data.status,
            "timestamp": response_data.timestamp.isoformat()
        }
    )

    return JSONResponse(
        status_code=200,
        content=response_data.model_dump(mode="json")
    )
