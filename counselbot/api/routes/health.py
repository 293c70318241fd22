"""
Health probes.

/health/live only says the process is up. /health/ready checks the
database, and Redis when dialogue sessions are stored there.
"""

import logging
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from counselbot import __version__
from counselbot.config import settings
from counselbot.infra.database import check_db_health
from counselbot.infra.redis import check_redis_health

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/health", tags=["Health"])

_started_at: Optional[datetime] = None


def set_start_time() -> None:
    """Called once from the application lifespan."""
    global _started_at
    _started_at = datetime.now(timezone.utc)


class HealthResponse(BaseModel):
    status: str
    timestamp: datetime
    version: str
    environment: str


class ReadyResponse(BaseModel):
    status: str
    timestamp: datetime
    checks: dict[str, str]


class LiveResponse(BaseModel):
    status: str
    timestamp: datetime
    uptime_seconds: Optional[float] = None


@router.get("", response_model=HealthResponse, summary="Service info")
async def health() -> HealthResponse:
    return HealthResponse(
        status="healthy",
        timestamp=datetime.now(timezone.utc),
        version=__version__,
        environment=settings.app_env,
    )


async def _dependency_checks() -> dict[str, str]:
    checks = {"database": "ok" if await check_db_health() else "failed"}

    # Redis only matters when sessions live there
    if settings.session_backend == "redis":
        checks["redis"] = "ok" if await check_redis_health() else "failed"
    else:
        checks["redis"] = "not_used"
    return checks


@router.get(
    "/ready",
    response_model=ReadyResponse,
    summary="Readiness probe",
    responses={503: {"model": ReadyResponse, "description": "A dependency is unavailable"}},
)
async def ready():
    checks = await _dependency_checks()
    failed = [name for name, result in checks.items() if result == "failed"]

    body = ReadyResponse(
        status="not_ready" if failed else "ready",
        timestamp=datetime.now(timezone.utc),
        checks=checks,
    )
    if failed:
        logger.warning(f"Readiness check failed: {', '.join(failed)}")
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content=body.model_dump(mode="json"),
        )
    return body


@router.get("/live", response_model=LiveResponse, summary="Liveness probe")
async def live() -> LiveResponse:
    uptime = None
    if _started_at is not None:
        uptime = (datetime.now(timezone.utc) - _started_at).total_seconds()
    return LiveResponse(status="alive", timestamp=datetime.now(timezone.utc), uptime_seconds=uptime)
