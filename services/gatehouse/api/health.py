"""
Health check endpoints for Gatehouse.

Provides /health (liveness) and /ready (readiness) endpoints.
"""

from fastapi import APIRouter, Response, status

from gatehouse.auth.providers import get_session_auth
from gatehouse.config import StoreBackend, settings
from gatehouse.logging_config import get_logger
from gatehouse.redis.client import get_redis_health

router = APIRouter(tags=["health"])
logger = get_logger(__name__)


@router.get("/health", status_code=status.HTTP_200_OK)
async def health() -> dict[str, str]:
    """Liveness probe endpoint.

    Returns 200 if the server is running.
    """
    return {"status": "healthy"}


@router.get("/ready", status_code=status.HTTP_200_OK)
async def ready(response: Response) -> dict[str, str | dict[str, str]]:
    """Readiness probe endpoint.

    Checks that the provider registry is built and, with the Redis backend,
    that Redis answers.
    """
    checks: dict[str, str] = {}

    try:
        get_session_auth()
        checks["providers"] = "healthy"
    except RuntimeError:
        checks["providers"] = "unhealthy"

    if settings.auth.store_backend == StoreBackend.REDIS:
        checks["redis"] = "healthy" if await get_redis_health() else "unhealthy"

    all_healthy = all(v == "healthy" for v in checks.values())

    if not all_healthy:
        logger.warning("Readiness check failed", checks=checks)
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return {"status": "not ready", "checks": checks}

    return {"status": "ready", "checks": checks}
