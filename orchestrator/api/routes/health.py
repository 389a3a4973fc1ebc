"""Health check endpoints."""

import logging
from typing import Awaitable, Dict

import redis.asyncio as redis
from fastapi import APIRouter, Depends
from sqlalchemy import text

from orchestrator.core.config import get_settings
from orchestrator.core.dependencies import get_redis, get_run_service
from orchestrator.db.database import get_db_context
from orchestrator.services.session import SessionRunService

logger = logging.getLogger(__name__)
settings = get_settings()
router = APIRouter()


async def probe(name: str, check: Awaitable) -> str:
    """Await `check`; any exception marks the component unhealthy."""
    try:
        await check
        return "healthy"
    except Exception as e:
        logger.error(f"{name} health check failed: {e}")
        return "unhealthy"


async def ping_database() -> None:
    async with get_db_context() as db:
        await db.execute(text("SELECT 1"))


@router.get("")
async def health_check(
    redis_client: redis.Redis = Depends(get_redis),
    run_service: SessionRunService = Depends(get_run_service),
) -> Dict:
    """
    Check the session store, the event channel and the container runtime.

    Returns:
        Health status of each component plus in-flight work counts
    """
    components = {
        "database": await probe("Database", ping_database()),
        "redis": await probe("Redis", redis_client.ping()),
        "docker": await probe("Docker", run_service.container_manager.ping()),
    }
    healthy = all(s == "healthy" for s in components.values())

    return {
        "status": "healthy" if healthy else "unhealthy",
        "version": settings.version,
        "components": components,
        "activeRuns": run_service.active_runs,
        "devServers": len(run_service.supervisor.running_sessions()),
    }


@router.get("/ready")
async def readiness_check(
    redis_client: redis.Redis = Depends(get_redis),
    run_service: SessionRunService = Depends(get_run_service),
) -> Dict:
    health = await health_check(redis_client, run_service)
    return {"ready": health["status"] == "healthy"}


@router.get("/live")
async def liveness_check() -> Dict:
    return {"alive": True}
