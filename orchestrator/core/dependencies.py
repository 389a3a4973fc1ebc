"""Dependency injection providers."""

from typing import AsyncGenerator

import redis.asyncio as redis
from fastapi import Request

from orchestrator.core.config import get_settings
from orchestrator.services.container import ContainerManager
from orchestrator.services.session import SessionRunService
from orchestrator.services.store import SessionStore

settings = get_settings()


async def get_redis() -> AsyncGenerator[redis.Redis, None]:
    """Dependency for getting Redis connection."""
    client = redis.from_url(settings.redis_url, decode_responses=True)
    try:
        yield client
    finally:
        await client.aclose()


def get_run_service(request: Request) -> SessionRunService:
    """The run service built at startup."""
    return request.app.state.run_service


def get_store(request: Request) -> SessionStore:
    return request.app.state.run_service.store


def get_environments(request: Request) -> ContainerManager:
    return request.app.state.run_service.container_manager
