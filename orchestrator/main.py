"""FastAPI application entry point."""

import logging
from contextlib import asynccontextmanager

import redis.asyncio as redis
import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_client import make_asgi_app

from orchestrator.api.routes import containers, health, ports, sessions
from orchestrator.core.config import get_settings
from orchestrator.db.database import init_db
from orchestrator.services.agent import AgentClient
from orchestrator.services.container import container_manager
from orchestrator.services.driver import SessionDriver
from orchestrator.services.pubsub import EventListener, PubSubService
from orchestrator.services.session import SessionRunService
from orchestrator.services.state_machine import SessionStateMachine
from orchestrator.services.store import session_store
from orchestrator.services.supervisor import ProcessSupervisor

settings = get_settings()

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper()),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    # Startup
    logger.info("Starting UI Battle Orchestrator...")

    await init_db()
    logger.info("Database initialized")

    redis_client = redis.from_url(settings.redis_url, decode_responses=True)
    pubsub = PubSubService(redis_client)

    # Lifecycle events drive session status
    state_machine = SessionStateMachine(session_store)
    listener = EventListener(pubsub, state_machine.apply)
    await listener.start()

    supervisor = ProcessSupervisor(session_store)
    agent = AgentClient()
    driver = SessionDriver(agent, pubsub, supervisor=supervisor)
    run_service = SessionRunService(session_store, container_manager, supervisor, driver)

    # Store services in app state for access in routes
    app.state.run_service = run_service

    yield

    # Shutdown
    logger.info("Shutting down UI Battle Orchestrator...")
    await run_service.shutdown()
    await supervisor.shutdown()
    await listener.stop()
    await agent.close()
    await container_manager.close()
    await redis_client.aclose()


# Create FastAPI app
app = FastAPI(
    title=settings.app_name,
    version=settings.version,
    description="Session orchestration and dev server supervision",
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Mount Prometheus metrics
metrics_app = make_asgi_app()
app.mount("/metrics", metrics_app)

# Include routers
app.include_router(health.router, prefix="/health", tags=["Health"])
app.include_router(sessions.router, prefix="/sessions", tags=["Sessions"])
app.include_router(containers.router, prefix="/sessions", tags=["Containers"])
app.include_router(ports.router, prefix="/ports", tags=["Ports"])


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception(f"Unhandled error on {request.method} {request.url.path}")
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": settings.app_name,
        "version": settings.version,
        "docs": "/docs",
    }


def run() -> None:
    """Console entry point."""
    uvicorn.run(
        "orchestrator.main:app",
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    run()
