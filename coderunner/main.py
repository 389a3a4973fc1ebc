#!/usr/bin/env python3
"""Control API that runs inside a session's execution environment."""

import asyncio
import logging
import os
from contextlib import asynccontextmanager
from typing import Dict, Optional, Set, Tuple

import uvicorn
from fastapi import FastAPI, HTTPException, Request, status
from pydantic import BaseModel, ConfigDict, Field

from coderunner.config import RunnerConfig
from coderunner.redis_publisher import RedisPublisher
from orchestrator.models.events import EventType, LifecycleEvent
from orchestrator.models.session import DevServerStatus
from orchestrator.services.agent import AgentClient
from orchestrator.services.driver import EventPublisher, SessionDriver
from orchestrator.services.supervisor import ProcessSupervisor

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


class SetupRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    template: Optional[str] = None
    session_id: Optional[int] = Field(default=None, alias="sessionId")


class ExecuteRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    prompt: Optional[str] = None
    model_id: Optional[str] = Field(default=None, alias="modelId")
    provider_id: Optional[str] = Field(default=None, alias="providerId")
    session_id: Optional[int] = Field(default=None, alias="sessionId")


class LocalDevServerStore:
    """In-memory dev server records for the environment's own supervisor.

    The orchestrator never reads these directly. An exit after the server was
    running is announced on the events channel instead.
    """

    def __init__(self, publisher: EventPublisher, port: int):
        self.publisher = publisher
        self.port = port
        self._records: Dict[int, Tuple[DevServerStatus, Optional[int]]] = {}

    def status(self, session_id: int) -> DevServerStatus:
        return self._records.get(session_id, (DevServerStatus.STOPPED, None))[0]

    async def set_dev_server_status(
        self, session_id: int, status: DevServerStatus, pid: Optional[int] = None
    ) -> None:
        previous = self.status(session_id)
        self._records[session_id] = (status, pid if status.is_active else None)
        if previous == DevServerStatus.RUNNING and not status.is_active:
            event_type = (
                EventType.DEV_SERVER_COMPLETED
                if status == DevServerStatus.STOPPED
                else EventType.DEV_SERVER_FAILED
            )
            await self.publisher.publish_event(
                LifecycleEvent(session_id=session_id, type=event_type)
            )

    async def get_dev_server_record(
        self, session_id: int
    ) -> tuple[Optional[int], Optional[int]]:
        _, pid = self._records.get(session_id, (DevServerStatus.STOPPED, None))
        return pid, self.port


class CodeRunner:
    """Runs setup and execute requests for this environment in the background."""

    def __init__(
        self,
        config: RunnerConfig,
        driver: SessionDriver,
    ):
        self.config = config
        self.driver = driver
        self._setup_tasks: Dict[int, asyncio.Task] = {}
        self._tasks: Set[asyncio.Task] = set()

    def resolve_session(self, session_id: Optional[int]) -> int:
        resolved = session_id if session_id is not None else self.config.session_id
        if resolved is None:
            raise ValueError("sessionId is required")
        return resolved

    def setup_in_flight(self, session_id: int) -> bool:
        return session_id in self._setup_tasks

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def start_setup(self, session_id: int, template: str) -> asyncio.Task:
        task = self._spawn(self.driver.setup(session_id, self.config.code_dir, template))
        self._setup_tasks[session_id] = task

        def _clear(t: asyncio.Task) -> None:
            if self._setup_tasks.get(session_id) is t:
                del self._setup_tasks[session_id]

        task.add_done_callback(_clear)
        return task

    def start_execute(
        self, session_id: int, prompt: str, model_id: str, provider_id: str
    ) -> asyncio.Task:
        return self._spawn(self._execute(session_id, prompt, model_id, provider_id))

    async def _execute(
        self, session_id: int, prompt: str, model_id: str, provider_id: str
    ) -> bool:
        setup = self._setup_tasks.get(session_id)
        if setup is not None:
            logger.info(f"Waiting for setup of session {session_id} to finish")
            if not await setup:
                return False

        ok = await self.driver.execute(
            session_id, self.config.code_dir, prompt, model_id, provider_id
        )
        if ok and self.config.start_dev_server:
            await self.driver.start_dev_server(
                session_id, self.config.code_dir, self.config.app_port
            )
        return ok

    async def shutdown(self) -> None:
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    config = RunnerConfig.from_env()
    logger.info(f"Starting code runner for session {config.session_id}")

    publisher = RedisPublisher(config.redis_url, config.events_channel)
    await publisher.connect()

    agent = AgentClient(base_url=config.agent_url)
    supervisor = ProcessSupervisor(LocalDevServerStore(publisher, config.app_port))
    driver = SessionDriver(agent, publisher, supervisor=supervisor)
    app.state.runner = CodeRunner(config, driver)

    yield

    logger.info("Cleaning up...")
    await app.state.runner.shutdown()
    await supervisor.shutdown()
    await agent.close()
    await publisher.close()


app = FastAPI(title="UI Battle Code Runner", lifespan=lifespan)


@app.get("/health")
async def health():
    return {"status": "healthy"}


@app.post("/setup")
async def setup(body: SetupRequest, request: Request):
    """Scaffold the code directory from a starter template."""
    runner: CodeRunner = request.app.state.runner
    if not body.template:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail="template is required"
        )
    try:
        session_id = runner.resolve_session(body.session_id)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    runner.start_setup(session_id, body.template)
    return {"success": True, "message": "Setup started"}


@app.post("/execute")
async def execute(body: ExecuteRequest, request: Request):
    """Create an agent session and run the prompt against the code directory."""
    runner: CodeRunner = request.app.state.runner
    try:
        session_id = runner.resolve_session(body.session_id)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    if not os.path.isdir(runner.config.code_dir) and not runner.setup_in_flight(session_id):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Code directory does not exist. Run /setup first.",
        )
    if not body.prompt or not body.model_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="prompt and modelId are required",
        )

    runner.start_execute(
        session_id,
        body.prompt,
        body.model_id,
        body.provider_id or runner.config.default_provider,
    )
    return {"success": True, "message": "Execution started"}


def run() -> None:
    """Console entry point."""
    config = RunnerConfig.from_env()
    uvicorn.run("coderunner.main:app", host=config.host, port=config.port)


if __name__ == "__main__":
    run()
