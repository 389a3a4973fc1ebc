"""Pytest fixtures for orchestrator tests."""

import asyncio
import os
import sys
import tempfile
from typing import AsyncGenerator, List, Optional
from unittest.mock import AsyncMock

# Settings are read once at import time, so point them at a scratch database first.
_TEST_DIR = tempfile.mkdtemp(prefix="orchestrator-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{_TEST_DIR}/test.db"
os.environ["ENV_FILE_PATH"] = ""

import httpx
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy import select

from orchestrator.db.database import Base, engine, get_db_context, init_db
from orchestrator.db.models import Batch, Session, Turn
from orchestrator.main import app
from orchestrator.models.events import LifecycleEvent
from orchestrator.services.agent import AgentClient
from orchestrator.services.container import ContainerManager
from orchestrator.services.driver import SessionDriver
from orchestrator.services.ports import PortAllocator
from orchestrator.services.session import SessionRunService
from orchestrator.services.state_machine import SessionStateMachine
from orchestrator.services.store import SessionStore
from orchestrator.services.supervisor import ProcessSupervisor

# Ranges well away from ports a developer machine is likely to use.
TEST_CTRL_RANGE = (43005, 43025)
TEST_APP_RANGE = (45173, 45183)

DEV_SERVER_SCRIPT = (
    "import sys, time\n"
    "print(f'  Local:   http://localhost:{sys.argv[1]}/', flush=True)\n"
    "time.sleep(60)\n"
)


class RecordingPublisher:
    """Collects published events and optionally applies them straight away."""

    def __init__(self, state_machine: Optional[SessionStateMachine] = None):
        self.events: List[LifecycleEvent] = []
        self.state_machine = state_machine

    async def publish_event(self, event: LifecycleEvent) -> int:
        self.events.append(event)
        if self.state_machine is not None:
            await self.state_machine.apply(event)
        return 1

    @property
    def types(self) -> List[str]:
        return [e.type.value for e in self.events]


class FakeScaffolder:
    """Creates the directory with a single file instead of running a script."""

    def __init__(self):
        self.calls = []

    async def scaffold(self, directory: str, template: str) -> None:
        self.calls.append((directory, template))
        os.makedirs(directory, exist_ok=True)
        with open(os.path.join(directory, "package.json"), "w") as f:
            f.write("{}")


def agent_handler(gate: Optional[asyncio.Event] = None):
    """Mock agent service: creates sessions and answers prompts."""

    async def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/session":
            return httpx.Response(200, json={"id": "ses_remote_1"})
        if request.url.path.endswith("/message"):
            if gate is not None:
                await gate.wait()
            return httpx.Response(200, json={"info": {"id": "msg_1"}, "parts": []})
        return httpx.Response(404, json={"error": "not found"})

    return handler


def dev_server_command() -> List[str]:
    return [sys.executable, "-c", DEV_SERVER_SCRIPT, "{port}"]


@pytest_asyncio.fixture
async def test_db():
    """Set up test database."""
    await init_db()
    yield
    # Clean up
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture
def store(test_db) -> SessionStore:
    return SessionStore()


@pytest.fixture
def make_session(test_db, tmp_path):
    """Factory inserting a session row; returns its id."""

    async def _make(
        prompt: Optional[str] = "Build a todo app",
        directory: Optional[str] = None,
        **values,
    ) -> int:
        async with get_db_context() as db:
            batch_id = None
            if prompt is not None:
                batch = Batch(name="batch", prompt=prompt)
                db.add(batch)
                await db.flush()
                batch_id = batch.id
            session = Session(
                batch_id=batch_id,
                directory=directory or str(tmp_path / f"code-{os.urandom(4).hex()}"),
                model_id="big-pickle",
                provider_id="opencode",
                **values,
            )
            db.add(session)
            await db.flush()
            return session.id

    return _make


@pytest.fixture
def bound_ports() -> AsyncMock:
    """Ports the container runtime reports as bound."""
    return AsyncMock(return_value=set())


@pytest.fixture
def allocator(store, bound_ports) -> PortAllocator:
    return PortAllocator(bound_ports, store, TEST_CTRL_RANGE, TEST_APP_RANGE)


@pytest.fixture
def agent_gate() -> asyncio.Event:
    gate = asyncio.Event()
    gate.set()
    return gate


@pytest.fixture
def publisher(store) -> RecordingPublisher:
    """In-process event bridge: events are applied as they are published."""
    return RecordingPublisher(SessionStateMachine(store))


@pytest_asyncio.fixture
async def run_service(
    store, allocator, agent_gate, publisher
) -> AsyncGenerator[SessionRunService, None]:
    """Run service wired to a mock agent."""
    supervisor = ProcessSupervisor(
        store, command=dev_server_command(), ready_timeout=5.0, kill_grace=0.2
    )
    agent_client = httpx.AsyncClient(
        transport=httpx.MockTransport(agent_handler(agent_gate)),
        base_url="http://agent.test",
    )
    agent = AgentClient(base_url="http://agent.test", client=agent_client)
    driver = SessionDriver(agent, publisher, scaffolder=FakeScaffolder(), supervisor=supervisor)

    manager = ContainerManager(store)
    manager.ports = allocator
    service = SessionRunService(store, manager, supervisor, driver, run_in_environment=False)
    app.state.run_service = service

    yield service

    await service.shutdown()
    await supervisor.shutdown()
    await agent_client.aclose()


@pytest_asyncio.fixture
async def client(run_service) -> AsyncGenerator[AsyncClient, None]:
    """Create test client."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


async def wait_for_runs(service: SessionRunService) -> None:
    """Wait for every background lifecycle task of `service`."""
    tasks = list(service._tasks)
    if tasks:
        await asyncio.wait_for(asyncio.gather(*tasks), timeout=20)


async def list_turns(session_id: int) -> List[Turn]:
    """Turns of a session in creation order."""
    async with get_db_context() as db:
        result = await db.execute(
            select(Turn).where(Turn.session_id == session_id).order_by(Turn.id)
        )
        return list(result.scalars().all())
