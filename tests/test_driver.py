"""Session driver and agent client tests."""

import json
import os
import sys
from unittest.mock import AsyncMock

import httpx
import pytest

from conftest import FakeScaffolder, RecordingPublisher
from orchestrator.core.errors import AgentServiceError, ScaffoldError
from orchestrator.models.session import SessionDetail
from orchestrator.services.agent import AgentClient
from orchestrator.services.driver import DirectoryScaffolder, SessionDriver
from orchestrator.services.supervisor import StartResult

SCAFFOLD_SCRIPT = """\
import os, sys
directory, template = sys.argv[1], sys.argv[2]
if template != "react-ts-vite-tailwind-v4":
    print(f"Template {template} not found")
    sys.exit(1)
os.makedirs(directory, exist_ok=True)
open(os.path.join(directory, "index.html"), "w").close()
"""


def make_agent(handler) -> AgentClient:
    client = httpx.AsyncClient(
        transport=httpx.MockTransport(handler), base_url="http://agent.test"
    )
    return AgentClient(base_url="http://agent.test", client=client)


def ok_handler(request: httpx.Request) -> httpx.Response:
    if request.url.path == "/session":
        return httpx.Response(200, json={"id": "ses_1"})
    return httpx.Response(200, json={"info": {"id": "msg_1"}})


def session_detail(directory: str) -> SessionDetail:
    return SessionDetail(
        id=5,
        directory=directory,
        model_id="big-pickle",
        provider_id="opencode",
        starter_template="react-ts-vite-tailwind-v4",
        status="uninitialized",
        dev_server_status="stopped",
    )


@pytest.fixture
def publisher() -> RecordingPublisher:
    return RecordingPublisher()


@pytest.fixture
def supervisor() -> AsyncMock:
    supervisor = AsyncMock()
    supervisor.start = AsyncMock(return_value=StartResult(success=True, pid=1234))
    return supervisor


class TestAgentClient:
    """Tests for the agent service client."""

    @pytest.mark.asyncio
    async def test_create_session_sends_directory(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json={"id": "ses_42"})

        agent = make_agent(handler)

        assert await agent.create_session("/code") == "ses_42"
        assert seen[0].url.params["directory"] == "/code"

    @pytest.mark.asyncio
    async def test_prompt_body(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json={"info": {}})

        agent = make_agent(handler)
        await agent.prompt("ses_1", "Build it", "big-pickle", "opencode", "/code")

        body = json.loads(seen[0].content)
        assert seen[0].url.path == "/session/ses_1/message"
        assert body["parts"] == [{"type": "text", "text": "Build it"}]
        assert body["model"] == {"providerID": "opencode", "modelID": "big-pickle"}

    @pytest.mark.asyncio
    async def test_error_envelope(self):
        def handler(request):
            return httpx.Response(
                200, json={"info": {"error": {"name": "ProviderError", "data": {"message": "quota"}}}}
            )

        with pytest.raises(AgentServiceError, match="quota"):
            await make_agent(handler).prompt("ses_1", "x", "m", "p", "/code")

    @pytest.mark.asyncio
    async def test_http_error(self):
        def handler(request):
            return httpx.Response(500, text="oops")

        with pytest.raises(AgentServiceError, match="HTTP 500"):
            await make_agent(handler).create_session("/code")

    @pytest.mark.asyncio
    async def test_unreachable(self):
        def handler(request):
            raise httpx.ConnectError("refused")

        with pytest.raises(AgentServiceError, match="unreachable"):
            await make_agent(handler).create_session("/code")


class TestDirectoryScaffolder:
    """Tests for the scaffold step."""

    @pytest.fixture
    def script(self, tmp_path):
        path = tmp_path / "scaffold.py"
        path.write_text(SCAFFOLD_SCRIPT)
        return str(path)

    @pytest.mark.asyncio
    async def test_scaffold(self, script, tmp_path):
        target = tmp_path / "app"
        await DirectoryScaffolder(script, sys.executable).scaffold(
            str(target), "react-ts-vite-tailwind-v4"
        )
        assert (target / "index.html").exists()

    @pytest.mark.asyncio
    async def test_script_failure(self, script, tmp_path):
        with pytest.raises(ScaffoldError, match="Template vue not found"):
            await DirectoryScaffolder(script, sys.executable).scaffold(
                str(tmp_path / "app"), "vue"
            )

    @pytest.mark.asyncio
    async def test_missing_script(self, tmp_path):
        with pytest.raises(ScaffoldError, match="not found"):
            await DirectoryScaffolder(str(tmp_path / "nope.sh")).scaffold(
                str(tmp_path / "app"), "react-ts-vite-tailwind-v4"
            )

    @pytest.mark.asyncio
    async def test_existing_directory_is_kept(self, tmp_path):
        target = tmp_path / "app"
        target.mkdir()
        (target / "main.tsx").write_text("keep me")

        # The script does not exist, so reaching it would raise.
        await DirectoryScaffolder(str(tmp_path / "nope.sh")).scaffold(
            str(target), "react-ts-vite-tailwind-v4"
        )
        assert (target / "main.tsx").read_text() == "keep me"


class TestSessionDriver:
    """Tests for the lifecycle driver."""

    @pytest.mark.asyncio
    async def test_full_lifecycle(self, publisher, supervisor, tmp_path):
        driver = SessionDriver(
            make_agent(ok_handler), publisher, scaffolder=FakeScaffolder(), supervisor=supervisor
        )
        directory = str(tmp_path / "code")

        ok = await driver.run_session_lifecycle(session_detail(directory), "Build it", 5173)

        assert ok is True
        assert publisher.types == [
            "setup-started",
            "setup-completed",
            "agent-session-created",
            "prompt-started",
            "prompt-completed",
            "dev-server-started",
        ]
        assert publisher.events[2].remote_session_id == "ses_1"
        supervisor.start.assert_awaited_once_with(5, directory, 5173)

    @pytest.mark.asyncio
    async def test_setup_failure_stops_lifecycle(self, publisher, supervisor, tmp_path):
        scaffolder = AsyncMock()
        scaffolder.scaffold = AsyncMock(side_effect=ScaffoldError("Template x not found"))
        driver = SessionDriver(
            make_agent(ok_handler), publisher, scaffolder=scaffolder, supervisor=supervisor
        )

        ok = await driver.run_session_lifecycle(session_detail(str(tmp_path)), "Build it", 5173)

        assert ok is False
        assert publisher.types == ["setup-started", "setup-failed"]
        assert publisher.events[-1].error == "Template x not found"
        supervisor.start.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_agent_session_failure(self, publisher, supervisor, tmp_path):
        def handler(request):
            return httpx.Response(503, json={"error": "agent offline"})

        driver = SessionDriver(
            make_agent(handler), publisher, scaffolder=FakeScaffolder(), supervisor=supervisor
        )

        ok = await driver.run_session_lifecycle(
            session_detail(str(tmp_path / "code")), "Build it", 5173
        )

        assert ok is False
        assert publisher.types[-1] == "setup-failed"
        assert publisher.events[-1].error.startswith("Failed to create agent session")
        assert "prompt-started" not in publisher.types

    @pytest.mark.asyncio
    async def test_prompt_failure(self, publisher, supervisor, tmp_path):
        def handler(request):
            if request.url.path == "/session":
                return httpx.Response(200, json={"id": "ses_1"})
            return httpx.Response(200, json={"error": "Model big-pickle not found"})

        driver = SessionDriver(
            make_agent(handler), publisher, scaffolder=FakeScaffolder(), supervisor=supervisor
        )

        ok = await driver.run_session_lifecycle(
            session_detail(str(tmp_path / "code")), "Build it", 5173
        )

        assert ok is False
        assert publisher.types[-2:] == ["prompt-started", "prompt-failed"]
        assert publisher.events[-1].error == "Model big-pickle not found"
        supervisor.start.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_dev_server_failure_is_reported(self, publisher, supervisor, tmp_path):
        supervisor.start = AsyncMock(
            return_value=StartResult(success=False, error="Directory not found: /x")
        )
        driver = SessionDriver(
            make_agent(ok_handler), publisher, scaffolder=FakeScaffolder(), supervisor=supervisor
        )

        ok = await driver.run_session_lifecycle(
            session_detail(str(tmp_path / "code")), "Build it", 5173
        )

        assert ok is False
        assert publisher.types[-1] == "dev-server-failed"
        assert publisher.events[-1].error == "Directory not found: /x"

    @pytest.mark.asyncio
    async def test_publish_failures_do_not_abort(self, supervisor, tmp_path):
        broken = AsyncMock()
        broken.publish_event = AsyncMock(side_effect=ConnectionError("redis gone"))
        driver = SessionDriver(
            make_agent(ok_handler), broken, scaffolder=FakeScaffolder(), supervisor=supervisor
        )

        ok = await driver.run_session_lifecycle(
            session_detail(str(tmp_path / "code")), "Build it", 5173
        )

        assert ok is True
        assert os.path.isdir(tmp_path / "code")
