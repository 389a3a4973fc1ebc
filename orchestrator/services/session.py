"""Session run orchestration.

`run` reserves a port, submits the lifecycle as a background task and returns
straight away. Nothing is pushed back to the caller when the task finishes:
status is read by polling the session, and every status write the background
work makes happens after the `run` response was produced.
"""

import asyncio
import logging
from typing import Any, Dict, Optional, Set

import httpx

from orchestrator.core.config import get_settings
from orchestrator.core.errors import (
    ExternalDependencyError,
    RunAlreadyActiveError,
)
from orchestrator.models.container import EnvironmentInfo
from orchestrator.models.session import (
    DevServerResponse,
    DevServerStatus,
    RunResponse,
    SessionDetail,
    SessionStatus,
)
from orchestrator.services.container import ContainerManager
from orchestrator.services.driver import SessionDriver
from orchestrator.services.store import SessionStore
from orchestrator.services.supervisor import ProcessSupervisor

logger = logging.getLogger(__name__)
settings = get_settings()

TERMINAL_STATUSES = {
    SessionStatus.COMPLETED,
    SessionStatus.FAILED,
    SessionStatus.SETUP_FAILED,
}


class SessionRunService:
    """Coordinates ports, environments, the driver and the supervisor."""

    def __init__(
        self,
        store: SessionStore,
        container_manager: ContainerManager,
        supervisor: ProcessSupervisor,
        driver: SessionDriver,
        run_in_environment: Optional[bool] = None,
    ):
        self.store = store
        self.container_manager = container_manager
        self.ports = container_manager.ports
        self.supervisor = supervisor
        self.driver = driver
        self.run_in_environment = (
            settings.run_in_environment if run_in_environment is None else run_in_environment
        )
        self._active: Set[int] = set()
        self._tasks: Set[asyncio.Task] = set()

    def is_active(self, session_id: int) -> bool:
        return session_id in self._active

    @property
    def active_runs(self) -> int:
        return len(self._active)

    async def run(self, session_id: int, message: Optional[str] = None) -> RunResponse:
        """Reserve a port and start the lifecycle in the background.

        Raises:
            SessionNotFoundError: Unknown session.
            RunAlreadyActiveError: A run is in flight or the dev server is up.
            ValueError: No message given and the batch has no prompt.
            PortsExhaustedError: No application port is free.
        """
        session = await self.store.require_session(session_id)
        if session_id in self._active or session.dev_server_status.is_active:
            raise RunAlreadyActiveError(session_id)

        prompt = message or await self.store.get_batch_prompt(session.batch_id)
        if not prompt:
            raise ValueError("No message provided and batch has no stored prompt")

        # Check and claim with no await in between.
        if session_id in self._active:
            raise RunAlreadyActiveError(session_id)
        self._active.add(session_id)

        try:
            port = await self.ports.reserve_app_port(session_id)
        except Exception:
            self._active.discard(session_id)
            raise

        self._submit(session_id, self._run_lifecycle(session, prompt, port))
        return RunResponse(session_id=session_id, port=port)

    def _submit(self, session_id: int, coro) -> asyncio.Task:
        task = asyncio.create_task(coro, name=f"session-{session_id}-lifecycle")
        self._tasks.add(task)

        def _done(t: asyncio.Task) -> None:
            self._tasks.discard(t)
            self._active.discard(session_id)

        task.add_done_callback(_done)
        return task

    async def _run_lifecycle(self, session: SessionDetail, prompt: str, port: int) -> None:
        try:
            if self.run_in_environment:
                ok = await self._run_remote(session, prompt)
            else:
                ok = await self.driver.run_session_lifecycle(session, prompt, port)
            if not ok:
                await self._release_quietly(session.id)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception(f"Unexpected error in session {session.id}")
            try:
                await self.store.update_status(
                    session.id, SessionStatus.FAILED, str(e) or "Unknown error"
                )
            except Exception as store_error:
                logger.error(f"Failed to record failure for session {session.id}: {store_error}")
            await self._release_quietly(session.id)

    async def _run_remote(self, session: SessionDetail, prompt: str) -> bool:
        """Drive the lifecycle inside the session's execution environment."""
        env = await self.container_manager.ensure_environment(session.id)
        if not await self.container_manager.wait_for_startup(env.container_id):
            raise ExternalDependencyError(
                f"Environment {env.container_id[:12]} for session {session.id} did not start"
            )
        base_url = await self.container_manager.control_url(session.id)
        await self._wait_for_health(base_url)
        # A status left over from an earlier run must not end the wait below.
        await self.store.update_status(session.id, SessionStatus.SETUP_PENDING)

        await self._post_control(
            base_url,
            "/setup",
            {"template": session.starter_template, "sessionId": session.id},
        )
        await self._post_control(
            base_url,
            "/execute",
            {
                "prompt": prompt,
                "modelId": session.model_id,
                "providerId": session.provider_id,
                "sessionId": session.id,
            },
        )
        # Hold the run guard until the environment reports a terminal status.
        return await self._wait_for_terminal(session.id)

    async def _wait_for_health(self, base_url: str) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + settings.startup_timeout
        async with httpx.AsyncClient(base_url=base_url, timeout=settings.request_timeout) as client:
            while True:
                try:
                    response = await client.get("/health")
                    if response.status_code == 200:
                        return
                except httpx.HTTPError:
                    pass
                if loop.time() >= deadline:
                    raise ExternalDependencyError(f"Control API at {base_url} never became healthy")
                await asyncio.sleep(0.5)

    async def _wait_for_terminal(self, session_id: int, poll_interval: float = 1.0) -> bool:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + settings.agent_timeout
        while loop.time() < deadline:
            session = await self.store.get_session(session_id)
            if session is None:
                return False
            if session.status in TERMINAL_STATUSES:
                return session.status == SessionStatus.COMPLETED
            await asyncio.sleep(poll_interval)
        logger.warning(f"Session {session_id} did not reach a terminal status in time")
        return False

    async def _post_control(self, base_url: str, path: str, body: Dict[str, Any]) -> Dict[str, Any]:
        async with httpx.AsyncClient(base_url=base_url, timeout=settings.request_timeout) as client:
            try:
                response = await client.post(path, json=body)
            except httpx.HTTPError as e:
                raise ExternalDependencyError(f"Control API call {path} failed: {e}") from e
        try:
            data = response.json()
        except ValueError:
            data = {}
        if response.is_error or not data.get("success", False):
            error = data.get("error") or data.get("detail")
            raise ExternalDependencyError(
                error or f"Control API {path} returned HTTP {response.status_code}"
            )
        return data

    async def proxy_setup(self, session_id: int) -> Dict[str, Any]:
        """Ask the session's environment to scaffold its code directory."""
        session = await self.store.require_session(session_id)
        base_url = await self.container_manager.control_url(session_id)
        return await self._post_control(
            base_url,
            "/setup",
            {"template": session.starter_template, "sessionId": session_id},
        )

    async def proxy_execute(self, session_id: int, message: Optional[str] = None) -> Dict[str, Any]:
        """Ask the session's environment to run the prompt."""
        session = await self.store.require_session(session_id)
        prompt = message or await self.store.get_batch_prompt(session.batch_id)
        if not prompt:
            raise ValueError("No message provided and batch has no stored prompt")
        base_url = await self.container_manager.control_url(session_id)
        return await self._post_control(
            base_url,
            "/execute",
            {
                "prompt": prompt,
                "modelId": session.model_id,
                "providerId": session.provider_id,
                "sessionId": session_id,
            },
        )

    async def ensure_environment(self, session_id: int) -> EnvironmentInfo:
        return await self.container_manager.ensure_environment(session_id)

    async def start_dev(self, session_id: int) -> DevServerResponse:
        """Start a session's dev server on its reserved port.

        Raises:
            SessionNotFoundError: Unknown session.
            PortsExhaustedError: No application port is free.
            ExternalDependencyError: The dev server could not be started.
        """
        session = await self.store.require_session(session_id)
        if session.dev_server_status.is_active:
            return DevServerResponse(
                session_id=session_id,
                port=session.port,
                status=session.dev_server_status,
            )

        port = await self.ports.reserve_app_port(session_id)
        result = await self.supervisor.start(session_id, session.directory, port)
        if not result.success:
            await self._release_quietly(session_id)
            raise ExternalDependencyError(result.error or "Failed to start dev server")

        return DevServerResponse(
            session_id=session_id, port=port, status=DevServerStatus.RUNNING
        )

    async def stop_dev(self, session_id: int) -> DevServerResponse:
        await self.store.require_session(session_id)
        await self.supervisor.stop(session_id)
        await self.ports.release(session_id)
        return DevServerResponse(session_id=session_id, status=DevServerStatus.STOPPED)

    async def _release_quietly(self, session_id: int) -> None:
        try:
            await self.ports.release(session_id)
        except Exception as e:
            logger.error(f"Failed to release port for session {session_id}: {e}")

    async def shutdown(self) -> None:
        """Cancel in-flight lifecycle tasks."""
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

