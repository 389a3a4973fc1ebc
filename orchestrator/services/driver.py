"""Remote session driver: scaffold, create agent session, prompt, serve.

Every step reports progress as a lifecycle event. The first failing step
publishes a typed failure event and the remaining steps are skipped; nothing
is retried here.
"""

import asyncio
import logging
import os
from typing import Optional, Protocol

from prometheus_client import Counter

from orchestrator.core.config import get_settings
from orchestrator.core.errors import AgentServiceError, ScaffoldError
from orchestrator.models.events import EventType, LifecycleEvent
from orchestrator.models.session import SessionDetail
from orchestrator.services.agent import AgentClient
from orchestrator.services.supervisor import ProcessSupervisor

logger = logging.getLogger(__name__)
settings = get_settings()

DEV_SERVER_STARTS = Counter(
    "orchestrator_dev_server_starts_total",
    "Dev server start attempts after a lifecycle run",
    ["outcome"],
)


class EventPublisher(Protocol):
    async def publish_event(self, event: LifecycleEvent) -> int: ...


class DirectoryScaffolder:
    """Prepares a session's working directory from a starter template."""

    def __init__(
        self,
        script: Optional[str] = None,
        shell: Optional[str] = None,
    ):
        self.script = script or settings.scaffold_script
        self.shell = shell or settings.scaffold_shell

    async def scaffold(self, directory: str, template: str) -> None:
        """Run the scaffold script unless the directory already has content.

        Raises:
            ScaffoldError: If the script is missing or exits non-zero.
        """
        if os.path.isdir(directory) and os.listdir(directory):
            logger.info(f"Directory {directory} already scaffolded")
            return

        script = os.path.abspath(self.script)
        if not os.path.exists(script):
            raise ScaffoldError(f"Shell script not found at path: {script}")

        parent = os.path.dirname(os.path.abspath(directory))
        os.makedirs(parent, exist_ok=True)

        try:
            process = await asyncio.create_subprocess_exec(
                self.shell, script, directory, template,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
        except OSError as e:
            raise ScaffoldError(f"Failed to run scaffold script: {e}") from e

        output, _ = await process.communicate()
        if process.returncode != 0:
            tail = output.decode("utf-8", errors="replace")[-500:] if output else ""
            raise ScaffoldError(
                f"Shell script exited with code {process.returncode}"
                + (f": {tail.strip()}" if tail.strip() else "")
            )


class SessionDriver:
    """Runs a session's lifecycle against the agent service."""

    def __init__(
        self,
        agent: AgentClient,
        publisher: EventPublisher,
        scaffolder: Optional[DirectoryScaffolder] = None,
        supervisor: Optional[ProcessSupervisor] = None,
    ):
        self.agent = agent
        self.publisher = publisher
        self.scaffolder = scaffolder or DirectoryScaffolder()
        self.supervisor = supervisor

    async def emit(
        self,
        session_id: int,
        event_type: EventType,
        error: Optional[str] = None,
        remote_session_id: Optional[str] = None,
    ) -> None:
        event = LifecycleEvent(
            session_id=session_id,
            type=event_type,
            error=error,
            remote_session_id=remote_session_id,
        )
        try:
            await self.publisher.publish_event(event)
        except Exception as e:
            # Lost events are an accepted limitation of the channel.
            logger.error(f"Failed to publish {event_type.value} for session {session_id}: {e}")

    async def setup(self, session_id: int, directory: str, template: str) -> bool:
        await self.emit(session_id, EventType.SETUP_STARTED)
        try:
            await self.scaffolder.scaffold(directory, template)
        except Exception as e:
            logger.error(f"Setup failed for session {session_id}: {e}")
            await self.emit(session_id, EventType.SETUP_FAILED, error=str(e))
            return False
        await self.emit(session_id, EventType.SETUP_COMPLETED)
        return True

    async def create_agent_session(self, session_id: int, directory: str) -> Optional[str]:
        try:
            remote_session_id = await self.agent.create_session(directory)
        except Exception as e:
            logger.error(f"Agent session creation failed for session {session_id}: {e}")
            await self.emit(
                session_id,
                EventType.SETUP_FAILED,
                error=f"Failed to create agent session: {e}",
            )
            return None
        await self.emit(
            session_id,
            EventType.AGENT_SESSION_CREATED,
            remote_session_id=remote_session_id,
        )
        return remote_session_id

    async def prompt(
        self,
        session_id: int,
        remote_session_id: str,
        message: str,
        model_id: str,
        provider_id: str,
        directory: str,
    ) -> bool:
        await self.emit(session_id, EventType.PROMPT_STARTED)
        try:
            await self.agent.prompt(
                remote_session_id, message, model_id, provider_id, directory
            )
        except AgentServiceError as e:
            logger.error(f"Prompt failed for session {session_id}: {e}")
            await self.emit(session_id, EventType.PROMPT_FAILED, error=str(e))
            return False
        except Exception as e:
            logger.exception(f"Unexpected prompt failure for session {session_id}")
            await self.emit(session_id, EventType.PROMPT_FAILED, error=str(e) or "Unknown error")
            return False
        await self.emit(session_id, EventType.PROMPT_COMPLETED)
        return True

    async def execute(
        self,
        session_id: int,
        directory: str,
        message: str,
        model_id: str,
        provider_id: str,
    ) -> bool:
        """Create the agent session, then prompt it."""
        remote_session_id = await self.create_agent_session(session_id, directory)
        if remote_session_id is None:
            return False
        return await self.prompt(
            session_id, remote_session_id, message, model_id, provider_id, directory
        )

    async def start_dev_server(self, session_id: int, directory: str, port: int) -> bool:
        if self.supervisor is None:
            return False
        try:
            result = await self.supervisor.start(session_id, directory, port)
        except Exception as e:
            logger.exception(f"Dev server start crashed for session {session_id}")
            result_ok, error = False, str(e)
        else:
            result_ok, error = result.success, result.error

        DEV_SERVER_STARTS.labels(outcome="success" if result_ok else "failure").inc()
        if result_ok:
            await self.emit(session_id, EventType.DEV_SERVER_STARTED)
        else:
            await self.emit(session_id, EventType.DEV_SERVER_FAILED, error=error)
        return result_ok

    async def run_session_lifecycle(
        self, session: SessionDetail, message: str, port: int
    ) -> bool:
        """Run every step for `session`; returns True when the dev server is up."""
        logger.info(f"Running lifecycle for session {session.id} on port {port}")
        if not await self.setup(session.id, session.directory, session.starter_template):
            return False
        if not await self.execute(
            session.id, session.directory, message, session.model_id, session.provider_id
        ):
            return False
        return await self.start_dev_server(session.id, session.directory, port)
