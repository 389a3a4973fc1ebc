"""Execution environment management using aiodocker."""

import asyncio
import logging
import os
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Set

import aiodocker
from dotenv import dotenv_values

from orchestrator.core.config import get_settings
from orchestrator.core.errors import EnvironmentNotFoundError
from orchestrator.core.locks import KeyedLock
from orchestrator.models.container import EnvironmentInfo, EnvironmentState, PortPair
from orchestrator.services.ports import PortAllocator, in_range
from orchestrator.services.store import SessionStore, session_store

logger = logging.getLogger(__name__)
settings = get_settings()

SESSION_LABEL = "ui-battle.session_id"


def _is_not_found(error: aiodocker.exceptions.DockerError) -> bool:
    return error.status == 404 or "404" in str(error)


def extract_control_port(ports: Iterable[int]) -> Optional[int]:
    return next((p for p in ports if in_range(p, settings.control_port_range)), None)


def extract_app_port(ports: Iterable[int]) -> Optional[int]:
    return next((p for p in ports if in_range(p, settings.app_port_range)), None)


def host_ports_from_bindings(port_bindings: Optional[Dict]) -> List[int]:
    """Collect host ports from a container's `HostConfig.PortBindings`."""
    ports: List[int] = []
    if not port_bindings:
        return ports
    for bindings in port_bindings.values():
        for binding in bindings or []:
            host_port = (binding or {}).get("HostPort")
            if host_port and str(host_port).isdigit():
                ports.append(int(host_port))
    return ports


class ContainerManager:
    """Creates and inspects execution environments for sessions."""

    def __init__(self, store: SessionStore = session_store):
        self._docker: Optional[aiodocker.Docker] = None
        self.store = store
        self.ports = PortAllocator(self.list_bound_ports, store)
        self._ensure_locks = KeyedLock()

    async def _get_docker(self) -> aiodocker.Docker:
        """Get or create Docker client."""
        if self._docker is None:
            self._docker = aiodocker.Docker()
        return self._docker

    async def ping(self) -> None:
        """Raise if the Docker daemon cannot be reached."""
        docker = await self._get_docker()
        await docker.version()

    async def close(self) -> None:
        """Close Docker client."""
        if self._docker:
            await self._docker.close()
            self._docker = None

    async def list_bound_ports(self) -> Set[int]:
        """Host ports bound by every environment built from our image.

        Stopped containers are included: their bindings come back as soon as
        they are restarted.
        """
        docker = await self._get_docker()
        containers = await docker.containers.list(
            all=True,
            filters={"ancestor": [settings.container_image]},
        )

        ports: Set[int] = set()
        for container in containers:
            try:
                info = await container.show()
            except aiodocker.exceptions.DockerError as e:
                if _is_not_found(e):
                    continue
                raise
            ports.update(
                host_ports_from_bindings(info.get("HostConfig", {}).get("PortBindings"))
            )
        return ports

    async def inspect(self, container_id: str) -> EnvironmentState:
        """Report whether an environment exists, runs, and which ports it holds."""
        docker = await self._get_docker()
        try:
            container = await docker.containers.get(container_id)
            info = await container.show()
        except aiodocker.exceptions.DockerError as e:
            if _is_not_found(e):
                return EnvironmentState(
                    container_id=container_id, exists=False, status="missing"
                )
            raise

        state = info.get("State", {})
        ports = host_ports_from_bindings(info.get("HostConfig", {}).get("PortBindings"))
        return EnvironmentState(
            container_id=container_id,
            exists=True,
            running=bool(state.get("Running")),
            status=state.get("Status", "unknown"),
            ports=sorted(set(ports)),
        )

    async def ensure_environment(self, session_id: int) -> EnvironmentInfo:
        """Return the session's environment, creating and starting it if needed.

        Raises:
            SessionNotFoundError: If the session does not exist.
            PortsExhaustedError: If no port pair is free.
        """
        async with self._ensure_locks.hold(session_id):
            await self.store.require_session(session_id)

            container_id = await self.store.find_container(session_id)
            if container_id:
                state = await self.inspect(container_id)
                return EnvironmentInfo(
                    session_id=session_id,
                    container_id=container_id,
                    control_port=extract_control_port(state.ports),
                    app_port=extract_app_port(state.ports),
                    running=state.running,
                    created=False,
                )

            pair = await self.ports.allocate_pair(session_id)
            container_id = await self.create_container(session_id, pair)

            # The correlation is recorded before start so a failed start still
            # leaves a row pointing at a container that can be found and cleaned.
            await self.store.record_container(session_id, container_id)
            running = await self.start_container(container_id)

            return EnvironmentInfo(
                session_id=session_id,
                container_id=container_id,
                control_port=pair.control_port,
                app_port=pair.app_port,
                running=running,
                created=True,
            )

    async def create_container(self, session_id: int, pair: PortPair) -> str:
        """Create (but do not start) a container bound to `pair`."""
        docker = await self._get_docker()
        control = f"{settings.container_control_port}/tcp"
        app = f"{settings.container_app_port}/tcp"

        config = {
            "Image": settings.container_image,
            "Env": [f"{k}={v}" for k, v in self.build_environment(session_id).items()],
            "Labels": {
                SESSION_LABEL: str(session_id),
                "ui-battle.created_at": datetime.utcnow().isoformat(),
            },
            "ExposedPorts": {control: {}, app: {}},
            "HostConfig": {
                "PortBindings": {
                    control: [{"HostPort": str(pair.control_port)}],
                    app: [{"HostPort": str(pair.app_port)}],
                },
            },
        }

        logger.info(
            f"Creating environment for session {session_id} "
            f"on ports {pair.control_port}/{pair.app_port}"
        )
        try:
            container = await docker.containers.create(config=config)
        except Exception as e:
            logger.error(f"Failed to create container for session {session_id}: {e}")
            raise
        return container.id

    async def start_container(self, container_id: str) -> bool:
        """Start a container; failures are logged and reported as False."""
        docker = await self._get_docker()
        try:
            container = await docker.containers.get(container_id)
            await container.start()
        except aiodocker.exceptions.DockerError as e:
            logger.error(f"Failed to start container {container_id}: {e}")
            return False
        logger.info(f"Started container {container_id}")
        return True

    async def wait_for_startup(
        self, container_id: str, timeout: Optional[float] = None
    ) -> bool:
        """Wait for a container to report running."""
        timeout = timeout or settings.startup_timeout
        loop = asyncio.get_running_loop()
        start_time = loop.time()

        while loop.time() - start_time < timeout:
            state = await self.inspect(container_id)
            if state.running:
                return True
            if not state.exists or state.status in ("exited", "dead"):
                return False
            await asyncio.sleep(0.5)

        return False

    def build_environment(self, session_id: int) -> Dict[str, str]:
        """Environment variables injected into a session's container."""
        environment: Dict[str, str] = {}
        if settings.env_file_path and os.path.exists(settings.env_file_path):
            environment.update(
                {k: v for k, v in dotenv_values(settings.env_file_path).items() if v is not None}
            )
        for name in settings.passthrough_names:
            value = os.environ.get(name)
            if value:
                environment[name] = value
        environment.update(
            {
                "SESSION_ID": str(session_id),
                "REDIS_URL": settings.redis_url,
                "EVENTS_CHANNEL": settings.events_channel,
            }
        )
        return environment

    async def control_url(self, session_id: int) -> str:
        """Base URL of a session's in-environment control API.

        Raises:
            EnvironmentNotFoundError: If the environment is missing or stopped.
        """
        container_id = await self.store.find_container(session_id)
        if not container_id:
            raise EnvironmentNotFoundError(session_id)
        state = await self.inspect(container_id)
        if not state.running:
            raise EnvironmentNotFoundError(
                session_id, f"Environment for session {session_id} is not running"
            )
        control_port = extract_control_port(state.ports)
        if control_port is None:
            raise EnvironmentNotFoundError(
                session_id, f"Environment for session {session_id} has no control port"
            )
        return f"http://{settings.environment_host}:{control_port}"


# Singleton instance
container_manager = ContainerManager()
