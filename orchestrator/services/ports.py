"""Port allocation for execution environments and dev servers.

Nothing here keeps a reservation table of its own. Every allocation is
recomputed from the ports the container runtime reports as bound, plus the
application ports sessions currently hold, so allocation cannot drift from
what is actually bound. The range sizes cap how many sessions run at once.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Iterable, Optional, Set, Tuple

from orchestrator.core.config import get_settings
from orchestrator.core.errors import PortsExhaustedError
from orchestrator.models.container import PortPair
from orchestrator.models.session import PortAvailability
from orchestrator.services.store import SessionStore, session_store

logger = logging.getLogger(__name__)
settings = get_settings()

PortRange = Tuple[int, int]


def in_range(port: int, port_range: PortRange) -> bool:
    return port_range[0] <= port <= port_range[1]


def lowest_free(used: Iterable[int], port_range: PortRange) -> Optional[int]:
    """Return the smallest port in the inclusive range not in `used`."""
    taken = set(used)
    for port in range(port_range[0], port_range[1] + 1):
        if port not in taken:
            return port
    return None


def partition(
    ports: Iterable[int], ctrl_range: PortRange, app_range: PortRange
) -> Tuple[Set[int], Set[int]]:
    """Split bound ports into (control, application) sets, dropping the rest."""
    ctrl_used: Set[int] = set()
    app_used: Set[int] = set()
    for port in ports:
        if in_range(port, ctrl_range):
            ctrl_used.add(port)
        if in_range(port, app_range):
            app_used.add(port)
    return ctrl_used, app_used


def allocate_pair(
    used_ports: Iterable[int], ctrl_range: PortRange, app_range: PortRange
) -> PortPair:
    """Pick the lowest free port in each range.

    Raises:
        PortsExhaustedError: If either range has no free port left.
    """
    ctrl_used, app_used = partition(used_ports, ctrl_range, app_range)
    control_port = lowest_free(ctrl_used, ctrl_range)
    if control_port is None:
        raise PortsExhaustedError("control")
    app_port = lowest_free(app_used, app_range)
    if app_port is None:
        raise PortsExhaustedError("application")
    return PortPair(control_port=control_port, app_port=app_port)


class PortAllocator:
    """Allocates ports from runtime truth.

    `bound_ports` is the Environment Inspector's view of host ports bound by
    every known execution environment.
    """

    def __init__(
        self,
        bound_ports: Callable[[], Awaitable[Set[int]]],
        store: SessionStore = session_store,
        ctrl_range: Optional[PortRange] = None,
        app_range: Optional[PortRange] = None,
    ):
        self._bound_ports = bound_ports
        self.store = store
        self.ctrl_range = ctrl_range or settings.control_port_range
        self.app_range = app_range or settings.app_port_range
        self._lock = asyncio.Lock()

    async def snapshot(self) -> Set[int]:
        """Ports in use right now: bound by environments or held by sessions."""
        bound = await self._bound_ports()
        reserved = await self.store.reserved_ports()
        return set(bound) | reserved

    async def allocate_pair(self, session_id: int) -> PortPair:
        """Allocate a control/application pair for a new environment.

        The application half reuses the session's reservation when it has one
        and records a fresh reservation otherwise, so the port stays held
        until released.
        """
        async with self._lock:
            session = await self.store.require_session(session_id)
            bound = set(await self._bound_ports())
            reserved = await self.store.reserved_ports(exclude_session_id=session_id)
            used = bound | reserved
            if session.port is not None and session.port not in used:
                ctrl_used, _ = partition(used, self.ctrl_range, self.app_range)
                control_port = lowest_free(ctrl_used, self.ctrl_range)
                if control_port is None:
                    raise PortsExhaustedError("control")
                pair = PortPair(control_port=control_port, app_port=session.port)
            else:
                pair = allocate_pair(used, self.ctrl_range, self.app_range)
                await self.store.set_port(session_id, pair.app_port)
            logger.info(
                f"Allocated ports {pair.control_port}/{pair.app_port} "
                f"for session {session_id}"
            )
            return pair

    async def reserve_app_port(self, session_id: int) -> int:
        """Reserve an application port for a session.

        A session that already holds a reservation keeps it.

        Raises:
            PortsExhaustedError: If the application range is full.
        """
        async with self._lock:
            session = await self.store.require_session(session_id)
            if session.port is not None:
                return session.port

            bound = set(await self._bound_ports())
            reserved = await self.store.reserved_ports(exclude_session_id=session_id)
            _, app_used = partition(bound | reserved, self.ctrl_range, self.app_range)
            port = lowest_free(app_used, self.app_range)
            if port is None:
                raise PortsExhaustedError("application")

            await self.store.set_port(session_id, port)
            logger.info(f"Reserved port {port} for session {session_id}")
            return port

    async def release(self, session_id: int) -> None:
        async with self._lock:
            await self.store.set_port(session_id, None)
            logger.info(f"Released port for session {session_id}")

    async def available(self) -> PortAvailability:
        used = await self.snapshot()
        _, app_used = partition(used, self.ctrl_range, self.app_range)
        free = [
            port
            for port in range(self.app_range[0], self.app_range[1] + 1)
            if port not in app_used
        ]
        used_sorted = sorted(app_used)
        return PortAvailability(
            available=free,
            used=used_sorted,
            total=len(free) + len(used_sorted),
        )
