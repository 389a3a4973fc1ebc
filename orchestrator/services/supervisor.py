"""Dev server process supervision.

The supervisor owns the table of live dev server handles. It is created at
service start, injected where needed, and drained at shutdown. All start/stop
work for one session runs under that session's lock; different sessions never
wait on each other.
"""

import asyncio
import logging
import os
import shlex
import signal
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Protocol, Sequence

import psutil

from orchestrator.core.config import get_settings
from orchestrator.core.locks import KeyedLock
from orchestrator.models.session import DevServerStatus

logger = logging.getLogger(__name__)
settings = get_settings()


class DevServerStore(Protocol):
    """Where the supervisor records dev server state."""

    async def set_dev_server_status(
        self, session_id: int, status: DevServerStatus, pid: Optional[int] = None
    ) -> None: ...

    async def get_dev_server_record(
        self, session_id: int
    ) -> tuple[Optional[int], Optional[int]]: ...


@dataclass
class StartResult:
    """Outcome of a dev server start request."""

    success: bool
    error: Optional[str] = None
    pid: Optional[int] = None


@dataclass
class DevServerHandle:
    """A tracked dev server subprocess."""

    session_id: int
    port: int
    process: asyncio.subprocess.Process
    ready: asyncio.Event = field(default_factory=asyncio.Event)
    watcher: Optional[asyncio.Task] = None

    @property
    def pid(self) -> int:
        return self.process.pid


class ProcessSupervisor:
    """Starts, watches and terminates per-session dev servers."""

    def __init__(
        self,
        store: DevServerStore,
        command: Optional[Sequence[str]] = None,
        ready_markers: Optional[Sequence[str]] = None,
        ready_timeout: Optional[float] = None,
        kill_grace: Optional[float] = None,
    ):
        self.store = store
        self.command = list(command) if command else shlex.split(settings.dev_server_command)
        self.ready_markers = list(ready_markers or settings.ready_markers)
        self.ready_timeout = (
            settings.dev_server_ready_timeout if ready_timeout is None else ready_timeout
        )
        self.kill_grace = settings.dev_server_kill_grace if kill_grace is None else kill_grace
        self._handles: Dict[int, DevServerHandle] = {}
        self._locks = KeyedLock()

    def is_running(self, session_id: int) -> bool:
        return session_id in self._handles

    def running_sessions(self) -> List[int]:
        return list(self._handles.keys())

    def build_command(self, port: int) -> List[str]:
        return [part.replace("{port}", str(port)) for part in self.command]

    async def start(self, session_id: int, directory: str, port: int) -> StartResult:
        """Start the dev server and wait for readiness.

        Readiness is the first stdout line carrying a ready marker. A server
        that never prints one is treated as running once `ready_timeout`
        elapses.
        """
        async with self._locks.hold(session_id):
            existing = self._handles.get(session_id)
            if existing is not None and existing.process.returncode is None:
                return StartResult(success=True, pid=existing.pid)
            if existing is not None:
                # Exited but not yet recorded; its watcher skips a replaced handle.
                del self._handles[session_id]

            if not os.path.isdir(directory):
                await self.store.set_dev_server_status(session_id, DevServerStatus.ERROR)
                return StartResult(success=False, error=f"Directory not found: {directory}")

            await self.store.set_dev_server_status(session_id, DevServerStatus.STARTING)

            cmd = self.build_command(port)
            logger.info(f"[Session {session_id}] Starting dev server: {' '.join(cmd)}")
            try:
                process = await asyncio.create_subprocess_exec(
                    *cmd,
                    cwd=directory,
                    stdin=asyncio.subprocess.DEVNULL,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                    start_new_session=True,  # own process group, signalled as a whole
                )
            except OSError as e:
                logger.error(f"[Session {session_id}] Failed to spawn dev server: {e}")
                await self.store.set_dev_server_status(session_id, DevServerStatus.ERROR)
                return StartResult(success=False, error=str(e))

            handle = DevServerHandle(session_id=session_id, port=port, process=process)
            self._handles[session_id] = handle
            handle.watcher = asyncio.create_task(self._watch(handle))

            try:
                await asyncio.wait_for(handle.ready.wait(), timeout=self.ready_timeout)
            except asyncio.TimeoutError:
                logger.info(
                    f"[Session {session_id}] No ready marker after "
                    f"{self.ready_timeout}s, assuming dev server is up"
                )

            if process.returncode is not None:
                del self._handles[session_id]
                await self.store.set_dev_server_status(
                    session_id,
                    DevServerStatus.STOPPED if process.returncode == 0 else DevServerStatus.ERROR,
                )
                return StartResult(
                    success=False,
                    error=f"Dev server exited with code {process.returncode}",
                )

            await self.store.set_dev_server_status(
                session_id, DevServerStatus.RUNNING, process.pid
            )
            return StartResult(success=True, pid=process.pid)

    async def _watch(self, handle: DevServerHandle) -> None:
        """Pump output, flag readiness and record the exit status."""
        process = handle.process
        session_id = handle.session_id

        async def pump_stdout() -> None:
            assert process.stdout is not None
            async for raw in process.stdout:
                line = raw.decode("utf-8", errors="replace").rstrip()
                logger.debug(f"[Session {session_id}] stdout: {line}")
                if not handle.ready.is_set() and any(m in line for m in self.ready_markers):
                    handle.ready.set()

        async def pump_stderr() -> None:
            assert process.stderr is not None
            async for raw in process.stderr:
                logger.debug(
                    f"[Session {session_id}] stderr: "
                    f"{raw.decode('utf-8', errors='replace').rstrip()}"
                )

        try:
            await asyncio.gather(pump_stdout(), pump_stderr())
            code = await process.wait()
        finally:
            # Unblock a start() still waiting on readiness.
            handle.ready.set()

        logger.info(f"[Session {session_id}] Dev server exited with code {code}")
        async with self._locks.hold(session_id):
            if self._handles.get(session_id) is not handle:
                return
            status = DevServerStatus.STOPPED if code == 0 else DevServerStatus.ERROR
            try:
                await self.store.set_dev_server_status(session_id, status)
            except Exception as e:
                logger.error(f"[Session {session_id}] Failed to record exit: {e}")
            finally:
                del self._handles[session_id]

    async def stop(self, session_id: int) -> bool:
        """Stop a session's dev server by every means available.

        All three strategies always run: the tracked process group, the
        persisted pid's process tree, and whatever holds the reserved port.
        Any one of them can miss (stale handle, reparented child, restarted
        orchestrator), so the session is only marked stopped after all three.
        """
        async with self._locks.hold(session_id):
            handle = self._handles.pop(session_id, None)
            pid, port = await self.store.get_dev_server_record(session_id)

            if handle is not None:
                logger.info(
                    f"[Session {session_id}] Killing tracked process group "
                    f"(PID: {handle.pid})"
                )
                await self._kill_process_group(handle)

            if pid:
                logger.info(f"[Session {session_id}] Killing by stored PID: {pid}")
                await asyncio.to_thread(kill_process_tree, pid, self.kill_grace)

            if port:
                logger.info(f"[Session {session_id}] Killing processes on port: {port}")
                await asyncio.to_thread(kill_port_holders, port, self.kill_grace)

            await self.store.set_dev_server_status(session_id, DevServerStatus.STOPPED)
            return True

    async def _kill_process_group(self, handle: DevServerHandle) -> None:
        process = handle.process
        if process.returncode is None:
            try:
                os.killpg(process.pid, signal.SIGTERM)
            except ProcessLookupError:
                pass
            except PermissionError as e:
                logger.warning(f"SIGTERM to group {process.pid} failed: {e}")

            try:
                await asyncio.wait_for(process.wait(), timeout=self.kill_grace)
            except asyncio.TimeoutError:
                pass

            # Children may outlive the leader, so the group is killed regardless.
            try:
                os.killpg(process.pid, signal.SIGKILL)
            except (ProcessLookupError, PermissionError):
                pass

        if handle.watcher is not None:
            handle.watcher.cancel()
            try:
                await handle.watcher
            except asyncio.CancelledError:
                pass
            except Exception as e:
                logger.warning(f"Dev server watcher ended with error: {e}")

        if process.returncode is None:
            try:
                await asyncio.wait_for(process.wait(), timeout=self.kill_grace)
            except asyncio.TimeoutError:
                logger.warning(f"Process {process.pid} still alive after SIGKILL")

    async def shutdown(self) -> None:
        """Stop every tracked dev server."""
        for session_id in self.running_sessions():
            try:
                await self.stop(session_id)
            except Exception as e:
                logger.error(f"[Session {session_id}] Failed to stop on shutdown: {e}")


def _terminate_and_reap(procs: List[psutil.Process], grace: float) -> None:
    for proc in procs:
        try:
            proc.terminate()
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            pass
    _, alive = psutil.wait_procs(procs, timeout=grace)
    for proc in alive:
        try:
            proc.kill()
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            pass
    if alive:
        psutil.wait_procs(alive, timeout=grace)


def kill_process_tree(pid: int, grace: float = 0.5) -> bool:
    """Terminate a process and all of its descendants.

    Returns False if the process was already gone.
    """
    if pid == os.getpid():
        logger.warning("Refusing to kill the orchestrator's own process")
        return False
    try:
        parent = psutil.Process(pid)
        children = parent.children(recursive=True)
    except psutil.NoSuchProcess:
        return False
    except psutil.AccessDenied as e:
        logger.warning(f"Access denied inspecting PID {pid}: {e}")
        return False
    _terminate_and_reap(children + [parent], grace)
    return True


def find_port_holders(port: int) -> List[psutil.Process]:
    """Processes with a listening socket on `port`."""
    holders: Dict[int, psutil.Process] = {}
    try:
        connections = psutil.net_connections(kind="inet")
    except psutil.AccessDenied as e:
        logger.warning(f"Cannot list connections: {e}")
        return []
    for conn in connections:
        if not conn.laddr or conn.laddr.port != port or conn.pid is None:
            continue
        if conn.status not in (psutil.CONN_LISTEN, psutil.CONN_NONE):
            continue
        if conn.pid == os.getpid() or conn.pid in holders:
            continue
        try:
            holders[conn.pid] = psutil.Process(conn.pid)
        except psutil.NoSuchProcess:
            continue
    return list(holders.values())


def kill_port_holders(port: int, grace: float = 0.5) -> int:
    """Terminate whatever is listening on `port`; returns how many were hit."""
    holders = find_port_holders(port)
    for proc in holders:
        kill_process_tree(proc.pid, grace)
    return len(holders)
