"""Orchestrator exception hierarchy."""

from typing import Optional


class OrchestratorError(Exception):
    """Base class for orchestrator errors."""


class CapacityError(OrchestratorError):
    """No capacity left to serve the request."""


class PortsExhaustedError(CapacityError):
    """Every port in a configured range is in use."""

    def __init__(self, range_name: str = "application"):
        self.range_name = range_name
        super().__init__(f"No available {range_name} ports")


class NotFoundError(OrchestratorError):
    """A referenced entity does not exist."""


class SessionNotFoundError(NotFoundError):
    def __init__(self, session_id: int):
        self.session_id = session_id
        super().__init__(f"Session {session_id} not found")


class EnvironmentNotFoundError(NotFoundError):
    def __init__(self, session_id: int, detail: Optional[str] = None):
        self.session_id = session_id
        super().__init__(detail or f"No execution environment for session {session_id}")


class ConflictError(OrchestratorError):
    """The request conflicts with the current session state."""


class RunAlreadyActiveError(ConflictError):
    def __init__(self, session_id: int):
        self.session_id = session_id
        super().__init__(f"Session {session_id} is already running or starting")


class ExternalDependencyError(OrchestratorError):
    """An external collaborator (agent service, runtime, shell) failed."""


class AgentServiceError(ExternalDependencyError):
    """The coding-agent service returned an error envelope or was unreachable."""


class ScaffoldError(ExternalDependencyError):
    """Scaffolding the working directory failed."""
