"""Session-related Pydantic models."""

from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


class SessionStatus(str, Enum):
    """Session status enum."""

    UNINITIALIZED = "uninitialized"
    SETUP_PENDING = "setup_pending"
    SETUP_FAILED = "setup_failed"
    READY = "ready"
    PROMPTING = "prompting"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_failure(self) -> bool:
        return self in (SessionStatus.SETUP_FAILED, SessionStatus.FAILED)


class DevServerStatus(str, Enum):
    """Dev server status enum."""

    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    ERROR = "error"

    @property
    def is_active(self) -> bool:
        return self in (DevServerStatus.STARTING, DevServerStatus.RUNNING)


class TurnStatus(str, Enum):
    """Turn status enum."""

    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class SessionDetail(BaseModel):
    """Detailed session information."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    batch_id: Optional[int] = None
    remote_session_id: Optional[str] = None
    directory: str
    model_id: str
    provider_id: str
    starter_template: str
    status: SessionStatus
    error: Optional[str] = None
    port: Optional[int] = None
    dev_server_status: DevServerStatus
    dev_server_pid: Optional[int] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class SessionList(BaseModel):
    """List of sessions."""

    sessions: List[SessionDetail]
    total: int


class RunRequest(BaseModel):
    """Request body for running a session."""

    message: Optional[str] = None


class RunResponse(BaseModel):
    """Response for a run request; the lifecycle continues in the background."""

    model_config = ConfigDict(populate_by_name=True)

    session_id: int = Field(alias="sessionId")
    port: int
    status: str = "starting"
    message: str = "Session setup started"


class DevServerResponse(BaseModel):
    """Response for dev server operations."""

    model_config = ConfigDict(populate_by_name=True)

    session_id: int = Field(alias="sessionId")
    port: Optional[int] = None
    status: DevServerStatus


class PortAvailability(BaseModel):
    """Application port usage snapshot."""

    available: List[int]
    used: List[int]
    total: int
