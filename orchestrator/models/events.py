"""Lifecycle events carried over the pub/sub channel."""

from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class EventType(str, Enum):
    """Closed set of lifecycle event tags."""

    AGENT_SESSION_CREATED = "agent-session-created"
    SETUP_STARTED = "setup-started"
    SETUP_COMPLETED = "setup-completed"
    SETUP_FAILED = "setup-failed"
    PROMPT_STARTED = "prompt-started"
    PROMPT_COMPLETED = "prompt-completed"
    PROMPT_FAILED = "prompt-failed"
    DEV_SERVER_STARTED = "dev-server-started"
    DEV_SERVER_COMPLETED = "dev-server-completed"
    DEV_SERVER_FAILED = "dev-server-failed"


class LifecycleEvent(BaseModel):
    """A lifecycle event: `{sessionId, type, error?}`."""

    model_config = ConfigDict(populate_by_name=True)

    session_id: int = Field(alias="sessionId")
    type: EventType
    error: Optional[str] = None
    remote_session_id: Optional[str] = Field(default=None, alias="remoteSessionId")

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True, exclude_none=True)
