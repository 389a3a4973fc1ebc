"""Execution environment Pydantic models."""

from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


class PortPair(BaseModel):
    """Host ports bound to one execution environment."""

    control_port: int
    app_port: int


class EnvironmentState(BaseModel):
    """Runtime-reported state of an execution environment."""

    container_id: str
    exists: bool = True
    running: bool = False
    status: str = "unknown"
    ports: List[int] = Field(default_factory=list)


class EnvironmentInfo(BaseModel):
    """An execution environment correlated with a session."""

    model_config = ConfigDict(populate_by_name=True)

    session_id: int = Field(alias="sessionId")
    container_id: str = Field(alias="containerId")
    control_port: Optional[int] = Field(default=None, alias="controlPort")
    app_port: Optional[int] = Field(default=None, alias="appPort")
    running: bool = False
    created: bool = False
