"""Code runner configuration."""

import os
from dataclasses import dataclass
from typing import Optional


@dataclass
class RunnerConfig:
    """Configuration for the in-environment control API."""

    session_id: Optional[int]
    redis_url: str
    events_channel: str = "events"
    code_dir: str = "/code"
    agent_url: str = "http://localhost:4096"
    default_provider: str = "opencode"
    app_port: int = 5173
    host: str = "0.0.0.0"
    port: int = 3000
    start_dev_server: bool = True

    @classmethod
    def from_env(cls) -> "RunnerConfig":
        """Create config from environment variables."""
        session_id = os.environ.get("SESSION_ID")
        return cls(
            session_id=int(session_id) if session_id and session_id.isdigit() else None,
            redis_url=os.environ.get("REDIS_URL", "redis://redis:6379"),
            events_channel=os.environ.get("EVENTS_CHANNEL", "events"),
            code_dir=os.environ.get("CODE_DIR", "/code"),
            agent_url=os.environ.get("AGENT_URL", "http://localhost:4096"),
            default_provider=os.environ.get("AGENT_PROVIDER", "opencode"),
            app_port=int(os.environ.get("APP_PORT", "5173")),
            host=os.environ.get("HOST", "0.0.0.0"),
            port=int(os.environ.get("PORT", "3000")),
            start_dev_server=os.environ.get("START_DEV_SERVER", "true").lower() != "false",
        )
