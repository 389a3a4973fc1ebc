"""Application configuration using Pydantic settings."""

from functools import lru_cache
from typing import List, Optional, Tuple

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Application
    app_name: str = "UI Battle Orchestrator"
    version: str = "1.0.0"
    debug: bool = False
    log_level: str = "INFO"
    host: str = "0.0.0.0"
    port: int = 8000

    # Database
    database_url: str = "sqlite:///data/orchestrator.db"

    # Redis
    redis_url: str = "redis://localhost:6379"
    events_channel: str = "events"

    # Docker
    container_image: str = "ai-ui-battle-coderunner"
    container_control_port: int = 3000
    container_app_port: int = 5173
    environment_host: str = "localhost"
    env_file_path: Optional[str] = ".env"
    env_passthrough: str = "OPENCODE_API_KEY,S3_BUCKET_NAME,S3_ACCESS_KEY_ID,S3_ACCESS_KEY_SECRET,AWS_REGION"

    # Port ranges (inclusive)
    control_port_start: int = 3005
    control_port_end: int = 3025
    app_port_start: int = 5173
    app_port_end: int = 5183

    # Agent service
    agent_url: str = "http://localhost:4096"
    agent_timeout: float = 600.0
    default_template: str = "react-ts-vite-tailwind-v4"
    scaffold_script: str = "starters/scripts/vite-react-ts-tw.sh"
    scaffold_shell: str = "/usr/bin/bash"

    # Dev server
    dev_server_command: str = "pnpm dev --port {port}"
    dev_server_ready_timeout: float = 10.0
    dev_server_kill_grace: float = 0.5
    dev_server_ready_markers: str = "Local:,localhost"

    # Execution
    run_in_environment: bool = False

    # Timeouts
    startup_timeout: float = 60.0
    request_timeout: float = 30.0

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"  # Allow extra env vars not defined in Settings

    @property
    def control_port_range(self) -> Tuple[int, int]:
        return (self.control_port_start, self.control_port_end)

    @property
    def app_port_range(self) -> Tuple[int, int]:
        return (self.app_port_start, self.app_port_end)

    @property
    def ready_markers(self) -> List[str]:
        return [m for m in self.dev_server_ready_markers.split(",") if m]

    @property
    def passthrough_names(self) -> List[str]:
        return [n.strip() for n in self.env_passthrough.split(",") if n.strip()]


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
