"""HTTP client for the coding-agent service."""

import logging
from typing import Any, Dict, Optional

import httpx

from orchestrator.core.config import get_settings
from orchestrator.core.errors import AgentServiceError

logger = logging.getLogger(__name__)
settings = get_settings()


def _error_from_envelope(payload: Any) -> Optional[str]:
    """Pull an error message out of an agent response envelope, if any."""
    if not isinstance(payload, dict):
        return None
    error = payload.get("error")
    if error is None and isinstance(payload.get("info"), dict):
        error = payload["info"].get("error")
    if not error:
        return None
    if isinstance(error, dict):
        data = error.get("data")
        if isinstance(data, dict):
            return str(data.get("message") or data)
        return str(data or error.get("message") or error.get("name") or error)
    return str(error)


class AgentClient:
    """Creates agent sessions and submits prompts.

    Args:
        base_url: Agent service root URL.
        client: Optional preconfigured `httpx.AsyncClient` (tests inject one
            backed by a mock transport).
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
        timeout: Optional[float] = None,
    ):
        self.base_url = (base_url or settings.agent_url).rstrip("/")
        self._client = client
        self._owns_client = client is None
        self.timeout = timeout or settings.agent_timeout

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout)
        return self._client

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def _post(self, path: str, body: Dict[str, Any], params: Dict[str, str]) -> Any:
        client = await self._get_client()
        try:
            response = await client.post(path, json=body, params=params)
        except httpx.HTTPError as e:
            raise AgentServiceError(f"Agent service unreachable: {e}") from e

        try:
            payload = response.json()
        except ValueError:
            payload = None

        error = _error_from_envelope(payload)
        if response.is_error or error:
            raise AgentServiceError(
                error or f"Agent service returned HTTP {response.status_code}"
            )
        return payload

    async def create_session(self, directory: str, title: str = "Client Session") -> str:
        """Create an agent session bound to `directory`; returns its id."""
        payload = await self._post("/session", {"title": title}, {"directory": directory})
        session_id = payload.get("id") if isinstance(payload, dict) else None
        if not session_id:
            raise AgentServiceError("Agent service returned no session id")
        logger.info(f"Created agent session {session_id} for {directory}")
        return session_id

    async def prompt(
        self,
        remote_session_id: str,
        text: str,
        model_id: str,
        provider_id: str,
        directory: str,
    ) -> Dict[str, Any]:
        """Submit a prompt and wait for the agent's response envelope."""
        body = {
            "parts": [{"type": "text", "text": text}],
            "model": {"providerID": provider_id, "modelID": model_id},
        }
        payload = await self._post(
            f"/session/{remote_session_id}/message", body, {"directory": directory}
        )
        return payload if isinstance(payload, dict) else {}
