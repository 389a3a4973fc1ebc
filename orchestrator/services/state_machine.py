"""Session state machine driven by lifecycle events.

Each event type maps to exactly one transition. The table covers every
`EventType` member; a missing entry fails at import time rather than leaving
an event silently unhandled.
"""

import logging
from typing import Awaitable, Callable, Dict

from prometheus_client import Counter

from orchestrator.models.events import EventType, LifecycleEvent
from orchestrator.models.session import SessionStatus, TurnStatus
from orchestrator.services.store import SessionStore, session_store

logger = logging.getLogger(__name__)

EVENTS_APPLIED = Counter(
    "orchestrator_lifecycle_events_total",
    "Lifecycle events applied to sessions",
    ["type"],
)

Transition = Callable[["SessionStateMachine", LifecycleEvent], Awaitable[None]]


class SessionStateMachine:
    """Applies lifecycle events to durable session records."""

    def __init__(self, store: SessionStore = session_store):
        self.store = store

    async def apply(self, event: LifecycleEvent) -> None:
        transition = TRANSITIONS[event.type]
        await transition(self, event)
        EVENTS_APPLIED.labels(type=event.type.value).inc()

    async def _agent_session_created(self, event: LifecycleEvent) -> None:
        if not event.remote_session_id:
            logger.warning(
                f"agent-session-created for session {event.session_id} "
                "carried no remote session id"
            )
            return
        await self.store.set_remote_session_id(event.session_id, event.remote_session_id)

    async def _setup_started(self, event: LifecycleEvent) -> None:
        await self.store.update_status(event.session_id, SessionStatus.SETUP_PENDING)

    async def _setup_completed(self, event: LifecycleEvent) -> None:
        # No status change; prompting follows.
        logger.info(f"Setup completed for session {event.session_id}")

    async def _setup_failed(self, event: LifecycleEvent) -> None:
        await self.store.update_status(
            event.session_id, SessionStatus.FAILED, event.error or "Setup failed"
        )

    async def _prompt_started(self, event: LifecycleEvent) -> None:
        await self.store.create_turn(event.session_id)
        await self.store.update_status(event.session_id, SessionStatus.PROMPTING)

    async def _prompt_completed(self, event: LifecycleEvent) -> None:
        await self.store.update_status(event.session_id, SessionStatus.COMPLETED)
        await self.store.close_turn(event.session_id, TurnStatus.COMPLETED)

    async def _prompt_failed(self, event: LifecycleEvent) -> None:
        error = event.error or "Prompt failed"
        await self.store.update_status(event.session_id, SessionStatus.FAILED, error)
        await self.store.close_turn(event.session_id, TurnStatus.FAILED, error)

    async def _dev_server_advisory(self, event: LifecycleEvent) -> None:
        # Dev server status is owned by the ProcessSupervisor.
        logger.info(
            f"Dev server event {event.type.value} for session {event.session_id}"
            + (f": {event.error}" if event.error else "")
        )


TRANSITIONS: Dict[EventType, Transition] = {
    EventType.AGENT_SESSION_CREATED: SessionStateMachine._agent_session_created,
    EventType.SETUP_STARTED: SessionStateMachine._setup_started,
    EventType.SETUP_COMPLETED: SessionStateMachine._setup_completed,
    EventType.SETUP_FAILED: SessionStateMachine._setup_failed,
    EventType.PROMPT_STARTED: SessionStateMachine._prompt_started,
    EventType.PROMPT_COMPLETED: SessionStateMachine._prompt_completed,
    EventType.PROMPT_FAILED: SessionStateMachine._prompt_failed,
    EventType.DEV_SERVER_STARTED: SessionStateMachine._dev_server_advisory,
    EventType.DEV_SERVER_COMPLETED: SessionStateMachine._dev_server_advisory,
    EventType.DEV_SERVER_FAILED: SessionStateMachine._dev_server_advisory,
}

_missing = set(EventType) - set(TRANSITIONS)
if _missing:
    raise RuntimeError(f"No transition for event types: {sorted(m.value for m in _missing)}")
