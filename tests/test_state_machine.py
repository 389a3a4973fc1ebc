"""Session state machine tests."""

import pytest

from conftest import list_turns
from orchestrator.models.events import EventType, LifecycleEvent
from orchestrator.models.session import SessionStatus, TurnStatus
from orchestrator.services.state_machine import TRANSITIONS, SessionStateMachine


def event(session_id: int, event_type: EventType, **kwargs) -> LifecycleEvent:
    return LifecycleEvent(session_id=session_id, type=event_type, **kwargs)


@pytest.fixture
def machine(store) -> SessionStateMachine:
    return SessionStateMachine(store)


def test_every_event_type_has_a_transition():
    assert set(TRANSITIONS) == set(EventType)


class TestTransitions:
    """Tests for individual transitions."""

    @pytest.mark.asyncio
    async def test_happy_path(self, machine, make_session, store):
        session_id = await make_session()

        await machine.apply(event(session_id, EventType.SETUP_STARTED))
        assert (await store.get_session(session_id)).status == SessionStatus.SETUP_PENDING

        await machine.apply(event(session_id, EventType.SETUP_COMPLETED))
        assert (await store.get_session(session_id)).status == SessionStatus.SETUP_PENDING

        await machine.apply(
            event(session_id, EventType.AGENT_SESSION_CREATED, remote_session_id="ses_abc")
        )
        assert (await store.get_session(session_id)).remote_session_id == "ses_abc"

        await machine.apply(event(session_id, EventType.PROMPT_STARTED))
        assert (await store.get_session(session_id)).status == SessionStatus.PROMPTING
        turns = await list_turns(session_id)
        assert [t.status for t in turns] == [TurnStatus.PENDING.value]

        await machine.apply(event(session_id, EventType.PROMPT_COMPLETED))
        session = await store.get_session(session_id)
        assert session.status == SessionStatus.COMPLETED
        assert session.error is None
        turns = await list_turns(session_id)
        assert turns[0].status == TurnStatus.COMPLETED.value
        assert turns[0].end_time is not None

    @pytest.mark.asyncio
    async def test_setup_failed_records_error(self, machine, make_session, store):
        session_id = await make_session()

        await machine.apply(event(session_id, EventType.SETUP_STARTED))
        await machine.apply(
            event(session_id, EventType.SETUP_FAILED, error="Template missing not found")
        )

        session = await store.get_session(session_id)
        assert session.status == SessionStatus.FAILED
        assert session.error == "Template missing not found"

    @pytest.mark.asyncio
    async def test_prompt_failed_closes_turn(self, machine, make_session, store):
        session_id = await make_session()

        await machine.apply(event(session_id, EventType.PROMPT_STARTED))
        await machine.apply(event(session_id, EventType.PROMPT_FAILED, error="Model not found"))

        session = await store.get_session(session_id)
        assert session.status == SessionStatus.FAILED
        assert session.error == "Model not found"
        turns = await list_turns(session_id)
        assert turns[0].status == TurnStatus.FAILED.value
        assert turns[0].error == "Model not found"

    @pytest.mark.asyncio
    async def test_error_cleared_on_new_run(self, machine, make_session, store):
        session_id = await make_session()

        await machine.apply(event(session_id, EventType.SETUP_FAILED, error="boom"))
        await machine.apply(event(session_id, EventType.SETUP_STARTED))

        session = await store.get_session(session_id)
        assert session.status == SessionStatus.SETUP_PENDING
        assert session.error is None

    @pytest.mark.asyncio
    async def test_dev_server_events_are_advisory(self, machine, make_session, store):
        session_id = await make_session()
        before = await store.get_session(session_id)

        for event_type in (
            EventType.DEV_SERVER_STARTED,
            EventType.DEV_SERVER_COMPLETED,
            EventType.DEV_SERVER_FAILED,
        ):
            await machine.apply(event(session_id, event_type, error="x"))

        after = await store.get_session(session_id)
        assert after.status == before.status
        assert after.dev_server_status == before.dev_server_status

    @pytest.mark.asyncio
    async def test_prompt_completed_without_pending_turn(self, machine, make_session, store):
        session_id = await make_session()

        await machine.apply(event(session_id, EventType.PROMPT_COMPLETED))

        assert (await store.get_session(session_id)).status == SessionStatus.COMPLETED
        assert await list_turns(session_id) == []
