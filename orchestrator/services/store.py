"""Durable session store.

Every method opens its own short database session so it can be called from
request handlers, background lifecycle tasks and the event listener alike.
"""

import logging
from datetime import datetime
from typing import List, Optional, Set

from sqlalchemy import select, update

from orchestrator.core.errors import SessionNotFoundError
from orchestrator.db.database import get_db_context
from orchestrator.db.models import Batch, ContainerMetadata, Session, Turn
from orchestrator.models.session import (
    DevServerStatus,
    SessionDetail,
    SessionStatus,
    TurnStatus,
)

logger = logging.getLogger(__name__)


class SessionStore:
    """Reads and transitions Session, Turn and correlation rows."""

    async def get_session(self, session_id: int) -> Optional[SessionDetail]:
        async with get_db_context() as db:
            session = await db.get(Session, session_id)
            if session is None:
                return None
            return SessionDetail.model_validate(session)

    async def require_session(self, session_id: int) -> SessionDetail:
        session = await self.get_session(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    async def get_batch_prompt(self, batch_id: Optional[int]) -> Optional[str]:
        if batch_id is None:
            return None
        async with get_db_context() as db:
            batch = await db.get(Batch, batch_id)
            return batch.prompt if batch else None

    async def list_running_sessions(self) -> List[SessionDetail]:
        async with get_db_context() as db:
            result = await db.execute(
                select(Session).where(
                    Session.dev_server_status == DevServerStatus.RUNNING.value
                )
            )
            return [SessionDetail.model_validate(s) for s in result.scalars().all()]

    async def update_status(
        self,
        session_id: int,
        status: SessionStatus,
        error: Optional[str] = None,
    ) -> None:
        """Move a session to `status`; `error` is kept only for failure states."""
        values = {"status": status.value, "updated_at": datetime.utcnow()}
        if status.is_failure:
            values["error"] = error
        else:
            values["error"] = None
        await self._update_session(session_id, **values)

    async def set_remote_session_id(
        self, session_id: int, remote_session_id: str
    ) -> None:
        await self._update_session(
            session_id,
            remote_session_id=remote_session_id,
            updated_at=datetime.utcnow(),
        )

    async def set_dev_server_status(
        self,
        session_id: int,
        status: DevServerStatus,
        pid: Optional[int] = None,
    ) -> None:
        """Record dev server status; the pid only survives in active states."""
        await self._update_session(
            session_id,
            dev_server_status=status.value,
            dev_server_pid=pid if status.is_active else None,
            updated_at=datetime.utcnow(),
        )

    async def get_dev_server_record(
        self, session_id: int
    ) -> tuple[Optional[int], Optional[int]]:
        """Return the persisted (pid, port) for a session."""
        async with get_db_context() as db:
            result = await db.execute(
                select(Session.dev_server_pid, Session.port).where(
                    Session.id == session_id
                )
            )
            row = result.one_or_none()
            if row is None:
                return None, None
            return row[0], row[1]

    async def set_port(self, session_id: int, port: Optional[int]) -> None:
        await self._update_session(session_id, port=port, updated_at=datetime.utcnow())

    async def reserved_ports(self, exclude_session_id: Optional[int] = None) -> Set[int]:
        async with get_db_context() as db:
            query = select(Session.port).where(Session.port.is_not(None))
            if exclude_session_id is not None:
                query = query.where(Session.id != exclude_session_id)
            result = await db.execute(query)
            return {row[0] for row in result.fetchall()}

    async def create_turn(
        self, session_id: int, start_time: Optional[datetime] = None
    ) -> int:
        async with get_db_context() as db:
            turn = Turn(
                session_id=session_id,
                start_time=start_time or datetime.utcnow(),
                status=TurnStatus.PENDING.value,
            )
            db.add(turn)
            await db.flush()
            return turn.id

    async def close_turn(
        self,
        session_id: int,
        status: TurnStatus,
        error: Optional[str] = None,
    ) -> Optional[int]:
        """Close the most recent pending turn of a session."""
        async with get_db_context() as db:
            result = await db.execute(
                select(Turn)
                .where(
                    Turn.session_id == session_id,
                    Turn.status == TurnStatus.PENDING.value,
                )
                .order_by(Turn.start_time.desc(), Turn.id.desc())
                .limit(1)
            )
            turn = result.scalar_one_or_none()
            if turn is None:
                logger.warning(f"No pending turn to close for session {session_id}")
                return None
            turn.status = status.value
            turn.error = error
            turn.end_time = datetime.utcnow()
            return turn.id

    async def find_container(self, session_id: int) -> Optional[str]:
        async with get_db_context() as db:
            result = await db.execute(
                select(ContainerMetadata.container_id).where(
                    ContainerMetadata.session_id == session_id
                )
            )
            return result.scalar_one_or_none()

    async def record_container(self, session_id: int, container_id: str) -> None:
        async with get_db_context() as db:
            db.add(ContainerMetadata(session_id=session_id, container_id=container_id))

    async def _update_session(self, session_id: int, **values) -> None:
        async with get_db_context() as db:
            result = await db.execute(
                update(Session).where(Session.id == session_id).values(**values)
            )
            if result.rowcount == 0:
                raise SessionNotFoundError(session_id)


session_store = SessionStore()
