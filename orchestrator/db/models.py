"""SQLAlchemy ORM models."""

from datetime import datetime
from typing import Optional

from sqlalchemy import DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from orchestrator.db.database import Base


class Batch(Base):
    """Batch database model."""

    __tablename__ = "batches"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    prompt: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=datetime.utcnow
    )

    sessions: Mapped[list["Session"]] = relationship(
        "Session", back_populates="batch"
    )


class Session(Base):
    """Session database model."""

    __tablename__ = "sessions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    batch_id: Mapped[Optional[int]] = mapped_column(
        Integer, ForeignKey("batches.id"), nullable=True
    )
    remote_session_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    directory: Mapped[str] = mapped_column(Text, nullable=False)
    model_id: Mapped[str] = mapped_column(String(128), nullable=False)
    provider_id: Mapped[str] = mapped_column(String(128), nullable=False)
    starter_template: Mapped[str] = mapped_column(
        String(128), nullable=False, default="react-ts-vite-tailwind-v4"
    )
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default="uninitialized"
    )
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Port and dev server tracking
    port: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    dev_server_status: Mapped[str] = mapped_column(
        String(20), nullable=False, default="stopped"
    )
    dev_server_pid: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=datetime.utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow
    )

    # Relationships
    batch: Mapped[Optional["Batch"]] = relationship("Batch", back_populates="sessions")
    turns: Mapped[list["Turn"]] = relationship(
        "Turn", back_populates="session", cascade="all, delete-orphan"
    )

    __table_args__ = (
        Index("idx_sessions_status", "status"),
        Index("idx_sessions_batch", "batch_id"),
        Index("idx_sessions_port", "port"),
    )


class Turn(Base):
    """Turn database model: one prompt submission attempt."""

    __tablename__ = "turns"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    session_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("sessions.id"), nullable=False
    )
    start_time: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    end_time: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    session: Mapped["Session"] = relationship("Session", back_populates="turns")

    __table_args__ = (Index("idx_turns_session", "session_id"),)


class ContainerMetadata(Base):
    """Correlation between a session and its execution environment."""

    __tablename__ = "container_metadata"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    session_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("sessions.id"), nullable=False, unique=True
    )
    container_id: Mapped[str] = mapped_column(String(64), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=datetime.utcnow
    )
