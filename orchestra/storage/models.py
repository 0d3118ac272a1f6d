"""SQLAlchemy ORM models for agent definitions, conversation memory and the job queue.

Column types are kept dialect-neutral so the same models run on PostgreSQL
(asyncpg) and SQLite (aiosqlite).  Timestamps are assigned client-side in
UTC so comparisons inside SQL behave the same on both.
"""

import uuid
from datetime import UTC, datetime

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    Index,
    Integer,
    LargeBinary,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def utcnow() -> datetime:
    return datetime.now(UTC)


def new_id() -> str:
    return uuid.uuid4().hex


class Base(DeclarativeBase):
    """Declarative base for the main database."""

    pass


class KVBase(DeclarativeBase):
    """Declarative base for embedded key-value files."""

    pass


# =============================================================================
# Agent definitions
# =============================================================================


class AgentRecord(Base):
    """Persisted agent definition.  The full definition lives in ``config``."""

    __tablename__ = "agents"

    id: Mapped[str] = mapped_column(String(128), primary_key=True)
    name: Mapped[str] = mapped_column(String(256), nullable=False)
    enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, index=True)
    config: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )


# =============================================================================
# Conversation memory
# =============================================================================


class AgentMessage(Base):
    """One message of an agent session, ordered by ``sequence``."""

    __tablename__ = "agent_messages"
    __table_args__ = (
        UniqueConstraint("agent_id", "session_id", "sequence", name="uq_agent_message_seq"),
        CheckConstraint(
            "role IN ('system', 'user', 'assistant', 'tool')",
            name="chk_agent_message_role",
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    agent_id: Mapped[str] = mapped_column(String(128), nullable=False)
    session_id: Mapped[str] = mapped_column(String(256), nullable=False)
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)
    role: Mapped[str] = mapped_column(String(20), nullable=False)
    name: Mapped[str | None] = mapped_column(String(128))
    content: Mapped[str] = mapped_column(Text, nullable=False, default="")
    tool_call: Mapped[dict | None] = mapped_column(JSON)
    tool_call_id: Mapped[str | None] = mapped_column(String(128))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


class KVEntry(KVBase):
    """Bucketed key-value row; keys sort lexicographically within a bucket."""

    __tablename__ = "kv_entries"

    bucket: Mapped[str] = mapped_column(String(512), primary_key=True)
    key: Mapped[str] = mapped_column(String(64), primary_key=True)
    value: Mapped[bytes] = mapped_column(LargeBinary, nullable=False)


# =============================================================================
# Job queue
# =============================================================================


class AgentJob(Base):
    """Durable queue entry.  Deleted once a worker acknowledges it."""

    __tablename__ = "agent_jobs"
    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'running', 'failed')",
            name="chk_agent_job_status",
        ),
        Index("ix_agent_jobs_due", "queue", "status", "run_after"),
    )

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=new_id)
    queue: Mapped[str] = mapped_column(String(64), nullable=False, default="agents")
    task_type: Mapped[str] = mapped_column(String(64), nullable=False, default="agent:run")
    payload: Mapped[bytes] = mapped_column(LargeBinary, nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    concurrency_key: Mapped[str | None] = mapped_column(String(512), index=True)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_retries: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    timeout_seconds: Mapped[int] = mapped_column(Integer, nullable=False, default=300)
    worker_id: Mapped[str | None] = mapped_column(String(100))
    last_error: Mapped[str | None] = mapped_column(Text)
    run_after: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    lease_expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    failed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
