"""SQLAlchemy model for queued background jobs."""

from datetime import datetime
from typing import Any
from uuid import uuid4

from sqlalchemy import JSON, VARCHAR, Boolean, DateTime, Float, Index, SmallInteger, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from forum_stage.db.session import Base
from forum_stage.db.time import utcnow

JOB_STATUS_PENDING = "pending"
JOB_STATUS_ACTIVE = "active"
JOB_STATUS_COMPLETED = "completed"
JOB_STATUS_DEAD = "dead"

BACKOFF_EXPONENTIAL = "exponential"
BACKOFF_FIXED = "fixed"


class Job(Base):
    """Unit of asynchronous work with retry bookkeeping.

    Rows are inserted by the job queue and consumed by worker pools. A job is
    claimable while pending and due, or while active with an expired lease.
    """

    __tablename__ = "job"
    __table_args__ = (Index("ix_job_queue_status_available", "queue", "status", "available_at"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid4()))
    queue: Mapped[str] = mapped_column(String(64), nullable=False)
    kind: Mapped[str] = mapped_column(String(32), nullable=False)  # payload variant tag
    payload: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
    status: Mapped[str] = mapped_column(
        VARCHAR(16),
        nullable=False,
        default=JOB_STATUS_PENDING,
    )  # 'pending', 'active', 'completed', 'dead'

    attempts_made: Mapped[int] = mapped_column(SmallInteger, nullable=False, default=0)
    max_attempts: Mapped[int] = mapped_column(SmallInteger, nullable=False, default=3)
    backoff_type: Mapped[str] = mapped_column(
        VARCHAR(16),
        nullable=False,
        default=BACKOFF_EXPONENTIAL,
    )
    backoff_delay: Mapped[float] = mapped_column(Float, nullable=False, default=2.0)
    remove_on_complete: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    available_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
    )
    locked_until: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )
    finished_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
