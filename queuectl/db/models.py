"""
SQLAlchemy database models.
Defines the jobs, dead-letter and config tables.
"""

from datetime import datetime
from uuid import uuid4

from sqlalchemy import (
    Column,
    DateTime,
    Enum,
    Index,
    Integer,
    String,
    Text,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from queuectl.constants import DEFAULT_MAX_RETRIES, JobState


def generate_job_id() -> str:
    return uuid4().hex


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class Job(Base):
    """
    Job model representing one shell command to run at least once.

    This is the authoritative source of truth for job state.
    All lifecycle transitions are managed through this table.

    Key constraints:
    - only the claim statement moves a row from pending to processing
    - locked_by and locked_at are set only while the row is processing
    - attempts only grows, by one per successful claim
    """

    __tablename__ = "jobs"

    # Primary key, caller supplied or generated
    id: Mapped[str] = mapped_column(
        String(255),
        primary_key=True,
        default=generate_job_id,
    )

    command: Mapped[str] = mapped_column(
        Text,
        nullable=False,
    )

    state: Mapped[JobState] = mapped_column(
        Enum(JobState, name="job_state", create_constraint=True, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
        default=JobState.PENDING,
        index=True,
    )

    # Retry tracking
    attempts: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
    )
    max_retries: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=DEFAULT_MAX_RETRIES,
    )

    # Scheduling
    next_run_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    # Ownership while processing
    locked_by: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
    )
    locked_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    last_error: Mapped[str | None] = mapped_column(
        Text,
        nullable=True,
    )

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )

    __table_args__ = (
        # Index for the claim query
        Index(
            "ix_jobs_claim",
            "next_run_at",
            "created_at",
            postgresql_where=(Column("state") == JobState.PENDING.value),
        ),
    )

    @property
    def is_retryable(self) -> bool:
        """Check if another failure would still be retried."""
        return self.attempts < self.max_retries

    def __repr__(self) -> str:
        return (
            f"Job(id={self.id}, state={self.state}, "
            f"attempts={self.attempts}/{self.max_retries})"
        )


class DeadLetterEntry(Base):
    """
    Terminal record of a job that exhausted its retries.

    Shares the job's id. Removed when the job is retried back into the queue.
    """

    __tablename__ = "dead_letter"

    id: Mapped[str] = mapped_column(String(255), primary_key=True)
    command: Mapped[str] = mapped_column(Text, nullable=False)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False)
    max_retries: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
    )
    moved_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    def __repr__(self) -> str:
        return f"DeadLetterEntry(id={self.id}, attempts={self.attempts}/{self.max_retries})"


class ConfigEntry(Base):
    """String-keyed configuration value shared by every worker."""

    __tablename__ = "config"

    name: Mapped[str] = mapped_column(String(64), primary_key=True)
    value: Mapped[str] = mapped_column(Text, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )
