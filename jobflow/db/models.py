"""
SQLAlchemy database models.
Defines the jobs table.
"""

from datetime import UTC, datetime
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import (
    JSON,
    CheckConstraint,
    DateTime,
    Enum,
    Index,
    Integer,
    String,
    Text,
    Uuid,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from jobflow.constants import (
    DEFAULT_MAX_RETRIES,
    DEFAULT_PRIORITY,
    MAX_JOB_NAME_LENGTH,
    JobStatus,
    JobType,
)
from jobflow.types.job import JobState

# JSONB on PostgreSQL, plain JSON elsewhere
JSONType = JSON().with_variant(JSONB(), "postgresql")


def _aware(value: datetime | None) -> datetime | None:
    # SQLite hands back naive datetimes; every stored timestamp is UTC
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class Job(Base):
    """
    Job model, the authoritative record of a job's lifecycle.

    Only the status reconciler and the cancel operation write status changes,
    and every such write is conditional on `version`.

    Key constraints:
    - priority within 1..10
    - 0 <= retry_count <= max_retries
    """

    __tablename__ = "jobs"

    id: Mapped[UUID] = mapped_column(
        Uuid,
        primary_key=True,
        default=uuid4,
        nullable=False,
    )
    name: Mapped[str] = mapped_column(String(MAX_JOB_NAME_LENGTH), nullable=False)
    type: Mapped[JobType] = mapped_column(
        Enum(JobType, name="job_type", create_constraint=True, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
        index=True,
    )
    status: Mapped[JobStatus] = mapped_column(
        Enum(JobStatus, name="job_status", create_constraint=True, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
        default=JobStatus.PENDING,
        index=True,
    )
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=DEFAULT_PRIORITY)

    payload: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)
    result: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_retries: Mapped[int] = mapped_column(Integer, nullable=False, default=DEFAULT_MAX_RETRIES)

    worker_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    # Optimistic concurrency token, incremented on every write
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    __table_args__ = (
        CheckConstraint("priority BETWEEN 1 AND 10", name="ck_jobs_priority"),
        CheckConstraint(
            "retry_count >= 0 AND retry_count <= max_retries",
            name="ck_jobs_retry_count",
        ),
        Index("ix_jobs_created_at", "created_at"),
        Index("ix_jobs_name", "name"),
    )

    def to_state(self) -> JobState:
        return JobState(
            id=self.id,
            name=self.name,
            type=JobType(self.type),
            status=JobStatus(self.status),
            priority=self.priority,
            max_retries=self.max_retries,
            retry_count=self.retry_count,
            payload=dict(self.payload or {}),
            result=self.result,
            error_message=self.error_message,
            worker_id=self.worker_id,
            created_at=_aware(self.created_at),
            updated_at=_aware(self.updated_at),
            started_at=_aware(self.started_at),
            completed_at=_aware(self.completed_at),
            version=self.version,
        )

    def __repr__(self) -> str:
        return (
            f"Job(id={self.id}, type={self.type}, status={self.status}, "
            f"retry={self.retry_count}/{self.max_retries}, version={self.version})"
        )
