"""Initial schema with jobs table

Revision ID: 001
Revises:
Create Date: 2026-01-01 00:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

JOB_STATUSES = ("PENDING", "RUNNING", "COMPLETED", "FAILED", "CANCELLED", "DEAD_LETTER")
JOB_TYPES = ("PROCESS_DATA", "SEND_EMAIL", "GENERATE_REPORT", "SYNC_DATA")


def upgrade() -> None:
    # Create enums using raw SQL with IF NOT EXISTS
    op.execute(f"""
        DO $$ BEGIN
            CREATE TYPE job_status AS ENUM ({", ".join(f"'{s}'" for s in JOB_STATUSES)});
        EXCEPTION
            WHEN duplicate_object THEN null;
        END $$;
    """)

    op.execute(f"""
        DO $$ BEGIN
            CREATE TYPE job_type AS ENUM ({", ".join(f"'{t}'" for t in JOB_TYPES)});
        EXCEPTION
            WHEN duplicate_object THEN null;
        END $$;
    """)

    op.create_table(
        "jobs",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column(
            "type",
            postgresql.ENUM(*JOB_TYPES, name="job_type", create_type=False),
            nullable=False,
        ),
        sa.Column(
            "status",
            postgresql.ENUM(*JOB_STATUSES, name="job_status", create_type=False),
            nullable=False,
            server_default="PENDING",
        ),
        sa.Column("priority", sa.Integer, nullable=False, server_default="5"),
        sa.Column("payload", postgresql.JSONB, nullable=False, server_default="{}"),
        sa.Column("result", postgresql.JSONB, nullable=True),
        sa.Column("error_message", sa.Text, nullable=True),
        sa.Column("retry_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("max_retries", sa.Integer, nullable=False, server_default="3"),
        sa.Column("worker_id", sa.String(255), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("version", sa.Integer, nullable=False, server_default="0"),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint("priority BETWEEN 1 AND 10", name="ck_jobs_priority"),
        sa.CheckConstraint(
            "retry_count >= 0 AND retry_count <= max_retries",
            name="ck_jobs_retry_count",
        ),
    )

    op.create_index("ix_jobs_type", "jobs", ["type"])
    op.create_index("ix_jobs_status", "jobs", ["status"])
    op.create_index("ix_jobs_created_at", "jobs", ["created_at"])
    op.create_index("ix_jobs_name", "jobs", ["name"])

    # Partial index for the in-flight view (jobs a worker may still report on)
    op.execute("""
        CREATE INDEX ix_jobs_active
        ON jobs (status, updated_at)
        WHERE status IN ('PENDING', 'RUNNING', 'FAILED')
    """)


def downgrade() -> None:
    op.execute("DROP INDEX IF EXISTS ix_jobs_active")
    op.drop_index("ix_jobs_name")
    op.drop_index("ix_jobs_created_at")
    op.drop_index("ix_jobs_status")
    op.drop_index("ix_jobs_type")

    op.drop_table("jobs")

    op.execute("DROP TYPE IF EXISTS job_type")
    op.execute("DROP TYPE IF EXISTS job_status")
