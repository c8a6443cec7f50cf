"""create catalog, order and jobs tables

Revision ID: 3b1f0c2a9d47
Revises:
Create Date: 2026-10-19 09:12:41.503118

"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "3b1f0c2a9d47"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Upgrade schema."""
    op.create_table(
        "catalogs",
        sa.Column("id", sa.Uuid, primary_key=True),
        sa.Column("name", sa.String(100), nullable=False),
        sa.Column("description", sa.Text, nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
    )
    op.create_index("ix_catalogs_created_at", "catalogs", ["created_at"])

    op.create_table(
        "orders",
        sa.Column("id", sa.Uuid, primary_key=True),
        sa.Column("customer_email", sa.String(320), nullable=False),
        sa.Column("customer_name", sa.Text, nullable=True),
        sa.Column("currency", sa.String(3), nullable=False),
        sa.Column("total", sa.Numeric(14, 2), nullable=False),
        sa.Column("status", sa.String(32), nullable=False),
        sa.Column("items", sa.JSON, nullable=False),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
    )

    # Job channel store
    op.create_table(
        "jobs",
        sa.Column("id", sa.Uuid, primary_key=True),
        sa.Column(
            "channel",
            sa.Text,
            nullable=False,
            comment="Named channel the job is delivered through",
        ),
        sa.Column(
            "job_name", sa.Text, nullable=False, comment="Operation the processor performs"
        ),
        sa.Column(
            "payload",
            sa.JSON,
            nullable=False,
            comment="Self-contained, schema-validated job parameters",
        ),
        sa.Column(
            "max_attempts",
            sa.SmallInteger,
            nullable=False,
            comment="Delivery attempts before dead-letter",
        ),
        sa.Column(
            "backoff_base_delay_ms",
            sa.Integer,
            nullable=False,
            comment="Fixed delay between attempts",
        ),
        sa.Column(
            "status",
            sa.Text,
            nullable=False,
            comment="pending|delayed|processing|completed|deadletter",
        ),
        sa.Column(
            "attempt_count",
            sa.SmallInteger,
            nullable=False,
            comment="Deliveries made so far",
        ),
        sa.Column(
            "run_at",
            sa.DateTime(timezone=True),
            nullable=False,
            comment="Earliest time to deliver the job",
        ),
        sa.Column("enqueued_at", sa.DateTime(timezone=True), nullable=False),
        # Worker coordination fields
        sa.Column(
            "locked_at",
            sa.DateTime(timezone=True),
            nullable=True,
            comment="When job was locked by worker",
        ),
        sa.Column(
            "locked_by", sa.Text, nullable=True, comment="Worker ID that locked the job"
        ),
        sa.Column(
            "heartbeat_at",
            sa.DateTime(timezone=True),
            nullable=True,
            comment="Last worker heartbeat",
        ),
        # Outcome
        sa.Column("result", sa.JSON, nullable=True, comment="Processor result"),
        sa.Column(
            "error_code", sa.Text, nullable=True, comment="Structured error identifier"
        ),
        sa.Column("last_error", sa.Text, nullable=True, comment="Last error message"),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "failed_at",
            sa.DateTime(timezone=True),
            nullable=True,
            comment="When the job was dead-lettered",
        ),
        # Tracing and deduplication
        sa.Column(
            "dedupe_key",
            sa.Text,
            nullable=True,
            comment="Producer-side deduplication key",
        ),
        sa.Column(
            "request_id",
            sa.Text,
            nullable=True,
            comment="Originating request ID for tracing",
        ),
        # Timestamps
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
        # Constraints
        sa.CheckConstraint(
            "status IN ('pending', 'delayed', 'processing', 'completed', 'deadletter')",
            name="jobs_status_check",
        ),
        sa.CheckConstraint("max_attempts >= 1", name="jobs_max_attempts_check"),
        sa.CheckConstraint("backoff_base_delay_ms >= 0", name="jobs_backoff_check"),
    )

    op.create_index("ix_jobs_claim", "jobs", ["channel", "status", "run_at"])
    op.create_index("ix_jobs_dedupe_key", "jobs", ["channel", "dedupe_key"])
    op.create_index("ix_jobs_heartbeat_at", "jobs", ["heartbeat_at"])
    op.create_index("ix_jobs_created_at", "jobs", ["created_at"])


def downgrade() -> None:
    """Downgrade schema."""
    op.drop_table("jobs")
    op.drop_table("orders")
    op.drop_index("ix_catalogs_created_at", table_name="catalogs")
    op.drop_table("catalogs")
