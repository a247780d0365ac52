"""Create the dispatch job queue table."""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "20261018_0002"
down_revision = "20261018_0001"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "dispatch_jobs",
        sa.Column("request_id", sa.String(length=64), nullable=False),
        sa.Column("job_id", sa.String(length=64), nullable=False),
        sa.Column("run_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("priority", sa.Integer(), nullable=False, server_default="5"),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="pending"),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("claimed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("request_id"),
        sa.UniqueConstraint("job_id"),
    )
    op.create_index("ix_dispatch_jobs_run_at", "dispatch_jobs", ["run_at"], unique=False)
    op.create_index("ix_dispatch_jobs_status", "dispatch_jobs", ["status"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_dispatch_jobs_status", table_name="dispatch_jobs")
    op.drop_index("ix_dispatch_jobs_run_at", table_name="dispatch_jobs")
    op.drop_table("dispatch_jobs")
