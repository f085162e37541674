"""Targets and job ledger

Revision ID: 001
Revises:
Create Date: 2026-10-19
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "targets",
        sa.Column("url", sa.String(2048), primary_key=True),
        sa.Column("target_type", sa.String(20), nullable=False, server_default="website"),
        sa.Column("sitemaps", sa.JSON(), nullable=False),
        sa.Column("max_requests", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_files", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("download_files", sa.Boolean(), nullable=False, server_default="true"),
        sa.Column("file_types", sa.JSON(), nullable=False),
        sa.Column("ignore_robots_txt", sa.Boolean(), nullable=False, server_default="false"),
        sa.Column("crawl_interval_hours", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_finished_job_id", sa.String(64), nullable=False, server_default=""),
        sa.Column("outstanding_job_id", sa.String(64), nullable=True),
        sa.Column("outstanding_since", sa.BigInteger(), nullable=True),
        sa.Column("created_at", sa.BigInteger(), nullable=False),
        sa.Column("updated_at", sa.BigInteger(), nullable=False),
    )
    op.create_index(
        "ix_targets_outstanding",
        "targets",
        ["outstanding_job_id"],
        postgresql_where=sa.text("outstanding_job_id IS NOT NULL"),
    )

    # No foreign key on target_url: deregistering a target keeps its history.
    op.create_table(
        "jobs",
        sa.Column("target_url", sa.String(2048), primary_key=True),
        sa.Column("job_id", sa.String(64), primary_key=True),
        sa.Column("status", sa.String(20), nullable=False, server_default="submitted"),
        sa.Column("runner_job_id", sa.String(255), nullable=True),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("submitted_at", sa.BigInteger(), nullable=False),
        sa.Column("finished_at", sa.BigInteger(), nullable=True),
        sa.Column("exit_reason", sa.Text(), nullable=True),
        sa.Column("created_at", sa.BigInteger(), nullable=False),
        sa.Column("updated_at", sa.BigInteger(), nullable=False),
    )
    op.create_index("ix_jobs_status", "jobs", ["status"])


def downgrade() -> None:
    op.drop_index("ix_jobs_status", table_name="jobs")
    op.drop_table("jobs")
    op.drop_index("ix_targets_outstanding", table_name="targets")
    op.drop_table("targets")
