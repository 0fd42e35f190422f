"""Initial schema: projects, credentials, job queue, pipeline runs, run logs.

Revision ID: v001
Revises:
Create Date: 2026-10-16 00:00:00.000000

Runs unchanged against SQLite (dev) and PostgreSQL (production).
"""
from __future__ import annotations
from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

revision: str = "v001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # ── projects ────────────────────────────────────────────────────────────
    op.create_table(
        "projects",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("name", sa.String(256), nullable=False),
        sa.Column("github_repo", sa.String(256), nullable=True),
        sa.Column("github_installation_id", sa.Integer(), nullable=True),
        sa.Column("webhook_secret", sa.String(256), nullable=True),
        sa.Column("setup_status", sa.String(32), nullable=False, server_default="pending"),
        sa.Column("setup_pr_url", sa.Text(), nullable=True),
        sa.Column("setup_error", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )

    # ── credentials ─────────────────────────────────────────────────────────
    op.create_table(
        "credentials",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column(
            "project_id",
            sa.String(64),
            sa.ForeignKey("projects.id"),
            nullable=False,
            unique=True,
        ),
        sa.Column("kind", sa.String(32), nullable=False),
        sa.Column("value", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )

    # ── job_queue ───────────────────────────────────────────────────────────
    op.create_table(
        "job_queue",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("project_id", sa.String(64), sa.ForeignKey("projects.id"), nullable=False),
        sa.Column("job_type", sa.String(32), nullable=False, server_default="implement"),
        sa.Column("status", sa.String(32), nullable=False, server_default="pending"),
        sa.Column("attempt_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_attempts", sa.Integer(), nullable=False, server_default="3"),
        sa.Column("worker_id", sa.String(128), nullable=True),
        sa.Column("locked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("source_run_id", sa.String(64), nullable=True),
        sa.Column("github_issue_number", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("issue_title", sa.Text(), nullable=False, server_default=""),
        sa.Column("issue_body", sa.Text(), nullable=False, server_default=""),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_job_queue_status_created", "job_queue", ["status", "created_at"])
    op.create_index("ix_job_queue_status_locked", "job_queue", ["status", "locked_at"])

    # ── pipeline_runs ───────────────────────────────────────────────────────
    op.create_table(
        "pipeline_runs",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("project_id", sa.String(64), sa.ForeignKey("projects.id"), nullable=False),
        sa.Column("github_issue_number", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("github_pr_number", sa.Integer(), nullable=True),
        sa.Column("stage", sa.String(32), nullable=False, server_default="queued"),
        sa.Column("triggered_by", sa.String(256), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("result", sa.String(32), nullable=True),
        sa.Column("failure_category", sa.String(32), nullable=True),
        sa.Column("failure_analysis", sa.Text(), nullable=True),
        sa.Column("improvement_job_id", sa.String(64), nullable=True),
    )
    op.create_index(
        "ix_pipeline_runs_project_issue", "pipeline_runs", ["project_id", "github_issue_number"]
    )

    # ── run_logs ────────────────────────────────────────────────────────────
    op.create_table(
        "run_logs",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column(
            "run_id", sa.String(64), sa.ForeignKey("pipeline_runs.id"), nullable=False
        ),
        sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False),
        sa.Column("level", sa.String(16), nullable=False, server_default="info"),
        sa.Column("message", sa.Text(), nullable=False),
    )
    op.create_index("ix_run_logs_run_id", "run_logs", ["run_id"])


def downgrade() -> None:
    op.drop_index("ix_run_logs_run_id", table_name="run_logs")
    op.drop_table("run_logs")
    op.drop_index("ix_pipeline_runs_project_issue", table_name="pipeline_runs")
    op.drop_table("pipeline_runs")
    op.drop_index("ix_job_queue_status_locked", table_name="job_queue")
    op.drop_index("ix_job_queue_status_created", table_name="job_queue")
    op.drop_table("job_queue")
    op.drop_table("credentials")
    op.drop_table("projects")
