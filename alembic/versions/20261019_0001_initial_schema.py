"""Initial schema: reports, workload statuses, private queues, named locks."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261019_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "client_reports",
        sa.Column("report_id", sa.String(), primary_key=True),
        sa.Column("output_format", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("token", sa.String(), nullable=True),
        sa.Column("artifact_ref", sa.String(), nullable=True),
        sa.Column("row_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("error_summary", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_client_reports_status", "client_reports", ["status"])
    op.create_index("ix_client_reports_token", "client_reports", ["token"])

    op.create_table(
        "workload_statuses",
        sa.Column("token", sa.String(), primary_key=True),
        sa.Column("report_id", sa.String(), nullable=True),
        sa.Column("total_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("done_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("queue_name", sa.String(), nullable=False),
        sa.Column("worker_started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("worker_task_handle", sa.String(), nullable=True),
        sa.Column("finalized_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("force_shutdown_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_workload_statuses_report_id", "workload_statuses", ["report_id"])
    op.create_index(
        "ix_workload_statuses_worker_started_at",
        "workload_statuses",
        ["worker_started_at"],
    )

    op.create_table(
        "queue_jobs",
        sa.Column("job_id", sa.String(), primary_key=True),
        sa.Column("queue_name", sa.String(), nullable=False),
        sa.Column("kind", sa.String(), nullable=False),
        sa.Column("args_json", sa.Text(), nullable=False),
        sa.Column("state", sa.String(), nullable=False),
        sa.Column("attempt", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_attempts", sa.Integer(), nullable=False, server_default="3"),
        sa.Column("run_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("enqueued_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("worker_id", sa.String(), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("died_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("idx_queue_jobs_claim", "queue_jobs", ["queue_name", "state", "run_at"])
    op.create_index("idx_queue_jobs_state_kind", "queue_jobs", ["state", "kind"])

    op.create_table(
        "named_locks",
        sa.Column("lock_key", sa.String(), primary_key=True),
        sa.Column("owner", sa.String(), nullable=False),
        sa.Column("acquired_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
    )

    op.create_table(
        "workload_events",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("token", sa.String(), nullable=False),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("details_json", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_workload_events_token", "workload_events", ["token"])


def downgrade() -> None:
    op.drop_index("ix_workload_events_token", table_name="workload_events")
    op.drop_table("workload_events")
    op.drop_table("named_locks")
    op.drop_index("idx_queue_jobs_state_kind", table_name="queue_jobs")
    op.drop_index("idx_queue_jobs_claim", table_name="queue_jobs")
    op.drop_table("queue_jobs")
    op.drop_index("ix_workload_statuses_worker_started_at", table_name="workload_statuses")
    op.drop_index("ix_workload_statuses_report_id", table_name="workload_statuses")
    op.drop_table("workload_statuses")
    op.drop_index("ix_client_reports_token", table_name="client_reports")
    op.drop_index("ix_client_reports_status", table_name="client_reports")
    op.drop_table("client_reports")
