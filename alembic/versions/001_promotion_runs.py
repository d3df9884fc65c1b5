"""001 – promotion_runs and promotion_stage_records tables

Revision ID: 001
Revises:
Create Date: 2026-10-16
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB

revision = "001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # ── promotion_runs ────────────────────────────────────────────
    op.create_table(
        "promotion_runs",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("pipeline_name", sa.String(128), server_default="default"),
        sa.Column("artifact_version", sa.String(128), nullable=False),
        sa.Column("status", sa.String(20), server_default="pending"),
        sa.Column("current_stage_index", sa.Integer, server_default="0"),
        sa.Column("requested_by", sa.String(128), server_default=""),
        sa.Column("cancelled_by", sa.String(128), server_default=""),
        sa.Column("failed_stage", sa.String(128), nullable=True),
        sa.Column("error_json", JSONB, nullable=True),
        sa.Column("metadata_json", JSONB, server_default="{}"),
        sa.Column("created_at", sa.DateTime, server_default=sa.func.now()),
        sa.Column("started_at", sa.DateTime, nullable=True),
        sa.Column("finished_at", sa.DateTime, nullable=True),
    )
    op.create_index("ix_promotion_runs_status", "promotion_runs", ["status"])
    op.create_index("ix_promotion_runs_version", "promotion_runs", ["artifact_version"])
    op.create_index("ix_promotion_runs_pipeline_created", "promotion_runs", ["pipeline_name", "created_at"])

    # ── promotion_stage_records ───────────────────────────────────
    op.create_table(
        "promotion_stage_records",
        sa.Column("id", sa.String(200), primary_key=True),
        sa.Column("run_id", sa.String(64),
                  sa.ForeignKey("promotion_runs.id", ondelete="CASCADE"), nullable=False),
        sa.Column("position", sa.Integer, server_default="0"),
        sa.Column("stage_name", sa.String(128), nullable=False),
        sa.Column("application_id", sa.String(256), nullable=False),
        sa.Column("requires_approval", sa.Boolean, server_default="false"),
        sa.Column("state", sa.String(32), server_default="pending"),
        sa.Column("commit_ref_json", JSONB, nullable=True),
        sa.Column("sync_request_json", JSONB, nullable=True),
        sa.Column("last_observation_json", JSONB, nullable=True),
        sa.Column("observations_count", sa.Integer, server_default="0"),
        sa.Column("approved_by", sa.String(128), server_default=""),
        sa.Column("denied_by", sa.String(128), server_default=""),
        sa.Column("denial_reason", sa.Text, server_default=""),
        sa.Column("error_json", JSONB, nullable=True),
        sa.Column("started_at", sa.DateTime, nullable=True),
        sa.Column("finished_at", sa.DateTime, nullable=True),
    )
    op.create_index("ix_stage_records_run", "promotion_stage_records", ["run_id"])
    op.create_index("ix_stage_records_application", "promotion_stage_records", ["application_id"])


def downgrade() -> None:
    op.drop_table("promotion_stage_records")
    op.drop_table("promotion_runs")
