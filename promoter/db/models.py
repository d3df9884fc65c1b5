"""
SQLAlchemy ORM models for promotion run audit records.
Maps to PostgreSQL tables via Alembic migrations.
"""
from datetime import datetime

from sqlalchemy import (
    String, Text, Integer, Boolean, DateTime, JSON,
    ForeignKey, Index,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship

from promoter.db.base import Base

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")


# ── Promotion Runs ─────────────────────────────────────────────────────────────

class PromotionRunModel(Base):
    """One execution of the promotion pipeline for one artifact version."""
    __tablename__ = "promotion_runs"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    pipeline_name: Mapped[str] = mapped_column(String(128), default="default")
    artifact_version: Mapped[str] = mapped_column(String(128), nullable=False)
    status: Mapped[str] = mapped_column(String(20), default="pending")
    current_stage_index: Mapped[int] = mapped_column(Integer, default=0)
    requested_by: Mapped[str] = mapped_column(String(128), default="")
    cancelled_by: Mapped[str] = mapped_column(String(128), default="")
    failed_stage: Mapped[str | None] = mapped_column(String(128), nullable=True)
    error_json: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
    metadata_json: Mapped[dict] = mapped_column(JSONType, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    started_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    finished_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    stages: Mapped[list["StageRecordModel"]] = relationship(
        back_populates="run", lazy="selectin",
        cascade="all, delete-orphan", order_by="StageRecordModel.position",
    )

    __table_args__ = (
        Index("ix_promotion_runs_status", "status"),
        Index("ix_promotion_runs_version", "artifact_version"),
        Index("ix_promotion_runs_pipeline_created", "pipeline_name", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<PromotionRun id={self.id} version={self.artifact_version!r} status={self.status}>"


class StageRecordModel(Base):
    """Outcome of one stage within a promotion run."""
    __tablename__ = "promotion_stage_records"

    id: Mapped[str] = mapped_column(String(200), primary_key=True)  # <run_id>:<stage_name>
    run_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("promotion_runs.id", ondelete="CASCADE"), nullable=False
    )
    position: Mapped[int] = mapped_column(Integer, default=0)
    stage_name: Mapped[str] = mapped_column(String(128), nullable=False)
    application_id: Mapped[str] = mapped_column(String(256), nullable=False)
    requires_approval: Mapped[bool] = mapped_column(Boolean, default=False)
    state: Mapped[str] = mapped_column(String(32), default="pending")
    commit_ref_json: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
    sync_request_json: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
    last_observation_json: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
    observations_count: Mapped[int] = mapped_column(Integer, default=0)
    approved_by: Mapped[str] = mapped_column(String(128), default="")
    denied_by: Mapped[str] = mapped_column(String(128), default="")
    denial_reason: Mapped[str] = mapped_column(Text, default="")
    error_json: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
    started_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    finished_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    run: Mapped["PromotionRunModel"] = relationship(back_populates="stages")

    __table_args__ = (
        Index("ix_stage_records_run", "run_id"),
        Index("ix_stage_records_application", "application_id"),
    )

    def __repr__(self) -> str:
        return f"<StageRecord run={self.run_id} stage={self.stage_name} state={self.state}>"
