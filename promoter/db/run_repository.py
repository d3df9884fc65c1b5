"""
SqlRunStore — durable audit store for promotion runs backed by PostgreSQL.
Bridges between the Pydantic PromotionRun and the SQLAlchemy run/stage rows.
"""
import logging
from typing import Optional, List, Dict, Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker

from promoter.db.models import PromotionRunModel, StageRecordModel
from promoter.pipeline.models import PromotionRun, StageRecord, StageState, RunStatus
from promoter.pipeline.run_store import RunStore
from promoter.manifests.mutator import CommitRef
from promoter.agent_client.client import SyncRequest, ConvergenceObservation

logger = logging.getLogger(__name__)


def _dump(model) -> Optional[Dict[str, Any]]:
    return model.model_dump(mode="json") if model is not None else None


def _run_to_row(run: PromotionRun) -> Dict[str, Any]:
    return {
        "pipeline_name": run.pipeline_name,
        "artifact_version": run.artifact_version,
        "status": run.status.value,
        "current_stage_index": run.current_stage_index,
        "requested_by": run.requested_by,
        "cancelled_by": run.cancelled_by,
        "failed_stage": run.failed_stage,
        "error_json": run.error,
        "metadata_json": run.metadata,
        "created_at": run.created_at,
        "started_at": run.started_at,
        "finished_at": run.finished_at,
    }


def _stage_to_row(run_id: str, position: int, rec: StageRecord) -> Dict[str, Any]:
    return {
        "run_id": run_id,
        "position": position,
        "stage_name": rec.stage_name,
        "application_id": rec.application_id,
        "requires_approval": rec.requires_approval,
        "state": rec.state.value,
        "commit_ref_json": _dump(rec.commit_ref),
        "sync_request_json": _dump(rec.sync_request),
        "last_observation_json": _dump(rec.last_observation),
        "observations_count": rec.observations_count,
        "approved_by": rec.approved_by,
        "denied_by": rec.denied_by,
        "denial_reason": rec.denial_reason,
        "error_json": rec.error,
        "started_at": rec.started_at,
        "finished_at": rec.finished_at,
    }


def _row_to_stage(row: StageRecordModel) -> StageRecord:
    return StageRecord(
        stage_name=row.stage_name,
        application_id=row.application_id,
        requires_approval=bool(row.requires_approval),
        state=StageState(row.state),
        commit_ref=CommitRef(**row.commit_ref_json) if row.commit_ref_json else None,
        sync_request=SyncRequest(**row.sync_request_json) if row.sync_request_json else None,
        last_observation=(
            ConvergenceObservation(**row.last_observation_json) if row.last_observation_json else None
        ),
        observations_count=row.observations_count or 0,
        approved_by=row.approved_by or "",
        denied_by=row.denied_by or "",
        denial_reason=row.denial_reason or "",
        error=row.error_json,
        started_at=row.started_at,
        finished_at=row.finished_at,
    )


def _row_to_run(row: PromotionRunModel) -> PromotionRun:
    return PromotionRun(
        run_id=row.id,
        pipeline_name=row.pipeline_name,
        artifact_version=row.artifact_version,
        status=RunStatus(row.status),
        current_stage_index=row.current_stage_index or 0,
        stages=[_row_to_stage(s) for s in row.stages],
        requested_by=row.requested_by or "",
        cancelled_by=row.cancelled_by or "",
        failed_stage=row.failed_stage,
        error=row.error_json,
        metadata=row.metadata_json or {},
        created_at=row.created_at,
        started_at=row.started_at,
        finished_at=row.finished_at,
    )


class SqlRunStore(RunStore):
    """Upserts runs and their stage records; one session per call."""

    def __init__(self, session_factory: Optional[async_sessionmaker] = None):
        if session_factory is None:
            from promoter.db.engine import get_session_factory
            session_factory = get_session_factory()
        self._sf = session_factory

    async def save(self, run: PromotionRun) -> None:
        async with self._sf() as session:
            row = (await session.execute(
                select(PromotionRunModel).where(PromotionRunModel.id == run.run_id)
            )).scalar_one_or_none()
            data = _run_to_row(run)
            if row:
                for k, v in data.items():
                    setattr(row, k, v)
            else:
                row = PromotionRunModel(id=run.run_id, **data)
                session.add(row)

            existing = {s.stage_name: s for s in row.stages} if row.stages else {}
            for position, rec in enumerate(run.stages):
                stage_data = _stage_to_row(run.run_id, position, rec)
                stage_row = existing.get(rec.stage_name)
                if stage_row:
                    for k, v in stage_data.items():
                        setattr(stage_row, k, v)
                else:
                    row.stages.append(StageRecordModel(id=f"{run.run_id}:{rec.stage_name}", **stage_data))
            await session.commit()

    async def get(self, run_id: str) -> Optional[PromotionRun]:
        async with self._sf() as session:
            row = (await session.execute(
                select(PromotionRunModel).where(PromotionRunModel.id == run_id)
            )).scalar_one_or_none()
            return _row_to_run(row) if row else None

    async def list_runs(self, status: Optional[str] = None, limit: int = 50) -> List[PromotionRun]:
        async with self._sf() as session:
            stmt = select(PromotionRunModel).order_by(PromotionRunModel.created_at.desc())
            if status:
                stmt = stmt.where(PromotionRunModel.status == status)
            rows = (await session.execute(stmt.limit(limit))).scalars().all()
            return [_row_to_run(r) for r in rows]
