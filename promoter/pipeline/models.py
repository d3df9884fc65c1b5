"""
Promotion Pipeline models — stages, runs, per-stage records and the
allowed state transitions.
"""

import uuid
from datetime import datetime
from enum import Enum
from typing import Optional, Dict, List, Any, FrozenSet
from pydantic import BaseModel, ConfigDict, Field

from promoter.config.settings import settings
from promoter.agent_client.client import SyncRequest, ConvergenceObservation
from promoter.manifests.mutator import CommitRef


class StageState(str, Enum):
    PENDING = "pending"
    AWAITING_APPROVAL = "awaiting_approval"
    MUTATING = "mutating"
    SYNC_TRIGGERED = "sync_triggered"
    CONVERGING = "converging"
    CONVERGED = "converged"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    REJECTED = "rejected"
    CANCELLED = "cancelled"


class RunStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    CONVERGED = "converged"
    ABORTED = "aborted"
    REJECTED = "rejected"
    CANCELLED = "cancelled"


STAGE_TRANSITIONS: Dict[StageState, FrozenSet[StageState]] = {
    StageState.PENDING: frozenset({StageState.AWAITING_APPROVAL, StageState.MUTATING, StageState.CANCELLED}),
    StageState.AWAITING_APPROVAL: frozenset({StageState.MUTATING, StageState.REJECTED, StageState.CANCELLED}),
    StageState.MUTATING: frozenset({StageState.SYNC_TRIGGERED, StageState.FAILED, StageState.CANCELLED}),
    StageState.SYNC_TRIGGERED: frozenset({StageState.CONVERGING, StageState.FAILED, StageState.CANCELLED}),
    StageState.CONVERGING: frozenset({
        StageState.CONVERGED, StageState.FAILED, StageState.TIMED_OUT, StageState.CANCELLED,
    }),
    StageState.CONVERGED: frozenset(),
    StageState.FAILED: frozenset(),
    StageState.TIMED_OUT: frozenset(),
    StageState.REJECTED: frozenset(),
    StageState.CANCELLED: frozenset(),
}

TERMINAL_RUN_STATUSES = frozenset({
    RunStatus.CONVERGED, RunStatus.ABORTED, RunStatus.REJECTED, RunStatus.CANCELLED,
})


def require_transition(current: StageState, nxt: StageState) -> None:
    if nxt not in STAGE_TRANSITIONS[current]:
        raise ValueError(f"Invalid stage transition: {current.value} -> {nxt.value}")


class EnvironmentStage(BaseModel):
    """One ordered pipeline step. Immutable once the pipeline is built."""
    model_config = ConfigDict(frozen=True)

    name: str
    application_id: str
    manifest_locator: str  # <path>#<image-name>
    requires_approval: bool = False
    convergence_timeout_seconds: float = Field(default_factory=lambda: settings.convergence_timeout_seconds, gt=0)
    poll_interval_seconds: float = Field(default_factory=lambda: settings.poll_interval_seconds, gt=0)
    approval_timeout_seconds: Optional[float] = None


class StageRecord(BaseModel):
    """Bookkeeping for one stage of one run."""
    stage_name: str
    application_id: str
    requires_approval: bool = False
    state: StageState = StageState.PENDING
    commit_ref: Optional[CommitRef] = None
    sync_request: Optional[SyncRequest] = None
    last_observation: Optional[ConvergenceObservation] = None
    observations_count: int = 0
    approved_by: str = ""
    denied_by: str = ""
    denial_reason: str = ""
    error: Optional[Dict[str, Any]] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    def transition(self, nxt: StageState) -> None:
        require_transition(self.state, nxt)
        self.state = nxt


class PromotionRun(BaseModel):
    """One execution of the whole pipeline for one artifact version."""
    run_id: str = Field(default_factory=lambda: f"run-{uuid.uuid4().hex[:8]}")
    pipeline_name: str = "default"
    artifact_version: str
    status: RunStatus = RunStatus.PENDING
    current_stage_index: int = 0
    stages: List[StageRecord] = Field(default_factory=list)
    requested_by: str = ""
    cancelled_by: str = ""
    failed_stage: Optional[str] = None
    error: Optional[Dict[str, Any]] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_RUN_STATUSES

    @property
    def application_ids(self) -> List[str]:
        return [s.application_id for s in self.stages]

    def stage(self, name: str) -> Optional[StageRecord]:
        return next((s for s in self.stages if s.stage_name == name), None)


def build_default_stages(definitions: Optional[List[Dict[str, Any]]] = None) -> List[EnvironmentStage]:
    """Turn configured stage dicts (settings.pipeline_stages by default) into stages."""
    return [EnvironmentStage(**d) for d in (definitions or settings.pipeline_stages)]
