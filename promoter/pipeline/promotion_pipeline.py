"""
Promotion Pipeline — drives one artifact version through an ordered list of
environment stages. Each stage runs mutate -> trigger sync -> await
convergence; gated stages first wait for an explicit approval.

Stages of one run are strictly sequential and a run never advances past a
stage that has not converged. Runs for disjoint applications may execute
concurrently; a run overlapping an active run's applications is rejected.
Rollback is an operator action only.
"""

import asyncio
import logging
from typing import Optional, Dict, List, Any
from datetime import datetime

from promoter.config.settings import settings
from promoter.errors import (
    PromotionError, WriteConflict, ConvergenceTimeout, ApprovalOutcome, ApprovalDenied,
    RunConflict, RunNotFound,
)
from promoter.manifests.mutator import ManifestMutator, CommitRef
from promoter.agent_client.client import DeliveryAgentClient, ConvergenceObservation
from promoter.convergence.poller import ConvergencePoller
from promoter.approvals.approval_gate import ApprovalGate, ApprovalRequest
from promoter.pipeline.models import (
    EnvironmentStage, StageRecord, StageState, PromotionRun, RunStatus, STAGE_TRANSITIONS,
)
from promoter.pipeline.run_store import RunStore, InMemoryRunStore

logger = logging.getLogger(__name__)


class PromotionPipeline:
    """
    Owns promotion runs for one ordered stage list.
    Persists every run transition through the RunStore; terminal outcomes are
    saved before the run is reported finished.
    """

    def __init__(
        self,
        stages: List[EnvironmentStage],
        mutator: ManifestMutator,
        agent: DeliveryAgentClient,
        poller: Optional[ConvergencePoller] = None,
        approvals: Optional[ApprovalGate] = None,
        run_store: Optional[RunStore] = None,
        name: str = "default",
        write_retries: Optional[int] = None,
    ):
        if not stages:
            raise ValueError("A pipeline needs at least one stage")
        names = [s.name for s in stages]
        if len(set(names)) != len(names):
            raise ValueError(f"Stage names must be unique: {names}")

        self.name = name
        self.stages: List[EnvironmentStage] = list(stages)
        self.mutator = mutator
        self.agent = agent
        self.poller = poller or ConvergencePoller(agent)
        self.approvals = approvals or ApprovalGate()
        self.run_store = run_store or InMemoryRunStore()
        self.write_retries = write_retries or settings.manifest_write_retries

        self._runs: Dict[str, PromotionRun] = {}
        self._tasks: Dict[str, asyncio.Task] = {}

    # ── Run lifecycle ─────────────────────────────────────────────

    def _active_conflict(self, application_ids: List[str]) -> Optional[PromotionRun]:
        wanted = set(application_ids)
        for run in self._runs.values():
            if not run.is_terminal and wanted & set(run.application_ids):
                return run
        return None

    async def create_run(self, artifact_version: str, requested_by: str = "admin",
                         metadata: Optional[Dict[str, Any]] = None) -> PromotionRun:
        """Accept an artifact version for promotion. Does not start executing it."""
        version = self.mutator.validate_version(artifact_version)
        application_ids = [s.application_id for s in self.stages]
        active = self._active_conflict(application_ids)
        if active:
            raise RunConflict(set(application_ids) & set(active.application_ids), active.run_id)

        run = PromotionRun(
            pipeline_name=self.name, artifact_version=version, requested_by=requested_by,
            metadata=metadata or {},
            stages=[
                StageRecord(
                    stage_name=s.name, application_id=s.application_id,
                    requires_approval=s.requires_approval,
                )
                for s in self.stages
            ],
        )
        self._runs[run.run_id] = run
        await self.run_store.save(run)
        logger.info(f"[PIPELINE] Run {run.run_id} created for version {version} by {requested_by}")
        return run

    async def start_run(self, artifact_version: str, requested_by: str = "admin",
                        metadata: Optional[Dict[str, Any]] = None) -> PromotionRun:
        """Create a run and schedule it on the running event loop."""
        run = await self.create_run(artifact_version, requested_by, metadata)
        task = asyncio.create_task(self._execute_guarded(run), name=f"promotion-{run.run_id}")
        self._tasks[run.run_id] = task
        return run

    async def run_to_completion(self, artifact_version: str, requested_by: str = "admin") -> PromotionRun:
        """Start a run and wait for its terminal status."""
        run = await self.start_run(artifact_version, requested_by)
        return await self.wait_for_run(run.run_id)

    async def _execute_guarded(self, run: PromotionRun) -> PromotionRun:
        try:
            return await self.execute(run)
        finally:
            self._tasks.pop(run.run_id, None)

    async def execute(self, run: PromotionRun) -> PromotionRun:
        """Run every stage in order. Returns the run in a terminal status."""
        run.status = RunStatus.RUNNING
        run.started_at = datetime.utcnow()

        current: Optional[StageRecord] = None
        try:
            await self.run_store.save(run)
            for index, stage in enumerate(self.stages):
                run.current_stage_index = index
                current = run.stages[index]
                await self._run_stage(run, stage, current)
            run.status = RunStatus.CONVERGED
            logger.info(f"[PIPELINE] Run {run.run_id} converged in all {len(self.stages)} stages")
        except ApprovalOutcome as e:
            run.status = RunStatus.REJECTED
            run.failed_stage = current.stage_name if current else None
            run.error = e.as_dict()
            logger.info(f"[PIPELINE] Run {run.run_id} rejected at '{run.failed_stage}': {e}")
        except PromotionError as e:
            self._close_stage(current, StageState.FAILED, e.as_dict())
            run.status = RunStatus.ABORTED
            run.failed_stage = current.stage_name if current else None
            run.error = e.as_dict()
            if current and current.last_observation:
                run.error["last_observation"] = current.last_observation.model_dump(mode="json")
            logger.warning(f"[PIPELINE] Run {run.run_id} aborted at '{run.failed_stage}': {e}")
        except asyncio.CancelledError:
            self._close_stage(current, StageState.CANCELLED)
            run.status = RunStatus.CANCELLED
            run.failed_stage = current.stage_name if current else None
            await self._finish(run)
            logger.info(f"[PIPELINE] Run {run.run_id} cancelled by {run.cancelled_by or 'operator'}")
            raise
        except Exception as e:
            error = {"error": type(e).__name__, "message": str(e), "retriable": False}
            self._close_stage(current, StageState.FAILED, error)
            run.status = RunStatus.ABORTED
            run.failed_stage = current.stage_name if current else None
            run.error = error
            logger.exception(f"[PIPELINE] Run {run.run_id} aborted at '{run.failed_stage}' by unexpected error")

        await self._finish(run)
        return run

    async def _finish(self, run: PromotionRun) -> None:
        run.finished_at = datetime.utcnow()
        self.approvals.discard(run.run_id)
        await self.run_store.save(run)

    # ── Stage execution ───────────────────────────────────────────

    async def _run_stage(self, run: PromotionRun, stage: EnvironmentStage, rec: StageRecord) -> None:
        rec.started_at = datetime.utcnow()

        if stage.requires_approval:
            await self._await_approval(run, stage, rec)

        rec.transition(StageState.MUTATING)
        await self.run_store.save(run)
        try:
            rec.commit_ref = await self._mutate(stage, run.artifact_version)

            rec.sync_request = await self.agent.trigger_sync(stage.application_id)
            rec.transition(StageState.SYNC_TRIGGERED)
            await self.run_store.save(run)

            rec.transition(StageState.CONVERGING)
            await self.run_store.save(run)
            committed = rec.commit_ref.revision
            observation = await self.poller.await_convergence(
                stage.application_id,
                timeout=stage.convergence_timeout_seconds,
                poll_interval=stage.poll_interval_seconds,
                on_observation=lambda o: self._observe(rec, o),
                expected_revision=committed,
                revision_reached=lambda revision: self._revision_reached(revision, committed),
            )
        except ConvergenceTimeout as e:
            self._fail_stage(rec, StageState.TIMED_OUT, e)
            raise
        except PromotionError as e:
            self._fail_stage(rec, StageState.FAILED, e)
            raise

        rec.last_observation = observation
        rec.transition(StageState.CONVERGED)
        rec.finished_at = datetime.utcnow()
        await self.run_store.save(run)
        logger.info(f"[PIPELINE] Run {run.run_id} stage '{stage.name}' converged")

    async def _await_approval(self, run: PromotionRun, stage: EnvironmentStage, rec: StageRecord) -> ApprovalRequest:
        rec.transition(StageState.AWAITING_APPROVAL)
        self.approvals.request(
            run.run_id, stage.name, run.artifact_version, timeout=stage.approval_timeout_seconds,
        )
        await self.run_store.save(run)
        try:
            req = await self.approvals.wait(run.run_id, stage.name)
        except ApprovalOutcome as e:
            if isinstance(e, ApprovalDenied):
                rec.denied_by = e.denied_by
                rec.denial_reason = e.reason
            rec.transition(StageState.REJECTED)
            rec.error = e.as_dict()
            rec.finished_at = datetime.utcnow()
            raise
        rec.approved_by = req.resolved_by
        return req

    async def _mutate(self, stage: EnvironmentStage, version: str) -> CommitRef:
        """set_image_tag with rebase-and-retry on WriteConflict."""
        attempt = 1
        while True:
            try:
                return await asyncio.to_thread(self.mutator.set_image_tag, stage.manifest_locator, version)
            except WriteConflict as e:
                if attempt >= self.write_retries:
                    raise
                logger.info(f"[PIPELINE] {e}; rebasing and retrying ({attempt}/{self.write_retries})")
                attempt += 1
                await asyncio.to_thread(self.mutator.store.refresh)

    async def _revision_reached(self, revision: str, committed: str) -> bool:
        """True if the agent's revision is our commit or a later one on the same branch."""
        return await asyncio.to_thread(self.mutator.store.contains, revision, committed)

    @staticmethod
    def _observe(rec: StageRecord, observation: ConvergenceObservation) -> None:
        rec.last_observation = observation
        rec.observations_count += 1

    @staticmethod
    def _close_stage(rec: Optional[StageRecord], state: StageState,
                     error: Optional[Dict[str, Any]] = None) -> None:
        """Move a stage that is still in flight to a terminal state. No-op for finished stages."""
        if rec is None or not STAGE_TRANSITIONS[rec.state]:
            return
        if state not in STAGE_TRANSITIONS[rec.state]:
            state = StageState.CANCELLED
        rec.transition(state)
        if error is not None:
            rec.error = error
        rec.finished_at = datetime.utcnow()

    @staticmethod
    def _fail_stage(rec: StageRecord, state: StageState, error: PromotionError) -> None:
        last = getattr(error, "last_observation", None)
        if last is not None:
            rec.last_observation = last
        rec.transition(state)
        rec.error = error.as_dict()
        rec.finished_at = datetime.utcnow()

    # ── Control surface ───────────────────────────────────────────

    def get_run(self, run_id: str) -> Optional[PromotionRun]:
        return self._runs.get(run_id)

    def list_runs(self, status: Optional[str] = None, limit: int = 50) -> List[PromotionRun]:
        runs = [r for r in self._runs.values() if not status or r.status.value == status]
        runs.sort(key=lambda r: r.created_at, reverse=True)
        return runs[:limit]

    async def wait_for_run(self, run_id: str) -> PromotionRun:
        """Wait until a scheduled run reaches a terminal status."""
        run = self._runs.get(run_id)
        if not run:
            raise RunNotFound(run_id)
        task = self._tasks.get(run_id)
        if task is not None:
            try:
                await asyncio.shield(task)
            except asyncio.CancelledError:
                if not task.cancelled():
                    raise
        return run

    async def cancel_run(self, run_id: str, cancelled_by: str = "admin") -> Optional[PromotionRun]:
        """
        Cancel a run that has not finished. Only local bookkeeping changes;
        a sync already sent to the agent is left alone.
        Returns None if the run is already terminal.
        """
        run = self._runs.get(run_id)
        if not run:
            raise RunNotFound(run_id)
        if run.is_terminal:
            return None
        run.cancelled_by = cancelled_by
        task = self._tasks.get(run_id)
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks.pop(run_id, None)
        # A task cancelled before its first step never reaches execute()
        if not run.is_terminal:
            for rec in run.stages:
                self._close_stage(rec, StageState.CANCELLED)
            run.status = RunStatus.CANCELLED
            await self._finish(run)
            logger.info(f"[PIPELINE] Run {run.run_id} cancelled by {cancelled_by} before it started")
        return run

    def approve(self, run_id: str, stage_name: str, approved_by: str = "admin") -> Optional[ApprovalRequest]:
        if run_id not in self._runs:
            raise RunNotFound(run_id)
        return self.approvals.approve(run_id, stage_name, approved_by)

    def deny(self, run_id: str, stage_name: str, denied_by: str = "admin",
             reason: str = "") -> Optional[ApprovalRequest]:
        if run_id not in self._runs:
            raise RunNotFound(run_id)
        return self.approvals.deny(run_id, stage_name, denied_by, reason)

    async def rollback(self, application_id: str, to_version: str) -> Dict[str, Any]:
        """
        Operator-invoked rollback. An artifact version this pipeline converged
        is translated to the manifest revision it committed; anything else is
        passed to the agent as a history id or revision.
        """
        target = next(
            (rec.commit_ref.revision
             for run in self.list_runs(limit=len(self._runs))
             for rec in run.stages
             if rec.application_id == application_id and rec.state == StageState.CONVERGED
             and rec.commit_ref and rec.commit_ref.version == to_version),
            to_version,
        )
        logger.info(f"[PIPELINE] Rollback of {application_id} to {to_version} requested (target {target})")
        result = await self.agent.rollback(application_id, target)
        return {"application_id": application_id, "to_version": to_version, "target": target, "result": result}

    async def hydrate(self, limit: int = 500) -> int:
        """
        Load recorded runs from the store. Runs that were still in flight when
        the controller stopped are closed as aborted.
        """
        loaded = 0
        for run in await self.run_store.list_runs(limit=limit):
            if run.pipeline_name != self.name or run.run_id in self._runs:
                continue
            if not run.is_terminal:
                self._abort_interrupted(run)
                await self._finish(run)
            self._runs[run.run_id] = run
            loaded += 1
        return loaded

    def _abort_interrupted(self, run: PromotionRun) -> None:
        error = {"error": "ControllerRestarted", "message": "Run was in flight when the controller stopped"}
        run.status = RunStatus.ABORTED
        run.error = error
        if run.stages:
            run.failed_stage = run.stages[min(run.current_stage_index, len(run.stages) - 1)].stage_name
        for rec in run.stages:
            if rec.state != StageState.PENDING and STAGE_TRANSITIONS[rec.state]:
                # awaiting_approval has no failed edge and closes as cancelled
                self._close_stage(rec, StageState.FAILED, error)
                run.failed_stage = rec.stage_name
        logger.warning(f"[PIPELINE] Run {run.run_id} was in flight at restart; closed as aborted at '{run.failed_stage}'")

    async def shutdown(self) -> None:
        """Cancel in-flight runs (bookkeeping only)."""
        for run_id in list(self._tasks):
            await self.cancel_run(run_id, cancelled_by="shutdown")

    # ── Stats ─────────────────────────────────────────────────────

    def get_stats(self) -> Dict[str, Any]:
        runs = list(self._runs.values())
        return {
            "pipeline": self.name,
            "stages": [s.name for s in self.stages],
            "total_runs": len(runs),
            "active_runs": len([r for r in runs if not r.is_terminal]),
            "runs_by_status": {
                status.value: len([r for r in runs if r.status == status]) for status in RunStatus
            },
            "pending_approvals": len(self.approvals.list_pending()),
        }
