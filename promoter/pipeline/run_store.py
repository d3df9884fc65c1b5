"""
Run stores — where promotion runs are recorded for audit.
InMemoryRunStore is the fallback; promoter.db.run_repository.SqlRunStore
persists to PostgreSQL.
"""

from typing import Optional, Dict, List

from promoter.pipeline.models import PromotionRun


class RunStore:
    """Interface every run store implements."""

    async def save(self, run: PromotionRun) -> None:
        raise NotImplementedError

    async def get(self, run_id: str) -> Optional[PromotionRun]:
        raise NotImplementedError

    async def list_runs(self, status: Optional[str] = None, limit: int = 50) -> List[PromotionRun]:
        raise NotImplementedError


class InMemoryRunStore(RunStore):
    """Keeps deep copies so later in-place mutation of a run does not leak in."""

    def __init__(self):
        self._runs: Dict[str, PromotionRun] = {}
        self.saves = 0

    async def save(self, run: PromotionRun) -> None:
        self._runs[run.run_id] = run.model_copy(deep=True)
        self.saves += 1

    async def get(self, run_id: str) -> Optional[PromotionRun]:
        run = self._runs.get(run_id)
        return run.model_copy(deep=True) if run else None

    async def list_runs(self, status: Optional[str] = None, limit: int = 50) -> List[PromotionRun]:
        runs = [r for r in self._runs.values() if not status or r.status.value == status]
        runs.sort(key=lambda r: r.created_at, reverse=True)
        return [r.model_copy(deep=True) for r in runs[:limit]]
