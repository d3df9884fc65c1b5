"""Promotion Pipeline — ordered environment stages with approval gates and convergence polling."""
from .models import (
    EnvironmentStage, StageRecord, StageState, PromotionRun, RunStatus, build_default_stages,
)
from .run_store import RunStore, InMemoryRunStore
from .promotion_pipeline import PromotionPipeline

__all__ = [
    "EnvironmentStage", "StageRecord", "StageState", "PromotionRun", "RunStatus",
    "build_default_stages", "RunStore", "InMemoryRunStore", "PromotionPipeline",
]
