"""
Shared fixtures for the promotion controller test suite.
"""
import sys
import os
import asyncio
from typing import Dict, List, Tuple

import pytest

# Ensure project root is on sys.path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

# Set env vars before any imports that read them; ENVIRONMENT=dev bypasses auth
os.environ["ENVIRONMENT"] = "dev"
os.environ["PERSIST_RUNS"] = "false"
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///test.db")
os.environ.setdefault("AGENT_BASE_URL", "http://argocd.test")
os.environ.setdefault("AGENT_TOKEN", "test-token")

from promoter.agent_client.client import (  # noqa: E402
    SyncRequest, ConvergenceObservation, SyncState, HealthState,
)


KUSTOMIZATION = """apiVersion: kustomize.config.k8s.io/v1beta1
kind: Kustomization
resources:
- ../../base
images:
- name: hello-world
  newName: registry.local/hello-world
  newTag: "41"
"""

SYNCING = (SyncState.SYNCING, HealthState.PROGRESSING)
DEGRADED = (SyncState.SYNCED, HealthState.DEGRADED)
HEALTHY = (SyncState.SYNCED, HealthState.HEALTHY)
ERROR = (SyncState.ERROR, HealthState.UNKNOWN)


class FakeClock:
    """Monotonic clock whose sleep advances time instead of waiting."""

    def __init__(self):
        self.now = 0.0
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds
        await asyncio.sleep(0.001)


class FakeAgent:
    """
    Scripted stand-in for DeliveryAgentClient. Each application returns its
    scripted (sync, health) pairs in order; the last one repeats. A state may
    carry a third item, the reported revision, or a callable producing it.
    """

    def __init__(self):
        self.base_url = "http://fake-agent"
        self.scripts: Dict[str, List[Tuple]] = {}
        self.calls: List[Tuple[str, str]] = []
        self.history: Dict[str, List[Dict]] = {}

    def script(self, application_id: str, *states: Tuple):
        self.scripts[application_id] = list(states)

    async def trigger_sync(self, application_id: str) -> SyncRequest:
        self.calls.append(("sync", application_id))
        return SyncRequest(application_id=application_id, sync_token="abc123")

    async def get_status(self, application_id: str) -> ConvergenceObservation:
        self.calls.append(("status", application_id))
        seq = self.scripts.get(application_id) or [HEALTHY]
        sync_state, health_state, *rest = seq.pop(0) if len(seq) > 1 else seq[0]
        revision = rest[0] if rest else None
        if callable(revision):
            revision = revision()
        return ConvergenceObservation(
            application_id=application_id, sync_state=sync_state, health_state=health_state,
            revision=revision,
        )

    async def rollback(self, application_id: str, to_version: str) -> Dict:
        self.calls.append(("rollback", application_id))
        return {"application_id": application_id, "rolled_back_to": to_version}

    async def health_check(self) -> bool:
        return True

    async def close(self):
        pass


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def fake_agent():
    return FakeAgent()


@pytest.fixture
def manifest_store():
    """In-memory manifest tree with dev, staging and prod overlays at tag 41."""
    from promoter.manifests.store import InMemoryManifestStore
    return InMemoryManifestStore({
        "overlays/dev/kustomization.yaml": KUSTOMIZATION,
        "overlays/staging/kustomization.yaml": KUSTOMIZATION,
        "overlays/prod/kustomization.yaml": KUSTOMIZATION,
    })


@pytest.fixture
def mutator(manifest_store):
    from promoter.manifests.mutator import ManifestMutator
    return ManifestMutator(manifest_store, skip_marker="[skip ci]")


@pytest.fixture
def make_stage():
    from promoter.pipeline.models import EnvironmentStage

    def _make(name: str, requires_approval: bool = False, **kwargs):
        kwargs.setdefault("convergence_timeout_seconds", 3)
        kwargs.setdefault("poll_interval_seconds", 1)
        return EnvironmentStage(
            name=name,
            application_id=f"hello-world-{name}",
            manifest_locator=f"overlays/{name}/kustomization.yaml#hello-world",
            requires_approval=requires_approval,
            **kwargs,
        )
    return _make


@pytest.fixture
def make_pipeline(mutator, fake_agent, fake_clock, make_stage):
    """Build a PromotionPipeline over the fake agent and clock. Defaults to dev -> prod(gated)."""
    from promoter.convergence.poller import ConvergencePoller
    from promoter.approvals.approval_gate import ApprovalGate
    from promoter.pipeline.promotion_pipeline import PromotionPipeline
    from promoter.pipeline.run_store import InMemoryRunStore

    def _make(stages=None, approval_timeout: float = 5.0, failure_threshold: int = 3, run_store=None):
        if stages is None:
            stages = [make_stage("dev"), make_stage("prod", requires_approval=True)]
        poller = ConvergencePoller(
            fake_agent, failure_threshold=failure_threshold,
            clock=fake_clock, sleep=fake_clock.sleep,
        )
        return PromotionPipeline(
            stages=stages, mutator=mutator, agent=fake_agent, poller=poller,
            approvals=ApprovalGate(default_timeout=approval_timeout),
            run_store=run_store or InMemoryRunStore(),
        )
    return _make


async def wait_until(predicate, timeout: float = 5.0):
    """Poll a predicate on the running loop until it holds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)


@pytest.fixture
def until():
    return wait_until
