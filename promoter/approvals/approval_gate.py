"""
Approval Gate — human-in-the-loop checkpoints for gated stages.
Requests are keyed by (run id, stage name). A waiting stage suspends until
an explicit approve/deny arrives or the bounded wait expires; there is no
implicit approval.
"""

import uuid
import asyncio
import logging
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional, Dict, List, Tuple
from pydantic import BaseModel, Field

from promoter.config.settings import settings
from promoter.errors import ApprovalTimeout, ApprovalDenied

logger = logging.getLogger(__name__)


class ApprovalStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    DENIED = "denied"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


class ApprovalRequest(BaseModel):
    request_id: str = Field(default_factory=lambda: f"appr-{uuid.uuid4().hex[:8]}")
    run_id: str
    stage_name: str
    artifact_version: str = ""
    status: ApprovalStatus = ApprovalStatus.PENDING
    timeout_seconds: float = 0.0
    requested_at: datetime = Field(default_factory=datetime.utcnow)
    expires_at: Optional[datetime] = None
    resolved_by: str = ""
    reason: str = ""
    resolved_at: Optional[datetime] = None


class ApprovalGate:
    """Holds pending approval requests and the futures stages wait on."""

    def __init__(self, default_timeout: Optional[float] = None):
        self.default_timeout = default_timeout or settings.approval_timeout_seconds
        self._requests: Dict[Tuple[str, str], ApprovalRequest] = {}
        self._futures: Dict[Tuple[str, str], asyncio.Future] = {}
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    # ── Requests ──────────────────────────────────────────────────

    def request(self, run_id: str, stage_name: str, artifact_version: str = "",
                timeout: Optional[float] = None) -> ApprovalRequest:
        """Open a pending approval. Must be called from the event loop that will wait on it."""
        key = (run_id, stage_name)
        existing = self._requests.get(key)
        if existing and existing.status == ApprovalStatus.PENDING:
            return existing

        self._loop = asyncio.get_running_loop()
        timeout = timeout or self.default_timeout
        req = ApprovalRequest(
            run_id=run_id, stage_name=stage_name, artifact_version=artifact_version,
            timeout_seconds=timeout,
        )
        req.expires_at = req.requested_at + timedelta(seconds=timeout)
        self._requests[key] = req
        self._futures[key] = self._loop.create_future()
        logger.info(f"[APPROVAL] Awaiting approval for run {run_id} stage '{stage_name}' ({timeout}s)")
        return req

    def _settle(self, key: Tuple[str, str]):
        future = self._futures.pop(key, None)
        if future is None or future.done():
            return
        loop = future.get_loop()
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is loop:
            future.set_result(self._requests[key].status)
        else:
            loop.call_soon_threadsafe(
                lambda: future.done() or future.set_result(self._requests[key].status)
            )

    def _resolve(self, run_id: str, stage_name: str, status: ApprovalStatus,
                 resolved_by: str, reason: str = "") -> Optional[ApprovalRequest]:
        key = (run_id, stage_name)
        req = self._requests.get(key)
        if not req or req.status != ApprovalStatus.PENDING:
            return None
        req.status = status
        req.resolved_by = resolved_by
        req.reason = reason
        req.resolved_at = datetime.utcnow()
        self._settle(key)
        return req

    def approve(self, run_id: str, stage_name: str, approved_by: str = "admin") -> Optional[ApprovalRequest]:
        """Approve a pending request. Returns None if nothing is pending for the key."""
        req = self._resolve(run_id, stage_name, ApprovalStatus.APPROVED, approved_by)
        if req:
            logger.info(f"[APPROVAL] Run {run_id} stage '{stage_name}' approved by {approved_by}")
        return req

    def deny(self, run_id: str, stage_name: str, denied_by: str = "admin",
             reason: str = "") -> Optional[ApprovalRequest]:
        """Deny a pending request. Returns None if nothing is pending for the key."""
        req = self._resolve(run_id, stage_name, ApprovalStatus.DENIED, denied_by, reason)
        if req:
            logger.info(f"[APPROVAL] Run {run_id} stage '{stage_name}' denied by {denied_by}")
        return req

    def cancel(self, run_id: str, stage_name: str, cancelled_by: str = "") -> Optional[ApprovalRequest]:
        return self._resolve(run_id, stage_name, ApprovalStatus.CANCELLED, cancelled_by)

    def discard(self, run_id: str) -> int:
        """Drop every request of a finished run; pending ones are cancelled first."""
        keys = [k for k in self._requests if k[0] == run_id]
        for key in keys:
            self.cancel(*key)
            self._requests.pop(key, None)
            self._futures.pop(key, None)
        return len(keys)

    # ── Waiting ───────────────────────────────────────────────────

    async def wait(self, run_id: str, stage_name: str) -> ApprovalRequest:
        """
        Suspend until the request for (run_id, stage_name) is decided.
        Raises ApprovalTimeout when the bound expires, ApprovalDenied on denial.
        """
        key = (run_id, stage_name)
        req = self._requests.get(key)
        if req is None:
            raise KeyError(f"No approval requested for run {run_id} stage '{stage_name}'")

        future = self._futures.get(key)
        if future is not None:
            try:
                await asyncio.wait_for(asyncio.shield(future), timeout=req.timeout_seconds)
            except asyncio.TimeoutError:
                if req.status == ApprovalStatus.PENDING:
                    self._resolve(run_id, stage_name, ApprovalStatus.EXPIRED, "", "approval window elapsed")
                    logger.warning(f"[APPROVAL] Run {run_id} stage '{stage_name}' expired")
            except asyncio.CancelledError:
                self.cancel(run_id, stage_name)
                raise

        if req.status == ApprovalStatus.APPROVED:
            return req
        if req.status == ApprovalStatus.DENIED:
            raise ApprovalDenied(run_id, stage_name, req.resolved_by, req.reason)
        if req.status == ApprovalStatus.EXPIRED:
            raise ApprovalTimeout(run_id, stage_name, req.timeout_seconds)
        raise asyncio.CancelledError()

    # ── Queries ───────────────────────────────────────────────────

    def get(self, run_id: str, stage_name: str) -> Optional[ApprovalRequest]:
        return self._requests.get((run_id, stage_name))

    def list_pending(self) -> List[ApprovalRequest]:
        pending = [r for r in self._requests.values() if r.status == ApprovalStatus.PENDING]
        pending.sort(key=lambda r: r.requested_at)
        return pending

    def list_requests(self, run_id: Optional[str] = None) -> List[ApprovalRequest]:
        reqs = [r for r in self._requests.values() if not run_id or r.run_id == run_id]
        reqs.sort(key=lambda r: r.requested_at, reverse=True)
        return reqs
