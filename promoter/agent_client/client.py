"""
Delivery Agent Client — thin bridge to the GitOps reconciler's control API.
Speaks the ArgoCD REST API: trigger sync, read sync/health status, roll back
to a retained history entry. Calls for one application are serialized; the
agent is eventually consistent, so nothing here waits for reconciliation.
"""

import asyncio
import logging
from datetime import datetime
from enum import Enum
from typing import Optional, Dict, List, Any, Callable, Awaitable

import httpx
from pydantic import BaseModel, Field

from promoter.config.settings import settings
from promoter.errors import (
    AgentError, AgentUnreachable, AgentUnauthorized, ApplicationNotFound, RollbackUnavailable,
)

logger = logging.getLogger(__name__)


# ══════════════════════════════════════════════════════════════════════════════
# Models
# ══════════════════════════════════════════════════════════════════════════════

class SyncState(str, Enum):
    UNKNOWN = "unknown"
    SYNCING = "syncing"
    SYNCED = "synced"
    OUT_OF_SYNC = "out_of_sync"
    ERROR = "error"


class HealthState(str, Enum):
    UNKNOWN = "unknown"
    PROGRESSING = "progressing"
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    MISSING = "missing"


class SyncRequest(BaseModel):
    """A sync trigger sent for one stage of one run."""
    application_id: str
    requested_at: datetime = Field(default_factory=datetime.utcnow)
    sync_token: Optional[str] = None


class ConvergenceObservation(BaseModel):
    """One status poll result."""
    application_id: str = ""
    sync_state: SyncState = SyncState.UNKNOWN
    health_state: HealthState = HealthState.UNKNOWN
    observed_at: datetime = Field(default_factory=datetime.utcnow)
    revision: Optional[str] = None
    message: str = ""

    @property
    def converged(self) -> bool:
        return self.sync_state == SyncState.SYNCED and self.health_state == HealthState.HEALTHY

    @property
    def failing(self) -> bool:
        return self.sync_state == SyncState.ERROR or self.health_state == HealthState.DEGRADED


# ArgoCD status strings -> our enums
_SYNC_MAP = {
    "Synced": SyncState.SYNCED,
    "OutOfSync": SyncState.OUT_OF_SYNC,
    "Unknown": SyncState.UNKNOWN,
}
_HEALTH_MAP = {
    "Healthy": HealthState.HEALTHY,
    "Progressing": HealthState.PROGRESSING,
    "Degraded": HealthState.DEGRADED,
    "Missing": HealthState.MISSING,
    "Unknown": HealthState.UNKNOWN,
}
_FAILED_PHASES = ("Error", "Failed")
_RUNNING_PHASES = ("Running", "Terminating")


def observation_from_application(application_id: str, data: Dict[str, Any]) -> ConvergenceObservation:
    """Map an ArgoCD Application resource onto a ConvergenceObservation."""
    status = data.get("status") or {}
    sync = status.get("sync") or {}
    health = status.get("health") or {}
    operation = status.get("operationState") or {}

    sync_state = _SYNC_MAP.get(sync.get("status", ""), SyncState.UNKNOWN)
    phase = operation.get("phase", "")
    if phase in _FAILED_PHASES:
        sync_state = SyncState.ERROR
    elif phase in _RUNNING_PHASES and sync_state != SyncState.SYNCED:
        sync_state = SyncState.SYNCING

    return ConvergenceObservation(
        application_id=application_id,
        sync_state=sync_state,
        health_state=_HEALTH_MAP.get(health.get("status", ""), HealthState.UNKNOWN),
        revision=sync.get("revision"),
        message=operation.get("message") or health.get("message") or "",
    )


# ══════════════════════════════════════════════════════════════════════════════
# Client
# ══════════════════════════════════════════════════════════════════════════════

class DeliveryAgentClient:
    """Client for the delivery agent's application control API."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        token: Optional[str] = None,
        max_retries: Optional[int] = None,
        backoff_seconds: Optional[float] = None,
        token_provider: Optional[Callable[[], Awaitable[str]]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.base_url = (base_url or settings.agent_base_url).rstrip("/")
        self._token = token if token is not None else settings.agent_token
        self.max_retries = settings.agent_max_retries if max_retries is None else max_retries
        self.backoff_seconds = settings.agent_retry_backoff_seconds if backoff_seconds is None else backoff_seconds
        self._token_provider = token_provider
        self._sleep = sleep
        self._locks: Dict[str, asyncio.Lock] = {}
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=settings.agent_timeout_seconds,
            verify=settings.agent_verify_tls,
            transport=transport,
        )
        logger.info(f"[AGENT] Initialized with base_url={self.base_url}")

    def _lock(self, application_id: str) -> asyncio.Lock:
        lock = self._locks.get(application_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[application_id] = lock
        return lock

    def _headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"
        return headers

    # ── Transport with retry ──────────────────────────────────────

    async def _send(self, method: str, path: str, application_id: str,
                    json: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        Send one request. AgentUnreachable is retried with exponential backoff;
        401/403 gets a single retry only after the token provider refreshed the
        credential.
        """
        refreshed = False
        attempt = 0
        while True:
            try:
                resp = await self._client.request(method, path, json=json, headers=self._headers())
            except httpx.TransportError as e:
                err: AgentError = AgentUnreachable(
                    f"Delivery agent unreachable: {e}", application_id=application_id,
                )
            else:
                if resp.status_code in (401, 403):
                    if self._token_provider is not None and not refreshed:
                        refreshed = True
                        self._token = await self._token_provider()
                        logger.info(f"[AGENT] Credential refreshed after {resp.status_code}")
                        continue
                    raise AgentUnauthorized(
                        f"Delivery agent rejected credential ({resp.status_code})",
                        application_id=application_id, status_code=resp.status_code,
                    )
                if resp.status_code == 404:
                    raise ApplicationNotFound(
                        f"Application '{application_id}' not found",
                        application_id=application_id, status_code=404,
                    )
                if resp.status_code >= 500:
                    err = AgentUnreachable(
                        f"Delivery agent returned {resp.status_code}",
                        application_id=application_id, status_code=resp.status_code,
                    )
                elif resp.status_code >= 400:
                    raise AgentError(
                        f"Delivery agent rejected {method} {path}: {resp.status_code} {resp.text[:200]}",
                        application_id=application_id, status_code=resp.status_code,
                    )
                else:
                    return resp.json() if resp.content else {}

            if attempt >= self.max_retries:
                logger.warning(f"[AGENT] {method} {path} failed after {attempt + 1} attempts: {err}")
                raise err
            delay = self.backoff_seconds * (2 ** attempt)
            attempt += 1
            logger.info(f"[AGENT] {method} {path} retry {attempt}/{self.max_retries} in {delay:.1f}s: {err}")
            await self._sleep(delay)

    # ── Operations ────────────────────────────────────────────────

    async def trigger_sync(self, application_id: str, revision: Optional[str] = None) -> SyncRequest:
        """Ask the agent to sync an application. Returns before reconciliation completes."""
        body: Dict[str, Any] = {"prune": False, "dryRun": False}
        if revision:
            body["revision"] = revision
        requested_at = datetime.utcnow()
        async with self._lock(application_id):
            data = await self._send("POST", f"/api/v1/applications/{application_id}/sync",
                                    application_id, json=body)
        operation = data.get("operation") or {}
        token = (operation.get("sync") or {}).get("revision") or revision
        logger.info(f"[AGENT] Sync triggered for {application_id}")
        return SyncRequest(application_id=application_id, requested_at=requested_at, sync_token=token)

    async def get_status(self, application_id: str) -> ConvergenceObservation:
        """Read combined sync and health status. Read-only."""
        async with self._lock(application_id):
            data = await self._send("GET", f"/api/v1/applications/{application_id}", application_id)
        return observation_from_application(application_id, data)

    async def get_history(self, application_id: str) -> List[Dict[str, Any]]:
        async with self._lock(application_id):
            data = await self._send("GET", f"/api/v1/applications/{application_id}", application_id)
        return list((data.get("status") or {}).get("history") or [])

    async def rollback(self, application_id: str, to_version: str) -> Dict[str, Any]:
        """
        Roll an application back to a retained history entry, matched by
        history id or deployed revision. Raises RollbackUnavailable otherwise.
        """
        history = await self.get_history(application_id)
        target = next(
            (h for h in history
             if str(h.get("id")) == str(to_version) or h.get("revision") == to_version),
            None,
        )
        if target is None:
            raise RollbackUnavailable(application_id, to_version)
        async with self._lock(application_id):
            data = await self._send(
                "POST", f"/api/v1/applications/{application_id}/rollback",
                application_id, json={"id": target.get("id"), "prune": False},
            )
        logger.info(f"[AGENT] Rollback of {application_id} to history {target.get('id')} requested")
        return data

    async def health_check(self) -> bool:
        """Check if the delivery agent API is reachable."""
        try:
            resp = await self._client.get("/api/version", headers=self._headers())
            return resp.status_code == 200
        except httpx.HTTPError as e:
            logger.warning(f"[AGENT] Health check failed: {e}")
            return False

    async def close(self):
        """Close the HTTP client."""
        await self._client.aclose()
