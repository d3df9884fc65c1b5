"""
Promotion Controller — FastAPI Server (pipeline control surface)
Start, inspect and cancel promotion runs; approve or deny gated stages;
operator rollback; inbound CI build webhook.
"""

import hmac
import json
import hashlib
import time as _time_mod
from typing import Optional, Dict, Any
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from pydantic import BaseModel, Field

from promoter.config.settings import settings
from promoter.errors import (
    PromotionError, RunConflict, RunNotFound, AgentUnreachable, AgentUnauthorized,
    ApplicationNotFound, RollbackUnavailable,
)
from promoter.manifests.store import InMemoryManifestStore, GitManifestStore
from promoter.manifests.mutator import ManifestMutator, has_skip_marker
from promoter.agent_client.client import DeliveryAgentClient
from promoter.convergence.poller import ConvergencePoller
from promoter.approvals.approval_gate import ApprovalGate
from promoter.pipeline.models import build_default_stages
from promoter.pipeline.promotion_pipeline import PromotionPipeline

_started_at = _time_mod.time()


# ── Global Instances ──────────────────────────────────────────────────────────

def build_pipeline() -> PromotionPipeline:
    """Wire the pipeline from settings."""
    if settings.manifest_repo_path:
        store = GitManifestStore(
            settings.manifest_repo_path,
            remote=settings.manifest_remote, branch=settings.manifest_branch,
            author_name=settings.git_author_name, author_email=settings.git_author_email,
        )
    else:
        store = InMemoryManifestStore()
    agent = DeliveryAgentClient()
    return PromotionPipeline(
        stages=build_default_stages(),
        mutator=ManifestMutator(store),
        agent=agent,
        poller=ConvergencePoller(agent),
        approvals=ApprovalGate(),
    )


pipeline = build_pipeline()


@asynccontextmanager
async def lifespan(app: FastAPI):
    print("[PROMOTER] Starting promotion controller...")
    print(f"[PROMOTER]   Stages: {' -> '.join(s.name + ('*' if s.requires_approval else '') for s in pipeline.stages)}")
    print(f"[PROMOTER]   Manifest store: {type(pipeline.mutator.store).__name__}")
    if settings.persist_runs:
        try:
            from promoter.db.engine import create_tables
            from promoter.db.run_repository import SqlRunStore
            await create_tables()
            pipeline.run_store = SqlRunStore()
            loaded = await pipeline.hydrate()
            print(f"[PROMOTER]   Run store: database ({loaded} runs loaded)")
        except Exception as e:
            print(f"[PROMOTER]   Run store: in-memory fallback ({e})")
    else:
        print("[PROMOTER]   Run store: in-memory")
    print("[PROMOTER] Controller ready.")
    yield
    print("[PROMOTER] Shutting down...")
    await pipeline.shutdown()
    await pipeline.agent.close()
    from promoter.db.engine import dispose_engine
    await dispose_engine()


_openapi_tags = [
    {"name": "System", "description": "Health checks, controller info, stats"},
    {"name": "Runs", "description": "Promotion runs — start, inspect, cancel, history"},
    {"name": "Approvals", "description": "Approval gates for gated stages — approve, deny"},
    {"name": "Applications", "description": "Operator actions on delivery-agent applications — rollback"},
    {"name": "Webhooks", "description": "Inbound CI build notifications"},
]

app = FastAPI(
    title="Promotion Controller",
    description="Drives artifact versions through ordered environment stages with approval gates.",
    version="1.0.0",
    lifespan=lifespan,
    openapi_tags=_openapi_tags,
    docs_url="/docs",
    redoc_url="/redoc",
)


# ── Auth Middleware: verify Bearer tokens on protected routes ──────────────
_PUBLIC_PATHS = {"/info", "/health", "/docs", "/openapi.json", "/redoc", "/webhooks/build"}


class AuthMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        path = request.url.path.rstrip("/")
        if (request.method == "OPTIONS"
                or path in _PUBLIC_PATHS
                or path.startswith("/docs")
                or path.startswith("/openapi")):
            return await call_next(request)

        auth_header = request.headers.get("authorization", "")
        if settings.api_token and auth_header.startswith("Bearer "):
            if hmac.compare_digest(auth_header[7:], settings.api_token):
                return await call_next(request)

        # No valid token: allow in dev mode (ENVIRONMENT=dev), reject otherwise
        if settings.environment in ("dev", "development"):
            return await call_next(request)

        return JSONResponse(status_code=401, content={"detail": "Authentication required."})


app.add_middleware(AuthMiddleware)


def _http_error(e: PromotionError) -> HTTPException:
    if isinstance(e, RunNotFound):
        return HTTPException(404, e.as_dict())
    if isinstance(e, RunConflict):
        return HTTPException(409, e.as_dict())
    if isinstance(e, (ApplicationNotFound, RollbackUnavailable)):
        return HTTPException(404, e.as_dict())
    if isinstance(e, AgentUnauthorized):
        return HTTPException(502, e.as_dict())
    if isinstance(e, AgentUnreachable):
        return HTTPException(503, e.as_dict())
    return HTTPException(400, e.as_dict())


# ══════════════════════════════════════════════════════════════════════════════
# SYSTEM
# ══════════════════════════════════════════════════════════════════════════════

@app.get("/health", tags=["System"])
async def health():
    """Health check — probes the delivery agent."""
    agent_ok = await pipeline.agent.health_check()
    return {
        "status": "ok" if agent_ok else "degraded",
        "version": "1.0.0",
        "checks": {
            "delivery_agent": {"status": "ok" if agent_ok else "unreachable", "url": pipeline.agent.base_url},
            "run_store": {"status": "ok", "backend": type(pipeline.run_store).__name__},
        },
    }


@app.get("/info", tags=["System"])
async def controller_info():
    return {
        "platform": "Promotion Controller",
        "version": "1.0.0",
        "pipeline": pipeline.name,
        "stages": len(pipeline.stages),
        "uptime_seconds": round(_time_mod.time() - _started_at, 1),
    }


@app.get("/stats", tags=["System"])
async def stats():
    return pipeline.get_stats()


@app.get("/stages", tags=["System"])
async def list_stages():
    """The ordered stage list this controller promotes through."""
    return {"stages": [s.model_dump(mode="json") for s in pipeline.stages]}


# ══════════════════════════════════════════════════════════════════════════════
# RUNS
# ══════════════════════════════════════════════════════════════════════════════

class StartRunRequest(BaseModel):
    artifact_version: str
    requested_by: str = "admin"
    metadata: Dict[str, Any] = Field(default_factory=dict)


@app.post("/runs", status_code=202, tags=["Runs"])
async def start_run(req: StartRunRequest):
    """Start a promotion run for an artifact version."""
    try:
        run = await pipeline.start_run(req.artifact_version, req.requested_by, req.metadata)
    except ValueError as e:
        raise HTTPException(400, str(e))
    except PromotionError as e:
        raise _http_error(e)
    return run.model_dump(mode="json")


@app.get("/runs", tags=["Runs"])
async def list_runs(status: Optional[str] = Query(default=None),
                    limit: int = Query(default=50)):
    """List promotion runs, newest first."""
    runs = pipeline.list_runs(status, limit)
    return {"count": len(runs), "runs": [r.model_dump(mode="json") for r in runs]}


@app.get("/runs/{run_id}", tags=["Runs"])
async def get_run(run_id: str):
    run = pipeline.get_run(run_id)
    if not run:
        raise HTTPException(404, "Run not found")
    return run.model_dump(mode="json")


@app.post("/runs/{run_id}/cancel", tags=["Runs"])
async def cancel_run(run_id: str, cancelled_by: str = Query(default="admin")):
    """Cancel a run. Already-triggered syncs on the delivery agent are left alone."""
    try:
        run = await pipeline.cancel_run(run_id, cancelled_by)
    except PromotionError as e:
        raise _http_error(e)
    if not run:
        raise HTTPException(400, "Run already finished")
    return run.model_dump(mode="json")


# ══════════════════════════════════════════════════════════════════════════════
# APPROVALS
# ══════════════════════════════════════════════════════════════════════════════

@app.get("/approvals", tags=["Approvals"])
async def list_pending_approvals():
    pending = pipeline.approvals.list_pending()
    return {"count": len(pending), "approvals": [a.model_dump(mode="json") for a in pending]}


@app.post("/runs/{run_id}/stages/{stage_name}/approve", tags=["Approvals"])
async def approve_stage(run_id: str, stage_name: str, approved_by: str = Query(default="admin")):
    """Approve a gated stage that is awaiting approval."""
    try:
        req = pipeline.approve(run_id, stage_name, approved_by)
    except PromotionError as e:
        raise _http_error(e)
    if not req:
        raise HTTPException(400, "No pending approval for this run and stage")
    return req.model_dump(mode="json")


@app.post("/runs/{run_id}/stages/{stage_name}/deny", tags=["Approvals"])
async def deny_stage(run_id: str, stage_name: str, denied_by: str = Query(default="admin"),
                     reason: str = Query(default="")):
    """Deny a gated stage; the run ends as rejected."""
    try:
        req = pipeline.deny(run_id, stage_name, denied_by, reason)
    except PromotionError as e:
        raise _http_error(e)
    if not req:
        raise HTTPException(400, "No pending approval for this run and stage")
    return req.model_dump(mode="json")


# ══════════════════════════════════════════════════════════════════════════════
# APPLICATIONS
# ══════════════════════════════════════════════════════════════════════════════

class RollbackRequest(BaseModel):
    to_version: str


@app.post("/applications/{application_id}/rollback", tags=["Applications"])
async def rollback_application(application_id: str, req: RollbackRequest):
    """Operator-invoked rollback to a previously deployed version."""
    try:
        return await pipeline.rollback(application_id, req.to_version)
    except PromotionError as e:
        raise _http_error(e)


# ══════════════════════════════════════════════════════════════════════════════
# WEBHOOKS
# ══════════════════════════════════════════════════════════════════════════════

def verify_signature(payload: bytes, signature: str, secret: str) -> bool:
    """Verify an HMAC-SHA256 signature of the form ``sha256=<hex>``."""
    expected = hmac.new(secret.encode(), payload, hashlib.sha256).hexdigest()
    return hmac.compare_digest(f"sha256={expected}", signature or "")


@app.post("/webhooks/build", status_code=202, tags=["Webhooks"])
async def build_webhook(request: Request):
    """
    CI notification that an artifact version was built and passed its gates.
    Commits carrying the skip marker were authored by this controller and are ignored.
    """
    body = await request.body()
    if settings.webhook_secret:
        if not verify_signature(body, request.headers.get("x-signature-256", ""), settings.webhook_secret):
            raise HTTPException(401, "Invalid signature")
    try:
        payload = json.loads(body or b"{}")
    except json.JSONDecodeError:
        raise HTTPException(400, "Body must be JSON")
    if not isinstance(payload, dict):
        raise HTTPException(400, "Body must be a JSON object")

    if has_skip_marker(payload.get("commit_message", "")):
        return {"status": "ignored", "reason": "infrastructure-authored commit"}

    version = str(payload.get("artifact_version") or payload.get("build_number") or "")
    try:
        run = await pipeline.start_run(
            version, payload.get("requested_by") or "ci",
            {"source": "webhook", "commit": payload.get("commit", "")},
        )
    except ValueError as e:
        raise HTTPException(400, str(e))
    except PromotionError as e:
        raise _http_error(e)
    return {"status": "started", "run_id": run.run_id, "artifact_version": run.artifact_version}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8080)
