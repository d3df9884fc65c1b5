"""
Promotion Controller — exception taxonomy.

    PromotionError (base)
    ├── ManifestNotFound        # locator does not resolve to exactly one field
    ├── WriteConflict           # store rejected write (retry after rebase)
    ├── ManifestStoreError      # store backend failed (git CLI error or timeout)
    ├── AgentError              # delivery agent control API
    │   ├── AgentUnreachable    # network / 5xx (retriable with backoff)
    │   ├── AgentUnauthorized   # expired or invalid bearer credential
    │   ├── ApplicationNotFound # unknown application (configuration error)
    │   └── RollbackUnavailable # no retained history for that version
    ├── ConvergenceTimeout      # stage-fatal, also a TimeoutError
    ├── ConvergenceFailed       # stage-fatal
    ├── ApprovalOutcome         # run-terminal, a deliberate stop
    │   ├── ApprovalTimeout
    │   └── ApprovalDenied
    ├── RunConflict             # another active run targets the same application
    └── RunNotFound
"""

from typing import Any, Dict, Optional


class PromotionError(Exception):
    """Base class for every error raised by the promotion controller."""

    retriable = False

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context = context

    def as_dict(self) -> Dict[str, Any]:
        data = {"error": type(self).__name__, "message": self.message, "retriable": self.retriable}
        data.update({k: v for k, v in self.context.items() if v is not None})
        return data


# ── Manifest store ────────────────────────────────────────────────

class ManifestNotFound(PromotionError):
    def __init__(self, locator: str, reason: str = "does not resolve"):
        super().__init__(f"Manifest locator '{locator}' {reason}", locator=locator)
        self.locator = locator


class WriteConflict(PromotionError):
    retriable = True

    def __init__(self, path: str, expected_revision: Optional[str] = None, detail: str = ""):
        msg = f"Concurrent update rejected write to '{path}'"
        if detail:
            msg = f"{msg}: {detail}"
        super().__init__(msg, path=path, expected_revision=expected_revision)
        self.path = path
        self.expected_revision = expected_revision


class ManifestStoreError(PromotionError):
    def __init__(self, operation: str, detail: str = ""):
        super().__init__(f"Manifest store {operation} failed: {detail or 'unknown error'}", operation=operation)
        self.operation = operation


# ── Delivery agent ────────────────────────────────────────────────

class AgentError(PromotionError):
    def __init__(self, message: str, application_id: Optional[str] = None,
                 status_code: Optional[int] = None):
        super().__init__(message, application_id=application_id, status_code=status_code)
        self.application_id = application_id
        self.status_code = status_code


class AgentUnreachable(AgentError):
    retriable = True


class AgentUnauthorized(AgentError):
    pass


class ApplicationNotFound(AgentError):
    pass


class RollbackUnavailable(AgentError):
    def __init__(self, application_id: str, to_version: str):
        super().__init__(
            f"No retained history for '{to_version}' on application '{application_id}'",
            application_id=application_id,
        )
        self.context["to_version"] = to_version
        self.to_version = to_version


# ── Convergence ───────────────────────────────────────────────────

class ConvergenceTimeout(PromotionError, TimeoutError):
    def __init__(self, application_id: str, timeout: float, last_observation=None):
        super().__init__(
            f"Application '{application_id}' did not converge within {timeout}s",
            application_id=application_id, timeout=timeout,
        )
        self.application_id = application_id
        self.timeout = timeout
        self.last_observation = last_observation


class ConvergenceFailed(PromotionError):
    def __init__(self, application_id: str, consecutive: int, last_observation=None):
        state = ""
        if last_observation is not None:
            state = f" (sync={last_observation.sync_state.value}, health={last_observation.health_state.value})"
        super().__init__(
            f"Application '{application_id}' reported failure for {consecutive} consecutive polls{state}",
            application_id=application_id, consecutive=consecutive,
        )
        self.application_id = application_id
        self.consecutive = consecutive
        self.last_observation = last_observation


# ── Approvals ─────────────────────────────────────────────────────

class ApprovalOutcome(PromotionError):
    """Not a failure: the run was deliberately stopped at a gate."""

    def __init__(self, message: str, run_id: str, stage_name: str, **context: Any):
        super().__init__(message, run_id=run_id, stage_name=stage_name, **context)
        self.run_id = run_id
        self.stage_name = stage_name


class ApprovalTimeout(ApprovalOutcome):
    def __init__(self, run_id: str, stage_name: str, timeout: float):
        super().__init__(
            f"No approval for stage '{stage_name}' of run {run_id} within {timeout}s",
            run_id, stage_name, timeout=timeout,
        )
        self.timeout = timeout


class ApprovalDenied(ApprovalOutcome):
    def __init__(self, run_id: str, stage_name: str, denied_by: str = "", reason: str = ""):
        super().__init__(
            f"Stage '{stage_name}' of run {run_id} denied by {denied_by or 'unknown'}"
            + (f": {reason}" if reason else ""),
            run_id, stage_name, denied_by=denied_by, reason=reason,
        )
        self.denied_by = denied_by
        self.reason = reason


# ── Runs ──────────────────────────────────────────────────────────

class RunConflict(PromotionError):
    def __init__(self, application_ids, active_run_id: str):
        apps = ", ".join(sorted(application_ids))
        super().__init__(
            f"Run {active_run_id} is already promoting to {apps}",
            active_run_id=active_run_id, application_ids=sorted(application_ids),
        )
        self.active_run_id = active_run_id


class RunNotFound(PromotionError):
    def __init__(self, run_id: str):
        super().__init__(f"Run '{run_id}' not found", run_id=run_id)
        self.run_id = run_id
