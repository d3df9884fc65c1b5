"""
Tests for DeliveryAgentClient against a mocked ArgoCD API.
Run: pytest tests/test_agent_client.py -v
"""
import json
import asyncio

import httpx
import pytest

from promoter.agent_client.client import (
    DeliveryAgentClient, SyncState, HealthState, observation_from_application,
)
from promoter.errors import (
    AgentUnreachable, AgentUnauthorized, ApplicationNotFound, RollbackUnavailable,
)


def _app(sync="Synced", health="Healthy", phase=None, history=None):
    status = {"sync": {"status": sync, "revision": "deadbeef"}, "health": {"status": health}}
    if phase:
        status["operationState"] = {"phase": phase, "message": f"phase {phase}"}
    if history is not None:
        status["history"] = history
    return {"metadata": {"name": "hello-world-dev"}, "status": status}


class Recorder:
    """MockTransport handler that replays queued responses and records requests."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        nxt = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(nxt, Exception):
            raise nxt
        return nxt


async def _no_sleep(_):
    return None


def _client(handler, **kwargs):
    kwargs.setdefault("max_retries", 2)
    return DeliveryAgentClient(
        base_url="http://argocd.test", token="tok",
        transport=httpx.MockTransport(handler), sleep=_no_sleep, **kwargs,
    )


class TestObservationMapping:

    def test_synced_healthy(self):
        obs = observation_from_application("a", _app())
        assert obs.sync_state == SyncState.SYNCED
        assert obs.health_state == HealthState.HEALTHY
        assert obs.converged is True
        assert obs.revision == "deadbeef"

    def test_running_operation_is_syncing(self):
        obs = observation_from_application("a", _app(sync="OutOfSync", health="Progressing", phase="Running"))
        assert obs.sync_state == SyncState.SYNCING
        assert obs.converged is False

    def test_failed_operation_is_error(self):
        obs = observation_from_application("a", _app(sync="OutOfSync", phase="Failed"))
        assert obs.sync_state == SyncState.ERROR
        assert obs.failing is True

    def test_unknown_strings(self):
        obs = observation_from_application("a", _app(sync="Weird", health="Suspended"))
        assert obs.sync_state == SyncState.UNKNOWN
        assert obs.health_state == HealthState.UNKNOWN

    def test_synced_but_degraded_is_not_converged(self):
        obs = observation_from_application("a", _app(health="Degraded"))
        assert obs.converged is False
        assert obs.failing is True


class TestOperations:

    @pytest.mark.asyncio
    async def test_trigger_sync(self):
        rec = Recorder(httpx.Response(200, json={"operation": {"sync": {"revision": "abc"}}}))
        client = _client(rec)
        req = await client.trigger_sync("hello-world-dev")
        assert req.application_id == "hello-world-dev"
        assert req.sync_token == "abc"
        sent = rec.requests[0]
        assert sent.method == "POST"
        assert sent.url.path == "/api/v1/applications/hello-world-dev/sync"
        assert sent.headers["authorization"] == "Bearer tok"
        assert json.loads(sent.content)["prune"] is False
        await client.close()

    @pytest.mark.asyncio
    async def test_get_status(self):
        rec = Recorder(httpx.Response(200, json=_app(health="Progressing")))
        client = _client(rec)
        obs = await client.get_status("hello-world-dev")
        assert obs.health_state == HealthState.PROGRESSING
        assert rec.requests[0].method == "GET"
        await client.close()

    @pytest.mark.asyncio
    async def test_not_found(self):
        client = _client(Recorder(httpx.Response(404, json={"message": "not found"})))
        with pytest.raises(ApplicationNotFound):
            await client.get_status("missing")
        await client.close()

    @pytest.mark.asyncio
    async def test_rollback_by_revision(self):
        history = [{"id": 3, "revision": "aaa"}, {"id": 4, "revision": "bbb"}]
        rec = Recorder(httpx.Response(200, json=_app(history=history)), httpx.Response(200, json={}))
        client = _client(rec)
        await client.rollback("hello-world-prod", "aaa")
        post = rec.requests[-1]
        assert post.url.path == "/api/v1/applications/hello-world-prod/rollback"
        assert json.loads(post.content)["id"] == 3
        await client.close()

    @pytest.mark.asyncio
    async def test_rollback_unavailable(self):
        rec = Recorder(httpx.Response(200, json=_app(history=[{"id": 1, "revision": "aaa"}])))
        client = _client(rec)
        with pytest.raises(RollbackUnavailable):
            await client.rollback("hello-world-prod", "zzz")
        assert all(r.method == "GET" for r in rec.requests)
        await client.close()


class TestRetries:

    @pytest.mark.asyncio
    async def test_server_error_retried(self):
        rec = Recorder(httpx.Response(503), httpx.Response(200, json=_app()))
        client = _client(rec)
        obs = await client.get_status("hello-world-dev")
        assert obs.converged
        assert len(rec.requests) == 2
        await client.close()

    @pytest.mark.asyncio
    async def test_unreachable_after_retries_exhausted(self):
        rec = Recorder(httpx.ConnectError("connection refused"))
        client = _client(rec, max_retries=2)
        with pytest.raises(AgentUnreachable):
            await client.trigger_sync("hello-world-dev")
        assert len(rec.requests) == 3
        await client.close()

    @pytest.mark.asyncio
    async def test_backoff_is_exponential(self):
        delays = []

        async def record_sleep(d):
            delays.append(d)

        rec = Recorder(httpx.ConnectError("down"))
        client = DeliveryAgentClient(
            base_url="http://argocd.test", token="tok", max_retries=3, backoff_seconds=0.5,
            transport=httpx.MockTransport(rec), sleep=record_sleep,
        )
        with pytest.raises(AgentUnreachable):
            await client.get_status("hello-world-dev")
        assert delays == [0.5, 1.0, 2.0]
        await client.close()

    @pytest.mark.asyncio
    async def test_unauthorized_not_retried(self):
        rec = Recorder(httpx.Response(401))
        client = _client(rec)
        with pytest.raises(AgentUnauthorized):
            await client.trigger_sync("hello-world-dev")
        assert len(rec.requests) == 1
        await client.close()

    @pytest.mark.asyncio
    async def test_unauthorized_retried_once_after_refresh(self):
        rec = Recorder(httpx.Response(401), httpx.Response(200, json=_app()))

        async def refresh():
            return "fresh-token"

        client = _client(rec, token_provider=refresh)
        await client.get_status("hello-world-dev")
        assert len(rec.requests) == 2
        assert rec.requests[1].headers["authorization"] == "Bearer fresh-token"
        await client.close()

    @pytest.mark.asyncio
    async def test_refresh_happens_only_once(self):
        rec = Recorder(httpx.Response(403))

        async def refresh():
            return "still-bad"

        client = _client(rec, token_provider=refresh)
        with pytest.raises(AgentUnauthorized):
            await client.get_status("hello-world-dev")
        assert len(rec.requests) == 2
        await client.close()


class TestPerApplicationLock:

    @staticmethod
    def _overlap_tracker():
        state = {"in_flight": 0, "max_in_flight": 0}

        async def handler(request: httpx.Request) -> httpx.Response:
            state["in_flight"] += 1
            state["max_in_flight"] = max(state["max_in_flight"], state["in_flight"])
            await asyncio.sleep(0.01)
            state["in_flight"] -= 1
            if request.method == "POST":
                return httpx.Response(200, json={"operation": {"sync": {"revision": "deadbeef"}}})
            return httpx.Response(200, json=_app())

        return state, handler

    @pytest.mark.asyncio
    async def test_same_application_calls_never_overlap(self):
        state, handler = self._overlap_tracker()
        client = _client(handler)
        await asyncio.gather(
            client.trigger_sync("hello-world-dev"),
            client.get_status("hello-world-dev"),
            client.get_status("hello-world-dev"),
            client.get_history("hello-world-dev"),
        )
        assert state["max_in_flight"] == 1
        await client.close()

    @pytest.mark.asyncio
    async def test_different_applications_run_concurrently(self):
        state, handler = self._overlap_tracker()
        client = _client(handler)
        await asyncio.gather(
            client.get_status("hello-world-dev"),
            client.get_status("hello-world-prod"),
        )
        assert state["max_in_flight"] == 2
        await client.close()
