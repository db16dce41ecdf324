from __future__ import annotations

import pytest
from httpx import ASGITransport, AsyncClient

from keysync.apps.api.main import create_app
from keysync.core.config import get_settings


_HEADERS = {"X-Ops-Token": "ops-secret"}


@pytest.fixture
def ops_token(monkeypatch) -> None:
    monkeypatch.setenv("OPS_API_TOKEN", "ops-secret")
    monkeypatch.setenv("REMOTE_BASE_URL", "")
    get_settings.cache_clear()


def _client() -> AsyncClient:
    return AsyncClient(transport=ASGITransport(app=create_app()), base_url="http://test")


@pytest.mark.asyncio
async def test_health_is_open() -> None:
    async with _client() as client:
        response = await client.get("/v1/health")
    assert response.status_code == 200
    assert response.json()["data"]["status"] == "ok"
    assert response.json()["data"]["version"]
    assert response.json()["meta"]["api_version"] == "v1"


@pytest.mark.asyncio
async def test_ops_surface_is_closed_without_configured_token() -> None:
    async with _client() as client:
        response = await client.get("/v1/ops/jobs/purge/status", headers=_HEADERS)
    assert response.status_code == 503
    assert response.json()["error"]["code"] == "OPS_DISABLED"


@pytest.mark.asyncio
async def test_wrong_token_is_rejected(ops_token) -> None:
    async with _client() as client:
        response = await client.get("/v1/ops/jobs/purge/status", headers={"X-Ops-Token": "nope"})
    assert response.status_code == 401
    assert response.json()["error"]["code"] == "AUTH_UNAUTHORIZED"


@pytest.mark.asyncio
async def test_unknown_job_kind_is_404(ops_token) -> None:
    async with _client() as client:
        response = await client.post("/v1/ops/jobs/mystery/run", headers=_HEADERS)
    assert response.status_code == 404
    assert response.json()["error"]["code"] == "UNKNOWN_JOB"


@pytest.mark.asyncio
async def test_manual_run_reports_configuration_error_shape(ops_token) -> None:
    async with _client() as client:
        run = await client.post("/v1/ops/jobs/reconciliation/run", headers=_HEADERS, json={"manual": True})
        status = await client.get("/v1/ops/jobs/reconciliation/status", headers=_HEADERS)
        cleared = await client.post("/v1/ops/jobs/reconciliation/clear-lock", headers=_HEADERS)
    assert run.status_code == 200
    outcome = run.json()["data"]
    assert outcome["status"] == "error"
    assert outcome["error"] == "remote_not_configured"
    assert status.json()["data"]["last_status"] == "error"
    assert status.json()["data"]["consecutive_failures"] == 1
    assert cleared.json()["data"]["job_kind"] == "reconciliation"


@pytest.mark.asyncio
async def test_enqueue_endpoints(ops_token) -> None:
    event = {
        "event": "renewed",
        "owner_id": "5",
        "subscription_id": "s-5",
        "plan_slug": "pro",
    }
    async with _client() as client:
        purge = await client.post(
            "/v1/ops/purge-jobs",
            headers=_HEADERS,
            json={"reason": "gdpr", "owner_id": "42"},
        )
        duplicate = await client.post(
            "/v1/ops/purge-jobs",
            headers=_HEADERS,
            json={"reason": "gdpr", "owner_id": "42"},
        )
        missing = await client.post("/v1/ops/purge-jobs", headers=_HEADERS, json={"reason": "gdpr"})
        provision = await client.post("/v1/ops/provision-events", headers=_HEADERS, json=event)
        replay = await client.post("/v1/ops/provision-events", headers=_HEADERS, json=event)
        invalid = await client.post("/v1/ops/provision-events", headers=_HEADERS, json={"event": "bogus"})

    assert purge.status_code == 202
    assert purge.json()["data"]["status"] == "pending"
    assert duplicate.json()["data"]["job_id"] == purge.json()["data"]["job_id"]
    assert missing.status_code == 422
    assert missing.json()["error"]["code"] == "INVALID_PAYLOAD"
    assert provision.status_code == 202
    assert len(provision.json()["data"]["event_id"]) == 64
    assert replay.json()["data"]["job_id"] == provision.json()["data"]["job_id"]
    assert invalid.status_code == 422


@pytest.mark.asyncio
async def test_openapi_documents_token_failures_on_ops_routes() -> None:
    async with _client() as client:
        response = await client.get("/openapi.json")
    operation = response.json()["paths"]["/v1/ops/jobs/{job_kind}/status"]["get"]
    assert {"401", "503"} <= set(operation["responses"])
