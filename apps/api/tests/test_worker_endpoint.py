from contextlib import ExitStack
from unittest.mock import AsyncMock, patch

import pytest

from models.audit_run import AuditRun

WORKER_SECRET = "test-worker-secret-0123456789abcdef"
HEADERS = {"x-internal-worker-secret": WORKER_SECRET}


@pytest.fixture
def worker_secret():
    with patch("routers.audit.settings.INTERNAL_WORKER_SECRET", WORKER_SECRET):
        yield WORKER_SECRET


@pytest.mark.asyncio
async def test_worker_endpoint_is_disabled_without_a_secret(audit_client):
    with patch("routers.audit.settings.INTERNAL_WORKER_SECRET", ""):
        response = await audit_client.post("/audit/worker", json={"runId": "r1"}, headers=HEADERS)
    assert response.status_code == 503
    assert response.json()["error"] == "WORKER_DISABLED"


@pytest.mark.asyncio
async def test_worker_endpoint_rejects_wrong_secret(audit_client, worker_secret):
    response = await audit_client.post(
        "/audit/worker", json={"runId": "r1"}, headers={"x-internal-worker-secret": "wrong"}
    )
    assert response.status_code == 401
    assert response.json()["error"] == "UNAUTHORIZED"


@pytest.mark.asyncio
async def test_worker_endpoint_requires_run_id(audit_client, worker_secret):
    response = await audit_client.post("/audit/worker", json={}, headers=HEADERS)
    assert response.status_code == 400
    assert response.json()["error"] == "MISSING_RUN_ID"


@pytest.mark.asyncio
async def test_worker_endpoint_executes_the_run(audit_client, worker_secret, product, stage_outputs):
    created = await audit_client.post("/audit", json={"productId": product.id})
    run_id = created.json()["runId"]

    with ExitStack() as stack:
        for stage, attr in (
            ("stage_1", "execute_stage1"),
            ("stage_2", "execute_stage2"),
            ("stage_3", "execute_stage3"),
            ("stage_4", "execute_stage4"),
        ):
            stack.enter_context(
                patch(f"services.audit_worker.{attr}", AsyncMock(return_value=stage_outputs[stage]))
            )
        response = await audit_client.post("/audit/worker", json={"runId": run_id}, headers=HEADERS)

    assert response.status_code == 200
    assert response.json() == {"ok": True, "runId": run_id, "status": "done", "progress": 100, "truth_index": 82}

    status = (await audit_client.get("/audit/status", params={"runId": run_id})).json()
    assert status["data_source"] == "current_run"
    assert status["audit"]["truth_index"] == 82


@pytest.mark.asyncio
async def test_admin_fail_and_retry(audit_client, session_maker, worker_secret, product):
    created = await audit_client.post("/audit", json={"productId": product.id})
    run_id = created.json()["runId"]

    failed = await audit_client.post(f"/audit/admin/runs/{run_id}/fail", json={"reason": "stuck"}, headers=HEADERS)
    assert failed.json()["status"] == "error"

    replacement = await audit_client.post("/audit", json={"productId": product.id})
    blocked = await audit_client.post(f"/audit/admin/runs/{run_id}/retry", headers=HEADERS)
    assert blocked.status_code == 409
    assert blocked.json()["error"] == "ACTIVE_RUN_EXISTS"

    await audit_client.post(f"/audit/admin/runs/{replacement.json()['runId']}/fail", headers=HEADERS)
    retried = await audit_client.post(f"/audit/admin/runs/{run_id}/retry", headers=HEADERS)
    assert retried.status_code == 200
    assert retried.json()["status"] == "pending"

    async with session_maker() as db:
        run = await db.get(AuditRun, run_id)
    assert run.error is None
    assert run.attempt_count == 1


@pytest.mark.asyncio
async def test_admin_routes_require_the_secret(audit_client, worker_secret):
    response = await audit_client.post("/audit/admin/reap")
    assert response.status_code == 401

    reaped = await audit_client.post("/audit/admin/reap", headers=HEADERS)
    assert reaped.json() == {"ok": True, "requeued": 0, "failed": 0, "expired": 0}
