from __future__ import annotations

import asyncio
import time
from datetime import UTC, datetime

import httpx
from fastapi.testclient import TestClient

from conftest import FakeEngine, FakeWorkerPool, seed_robot, seed_run
from run_orchestrator.api.main import create_app
from run_orchestrator.storage.models import (
    IntegrationSettings,
    IntegrationTask,
    N8nSettings,
    RunStatus,
)

USER = {"X-User-Id": "user-1"}
OTHER_USER = {"X-User-Id": "user-2"}
ROBOT = {
    "name": "Product titles",
    "url": "https://example.com",
    "workflow": [{"where": {"url": "https://example.com"}, "what": [{"action": "scrape"}]}],
}


def _create_robot(client: TestClient) -> str:
    response = client.post("/robots", json=ROBOT, headers=USER)
    assert response.status_code == 200
    return response.json()["robot_id"]


def test_run_round_trip_waits_for_terminal_state(client: TestClient) -> None:
    robot_id = _create_robot(client)

    created = client.post(f"/robots/{robot_id}/runs", json={"wait": True}, headers=USER)
    assert created.status_code == 200
    body = created.json()
    assert body["status"] == "success"
    assert body["runByAPI"] is True
    assert body["data"]["textData"] == {"title": "Example"}
    assert body["finishedAt"] is not None

    fetched = client.get(f"/robots/{robot_id}/runs/{body['id']}", headers=USER)
    assert fetched.status_code == 200
    assert fetched.json()["id"] == body["id"]
    assert fetched.json()["status"] == body["status"]
    assert fetched.json()["startedAt"] == body["startedAt"]

    listed = client.get(f"/robots/{robot_id}/runs", headers=USER)
    assert [run["id"] for run in listed.json()["runs"]] == [body["id"]]


def test_failed_run_reports_error_in_log(client: TestClient, engine: FakeEngine) -> None:
    engine.interpret_error = RuntimeError("selector not found")
    robot_id = _create_robot(client)

    body = client.post(f"/robots/{robot_id}/runs", json={"wait": True}, headers=USER).json()

    assert body["status"] == "failed"
    assert "selector not found" in body["log"]


def test_unknown_robot_returns_404(client: TestClient) -> None:
    response = client.post("/robots/missing/runs", json={}, headers=USER)
    assert response.status_code == 404
    assert response.json()["detail"] == "Robot missing does not exist"


def test_other_users_robot_returns_403(client: TestClient) -> None:
    robot_id = _create_robot(client)

    assert client.get(f"/robots/{robot_id}", headers=OTHER_USER).status_code == 403
    assert client.post(f"/robots/{robot_id}/runs", json={}, headers=OTHER_USER).status_code == 403


def test_missing_user_header_is_rejected(client: TestClient) -> None:
    assert client.post("/robots", json=ROBOT).status_code == 422


def test_abort_after_success_conflicts(client: TestClient) -> None:
    robot_id = _create_robot(client)
    run = client.post(f"/robots/{robot_id}/runs", json={"wait": True}, headers=USER).json()

    response = client.post(f"/runs/{run['id']}/abort", headers=USER)

    assert response.status_code == 409


def test_retry_requires_failed_run(client: TestClient, engine: FakeEngine) -> None:
    robot_id = _create_robot(client)
    succeeded = client.post(f"/robots/{robot_id}/runs", json={"wait": True}, headers=USER).json()
    assert client.post(f"/runs/{succeeded['id']}/retry", headers=USER).status_code == 409

    engine.interpret_error = RuntimeError("boom")
    failed = client.post(f"/robots/{robot_id}/runs", json={"wait": True}, headers=USER).json()
    retried = client.post(f"/runs/{failed['id']}/retry", headers=USER)

    assert retried.status_code == 200
    assert retried.json()["id"] == failed["id"]
    assert retried.json()["retryCount"] == 1


def test_allocation_failure_returns_503(client: TestClient, pool: FakeWorkerPool) -> None:
    robot_id = _create_robot(client)
    pool.allocation_error = RuntimeError("no browsers left")

    response = client.post(f"/robots/{robot_id}/runs", json={}, headers=USER)

    assert response.status_code == 503
    assert "no browsers left" in response.json()["detail"]
    assert client.get(f"/robots/{robot_id}/runs", headers=USER).json() == {"runs": []}


def test_webhook_crud(client: TestClient) -> None:
    robot_id = _create_robot(client)
    base = f"/robots/{robot_id}/webhooks"

    added = client.post(base, json={"url": "https://hooks.test/a"}, headers=USER)
    assert added.status_code == 200
    webhook_id = added.json()["id"]
    assert added.json()["events"] == ["run_completed"]

    duplicate = client.post(base, json={"url": "https://hooks.test/a"}, headers=USER)
    assert duplicate.status_code == 409

    updated = client.put(
        f"{base}/{webhook_id}",
        json={"url": "https://hooks.test/b", "events": ["run_failed"]},
        headers=USER,
    )
    assert updated.status_code == 200
    assert updated.json()["url"] == "https://hooks.test/b"

    tested = client.post(f"{base}/test", json={"webhook_id": webhook_id}, headers=USER)
    assert tested.json() == {"success": True, "status_code": 200, "error": None}

    listed = client.get(base, headers=USER).json()
    assert [hook["id"] for hook in listed] == [webhook_id]
    assert listed[0]["last_called_at"] is not None

    assert client.delete(f"{base}/{webhook_id}", headers=USER).json() == {
        "ok": True,
        "removed": webhook_id,
    }
    assert client.delete(f"{base}/{webhook_id}", headers=USER).status_code == 404
    assert client.get(base, headers=USER).json() == []


def test_webhook_url_must_be_http(client: TestClient) -> None:
    robot_id = _create_robot(client)

    response = client.post(
        f"/robots/{robot_id}/webhooks", json={"url": "ftp://hooks.test"}, headers=USER
    )

    assert response.status_code == 422


def test_webhook_delivery_options_default_to_settings(client: TestClient) -> None:
    robot_id = _create_robot(client)
    base = f"/robots/{robot_id}/webhooks"

    defaulted = client.post(base, json={"url": "https://hooks.test/a"}, headers=USER).json()
    explicit = client.post(
        base,
        json={"url": "https://hooks.test/b", "retry_attempts": 7, "retry_delay_s": 2.5},
        headers=USER,
    ).json()

    assert defaulted["retry_attempts"] == 3
    assert defaulted["retry_delay_s"] == 0.0
    assert defaulted["timeout_s"] == 30.0
    assert explicit["retry_attempts"] == 7
    assert explicit["retry_delay_s"] == 2.5


def test_startup_drains_integration_tasks_left_pending(store, make_runtime) -> None:
    posted: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        posted.append(str(request.url))
        return httpx.Response(200)

    async def seed() -> None:
        robot = await seed_robot(
            store,
            integrations=IntegrationSettings(n8n=N8nSettings(webhook_url="https://n8n.test/hook")),
        )
        run = await seed_run(
            store,
            robot,
            status=RunStatus.SUCCESS,
            serializable_output={"scrapeSchema": [[{"title": "A"}]]},
        )
        now = datetime.now(UTC)
        await store.put_task(
            IntegrationTask(
                sink="n8n",
                run_id=run.run_id,
                robot_id=robot.robot_id,
                visible_after=now,
                created_at=now,
                updated_at=now,
            ),
            max_size=10,
        )

    asyncio.run(seed())

    with TestClient(create_app(runtime=make_runtime(handler))):
        deadline = time.monotonic() + 5.0
        while store.tasks() and time.monotonic() < deadline:
            time.sleep(0.01)

    assert store.tasks() == []
    assert posted == ["https://n8n.test/hook"]
