from __future__ import annotations

import asyncio
import os
from datetime import UTC, datetime, timedelta
from uuid import uuid4

import pytest

from conftest import seed_robot, seed_run
from run_orchestrator.runs.state import transition
from run_orchestrator.storage.models import (
    AirtableSettings,
    IntegrationSettings,
    IntegrationTask,
    N8nSettings,
    RunStatus,
    WebhookConfig,
)
from run_orchestrator.storage.postgres import PostgresStore


@pytest.fixture
def database_url() -> str:
    if os.getenv("RUN_POSTGRES_INTEGRATION_TESTS") != "1":
        pytest.skip(
            "Set RUN_POSTGRES_INTEGRATION_TESTS=1 and ORCHESTRATOR_DATABASE_URL "
            "to run integration tests against PostgreSQL."
        )
    database_url = os.getenv("ORCHESTRATOR_DATABASE_URL")
    if not database_url:
        pytest.skip("ORCHESTRATOR_DATABASE_URL is required for integration tests.")
    return database_url


def test_robot_and_run_round_trip(database_url: str) -> None:
    store = PostgresStore(database_url)

    async def scenario():
        await store.migrate()
        robot = await seed_robot(
            store,
            robot_id=f"robot-{uuid4()}",
            integrations=IntegrationSettings(n8n=N8nSettings(webhook_url="https://n8n.test")),
            webhooks=[WebhookConfig(url="https://hooks.test/a")],
        )
        run = await seed_run(store, robot, status=RunStatus.QUEUED, requested_formats=["html"])
        await transition(store, run.run_id, RunStatus.RUNNING)
        await transition(
            store,
            run.run_id,
            RunStatus.SUCCESS,
            finished_at=datetime.now(UTC),
            serializable_output={"scrapeSchema": [[{"title": "A"}]]},
            binary_output={"screenshot-visible": "https://objects.test/a.png"},
        )
        called_at = datetime.now(UTC)
        await store.touch_webhook(robot.robot_id, robot.webhooks[0].id, called_at)
        return (
            await store.get_robot(robot.robot_id),
            await store.get_run(run.run_id),
            await store.list_runs(robot.robot_id),
        )

    robot, run, runs = asyncio.run(scenario())

    assert robot is not None
    assert robot.integrations.configured_sinks() == ["n8n"]
    assert robot.webhooks[0].last_called_at is not None
    assert run is not None
    assert run.status == RunStatus.SUCCESS
    assert run.requested_formats == ["html"]
    assert run.serializable_output == {"scrapeSchema": [[{"title": "A"}]]}
    assert run.finished_at is not None
    assert [item.run_id for item in runs] == [run.run_id]


def test_integration_task_lease_and_retry(database_url: str) -> None:
    store = PostgresStore(database_url)
    run_id = f"run-{uuid4()}"

    async def scenario():
        await store.migrate()
        now = datetime.now(UTC)
        await store.put_task(
            IntegrationTask(
                sink="n8n",
                run_id=run_id,
                robot_id="robot-1",
                visible_after=now,
                created_at=now,
                updated_at=now,
            ),
            max_size=1000,
        )
        first = await store.claim_ready(now=now, visibility_timeout_s=60)
        leased_again = await store.claim_ready(now=now, visibility_timeout_s=60)
        retried = await store.retry_task(
            "n8n", run_id, error="503 from sink", visible_after=now - timedelta(seconds=1)
        )
        second = await store.claim_ready(now=now, visibility_timeout_s=60)
        await store.complete_task("n8n", run_id)
        third = await store.claim_ready(now=now + timedelta(minutes=5), visibility_timeout_s=60)
        return first, leased_again, retried, second, third

    first, leased_again, retried, second, third = asyncio.run(scenario())

    assert run_id in [task.run_id for task in first]
    assert run_id not in [task.run_id for task in leased_again]
    assert retried.retries == 1
    assert retried.last_error == "503 from sink"
    assert run_id in [task.run_id for task in second]
    assert run_id not in [task.run_id for task in third]


def test_concurrent_webhook_stamps_and_sink_updates_do_not_clobber(database_url: str) -> None:
    store = PostgresStore(database_url)
    hooks = [WebhookConfig(url="https://hooks.test/a"), WebhookConfig(url="https://hooks.test/b")]
    airtable = AirtableSettings(
        base_id="base-1", table_name="Leads", table_id="tbl-1", access_token="a-old"
    )

    async def scenario():
        await store.migrate()
        robot = await seed_robot(
            store,
            robot_id=f"robot-{uuid4()}",
            webhooks=hooks,
            integrations=IntegrationSettings(
                n8n=N8nSettings(webhook_url="https://n8n.test"), airtable=airtable
            ),
        )
        called_at = datetime.now(UTC)
        await asyncio.gather(
            store.touch_webhook(robot.robot_id, hooks[0].id, called_at),
            store.touch_webhook(robot.robot_id, hooks[1].id, called_at),
            store.update_integration(
                robot.robot_id, "airtable", airtable.model_copy(update={"access_token": "a-new"})
            ),
        )
        return await store.get_robot(robot.robot_id)

    robot = asyncio.run(scenario())

    assert [hook.id for hook in robot.webhooks] == [hook.id for hook in hooks]
    assert all(hook.last_called_at is not None for hook in robot.webhooks)
    assert robot.integrations.airtable.access_token == "a-new"
    assert robot.integrations.n8n.webhook_url == "https://n8n.test"
