import asyncio
import base64
import time

from conftest import HANG, seed_robot, seed_run
from run_orchestrator.runs.dispatch import DispatchOutcome, mark_generated, select_scrape_formats
from run_orchestrator.storage.models import RunStatus
from run_orchestrator.workers.base import BinaryArtifact, InterpretationResult, PageHandle


def test_max_retries_refuses_execution(store, engine, pool, make_runtime) -> None:
    async def scenario() -> None:
        runtime = make_runtime()
        robot = await seed_robot(store)
        run = await seed_run(store, robot, retry_count=3)

        outcome = await runtime.dispatcher.execute_run(run.run_id, robot.user_id)

        assert outcome is DispatchOutcome.FAILED
        stored = await store.get_run(run.run_id)
        assert stored is not None
        assert stored.status is RunStatus.FAILED
        assert "Max retries exceeded (3/3) - Run permanently failed" in stored.log
        assert stored.finished_at is not None
        assert pool.destroyed == ["worker-1"]

    asyncio.run(scenario())
    assert not engine.invoked


def test_aborted_and_queued_runs_are_not_executed(store, engine, pool, make_runtime) -> None:
    async def scenario() -> list[DispatchOutcome]:
        runtime = make_runtime()
        robot = await seed_robot(store)
        outcomes = []
        for status in (RunStatus.ABORTED, RunStatus.ABORTING, RunStatus.QUEUED):
            run = await seed_run(store, robot, status=status)
            outcomes.append(await runtime.dispatcher.execute_run(run.run_id, robot.user_id))
            stored = await store.get_run(run.run_id)
            assert stored is not None
            assert stored.status is status
        outcomes.append(await runtime.dispatcher.execute_run("missing", robot.user_id))
        return outcomes

    outcomes = asyncio.run(scenario())

    assert outcomes == [DispatchOutcome.SKIPPED] * 4
    assert not engine.invoked
    assert pool.destroyed == []


def test_scrape_format_failure_is_isolated(store, engine, make_runtime) -> None:
    engine.conversions["markdown"] = RuntimeError("turndown crashed")
    engine.conversions["html"] = "<p>hello</p>"

    async def scenario():
        runtime = make_runtime()
        robot = await seed_robot(store, type="scrape", formats=["markdown", "html"])
        run = await seed_run(store, robot)
        outcome = await runtime.dispatcher.execute_run(run.run_id, robot.user_id)
        return outcome, await store.get_run(run.run_id)

    outcome, stored = asyncio.run(scenario())

    assert outcome is DispatchOutcome.COMPLETED
    assert stored.status is RunStatus.SUCCESS
    assert stored.serializable_output == {"html": [{"content": "<p>hello</p>"}]}
    assert "markdown conversion failed: turndown crashed" in stored.log


def test_scrape_requested_formats_override_robot_formats(store, engine, objects, make_runtime) -> None:
    engine.conversions["screenshot-visible"] = b"\x89PNG"

    async def scenario():
        runtime = make_runtime()
        robot = await seed_robot(store, type="scrape", formats=["markdown"])
        run = await seed_run(store, robot)
        await runtime.dispatcher.execute_run(
            run.run_id, robot.user_id, ["screenshot-visible", "pdf"]
        )
        return await store.get_run(run.run_id)

    stored = asyncio.run(scenario())

    assert engine.convert_calls == ["screenshot-visible"]
    key = f"{stored.run_id}/screenshot-visible.png"
    assert stored.binary_output == {"screenshot-visible": f"https://objects.test/{key}"}
    assert objects.objects[key] == (b"\x89PNG", "image/png")


def test_conversion_deadline_fails_run_and_cancels_conversion(store, engine, make_runtime) -> None:
    engine.conversions["markdown"] = HANG

    async def scenario():
        runtime = make_runtime(scrape_timeout_s=0.05)
        robot = await seed_robot(store, type="scrape", formats=["markdown"])
        run = await seed_run(store, robot)
        started = time.perf_counter()
        outcome = await runtime.dispatcher.execute_run(run.run_id, robot.user_id)
        elapsed = time.perf_counter() - started
        return outcome, elapsed, await store.get_run(run.run_id)

    outcome, elapsed, stored = asyncio.run(scenario())

    assert outcome is DispatchOutcome.FAILED
    assert stored.status is RunStatus.FAILED
    assert "markdown conversion timed out after 0.05s" in stored.log
    assert elapsed < 1.0
    assert engine.cancelled == ["markdown"]


def test_workflow_uses_current_page_and_persists_binaries_in_two_phases(
    store, engine, objects, pool, make_runtime
) -> None:
    engine.page_switches = [PageHandle(worker_id="worker-1", page_id="page-2")]
    engine.interpret_result = InterpretationResult(
        serializable_output={"scrapeList": [[{"name": "a"}, {"name": "b"}]]},
        binary_output={"item-screenshot": BinaryArtifact(data=b"png-bytes")},
        log=["step 1 done"],
    )

    async def scenario():
        runtime = make_runtime()
        robot = await seed_robot(store)
        run = await seed_run(store, robot)
        outcome = await runtime.dispatcher.execute_run(run.run_id, robot.user_id)
        return outcome, await store.get_run(run.run_id)

    outcome, stored = asyncio.run(scenario())

    assert outcome is DispatchOutcome.COMPLETED
    assert engine.final_pages[0].page_id == "page-2"
    workflow, settings = engine.interpret_calls[0]
    assert workflow[0]["what"][0] == {"action": "flag", "args": ["generated"]}
    assert settings["maxConcurrency"] == 1

    binary_writes = [update["binary_output"] for update in store.run_updates if "binary_output" in update]
    assert binary_writes[0] == {
        "item-screenshot": {
            "data": base64.b64encode(b"png-bytes").decode("ascii"),
            "mimeType": "image/png",
        }
    }
    url = f"https://objects.test/{stored.run_id}/item-screenshot.png"
    assert binary_writes[1] == {"item-screenshot": url}
    assert stored.binary_output == {"item-screenshot": url}
    assert stored.serializable_output["scrapeList"] == [[{"name": "a"}, {"name": "b"}]]
    assert "step 1 done" in stored.log
    assert pool.destroyed == ["worker-1"]


def test_missing_page_fails_run_and_releases_worker(store, engine, pool, make_runtime) -> None:
    pool.has_page = False

    async def scenario():
        runtime = make_runtime()
        queue = runtime.live.subscribe("user-1")
        robot = await seed_robot(store)
        run = await seed_run(store, robot)
        outcome = await runtime.dispatcher.execute_run(run.run_id, robot.user_id)
        return outcome, await store.get_run(run.run_id), queue.get_nowait()

    outcome, stored, event = asyncio.run(scenario())

    assert outcome is DispatchOutcome.FAILED
    assert stored.status is RunStatus.FAILED
    assert "No page available for worker worker-1" in stored.log
    assert "Traceback" in stored.log
    assert pool.destroyed == ["worker-1"]
    assert not engine.invoked
    assert event["event"] == "run-completed"
    assert event["data"]["status"] == "failed"
    assert event["data"]["browserId"] == "worker-1"


def test_select_scrape_formats_defaults() -> None:
    class Robot:
        formats: list[str] = []

    assert select_scrape_formats(None, Robot()) == ["markdown"]
    assert select_scrape_formats(["html", "html", "bogus"], Robot()) == ["html"]


def test_mark_generated_prefixes_every_step() -> None:
    steps = [{"where": {}, "what": [{"action": "click"}]}, {"where": {}}]

    marked = mark_generated(steps)

    assert [step["what"][0]["action"] for step in marked] == ["flag", "flag"]
    assert marked[0]["what"][1] == {"action": "click"}
    assert steps[0]["what"] == [{"action": "click"}]
