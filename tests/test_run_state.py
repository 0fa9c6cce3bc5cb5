import asyncio

import pytest

from conftest import seed_robot, seed_run
from run_orchestrator.errors import InvalidRunTransitionError, RunNotFoundError
from run_orchestrator.runs.state import can_transition, is_terminal, transition, try_transition
from run_orchestrator.storage.memory import InMemoryStore
from run_orchestrator.storage.models import RunStatus


def test_terminal_statuses() -> None:
    assert is_terminal(RunStatus.SUCCESS)
    assert is_terminal("failed")
    assert is_terminal(RunStatus.ABORTED)
    assert not is_terminal(RunStatus.QUEUED)
    assert not is_terminal(RunStatus.RUNNING)
    assert not is_terminal(RunStatus.ABORTING)


def test_legal_predecessors() -> None:
    assert can_transition(RunStatus.QUEUED, RunStatus.RUNNING)
    assert can_transition(RunStatus.RUNNING, RunStatus.SUCCESS)
    assert can_transition(RunStatus.FAILED, RunStatus.QUEUED)
    assert can_transition(RunStatus.ABORTING, RunStatus.ABORTED)
    assert not can_transition(RunStatus.QUEUED, RunStatus.SUCCESS)
    assert not can_transition(RunStatus.ABORTED, RunStatus.RUNNING)
    assert not can_transition(RunStatus.SUCCESS, RunStatus.FAILED)
    assert not can_transition(RunStatus.ABORTED, RunStatus.SUCCESS)


def test_transition_writes_status_and_fields() -> None:
    async def scenario() -> None:
        store = InMemoryStore()
        robot = await seed_robot(store)
        run = await seed_run(store, robot, status=RunStatus.QUEUED)

        updated = await transition(store, run.run_id, RunStatus.RUNNING, log="started")

        assert updated.status is RunStatus.RUNNING
        assert updated.log == "started"
        stored = await store.get_run(run.run_id)
        assert stored is not None
        assert stored.status is RunStatus.RUNNING

    asyncio.run(scenario())


def test_transition_rejects_illegal_move_without_writing() -> None:
    async def scenario() -> None:
        store = InMemoryStore()
        robot = await seed_robot(store)
        run = await seed_run(store, robot, status=RunStatus.ABORTED)

        with pytest.raises(InvalidRunTransitionError) as excinfo:
            await transition(store, run.run_id, RunStatus.SUCCESS)

        assert excinfo.value.current == "aborted"
        assert excinfo.value.target == "success"
        stored = await store.get_run(run.run_id)
        assert stored is not None
        assert stored.status is RunStatus.ABORTED
        assert await try_transition(store, run.run_id, RunStatus.SUCCESS) is None

    asyncio.run(scenario())


def test_transition_missing_run() -> None:
    with pytest.raises(RunNotFoundError):
        asyncio.run(transition(InMemoryStore(), "missing", RunStatus.RUNNING))
