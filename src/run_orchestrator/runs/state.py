"""Run status state machine.

Every status write in the orchestrator goes through :func:`transition`, which
re-reads the run and checks the current status against the legal predecessors
of the target status before writing.
"""

from __future__ import annotations

import logging
from typing import Any

from run_orchestrator.errors import InvalidRunTransitionError, RunNotFoundError
from run_orchestrator.storage.base import RunStore
from run_orchestrator.storage.models import RunRecord, RunStatus

logger = logging.getLogger(__name__)

TERMINAL_STATUSES = frozenset({RunStatus.SUCCESS, RunStatus.FAILED, RunStatus.ABORTED})

# target status -> statuses a run may be in when moving to it
LEGAL_PREDECESSORS: dict[RunStatus, frozenset[RunStatus]] = {
    RunStatus.QUEUED: frozenset({RunStatus.FAILED}),
    RunStatus.RUNNING: frozenset({RunStatus.QUEUED}),
    RunStatus.SUCCESS: frozenset({RunStatus.RUNNING}),
    RunStatus.FAILED: frozenset({RunStatus.QUEUED, RunStatus.RUNNING, RunStatus.ABORTING}),
    RunStatus.ABORTING: frozenset({RunStatus.RUNNING}),
    RunStatus.ABORTED: frozenset({RunStatus.QUEUED, RunStatus.RUNNING, RunStatus.ABORTING}),
}


def is_terminal(status: RunStatus | str) -> bool:
    return RunStatus(status) in TERMINAL_STATUSES


def can_transition(current: RunStatus | str, target: RunStatus | str) -> bool:
    return RunStatus(current) in LEGAL_PREDECESSORS[RunStatus(target)]


async def transition(
    store: RunStore,
    run_id: str,
    target: RunStatus,
    **fields: Any,
) -> RunRecord:
    """Move a run to ``target`` and write ``fields`` alongside the status.

    Raises :class:`InvalidRunTransitionError` when the stored status is not a
    legal predecessor of ``target``.
    """
    current = await store.get_run(run_id)
    if current is None:
        raise RunNotFoundError(run_id)
    if not can_transition(current.status, target):
        raise InvalidRunTransitionError(run_id, RunStatus(current.status).value, target.value)
    updated = await store.update_run(run_id, status=target, **fields)
    logger.info(
        "run event=transition run_id=%s from=%s to=%s",
        run_id,
        RunStatus(current.status).value,
        target.value,
    )
    return updated


async def try_transition(
    store: RunStore,
    run_id: str,
    target: RunStatus,
    **fields: Any,
) -> RunRecord | None:
    """Like :func:`transition`, but log and return ``None`` on an illegal move."""
    try:
        return await transition(store, run_id, target, **fields)
    except InvalidRunTransitionError as exc:
        logger.warning(
            "run event=transition_skipped run_id=%s from=%s to=%s",
            run_id,
            exc.current,
            exc.target,
        )
        return None
