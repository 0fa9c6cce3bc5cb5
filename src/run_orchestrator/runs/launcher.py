"""Run creation, worker acquisition and the abort/retry entry points."""

from __future__ import annotations

import asyncio
import logging
from datetime import UTC, datetime
from typing import Literal
from uuid import uuid4

from run_orchestrator.errors import (
    InvalidRunTransitionError,
    MaxRetriesExceededError,
    RobotNotFoundError,
    RunNotAuthorizedError,
    RunNotFoundError,
    WorkerAcquisitionError,
)
from run_orchestrator.notify.fanout import NotificationFanOut
from run_orchestrator.runs.deadlines import run_with_deadline
from run_orchestrator.runs.dispatch import DispatchOutcome, ExecutionDispatcher, append_log
from run_orchestrator.runs.state import is_terminal, transition, try_transition
from run_orchestrator.storage.base import OrchestratorStore
from run_orchestrator.storage.models import RobotRecord, RunRecord, RunStatus
from run_orchestrator.workers.base import WorkerPool
from run_orchestrator.workers.readiness import ReadinessChannelFactory

logger = logging.getLogger(__name__)

TriggerKind = Literal["manual", "api", "sdk", "schedule"]


class RunLauncher:
    """Create runs and drive each one through readiness and execution.

    ``start_run`` and ``retry_run`` return as soon as the run is stored; the
    handshake and dispatch continue on a background task per run.
    """

    def __init__(
        self,
        *,
        store: OrchestratorStore,
        pool: WorkerPool,
        dispatcher: ExecutionDispatcher,
        fanout: NotificationFanOut,
        channel_factory: ReadinessChannelFactory,
        max_retries: int = 3,
    ) -> None:
        self.store = store
        self.pool = pool
        self.dispatcher = dispatcher
        self.fanout = fanout
        self.channel_factory = channel_factory
        self.max_retries = max_retries
        self._tasks: dict[str, asyncio.Task[DispatchOutcome]] = {}

    async def start_run(
        self,
        robot_id: str,
        user_id: str,
        *,
        trigger: TriggerKind = "manual",
        schedule_id: str | None = None,
        formats: list[str] | None = None,
    ) -> RunRecord:
        robot = await self._authorized_robot(robot_id, user_id)
        worker_id = await self._allocate(user_id)

        now = datetime.now(UTC)
        run = RunRecord(
            run_id=str(uuid4()),
            robot_id=robot.robot_id,
            robot_name=robot.name,
            status=RunStatus.QUEUED,
            worker_id=worker_id,
            started_at=now,
            run_by_user_id=user_id,
            run_by_schedule_id=schedule_id if trigger == "schedule" else None,
            run_by_api=trigger == "api",
            run_by_sdk=trigger == "sdk",
            requested_formats=formats,
            created_at=now,
            updated_at=now,
        )
        try:
            created = await self.store.create_run(run)
        except Exception:
            await self._destroy_worker(worker_id, user_id)
            raise

        logger.info(
            "run event=created run_id=%s robot_id=%s user_id=%s trigger=%s worker_id=%s",
            created.run_id,
            robot_id,
            user_id,
            trigger,
            worker_id,
        )
        await self.fanout.run_started(created)
        self._spawn(created, user_id, formats)
        return created

    async def abort_run(self, run_id: str, user_id: str) -> RunRecord:
        run = await self._authorized_run(run_id, user_id)
        status = RunStatus(run.status)
        if status not in (RunStatus.RUNNING, RunStatus.QUEUED):
            raise InvalidRunTransitionError(run_id, status.value, RunStatus.ABORTED.value)
        aborted = await transition(
            self.store, run_id, RunStatus.ABORTED, finished_at=datetime.now(UTC)
        )
        logger.info("run event=aborted run_id=%s user_id=%s", run_id, user_id)
        return aborted

    async def retry_run(self, run_id: str, user_id: str) -> RunRecord:
        run = await self._authorized_run(run_id, user_id)
        status = RunStatus(run.status)
        if status is not RunStatus.FAILED:
            raise InvalidRunTransitionError(run_id, status.value, RunStatus.QUEUED.value)
        if run.retry_count >= self.max_retries:
            raise MaxRetriesExceededError(run_id, run.retry_count, self.max_retries)

        worker_id = await self._allocate(user_id)
        attempt = run.retry_count + 1
        try:
            queued = await transition(
                self.store,
                run_id,
                RunStatus.QUEUED,
                retry_count=attempt,
                worker_id=worker_id,
                finished_at=None,
                log=append_log(run.log, f"Retry attempt {attempt}/{self.max_retries}"),
            )
        except Exception:
            await self._destroy_worker(worker_id, user_id)
            raise

        logger.info(
            "run event=retried run_id=%s attempt=%s worker_id=%s", run_id, attempt, worker_id
        )
        await self.fanout.run_started(queued)
        self._spawn(queued, user_id, run.requested_formats)
        return queued

    async def wait_for_completion(
        self, run_id: str, *, timeout_s: float, poll_interval_s: float = 2.0
    ) -> RunRecord:
        async def poll() -> RunRecord:
            while True:
                run = await self.store.get_run(run_id)
                if run is None:
                    raise RunNotFoundError(run_id)
                if is_terminal(run.status):
                    return run
                await asyncio.sleep(poll_interval_s)

        return await run_with_deadline(poll(), timeout_s=timeout_s, name=f"waiting for run {run_id}")

    async def wait_idle(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks.values()), return_exceptions=True)

    async def aclose(self) -> None:
        for task in list(self._tasks.values()):
            task.cancel()
        await asyncio.gather(*list(self._tasks.values()), return_exceptions=True)
        self._tasks.clear()

    def _spawn(self, run: RunRecord, user_id: str, formats: list[str] | None) -> None:
        task = asyncio.create_task(
            self._handshake_and_dispatch(run.run_id, user_id, run.worker_id or "", formats)
        )
        self._tasks[run.run_id] = task

        def forget(done: asyncio.Task[DispatchOutcome]) -> None:
            if self._tasks.get(run.run_id) is done:
                del self._tasks[run.run_id]

        task.add_done_callback(forget)

    async def _handshake_and_dispatch(
        self, run_id: str, user_id: str, worker_id: str, formats: list[str] | None
    ) -> DispatchOutcome:
        channel = None
        try:
            try:
                channel = self.channel_factory(worker_id)
                await channel.wait_ready()
            except Exception as exc:  # noqa: BLE001
                await self._acquisition_failed(run_id, user_id, worker_id, exc)
                return DispatchOutcome.FAILED

            running = await try_transition(self.store, run_id, RunStatus.RUNNING)
            if running is None:
                await self._destroy_worker(worker_id, user_id)
                return DispatchOutcome.SKIPPED

            outcome = await self.dispatcher.execute_run(run_id, user_id, formats)
            if outcome is DispatchOutcome.SKIPPED:
                await self._destroy_worker(worker_id, user_id)
            return outcome
        except Exception:  # noqa: BLE001
            logger.exception("run event=dispatch_error run_id=%s", run_id)
            await self._destroy_worker(worker_id, user_id)
            return DispatchOutcome.FAILED
        finally:
            if channel is not None:
                try:
                    await channel.close()
                except Exception:  # noqa: BLE001
                    logger.warning("run event=channel_close_failed run_id=%s", run_id, exc_info=True)

    async def _acquisition_failed(
        self, run_id: str, user_id: str, worker_id: str, error: Exception
    ) -> None:
        logger.error(
            "run event=acquisition_failed run_id=%s worker_id=%s error=%s", run_id, worker_id, error
        )
        await self._destroy_worker(worker_id, user_id)
        try:
            run = await self.store.get_run(run_id)
            failed = await try_transition(
                self.store,
                run_id,
                RunStatus.FAILED,
                finished_at=datetime.now(UTC),
                log=append_log(run.log if run else "", f"Worker acquisition failed: {error}"),
            )
        except Exception:  # noqa: BLE001
            logger.exception("run event=mark_failed_error run_id=%s", run_id)
            return
        if failed is not None:
            await self.fanout.run_failed(failed, error)

    async def _allocate(self, user_id: str) -> str:
        proxy = await self.store.get_proxy_config(user_id)
        try:
            return await self.pool.allocate(user_id, proxy)
        except WorkerAcquisitionError:
            raise
        except Exception as exc:
            raise WorkerAcquisitionError(f"Worker allocation failed: {exc}") from exc

    async def _destroy_worker(self, worker_id: str, user_id: str) -> None:
        if not worker_id:
            return
        try:
            await self.pool.destroy(worker_id, user_id)
        except Exception:  # noqa: BLE001
            logger.exception("run event=release_failed worker_id=%s", worker_id)

    async def _authorized_robot(self, robot_id: str, user_id: str) -> RobotRecord:
        robot = await self.store.get_robot(robot_id)
        if robot is None:
            raise RobotNotFoundError(robot_id)
        if robot.user_id != user_id:
            raise RunNotAuthorizedError(robot_id, user_id)
        return robot

    async def _authorized_run(self, run_id: str, user_id: str) -> RunRecord:
        run = await self.store.get_run(run_id)
        if run is None:
            raise RunNotFoundError(run_id)
        if run.run_by_user_id != user_id:
            robot = await self.store.get_robot(run.robot_id)
            if robot is None or robot.user_id != user_id:
                raise RunNotAuthorizedError(run.robot_id, user_id)
        return run
