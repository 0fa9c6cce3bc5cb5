"""Execute a running run against its browser worker."""

from __future__ import annotations

import base64
import logging
import traceback
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from run_orchestrator.errors import (
    MaxRetriesExceededError,
    RobotNotFoundError,
    WorkerUnavailableError,
)
from run_orchestrator.notify.fanout import NotificationFanOut
from run_orchestrator.runs.deadlines import run_with_deadline
from run_orchestrator.runs.state import try_transition
from run_orchestrator.storage.base import OrchestratorStore
from run_orchestrator.storage.models import SCRAPE_FORMATS, RobotRecord, RunRecord, RunStatus
from run_orchestrator.workers.base import (
    AutomationEngine,
    BinaryArtifact,
    InterpretationResult,
    ObjectStorage,
    PageHandle,
    PageRef,
    WorkerPool,
)
from run_orchestrator.workers.objects import artifact_key

logger = logging.getLogger(__name__)

GENERATED_FLAG_ACTION: dict[str, Any] = {"action": "flag", "args": ["generated"]}


class DispatchOutcome(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    # Nothing ran; the caller still owns the worker.
    SKIPPED = "skipped"


def append_log(existing: str, *lines: str) -> str:
    text = "\n".join(line for line in lines if line)
    if not existing:
        return text
    return f"{existing}\n{text}" if text else existing


def select_scrape_formats(requested: list[str] | None, robot: RobotRecord) -> list[str]:
    chosen = [fmt for fmt in requested or [] if fmt in SCRAPE_FORMATS]
    if not chosen:
        chosen = [fmt for fmt in robot.formats if fmt in SCRAPE_FORMATS]
    return list(dict.fromkeys(chosen)) or ["markdown"]


def mark_generated(workflow: list[dict[str, Any]]) -> list[dict[str, Any]]:
    return [
        {**step, "what": [dict(GENERATED_FLAG_ACTION), *step.get("what", [])]}
        for step in workflow
    ]


class ExecutionDispatcher:
    def __init__(
        self,
        *,
        store: OrchestratorStore,
        pool: WorkerPool,
        engine: AutomationEngine,
        objects: ObjectStorage,
        fanout: NotificationFanOut,
        scrape_timeout_s: float = 120.0,
        interpretation_timeout_s: float = 600.0,
        max_retries: int = 3,
    ) -> None:
        self.store = store
        self.pool = pool
        self.engine = engine
        self.objects = objects
        self.fanout = fanout
        self.scrape_timeout_s = scrape_timeout_s
        self.interpretation_timeout_s = interpretation_timeout_s
        self.max_retries = max_retries

    async def execute_run(
        self, run_id: str, user_id: str, formats: list[str] | None = None
    ) -> DispatchOutcome:
        run = await self.store.get_run(run_id)
        if run is None:
            logger.warning("dispatch event=skipped run_id=%s reason=missing", run_id)
            return DispatchOutcome.SKIPPED

        status = RunStatus(run.status)
        if status is not RunStatus.RUNNING:
            # Aborted runs and stale queued entries are never executed here.
            logger.info("dispatch event=skipped run_id=%s status=%s", run_id, status.value)
            return DispatchOutcome.SKIPPED

        if run.retry_count >= self.max_retries:
            return await self._refuse(run, user_id)

        robot: RobotRecord | None = None
        try:
            robot = await self.store.get_robot(run.robot_id)
            if robot is None:
                raise RobotNotFoundError(run.robot_id)
            page = await self.pool.get_current_page(run.worker_id) if run.worker_id else None
            if page is None:
                raise WorkerUnavailableError(f"No page available for worker {run.worker_id}")

            logger.info(
                "dispatch event=start run_id=%s robot_id=%s type=%s worker_id=%s",
                run_id,
                robot.robot_id,
                robot.type,
                run.worker_id,
            )
            if robot.type == "scrape":
                result = await self._scrape(run, robot, page, formats)
            else:
                result = await self._interpret(run, robot, page)

            finished = await try_transition(
                self.store,
                run_id,
                RunStatus.SUCCESS,
                finished_at=datetime.now(UTC),
                log=append_log(run.log, *result.log, "Run completed successfully"),
                serializable_output=result.serializable_output,
                binary_output=_raw_binaries(result),
            )
        except Exception as exc:  # noqa: BLE001
            return await self._fail(run, user_id, exc)

        if finished is None:
            # Aborted mid-execution: the terminal record keeps no output from this attempt.
            return DispatchOutcome.SKIPPED

        finished = await self._upload_binaries(finished, result)
        await self._release_worker(run, user_id)
        logger.info("dispatch event=completed run_id=%s", run_id)
        await self.fanout.run_succeeded(finished, robot)
        return DispatchOutcome.COMPLETED

    async def _refuse(self, run: RunRecord, user_id: str) -> DispatchOutcome:
        error = MaxRetriesExceededError(run.run_id, run.retry_count, self.max_retries)
        logger.error(
            "dispatch event=max_retries run_id=%s retry_count=%s", run.run_id, run.retry_count
        )
        failed = await try_transition(
            self.store,
            run.run_id,
            RunStatus.FAILED,
            finished_at=datetime.now(UTC),
            log=append_log(run.log, f"{error} - Run permanently failed"),
        )
        if failed is None:
            return DispatchOutcome.SKIPPED
        await self._release_worker(run, user_id)
        await self.fanout.run_failed(failed, error)
        return DispatchOutcome.FAILED

    async def _scrape(
        self,
        run: RunRecord,
        robot: RobotRecord,
        page: PageHandle,
        formats: list[str] | None,
    ) -> InterpretationResult:
        url = robot.url or page.url
        if not url:
            raise ValueError(f"Scrape robot {robot.robot_id} has no URL")

        selected = select_scrape_formats(formats or run.requested_formats, robot)
        result = InterpretationResult()
        errors: list[Exception] = []
        for fmt in selected:
            try:
                converted = await run_with_deadline(
                    self.engine.convert_page(fmt, url, page),
                    timeout_s=self.scrape_timeout_s,
                    name=f"{fmt} conversion",
                )
            except Exception as exc:  # noqa: BLE001
                logger.warning(
                    "dispatch event=format_failed run_id=%s format=%s error=%s",
                    run.run_id,
                    fmt,
                    exc,
                )
                errors.append(exc)
                result.log.append(f"{fmt} conversion failed: {exc}")
                continue

            if fmt.startswith("screenshot"):
                data = converted if isinstance(converted, bytes) else converted.encode("utf-8")
                result.binary_output[fmt] = BinaryArtifact(data=data, mime_type="image/png")
            else:
                text = converted.decode("utf-8") if isinstance(converted, bytes) else converted
                if text.strip():
                    result.serializable_output[fmt] = [{"content": text}]
            result.log.append(f"{fmt} conversion completed")

        if errors and len(errors) == len(selected):
            raise errors[-1]
        return result

    async def _interpret(
        self, run: RunRecord, robot: RobotRecord, page: PageHandle
    ) -> InterpretationResult:
        page_ref = PageRef(page)
        result = await run_with_deadline(
            self.engine.interpret(mark_generated(robot.workflow), page_ref, run.interpreter_settings),
            timeout_s=self.interpretation_timeout_s,
            name="interpretation",
        )
        logger.info(
            "dispatch event=interpreted run_id=%s final_page_id=%s",
            run.run_id,
            page_ref.current.page_id,
        )
        return result

    async def _upload_binaries(self, run: RunRecord, result: InterpretationResult) -> RunRecord:
        """Swap the raw binary payloads stored with the run for object URLs."""
        if not result.binary_output:
            return run
        urls: dict[str, Any] = {}
        try:
            for name, artifact in result.binary_output.items():
                key = artifact_key(run.run_id, name, artifact.mime_type)
                urls[name] = await self.objects.put(key, artifact.data, artifact.mime_type)
            return await self.store.update_run(run.run_id, binary_output=urls)
        except Exception:  # noqa: BLE001
            logger.exception("dispatch event=upload_failed run_id=%s", run.run_id)
            return run

    async def _fail(self, run: RunRecord, user_id: str, exc: Exception) -> DispatchOutcome:
        message = str(exc) or type(exc).__name__
        logger.error("dispatch event=failed run_id=%s error=%s", run.run_id, message)

        failed: RunRecord | None = None
        skipped = False
        try:
            latest = await self.store.get_run(run.run_id)
            failed = await try_transition(
                self.store,
                run.run_id,
                RunStatus.FAILED,
                finished_at=datetime.now(UTC),
                log=append_log(
                    latest.log if latest else run.log,
                    f"Run failed: {message}",
                    "".join(traceback.format_exception(exc)),
                ),
            )
            skipped = failed is None
        except Exception:  # noqa: BLE001
            logger.exception("dispatch event=mark_failed_error run_id=%s", run.run_id)

        if skipped:
            return DispatchOutcome.SKIPPED

        await self._release_worker(run, user_id)
        await self.fanout.run_failed(failed or run, exc)
        return DispatchOutcome.FAILED

    async def _release_worker(self, run: RunRecord, user_id: str) -> None:
        if not run.worker_id:
            return
        try:
            await self.pool.destroy(run.worker_id, user_id)
        except Exception:  # noqa: BLE001
            logger.exception(
                "dispatch event=release_failed run_id=%s worker_id=%s", run.run_id, run.worker_id
            )


def _raw_binaries(result: InterpretationResult) -> dict[str, Any]:
    return {
        name: {
            "data": base64.b64encode(artifact.data).decode("ascii"),
            "mimeType": artifact.mime_type,
        }
        for name, artifact in result.binary_output.items()
    }
