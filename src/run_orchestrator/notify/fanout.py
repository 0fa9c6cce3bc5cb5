"""Terminal-state notifications: live events, webhooks and integration tasks."""

from __future__ import annotations

import logging
from typing import Any

from run_orchestrator.integrations.base import IntegrationQueue
from run_orchestrator.integrations.records import artifact_url, iter_groups
from run_orchestrator.notify.live import LiveEventHub
from run_orchestrator.notify.webhooks import WebhookDispatcher
from run_orchestrator.storage.models import RobotRecord, RunRecord, RunStatus

logger = logging.getLogger(__name__)


def _iso(value: Any) -> str | None:
    return value.isoformat() if value is not None else None


def live_event_payload(run: RunRecord, *, started: bool) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "runId": run.run_id,
        "robotMetaId": run.robot_id,
        "robotName": run.robot_name,
        "status": RunStatus(run.status).value,
        "runByUserId": run.run_by_user_id,
        "runByScheduleId": run.run_by_schedule_id,
        "runByAPI": run.run_by_api,
        "browserId": run.worker_id,
    }
    if started:
        payload["startedAt"] = _iso(run.started_at)
    else:
        payload["finishedAt"] = _iso(run.finished_at)
    return payload


def _flatten(output: Any) -> list[dict[str, Any]]:
    return [item for _, items in iter_groups(output) for item in items]


def extracted_data(run: RunRecord, robot: RobotRecord | None) -> dict[str, Any]:
    output = run.serializable_output
    captured_texts = _flatten(output.get("scrapeSchema"))
    captured_lists = {
        f"list_{index}": items for index, (_, items) in enumerate(iter_groups(output.get("scrapeList")))
    }
    data: dict[str, Any] = {
        "captured_texts": captured_texts,
        "captured_lists": captured_lists,
        "crawl_data": output.get("crawl") or [],
        "search_data": output.get("search") or [],
        "captured_texts_count": len(captured_texts),
        "captured_lists_count": sum(len(items) for items in captured_lists.values()),
        "screenshots_count": len(run.binary_output),
    }
    if robot is not None and robot.type == "scrape":
        for fmt in ("markdown", "html"):
            entries = output.get(fmt)
            if entries:
                data[fmt] = entries[0].get("content", "")
        for fmt in ("screenshot-visible", "screenshot-fullpage"):
            url = artifact_url(run.binary_output.get(fmt))
            if url:
                data[fmt.replace("-", "_")] = url
    return data


def _base_data(run: RunRecord) -> dict[str, Any]:
    return {
        "robot_id": run.robot_id,
        "run_id": run.run_id,
        "robot_name": run.robot_name,
        "status": RunStatus(run.status).value,
        "started_at": _iso(run.started_at),
        "finished_at": _iso(run.finished_at),
        "metadata": {"browser_id": run.worker_id, "user_id": run.run_by_user_id},
    }


def success_webhook_data(run: RunRecord, robot: RobotRecord | None) -> dict[str, Any]:
    return {**_base_data(run), "extracted_data": extracted_data(run, robot)}


def failure_webhook_data(run: RunRecord, error: BaseException | str) -> dict[str, Any]:
    if isinstance(error, BaseException):
        detail = {"message": str(error), "type": type(error).__name__}
    else:
        detail = {"message": error, "type": "ExecutionError"}
    return {**_base_data(run), "error": detail}


class NotificationFanOut:
    """Run every notification channel independently; none may raise."""

    def __init__(
        self,
        *,
        live: LiveEventHub,
        webhooks: WebhookDispatcher,
        integrations: IntegrationQueue,
    ) -> None:
        self.live = live
        self.webhooks = webhooks
        self.integrations = integrations

    async def run_started(self, run: RunRecord) -> None:
        try:
            await self.live.emit(run.run_by_user_id, "run-started", live_event_payload(run, started=True))
        except Exception:  # noqa: BLE001
            logger.exception("fanout event=live_failed run_id=%s name=run-started", run.run_id)

    async def run_succeeded(self, run: RunRecord, robot: RobotRecord | None) -> None:
        await self._emit_completed(run)
        try:
            await self.webhooks.dispatch(
                run.robot_id, "run_completed", success_webhook_data(run, robot)
            )
        except Exception:  # noqa: BLE001
            logger.exception("fanout event=webhook_failed run_id=%s", run.run_id)

        if robot is None:
            return
        try:
            if await self.integrations.enqueue(run, robot):
                self.integrations.schedule_drain()
        except Exception:  # noqa: BLE001
            logger.exception("fanout event=integration_failed run_id=%s", run.run_id)

    async def run_failed(self, run: RunRecord, error: BaseException | str) -> None:
        await self._emit_completed(run)
        try:
            await self.webhooks.dispatch(run.robot_id, "run_failed", failure_webhook_data(run, error))
        except Exception:  # noqa: BLE001
            logger.exception("fanout event=webhook_failed run_id=%s", run.run_id)

    async def _emit_completed(self, run: RunRecord) -> None:
        try:
            await self.live.emit(
                run.run_by_user_id, "run-completed", live_event_payload(run, started=False)
            )
        except Exception:  # noqa: BLE001
            logger.exception("fanout event=live_failed run_id=%s name=run-completed", run.run_id)
