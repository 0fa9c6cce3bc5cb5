"""Public, camelCase shape of a run returned by the HTTP API."""

from __future__ import annotations

from typing import Any

from run_orchestrator.integrations.records import artifact_url, iter_groups
from run_orchestrator.storage.models import RunRecord, RunStatus


def _contents(entries: Any) -> list[Any]:
    if not isinstance(entries, list):
        return []
    return [entry.get("content") if isinstance(entry, dict) else entry for entry in entries]


def format_run_response(run: RunRecord) -> dict[str, Any]:
    output = run.serializable_output
    text_data: dict[str, Any] = {}
    for _, items in iter_groups(output.get("scrapeSchema")):
        for item in items:
            text_data.update(item)

    return {
        "id": run.run_id,
        "status": RunStatus(run.status).value,
        "name": run.robot_name,
        "robotId": run.robot_id,
        "startedAt": run.started_at.isoformat(),
        "finishedAt": run.finished_at.isoformat() if run.finished_at else None,
        "runId": run.run_id,
        "runByUserId": run.run_by_user_id,
        "runByScheduleId": run.run_by_schedule_id,
        "runByAPI": run.run_by_api,
        "runBySDK": run.run_by_sdk,
        "retryCount": run.retry_count,
        "log": run.log,
        "data": {
            "textData": text_data,
            "listData": [items for _, items in iter_groups(output.get("scrapeList"))],
            "crawlData": output.get("crawl") or [],
            "searchData": output.get("search") or [],
            "markdown": _contents(output.get("markdown")),
            "html": _contents(output.get("html")),
        },
        "screenshots": [
            url for url in (artifact_url(value) for value in run.binary_output.values()) if url
        ],
    }
