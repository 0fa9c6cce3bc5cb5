"""Post run output to an n8n webhook."""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any

import httpx

from run_orchestrator.errors import DeliveryError, IntegrationNotConfiguredError
from run_orchestrator.integrations.records import merge_related_data
from run_orchestrator.storage.models import RobotRecord, RunRecord

logger = logging.getLogger(__name__)

_STATUS_HINTS = {
    401: "n8n webhook authentication failed, check the API key",
    404: "n8n webhook URL not found",
}


def build_n8n_payload(run: RunRecord, robot: RobotRecord, records: list[dict[str, Any]]) -> dict[str, Any]:
    return {
        "robot_id": robot.robot_id,
        "run_id": run.run_id,
        "robot_name": robot.name,
        "timestamp": datetime.now(UTC).isoformat(),
        "data": records,
        "metadata": {
            "total_records": len(records),
            "data_types": {
                "schema_records": sum(1 for r in records if r.get("Label") and r.get("Value")),
                "list_records": sum(1 for r in records if not r.get("Label") and not r.get("Key")),
                "screenshot_records": sum(
                    1 for r in records if r.get("Key") and r.get("Screenshot")
                ),
            },
        },
    }


class N8nSink:
    name = "n8n"
    max_retries = 3

    def __init__(self, client: httpx.AsyncClient, *, timeout_s: float = 30.0) -> None:
        self.client = client
        self.timeout_s = timeout_s

    async def deliver(self, run: RunRecord, robot: RobotRecord) -> None:
        config = robot.integrations.n8n
        if config is None or not config.webhook_url:
            raise IntegrationNotConfiguredError(f"Robot {robot.robot_id} has no n8n webhook")

        records = merge_related_data(run.serializable_output, run.binary_output)
        if not records:
            logger.info("n8n event=nothing_to_send run_id=%s", run.run_id)
            return

        headers = {"Content-Type": "application/json"}
        if config.api_key:
            headers["Authorization"] = f"Bearer {config.api_key}"

        try:
            response = await self.client.post(
                config.webhook_url,
                json=build_n8n_payload(run, robot, records),
                headers=headers,
                timeout=self.timeout_s,
            )
        except httpx.HTTPError as exc:
            raise DeliveryError(f"Could not reach n8n webhook: {exc}") from exc

        if not response.is_success:
            hint = _STATUS_HINTS.get(response.status_code, "n8n webhook rejected the payload")
            raise DeliveryError(f"{hint} (status {response.status_code})")
        logger.info("n8n event=sent run_id=%s records=%s", run.run_id, len(records))
