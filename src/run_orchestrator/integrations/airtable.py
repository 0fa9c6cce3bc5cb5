"""Create Airtable records from run output."""

from __future__ import annotations

import json
import logging
from typing import Any
from urllib.parse import quote, urlparse

import httpx

from run_orchestrator.errors import DeliveryError, IntegrationNotConfiguredError
from run_orchestrator.integrations.base import OAuthSession, refresh_oauth_token
from run_orchestrator.integrations.records import merge_related_data
from run_orchestrator.storage.base import RobotStore
from run_orchestrator.storage.models import AirtableSettings, RobotRecord, RunRecord

logger = logging.getLogger(__name__)

AIRTABLE_API_URL = "https://api.airtable.com/v0"
AIRTABLE_TOKEN_URL = "https://airtable.com/oauth2/v1/token"
BATCH_SIZE = 10


def infer_field_type(value: Any) -> str:
    if isinstance(value, bool):
        return "checkbox"
    if isinstance(value, (int, float)):
        return "number"
    if isinstance(value, list):
        return "multipleSelects"
    if isinstance(value, str):
        parsed = urlparse(value)
        if parsed.scheme in {"http", "https"} and parsed.netloc:
            return "url"
    return "singleLineText"


def clean_records(records: list[dict[str, Any]]) -> list[dict[str, Any]]:
    cleaned: list[dict[str, Any]] = []
    for record in records:
        row: dict[str, Any] = {}
        for key, value in record.items():
            if value is None or value == "":
                row[key] = ""
            elif isinstance(value, dict):
                row[key] = json.dumps(value, ensure_ascii=False)
            else:
                row[key] = value
        if any(value != "" for value in row.values()):
            cleaned.append(row)
    return cleaned


class AirtableSink:
    name = "airtable"
    max_retries = 3

    def __init__(self, client: httpx.AsyncClient, robots: RobotStore, *, client_id: str = "") -> None:
        self.client = client
        self.robots = robots
        self.client_id = client_id

    async def deliver(self, run: RunRecord, robot: RobotRecord) -> None:
        config = robot.integrations.airtable
        if config is None or not (config.base_id and config.table_name and config.table_id):
            raise IntegrationNotConfiguredError(f"Robot {robot.robot_id} has no Airtable table")
        if not config.access_token or not config.refresh_token:
            raise IntegrationNotConfiguredError("Airtable credentials not configured")

        records = clean_records(merge_related_data(run.serializable_output, run.binary_output))
        if not records:
            logger.info("airtable event=nothing_to_write run_id=%s", run.run_id)
            return

        async def refresh() -> str:
            return await self._refresh_token(robot, config)

        session = OAuthSession(self.client, access_token=config.access_token, refresh=refresh)
        table_url = f"{AIRTABLE_API_URL}/{config.base_id}/{quote(config.table_name, safe='')}"

        existing = await self._existing_fields(session, table_url)
        wanted = list(dict.fromkeys(key for record in records for key in record))
        for field_name in wanted:
            if field_name in existing:
                continue
            sample = next((r[field_name] for r in records if r.get(field_name) != ""), None)
            if sample is not None:
                await self._create_field(session, config, field_name, sample)

        for start in range(0, len(records), BATCH_SIZE):
            batch = [{"fields": record} for record in records[start : start + BATCH_SIZE]]
            response = await session.request("POST", table_url, json={"records": batch})
            if response.status_code >= 400:
                raise DeliveryError(
                    f"Airtable record creation failed ({response.status_code}): {response.text}"
                )
        logger.info(
            "airtable event=written run_id=%s base_id=%s records=%s",
            run.run_id,
            config.base_id,
            len(records),
        )

    async def _existing_fields(self, session: OAuthSession, table_url: str) -> set[str]:
        response = await session.request("GET", table_url, params={"pageSize": 5})
        if response.status_code >= 400:
            logger.warning(
                "airtable event=fields_unavailable status=%s", response.status_code
            )
            return set()
        return {
            name
            for record in response.json().get("records", [])
            for name in (record.get("fields") or {})
        }

    async def _create_field(
        self, session: OAuthSession, config: AirtableSettings, field_name: str, sample: Any
    ) -> None:
        field_type = infer_field_type(sample)
        response = await session.request(
            "POST",
            f"{AIRTABLE_API_URL}/meta/bases/{config.base_id}/tables/{config.table_id}/fields",
            json={"name": field_name, "type": field_type},
        )
        if response.status_code == 422:
            logger.info("airtable event=field_exists field=%s", field_name)
        elif response.status_code >= 400:
            logger.warning(
                "airtable event=field_create_failed field=%s status=%s",
                field_name,
                response.status_code,
            )
        else:
            logger.info("airtable event=field_created field=%s type=%s", field_name, field_type)

    async def _refresh_token(self, robot: RobotRecord, config: AirtableSettings) -> str:
        tokens = await refresh_oauth_token(
            self.client,
            AIRTABLE_TOKEN_URL,
            {"client_id": self.client_id, "refresh_token": config.refresh_token or ""},
        )
        access_token = str(tokens["access_token"])
        refreshed = config.model_copy(
            update={
                "access_token": access_token,
                "refresh_token": tokens.get("refresh_token") or config.refresh_token,
            }
        )
        await self.robots.update_integration(robot.robot_id, "airtable", refreshed)
        return access_token
