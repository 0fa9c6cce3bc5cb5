"""Append run output to a Google spreadsheet through the Sheets v4 REST API."""

from __future__ import annotations

import json
import logging
from typing import Any
from urllib.parse import quote

import httpx

from run_orchestrator.errors import DeliveryError, IntegrationNotConfiguredError
from run_orchestrator.integrations.base import OAuthSession, refresh_oauth_token
from run_orchestrator.integrations.records import iter_groups, screenshot_entries
from run_orchestrator.storage.base import RobotStore
from run_orchestrator.storage.models import GoogleSheetSettings, RobotRecord, RunRecord

logger = logging.getLogger(__name__)

SHEETS_API_URL = "https://sheets.googleapis.com/v4/spreadsheets"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"


def build_sheet_tables(run: RunRecord) -> list[tuple[str, list[dict[str, Any]]]]:
    """Return ``(sheet_name, rows)`` pairs, one sheet per output group."""
    output = run.serializable_output
    tables: list[tuple[str, list[dict[str, Any]]]] = []

    for index, (_, items) in enumerate(iter_groups(output.get("scrapeSchema"))):
        if items:
            rows = [{"Label": key, "Value": value} for key, value in items[0].items()]
            tables.append((f"Text-{index}", rows))

    for index, (_, items) in enumerate(iter_groups(output.get("scrapeList"))):
        if items:
            tables.append((f"List-{index}", items))

    screenshots = screenshot_entries(run.binary_output)
    if screenshots:
        rows = [{"Screenshot Key": key, "Screenshot URL": url} for key, url in screenshots]
        tables.append(("Screenshot-0", rows))
    return tables


def _cell(value: Any) -> Any:
    if isinstance(value, (dict, list)):
        return json.dumps(value, ensure_ascii=False)
    return "" if value is None else value


class GoogleSheetsSink:
    name = "google_sheet"
    max_retries = 5

    def __init__(
        self,
        client: httpx.AsyncClient,
        robots: RobotStore,
        *,
        client_id: str = "",
        client_secret: str = "",
    ) -> None:
        self.client = client
        self.robots = robots
        self.client_id = client_id
        self.client_secret = client_secret

    async def deliver(self, run: RunRecord, robot: RobotRecord) -> None:
        config = robot.integrations.google_sheet
        if config is None or not config.spreadsheet_id:
            raise IntegrationNotConfiguredError(f"Robot {robot.robot_id} has no spreadsheet")
        if not config.access_token or not config.refresh_token:
            raise IntegrationNotConfiguredError("Google Sheets access not configured for user")

        async def refresh() -> str:
            return await self._refresh_token(robot, config)

        session = OAuthSession(self.client, access_token=config.access_token, refresh=refresh)
        tables = build_sheet_tables(run)
        if not tables:
            logger.info("google_sheets event=nothing_to_write run_id=%s", run.run_id)
            return

        for sheet_name, rows in tables:
            await self._ensure_sheet(session, config.spreadsheet_id, sheet_name)
            await self._append_rows(session, config.spreadsheet_id, sheet_name, rows)
        logger.info(
            "google_sheets event=written run_id=%s spreadsheet_id=%s sheets=%s",
            run.run_id,
            config.spreadsheet_id,
            len(tables),
        )

    async def _ensure_sheet(self, session: OAuthSession, spreadsheet_id: str, title: str) -> None:
        response = await session.request(
            "GET",
            f"{SHEETS_API_URL}/{spreadsheet_id}",
            params={"fields": "sheets.properties.title"},
        )
        _raise_for_status(response, "read spreadsheet")
        existing = [
            sheet.get("properties", {}).get("title") for sheet in response.json().get("sheets", [])
        ]
        if title in existing:
            return
        response = await session.request(
            "POST",
            f"{SHEETS_API_URL}/{spreadsheet_id}:batchUpdate",
            json={"requests": [{"addSheet": {"properties": {"title": title}}}]},
        )
        _raise_for_status(response, "add sheet")
        logger.info("google_sheets event=sheet_created spreadsheet_id=%s sheet=%s", spreadsheet_id, title)

    async def _append_rows(
        self,
        session: OAuthSession,
        spreadsheet_id: str,
        sheet_name: str,
        rows: list[dict[str, Any]],
    ) -> None:
        header_range = quote(f"{sheet_name}!1:1", safe="")
        response = await session.request(
            "GET", f"{SHEETS_API_URL}/{spreadsheet_id}/values/{header_range}"
        )
        _raise_for_status(response, "read headers")
        values = response.json().get("values") or []
        existing_headers = [str(item) for item in values[0]] if values else []

        expected_headers = list(rows[0].keys())
        body_rows = [[_cell(row.get(header)) for header in expected_headers] for row in rows]
        if existing_headers != expected_headers:
            body_rows.insert(0, expected_headers)

        append_range = quote(f"{sheet_name}!A1", safe="")
        response = await session.request(
            "POST",
            f"{SHEETS_API_URL}/{spreadsheet_id}/values/{append_range}:append",
            params={"valueInputOption": "USER_ENTERED"},
            json={"values": body_rows},
        )
        _raise_for_status(response, "append rows")

    async def _refresh_token(self, robot: RobotRecord, config: GoogleSheetSettings) -> str:
        tokens = await refresh_oauth_token(
            self.client,
            GOOGLE_TOKEN_URL,
            {
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "refresh_token": config.refresh_token or "",
            },
        )
        access_token = str(tokens["access_token"])
        refreshed = config.model_copy(
            update={
                "access_token": access_token,
                "refresh_token": tokens.get("refresh_token") or config.refresh_token,
            }
        )
        await self.robots.update_integration(robot.robot_id, "google_sheet", refreshed)
        return access_token


def _raise_for_status(response: httpx.Response, action: str) -> None:
    if response.status_code >= 400:
        raise DeliveryError(
            f"Google Sheets {action} failed ({response.status_code}): {response.text}"
        )
