"""Storage models shared by API, orchestrator and persistence backends."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Literal
from uuid import uuid4

from pydantic import BaseModel, Field

RobotType = Literal["extract", "scrape", "crawl", "search"]
ScrapeFormat = Literal["markdown", "html", "screenshot-visible", "screenshot-fullpage"]
WebhookEvent = Literal["run_completed", "run_failed"]

SCRAPE_FORMATS: tuple[str, ...] = (
    "markdown",
    "html",
    "screenshot-visible",
    "screenshot-fullpage",
)


class RunStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"
    ABORTING = "aborting"
    ABORTED = "aborted"


class RunRecord(BaseModel):
    """Persisted state of one robot run."""

    run_id: str
    robot_id: str
    robot_name: str
    status: RunStatus = RunStatus.QUEUED
    worker_id: str | None = None
    started_at: datetime
    finished_at: datetime | None = None
    retry_count: int = Field(default=0, ge=0)
    run_by_user_id: str
    run_by_schedule_id: str | None = None
    run_by_api: bool = False
    run_by_sdk: bool = False
    requested_formats: list[str] | None = None
    interpreter_settings: dict[str, Any] = Field(
        default_factory=lambda: {"maxConcurrency": 1, "maxRepeats": 1, "debug": True}
    )
    serializable_output: dict[str, Any] = Field(default_factory=dict)
    # Object URL per artifact, or a raw {"data", "mimeType"} payload until uploaded.
    binary_output: dict[str, Any] = Field(default_factory=dict)
    log: str = ""
    created_at: datetime
    updated_at: datetime


class WebhookConfig(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid4()))
    url: str
    events: list[WebhookEvent] = Field(default_factory=lambda: ["run_completed"])
    active: bool = True
    retry_attempts: int = Field(default=3, ge=1, le=10)
    retry_delay_s: float = Field(default=5.0, ge=0.0)
    timeout_s: float = Field(default=30.0, gt=0.0)
    description: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    last_called_at: datetime | None = None


class GoogleSheetSettings(BaseModel):
    spreadsheet_id: str
    sheet_email: str | None = None
    access_token: str | None = None
    refresh_token: str | None = None


class AirtableSettings(BaseModel):
    base_id: str
    table_name: str
    table_id: str
    access_token: str | None = None
    refresh_token: str | None = None


class N8nSettings(BaseModel):
    webhook_url: str
    api_key: str | None = None


class IntegrationSettings(BaseModel):
    google_sheet: GoogleSheetSettings | None = None
    airtable: AirtableSettings | None = None
    n8n: N8nSettings | None = None

    def configured_sinks(self) -> list[str]:
        return [
            name
            for name, value in (
                ("google_sheet", self.google_sheet),
                ("airtable", self.airtable),
                ("n8n", self.n8n),
            )
            if value is not None
        ]


class RobotRecord(BaseModel):
    """Stored robot definition. Read-only input to a run."""

    robot_id: str
    user_id: str
    name: str
    type: RobotType = "extract"
    url: str | None = None
    workflow: list[dict[str, Any]] = Field(default_factory=list)
    formats: list[ScrapeFormat] = Field(default_factory=lambda: ["markdown"])
    webhooks: list[WebhookConfig] = Field(default_factory=list)
    integrations: IntegrationSettings = Field(default_factory=IntegrationSettings)
    created_at: datetime
    updated_at: datetime


class ProxyConfig(BaseModel):
    server: str
    username: str | None = None
    password: str | None = None


IntegrationTaskStatus = Literal["pending", "completed", "failed"]


class IntegrationTask(BaseModel):
    """Queued delivery of one run's data into one third-party sink."""

    sink: str
    run_id: str
    robot_id: str
    status: IntegrationTaskStatus = "pending"
    retries: int = 0
    visible_after: datetime
    last_error: str | None = None
    created_at: datetime
    updated_at: datetime
