"""Storage interfaces for robot definitions, runs and integration tasks."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Protocol

from pydantic import BaseModel

from run_orchestrator.storage.models import (
    IntegrationTask,
    ProxyConfig,
    RobotRecord,
    RunRecord,
    WebhookConfig,
)


class RobotStore(Protocol):
    async def create_robot(self, robot: RobotRecord) -> RobotRecord: ...

    async def get_robot(self, robot_id: str) -> RobotRecord | None: ...

    async def update_robot(self, robot_id: str, **fields: Any) -> RobotRecord: ...

    async def update_webhooks(
        self, robot_id: str, webhooks: list[WebhookConfig]
    ) -> RobotRecord: ...

    async def update_integration(
        self, robot_id: str, sink: str, settings: BaseModel | None
    ) -> RobotRecord: ...

    async def touch_webhook(self, robot_id: str, webhook_id: str, called_at: datetime) -> None: ...

    async def get_proxy_config(self, user_id: str) -> ProxyConfig | None: ...


class RunStore(Protocol):
    async def create_run(self, run: RunRecord) -> RunRecord: ...

    async def get_run(self, run_id: str) -> RunRecord | None: ...

    async def update_run(self, run_id: str, **fields: Any) -> RunRecord: ...

    async def list_runs(self, robot_id: str) -> list[RunRecord]: ...


class IntegrationTaskStore(Protocol):
    async def put_task(self, task: IntegrationTask, *, max_size: int) -> None: ...

    async def claim_ready(
        self, *, now: datetime, visibility_timeout_s: float
    ) -> list[IntegrationTask]: ...

    async def has_pending(self) -> bool: ...

    async def next_visible_at(self) -> datetime | None: ...

    async def complete_task(self, sink: str, run_id: str) -> None: ...

    async def retry_task(
        self, sink: str, run_id: str, *, error: str, visible_after: datetime
    ) -> IntegrationTask: ...

    async def fail_task(self, sink: str, run_id: str, *, error: str) -> None: ...


class OrchestratorStore(RobotStore, RunStore, IntegrationTaskStore, Protocol):
    async def migrate(self) -> None: ...

    async def close(self) -> None: ...
