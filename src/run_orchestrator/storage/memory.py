"""In-memory storage backend for tests and local development."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from typing import Any

from pydantic import BaseModel

from run_orchestrator.errors import RobotNotFoundError, RunNotFoundError
from run_orchestrator.storage.models import (
    IntegrationTask,
    ProxyConfig,
    RobotRecord,
    RunRecord,
    WebhookConfig,
)


class InMemoryStore:
    """Single-process implementation of the robot, run and integration task stores."""

    def __init__(self) -> None:
        self._robots: dict[str, RobotRecord] = {}
        self._runs: dict[str, RunRecord] = {}
        self._proxies: dict[str, ProxyConfig] = {}
        self._tasks: dict[tuple[str, str], IntegrationTask] = {}

    async def migrate(self) -> None:
        return None

    async def close(self) -> None:
        return None

    def set_proxy_config(self, user_id: str, proxy: ProxyConfig | None) -> None:
        if proxy is None:
            self._proxies.pop(user_id, None)
        else:
            self._proxies[user_id] = proxy

    async def create_robot(self, robot: RobotRecord) -> RobotRecord:
        self._robots[robot.robot_id] = robot.model_copy(deep=True)
        return robot.model_copy(deep=True)

    async def get_robot(self, robot_id: str) -> RobotRecord | None:
        robot = self._robots.get(robot_id)
        return robot.model_copy(deep=True) if robot else None

    async def update_robot(self, robot_id: str, **fields: Any) -> RobotRecord:
        current = self._robots.get(robot_id)
        if current is None:
            raise RobotNotFoundError(robot_id)
        updated = current.model_copy(
            update={**fields, "updated_at": datetime.now(UTC)}, deep=True
        )
        self._robots[robot_id] = updated
        return updated.model_copy(deep=True)

    async def update_webhooks(self, robot_id: str, webhooks: list[WebhookConfig]) -> RobotRecord:
        return await self.update_robot(robot_id, webhooks=[hook.model_copy() for hook in webhooks])

    async def update_integration(
        self, robot_id: str, sink: str, settings: BaseModel | None
    ) -> RobotRecord:
        current = self._robots.get(robot_id)
        if current is None:
            raise RobotNotFoundError(robot_id)
        integrations = current.integrations.model_copy(
            update={sink: settings.model_copy() if settings is not None else None}
        )
        return await self.update_robot(robot_id, integrations=integrations)

    async def touch_webhook(self, robot_id: str, webhook_id: str, called_at: datetime) -> None:
        current = self._robots.get(robot_id)
        if current is None:
            raise RobotNotFoundError(robot_id)
        for hook in current.webhooks:
            if hook.id == webhook_id:
                hook.last_called_at = called_at
                hook.updated_at = called_at

    async def get_proxy_config(self, user_id: str) -> ProxyConfig | None:
        proxy = self._proxies.get(user_id)
        return proxy.model_copy() if proxy else None

    async def create_run(self, run: RunRecord) -> RunRecord:
        self._runs[run.run_id] = run.model_copy(deep=True)
        return run.model_copy(deep=True)

    async def get_run(self, run_id: str) -> RunRecord | None:
        run = self._runs.get(run_id)
        return run.model_copy(deep=True) if run else None

    async def update_run(self, run_id: str, **fields: Any) -> RunRecord:
        current = self._runs.get(run_id)
        if current is None:
            raise RunNotFoundError(run_id)
        updated = current.model_copy(
            update={**fields, "updated_at": datetime.now(UTC)}, deep=True
        )
        self._runs[run_id] = updated
        return updated.model_copy(deep=True)

    async def list_runs(self, robot_id: str) -> list[RunRecord]:
        runs = [run for run in self._runs.values() if run.robot_id == robot_id]
        runs.sort(key=lambda run: run.started_at, reverse=True)
        return [run.model_copy(deep=True) for run in runs]

    async def put_task(self, task: IntegrationTask, *, max_size: int) -> None:
        key = (task.sink, task.run_id)
        if key not in self._tasks and len(self._tasks) >= max_size:
            oldest = min(self._tasks.values(), key=lambda item: item.created_at)
            del self._tasks[(oldest.sink, oldest.run_id)]
        self._tasks[key] = task.model_copy()

    async def claim_ready(
        self, *, now: datetime, visibility_timeout_s: float
    ) -> list[IntegrationTask]:
        claimed: list[IntegrationTask] = []
        for key, task in list(self._tasks.items()):
            if task.status != "pending" or task.visible_after > now:
                continue
            leased = task.model_copy(
                update={
                    "visible_after": _after(now, visibility_timeout_s),
                    "updated_at": now,
                }
            )
            self._tasks[key] = leased
            claimed.append(leased.model_copy())
        return claimed

    async def has_pending(self) -> bool:
        return any(task.status == "pending" for task in self._tasks.values())

    async def next_visible_at(self) -> datetime | None:
        pending = [task.visible_after for task in self._tasks.values() if task.status == "pending"]
        return min(pending) if pending else None

    async def complete_task(self, sink: str, run_id: str) -> None:
        self._tasks.pop((sink, run_id), None)

    async def retry_task(
        self, sink: str, run_id: str, *, error: str, visible_after: datetime
    ) -> IntegrationTask:
        current = self._tasks[(sink, run_id)]
        updated = current.model_copy(
            update={
                "retries": current.retries + 1,
                "last_error": error,
                "visible_after": visible_after,
                "updated_at": datetime.now(UTC),
            }
        )
        self._tasks[(sink, run_id)] = updated
        return updated.model_copy()

    async def fail_task(self, sink: str, run_id: str, *, error: str) -> None:
        self._tasks.pop((sink, run_id), None)

    def tasks(self) -> list[IntegrationTask]:
        return [task.model_copy() for task in self._tasks.values()]


def _after(now: datetime, seconds: float) -> datetime:
    return now + timedelta(seconds=seconds)
