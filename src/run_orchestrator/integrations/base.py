"""Durable per-sink delivery queue for successful runs."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime, timedelta
from typing import Any, Protocol

import httpx

from run_orchestrator.errors import DeliveryError
from run_orchestrator.storage.base import OrchestratorStore
from run_orchestrator.storage.models import IntegrationTask, RobotRecord, RunRecord, RunStatus

logger = logging.getLogger(__name__)


class IntegrationSink(Protocol):
    name: str
    max_retries: int

    async def deliver(self, run: RunRecord, robot: RobotRecord) -> None: ...


async def refresh_oauth_token(
    client: httpx.AsyncClient, token_url: str, form: dict[str, str]
) -> dict[str, Any]:
    response = await client.post(token_url, data={"grant_type": "refresh_token", **form})
    if response.status_code >= 400:
        raise DeliveryError(f"Token refresh failed ({response.status_code}): {response.text}")
    return response.json()


class OAuthSession:
    """Bearer-token HTTP calls that refresh the token once on a 401."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        *,
        access_token: str,
        refresh: Callable[[], Awaitable[str]],
    ) -> None:
        self.client = client
        self.access_token = access_token
        self._refresh = refresh

    async def request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        response = await self._send(method, url, **kwargs)
        if response.status_code == 401:
            logger.info("integration event=token_refresh url=%s", url)
            self.access_token = await self._refresh()
            response = await self._send(method, url, **kwargs)
        return response

    async def _send(
        self, method: str, url: str, *, headers: dict[str, str] | None = None, **kwargs: Any
    ) -> httpx.Response:
        merged = {**(headers or {}), "Authorization": f"Bearer {self.access_token}"}
        return await self.client.request(method, url, headers=merged, **kwargs)


def _utcnow() -> datetime:
    return datetime.now(UTC)


class IntegrationQueue:
    """Fan successful runs out to third-party sinks.

    One task is stored per ``(sink, run_id)``. A single drain loop claims
    visible tasks, delivers them concurrently and reschedules failures after a
    fixed delay until the sink's retry cap is reached.
    """

    def __init__(
        self,
        store: OrchestratorStore,
        sinks: dict[str, IntegrationSink],
        *,
        retry_delay_s: float = 5.0,
        visibility_timeout_s: float = 60.0,
        max_queue_size: int = 1000,
        drain_timeout_s: float = 65.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.store = store
        self.sinks = sinks
        self.retry_delay_s = retry_delay_s
        self.visibility_timeout_s = visibility_timeout_s
        self.max_queue_size = max_queue_size
        self.drain_timeout_s = drain_timeout_s
        self._sleep = sleep
        self._clock = clock
        self._draining = False
        self._rescan = False
        self._drain_task: asyncio.Task[None] | None = None

    async def enqueue(self, run: RunRecord, robot: RobotRecord) -> list[str]:
        queued: list[str] = []
        now = self._clock()
        for sink_name in robot.integrations.configured_sinks():
            if sink_name not in self.sinks:
                logger.warning(
                    "integration event=unknown_sink sink=%s run_id=%s", sink_name, run.run_id
                )
                continue
            await self.store.put_task(
                IntegrationTask(
                    sink=sink_name,
                    run_id=run.run_id,
                    robot_id=robot.robot_id,
                    visible_after=now,
                    created_at=now,
                    updated_at=now,
                ),
                max_size=self.max_queue_size,
            )
            queued.append(sink_name)
        if queued:
            logger.info(
                "integration event=enqueued run_id=%s sinks=%s", run.run_id, ",".join(queued)
            )
        return queued

    def schedule_drain(self) -> None:
        self._rescan = True
        if self._drain_task is not None and not self._drain_task.done():
            return
        self._drain_task = asyncio.create_task(self._drain_until_quiet())

    async def _drain_until_quiet(self) -> None:
        while self._rescan:
            self._rescan = False
            await self.drain()

    async def drain(self) -> None:
        if self._draining:
            logger.info("integration event=drain_skipped reason=already_running")
            return
        self._draining = True
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.drain_timeout_s
        try:
            while await self.store.has_pending():
                claimed = await self.store.claim_ready(
                    now=self._clock(), visibility_timeout_s=self.visibility_timeout_s
                )
                if claimed:
                    await asyncio.gather(*(self._process(task) for task in claimed))
                    continue

                next_at = await self.store.next_visible_at()
                wait_s = self.retry_delay_s
                if next_at is not None:
                    wait_s = max((next_at - self._clock()).total_seconds(), 0.0)
                if loop.time() + wait_s > deadline:
                    logger.warning(
                        "integration event=drain_timeout timeout_s=%s", self.drain_timeout_s
                    )
                    break
                await self._sleep(wait_s)
        finally:
            self._draining = False
        logger.info("integration event=drain_finished")

    async def wait_idle(self) -> None:
        if self._drain_task is not None:
            await asyncio.gather(self._drain_task, return_exceptions=True)

    async def aclose(self) -> None:
        if self._drain_task is not None and not self._drain_task.done():
            self._drain_task.cancel()
            await asyncio.gather(self._drain_task, return_exceptions=True)

    async def _process(self, task: IntegrationTask) -> None:
        sink = self.sinks.get(task.sink)
        if sink is None:
            await self.store.fail_task(task.sink, task.run_id, error="sink not registered")
            return

        try:
            run = await self.store.get_run(task.run_id)
            robot = await self.store.get_robot(task.robot_id)
            if run is None or robot is None:
                raise DeliveryError(f"Run {task.run_id} or robot {task.robot_id} is missing")
            if RunStatus(run.status) is not RunStatus.SUCCESS:
                logger.info(
                    "integration event=skipped sink=%s run_id=%s status=%s",
                    task.sink,
                    task.run_id,
                    RunStatus(run.status).value,
                )
                await self.store.complete_task(task.sink, task.run_id)
                return
            await sink.deliver(run, robot)
        except Exception as exc:  # noqa: BLE001
            if task.retries < sink.max_retries:
                updated = await self.store.retry_task(
                    task.sink,
                    task.run_id,
                    error=str(exc),
                    visible_after=self._clock() + timedelta(seconds=self.retry_delay_s),
                )
                logger.warning(
                    "integration event=retry sink=%s run_id=%s attempt=%s error=%s",
                    task.sink,
                    task.run_id,
                    updated.retries,
                    exc,
                )
            else:
                await self.store.fail_task(task.sink, task.run_id, error=str(exc))
                logger.error(
                    "integration event=failed sink=%s run_id=%s retries=%s error=%s",
                    task.sink,
                    task.run_id,
                    task.retries,
                    exc,
                )
            return

        await self.store.complete_task(task.sink, task.run_id)
        logger.info("integration event=delivered sink=%s run_id=%s", task.sink, task.run_id)
