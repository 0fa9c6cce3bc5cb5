"""Webhook delivery with exponential backoff."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from typing import Any

import httpx

from run_orchestrator.storage.base import RobotStore
from run_orchestrator.storage.models import WebhookConfig

logger = logging.getLogger(__name__)

USER_AGENT = "RunOrchestrator-Webhook/1.0"


def build_webhook_payload(event_type: str, webhook_id: str, data: dict[str, Any]) -> dict[str, Any]:
    return {
        "event_type": event_type,
        "timestamp": datetime.now(UTC).isoformat(),
        "webhook_id": webhook_id,
        "data": data,
    }


def retry_delay_s(webhook: WebhookConfig, attempt: int) -> float:
    """Delay before ``attempt + 1``, doubling after every failed attempt."""
    return webhook.retry_delay_s * 2 ** (attempt - 1)


class WebhookDispatcher:
    """Deliver event payloads to a robot's subscribed webhooks.

    First attempts are awaited together. Retries run as background tasks so a
    slow endpoint never holds up the caller; ``last_called_at`` is stamped on
    the webhook before every attempt.
    """

    def __init__(
        self,
        robots: RobotStore,
        client: httpx.AsyncClient,
        *,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.robots = robots
        self.client = client
        self._sleep = sleep
        self._pending: set[asyncio.Task[bool]] = set()

    async def dispatch(self, robot_id: str, event_type: str, data: dict[str, Any]) -> int:
        robot = await self.robots.get_robot(robot_id)
        if robot is None:
            logger.warning("webhook event=robot_missing robot_id=%s", robot_id)
            return 0

        targets = [hook for hook in robot.webhooks if hook.active and event_type in hook.events]
        if not targets:
            return 0

        await asyncio.gather(
            *(
                self._attempt(robot_id, hook, build_webhook_payload(event_type, hook.id, data), 1)
                for hook in targets
            )
        )
        return len(targets)

    async def send_test(self, robot_id: str, webhook: WebhookConfig) -> dict[str, Any]:
        payload = build_webhook_payload(
            "webhook_test",
            webhook.id,
            {"robot_id": robot_id, "message": "This is a test webhook delivery"},
        )
        await self._touch(robot_id, webhook.id)
        try:
            response = await self._post(webhook, payload)
        except Exception as exc:  # noqa: BLE001
            return {"success": False, "status_code": None, "error": str(exc)}
        return {
            "success": response.is_success,
            "status_code": response.status_code,
            "error": None if response.is_success else response.text[:500],
        }

    async def wait_idle(self) -> None:
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def aclose(self) -> None:
        for task in list(self._pending):
            task.cancel()
        await asyncio.gather(*list(self._pending), return_exceptions=True)
        self._pending.clear()

    async def _attempt(
        self, robot_id: str, webhook: WebhookConfig, payload: dict[str, Any], attempt: int
    ) -> bool:
        await self._touch(robot_id, webhook.id)
        try:
            response = await self._post(webhook, payload)
            response.raise_for_status()
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "webhook event=attempt_failed webhook_id=%s url=%s attempt=%s/%s error=%s",
                webhook.id,
                webhook.url,
                attempt,
                webhook.retry_attempts,
                exc,
            )
            if attempt < webhook.retry_attempts:
                delay = retry_delay_s(webhook, attempt)
                self._schedule(self._retry_later(robot_id, webhook, payload, attempt + 1, delay))
            else:
                logger.error(
                    "webhook event=gave_up webhook_id=%s url=%s attempts=%s",
                    webhook.id,
                    webhook.url,
                    attempt,
                )
            return False

        logger.info(
            "webhook event=delivered webhook_id=%s event_type=%s attempt=%s status=%s",
            webhook.id,
            payload["event_type"],
            attempt,
            response.status_code,
        )
        return True

    async def _retry_later(
        self,
        robot_id: str,
        webhook: WebhookConfig,
        payload: dict[str, Any],
        attempt: int,
        delay_s: float,
    ) -> bool:
        await self._sleep(delay_s)
        return await self._attempt(robot_id, webhook, payload, attempt)

    async def _post(self, webhook: WebhookConfig, payload: dict[str, Any]) -> httpx.Response:
        return await self.client.post(
            webhook.url,
            json=payload,
            headers={"Content-Type": "application/json", "User-Agent": USER_AGENT},
            timeout=webhook.timeout_s,
        )

    async def _touch(self, robot_id: str, webhook_id: str) -> None:
        try:
            await self.robots.touch_webhook(robot_id, webhook_id, datetime.now(UTC))
        except Exception:  # noqa: BLE001
            logger.exception(
                "webhook event=touch_failed robot_id=%s webhook_id=%s", robot_id, webhook_id
            )

    def _schedule(self, coro: Awaitable[bool]) -> None:
        task = asyncio.ensure_future(coro)
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
