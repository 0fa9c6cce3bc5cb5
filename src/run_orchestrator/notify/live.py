"""Per-user live event groups for websocket subscribers."""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from typing import Any

logger = logging.getLogger(__name__)


def group_name(user_id: str) -> str:
    return f"user-{user_id}"


class LiveEventHub:
    """Broadcast run events to every subscriber of a user's group.

    Subscribers get a bounded queue; a subscriber that falls behind loses its
    oldest events rather than blocking the emitter.
    """

    def __init__(self, *, max_queue_size: int = 100) -> None:
        self.max_queue_size = max_queue_size
        self._groups: dict[str, set[asyncio.Queue[dict[str, Any]]]] = defaultdict(set)

    def subscribe(self, user_id: str) -> asyncio.Queue[dict[str, Any]]:
        queue: asyncio.Queue[dict[str, Any]] = asyncio.Queue(maxsize=self.max_queue_size)
        self._groups[group_name(user_id)].add(queue)
        return queue

    def unsubscribe(self, user_id: str, queue: asyncio.Queue[dict[str, Any]]) -> None:
        name = group_name(user_id)
        subscribers = self._groups.get(name)
        if subscribers is None:
            return
        subscribers.discard(queue)
        if not subscribers:
            del self._groups[name]

    def subscriber_count(self, user_id: str) -> int:
        return len(self._groups.get(group_name(user_id), ()))

    async def emit(self, user_id: str, event: str, payload: dict[str, Any]) -> int:
        message = {"event": event, "data": payload}
        subscribers = list(self._groups.get(group_name(user_id), ()))
        for queue in subscribers:
            if queue.full():
                queue.get_nowait()
                logger.warning("live event=dropped group=%s name=%s", group_name(user_id), event)
            queue.put_nowait(message)
        logger.debug(
            "live event=emitted group=%s name=%s subscribers=%s",
            group_name(user_id),
            event,
            len(subscribers),
        )
        return len(subscribers)

    async def aclose(self) -> None:
        self._groups.clear()
