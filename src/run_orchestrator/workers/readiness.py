"""One-shot readiness handshake with a freshly allocated browser worker.

The worker service exposes ``{ws_base}/workers/{worker_id}/events``. The
socket carries JSON messages with an ``event`` key; the orchestrator waits for
``ready-for-run`` and treats ``error``, a connection failure or the socket
closing first as an acquisition failure. A channel serves exactly one
handshake and is closed afterwards.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Callable
from enum import Enum
from typing import Any, Protocol

from websockets.asyncio.client import ClientConnection, connect
from websockets.exceptions import ConnectionClosed, InvalidHandshake, InvalidURI

from run_orchestrator.errors import WorkerAcquisitionError

logger = logging.getLogger(__name__)

READY_EVENT = "ready-for-run"
ERROR_EVENT = "error"


class HandshakeState(str, Enum):
    CONNECTING = "connecting"
    READY = "ready"
    CONSUMED = "consumed"
    FAILED = "failed"


class ReadinessChannel(Protocol):
    state: HandshakeState

    async def wait_ready(self) -> None: ...

    async def close(self) -> None: ...


ReadinessChannelFactory = Callable[[str], ReadinessChannel]


class WebsocketReadinessChannel:
    def __init__(self, url: str, *, worker_id: str, timeout_s: float = 30.0) -> None:
        self.url = url
        self.worker_id = worker_id
        self.timeout_s = timeout_s
        self.state = HandshakeState.CONNECTING
        self._connection: ClientConnection | None = None

    async def wait_ready(self) -> None:
        if self.state is not HandshakeState.CONNECTING:
            raise RuntimeError(f"Readiness channel for worker {self.worker_id} is {self.state.value}")

        # One budget covers both the websocket opening and the wait for readiness.
        try:
            async with asyncio.timeout(self.timeout_s):
                connection = await self._connect()
                await self._await_ready_event(connection)
        except TimeoutError as exc:
            self._fail("timeout", f"{self.timeout_s:g}s")
            raise WorkerAcquisitionError(
                f"Worker {self.worker_id} was not ready after {self.timeout_s:g}s"
            ) from exc

    async def _connect(self) -> ClientConnection:
        try:
            self._connection = await connect(self.url, open_timeout=None)
        except (OSError, InvalidHandshake, InvalidURI) as exc:
            self._fail("connect_error", str(exc))
            raise WorkerAcquisitionError(
                f"Could not connect to worker {self.worker_id}: {exc}"
            ) from exc
        return self._connection

    async def _await_ready_event(self, connection: ClientConnection) -> None:
        try:
            async for raw in connection:
                message = _decode(raw)
                event = message.get("event")
                if event == READY_EVENT:
                    self.state = HandshakeState.READY
                    logger.info("readiness event=ready worker_id=%s", self.worker_id)
                    return
                if event == ERROR_EVENT:
                    detail = str(message.get("message") or "unknown error")
                    self._fail("error", detail)
                    raise WorkerAcquisitionError(
                        f"Worker {self.worker_id} reported an error: {detail}"
                    )
                logger.debug(
                    "readiness event=ignored worker_id=%s name=%s", self.worker_id, event
                )
        except ConnectionClosed as exc:
            self._fail("disconnect", str(exc))
            raise WorkerAcquisitionError(
                f"Worker {self.worker_id} disconnected before it was ready"
            ) from exc

        self._fail("disconnect", "socket closed")
        raise WorkerAcquisitionError(f"Worker {self.worker_id} disconnected before it was ready")

    async def close(self) -> None:
        if self.state is HandshakeState.READY:
            self.state = HandshakeState.CONSUMED
        if self._connection is None:
            return
        connection, self._connection = self._connection, None
        await connection.close()

    def _fail(self, reason: str, detail: str) -> None:
        self.state = HandshakeState.FAILED
        logger.warning(
            "readiness event=failed worker_id=%s reason=%s detail=%s",
            self.worker_id,
            reason,
            detail,
        )


def websocket_channel_factory(ws_base_url: str, *, timeout_s: float) -> ReadinessChannelFactory:
    base = ws_base_url.rstrip("/")

    def build(worker_id: str) -> ReadinessChannel:
        return WebsocketReadinessChannel(
            f"{base}/workers/{worker_id}/events",
            worker_id=worker_id,
            timeout_s=timeout_s,
        )

    return build


def _decode(raw: str | bytes) -> dict[str, Any]:
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8", errors="replace")
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError:
        return {"event": raw.strip()}
    if isinstance(payload, dict):
        return payload
    return {"event": str(payload)}
