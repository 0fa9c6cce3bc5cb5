"""Deadlines that cancel the operation they bound."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable
from typing import TypeVar

from run_orchestrator.errors import DeadlineExceededError

T = TypeVar("T")


async def run_with_deadline(operation: Awaitable[T], *, timeout_s: float, name: str) -> T:
    """Await ``operation``; cancel it and raise if it outlives ``timeout_s``."""
    try:
        async with asyncio.timeout(timeout_s):
            return await operation
    except TimeoutError as exc:
        raise DeadlineExceededError(name, timeout_s) from exc
