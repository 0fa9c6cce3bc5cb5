"""Interfaces of the browser worker pool, automation engine and object storage."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Protocol

from run_orchestrator.storage.models import ProxyConfig

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PageHandle:
    """Opaque reference to a page open inside a browser worker."""

    worker_id: str
    page_id: str
    url: str | None = None


class PageRef:
    """Mutable pointer to the page the engine is currently driving.

    The engine calls :meth:`on_page_changed` whenever a workflow step opens or
    switches to another page; readers always go through :attr:`current`.
    """

    def __init__(self, page: PageHandle) -> None:
        self._current = page

    @property
    def current(self) -> PageHandle:
        return self._current

    def on_page_changed(self, page: PageHandle) -> None:
        logger.debug(
            "page event=changed worker_id=%s from=%s to=%s",
            page.worker_id,
            self._current.page_id,
            page.page_id,
        )
        self._current = page


@dataclass(frozen=True)
class BinaryArtifact:
    data: bytes
    mime_type: str = "image/png"


@dataclass
class InterpretationResult:
    serializable_output: dict[str, Any] = field(default_factory=dict)
    binary_output: dict[str, BinaryArtifact] = field(default_factory=dict)
    log: list[str] = field(default_factory=list)


class WorkerPool(Protocol):
    async def allocate(self, user_id: str, proxy: ProxyConfig | None) -> str: ...

    async def get_current_page(self, worker_id: str) -> PageHandle | None: ...

    async def destroy(self, worker_id: str, user_id: str) -> None: ...


class AutomationEngine(Protocol):
    async def convert_page(self, fmt: str, url: str, page: PageHandle) -> str | bytes: ...

    async def interpret(
        self,
        workflow: list[dict[str, Any]],
        page_ref: PageRef,
        settings: dict[str, Any],
    ) -> InterpretationResult: ...


class ObjectStorage(Protocol):
    async def put(self, key: str, data: bytes, content_type: str) -> str: ...
