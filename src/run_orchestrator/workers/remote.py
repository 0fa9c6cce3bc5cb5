"""HTTP clients for the browser worker service.

The worker service owns the browsers. The orchestrator talks to it over a
small REST surface:

* ``POST /workers`` allocates a worker and returns ``{"worker_id": ...}``.
* ``GET /workers/{id}/page`` describes the current page, 404 when none.
* ``DELETE /workers/{id}`` destroys the worker.
* ``POST /workers/{id}/convert`` renders the page as markdown, HTML or a PNG.
* ``POST /workers/{id}/interpret`` runs a workflow and reports every page
  switch it made along with the extracted output.
"""

from __future__ import annotations

import base64
import logging
from typing import Any

import httpx

from run_orchestrator.errors import WorkerAcquisitionError
from run_orchestrator.storage.models import ProxyConfig
from run_orchestrator.workers.base import (
    BinaryArtifact,
    InterpretationResult,
    PageHandle,
    PageRef,
)

logger = logging.getLogger(__name__)

logging.getLogger("httpx").setLevel(logging.WARNING)


class RemoteWorkerPool:
    def __init__(self, client: httpx.AsyncClient) -> None:
        self.client = client

    async def allocate(self, user_id: str, proxy: ProxyConfig | None) -> str:
        payload: dict[str, Any] = {"user_id": user_id}
        if proxy is not None:
            payload["proxy"] = proxy.model_dump(mode="json", exclude_none=True)
        try:
            response = await self.client.post("/workers", json=payload)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise WorkerAcquisitionError(f"Worker allocation failed: {exc}") from exc

        worker_id = response.json().get("worker_id")
        if not worker_id:
            raise WorkerAcquisitionError("Worker service returned no worker_id")
        logger.info("worker event=allocated worker_id=%s user_id=%s", worker_id, user_id)
        return str(worker_id)

    async def get_current_page(self, worker_id: str) -> PageHandle | None:
        response = await self.client.get(f"/workers/{worker_id}/page")
        if response.status_code == 404:
            return None
        response.raise_for_status()
        body = response.json()
        return PageHandle(worker_id=worker_id, page_id=str(body["page_id"]), url=body.get("url"))

    async def destroy(self, worker_id: str, user_id: str) -> None:
        response = await self.client.delete(
            f"/workers/{worker_id}", params={"user_id": user_id}
        )
        if response.status_code != 404:
            response.raise_for_status()
        logger.info("worker event=destroyed worker_id=%s user_id=%s", worker_id, user_id)


class RemoteAutomationEngine:
    def __init__(self, client: httpx.AsyncClient) -> None:
        self.client = client

    async def convert_page(self, fmt: str, url: str, page: PageHandle) -> str | bytes:
        response = await self.client.post(
            f"/workers/{page.worker_id}/convert",
            json={"format": fmt, "url": url, "page_id": page.page_id},
        )
        response.raise_for_status()
        if fmt.startswith("screenshot"):
            return response.content
        return str(response.json().get("content") or "")

    async def interpret(
        self,
        workflow: list[dict[str, Any]],
        page_ref: PageRef,
        settings: dict[str, Any],
    ) -> InterpretationResult:
        page = page_ref.current
        response = await self.client.post(
            f"/workers/{page.worker_id}/interpret",
            json={"workflow": workflow, "page_id": page.page_id, "settings": settings},
        )
        response.raise_for_status()
        body = response.json()

        for switched in body.get("pages", []):
            page_ref.on_page_changed(
                PageHandle(
                    worker_id=page.worker_id,
                    page_id=str(switched["page_id"]),
                    url=switched.get("url"),
                )
            )

        binary_output = {
            name: BinaryArtifact(
                data=base64.b64decode(item["data"]),
                mime_type=item.get("mimeType", "image/png"),
            )
            for name, item in (body.get("binary_output") or {}).items()
        }
        log = body.get("log") or []
        return InterpretationResult(
            serializable_output=body.get("serializable_output") or {},
            binary_output=binary_output,
            log=[str(line) for line in log] if isinstance(log, list) else [str(log)],
        )
