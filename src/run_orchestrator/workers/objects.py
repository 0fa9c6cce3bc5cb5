"""Filesystem-backed object storage for run artifacts."""

from __future__ import annotations

import asyncio
from pathlib import Path

_EXTENSIONS = {
    "image/png": "png",
    "image/jpeg": "jpg",
    "image/webp": "webp",
    "application/pdf": "pdf",
    "text/html": "html",
    "text/markdown": "md",
}


def artifact_key(run_id: str, artifact: str, content_type: str) -> str:
    extension = _EXTENSIONS.get(content_type, "bin")
    return f"{run_id}/{artifact}.{extension}"


class LocalObjectStorage:
    """Write artifacts under a directory and serve them from a base URL."""

    def __init__(self, root: str | Path, base_url: str) -> None:
        self.root = Path(root)
        self.base_url = base_url.rstrip("/")

    async def put(self, key: str, data: bytes, content_type: str) -> str:
        target = self.root / key
        await asyncio.to_thread(self._write, target, data)
        return f"{self.base_url}/{key}"

    @staticmethod
    def _write(target: Path, data: bytes) -> None:
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(data)
