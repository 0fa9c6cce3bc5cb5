from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Iterator
from datetime import UTC, datetime
from typing import Any
from uuid import uuid4

import httpx
import pytest
from fastapi.testclient import TestClient

from run_orchestrator.api.main import create_app
from run_orchestrator.config.settings import Settings
from run_orchestrator.runtime import Runtime, build_runtime
from run_orchestrator.storage.memory import InMemoryStore
from run_orchestrator.storage.models import ProxyConfig, RobotRecord, RunRecord, RunStatus
from run_orchestrator.workers.base import InterpretationResult, PageHandle, PageRef
from run_orchestrator.workers.readiness import HandshakeState

HANG = object()


class FakeWorkerPool:
    """Test double for the browser worker service."""

    def __init__(self) -> None:
        self.allocated: list[tuple[str, str, ProxyConfig | None]] = []
        self.destroyed: list[str] = []
        self.allocation_error: Exception | None = None
        self.has_page = True
        self._counter = 0

    async def allocate(self, user_id: str, proxy: ProxyConfig | None) -> str:
        if self.allocation_error is not None:
            raise self.allocation_error
        self._counter += 1
        worker_id = f"worker-{self._counter}"
        self.allocated.append((worker_id, user_id, proxy))
        return worker_id

    async def get_current_page(self, worker_id: str) -> PageHandle | None:
        if not self.has_page:
            return None
        return PageHandle(worker_id=worker_id, page_id="page-1", url="https://example.com")

    async def destroy(self, worker_id: str, user_id: str) -> None:
        self.destroyed.append(worker_id)


class FakeEngine:
    def __init__(self) -> None:
        self.conversions: dict[str, Any] = {}
        self.convert_calls: list[str] = []
        self.cancelled: list[str] = []
        self.interpret_calls: list[tuple[list[dict[str, Any]], dict[str, Any]]] = []
        self.interpret_result = InterpretationResult(
            serializable_output={"scrapeSchema": [[{"title": "Example"}]]}
        )
        self.interpret_error: Exception | None = None
        self.page_switches: list[PageHandle] = []
        self.final_pages: list[PageHandle] = []
        self.on_interpret: Callable[[], Awaitable[None]] | None = None

    @property
    def invoked(self) -> bool:
        return bool(self.convert_calls or self.interpret_calls)

    async def convert_page(self, fmt: str, url: str, page: PageHandle) -> str | bytes:
        self.convert_calls.append(fmt)
        outcome = self.conversions.get(fmt, f"{fmt} of {url}")
        if outcome is HANG:
            try:
                await asyncio.Event().wait()
            except asyncio.CancelledError:
                self.cancelled.append(fmt)
                raise
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    async def interpret(
        self,
        workflow: list[dict[str, Any]],
        page_ref: PageRef,
        settings: dict[str, Any],
    ) -> InterpretationResult:
        self.interpret_calls.append((workflow, settings))
        for page in self.page_switches:
            page_ref.on_page_changed(page)
        self.final_pages.append(page_ref.current)
        if self.on_interpret is not None:
            await self.on_interpret()
        if self.interpret_error is not None:
            raise self.interpret_error
        return self.interpret_result


class FakeChannel:
    def __init__(self, error: Exception | None, gate: asyncio.Event | None) -> None:
        self.state = HandshakeState.CONNECTING
        self.error = error
        self.gate = gate
        self.closed = False

    async def wait_ready(self) -> None:
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            self.state = HandshakeState.FAILED
            raise self.error
        self.state = HandshakeState.READY

    async def close(self) -> None:
        self.closed = True
        if self.state is HandshakeState.READY:
            self.state = HandshakeState.CONSUMED


class FakeChannelFactory:
    def __init__(self) -> None:
        self.error: Exception | None = None
        self.gate: asyncio.Event | None = None
        self.channels: dict[str, FakeChannel] = {}

    def __call__(self, worker_id: str) -> FakeChannel:
        channel = FakeChannel(self.error, self.gate)
        self.channels[worker_id] = channel
        return channel


class MemoryObjectStorage:
    def __init__(self) -> None:
        self.objects: dict[str, tuple[bytes, str]] = {}

    async def put(self, key: str, data: bytes, content_type: str) -> str:
        self.objects[key] = (data, content_type)
        return f"https://objects.test/{key}"


class RecordingStore(InMemoryStore):
    """In-memory store that remembers every partial run update."""

    def __init__(self) -> None:
        super().__init__()
        self.run_updates: list[dict[str, Any]] = []

    async def update_run(self, run_id: str, **fields: Any) -> RunRecord:
        self.run_updates.append(dict(fields))
        return await super().update_run(run_id, **fields)


def ok_handler(request: httpx.Request) -> httpx.Response:
    return httpx.Response(200, json={"ok": True})


def make_settings(**overrides: Any) -> Settings:
    values: dict[str, Any] = {
        "database_url": "",
        "readiness_timeout_s": 1.0,
        "scrape_timeout_s": 1.0,
        "interpretation_timeout_s": 1.0,
        "webhook_retry_delay_s": 0.0,
        "integration_retry_delay_s": 0.0,
        "run_poll_interval_s": 0.01,
        "run_wait_timeout_s": 5.0,
    }
    values.update(overrides)
    return Settings(**values)


@pytest.fixture
def store() -> RecordingStore:
    return RecordingStore()


@pytest.fixture
def pool() -> FakeWorkerPool:
    return FakeWorkerPool()


@pytest.fixture
def engine() -> FakeEngine:
    return FakeEngine()


@pytest.fixture
def channels() -> FakeChannelFactory:
    return FakeChannelFactory()


@pytest.fixture
def objects() -> MemoryObjectStorage:
    return MemoryObjectStorage()


@pytest.fixture
def make_runtime(
    store: RecordingStore,
    pool: FakeWorkerPool,
    engine: FakeEngine,
    channels: FakeChannelFactory,
    objects: MemoryObjectStorage,
) -> Callable[..., Runtime]:
    def build(
        handler: Callable[[httpx.Request], httpx.Response] = ok_handler,
        **settings_overrides: Any,
    ) -> Runtime:
        return build_runtime(
            make_settings(**settings_overrides),
            store=store,
            pool=pool,
            engine=engine,
            objects=objects,
            channel_factory=channels,
            http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
        )

    return build


async def seed_robot(store: InMemoryStore, **fields: Any) -> RobotRecord:
    now = datetime.now(UTC)
    values: dict[str, Any] = {
        "robot_id": str(uuid4()),
        "user_id": "user-1",
        "name": "Example robot",
        "type": "extract",
        "url": "https://example.com",
        "workflow": [{"where": {"url": "https://example.com"}, "what": [{"action": "scrape"}]}],
        "created_at": now,
        "updated_at": now,
    }
    values.update(fields)
    return await store.create_robot(RobotRecord(**values))


async def seed_run(store: InMemoryStore, robot: RobotRecord, **fields: Any) -> RunRecord:
    now = datetime.now(UTC)
    values: dict[str, Any] = {
        "run_id": str(uuid4()),
        "robot_id": robot.robot_id,
        "robot_name": robot.name,
        "status": RunStatus.RUNNING,
        "worker_id": "worker-1",
        "started_at": now,
        "run_by_user_id": robot.user_id,
        "created_at": now,
        "updated_at": now,
    }
    values.update(fields)
    return await store.create_run(RunRecord(**values))


@pytest.fixture
def runtime(make_runtime: Callable[..., Runtime]) -> Runtime:
    return make_runtime()


@pytest.fixture
def client(runtime: Runtime) -> Iterator[TestClient]:
    with TestClient(create_app(runtime=runtime)) as test_client:
        yield test_client
