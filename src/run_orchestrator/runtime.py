"""Process-wide registry of the orchestrator's collaborators."""

from __future__ import annotations

import logging
from dataclasses import dataclass

import httpx

from run_orchestrator.config.settings import Settings
from run_orchestrator.integrations import (
    AirtableSink,
    GoogleSheetsSink,
    IntegrationQueue,
    IntegrationSink,
    N8nSink,
)
from run_orchestrator.notify import LiveEventHub, NotificationFanOut, WebhookDispatcher
from run_orchestrator.runs import ExecutionDispatcher, RunLauncher
from run_orchestrator.storage import OrchestratorStore, PostgresStore
from run_orchestrator.workers import (
    AutomationEngine,
    LocalObjectStorage,
    ObjectStorage,
    RemoteAutomationEngine,
    RemoteWorkerPool,
    WorkerPool,
)
from run_orchestrator.workers.readiness import ReadinessChannelFactory, websocket_channel_factory

logger = logging.getLogger(__name__)


@dataclass
class Runtime:
    settings: Settings
    store: OrchestratorStore
    pool: WorkerPool
    engine: AutomationEngine
    objects: ObjectStorage
    live: LiveEventHub
    webhooks: WebhookDispatcher
    integrations: IntegrationQueue
    fanout: NotificationFanOut
    dispatcher: ExecutionDispatcher
    launcher: RunLauncher
    http_client: httpx.AsyncClient
    worker_client: httpx.AsyncClient | None = None

    async def aclose(self) -> None:
        await self.launcher.aclose()
        await self.webhooks.aclose()
        await self.integrations.aclose()
        await self.live.aclose()
        await self.http_client.aclose()
        if self.worker_client is not None:
            await self.worker_client.aclose()
        await self.store.close()
        logger.info("runtime event=closed")


def build_runtime(
    settings: Settings,
    *,
    store: OrchestratorStore | None = None,
    pool: WorkerPool | None = None,
    engine: AutomationEngine | None = None,
    objects: ObjectStorage | None = None,
    channel_factory: ReadinessChannelFactory | None = None,
    http_client: httpx.AsyncClient | None = None,
) -> Runtime:
    """Wire the orchestrator from settings; any collaborator can be supplied."""
    if store is None:
        database_url = settings.resolved_database_url()
        if not database_url:
            raise RuntimeError(
                "Missing database URL. Set RUN_ORCHESTRATOR_DATABASE_URL "
                "or ORCHESTRATOR_DATABASE_URL before starting the app."
            )
        store = PostgresStore(database_url)

    http_client = http_client or httpx.AsyncClient(timeout=settings.webhook_timeout_s)
    worker_client = None
    if pool is None or engine is None:
        worker_client = httpx.AsyncClient(
            base_url=settings.worker_service_url,
            timeout=max(settings.scrape_timeout_s, settings.interpretation_timeout_s),
        )
        pool = pool or RemoteWorkerPool(worker_client)
        engine = engine or RemoteAutomationEngine(worker_client)

    objects = objects or LocalObjectStorage(
        settings.object_storage_dir, settings.object_storage_base_url
    )
    channel_factory = channel_factory or websocket_channel_factory(
        settings.resolved_worker_ws_url(), timeout_s=settings.readiness_timeout_s
    )

    sinks: dict[str, IntegrationSink] = {
        "google_sheet": GoogleSheetsSink(
            http_client,
            store,
            client_id=settings.google_client_id,
            client_secret=settings.google_client_secret,
        ),
        "airtable": AirtableSink(http_client, store, client_id=settings.airtable_client_id),
        "n8n": N8nSink(http_client),
    }
    live = LiveEventHub()
    webhooks = WebhookDispatcher(store, http_client)
    integrations = IntegrationQueue(
        store,
        sinks,
        retry_delay_s=settings.integration_retry_delay_s,
        visibility_timeout_s=settings.integration_visibility_timeout_s,
        max_queue_size=settings.integration_max_queue_size,
        drain_timeout_s=settings.integration_drain_timeout_s,
    )
    fanout = NotificationFanOut(live=live, webhooks=webhooks, integrations=integrations)
    dispatcher = ExecutionDispatcher(
        store=store,
        pool=pool,
        engine=engine,
        objects=objects,
        fanout=fanout,
        scrape_timeout_s=settings.scrape_timeout_s,
        interpretation_timeout_s=settings.interpretation_timeout_s,
        max_retries=settings.max_run_retries,
    )
    launcher = RunLauncher(
        store=store,
        pool=pool,
        dispatcher=dispatcher,
        fanout=fanout,
        channel_factory=channel_factory,
        max_retries=settings.max_run_retries,
    )
    return Runtime(
        settings=settings,
        store=store,
        pool=pool,
        engine=engine,
        objects=objects,
        live=live,
        webhooks=webhooks,
        integrations=integrations,
        fanout=fanout,
        dispatcher=dispatcher,
        launcher=launcher,
        http_client=http_client,
        worker_client=worker_client,
    )
