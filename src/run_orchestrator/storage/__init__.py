"""Storage backends and models."""

from run_orchestrator.storage.base import (
    IntegrationTaskStore,
    OrchestratorStore,
    RobotStore,
    RunStore,
)
from run_orchestrator.storage.memory import InMemoryStore
from run_orchestrator.storage.models import (
    IntegrationSettings,
    IntegrationTask,
    ProxyConfig,
    RobotRecord,
    RunRecord,
    RunStatus,
    WebhookConfig,
)
from run_orchestrator.storage.postgres import PostgresStore

__all__ = [
    "InMemoryStore",
    "IntegrationSettings",
    "IntegrationTask",
    "IntegrationTaskStore",
    "OrchestratorStore",
    "PostgresStore",
    "ProxyConfig",
    "RobotRecord",
    "RobotStore",
    "RunRecord",
    "RunStatus",
    "RunStore",
    "WebhookConfig",
]
