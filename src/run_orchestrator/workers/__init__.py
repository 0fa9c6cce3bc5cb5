"""Browser worker service clients and the readiness handshake."""

from run_orchestrator.workers.base import (
    AutomationEngine,
    BinaryArtifact,
    InterpretationResult,
    ObjectStorage,
    PageHandle,
    PageRef,
    WorkerPool,
)
from run_orchestrator.workers.objects import LocalObjectStorage
from run_orchestrator.workers.readiness import HandshakeState, WebsocketReadinessChannel
from run_orchestrator.workers.remote import RemoteAutomationEngine, RemoteWorkerPool

__all__ = [
    "AutomationEngine",
    "BinaryArtifact",
    "HandshakeState",
    "InterpretationResult",
    "LocalObjectStorage",
    "ObjectStorage",
    "PageHandle",
    "PageRef",
    "RemoteAutomationEngine",
    "RemoteWorkerPool",
    "WebsocketReadinessChannel",
    "WorkerPool",
]
