"""Third-party sinks fed from successful runs."""

from run_orchestrator.integrations.airtable import AirtableSink
from run_orchestrator.integrations.base import IntegrationQueue, IntegrationSink
from run_orchestrator.integrations.google_sheets import GoogleSheetsSink
from run_orchestrator.integrations.n8n import N8nSink

__all__ = [
    "AirtableSink",
    "GoogleSheetsSink",
    "IntegrationQueue",
    "IntegrationSink",
    "N8nSink",
]
