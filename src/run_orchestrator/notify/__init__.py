"""Run notifications."""

from run_orchestrator.notify.fanout import NotificationFanOut
from run_orchestrator.notify.live import LiveEventHub
from run_orchestrator.notify.webhooks import WebhookDispatcher

__all__ = ["LiveEventHub", "NotificationFanOut", "WebhookDispatcher"]
