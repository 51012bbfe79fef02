"""Webhook ingestion, trigger matching and action execution."""

from .engine import WebhookEngine
from .enums import EventType, WebhookSource

__all__ = ["WebhookEngine", "EventType", "WebhookSource"]
