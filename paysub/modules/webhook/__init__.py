"""Webhook module."""

from paysub.modules.webhook.service import WebhookEvent, WebhookIngestor, WebhookOutcome

__all__ = ["WebhookEvent", "WebhookIngestor", "WebhookOutcome"]
