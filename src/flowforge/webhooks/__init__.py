"""Webhook package."""
from flowforge.webhooks.health import (
    WebhookHealth,
    WebhookStats,
    WebhookStatus,
    evaluate_webhook_health,
)

__all__ = ["WebhookHealth", "WebhookStats", "WebhookStatus", "evaluate_webhook_health"]
