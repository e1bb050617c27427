"""Domain services exports."""

from clinic_webhooks.services.webhooks import WebhookService

__all__ = [
    "WebhookService",
]
