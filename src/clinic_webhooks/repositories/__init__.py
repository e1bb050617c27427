"""Repository package exports."""

from clinic_webhooks.repositories.webhooks import (
    WebhookDeliveryLogRepository,
    WebhookSubscriptionRepository,
)

__all__ = [
    "WebhookSubscriptionRepository",
    "WebhookDeliveryLogRepository",
]
