"""Webhook core: event catalog, signatures, delivery engine and fan-out."""

from clinic_webhooks.webhooks.delivery import DeliveryEngine
from clinic_webhooks.webhooks.trigger import WebhookTrigger

__all__ = [
    "DeliveryEngine",
    "WebhookTrigger",
]
