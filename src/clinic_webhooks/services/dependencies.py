"""Shared dependency providers for aiohttp handlers."""
from __future__ import annotations

from uuid import UUID

from aiohttp import web

from clinic_webhooks.services.webhooks import WebhookService
from clinic_webhooks.webhooks.trigger import WebhookTrigger

WEBHOOK_SERVICE_KEY = "webhook_service"
WEBHOOK_TRIGGER_KEY = "webhook_trigger"

TENANT_ID_HEADER = "X-Tenant-Id"


def require_tenant(request: web.Request) -> UUID:
    """Tenant resolution happens upstream; the gateway forwards the tenant id header."""
    header = request.headers.get(TENANT_ID_HEADER)
    if header is None:
        raise web.HTTPUnauthorized(reason=f"Header {TENANT_ID_HEADER} is required")
    try:
        return UUID(header)
    except ValueError as exc:
        raise web.HTTPBadRequest(text=f"Invalid {TENANT_ID_HEADER}") from exc


def get_webhook_service(request: web.Request) -> WebhookService:
    return request.app[WEBHOOK_SERVICE_KEY]


def get_webhook_trigger(request: web.Request) -> WebhookTrigger:
    return request.app[WEBHOOK_TRIGGER_KEY]
