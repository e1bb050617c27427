"""Webhook subscription endpoints."""
from __future__ import annotations

from aiohttp import web
from pydantic import ValidationError

from clinic_webhooks.api.utils import optional_uuid, page_body, page_from_query, parse_uuid, read_json
from clinic_webhooks.core.exceptions import (
    InvalidEventTypesError,
    InvalidTargetUrlError,
    NotFoundError,
    SubscriptionInUseError,
)
from clinic_webhooks.domain.dto import DeliveryLogFilter, WebhookCreateDTO, WebhookUpdateDTO
from clinic_webhooks.services.dependencies import get_webhook_service, require_tenant
from clinic_webhooks.webhooks.events import events_by_category

routes = web.RouteTableDef()


def _config_error(exc: InvalidEventTypesError | InvalidTargetUrlError) -> web.Response:
    if isinstance(exc, InvalidEventTypesError):
        return web.json_response(
            {"error": str(exc), "invalid_event_types": exc.invalid}, status=400
        )
    return web.json_response({"error": str(exc)}, status=400)


@routes.get("/api/v1/webhooks/events")
async def list_event_types(request: web.Request):
    categories = [
        {
            "category": category.value,
            "events": [
                {"event_type": e.event_type, "description": e.description} for e in events
            ],
        }
        for category, events in events_by_category().items()
    ]
    return web.json_response({"categories": categories})


@routes.get("/api/v1/webhooks/deliveries")
async def list_deliveries(request: web.Request):
    tenant_id = require_tenant(request)
    query = request.rel_url.query
    try:
        filters = DeliveryLogFilter(
            subscription_id=optional_uuid(query.get("subscription_id"), "subscription_id"),
            event_type=query.get("event_type"),
            status=query.get("status"),
        )
    except ValidationError as exc:
        raise web.HTTPBadRequest(text=exc.json()) from exc
    page = page_from_query(request)
    service = get_webhook_service(request)
    items, total = await service.list_delivery_logs(
        tenant_id, filters, limit=page.limit, offset=page.offset
    )
    return web.json_response(
        page_body("deliveries", [item.public_dump() for item in items], page, total)
    )


@routes.get("/api/v1/webhooks")
async def list_webhooks(request: web.Request):
    tenant_id = require_tenant(request)
    page = page_from_query(request)
    service = get_webhook_service(request)
    items, total = await service.list_subscriptions(
        tenant_id, limit=page.limit, offset=page.offset
    )
    return web.json_response(
        page_body("webhooks", [item.public_dump() for item in items], page, total)
    )


@routes.post("/api/v1/webhooks")
async def create_webhook(request: web.Request):
    tenant_id = require_tenant(request)
    body = await read_json(request)
    try:
        dto = WebhookCreateDTO.model_validate(body)
    except ValidationError as exc:
        raise web.HTTPBadRequest(text=exc.json()) from exc

    service = get_webhook_service(request)
    try:
        sub = await service.create_subscription(tenant_id, dto)
    except (InvalidEventTypesError, InvalidTargetUrlError) as exc:
        return _config_error(exc)
    # the secret is returned here and on rotation only
    return web.json_response(sub.model_dump(mode="json"), status=201)


@routes.get("/api/v1/webhooks/{webhook_id}")
async def get_webhook(request: web.Request):
    tenant_id = require_tenant(request)
    webhook_id = parse_uuid(request.match_info["webhook_id"], "webhook_id")
    service = get_webhook_service(request)
    try:
        sub, recent, total = await service.get_subscription(tenant_id, webhook_id)
    except NotFoundError as exc:
        raise web.HTTPNotFound(text=str(exc)) from exc
    payload = sub.public_dump()
    payload["recent_deliveries"] = [log.public_dump() for log in recent]
    payload["delivery_count"] = total
    return web.json_response(payload)


@routes.patch("/api/v1/webhooks/{webhook_id}")
async def update_webhook(request: web.Request):
    tenant_id = require_tenant(request)
    webhook_id = parse_uuid(request.match_info["webhook_id"], "webhook_id")
    body = await read_json(request)
    try:
        dto = WebhookUpdateDTO.model_validate(body)
    except ValidationError as exc:
        raise web.HTTPBadRequest(text=exc.json()) from exc

    service = get_webhook_service(request)
    try:
        sub, new_secret = await service.update_subscription(tenant_id, webhook_id, dto)
    except (InvalidEventTypesError, InvalidTargetUrlError) as exc:
        return _config_error(exc)
    except NotFoundError as exc:
        raise web.HTTPNotFound(text=str(exc)) from exc
    payload = sub.public_dump()
    if new_secret:
        payload["secret"] = new_secret
    return web.json_response(payload)


@routes.delete("/api/v1/webhooks/{webhook_id}")
async def delete_webhook(request: web.Request):
    tenant_id = require_tenant(request)
    webhook_id = parse_uuid(request.match_info["webhook_id"], "webhook_id")
    service = get_webhook_service(request)
    try:
        await service.delete_subscription(tenant_id, webhook_id)
    except NotFoundError as exc:
        raise web.HTTPNotFound(text=str(exc)) from exc
    except SubscriptionInUseError as exc:
        raise web.HTTPConflict(text=str(exc)) from exc
    return web.Response(status=204)


@routes.post("/api/v1/webhooks/{webhook_id}/test")
async def test_webhook(request: web.Request):
    tenant_id = require_tenant(request)
    webhook_id = parse_uuid(request.match_info["webhook_id"], "webhook_id")
    service = get_webhook_service(request)
    try:
        result = await service.send_test(tenant_id, webhook_id)
    except NotFoundError as exc:
        raise web.HTTPNotFound(text=str(exc)) from exc
    return web.json_response(result.model_dump(mode="json"))
