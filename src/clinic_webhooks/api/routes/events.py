"""Internal event intake: business services announce domain events here."""
from __future__ import annotations

from aiohttp import web
from pydantic import ValidationError

from clinic_webhooks.api.utils import read_json
from clinic_webhooks.domain.dto import TriggerEventDTO
from clinic_webhooks.services.dependencies import get_webhook_trigger, require_tenant

routes = web.RouteTableDef()


@routes.post("/api/v1/events")
async def trigger_event(request: web.Request):
    """Always 202: delivery is fire-and-forget, unknown event types are only logged."""
    tenant_id = require_tenant(request)
    body = await read_json(request)
    try:
        dto = TriggerEventDTO.model_validate(body)
    except ValidationError as exc:
        raise web.HTTPBadRequest(text=exc.json()) from exc

    get_webhook_trigger(request).trigger_nowait(tenant_id, dto.event_type, dto.data)
    return web.json_response({"accepted": True}, status=202)
