"""Webhook configuration service (subscriptions, test sends, delivery logs)."""
from __future__ import annotations

from typing import Any, List
from uuid import UUID

from pydantic import AnyHttpUrl, TypeAdapter, ValidationError

from clinic_webhooks.core.exceptions import InvalidEventTypesError, InvalidTargetUrlError
from clinic_webhooks.domain.dto import DeliveryLogFilter, WebhookCreateDTO, WebhookUpdateDTO
from clinic_webhooks.domain.webhooks import DeliveryResult, WebhookDeliveryLog, WebhookSubscription
from clinic_webhooks.repositories.webhooks import (
    WebhookDeliveryLogRepository,
    WebhookSubscriptionRepository,
)
from clinic_webhooks.webhooks.delivery import DeliveryEngine
from clinic_webhooks.webhooks.events import validate_event_list
from clinic_webhooks.webhooks.signature import generate_secret

RECENT_DELIVERIES_LIMIT = 10

_URL_ADAPTER = TypeAdapter(AnyHttpUrl)


def validate_target_url(url: str, *, require_https: bool) -> str:
    try:
        parsed = _URL_ADAPTER.validate_python(url)
    except ValidationError as exc:
        raise InvalidTargetUrlError("Invalid webhook URL") from exc
    if require_https and parsed.scheme != "https":
        raise InvalidTargetUrlError("Webhook URL must use HTTPS")
    return url


def _ensure_valid_events(event_types: list[str]) -> None:
    validation = validate_event_list(event_types)
    if not validation.valid:
        raise InvalidEventTypesError(validation.invalid)


class WebhookService:
    def __init__(
        self,
        subscription_repository: WebhookSubscriptionRepository,
        delivery_repository: WebhookDeliveryLogRepository,
        engine: DeliveryEngine,
        *,
        require_https: bool = True,
    ):
        self._subscriptions = subscription_repository
        self._deliveries = delivery_repository
        self._engine = engine
        self._require_https = require_https

    async def create_subscription(
        self, tenant_id: UUID, data: WebhookCreateDTO
    ) -> WebhookSubscription:
        """Create an active subscription; the returned model carries the only plaintext copy of the secret."""
        target_url = validate_target_url(data.target_url, require_https=self._require_https)
        _ensure_valid_events(data.event_types)
        return await self._subscriptions.create(
            tenant_id=tenant_id,
            name=data.name,
            target_url=target_url,
            event_types=data.event_types,
            secret=generate_secret(),
        )

    async def get_subscription(
        self, tenant_id: UUID, subscription_id: UUID
    ) -> tuple[WebhookSubscription, List[WebhookDeliveryLog], int]:
        subscription = await self._subscriptions.get_for_tenant(tenant_id, subscription_id)
        recent, total = await self._deliveries.list_recent_for_subscription(
            subscription.id, limit=RECENT_DELIVERIES_LIMIT
        )
        return subscription, recent, total

    async def list_subscriptions(
        self, tenant_id: UUID, *, limit: int = 50, offset: int = 0
    ) -> tuple[List[WebhookSubscription], int]:
        return await self._subscriptions.list_by_tenant(tenant_id, limit=limit, offset=offset)

    async def update_subscription(
        self, tenant_id: UUID, subscription_id: UUID, updates: WebhookUpdateDTO
    ) -> tuple[WebhookSubscription, str | None]:
        """Apply an edit; returns the subscription and the new secret when one was generated.

        The whole edit is rejected if the event list has any unknown entry.
        """
        changes: dict[str, Any] = {}
        if updates.name is not None:
            changes["name"] = updates.name
        if updates.target_url is not None:
            changes["target_url"] = validate_target_url(
                updates.target_url, require_https=self._require_https
            )
        if updates.event_types is not None:
            _ensure_valid_events(updates.event_types)
            changes["event_types"] = updates.event_types
        if updates.is_active is not None:
            changes["is_active"] = updates.is_active
            if updates.is_active:
                changes["consecutive_failures"] = 0
        new_secret: str | None = None
        if updates.regenerate_secret:
            new_secret = generate_secret()
            changes["secret"] = new_secret

        subscription = await self._subscriptions.update(tenant_id, subscription_id, changes)
        return subscription, new_secret

    async def delete_subscription(self, tenant_id: UUID, subscription_id: UUID) -> None:
        await self._subscriptions.delete(tenant_id, subscription_id)

    async def send_test(self, tenant_id: UUID, subscription_id: UUID) -> DeliveryResult:
        subscription = await self._subscriptions.get_for_tenant(tenant_id, subscription_id)
        return await self._engine.send_test(subscription.id)

    async def list_delivery_logs(
        self,
        tenant_id: UUID,
        filters: DeliveryLogFilter,
        *,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[List[WebhookDeliveryLog], int]:
        return await self._deliveries.list_by_tenant(tenant_id, filters, limit=limit, offset=offset)
