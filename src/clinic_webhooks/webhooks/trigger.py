"""Fire-and-forget fan-out of domain events to subscribed webhooks."""
from __future__ import annotations

import asyncio
from typing import Any, Coroutine, Protocol
from uuid import UUID

import structlog

from clinic_webhooks.domain.webhooks import WebhookPayload, WebhookSubscription
from clinic_webhooks.webhooks.delivery import DeliveryEngine, iso_timestamp
from clinic_webhooks.webhooks.events import is_valid_event_type

logger = structlog.get_logger(__name__)


class SubscriptionLookup(Protocol):
    async def list_active_matching(
        self, tenant_id: UUID, event_type: str
    ) -> list[WebhookSubscription]: ...


class WebhookTrigger:
    """Entry point business code calls to announce a domain event.

    Deliveries run as detached tasks; the caller never waits on the network
    and never sees a delivery exception.
    """

    def __init__(self, subscriptions: SubscriptionLookup, engine: DeliveryEngine):
        self._subscriptions = subscriptions
        self._engine = engine
        self._tasks: set[asyncio.Task[Any]] = set()

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    async def trigger(self, tenant_id: UUID, event_type: str, data: dict[str, Any]) -> None:
        """Look up matching subscriptions and launch one delivery task per subscription.

        Returns once the tasks are launched, not once they finish.
        """
        if not is_valid_event_type(event_type):
            logger.warning(
                "webhook invalid event type", tenant_id=str(tenant_id), event_type=event_type
            )
            return

        try:
            subscriptions = await self._subscriptions.list_active_matching(tenant_id, event_type)
            if not subscriptions:
                return
            # one envelope, serialized once, shared by every recipient
            body = WebhookPayload(
                event=event_type, timestamp=iso_timestamp(), data=data
            ).serialize()
        except Exception:
            logger.exception(
                "webhook trigger failed", tenant_id=str(tenant_id), event_type=event_type
            )
            return

        for subscription in subscriptions:
            self._spawn(self._deliver_quietly(subscription.id, event_type, body))
        logger.info(
            "webhook event triggered",
            tenant_id=str(tenant_id),
            event_type=event_type,
            subscriptions=len(subscriptions),
        )

    def trigger_nowait(self, tenant_id: UUID, event_type: str, data: dict[str, Any]) -> None:
        """Schedule :meth:`trigger` itself in the background; for synchronous call sites."""
        self._spawn(self.trigger(tenant_id, event_type, data))

    async def wait_idle(self) -> None:
        """Wait until every launched task (including ones they launch) has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def close(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        await asyncio.gather(*list(self._tasks), return_exceptions=True)
        self._tasks.clear()

    async def _deliver_quietly(self, subscription_id: UUID, event_type: str, body: str) -> None:
        try:
            await self._engine.deliver(subscription_id, event_type, body, 1)
        except Exception:
            logger.exception(
                "webhook delivery failed",
                subscription_id=str(subscription_id),
                event_type=event_type,
            )

    def _spawn(self, coro: Coroutine[Any, Any, None]) -> None:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
