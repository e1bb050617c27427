"""Webhook delivery engine.

One call to :meth:`DeliveryEngine.deliver` is one attempt: a ``pending`` log
row is written before the POST, then settled as ``delivered`` or ``failed``.
A failed attempt with attempts left is settled with ``scheduled_for`` in the
same write as its outcome. The retry sweeper
(:meth:`DeliveryEngine.run_due_retries`) later claims it and runs the next
attempt with the same payload bytes. A logical delivery that
exhausts its attempts triggers the auto-disable check.

Receivers see a new ``X-Webhook-Delivery-Id`` on every attempt. For true
idempotency they should key on event type + entity id + envelope timestamp.
"""
from __future__ import annotations

import asyncio
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Protocol, Sequence
from uuid import UUID, uuid4

import structlog
from aiohttp import ClientSession, ClientTimeout

from clinic_webhooks.domain.webhooks import (
    DeliveryResult,
    DeliveryStatus,
    WebhookDeliveryLog,
    WebhookPayload,
    WebhookSubscription,
)
from clinic_webhooks.otel import get_tracer
from clinic_webhooks.settings import Settings
from clinic_webhooks.webhooks.events import TEST_EVENT_TYPE
from clinic_webhooks.webhooks.signature import sign

logger = structlog.get_logger(__name__)
tracer = get_tracer(__name__)

# Delay before attempt N is RETRY_DELAYS[N - 1] seconds.
RETRY_DELAYS: tuple[float, ...] = (0, 60, 300, 1800)
MAX_RETRY_ATTEMPTS = 4
MAX_CONSECUTIVE_FAILURES = 10
DELIVERY_TIMEOUT = 30.0
MAX_RESPONSE_BODY_LENGTH = 10_000
TRUNCATION_MARKER = "... (truncated)"
USER_AGENT = "ClinicWebhooks/1.0"

SIGNATURE_HEADER = "X-Webhook-Signature"
EVENT_HEADER = "X-Webhook-Event"
DELIVERY_ID_HEADER = "X-Webhook-Delivery-Id"
TIMESTAMP_HEADER = "X-Webhook-Timestamp"

TIMEOUT_ERROR = "Request timed out"
UNREADABLE_BODY = "(Unable to read response body)"


class SubscriptionStore(Protocol):
    async def get(self, subscription_id: UUID) -> WebhookSubscription | None: ...

    async def record_success(self, subscription_id: UUID, at: datetime) -> None: ...

    async def record_failure(self, subscription_id: UUID, at: datetime) -> int: ...

    async def disable_if_failing(self, subscription_id: UUID, threshold: int) -> bool: ...


class DeliveryLogStore(Protocol):
    async def create_pending(
        self,
        *,
        subscription_id: UUID,
        logical_delivery_id: UUID,
        delivery_id: UUID,
        event_type: str,
        payload: str,
        attempt: int,
    ) -> WebhookDeliveryLog: ...

    async def mark_settled(
        self,
        log_id: UUID,
        *,
        status: DeliveryStatus,
        completed_at: datetime,
        http_status_code: int | None = None,
        response_body: str | None = None,
        error: str | None = None,
        scheduled_for: datetime | None = None,
    ) -> None: ...

    async def claim_due_retries(
        self, now: datetime, *, limit: int = 100
    ) -> list[WebhookDeliveryLog]: ...

    async def reclaim_stale_pending(
        self,
        created_before: datetime,
        now: datetime,
        *,
        max_attempts: int,
        retry_delays: Sequence[float],
        no_retry_event_types: Sequence[str] = (),
    ) -> list[WebhookDeliveryLog]: ...


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def iso_timestamp(moment: datetime | None = None) -> str:
    """ISO-8601 in UTC with millisecond precision and a ``Z`` suffix."""
    moment = moment or utcnow()
    return moment.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def truncate_body(body: str, limit: int = MAX_RESPONSE_BODY_LENGTH) -> str:
    if len(body) > limit:
        return body[:limit] + TRUNCATION_MARKER
    return body


def _serialize(payload: WebhookPayload | dict[str, Any] | str) -> str:
    if isinstance(payload, str):
        return payload
    if isinstance(payload, dict):
        payload = WebhookPayload.model_validate(payload)
    return payload.serialize()


class DeliveryEngine:
    """Signed POST attempts, outcome bookkeeping, retry and auto-disable policy."""

    def __init__(
        self,
        subscriptions: SubscriptionStore,
        deliveries: DeliveryLogStore,
        session: ClientSession,
        *,
        timeout_seconds: float = DELIVERY_TIMEOUT,
        max_attempts: int = MAX_RETRY_ATTEMPTS,
        retry_delays: Sequence[float] = RETRY_DELAYS,
        max_consecutive_failures: int = MAX_CONSECUTIVE_FAILURES,
        response_body_limit: int = MAX_RESPONSE_BODY_LENGTH,
        user_agent: str = USER_AGENT,
    ):
        if len(retry_delays) < max_attempts:
            raise ValueError("retry_delays must have an entry for every attempt")
        self._subscriptions = subscriptions
        self._deliveries = deliveries
        self._session = session
        self._timeout = ClientTimeout(total=timeout_seconds)
        self._max_attempts = max_attempts
        self._retry_delays = tuple(retry_delays)
        self._max_consecutive_failures = max_consecutive_failures
        self._response_body_limit = response_body_limit
        self._user_agent = user_agent

    @classmethod
    def from_settings(
        cls,
        subscriptions: SubscriptionStore,
        deliveries: DeliveryLogStore,
        session: ClientSession,
        settings: Settings,
    ) -> "DeliveryEngine":
        return cls(
            subscriptions,
            deliveries,
            session,
            timeout_seconds=settings.webhook_request_timeout_seconds,
            max_attempts=settings.webhook_max_attempts,
            retry_delays=settings.webhook_retry_delays_seconds,
            max_consecutive_failures=settings.webhook_max_consecutive_failures,
            response_body_limit=settings.webhook_response_body_limit,
            user_agent=settings.webhook_user_agent,
        )

    @property
    def max_attempts(self) -> int:
        return self._max_attempts

    def retry_delay(self, attempt: int) -> timedelta:
        """Delay before *attempt* (1-based) fires."""
        index = min(max(attempt, 1), len(self._retry_delays)) - 1
        return timedelta(seconds=self._retry_delays[index])

    async def deliver(
        self,
        subscription_id: UUID,
        event_type: str,
        payload: WebhookPayload | dict[str, Any] | str,
        attempt: int = 1,
        *,
        logical_delivery_id: UUID | None = None,
    ) -> DeliveryResult:
        """Run one attempt of a logical delivery and apply the retry policy.

        Each call writes a new log row. A ``str`` payload is sent verbatim, so
        retries pass the stored text and keep the signed bytes identical.
        """
        subscription = await self._subscriptions.get(subscription_id)
        if subscription is None:
            return DeliveryResult(success=False, status="not_found", error="Webhook not found")
        if not subscription.is_active:
            return DeliveryResult(success=False, status="disabled", error="Webhook is disabled")

        result = await self._attempt(
            subscription,
            event_type,
            _serialize(payload),
            attempt,
            logical_delivery_id or uuid4(),
            retry=True,
        )
        settled_at = result.delivered_at or utcnow()

        if result.success:
            await self._subscriptions.record_success(subscription.id, settled_at)
            return result

        failures = await self._subscriptions.record_failure(subscription.id, settled_at)
        if result.retry_scheduled_for is not None:
            logger.info(
                "webhook retry scheduled",
                subscription_id=str(subscription.id),
                event_type=event_type,
                next_attempt=attempt + 1,
                scheduled_for=result.retry_scheduled_for.isoformat(),
                consecutive_failures=failures,
            )
        else:
            logger.warning(
                "webhook delivery exhausted",
                subscription_id=str(subscription.id),
                event_type=event_type,
                attempts=attempt,
                consecutive_failures=failures,
            )
            await self.check_and_disable(subscription.id)
        return result

    async def send_test(self, subscription_id: UUID) -> DeliveryResult:
        """Single synchronous ``test.ping`` delivery; never retried, never counted."""
        subscription = await self._subscriptions.get(subscription_id)
        if subscription is None:
            return DeliveryResult(success=False, status="not_found", error="Webhook not found")
        if not subscription.is_active:
            return DeliveryResult(success=False, status="disabled", error="Webhook is disabled")

        payload = WebhookPayload(
            event=TEST_EVENT_TYPE,
            timestamp=iso_timestamp(),
            data={"message": "This is a test webhook", "test": True},
        )
        return await self._attempt(
            subscription, TEST_EVENT_TYPE, payload.serialize(), 1, uuid4(), retry=False
        )

    async def check_and_disable(self, subscription_id: UUID) -> bool:
        disabled = await self._subscriptions.disable_if_failing(
            subscription_id, self._max_consecutive_failures
        )
        if disabled:
            logger.warning(
                "webhook disabled",
                subscription_id=str(subscription_id),
                threshold=self._max_consecutive_failures,
            )
        return disabled

    async def run_due_retries(self, now: datetime, *, limit: int = 100) -> int:
        """Claim failed attempts whose retry is due and run the next attempt for each.

        Returns the number of retries started. A retry that raises is logged
        and does not affect the others.
        """
        due = await self._deliveries.claim_due_retries(now, limit=limit)
        if not due:
            return 0
        outcomes = await asyncio.gather(
            *(
                self.deliver(
                    log.subscription_id,
                    log.event_type,
                    log.raw_payload,
                    log.attempt + 1,
                    logical_delivery_id=log.logical_delivery_id,
                )
                for log in due
            ),
            return_exceptions=True,
        )
        for log, outcome in zip(due, outcomes):
            if isinstance(outcome, BaseException):
                logger.error(
                    "webhook retry failed",
                    subscription_id=str(log.subscription_id),
                    attempt=log.attempt + 1,
                    exc_info=outcome,
                )
        return len(due)

    async def reclaim_interrupted(self, created_before: datetime, now: datetime) -> int:
        """Fail attempts left ``pending`` by a crash and apply the normal failure policy.

        Each reclaimed attempt counts as a failure for its subscription. One
        with attempts left is scheduled with the regular backoff; a final one
        runs the auto-disable check. Test pings are settled but not counted.
        """
        reclaimed = await self._deliveries.reclaim_stale_pending(
            created_before,
            now,
            max_attempts=self._max_attempts,
            retry_delays=self._retry_delays,
            no_retry_event_types=(TEST_EVENT_TYPE,),
        )
        for log in reclaimed:
            if log.event_type == TEST_EVENT_TYPE:
                continue
            failures = await self._subscriptions.record_failure(log.subscription_id, now)
            logger.warning(
                "webhook attempt reclaimed",
                subscription_id=str(log.subscription_id),
                event_type=log.event_type,
                attempt=log.attempt,
                scheduled_for=log.scheduled_for.isoformat() if log.scheduled_for else None,
                consecutive_failures=failures,
            )
            if log.scheduled_for is None:
                await self.check_and_disable(log.subscription_id)
        return len(reclaimed)

    async def _attempt(
        self,
        subscription: WebhookSubscription,
        event_type: str,
        body: str,
        attempt: int,
        logical_delivery_id: UUID,
        *,
        retry: bool,
    ) -> DeliveryResult:
        delivery_id = uuid4()
        log = await self._deliveries.create_pending(
            subscription_id=subscription.id,
            logical_delivery_id=logical_delivery_id,
            delivery_id=delivery_id,
            event_type=event_type,
            payload=body,
            attempt=attempt,
        )

        timestamp = int(time.time())
        headers = {
            "Content-Type": "application/json",
            SIGNATURE_HEADER: sign(body, subscription.secret, timestamp),
            EVENT_HEADER: event_type,
            DELIVERY_ID_HEADER: str(delivery_id),
            TIMESTAMP_HEADER: str(timestamp),
            "User-Agent": self._user_agent,
        }

        with tracer.start_as_current_span(
            "webhook.deliver",
            attributes={
                "webhook.subscription_id": str(subscription.id),
                "webhook.event_type": event_type,
                "webhook.attempt": attempt,
            },
        ) as span:
            try:
                async with self._session.post(
                    subscription.target_url,
                    data=body.encode("utf-8"),
                    headers=headers,
                    timeout=self._timeout,
                ) as resp:
                    try:
                        response_body = await resp.text(errors="replace")
                    except Exception:
                        response_body = UNREADABLE_BODY
                    status_code = resp.status
            except asyncio.TimeoutError:
                result = DeliveryResult(
                    success=False, status="failed", error=TIMEOUT_ERROR, timed_out=True
                )
            except Exception as exc:
                result = DeliveryResult(
                    success=False, status="failed", error=str(exc) or type(exc).__name__
                )
            else:
                ok = 200 <= status_code < 300
                result = DeliveryResult(
                    success=ok,
                    status=(DeliveryStatus.DELIVERED if ok else DeliveryStatus.FAILED).value,
                    http_status_code=status_code,
                    response_body=truncate_body(response_body, self._response_body_limit),
                    delivered_at=utcnow(),
                )
                span.set_attribute("http.status_code", status_code)

        result.log_id = log.id
        completed_at = result.delivered_at or utcnow()
        if retry and not result.success and attempt < self._max_attempts:
            result.retry_scheduled_for = completed_at + self.retry_delay(attempt + 1)
        await self._deliveries.mark_settled(
            log.id,
            status=DeliveryStatus.DELIVERED if result.success else DeliveryStatus.FAILED,
            completed_at=completed_at,
            http_status_code=result.http_status_code,
            response_body=result.response_body,
            error=result.error,
            scheduled_for=result.retry_scheduled_for,
        )
        logger.info(
            "webhook attempt settled",
            subscription_id=str(subscription.id),
            event_type=event_type,
            attempt=attempt,
            delivery_id=str(delivery_id),
            success=result.success,
            http_status_code=result.http_status_code,
            error=result.error,
        )
        return result
