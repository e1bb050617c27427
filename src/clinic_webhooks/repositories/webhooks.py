"""Webhook repositories (subscriptions + delivery log)."""
from __future__ import annotations

from datetime import datetime
from typing import Any, List, Sequence, Tuple
from uuid import UUID

import asyncpg  # type: ignore[import-untyped]
from asyncpg import Pool, Record  # type: ignore[import-untyped]

from clinic_webhooks.core.exceptions import NotFoundError, SubscriptionInUseError
from clinic_webhooks.domain.dto import DeliveryLogFilter
from clinic_webhooks.domain.webhooks import DeliveryStatus, WebhookDeliveryLog, WebhookSubscription
from clinic_webhooks.repositories.base import BaseRepository

_UPDATABLE_COLUMNS = frozenset(
    {"name", "target_url", "event_types", "is_active", "secret", "consecutive_failures"}
)


class WebhookSubscriptionRepository(BaseRepository):
    def __init__(self, pool: Pool):
        super().__init__(pool)

    @staticmethod
    def _to_model(record: Record) -> WebhookSubscription:
        return WebhookSubscription.model_validate(dict(record))

    async def create(
        self,
        *,
        tenant_id: UUID,
        name: str,
        target_url: str,
        event_types: list[str],
        secret: str,
    ) -> WebhookSubscription:
        record = await self._fetchrow(
            """
            INSERT INTO webhook_subscriptions (tenant_id, name, target_url, event_types, secret, is_active)
            VALUES ($1, $2, $3, $4::text[], $5, true)
            RETURNING *
            """,
            tenant_id,
            name,
            target_url,
            event_types,
            secret,
        )
        assert record is not None
        return self._to_model(record)

    async def get(self, subscription_id: UUID) -> WebhookSubscription | None:
        record = await self._fetchrow(
            "SELECT * FROM webhook_subscriptions WHERE id = $1", subscription_id
        )
        return self._to_model(record) if record else None

    async def get_for_tenant(self, tenant_id: UUID, subscription_id: UUID) -> WebhookSubscription:
        record = await self._fetchrow(
            "SELECT * FROM webhook_subscriptions WHERE tenant_id = $1 AND id = $2",
            tenant_id,
            subscription_id,
        )
        if record is None:
            raise NotFoundError("Webhook subscription not found")
        return self._to_model(record)

    async def list_by_tenant(
        self, tenant_id: UUID, *, limit: int = 50, offset: int = 0
    ) -> Tuple[List[WebhookSubscription], int]:
        records = await self._fetch(
            """
            SELECT *,
                   COUNT(*) OVER() AS total_count
            FROM webhook_subscriptions
            WHERE tenant_id = $1
            ORDER BY created_at DESC
            LIMIT $2 OFFSET $3
            """,
            tenant_id,
            limit,
            offset,
        )
        items: List[WebhookSubscription] = []
        total: int | None = None
        for rec in records:
            rec_dict = dict(rec)
            total_value = rec_dict.pop("total_count", None)
            if total_value is not None:
                total = int(total_value)
            items.append(WebhookSubscription.model_validate(rec_dict))
        if total is None:
            total = int(
                await self._fetchval(
                    "SELECT COUNT(*) FROM webhook_subscriptions WHERE tenant_id = $1", tenant_id
                )
            )
        return items, total

    async def list_active_matching(
        self, tenant_id: UUID, event_type: str
    ) -> List[WebhookSubscription]:
        records = await self._fetch(
            """
            SELECT *
            FROM webhook_subscriptions
            WHERE tenant_id = $1
              AND is_active = true
              AND $2 = ANY(event_types)
            ORDER BY created_at ASC
            """,
            tenant_id,
            event_type,
        )
        return [self._to_model(r) for r in records]

    async def update(
        self, tenant_id: UUID, subscription_id: UUID, changes: dict[str, Any]
    ) -> WebhookSubscription:
        unknown = set(changes) - _UPDATABLE_COLUMNS
        if unknown:
            raise ValueError(f"Cannot update columns: {sorted(unknown)}")
        if not changes:
            return await self.get_for_tenant(tenant_id, subscription_id)

        assignments = []
        values: list[Any] = [tenant_id, subscription_id]
        for idx, (column, value) in enumerate(changes.items(), start=3):
            cast = "::text[]" if column == "event_types" else ""
            assignments.append(f"{column} = ${idx}{cast}")
            values.append(value)
        record = await self._fetchrow(
            f"""
            UPDATE webhook_subscriptions
            SET {", ".join(assignments)},
                updated_at = now()
            WHERE tenant_id = $1 AND id = $2
            RETURNING *
            """,
            *values,
        )
        if record is None:
            raise NotFoundError("Webhook subscription not found")
        return self._to_model(record)

    async def delete(self, tenant_id: UUID, subscription_id: UUID) -> None:
        try:
            record = await self._fetchrow(
                """
                DELETE FROM webhook_subscriptions
                WHERE tenant_id = $1 AND id = $2
                RETURNING id
                """,
                tenant_id,
                subscription_id,
            )
        except asyncpg.exceptions.ForeignKeyViolationError as exc:
            raise SubscriptionInUseError(
                "Webhook subscription has delivery history; disable it instead"
            ) from exc
        if record is None:
            raise NotFoundError("Webhook subscription not found")

    async def record_success(self, subscription_id: UUID, at: datetime) -> None:
        await self._execute(
            """
            UPDATE webhook_subscriptions
            SET consecutive_failures = 0,
                last_delivery_at = $2,
                last_success_at = $2,
                updated_at = now()
            WHERE id = $1
            """,
            subscription_id,
            at,
        )

    async def record_failure(self, subscription_id: UUID, at: datetime) -> int:
        """Atomically bump the failure counter; returns the new value."""
        value = await self._fetchval(
            """
            UPDATE webhook_subscriptions
            SET consecutive_failures = consecutive_failures + 1,
                last_delivery_at = $2,
                updated_at = now()
            WHERE id = $1
            RETURNING consecutive_failures
            """,
            subscription_id,
            at,
        )
        return int(value or 0)

    async def disable_if_failing(self, subscription_id: UUID, threshold: int) -> bool:
        """Clear ``is_active`` when the counter reached *threshold*; True if this call disabled it."""
        value = await self._fetchval(
            """
            UPDATE webhook_subscriptions
            SET is_active = false,
                updated_at = now()
            WHERE id = $1
              AND is_active = true
              AND consecutive_failures >= $2
            RETURNING id
            """,
            subscription_id,
            threshold,
        )
        return value is not None


class WebhookDeliveryLogRepository(BaseRepository):
    def __init__(self, pool: Pool):
        super().__init__(pool)

    @staticmethod
    def _to_model(record: Record) -> WebhookDeliveryLog:
        payload = dict(record)
        payload["raw_payload"] = payload.pop("payload")
        payload.pop("total_count", None)
        return WebhookDeliveryLog.model_validate(payload)

    async def create_pending(
        self,
        *,
        subscription_id: UUID,
        logical_delivery_id: UUID,
        delivery_id: UUID,
        event_type: str,
        payload: str,
        attempt: int,
    ) -> WebhookDeliveryLog:
        record = await self._fetchrow(
            """
            INSERT INTO webhook_delivery_logs (
                subscription_id,
                logical_delivery_id,
                delivery_id,
                event_type,
                payload,
                attempt,
                status
            )
            VALUES ($1, $2, $3, $4, $5, $6, 'pending')
            RETURNING *
            """,
            subscription_id,
            logical_delivery_id,
            delivery_id,
            event_type,
            payload,
            attempt,
        )
        assert record is not None
        return self._to_model(record)

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
    ) -> None:
        # only a pending row may settle; settled rows are never reopened.
        # The retry time is written in the same statement as the outcome.
        await self._execute(
            """
            UPDATE webhook_delivery_logs
            SET status = $2,
                http_status_code = $3,
                response_body = $4,
                error = $5,
                completed_at = $6,
                scheduled_for = $7
            WHERE id = $1 AND status = 'pending'
            """,
            log_id,
            status.value,
            http_status_code,
            response_body,
            error,
            completed_at,
            scheduled_for,
        )

    async def claim_due_retries(self, now: datetime, *, limit: int = 100) -> List[WebhookDeliveryLog]:
        """
        Atomically claim failed attempts whose retry is due.

        Uses row-level locking (FOR UPDATE SKIP LOCKED) so concurrent sweepers
        never claim the same row; a claimed row is never returned again.
        """
        async with self._pool.acquire() as conn:
            async with conn.transaction():
                records = await conn.fetch(
                    """
                    WITH cte AS (
                        SELECT id
                        FROM webhook_delivery_logs
                        WHERE status = 'failed'
                          AND scheduled_for IS NOT NULL
                          AND scheduled_for <= $1
                          AND retry_claimed_at IS NULL
                        ORDER BY scheduled_for ASC
                        FOR UPDATE SKIP LOCKED
                        LIMIT $2
                    )
                    UPDATE webhook_delivery_logs l
                    SET retry_claimed_at = $1
                    FROM cte
                    WHERE l.id = cte.id
                    RETURNING l.*
                    """,
                    now,
                    limit,
                )
        return [self._to_model(r) for r in records]

    async def list_by_tenant(
        self,
        tenant_id: UUID,
        filters: DeliveryLogFilter,
        *,
        limit: int = 50,
        offset: int = 0,
    ) -> Tuple[List[WebhookDeliveryLog], int]:
        where = ["s.tenant_id = $1"]
        values: list[Any] = [tenant_id]
        idx = 2
        if filters.subscription_id is not None:
            where.append(f"l.subscription_id = ${idx}")
            values.append(filters.subscription_id)
            idx += 1
        if filters.event_type is not None:
            where.append(f"l.event_type = ${idx}")
            values.append(filters.event_type)
            idx += 1
        if filters.status is not None:
            where.append(f"l.status = ${idx}")
            values.append(filters.status.value)
            idx += 1
        where_sql = " AND ".join(where)
        query = f"""
            SELECT l.*,
                   COUNT(*) OVER() AS total_count
            FROM webhook_delivery_logs l
            JOIN webhook_subscriptions s ON s.id = l.subscription_id
            WHERE {where_sql}
            ORDER BY l.created_at DESC
            LIMIT ${idx} OFFSET ${idx + 1}
        """
        records = await self._fetch(query, *values, limit, offset)
        items: List[WebhookDeliveryLog] = []
        total: int | None = None
        for rec in records:
            total_value = rec["total_count"]
            if total_value is not None:
                total = int(total_value)
            items.append(self._to_model(rec))
        if total is None:
            total = int(
                await self._fetchval(
                    f"""
                    SELECT COUNT(*)
                    FROM webhook_delivery_logs l
                    JOIN webhook_subscriptions s ON s.id = l.subscription_id
                    WHERE {where_sql}
                    """,
                    *values,
                )
            )
        return items, total

    async def list_recent_for_subscription(
        self, subscription_id: UUID, *, limit: int = 10
    ) -> Tuple[List[WebhookDeliveryLog], int]:
        records = await self._fetch(
            """
            SELECT *,
                   COUNT(*) OVER() AS total_count
            FROM webhook_delivery_logs
            WHERE subscription_id = $1
            ORDER BY created_at DESC
            LIMIT $2
            """,
            subscription_id,
            limit,
        )
        total = int(records[0]["total_count"]) if records else 0
        return [self._to_model(r) for r in records], total

    async def reclaim_stale_pending(
        self,
        created_before: datetime,
        now: datetime,
        *,
        max_attempts: int,
        retry_delays: Sequence[float],
        no_retry_event_types: Sequence[str] = (),
    ) -> List[WebhookDeliveryLog]:
        """Settle ``pending`` rows orphaned by a crash mid-call.

        They become ``failed``. Rows with attempts left are scheduled after
        the regular backoff for their next attempt (``retry_delays[attempt]``).
        Returns the reclaimed rows.
        """
        records = await self._fetch(
            """
            UPDATE webhook_delivery_logs
            SET status = 'failed',
                error = 'Delivery interrupted before completion',
                completed_at = $2,
                scheduled_for = CASE
                    WHEN attempt < $3 AND NOT (event_type = ANY($5::text[]))
                    THEN $2 + make_interval(secs => ($4::float8[])[attempt + 1])
                    ELSE NULL
                END
            WHERE status = 'pending'
              AND created_at < $1
            RETURNING *
            """,
            created_before,
            now,
            max_attempts,
            [float(d) for d in retry_delays],
            list(no_retry_event_types),
        )
        return [self._to_model(r) for r in records]

    async def delete_old_delivered(self, created_before: datetime) -> int:
        """Purge delivered rows older than *created_before*. Returns count."""
        result = await self._execute(
            "DELETE FROM webhook_delivery_logs WHERE status = 'delivered' AND created_at < $1",
            created_before,
        )
        return self._affected(result)
