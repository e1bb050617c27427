"""Worker: settle pending delivery rows interrupted by a crash."""
from __future__ import annotations

from datetime import datetime, timedelta

from clinic_webhooks.webhooks.delivery import DeliveryEngine
from clinic_webhooks.worker import TaskFn


def make_reclaim_task(engine: DeliveryEngine, *, stale_after: timedelta) -> TaskFn:
    async def webhook_reclaim_stale(now: datetime) -> str | None:
        """Fail ``pending`` rows older than *stale_after* and re-queue them."""
        reclaimed = await engine.reclaim_interrupted(now - stale_after, now)
        return f"reclaimed={reclaimed}" if reclaimed else None

    return webhook_reclaim_stale
