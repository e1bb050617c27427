"""Worker: purge old delivered webhook log rows."""
from __future__ import annotations

from datetime import datetime, timedelta
from typing import Protocol

from clinic_webhooks.worker import TaskFn


class PurgeableDeliveryLog(Protocol):
    async def delete_old_delivered(self, created_before: datetime) -> int: ...


def make_purge_task(deliveries: PurgeableDeliveryLog, *, retention: timedelta) -> TaskFn:
    async def webhook_purge_delivered(now: datetime) -> str | None:
        purged = await deliveries.delete_old_delivered(now - retention)
        return f"purged={purged}" if purged else None

    return webhook_purge_delivered
