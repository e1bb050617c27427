"""Background workers for the webhook service.

Both workers need the live delivery engine or repositories, so they are built
per app: the retry sweeper runs on its own short interval, housekeeping
(crash reclaim, purge) on the slow one.
"""
from __future__ import annotations

from datetime import timedelta

from clinic_webhooks.settings import settings
from clinic_webhooks.webhooks.delivery import DeliveryEngine
from clinic_webhooks.worker import BackgroundWorker, WorkerTask
from clinic_webhooks.workers.webhook_purge import PurgeableDeliveryLog, make_purge_task
from clinic_webhooks.workers.webhook_reclaim import make_reclaim_task
from clinic_webhooks.workers.webhook_retry import create_retry_worker


def create_housekeeping_worker(
    engine: DeliveryEngine, deliveries: PurgeableDeliveryLog
) -> BackgroundWorker:
    return BackgroundWorker(
        name="housekeeping",
        interval_seconds=settings.worker_interval_seconds,
        tasks=[
            WorkerTask(
                name="webhook_reclaim_stale",
                fn=make_reclaim_task(
                    engine,
                    stale_after=timedelta(minutes=settings.webhook_pending_stale_minutes),
                ),
            ),
            WorkerTask(
                name="webhook_purge_delivered",
                fn=make_purge_task(
                    deliveries,
                    retention=timedelta(days=settings.webhook_delivered_retention_days),
                ),
            ),
        ],
    )


__all__ = [
    "create_housekeeping_worker",
    "create_retry_worker",
]
