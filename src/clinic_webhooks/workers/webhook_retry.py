"""Worker: run webhook retries whose ``scheduled_for`` has passed."""
from __future__ import annotations

from datetime import datetime

from clinic_webhooks.settings import settings
from clinic_webhooks.webhooks.delivery import DeliveryEngine
from clinic_webhooks.worker import BackgroundWorker, TaskFn, WorkerTask


def make_retry_task(engine: DeliveryEngine, *, batch_size: int) -> TaskFn:
    async def webhook_retry_due(now: datetime) -> str | None:
        retried = await engine.run_due_retries(now, limit=batch_size)
        return f"retried={retried}" if retried else None

    return webhook_retry_due


def create_retry_worker(engine: DeliveryEngine) -> BackgroundWorker:
    return BackgroundWorker(
        name="webhook_retry",
        interval_seconds=settings.webhook_retry_sweep_interval_seconds,
        tasks=[
            WorkerTask(
                name="webhook_retry_due",
                fn=make_retry_task(engine, batch_size=settings.webhook_retry_batch_size),
            )
        ],
    )
