"""aiohttp application entrypoint."""
from __future__ import annotations

from pathlib import Path

import structlog
from aiohttp import ClientSession, web
from aiohttp_cors import ResourceOptions, setup as cors_setup

from clinic_webhooks.api.router import setup_routes
from clinic_webhooks.db.migrations import create_migration_runner
from clinic_webhooks.db.pool import close_pool, get_pool, init_pool
from clinic_webhooks.logging_config import configure_logging
from clinic_webhooks.middleware.trace import create_trace_middleware
from clinic_webhooks.otel import setup_otel, shutdown_otel
from clinic_webhooks.repositories.webhooks import (
    WebhookDeliveryLogRepository,
    WebhookSubscriptionRepository,
)
from clinic_webhooks.services.dependencies import WEBHOOK_SERVICE_KEY, WEBHOOK_TRIGGER_KEY
from clinic_webhooks.services.webhooks import WebhookService
from clinic_webhooks.settings import settings
from clinic_webhooks.webhooks.delivery import DeliveryEngine
from clinic_webhooks.webhooks.trigger import WebhookTrigger
from clinic_webhooks.workers import create_housekeeping_worker, create_retry_worker

logger = structlog.get_logger(__name__)

PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent
MIGRATION_PATHS = [PROJECT_ROOT / "migrations", Path("/app/migrations")]

_HTTP_SESSION_KEY = "webhook_http_session"
_WORKERS_KEY = "webhook_workers"
_REPOSITORIES_KEY = "webhook_repositories"


async def healthcheck(request: web.Request) -> web.Response:
    return web.json_response({"status": "ok", "service": settings.app_name, "env": settings.env})


async def _use_postgres_repositories(app: web.Application) -> None:
    pool = await get_pool()
    app[_REPOSITORIES_KEY] = (
        WebhookSubscriptionRepository(pool),
        WebhookDeliveryLogRepository(pool),
    )


async def start_webhooks(app: web.Application) -> None:
    """Build the delivery engine, trigger and service and start the background workers."""
    subscriptions, deliveries = app[_REPOSITORIES_KEY]
    session = ClientSession()
    app[_HTTP_SESSION_KEY] = session

    engine = DeliveryEngine.from_settings(subscriptions, deliveries, session, settings)
    app[WEBHOOK_TRIGGER_KEY] = WebhookTrigger(subscriptions, engine)
    app[WEBHOOK_SERVICE_KEY] = WebhookService(
        subscriptions,
        deliveries,
        engine,
        require_https=settings.webhook_require_https,
    )

    retry_worker = create_retry_worker(engine)
    workers = [retry_worker, create_housekeeping_worker(engine, deliveries)]
    app[_WORKERS_KEY] = workers
    for worker in workers:
        await worker.start(app)
    logger.info(
        "webhooks started",
        max_attempts=engine.max_attempts,
        retry_sweep_interval_seconds=retry_worker.interval_seconds,
    )


async def stop_webhooks(app: web.Application) -> None:
    for worker in app.get(_WORKERS_KEY, []):
        await worker.stop(app)
    trigger = app.get(WEBHOOK_TRIGGER_KEY)
    if trigger is not None:
        await trigger.close()
    session = app.get(_HTTP_SESSION_KEY)
    if session is not None:
        await session.close()


def create_app(
    *,
    subscription_repository=None,
    delivery_repository=None,
) -> web.Application:
    """Create the app; passing both repositories skips PostgreSQL entirely (tests)."""
    app = web.Application()
    app.middlewares.append(create_trace_middleware(settings.app_name))

    cors = cors_setup(
        app,
        defaults={
            origin: ResourceOptions(
                allow_credentials=True,
                expose_headers=("X-Trace-Id", "X-Request-Id"),
                allow_headers=("Content-Type", "Authorization", "X-Tenant-Id", "X-Trace-Id"),
                allow_methods=("GET", "POST", "PATCH", "DELETE", "OPTIONS"),
            )
            for origin in settings.cors_allowed_origins
        },
    )

    app.router.add_get("/health", healthcheck)
    setup_routes(app)

    if subscription_repository is not None and delivery_repository is not None:
        app[_REPOSITORIES_KEY] = (subscription_repository, delivery_repository)
    else:
        app.on_startup.append(init_pool)
        app.on_startup.append(
            create_migration_runner(lambda: str(settings.database_url), MIGRATION_PATHS)
        )
        app.on_startup.append(_use_postgres_repositories)
        app.on_cleanup.append(close_pool)

    app.on_startup.append(start_webhooks)
    # deliveries must stop before the pool closes
    app.on_cleanup.insert(0, stop_webhooks)
    app.on_cleanup.append(shutdown_otel)

    for route in list(app.router.routes()):
        cors.add(route)

    setup_otel(app)
    return app


def main() -> None:
    configure_logging()
    web.run_app(create_app(), host=settings.host, port=settings.port)


if __name__ == "__main__":
    main()
