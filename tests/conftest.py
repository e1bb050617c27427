from __future__ import annotations

import asyncio
import os
import uuid
from pathlib import Path

import asyncpg  # type: ignore[import-untyped]
import pytest
from aiohttp import ClientSession, web

from clinic_webhooks.db.migrations import apply_migrations, load_migrations
from clinic_webhooks.main import create_app
from clinic_webhooks.settings import settings
from clinic_webhooks.webhooks.delivery import DeliveryEngine
from clinic_webhooks.webhooks.signature import generate_secret
from tests.fakes import InMemoryDeliveryLogRepository, InMemorySubscriptionRepository

TEST_DATABASE_URL_ENV = "CLINIC_WEBHOOKS_TEST_DATABASE_URL"
MIGRATIONS_DIR = Path(__file__).resolve().parent.parent / "migrations"


class Receiver:
    """Webhook endpoint that records every request it gets.

    ``statuses`` is consumed one entry per request; once empty, ``default_status`` is used.
    """

    def __init__(self) -> None:
        self.requests: list[tuple[dict[str, str], bytes]] = []
        self.statuses: list[int] = []
        self.default_status = 200
        self.body = "ok"
        self.delay = 0.0
        self.url = ""

    async def handle(self, request: web.Request) -> web.Response:
        raw = await request.read()
        self.requests.append(({k: v for k, v in request.headers.items()}, raw))
        if self.delay:
            await asyncio.sleep(self.delay)
        status = self.statuses.pop(0) if self.statuses else self.default_status
        return web.Response(status=status, text=self.body)


@pytest.fixture
async def receiver(aiohttp_server):
    rec = Receiver()
    app = web.Application()
    app.router.add_post("/hook", rec.handle)
    server = await aiohttp_server(app)
    rec.url = str(server.make_url("/hook"))
    return rec


@pytest.fixture
def tenant_id() -> uuid.UUID:
    return uuid.uuid4()


@pytest.fixture
def subscriptions() -> InMemorySubscriptionRepository:
    return InMemorySubscriptionRepository()


@pytest.fixture
def deliveries(subscriptions) -> InMemoryDeliveryLogRepository:
    return InMemoryDeliveryLogRepository(subscriptions)


@pytest.fixture
async def http_session():
    async with ClientSession() as session:
        yield session


@pytest.fixture
def engine(subscriptions, deliveries, http_session) -> DeliveryEngine:
    return DeliveryEngine(subscriptions, deliveries, http_session)


@pytest.fixture
def make_subscription(subscriptions, tenant_id):
    async def _make(url: str, event_types=("pet.created",), *, tenant=None, name="Clinic CRM"):
        return await subscriptions.create(
            tenant_id=tenant or tenant_id,
            name=name,
            target_url=url,
            event_types=list(event_types),
            secret=generate_secret(),
        )

    return _make


@pytest.fixture
async def service_client(aiohttp_client, subscriptions, deliveries, monkeypatch):
    """Client for the HTTP API backed by the in-memory repositories.

    HTTPS is not enforced so subscriptions can target the local receiver.
    """
    monkeypatch.setattr(settings, "webhook_require_https", False)
    app = create_app(subscription_repository=subscriptions, delivery_repository=deliveries)
    return await aiohttp_client(app)


@pytest.fixture
async def strict_client(aiohttp_client, subscriptions, deliveries, monkeypatch):
    monkeypatch.setattr(settings, "webhook_require_https", True)
    app = create_app(subscription_repository=subscriptions, delivery_repository=deliveries)
    return await aiohttp_client(app)


@pytest.fixture
async def pg_pool():
    """asyncpg pool on a freshly migrated schema.

    Points at a throw-away database given by ``CLINIC_WEBHOOKS_TEST_DATABASE_URL``;
    the webhook tables there are dropped and recreated for every test.
    """
    dsn = os.environ.get(TEST_DATABASE_URL_ENV)
    if not dsn:
        pytest.skip(f"{TEST_DATABASE_URL_ENV} is not set")
    try:
        pool = await asyncpg.create_pool(dsn, min_size=1, max_size=4, timeout=5)
    except (OSError, asyncio.TimeoutError, asyncpg.PostgresError) as exc:
        pytest.skip(f"PostgreSQL is unavailable: {exc}")

    async with pool.acquire() as conn:
        await conn.execute(
            "DROP TABLE IF EXISTS webhook_delivery_logs, webhook_subscriptions, schema_migrations"
        )
        await apply_migrations(conn, load_migrations(MIGRATIONS_DIR))
    try:
        yield pool
    finally:
        await pool.close()
