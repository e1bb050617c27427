from __future__ import annotations

import uuid

import pytest

from clinic_webhooks.services.dependencies import WEBHOOK_TRIGGER_KEY
from clinic_webhooks.webhooks.signature import is_valid_secret_format
from tests.utils import make_headers


async def _create(client, tenant_id, url, event_types=("pet.created",), name="Clinic CRM"):
    resp = await client.post(
        "/api/v1/webhooks",
        json={"name": name, "target_url": url, "event_types": list(event_types)},
        headers=make_headers(tenant_id),
    )
    assert resp.status == 201, await resp.text()
    return await resp.json()


@pytest.mark.asyncio
async def test_health(service_client):
    resp = await service_client.get("/health")
    assert resp.status == 200
    assert (await resp.json())["status"] == "ok"


@pytest.mark.asyncio
async def test_list_event_catalog(service_client):
    resp = await service_client.get("/api/v1/webhooks/events")
    assert resp.status == 200
    categories = (await resp.json())["categories"]
    assert [c["category"] for c in categories] == ["pets", "appointments", "inventory", "sales"]
    assert categories[0]["events"][0] == {
        "event_type": "pet.created",
        "description": "A new pet was registered",
    }


@pytest.mark.asyncio
async def test_tenant_header_required(service_client):
    resp = await service_client.get("/api/v1/webhooks")
    assert resp.status == 401
    resp = await service_client.get("/api/v1/webhooks", headers={"X-Tenant-Id": "nope"})
    assert resp.status == 400


@pytest.mark.asyncio
async def test_create_and_list(service_client, receiver, tenant_id):
    created = await _create(service_client, tenant_id, receiver.url, ["pet.created", "pet.created", "sale.completed"])

    assert created["name"] == "Clinic CRM"
    assert created["event_types"] == ["pet.created", "sale.completed"]
    assert created["is_active"] is True
    assert created["consecutive_failures"] == 0
    assert is_valid_secret_format(created["secret"])

    resp = await service_client.get("/api/v1/webhooks", headers=make_headers(tenant_id))
    assert resp.status == 200
    body = await resp.json()
    assert body["total"] == 1
    [listed] = body["webhooks"]
    assert listed["id"] == created["id"]
    assert "secret" not in listed

    resp = await service_client.get("/api/v1/webhooks", headers=make_headers(uuid.uuid4()))
    assert (await resp.json())["total"] == 0


@pytest.mark.asyncio
async def test_create_rejects_unknown_event_types(service_client, receiver, tenant_id):
    resp = await service_client.post(
        "/api/v1/webhooks",
        json={
            "name": "CRM",
            "target_url": receiver.url,
            "event_types": ["pet.created", "invalid.event"],
        },
        headers=make_headers(tenant_id),
    )
    assert resp.status == 400
    body = await resp.json()
    assert body["invalid_event_types"] == ["invalid.event"]
    assert "invalid.event" in body["error"]


@pytest.mark.asyncio
async def test_create_rejects_empty_event_list(service_client, receiver, tenant_id):
    resp = await service_client.post(
        "/api/v1/webhooks",
        json={"name": "CRM", "target_url": receiver.url, "event_types": []},
        headers=make_headers(tenant_id),
    )
    assert resp.status == 400


@pytest.mark.asyncio
async def test_create_requires_https(strict_client, tenant_id):
    resp = await strict_client.post(
        "/api/v1/webhooks",
        json={"name": "CRM", "target_url": "http://crm.example.com/hook", "event_types": ["pet.created"]},
        headers=make_headers(tenant_id),
    )
    assert resp.status == 400
    assert "HTTPS" in (await resp.json())["error"]

    resp = await strict_client.post(
        "/api/v1/webhooks",
        json={"name": "CRM", "target_url": "not a url", "event_types": ["pet.created"]},
        headers=make_headers(tenant_id),
    )
    assert resp.status == 400

    resp = await strict_client.post(
        "/api/v1/webhooks",
        json={"name": "CRM", "target_url": "https://crm.example.com/hook", "event_types": ["pet.created"]},
        headers=make_headers(tenant_id),
    )
    assert resp.status == 201


@pytest.mark.asyncio
async def test_get_with_recent_deliveries(service_client, receiver, tenant_id):
    created = await _create(service_client, tenant_id, receiver.url)
    url = f"/api/v1/webhooks/{created['id']}"
    for _ in range(12):
        resp = await service_client.post(f"{url}/test", headers=make_headers(tenant_id))
        assert resp.status == 200

    resp = await service_client.get(url, headers=make_headers(tenant_id))
    assert resp.status == 200
    body = await resp.json()
    assert "secret" not in body
    assert body["delivery_count"] == 12
    assert len(body["recent_deliveries"]) == 10
    assert body["recent_deliveries"][0]["payload"]["event"] == "test.ping"

    resp = await service_client.get(url, headers=make_headers(uuid.uuid4()))
    assert resp.status == 404
    resp = await service_client.get("/api/v1/webhooks/not-a-uuid", headers=make_headers(tenant_id))
    assert resp.status == 400


@pytest.mark.asyncio
async def test_update_fields_and_rotate_secret(service_client, receiver, tenant_id):
    created = await _create(service_client, tenant_id, receiver.url)
    url = f"/api/v1/webhooks/{created['id']}"

    resp = await service_client.patch(
        url,
        json={"name": "Renamed", "event_types": ["sale.completed"]},
        headers=make_headers(tenant_id),
    )
    assert resp.status == 200
    body = await resp.json()
    assert body["name"] == "Renamed"
    assert body["event_types"] == ["sale.completed"]
    assert "secret" not in body

    resp = await service_client.patch(url, json={"regenerate_secret": True}, headers=make_headers(tenant_id))
    assert resp.status == 200
    rotated = (await resp.json())["secret"]
    assert is_valid_secret_format(rotated)
    assert rotated != created["secret"]


@pytest.mark.asyncio
async def test_update_rejects_unknown_events_without_partial_apply(
    service_client, subscriptions, receiver, tenant_id
):
    created = await _create(service_client, tenant_id, receiver.url)

    resp = await service_client.patch(
        f"/api/v1/webhooks/{created['id']}",
        json={"name": "Renamed", "event_types": ["pet.created", "bogus"]},
        headers=make_headers(tenant_id),
    )
    assert resp.status == 400
    assert (await resp.json())["invalid_event_types"] == ["bogus"]
    stored = subscriptions.rows[uuid.UUID(created["id"])]
    assert stored.name == "Clinic CRM"
    assert stored.event_types == ["pet.created"]


@pytest.mark.asyncio
async def test_reenable_resets_failure_counter(service_client, subscriptions, receiver, tenant_id):
    created = await _create(service_client, tenant_id, receiver.url)
    sub_id = uuid.UUID(created["id"])
    subscriptions.rows[sub_id] = subscriptions.rows[sub_id].model_copy(
        update={"is_active": False, "consecutive_failures": 10}
    )

    resp = await service_client.patch(
        f"/api/v1/webhooks/{sub_id}", json={"is_active": True}, headers=make_headers(tenant_id)
    )
    assert resp.status == 200
    body = await resp.json()
    assert body["is_active"] is True
    assert body["consecutive_failures"] == 0


@pytest.mark.asyncio
async def test_update_unknown_subscription(service_client, tenant_id):
    resp = await service_client.patch(
        f"/api/v1/webhooks/{uuid.uuid4()}", json={"name": "x"}, headers=make_headers(tenant_id)
    )
    assert resp.status == 404


@pytest.mark.asyncio
async def test_delete(service_client, receiver, tenant_id):
    created = await _create(service_client, tenant_id, receiver.url)
    url = f"/api/v1/webhooks/{created['id']}"

    resp = await service_client.delete(url, headers=make_headers(uuid.uuid4()))
    assert resp.status == 404

    resp = await service_client.delete(url, headers=make_headers(tenant_id))
    assert resp.status == 204
    resp = await service_client.get(url, headers=make_headers(tenant_id))
    assert resp.status == 404


@pytest.mark.asyncio
async def test_delete_with_history_conflicts(service_client, receiver, tenant_id):
    created = await _create(service_client, tenant_id, receiver.url)
    url = f"/api/v1/webhooks/{created['id']}"
    await service_client.post(f"{url}/test", headers=make_headers(tenant_id))

    resp = await service_client.delete(url, headers=make_headers(tenant_id))
    assert resp.status == 409


@pytest.mark.asyncio
async def test_send_test_endpoint(service_client, receiver, tenant_id):
    created = await _create(service_client, tenant_id, receiver.url)

    resp = await service_client.post(
        f"/api/v1/webhooks/{created['id']}/test", headers=make_headers(tenant_id)
    )
    assert resp.status == 200
    body = await resp.json()
    assert body["success"] is True
    assert body["status"] == "delivered"
    assert body["http_status_code"] == 200
    [(headers, _)] = receiver.requests
    assert headers["X-Webhook-Event"] == "test.ping"

    resp = await service_client.post(
        f"/api/v1/webhooks/{created['id']}/test", headers=make_headers(uuid.uuid4())
    )
    assert resp.status == 404


@pytest.mark.asyncio
async def test_send_test_to_disabled_subscription(service_client, receiver, tenant_id):
    created = await _create(service_client, tenant_id, receiver.url)
    url = f"/api/v1/webhooks/{created['id']}"
    await service_client.patch(url, json={"is_active": False}, headers=make_headers(tenant_id))

    resp = await service_client.post(f"{url}/test", headers=make_headers(tenant_id))
    assert resp.status == 200
    body = await resp.json()
    assert body["success"] is False
    assert body["error"] == "Webhook is disabled"
    assert receiver.requests == []


@pytest.mark.asyncio
async def test_list_deliveries_with_filters(service_client, receiver, tenant_id):
    crm = await _create(service_client, tenant_id, receiver.url, name="CRM")
    bi = await _create(service_client, tenant_id, receiver.url, name="BI")
    receiver.statuses = [200, 500]
    await service_client.post(f"/api/v1/webhooks/{crm['id']}/test", headers=make_headers(tenant_id))
    await service_client.post(f"/api/v1/webhooks/{bi['id']}/test", headers=make_headers(tenant_id))

    resp = await service_client.get("/api/v1/webhooks/deliveries", headers=make_headers(tenant_id))
    assert resp.status == 200
    body = await resp.json()
    assert body["total"] == 2
    assert {d["subscription_id"] for d in body["deliveries"]} == {crm["id"], bi["id"]}
    assert "raw_payload" not in body["deliveries"][0]

    resp = await service_client.get(
        "/api/v1/webhooks/deliveries",
        params={"subscription_id": crm["id"]},
        headers=make_headers(tenant_id),
    )
    [only] = (await resp.json())["deliveries"]
    assert only["status"] == "delivered"

    resp = await service_client.get(
        "/api/v1/webhooks/deliveries", params={"status": "failed"}, headers=make_headers(tenant_id)
    )
    [failed] = (await resp.json())["deliveries"]
    assert failed["subscription_id"] == bi["id"]
    assert failed["http_status_code"] == 500

    resp = await service_client.get(
        "/api/v1/webhooks/deliveries", params={"status": "weird"}, headers=make_headers(tenant_id)
    )
    assert resp.status == 400

    resp = await service_client.get("/api/v1/webhooks/deliveries", headers=make_headers(uuid.uuid4()))
    assert (await resp.json())["total"] == 0


@pytest.mark.asyncio
async def test_event_intake_delivers_in_background(service_client, deliveries, receiver, tenant_id):
    created = await _create(service_client, tenant_id, receiver.url)

    resp = await service_client.post(
        "/api/v1/events",
        json={"event_type": "pet.created", "data": {"id": "p-1", "name": "Rex"}},
        headers=make_headers(tenant_id),
    )
    assert resp.status == 202
    assert await resp.json() == {"accepted": True}

    await service_client.server.app[WEBHOOK_TRIGGER_KEY].wait_idle()
    [log] = deliveries.for_subscription(uuid.UUID(created["id"]))
    assert log.event_type == "pet.created"
    assert log.payload["data"] == {"id": "p-1", "name": "Rex"}
    [(headers, _)] = receiver.requests
    assert headers["X-Webhook-Event"] == "pet.created"


@pytest.mark.asyncio
async def test_event_intake_accepts_unknown_event(service_client, deliveries, tenant_id):
    resp = await service_client.post(
        "/api/v1/events",
        json={"event_type": "unknown.event", "data": {}},
        headers=make_headers(tenant_id),
    )
    assert resp.status == 202
    await service_client.server.app[WEBHOOK_TRIGGER_KEY].wait_idle()
    assert deliveries.rows == {}


@pytest.mark.asyncio
async def test_list_pagination(service_client, receiver, tenant_id):
    for name in ("A", "B", "C"):
        await _create(service_client, tenant_id, receiver.url, name=name)

    resp = await service_client.get(
        "/api/v1/webhooks", params={"limit": "2", "offset": "1"}, headers=make_headers(tenant_id)
    )
    body = await resp.json()
    assert body["total"] == 3
    assert (body["limit"], body["offset"]) == (2, 1)
    assert [w["name"] for w in body["webhooks"]] == ["B", "A"]

    resp = await service_client.get(
        "/api/v1/webhooks", params={"limit": "many"}, headers=make_headers(tenant_id)
    )
    assert resp.status == 400
