"""
HTTP surface over an in-memory engine. The app lifespan is not run; the
engine is injected through dependency overrides.
"""
import asyncio
from datetime import timedelta

import pytest
from fastapi.testclient import TestClient

from conftest import START
from flux.deps import get_engine
from flux.main import app
from flux.models import Profile
from flux.order_state import Role

COMPANY = {"X-User-Id": "company-1"}
DRIVER_A = {"X-User-Id": "driver-a"}
DRIVER_B = {"X-User-Id": "driver-b"}
BROKE_DRIVER = {"X-User-Id": "driver-broke"}
ADMIN = {"X-User-Id": "admin-1"}

ORDER = {
    "deliveries": [
        {
            "pickup_address": "Rua das Flores, 100",
            "dropoff_address": "Avenida Brasil, 2500",
            "suggested_price": "6.00",
            "customer_name": "Maria Souza",
            "customer_phone": "(64) 98877-6655",
        },
        {
            "pickup_address": "Rua das Flores, 100",
            "dropoff_address": "Rua 7, 45",
            "package_type": "small_box",
            "suggested_price": 9,
            "customer_name": "João Lima",
            "customer_phone": "64 99111-2233",
        },
    ]
}


@pytest.fixture
def client(engine, store):
    paid = START + timedelta(days=30)
    profiles = [
        Profile(user_id="company-1", role=Role.COMPANY, name="Padaria", city="Rio Verde", credits_valid_until=paid),
        Profile(user_id="driver-a", role=Role.DRIVER, name="Ana", city="Rio Verde", credits_valid_until=paid),
        Profile(user_id="driver-b", role=Role.DRIVER, name="Bruno", city="Rio Verde", credits_valid_until=paid),
        Profile(user_id="driver-broke", role=Role.DRIVER, name="Caio", city="Rio Verde"),
        Profile(user_id="admin-1", role=Role.ADMIN, name="Ops"),
    ]
    for profile in profiles:
        asyncio.run(store.upsert_profile(profile))
    app.dependency_overrides[get_engine] = lambda: engine
    yield TestClient(app)
    app.dependency_overrides.clear()


def _create(client) -> dict:
    resp = client.post("/orders", json=ORDER, headers=COMPANY)
    assert resp.status_code == 201, resp.text
    return resp.json()


def test_health(client):
    resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok"}


def test_unknown_user_is_unauthorized(client):
    assert client.get("/orders", headers={"X-User-Id": "nobody"}).status_code == 401
    assert client.get("/orders").status_code == 422


def test_create_order(client):
    order = _create(client)

    assert order["status"] == "pending"
    assert order["total_value"] == "15.00"
    assert len(order["deliveries"]) == 2
    assert order["deliveries"][1]["customer_phone"] == "64991112233"


def test_invalid_delivery_is_reported(client):
    bad = {"deliveries": [dict(ORDER["deliveries"][0], customer_name="")]}

    resp = client.post("/orders", json=bad, headers=COMPANY)

    assert resp.status_code == 422
    assert resp.json() == {"error": "invalid_input", "message": "Delivery 1: customer name is required"}


def test_accept_race_returns_conflict(client):
    order = _create(client)

    first = client.post(f"/orders/{order['id']}/accept", headers=DRIVER_A)
    second = client.post(f"/orders/{order['id']}/accept", headers=DRIVER_B)

    assert first.status_code == 200
    assert first.json()["codes_generated"] == 2
    assert second.status_code == 409
    assert second.json()["error"] == "order_unavailable"
    assert second.json()["resync"] is True


def test_accept_without_credits(client):
    order = _create(client)

    resp = client.post(f"/orders/{order['id']}/accept", headers=BROKE_DRIVER)

    assert resp.status_code == 402
    assert resp.json()["redirect"] == "https://iflux.space/planos"


def test_full_flow_over_http(client):
    order = _create(client)
    oid = order["id"]
    assert [o["id"] for o in client.get("/orders/available", headers=DRIVER_A).json()] == [oid]
    assert client.post(f"/orders/{oid}/accept", headers=DRIVER_A).status_code == 200

    codes = client.get(f"/orders/{oid}/codes", headers=COMPANY).json()
    assert all(c["code"] for c in codes)
    assert client.get(f"/orders/{oid}/codes", headers=DRIVER_A).status_code == 403

    wrong = client.post(f"/deliveries/{codes[0]['delivery_id']}/validate", json={"code": "000000"}, headers=DRIVER_A)
    assert wrong.status_code == 200
    assert wrong.json()["ok"] is False
    assert wrong.json()["attempts_remaining"] == 4

    early = client.post(f"/orders/{oid}/driver-complete", headers=DRIVER_A)
    assert early.status_code == 409
    assert early.json()["pending_validations"] == 2

    for c in codes:
        resp = client.post(f"/deliveries/{c['delivery_id']}/validate", json={"code": c["code"]}, headers=DRIVER_A)
        assert resp.json()["ok"] is True

    assert client.post(f"/orders/{oid}/driver-complete", headers=DRIVER_A).json()["status"] == "driver_completed"
    assert client.post(f"/orders/{oid}/confirm", headers=COMPANY).json()["status"] == "completed"

    rated = client.post(f"/orders/{oid}/rating", json={"stars": 5, "comment": "great"}, headers=COMPANY)
    assert rated.status_code == 201
    summary = client.get("/users/driver-a/ratings", headers=COMPANY).json()
    assert summary["average"] == 5.0
    assert summary["count"] == 1


def test_lock_after_five_wrong_codes(client):
    order = _create(client)
    client.post(f"/orders/{order['id']}/accept", headers=DRIVER_A)
    delivery_id = order["deliveries"][0]["id"]

    for _ in range(5):
        client.post(f"/deliveries/{delivery_id}/validate", json={"code": "000000"}, headers=DRIVER_A)
    resp = client.post(f"/deliveries/{delivery_id}/validate", json={"code": "000000"}, headers=DRIVER_A)

    assert resp.status_code == 423
    assert resp.json()["error"] == "validation_locked"


def test_malformed_code_is_rejected(client):
    order = _create(client)
    client.post(f"/orders/{order['id']}/accept", headers=DRIVER_A)

    resp = client.post(f"/deliveries/{order['deliveries'][0]['id']}/validate", json={"code": "12"}, headers=DRIVER_A)

    assert resp.status_code == 422
    assert resp.json()["message"] == "The code must have 6 characters"


def test_sos(client):
    order = _create(client)
    client.post(f"/orders/{order['id']}/accept", headers=DRIVER_A)

    resp = client.post(f"/orders/{order['id']}/sos", json={"description": "Flat tyre"}, headers=DRIVER_A)

    assert resp.status_code == 200
    # company has no phone on file: goes to support
    assert resp.json()["whatsapp_url"].startswith("https://wa.me/5564981068393?text=")


def test_admin_endpoints(client):
    _create(client)

    assert client.get("/admin/orders", headers=COMPANY).status_code == 403
    assert len(client.get("/admin/orders", headers=ADMIN).json()) == 1

    body = {"user_id": "ignored", "role": "driver", "name": "Davi", "city": "Rio Verde"}
    resp = client.put("/admin/profiles/driver-new", json=body, headers=ADMIN)
    assert resp.status_code == 200
    me = client.get("/me", headers={"X-User-Id": "driver-new"}).json()
    assert me["role"] == "driver"
    assert me["has_entitlement"] is False


def test_metrics(client):
    _create(client)

    resp = client.get("/metrics")

    assert resp.status_code == 200
    assert "orders_created_total" in resp.text


@pytest.mark.parametrize("price", ["abc", None, "NaN", "Infinity", ""])
def test_unparseable_price_is_rejected(client, price):
    bad = {"deliveries": [dict(ORDER["deliveries"][0], suggested_price=price)]}

    resp = client.post("/orders", json=bad, headers=COMPANY)

    assert resp.status_code == 422
    assert resp.json() == {"error": "invalid_input", "message": "deliveries.0.suggested_price: Enter a valid price"}


def test_naive_credit_expiry_is_taken_as_utc(client):
    body = {"user_id": "ignored", "role": "driver", "name": "Davi", "city": "Rio Verde",
            "credits_valid_until": "2026-12-01T00:00:00"}
    assert client.put("/admin/profiles/driver-naive", json=body, headers=ADMIN).status_code == 200
    driver = {"X-User-Id": "driver-naive"}

    me = client.get("/me", headers=driver)
    assert me.status_code == 200
    assert me.json()["has_entitlement"] is True
    assert me.json()["credits_valid_until"].endswith(("Z", "+00:00"))

    order = _create(client)
    assert client.post(f"/orders/{order['id']}/accept", headers=driver).status_code == 200
