"""Billing status and cancel endpoints."""
from datetime import datetime, timedelta, timezone

from mattrainer.features.billing import store
from mattrainer.features.billing.models import BillingStatus
from mattrainer.features.billing.provider import GatewayError
from mattrainer.tests.mocks import PUBLIC_ID

USER = {"X-User-Id": "user_1"}


def _subscribe(payer_id="user_1", subscription_id="sc_1"):
    store.ensure_entitlement(payer_id)
    with store.locked_entitlement(payer_id) as (session, _):
        store.update_entitlement(
            session,
            payer_id,
            paid_until=datetime.now(timezone.utc) + timedelta(days=20),
            billing_status=BillingStatus.ACTIVE,
            gateway_subscription_id=subscription_id,
            card_token="tok_1",
            card_fingerprint="424242******4242",
        )


def test_status_requires_identity(client):
    resp = client.get("/api/billing/status")
    assert resp.status_code == 401
    assert resp.json()["error"]["code"] == "unauthorized"


def test_status_for_new_user_grants_trial(client):
    resp = client.get("/api/billing/status", headers=USER)

    assert resp.status_code == 200
    data = resp.json()
    assert data["public_id"] == PUBLIC_ID
    assert data["billing_status"] == "none"
    assert data["trial_ends_at"].endswith("Z")
    assert data["paid_until"] is None
    assert data["access"] == {"ok": True, "reason": "trial"}

    again = client.get("/api/billing/status", headers=USER).json()
    assert again["trial_ends_at"] == data["trial_ends_at"]


def test_status_for_admin(client):
    resp = client.get("/api/billing/status", headers={"X-User-Id": "admin_1", "X-User-Role": "admin"})
    data = resp.json()
    assert data["access"] == {"ok": True, "reason": "admin"}
    assert data["trial_ends_at"] is None


def test_status_for_subscriber(client):
    _subscribe()
    data = client.get("/api/billing/status", headers=USER).json()

    assert data["billing_status"] == "active"
    assert data["gateway_subscription_id"] == "sc_1"
    assert data["card_fingerprint"] == "424242******4242"
    assert data["access"] == {"ok": True, "reason": "paid"}
    assert "card_token" not in data


def test_cancel_is_idempotent(client, fake_gateway):
    _subscribe()
    paid_until = store.get_entitlement("user_1").paid_until

    first = client.post("/api/billing/cancel", headers=USER)
    second = client.post("/api/billing/cancel", headers=USER)

    assert first.json() == {"ok": True, "already": False}
    assert second.json() == {"ok": True, "already": True}
    assert fake_gateway.cancelled == ["sc_1"]

    entitlement = store.get_entitlement("user_1")
    assert entitlement.billing_status == BillingStatus.CANCELLED
    assert entitlement.gateway_subscription_id is None
    assert entitlement.card_token is None
    assert entitlement.paid_until == paid_until


def test_cancel_without_subscription_is_noop(client, fake_gateway):
    resp = client.post("/api/billing/cancel", headers=USER)
    assert resp.json() == {"ok": True, "already": True}
    assert fake_gateway.cancelled == []


def test_cancel_gateway_failure_keeps_state(client, fake_gateway):
    _subscribe()
    fake_gateway.cancel_error = GatewayError("Subscription not found")

    resp = client.post("/api/billing/cancel", headers=USER)

    assert resp.status_code == 502
    assert resp.json()["error"]["code"] == "gateway_unavailable"
    entitlement = store.get_entitlement("user_1")
    assert entitlement.gateway_subscription_id == "sc_1"
    assert entitlement.billing_status == BillingStatus.ACTIVE


def test_error_envelope_carries_request_id(client):
    resp = client.get("/api/billing/status", headers={"X-Request-Id": "rid-401"})
    assert resp.headers["x-request-id"] == "rid-401"
    assert resp.json()["error"]["request_id"] == "rid-401"


def test_storage_failure_is_user_visible(client):
    from unittest.mock import patch
    from sqlalchemy.exc import OperationalError

    failure = OperationalError("SELECT", {}, Exception("connection refused"))
    with patch("mattrainer.features.billing.service.store.get_entitlement", side_effect=failure):
        resp = client.post("/api/billing/cancel", headers=USER)

    assert resp.status_code == 503
    assert resp.json()["error"]["code"] == "storage_unavailable"
