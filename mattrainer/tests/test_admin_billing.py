"""Admin cancel endpoint, admin gate and audit trail."""
import pytest

from mattrainer.core.config import settings
from mattrainer.features.billing import store
from mattrainer.features.billing.admin_service import get_admin_audit
from mattrainer.features.billing.models import BillingStatus

ADMIN_KEY = "test-admin-key"
URL = "/api/admin/billing/users/{user_id}/cancel-subscription"


@pytest.fixture(autouse=True)
def admin_key(monkeypatch):
    monkeypatch.setattr(settings, "ADMIN_KEY", ADMIN_KEY)


def _subscribe(payer_id="user_1", subscription_id="sc_1"):
    store.ensure_entitlement(payer_id)
    store.attach_subscription_if_unset(payer_id, subscription_id)


def test_admin_key_cancels_and_audits(client, fake_gateway):
    _subscribe()

    resp = client.post(URL.format(user_id="user_1"), headers={"X-Admin-Key": ADMIN_KEY})

    assert resp.status_code == 200
    assert resp.json() == {"ok": True, "already": False, "user_id": "user_1"}
    assert fake_gateway.cancelled == ["sc_1"]
    assert store.get_entitlement("user_1").billing_status == BillingStatus.CANCELLED

    audit = get_admin_audit("user_1")
    assert len(audit) == 1
    assert audit[0]["action"] == "cancel_subscription"
    assert audit[0]["actor"].startswith("legacy:")
    assert audit[0]["target_resource"] == "sc_1"
    assert audit[0]["payload"] == {"already": False}


def test_admin_principal_is_allowed(client):
    _subscribe()
    headers = {"X-User-Id": "admin_1", "X-User-Role": "admin"}

    resp = client.post(URL.format(user_id="user_1"), headers=headers)

    assert resp.status_code == 200
    assert get_admin_audit("user_1")[0]["actor"] == "admin_1"


def test_repeat_cancel_reports_already(client):
    _subscribe()
    headers = {"X-Admin-Key": ADMIN_KEY}
    client.post(URL.format(user_id="user_1"), headers=headers)

    resp = client.post(URL.format(user_id="user_1"), headers=headers)

    assert resp.json()["already"] is True
    assert len(get_admin_audit("user_1")) == 2


def test_unknown_user_is_404(client):
    resp = client.post(URL.format(user_id="ghost"), headers={"X-Admin-Key": ADMIN_KEY})
    assert resp.status_code == 404
    assert resp.json()["error"]["code"] == "payer_not_found"
    assert get_admin_audit("ghost") == []


def test_wrong_key_is_401(client):
    resp = client.post(URL.format(user_id="user_1"), headers={"X-Admin-Key": "nope"})
    assert resp.status_code == 401
    assert resp.json()["error"]["code"] == "admin_unauthorized"


def test_non_admin_principal_is_403(client):
    _subscribe()
    resp = client.post(URL.format(user_id="user_1"), headers={"X-User-Id": "user_2"})
    assert resp.status_code == 403
    assert store.get_entitlement("user_1").gateway_subscription_id == "sc_1"


def test_admin_key_disabled_when_unset(client, monkeypatch):
    monkeypatch.setattr(settings, "ADMIN_KEY", None)
    resp = client.post(URL.format(user_id="user_1"), headers={"X-Admin-Key": ADMIN_KEY})
    assert resp.status_code == 401


def test_gateway_failure_is_audited(client, fake_gateway):
    from mattrainer.features.billing.provider import GatewayError

    _subscribe()
    fake_gateway.cancel_error = GatewayError("declined")

    resp = client.post(URL.format(user_id="user_1"), headers={"X-Admin-Key": ADMIN_KEY})

    assert resp.status_code == 502
    audit = get_admin_audit("user_1")
    assert audit[0]["payload"] == {"error": "gateway_unavailable"}
    assert store.get_entitlement("user_1").gateway_subscription_id == "sc_1"


def test_audit_listing(client):
    _subscribe("user_1", "sc_1")
    _subscribe("user_2", "sc_2")
    headers = {"X-Admin-Key": ADMIN_KEY}
    client.post(URL.format(user_id="user_1"), headers=headers)
    client.post(URL.format(user_id="user_2"), headers=headers)

    resp = client.get("/api/admin/billing/audit", headers=headers)
    assert resp.status_code == 200
    items = resp.json()["items"]
    assert [item["target_user_id"] for item in items] == ["user_2", "user_1"]

    resp = client.get("/api/admin/billing/audit", params={"user_id": "user_1"}, headers=headers)
    assert [item["target_resource"] for item in resp.json()["items"]] == ["sc_1"]


def test_audit_listing_requires_admin(client):
    resp = client.get("/api/admin/billing/audit", headers={"X-User-Id": "user_1"})
    assert resp.status_code == 403


def test_storage_failure_is_503(client):
    from unittest.mock import patch
    from sqlalchemy.exc import OperationalError

    failure = OperationalError("SELECT", {}, Exception("connection refused"))
    with patch("mattrainer.features.billing.admin_service.store.get_entitlement", side_effect=failure):
        resp = client.post(URL.format(user_id="user_1"), headers={"X-Admin-Key": ADMIN_KEY})

    assert resp.status_code == 503
    assert resp.json()["error"]["code"] == "storage_unavailable"
