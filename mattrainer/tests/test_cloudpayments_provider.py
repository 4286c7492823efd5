"""CloudPayments client against a mocked transport."""
import base64
import json
from datetime import datetime, timezone

import httpx
import pytest

from mattrainer.core.config import GatewayConfig
from mattrainer.features.billing.cloudpayments_provider import CloudPaymentsProvider
from mattrainer.features.billing.provider import (
    GatewayConfigError,
    GatewayError,
    GatewayTimeoutError,
)

CONFIG = GatewayConfig(
    mode="test",
    public_id="pk_test",
    api_secret="api_secret",
    webhook_secret="api_secret",
    base_url="https://gateway.test",
    timeout_seconds=1.0,
)


def make_provider(handler):
    client = httpx.Client(base_url=CONFIG.base_url, transport=httpx.MockTransport(handler))
    return CloudPaymentsProvider(CONFIG, client=client)


def test_create_subscription_request_and_result():
    seen = {}

    def handler(request: httpx.Request):
        seen["path"] = request.url.path
        seen["auth"] = request.headers.get("authorization")
        seen["payload"] = json.loads(request.content)
        return httpx.Response(200, json={
            "Success": True,
            "Message": None,
            "Model": {
                "Id": "sc_8cf8a9338fb8ebf7202b08d09c938",
                "Status": "Active",
                "StartDateIso": "2025-04-10T12:00:00",
                "NextTransactionDateIso": "2025-04-10T12:00:00",
            },
        })

    provider = make_provider(handler)
    created = provider.create_recurring_subscription(
        card_token="tok_1",
        payer_id="user_1",
        amount=399,
        currency="RUB",
        start_date=datetime(2025, 4, 10, 12, 0, tzinfo=timezone.utc),
        description="MatTrainer subscription",
        email="payer@example.com",
    )

    assert created.subscription_id == "sc_8cf8a9338fb8ebf7202b08d09c938"
    assert created.status == "Active"
    assert created.next_transaction_date == "2025-04-10T12:00:00"
    assert seen["path"] == "/subscriptions/create"
    assert seen["auth"] == "Basic " + base64.b64encode(b"pk_test:api_secret").decode()
    assert seen["payload"] == {
        "token": "tok_1",
        "accountId": "user_1",
        "description": "MatTrainer subscription",
        "amount": 399,
        "currency": "RUB",
        "requireConfirmation": False,
        "startDate": "2025-04-10T12:00:00Z",
        "interval": "Month",
        "period": 1,
        "email": "payer@example.com",
    }


def test_cancel_subscription_request():
    seen = {}

    def handler(request: httpx.Request):
        seen["path"] = request.url.path
        seen["payload"] = json.loads(request.content)
        return httpx.Response(200, json={"Success": True, "Message": None})

    make_provider(handler).cancel_subscription("sc_1")
    assert seen == {"path": "/subscriptions/cancel", "payload": {"id": "sc_1"}}


def test_unsuccessful_reply_raises_with_gateway_message():
    provider = make_provider(lambda request: httpx.Response(200, json={"Success": False, "Message": "Subscription not found"}))
    with pytest.raises(GatewayError, match="Subscription not found"):
        provider.cancel_subscription("sc_missing")


def test_http_error_status_raises():
    provider = make_provider(lambda request: httpx.Response(500, text="oops"))
    with pytest.raises(GatewayError) as exc:
        provider.cancel_subscription("sc_1")
    assert exc.value.status_code == 500
    assert "invalid_json" in str(exc.value)


def test_non_2xx_without_message_uses_status_code():
    provider = make_provider(lambda request: httpx.Response(401, json={}))
    with pytest.raises(GatewayError, match="gateway_request_failed:401"):
        provider.ping()


def test_missing_subscription_id_raises():
    provider = make_provider(lambda request: httpx.Response(200, json={"Success": True, "Model": {"Status": "Active"}}))
    with pytest.raises(GatewayError, match="no subscription id"):
        provider.create_recurring_subscription(
            card_token="tok_1",
            payer_id="user_1",
            amount=1,
            currency="RUB",
            start_date=datetime(2025, 4, 10, tzinfo=timezone.utc),
            description="d",
        )


def test_timeout_is_reported_as_failure():
    def handler(request: httpx.Request):
        raise httpx.ReadTimeout("timed out", request=request)

    with pytest.raises(GatewayTimeoutError):
        make_provider(handler).cancel_subscription("sc_1")


def test_transport_error_is_reported_as_failure():
    def handler(request: httpx.Request):
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(GatewayError):
        make_provider(handler).cancel_subscription("sc_1")


def test_ping_returns_model():
    provider = make_provider(lambda request: httpx.Response(200, json={"Success": True, "Message": "bd6353c3-0ed6-4a65-946f-083664bf8dbd"}))
    assert provider.ping() == ""


def test_missing_credentials_fail_at_construction():
    with pytest.raises(GatewayConfigError):
        CloudPaymentsProvider(GatewayConfig(
            mode="live", public_id="", api_secret="", webhook_secret="",
            base_url="https://gateway.test", timeout_seconds=1.0,
        ))
