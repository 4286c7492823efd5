"""
CloudPayments gateway client.

Implements the GatewayClient protocol over the CloudPayments REST API
using httpx. Calls are synchronous with a bounded timeout and no retry;
a timeout is reported as a failure.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import httpx

from mattrainer.core.config import GatewayConfig
from mattrainer.features.billing.provider import (
    CreatedSubscription,
    GatewayConfigError,
    GatewayError,
    GatewayTimeoutError,
)

logger = logging.getLogger(__name__)


def _format_start_date(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="seconds").replace("+00:00", "Z")


class CloudPaymentsProvider:
    """CloudPayments implementation of the GatewayClient protocol."""

    def __init__(self, config: GatewayConfig, client: Optional[httpx.Client] = None):
        """
        Initialize the gateway client.

        Args:
            config: Gateway credentials for the active mode
            client: Optional preconfigured httpx client (tests pass a MockTransport)
        """
        if not config.public_id or not config.api_secret:
            raise GatewayConfigError(f"gateway credentials not configured (mode={config.mode})")

        self.config = config
        self._client = client or httpx.Client(
            base_url=config.base_url,
            timeout=config.timeout_seconds,
        )
        self._auth = httpx.BasicAuth(config.public_id, config.api_secret)

    def close(self) -> None:
        self._client.close()

    def _post(self, path: str, payload: Dict[str, Any]) -> Any:
        try:
            response = self._client.post(
                path,
                json=payload,
                auth=self._auth,
                headers={"accept": "application/json"},
            )
        except httpx.TimeoutException as e:
            raise GatewayTimeoutError(f"gateway timeout on {path}: {e}")
        except httpx.HTTPError as e:
            raise GatewayError(f"gateway transport error on {path}: {e}")

        try:
            body = response.json()
        except ValueError:
            body = {"Success": False, "Message": "invalid_json"}

        if not response.is_success or not isinstance(body, dict) or not body.get("Success"):
            message = (body.get("Message") if isinstance(body, dict) else None) or f"gateway_request_failed:{response.status_code}"
            raise GatewayError(message, status_code=response.status_code)

        return body.get("Model")

    def ping(self) -> str:
        """Check credentials against the gateway test endpoint."""
        model = self._post("/test", {})
        return str(model or "")

    def create_recurring_subscription(
        self,
        *,
        card_token: str,
        payer_id: str,
        amount: int,
        currency: str,
        start_date: datetime,
        description: str,
        interval: str = "Month",
        period: int = 1,
        email: Optional[str] = None,
    ) -> CreatedSubscription:
        """Create a CloudPayments recurring subscription."""
        payload: Dict[str, Any] = {
            "token": card_token,
            "accountId": payer_id,
            "description": description,
            "amount": amount,
            "currency": currency,
            "requireConfirmation": False,
            "startDate": _format_start_date(start_date),
            "interval": interval,
            "period": period,
        }
        if email:
            payload["email"] = email

        model = self._post("/subscriptions/create", payload)
        if not isinstance(model, dict):
            model = {}
        subscription_id = str(model.get("Id") or "")
        if not subscription_id:
            raise GatewayError("gateway returned no subscription id")

        next_date = model.get("NextTransactionDateIso")
        return CreatedSubscription(
            subscription_id=subscription_id,
            status=str(model.get("Status") or ""),
            start_date=model.get("StartDateIso") if isinstance(model.get("StartDateIso"), str) else None,
            next_transaction_date=next_date if isinstance(next_date, str) else None,
        )

    def cancel_subscription(self, subscription_id: str) -> None:
        """Cancel a CloudPayments recurring subscription."""
        self._post("/subscriptions/cancel", {"id": subscription_id})
        logger.info("gateway.subscription_cancelled", extra={"gateway_subscription_id": subscription_id})
