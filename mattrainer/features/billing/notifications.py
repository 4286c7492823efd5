"""
Inbound gateway notification parsing.

Turns a verified notification body (JSON or form-encoded) into one of the
typed events the webhook processor consumes. Parsing never raises on
missing optional fields; a missing payer id yields an event with an empty
payer_id which the processor acknowledges and drops.
"""
import json
from dataclasses import dataclass
from typing import Any, Dict, Optional
from urllib.parse import parse_qsl

from mattrainer.features.billing.signature import is_form_encoded


@dataclass(frozen=True)
class PaymentSucceeded:
    payer_id: str
    card_token: Optional[str] = None
    gateway_subscription_id: Optional[str] = None
    card_fingerprint: Optional[str] = None
    email: Optional[str] = None
    transaction_id: Optional[str] = None
    invoice_id: Optional[str] = None


@dataclass(frozen=True)
class RecurringStatusChanged:
    payer_id: str
    gateway_subscription_id: Optional[str]
    gateway_status: str


@dataclass(frozen=True)
class PaymentFailed:
    payer_id: str
    transaction_id: Optional[str] = None
    invoice_id: Optional[str] = None
    reason: Optional[str] = None


class NotificationParseError(ValueError):
    """Body is neither valid JSON nor form-encoded fields."""


def parse_body(raw_body: bytes, content_type: Optional[str]) -> Dict[str, Any]:
    if is_form_encoded(raw_body, content_type):
        try:
            text = raw_body.decode("utf-8")
        except UnicodeDecodeError as e:
            raise NotificationParseError(f"form body is not utf-8: {e}")
        return dict(parse_qsl(text.strip(), keep_blank_values=True))

    if not raw_body.strip():
        return {}
    try:
        body = json.loads(raw_body)
    except ValueError as e:
        raise NotificationParseError(f"invalid JSON body: {e}")
    if not isinstance(body, dict):
        raise NotificationParseError("notification body must be an object")
    return body


def _text(body: Dict[str, Any], key: str) -> str:
    value = body.get(key)
    if value is None or isinstance(value, (dict, list, bool)):
        return ""
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    return str(value).strip()


def _optional(body: Dict[str, Any], key: str) -> Optional[str]:
    return _text(body, key) or None


def card_mask(first_six: str, last_four: str) -> Optional[str]:
    """Masked card descriptor for display, only when both parts are known."""
    if not first_six or not last_four:
        return None
    return f"{first_six}******{last_four}"


def parse_payment_succeeded(body: Dict[str, Any]) -> PaymentSucceeded:
    return PaymentSucceeded(
        payer_id=_text(body, "AccountId"),
        card_token=_optional(body, "Token"),
        gateway_subscription_id=_optional(body, "SubscriptionId"),
        card_fingerprint=card_mask(_text(body, "CardFirstSix"), _text(body, "CardLastFour")),
        email=_optional(body, "Email"),
        transaction_id=_optional(body, "TransactionId"),
        invoice_id=_optional(body, "InvoiceId"),
    )


def parse_recurring_status_changed(body: Dict[str, Any]) -> RecurringStatusChanged:
    return RecurringStatusChanged(
        payer_id=_text(body, "AccountId"),
        gateway_subscription_id=_optional(body, "Id"),
        gateway_status=_text(body, "Status"),
    )


def parse_payment_failed(body: Dict[str, Any]) -> PaymentFailed:
    return PaymentFailed(
        payer_id=_text(body, "AccountId"),
        transaction_id=_optional(body, "TransactionId"),
        invoice_id=_optional(body, "InvoiceId"),
        reason=_optional(body, "Reason"),
    )
