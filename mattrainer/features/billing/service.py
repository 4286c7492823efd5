"""
Billing service orchestrator.

Coordinates:
- Runtime wiring (gateway config, policy, verifier, gateway client),
  selected once at process start
- Inbound notification handling (verify, parse, dedup, apply)
- Billing status read model
- User-initiated cancel

All CloudPayments-specific code is in cloudpayments_provider.py.
"""
import hashlib
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Mapping, Optional

from mattrainer.core.config import (
    BillingPolicy,
    GatewayConfig,
    Settings,
    billing_policy_from_settings,
    resolve_gateway_config,
)
from mattrainer.core.errors import ConflictError, GatewayUnavailableError
from mattrainer.core.logging import log_event
from mattrainer.features.billing import store
from mattrainer.features.billing.access import has_access
from mattrainer.features.billing.cloudpayments_provider import CloudPaymentsProvider
from mattrainer.features.billing.models import Principal
from mattrainer.features.billing.notifications import (
    NotificationParseError,
    parse_body,
    parse_payment_failed,
    parse_payment_succeeded,
    parse_recurring_status_changed,
)
from mattrainer.features.billing.periods import isoformat_or_none, normalize_now
from mattrainer.features.billing.provider import (
    GatewayClient,
    GatewayConfigError,
    GatewayError,
    WebhookSignatureError,
)
from mattrainer.features.billing.signature import SignatureVerifier, get_header
from mattrainer.features.billing.webhooks import (
    EVENT_FAIL,
    EVENT_PAY,
    EVENT_RECURRENT,
    WebhookOutcome,
    WebhookResult,
    handle_payment_failed,
    handle_payment_succeeded,
    handle_recurring_status_changed,
)

NOTIFICATION_KINDS = (EVENT_PAY, EVENT_RECURRENT, EVENT_FAIL)


@dataclass
class BillingRuntime:
    gateway_config: GatewayConfig
    policy: BillingPolicy
    verifier: SignatureVerifier
    gateway: GatewayClient


_runtime: Optional[BillingRuntime] = None


def build_runtime(settings_obj: Optional[Settings] = None) -> BillingRuntime:
    """
    Build the billing runtime from settings.

    Raises:
        GatewayConfigError: If the selected mode lacks credentials or a webhook secret
    """
    gateway_config = resolve_gateway_config(settings_obj)
    if not gateway_config.webhook_secret:
        raise GatewayConfigError(f"webhook secret not configured (mode={gateway_config.mode})")
    return BillingRuntime(
        gateway_config=gateway_config,
        policy=billing_policy_from_settings(settings_obj),
        verifier=SignatureVerifier(gateway_config.webhook_secret),
        gateway=CloudPaymentsProvider(gateway_config),
    )


def get_runtime() -> BillingRuntime:
    global _runtime
    if _runtime is None:
        _runtime = build_runtime()
    return _runtime


def set_runtime(runtime: Optional[BillingRuntime]) -> None:
    """Install a runtime (tests inject a fake gateway here)."""
    global _runtime
    _runtime = runtime


def reset_runtime() -> None:
    set_runtime(None)


def payload_hash(raw_body: bytes) -> str:
    return hashlib.sha256(raw_body).hexdigest()


def _log_rejected(kind: str, raw_body: bytes, content_type: Optional[str]) -> None:
    # Only correlation ids from an unauthenticated body are logged
    try:
        body = parse_body(raw_body, content_type)
    except NotificationParseError:
        body = {}
    log_event(
        "warning",
        "billing.webhook.invalid_signature",
        payer_id=str(body.get("AccountId") or "") or None,
        event_type=kind,
        error_code="invalid_signature",
        extra={"invoice_id": body.get("InvoiceId"), "body_bytes": len(raw_body)},
    )


def process_notification(
    kind: str,
    raw_body: bytes,
    headers: Mapping[str, str],
    *,
    runtime: Optional[BillingRuntime] = None,
    now: Optional[datetime] = None,
) -> WebhookResult:
    """
    Verify and apply one gateway notification.

    Args:
        kind: One of "pay", "recurrent", "fail"
        raw_body: Request body exactly as received
        headers: Request headers (signature headers, content type)

    Returns:
        WebhookResult describing what was applied

    Raises:
        ValueError: If kind is not a known notification kind
        WebhookSignatureError: If no signature header verifies
        SQLAlchemyError: On storage failure (the gateway should retry)
    """
    if kind not in NOTIFICATION_KINDS:
        raise ValueError(f"unknown notification kind: {kind}")

    runtime = runtime or get_runtime()
    content_type = get_header(headers, "content-type")

    match = runtime.verifier.match(raw_body, headers, content_type)
    if match is None:
        _log_rejected(kind, raw_body, content_type)
        raise WebhookSignatureError(f"signature verification failed for {kind} notification")

    try:
        body = parse_body(raw_body, content_type)
    except NotificationParseError as e:
        log_event("error", "billing.webhook.unparseable", event_type=kind, error_code="parse_error",
                  extra={"error": str(e)})
        return WebhookResult(outcome=WebhookOutcome.IGNORED)

    digest = payload_hash(raw_body)
    dedup_enabled = runtime.policy.dedup_enabled

    if kind == EVENT_PAY:
        event = parse_payment_succeeded(body)
        return handle_payment_succeeded(
            event,
            gateway=runtime.gateway,
            policy=runtime.policy,
            dedup_key=event.transaction_id if dedup_enabled else None,
            payload_hash=digest,
            now=now,
        )
    if kind == EVENT_FAIL:
        event = parse_payment_failed(body)
        return handle_payment_failed(
            event,
            dedup_key=event.transaction_id if dedup_enabled else None,
            payload_hash=digest,
            now=now,
        )
    return handle_recurring_status_changed(parse_recurring_status_changed(body), now=now)


def get_billing_status(
    principal: Principal,
    *,
    runtime: Optional[BillingRuntime] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Billing read model for the principal. Performs the one-time trial grant."""
    runtime = runtime or get_runtime()
    now = normalize_now(now)
    access = has_access(principal, trial_days=runtime.policy.trial_days, now=now)
    entitlement = store.get_entitlement(principal.principal_id)

    return {
        "public_id": runtime.gateway_config.public_id or None,
        "trial_ends_at": isoformat_or_none(entitlement.trial_ends_at) if entitlement else None,
        "billing_status": entitlement.billing_status.value if entitlement else "none",
        "paid_until": isoformat_or_none(entitlement.paid_until) if entitlement else None,
        "gateway_subscription_id": entitlement.gateway_subscription_id if entitlement else None,
        "card_fingerprint": entitlement.card_fingerprint if entitlement else None,
        "billing_updated_at": isoformat_or_none(entitlement.billing_updated_at) if entitlement else None,
        "access": access.to_dict(),
    }


def cancel_subscription(
    payer_id: str,
    *,
    runtime: Optional[BillingRuntime] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """
    Stop auto-renew for a payer (idempotent).

    paid_until is never touched; the payer keeps access until it lapses.

    Returns:
        {"ok": True, "already": bool}

    Raises:
        GatewayUnavailableError: If the gateway cancel fails (local state unchanged)
        ConflictError: If the subscription was replaced while cancelling
    """
    runtime = runtime or get_runtime()
    now = normalize_now(now)

    entitlement = store.get_entitlement(payer_id)
    subscription_id = entitlement.gateway_subscription_id if entitlement else None
    if not subscription_id:
        log_event("info", "billing.cancel.noop", payer_id=payer_id)
        return {"ok": True, "already": True}

    try:
        runtime.gateway.cancel_subscription(subscription_id)
    except GatewayError as e:
        log_event("error", "billing.cancel.gateway_failed", payer_id=payer_id, error_code="gateway_error",
                  extra={"gateway_subscription_id": subscription_id, "error": str(e)})
        raise GatewayUnavailableError(f"Payment gateway cancel failed: {e}")

    with store.locked_entitlement(payer_id) as (session, current):
        current_id = current.gateway_subscription_id if current else None
        if current is not None and current_id not in (None, subscription_id):
            log_event("warning", "billing.cancel.subscription_replaced", payer_id=payer_id,
                      extra={"cancelled": subscription_id, "current": current_id})
            raise ConflictError("Subscription changed while cancelling, retry")
        if current is not None:
            store.clear_subscription(session, payer_id, now)

    log_event("info", "billing.cancel.completed", payer_id=payer_id,
              extra={"gateway_subscription_id": subscription_id})
    return {"ok": True, "already": False}
