"""
Webhook event processor.

Applies verified gateway notifications to payer entitlements:
- PaymentSucceeded extends paid_until by one period from
  max(now, paid_until, trial_ends_at) and, on a first payment with a card
  token, registers the recurring subscription at the gateway
- RecurringStatusChanged mirrors the gateway's subscription status
- PaymentFailed marks the payer past due

Every handler acknowledges unknown payers without creating state. Storage
errors propagate so the gateway retries.
"""
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError

from mattrainer.core.config import BillingPolicy
from mattrainer.core.logging import log_event
from mattrainer.features.billing import store
from mattrainer.features.billing.models import BillingStatus, map_gateway_status
from mattrainer.features.billing.notifications import (
    PaymentFailed,
    PaymentSucceeded,
    RecurringStatusChanged,
)
from mattrainer.features.billing.periods import next_paid_until, normalize_now
from mattrainer.features.billing.provider import GatewayClient, GatewayError

EVENT_PAY = "pay"
EVENT_RECURRENT = "recurrent"
EVENT_FAIL = "fail"


class WebhookOutcome(str, Enum):
    PROCESSED = "processed"
    UNKNOWN_PAYER = "unknown_payer"
    DUPLICATE = "duplicate"
    IGNORED = "ignored"


@dataclass(frozen=True)
class WebhookResult:
    outcome: WebhookOutcome
    payer_id: Optional[str] = None
    paid_until: Optional[datetime] = None
    billing_status: Optional[BillingStatus] = None
    gateway_subscription_id: Optional[str] = None
    subscription_created: bool = False


def subscription_description(policy: BillingPolicy) -> str:
    return f"{policy.description} ({policy.price} {policy.currency}/month)"


def handle_payment_succeeded(
    event: PaymentSucceeded,
    *,
    gateway: GatewayClient,
    policy: BillingPolicy,
    dedup_key: Optional[str] = None,
    payload_hash: str = "",
    now: Optional[datetime] = None,
) -> WebhookResult:
    """
    Apply a successful payment.

    The paid window, status and referral mark are written under the payer's
    row lock. Subscription creation happens after the lock is released and
    its id is attached by a second conditional update.
    """
    now = normalize_now(now)
    payer_id = event.payer_id
    if not payer_id:
        log_event("info", "billing.webhook.missing_payer", event_type=EVENT_PAY,
                  extra={"transaction_id": event.transaction_id, "invoice_id": event.invoice_id})
        return WebhookResult(outcome=WebhookOutcome.IGNORED)

    with store.locked_entitlement(payer_id) as (session, entitlement):
        if entitlement is None:
            log_event("info", "billing.webhook.unknown_payer", payer_id=payer_id, event_type=EVENT_PAY,
                      extra={"transaction_id": event.transaction_id, "invoice_id": event.invoice_id})
            return WebhookResult(outcome=WebhookOutcome.UNKNOWN_PAYER, payer_id=payer_id)

        if dedup_key and not store.claim_webhook_event(
            session, EVENT_PAY, dedup_key, payload_hash, payer_id=payer_id, now=now
        ):
            log_event("info", "billing.webhook.duplicate", payer_id=payer_id, event_type=EVENT_PAY,
                      extra={"transaction_id": dedup_key})
            return WebhookResult(outcome=WebhookOutcome.DUPLICATE, payer_id=payer_id)

        paid_until = next_paid_until(now, entitlement.paid_until, entitlement.trial_ends_at)
        subscription_id = event.gateway_subscription_id or entitlement.gateway_subscription_id

        values = {
            "paid_until": paid_until,
            "billing_status": BillingStatus.ACTIVE,
            "billing_updated_at": now,
        }
        if event.gateway_subscription_id:
            values["gateway_subscription_id"] = event.gateway_subscription_id
        if event.card_fingerprint:
            values["card_fingerprint"] = event.card_fingerprint
        if not subscription_id and event.card_token:
            values["card_token"] = event.card_token

        store.update_entitlement(session, payer_id, **values)
        first_paid = store.mark_referral_first_paid(session, payer_id, now)

    log_event(
        "info",
        "billing.payment.applied",
        payer_id=payer_id,
        event_type=EVENT_PAY,
        extra={
            "paid_until": paid_until.isoformat(),
            "recurring": bool(subscription_id),
            "has_token": bool(event.card_token),
            "card": event.card_fingerprint,
            "referral_first_paid": first_paid,
            "transaction_id": event.transaction_id,
            "invoice_id": event.invoice_id,
        },
    )

    if subscription_id or not event.card_token:
        return WebhookResult(
            outcome=WebhookOutcome.PROCESSED,
            payer_id=payer_id,
            paid_until=paid_until,
            billing_status=BillingStatus.ACTIVE,
            gateway_subscription_id=subscription_id,
        )

    created_id = _create_subscription(event, gateway=gateway, policy=policy, paid_until=paid_until, now=now)
    return WebhookResult(
        outcome=WebhookOutcome.PROCESSED,
        payer_id=payer_id,
        paid_until=paid_until,
        billing_status=BillingStatus.ACTIVE,
        gateway_subscription_id=created_id,
        subscription_created=created_id is not None,
    )


def _create_subscription(
    event: PaymentSucceeded,
    *,
    gateway: GatewayClient,
    policy: BillingPolicy,
    paid_until: datetime,
    now: datetime,
) -> Optional[str]:
    """Register auto-renew anchored at the new paid_until. Failures never undo the payment."""
    payer_id = event.payer_id
    try:
        created = gateway.create_recurring_subscription(
            card_token=event.card_token,
            payer_id=payer_id,
            amount=policy.price,
            currency=policy.currency,
            start_date=paid_until,
            description=subscription_description(policy),
            email=event.email,
        )
    except GatewayError as e:
        log_event("error", "billing.subscription.create_failed", payer_id=payer_id, event_type=EVENT_PAY,
                  error_code="gateway_error",
                  extra={"error": str(e), "status_code": e.status_code, "transaction_id": event.transaction_id})
        return None

    try:
        attached = store.attach_subscription_if_unset(payer_id, created.subscription_id, now)
    except SQLAlchemyError as e:
        log_event("error", "billing.subscription.attach_failed", payer_id=payer_id, event_type=EVENT_PAY,
                  error_code="storage_error",
                  extra={"gateway_subscription_id": created.subscription_id, "error": str(e)})
        return None

    if attached:
        log_event("info", "billing.subscription.created", payer_id=payer_id, event_type=EVENT_PAY,
                  extra={"gateway_subscription_id": created.subscription_id, "start_date": paid_until.isoformat()})
        return created.subscription_id

    if store.get_entitlement(payer_id) is None:
        log_event("warning", "billing.subscription.attach_failed", payer_id=payer_id, event_type=EVENT_PAY,
                  error_code="payer_missing",
                  extra={"gateway_subscription_id": created.subscription_id})
        return None

    # Another delivery attached a subscription first; drop ours so the payer is charged once
    log_event("warning", "billing.subscription.duplicate", payer_id=payer_id, event_type=EVENT_PAY,
              extra={"gateway_subscription_id": created.subscription_id})
    try:
        gateway.cancel_subscription(created.subscription_id)
    except GatewayError as e:
        log_event("error", "billing.subscription.duplicate_cancel_failed", payer_id=payer_id,
                  event_type=EVENT_PAY, error_code="gateway_error",
                  extra={"gateway_subscription_id": created.subscription_id, "error": str(e)})
    return None


def handle_recurring_status_changed(
    event: RecurringStatusChanged,
    *,
    now: Optional[datetime] = None,
) -> WebhookResult:
    """Mirror the gateway's subscription status. Never touches paid_until."""
    now = normalize_now(now)
    payer_id = event.payer_id
    if not payer_id:
        log_event("info", "billing.webhook.missing_payer", event_type=EVENT_RECURRENT,
                  extra={"gateway_subscription_id": event.gateway_subscription_id})
        return WebhookResult(outcome=WebhookOutcome.IGNORED)

    status = map_gateway_status(event.gateway_status)
    if status is None:
        log_event("info", "billing.recurrent.unmapped_status", payer_id=payer_id, event_type=EVENT_RECURRENT,
                  extra={"gateway_status": event.gateway_status,
                         "gateway_subscription_id": event.gateway_subscription_id})
        return WebhookResult(outcome=WebhookOutcome.IGNORED, payer_id=payer_id)

    with store.locked_entitlement(payer_id) as (session, entitlement):
        if entitlement is None:
            log_event("info", "billing.webhook.unknown_payer", payer_id=payer_id, event_type=EVENT_RECURRENT)
            return WebhookResult(outcome=WebhookOutcome.UNKNOWN_PAYER, payer_id=payer_id)

        current_id = entitlement.gateway_subscription_id
        if status == BillingStatus.CANCELLED:
            if current_id and event.gateway_subscription_id and current_id != event.gateway_subscription_id:
                # Terminal notice for a subscription that was already replaced
                log_event("info", "billing.recurrent.stale_subscription", payer_id=payer_id, event_type=EVENT_RECURRENT,
                          extra={"gateway_status": event.gateway_status,
                                 "gateway_subscription_id": event.gateway_subscription_id,
                                 "current_subscription_id": current_id})
                return WebhookResult(outcome=WebhookOutcome.IGNORED, payer_id=payer_id)
            # A dead id on file would route the next first payment down the recurring branch
            store.clear_subscription(session, payer_id, now)
            stored_id = None
        else:
            values = {"billing_status": status, "billing_updated_at": now}
            if event.gateway_subscription_id:
                values["gateway_subscription_id"] = event.gateway_subscription_id
            store.update_entitlement(session, payer_id, **values)
            stored_id = event.gateway_subscription_id or current_id

    log_event("info", "billing.recurrent.status_applied", payer_id=payer_id, event_type=EVENT_RECURRENT,
              extra={"gateway_status": event.gateway_status, "billing_status": status.value,
                     "gateway_subscription_id": event.gateway_subscription_id})
    return WebhookResult(
        outcome=WebhookOutcome.PROCESSED,
        payer_id=payer_id,
        paid_until=entitlement.paid_until,
        billing_status=status,
        gateway_subscription_id=stored_id,
    )


def handle_payment_failed(
    event: PaymentFailed,
    *,
    dedup_key: Optional[str] = None,
    payload_hash: str = "",
    now: Optional[datetime] = None,
) -> WebhookResult:
    """Mark the payer past due. Access keeps following paid_until."""
    now = normalize_now(now)
    payer_id = event.payer_id
    if not payer_id:
        log_event("info", "billing.webhook.missing_payer", event_type=EVENT_FAIL,
                  extra={"transaction_id": event.transaction_id})
        return WebhookResult(outcome=WebhookOutcome.IGNORED)

    with store.locked_entitlement(payer_id) as (session, entitlement):
        if entitlement is None:
            log_event("info", "billing.webhook.unknown_payer", payer_id=payer_id, event_type=EVENT_FAIL,
                      extra={"transaction_id": event.transaction_id})
            return WebhookResult(outcome=WebhookOutcome.UNKNOWN_PAYER, payer_id=payer_id)

        if dedup_key and not store.claim_webhook_event(
            session, EVENT_FAIL, dedup_key, payload_hash, payer_id=payer_id, now=now
        ):
            log_event("info", "billing.webhook.duplicate", payer_id=payer_id, event_type=EVENT_FAIL,
                      extra={"transaction_id": dedup_key})
            return WebhookResult(outcome=WebhookOutcome.DUPLICATE, payer_id=payer_id)

        store.update_entitlement(
            session,
            payer_id,
            billing_status=BillingStatus.PAST_DUE,
            billing_updated_at=now,
        )

    log_event("warning", "billing.payment.failed", payer_id=payer_id, event_type=EVENT_FAIL,
              extra={"reason": event.reason, "transaction_id": event.transaction_id,
                     "invoice_id": event.invoice_id})
    return WebhookResult(
        outcome=WebhookOutcome.PROCESSED,
        payer_id=payer_id,
        paid_until=entitlement.paid_until,
        billing_status=BillingStatus.PAST_DUE,
        gateway_subscription_id=entitlement.gateway_subscription_id,
    )
