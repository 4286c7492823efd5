"""
Subscription store.

Durable state for payer entitlements, beneficiary delegation links,
referral attributions and the webhook seen-set.

Per-payer mutations go through locked_entitlement(), which opens a session
and locks the payer row (SELECT ... FOR UPDATE) so that a read-modify-write
never interleaves with another update for the same payer. Different payers
never contend. Writes made through the yielded session commit together.
"""
from contextlib import contextmanager
from datetime import datetime
from typing import Iterator, Optional, Tuple, Dict, Any

from sqlalchemy import select, insert, update, delete, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from mattrainer.core.database import (
    get_db_session,
    payer_entitlements,
    delegation_links,
    referral_attributions,
    billing_webhook_events,
)
from mattrainer.features.billing.models import BillingStatus, Entitlement
from mattrainer.features.billing.periods import as_utc, normalize_now


def _row_to_entitlement(row) -> Entitlement:
    return Entitlement(
        payer_id=row.payer_id,
        trial_ends_at=as_utc(row.trial_ends_at),
        paid_until=as_utc(row.paid_until),
        billing_status=BillingStatus(row.billing_status),
        gateway_subscription_id=row.gateway_subscription_id,
        card_fingerprint=row.card_fingerprint,
        card_token=row.card_token,
        billing_updated_at=as_utc(row.billing_updated_at),
        created_at=as_utc(row.created_at),
    )


def get_entitlement(payer_id: str) -> Optional[Entitlement]:
    with get_db_session() as session:
        row = session.execute(
            select(payer_entitlements).where(payer_entitlements.c.payer_id == payer_id)
        ).fetchone()
        return _row_to_entitlement(row) if row else None


def ensure_entitlement(payer_id: str, now: Optional[datetime] = None) -> Entitlement:
    """
    Return the payer's entitlement, creating an empty one if missing.

    Only the authentication / access-resolution path calls this; webhooks
    never create rows.
    """
    now = normalize_now(now)
    existing = get_entitlement(payer_id)
    if existing:
        return existing

    try:
        with get_db_session() as session:
            session.execute(
                insert(payer_entitlements).values(
                    payer_id=payer_id,
                    billing_status=BillingStatus.NONE.value,
                    billing_updated_at=now,
                    created_at=now,
                )
            )
            session.commit()
    except IntegrityError:
        # Concurrent first observation created it
        pass

    created = get_entitlement(payer_id)
    if created is None:
        raise RuntimeError(f"entitlement for {payer_id} vanished after insert")
    return created


def grant_trial_once(payer_id: str, trial_ends_at: datetime, now: Optional[datetime] = None) -> bool:
    """
    Grant the one-time trial as a single conditional update.

    The guard (no trial, no paid window, status none) is false forever
    after the first grant, so repeated or concurrent calls grant at most once.
    """
    now = normalize_now(now)
    with get_db_session() as session:
        result = session.execute(
            update(payer_entitlements)
            .where(
                payer_entitlements.c.payer_id == payer_id,
                payer_entitlements.c.trial_ends_at.is_(None),
                payer_entitlements.c.paid_until.is_(None),
                payer_entitlements.c.billing_status == BillingStatus.NONE.value,
            )
            .values(trial_ends_at=trial_ends_at, billing_updated_at=now)
        )
        session.commit()
        return result.rowcount == 1


@contextmanager
def locked_entitlement(payer_id: str) -> Iterator[Tuple[Session, Optional[Entitlement]]]:
    """
    Open a session holding the payer's row lock.

    Yields (session, entitlement); entitlement is None for an unknown payer.
    Commits on normal exit, rolls back on error.
    """
    with get_db_session() as session:
        row = session.execute(
            select(payer_entitlements)
            .where(payer_entitlements.c.payer_id == payer_id)
            .with_for_update()
        ).fetchone()
        yield session, (_row_to_entitlement(row) if row else None)


def update_entitlement(session: Session, payer_id: str, **values: Any) -> None:
    if "billing_status" in values and isinstance(values["billing_status"], BillingStatus):
        values["billing_status"] = values["billing_status"].value
    session.execute(
        update(payer_entitlements)
        .where(payer_entitlements.c.payer_id == payer_id)
        .values(**values)
    )


def attach_subscription_if_unset(payer_id: str, subscription_id: str, now: Optional[datetime] = None) -> bool:
    """
    Persist a newly created gateway subscription id.

    Independent atomic update; only writes when no subscription is on file.
    Returns False when the payer is gone or already has a subscription.
    """
    now = normalize_now(now)
    with get_db_session() as session:
        result = session.execute(
            update(payer_entitlements)
            .where(
                payer_entitlements.c.payer_id == payer_id,
                payer_entitlements.c.gateway_subscription_id.is_(None),
            )
            .values(gateway_subscription_id=subscription_id, billing_updated_at=now)
        )
        session.commit()
        return result.rowcount == 1


def clear_subscription(session: Session, payer_id: str, now: datetime) -> None:
    """Mark cancelled and forget the gateway handle and card token. paid_until is untouched."""
    update_entitlement(
        session,
        payer_id,
        billing_status=BillingStatus.CANCELLED,
        gateway_subscription_id=None,
        card_token=None,
        billing_updated_at=now,
    )


def claim_webhook_event(
    session: Session,
    event_kind: str,
    event_key: str,
    payload_hash: str,
    payer_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> bool:
    """
    Record a notification in the seen-set.

    Runs inside the caller's transaction so the claim commits or rolls
    back together with the state change. Returns False if already claimed.
    """
    existing = session.execute(
        select(billing_webhook_events.c.id).where(
            billing_webhook_events.c.event_kind == event_kind,
            billing_webhook_events.c.event_key == event_key,
        )
    ).fetchone()
    if existing:
        return False

    session.execute(
        insert(billing_webhook_events).values(
            event_kind=event_kind,
            event_key=event_key,
            payer_id=payer_id,
            payload_hash=payload_hash,
            received_at=normalize_now(now),
        )
    )
    return True


def count_webhook_events(older_than: Optional[datetime] = None) -> int:
    with get_db_session() as session:
        query = select(func.count()).select_from(billing_webhook_events)
        if older_than is not None:
            query = query.where(billing_webhook_events.c.received_at < older_than)
        return session.execute(query).scalar() or 0


def purge_webhook_events(older_than: datetime) -> int:
    with get_db_session() as session:
        result = session.execute(
            delete(billing_webhook_events).where(billing_webhook_events.c.received_at < older_than)
        )
        session.commit()
        return result.rowcount


def mark_referral_first_paid(session: Session, referred_id: str, now: datetime) -> bool:
    """Set first_paid_at once; later payments leave it alone."""
    result = session.execute(
        update(referral_attributions)
        .where(
            referral_attributions.c.referred_id == referred_id,
            referral_attributions.c.first_paid_at.is_(None),
        )
        .values(first_paid_at=now)
    )
    return result.rowcount == 1


def attribute_referral(referred_id: str, referrer_id: str, now: Optional[datetime] = None) -> None:
    with get_db_session() as session:
        session.execute(
            insert(referral_attributions).values(
                referred_id=referred_id,
                referrer_id=referrer_id,
                attributed_at=normalize_now(now),
            )
        )
        session.commit()


def get_referral(referred_id: str) -> Optional[Dict[str, Any]]:
    with get_db_session() as session:
        row = session.execute(
            select(referral_attributions).where(referral_attributions.c.referred_id == referred_id)
        ).fetchone()
        if not row:
            return None
        return {
            "referred_id": row.referred_id,
            "referrer_id": row.referrer_id,
            "attributed_at": as_utc(row.attributed_at),
            "first_paid_at": as_utc(row.first_paid_at),
        }


def get_linked_payer(beneficiary_id: str) -> Optional[str]:
    with get_db_session() as session:
        row = session.execute(
            select(delegation_links.c.payer_id).where(delegation_links.c.beneficiary_id == beneficiary_id)
        ).fetchone()
        return row[0] if row else None


def link_beneficiary(beneficiary_id: str, payer_id: str, now: Optional[datetime] = None) -> None:
    """Create or replace the beneficiary's single payer link."""
    with get_db_session() as session:
        session.execute(delete(delegation_links).where(delegation_links.c.beneficiary_id == beneficiary_id))
        session.execute(
            insert(delegation_links).values(
                beneficiary_id=beneficiary_id,
                payer_id=payer_id,
                linked_at=normalize_now(now),
            )
        )
        session.commit()


def unlink_beneficiary(beneficiary_id: str) -> bool:
    with get_db_session() as session:
        result = session.execute(delete(delegation_links).where(delegation_links.c.beneficiary_id == beneficiary_id))
        session.commit()
        return result.rowcount > 0
