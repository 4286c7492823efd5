"""Subscription store operations against SQLite."""
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select

from mattrainer.core.database import get_db_session, billing_webhook_events
from mattrainer.features.billing import store
from mattrainer.features.billing.models import BillingStatus

NOW = datetime(2025, 3, 10, 12, 0, tzinfo=timezone.utc)


def test_ensure_entitlement_creates_empty_row_once():
    first = store.ensure_entitlement("user_1", NOW)
    second = store.ensure_entitlement("user_1", NOW + timedelta(hours=1))

    assert first.payer_id == "user_1"
    assert first.billing_status == BillingStatus.NONE
    assert first.trial_ends_at is None
    assert first.paid_until is None
    assert first.is_pristine
    assert second.created_at == first.created_at


def test_get_entitlement_unknown_is_none():
    assert store.get_entitlement("nobody") is None


def test_timestamps_come_back_as_utc():
    store.ensure_entitlement("user_1", NOW)
    entitlement = store.get_entitlement("user_1")
    assert entitlement.billing_updated_at == NOW
    assert entitlement.billing_updated_at.tzinfo == timezone.utc


def test_grant_trial_once_only_grants_once():
    store.ensure_entitlement("user_1", NOW)
    assert store.grant_trial_once("user_1", NOW + timedelta(days=7), NOW) is True
    assert store.grant_trial_once("user_1", NOW + timedelta(days=14), NOW) is False
    assert store.get_entitlement("user_1").trial_ends_at == NOW + timedelta(days=7)


def test_grant_trial_skips_payers_with_billing_history():
    store.ensure_entitlement("user_1", NOW)
    with store.locked_entitlement("user_1") as (session, _):
        store.update_entitlement(session, "user_1", billing_status=BillingStatus.CANCELLED)
    assert store.grant_trial_once("user_1", NOW + timedelta(days=7), NOW) is False


def test_locked_update_commits():
    store.ensure_entitlement("user_1", NOW)
    with store.locked_entitlement("user_1") as (session, entitlement):
        assert entitlement.payer_id == "user_1"
        store.update_entitlement(session, "user_1", paid_until=NOW + timedelta(days=30), billing_status=BillingStatus.ACTIVE)

    entitlement = store.get_entitlement("user_1")
    assert entitlement.paid_until == NOW + timedelta(days=30)
    assert entitlement.billing_status == BillingStatus.ACTIVE


def test_locked_update_rolls_back_on_error():
    store.ensure_entitlement("user_1", NOW)
    with pytest.raises(RuntimeError):
        with store.locked_entitlement("user_1") as (session, _):
            store.update_entitlement(session, "user_1", paid_until=NOW + timedelta(days=30))
            raise RuntimeError("boom")

    assert store.get_entitlement("user_1").paid_until is None


def test_locked_entitlement_unknown_payer():
    with store.locked_entitlement("nobody") as (_, entitlement):
        assert entitlement is None


def test_attach_subscription_only_when_unset():
    store.ensure_entitlement("user_1", NOW)
    assert store.attach_subscription_if_unset("user_1", "sc_1", NOW) is True
    assert store.attach_subscription_if_unset("user_1", "sc_2", NOW) is False
    assert store.get_entitlement("user_1").gateway_subscription_id == "sc_1"
    assert store.attach_subscription_if_unset("nobody", "sc_3", NOW) is False


def test_clear_subscription_keeps_paid_until():
    store.ensure_entitlement("user_1", NOW)
    with store.locked_entitlement("user_1") as (session, _):
        store.update_entitlement(
            session, "user_1",
            paid_until=NOW + timedelta(days=30),
            gateway_subscription_id="sc_1",
            card_token="tok_1",
            billing_status=BillingStatus.ACTIVE,
        )
    with store.locked_entitlement("user_1") as (session, _):
        store.clear_subscription(session, "user_1", NOW)

    entitlement = store.get_entitlement("user_1")
    assert entitlement.billing_status == BillingStatus.CANCELLED
    assert entitlement.gateway_subscription_id is None
    assert entitlement.card_token is None
    assert entitlement.paid_until == NOW + timedelta(days=30)


def test_claim_webhook_event_is_unique_per_kind_and_key():
    with get_db_session() as session:
        assert store.claim_webhook_event(session, "pay", "504", "hash", payer_id="user_1", now=NOW) is True
    with get_db_session() as session:
        assert store.claim_webhook_event(session, "pay", "504", "hash", now=NOW) is False
        assert store.claim_webhook_event(session, "fail", "504", "hash", now=NOW) is True

    assert store.count_webhook_events() == 2


def test_claim_rolls_back_with_transaction():
    with pytest.raises(RuntimeError):
        with get_db_session() as session:
            store.claim_webhook_event(session, "pay", "504", "hash", now=NOW)
            raise RuntimeError("apply failed")

    with get_db_session() as session:
        rows = session.execute(select(billing_webhook_events)).fetchall()
    assert rows == []


def test_purge_webhook_events_deletes_only_old_claims():
    with get_db_session() as session:
        store.claim_webhook_event(session, "pay", "old", "h", now=NOW - timedelta(days=100))
        store.claim_webhook_event(session, "pay", "new", "h", now=NOW - timedelta(days=1))

    assert store.purge_webhook_events(NOW - timedelta(days=90)) == 1
    assert store.count_webhook_events() == 1


def test_referral_first_paid_set_once():
    store.attribute_referral("user_1", "referrer_1", NOW - timedelta(days=3))
    with get_db_session() as session:
        assert store.mark_referral_first_paid(session, "user_1", NOW) is True
    with get_db_session() as session:
        assert store.mark_referral_first_paid(session, "user_1", NOW + timedelta(days=30)) is False

    referral = store.get_referral("user_1")
    assert referral["referrer_id"] == "referrer_1"
    assert referral["first_paid_at"] == NOW


def test_mark_referral_without_attribution_is_noop():
    with get_db_session() as session:
        assert store.mark_referral_first_paid(session, "user_1", NOW) is False
    assert store.get_referral("user_1") is None


def test_delegation_links_replace_and_unlink():
    store.link_beneficiary("child_1", "payer_1", NOW)
    assert store.get_linked_payer("child_1") == "payer_1"

    store.link_beneficiary("child_1", "payer_2", NOW)
    assert store.get_linked_payer("child_1") == "payer_2"

    assert store.unlink_beneficiary("child_1") is True
    assert store.get_linked_payer("child_1") is None
    assert store.unlink_beneficiary("child_1") is False
