"""
Admin billing operations.

Every admin cancel leaves a row in billing_admin_audit, including attempts
the gateway refused.
"""
import json
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import select, insert

from mattrainer.core.database import get_db_session, billing_admin_audit
from mattrainer.core.errors import AppError, NotFoundError
from mattrainer.features.billing import store
from mattrainer.features.billing.periods import isoformat_or_none, as_utc, normalize_now
from mattrainer.features.billing.service import BillingRuntime, cancel_subscription

ACTION_CANCEL_SUBSCRIPTION = "cancel_subscription"
MAX_AUDIT_LIMIT = 200


def record_admin_audit(
    actor: str,
    action: str,
    target_user_id: Optional[str] = None,
    target_resource: Optional[str] = None,
    payload: Optional[dict] = None,
    now: Optional[datetime] = None,
) -> None:
    """
    Append an audit row.

    Args:
        actor: Admin principal id, or "legacy:<hash>" for the shared admin key
        action: What was done (e.g. "cancel_subscription")
        target_resource: Gateway subscription id the action touched, if any
        payload: JSON-serializable outcome details
    """
    with get_db_session() as session:
        session.execute(
            insert(billing_admin_audit).values(
                actor=actor,
                action=action,
                target_user_id=target_user_id,
                target_resource=target_resource,
                payload_json=json.dumps(payload, sort_keys=True) if payload else None,
                created_at=normalize_now(now),
            )
        )


def _audit_row(row) -> Dict[str, Any]:
    return {
        "id": row.id,
        "actor": row.actor,
        "action": row.action,
        "target_user_id": row.target_user_id,
        "target_resource": row.target_resource,
        "payload": json.loads(row.payload_json) if row.payload_json else None,
        "created_at": isoformat_or_none(as_utc(row.created_at)),
    }


def get_admin_audit(target_user_id: Optional[str] = None, limit: int = 50) -> List[Dict[str, Any]]:
    """Newest first, capped at MAX_AUDIT_LIMIT rows."""
    limit = max(1, min(limit, MAX_AUDIT_LIMIT))
    query = select(billing_admin_audit)
    if target_user_id:
        query = query.where(billing_admin_audit.c.target_user_id == target_user_id)
    query = query.order_by(billing_admin_audit.c.id.desc()).limit(limit)

    with get_db_session() as session:
        return [_audit_row(row) for row in session.execute(query).fetchall()]


def admin_cancel_subscription(
    user_id: str,
    actor: str,
    *,
    runtime: Optional[BillingRuntime] = None,
    now: Optional[datetime] = None,
) -> dict:
    """
    Cancel a payer's subscription on an admin's behalf.

    Raises:
        NotFoundError: the user has no billing record (nothing is audited)
        GatewayUnavailableError / ConflictError: audited with the error code,
            then re-raised
    """
    entitlement = store.get_entitlement(user_id)
    if entitlement is None:
        raise NotFoundError(f"No billing record for user: {user_id}", code="payer_not_found")

    audit = dict(
        actor=actor,
        action=ACTION_CANCEL_SUBSCRIPTION,
        target_user_id=user_id,
        target_resource=entitlement.gateway_subscription_id,
        now=now,
    )
    try:
        result = cancel_subscription(user_id, runtime=runtime, now=now)
    except AppError as e:
        record_admin_audit(payload={"error": e.code}, **audit)
        raise

    record_admin_audit(payload={"already": result["already"]}, **audit)
    return {**result, "user_id": user_id}
