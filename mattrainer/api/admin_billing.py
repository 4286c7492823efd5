"""
Admin-only billing operations router.
Requires an admin principal or the X-Admin-Key header.
"""
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.exc import SQLAlchemyError

from mattrainer.core.admin_auth import AdminActor, require_admin
from mattrainer.core.errors import StorageUnavailableError
from mattrainer.core.logging import log_event
from mattrainer.features.billing.admin_service import (
    MAX_AUDIT_LIMIT,
    admin_cancel_subscription,
    get_admin_audit,
)

router = APIRouter(prefix="/admin/billing", tags=["admin-billing"])


@router.post("/users/{user_id}/cancel-subscription")
def cancel_user_subscription(user_id: str, actor: AdminActor = Depends(require_admin)):
    """
    Cancel a user's recurring subscription.

    Same semantics as the user cancel, plus an audit row.

    Errors:
        404: User has no billing record
        409: Subscription replaced while cancelling
        502: Gateway rejected or did not answer the cancel
        503: Billing storage unavailable
    """
    try:
        result = admin_cancel_subscription(user_id, actor.actor_id)
    except SQLAlchemyError as e:
        log_event("error", "admin.billing.storage_error", payer_id=user_id, error_code="storage_unavailable",
                  extra={"actor": actor.actor_id, "error": str(e)})
        raise StorageUnavailableError("Billing storage unavailable")
    log_event(
        "info",
        "admin.billing.cancel_subscription",
        payer_id=user_id,
        extra={"actor": actor.actor_id, "auth_mechanism": actor.auth_mechanism, "already": result["already"]},
    )
    return result


@router.get("/audit")
def list_audit(
    user_id: Optional[str] = None,
    limit: int = Query(50, ge=1, le=MAX_AUDIT_LIMIT),
    actor: AdminActor = Depends(require_admin),
):
    """Recent admin billing actions, newest first."""
    try:
        return {"items": get_admin_audit(user_id, limit=limit)}
    except SQLAlchemyError as e:
        log_event("error", "admin.billing.storage_error", error_code="storage_unavailable",
                  extra={"actor": actor.actor_id, "error": str(e)})
        raise StorageUnavailableError("Billing storage unavailable")
