"""
Billing API routes.

- GET  /api/billing/status: billing state and access decision for the caller
- POST /api/billing/cancel: stop auto-renew (idempotent)
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError

from mattrainer.core.auth import get_current_principal
from mattrainer.core.errors import StorageUnavailableError
from mattrainer.features.billing.models import Principal
from mattrainer.features.billing.service import cancel_subscription, get_billing_status

logger = logging.getLogger("mattrainer.billing")

router = APIRouter(prefix="/billing", tags=["billing"])


class AccessResponse(BaseModel):
    ok: bool
    reason: str


class BillingStatusResponse(BaseModel):
    """Caller's billing state. Timestamps are ISO8601 UTC or null."""
    public_id: Optional[str]
    trial_ends_at: Optional[str]
    billing_status: str
    paid_until: Optional[str]
    gateway_subscription_id: Optional[str]
    card_fingerprint: Optional[str]
    billing_updated_at: Optional[str]
    access: AccessResponse


class CancelResponse(BaseModel):
    ok: bool
    already: bool


@router.get("/status", response_model=BillingStatusResponse)
def get_status(principal: Principal = Depends(get_current_principal)):
    """
    Get the caller's billing status.

    The first call for a new non-admin principal grants the one-time trial.

    Errors:
        401: No authenticated principal
        503: Billing storage unavailable
    """
    try:
        return get_billing_status(principal)
    except SQLAlchemyError as e:
        logger.error("billing.status.storage_error", extra={"payer_id": principal.principal_id, "error": str(e)})
        raise StorageUnavailableError("Billing storage unavailable")


@router.post("/cancel", response_model=CancelResponse)
def cancel(principal: Principal = Depends(get_current_principal)):
    """
    Cancel the caller's recurring subscription.

    Returns:
        {"ok": true, "already": bool} (already=true when nothing was on file)

    Errors:
        409: Subscription replaced while cancelling
        502: Gateway rejected or did not answer the cancel
        503: Billing storage unavailable
    """
    try:
        return cancel_subscription(principal.principal_id)
    except SQLAlchemyError as e:
        logger.error("billing.cancel.storage_error", extra={"payer_id": principal.principal_id, "error": str(e)})
        raise StorageUnavailableError("Billing storage unavailable")
