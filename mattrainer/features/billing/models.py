"""Billing domain types."""
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional


class BillingStatus(str, Enum):
    """Last known gateway-reported subscription health (informational)."""
    NONE = "none"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELLED = "cancelled"


# Gateway recurring status -> local status; unknown values are ignored
GATEWAY_STATUS_MAP = {
    "Active": BillingStatus.ACTIVE,
    "PastDue": BillingStatus.PAST_DUE,
    "Cancelled": BillingStatus.CANCELLED,
    "Rejected": BillingStatus.CANCELLED,
    "Expired": BillingStatus.CANCELLED,
}


def map_gateway_status(raw: Optional[str]) -> Optional[BillingStatus]:
    return GATEWAY_STATUS_MAP.get((raw or "").strip())


@dataclass(frozen=True)
class Entitlement:
    payer_id: str
    trial_ends_at: Optional[datetime]
    paid_until: Optional[datetime]
    billing_status: BillingStatus
    gateway_subscription_id: Optional[str]
    card_fingerprint: Optional[str]
    card_token: Optional[str]
    billing_updated_at: datetime
    created_at: Optional[datetime] = None

    @property
    def is_pristine(self) -> bool:
        """No trial, no paid window, no billing history: eligible for the one-time trial."""
        return (
            self.trial_ends_at is None
            and self.paid_until is None
            and self.billing_status == BillingStatus.NONE
        )


@dataclass(frozen=True)
class Principal:
    """Identity as supplied by the external identity system."""
    principal_id: str
    is_admin: bool = False
