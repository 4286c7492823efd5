"""
Access resolver.

Decides whether a principal currently has access, directly or through a
delegation link to a payer. Time windows decide access; billing_status
alone never does, except for the lifetime case (active with no paid_until).

The only side effect is the one-time trial grant on first observation.
"""
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional, Dict, Any

from mattrainer.core.logging import log_event
from mattrainer.features.billing import store
from mattrainer.features.billing.models import BillingStatus, Entitlement, Principal
from mattrainer.features.billing.periods import normalize_now, trial_window_end


class AccessReason(str, Enum):
    ADMIN = "admin"
    TRIAL = "trial"
    PAID = "paid"
    NONE = "none"


@dataclass(frozen=True)
class AccessDecision:
    ok: bool
    reason: AccessReason

    def to_dict(self) -> Dict[str, Any]:
        return {"ok": self.ok, "reason": self.reason.value}


NO_ACCESS = AccessDecision(ok=False, reason=AccessReason.NONE)


def evaluate_entitlement(
    entitlement: Optional[Entitlement],
    *,
    is_admin: bool = False,
    now: Optional[datetime] = None,
) -> AccessDecision:
    """Pure decision over one entitlement. No store access."""
    if is_admin:
        return AccessDecision(ok=True, reason=AccessReason.ADMIN)
    if entitlement is None:
        return NO_ACCESS

    now = normalize_now(now)
    if entitlement.trial_ends_at and entitlement.trial_ends_at > now:
        return AccessDecision(ok=True, reason=AccessReason.TRIAL)
    if entitlement.paid_until and entitlement.paid_until > now:
        return AccessDecision(ok=True, reason=AccessReason.PAID)
    if entitlement.billing_status == BillingStatus.ACTIVE and entitlement.paid_until is None:
        # Lifetime / manually granted
        return AccessDecision(ok=True, reason=AccessReason.PAID)
    return NO_ACCESS


def observe_login(
    principal: Principal,
    *,
    trial_days: int,
    now: Optional[datetime] = None,
) -> Entitlement:
    """
    Record that a principal was seen by the authentication flow.

    Creates the entitlement row if missing and, for non-admins whose trial,
    paid window and status are all empty, grants the trial exactly once.
    """
    now = normalize_now(now)
    entitlement = store.ensure_entitlement(principal.principal_id, now)
    if principal.is_admin or not entitlement.is_pristine:
        return entitlement

    trial_ends_at = trial_window_end(now, trial_days)
    if store.grant_trial_once(principal.principal_id, trial_ends_at, now):
        log_event("info", "billing.trial.granted", payer_id=principal.principal_id,
                  extra={"trial_ends_at": trial_ends_at.isoformat()})
    return store.get_entitlement(principal.principal_id) or entitlement


def has_access(
    principal: Principal,
    *,
    trial_days: int,
    now: Optional[datetime] = None,
) -> AccessDecision:
    """
    Resolve access for a principal.

    A beneficiary without direct access inherits its linked payer's access,
    always reported as paid.
    """
    now = normalize_now(now)
    entitlement = observe_login(principal, trial_days=trial_days, now=now)
    if principal.is_admin:
        return AccessDecision(ok=True, reason=AccessReason.ADMIN)

    direct = evaluate_entitlement(entitlement, now=now)
    if direct.ok:
        return direct

    payer_id = store.get_linked_payer(principal.principal_id)
    if not payer_id or payer_id == principal.principal_id:
        return direct

    # The payer's own admin flag is not known here and is never inherited
    payer_decision = evaluate_entitlement(store.get_entitlement(payer_id), now=now)
    if payer_decision.ok:
        return AccessDecision(ok=True, reason=AccessReason.PAID)
    return direct
