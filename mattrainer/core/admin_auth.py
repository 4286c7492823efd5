"""
Admin authentication for billing operations.

An admin is either an admin principal from the identity layer or a caller
presenting the shared X-Admin-Key. Every admin action is audited with the
actor identity.
"""
import hashlib
import hmac
from dataclasses import dataclass
from typing import Literal, Optional

from fastapi import Request

from mattrainer.core.auth import principal_from_headers
from mattrainer.core.config import settings
from mattrainer.core.errors import ForbiddenError, UnauthorizedError
from mattrainer.features.billing.models import Principal


@dataclass
class AdminActor:
    """Represents an authenticated admin actor."""
    actor_type: Literal["principal", "legacy_key"]
    actor_id: str  # principal id or "legacy:<hash>"
    auth_mechanism: Literal["identity", "x_admin_key"] = "identity"


def verify_admin_key(request: Request) -> Optional[AdminActor]:
    """Return an actor for a valid X-Admin-Key, None if absent or wrong."""
    expected_key = (settings.ADMIN_KEY or "").strip()
    if not expected_key:
        return None

    header_key = request.headers.get("X-Admin-Key", "").strip()
    if not header_key or not hmac.compare_digest(header_key.encode(), expected_key.encode()):
        return None

    key_hash = hashlib.sha256(header_key.encode()).hexdigest()[:16]
    return AdminActor(actor_type="legacy_key", actor_id=f"legacy:{key_hash}", auth_mechanism="x_admin_key")


def _request_principal(request: Request) -> Optional[Principal]:
    principal = getattr(request.state, "principal", None)
    if isinstance(principal, Principal):
        return principal
    return principal_from_headers(request.headers.get("X-User-Id"), request.headers.get("X-User-Role"))


def require_admin(request: Request) -> AdminActor:
    """
    FastAPI dependency: require an admin principal or a valid admin key.

    Raises:
        ForbiddenError: Authenticated principal is not an admin
        UnauthorizedError: No admin credentials
    """
    principal = _request_principal(request)
    if principal is not None and principal.is_admin:
        return AdminActor(actor_type="principal", actor_id=principal.principal_id)

    actor = verify_admin_key(request)
    if actor:
        return actor

    if principal is not None:
        raise ForbiddenError("Admin role required", code="admin_required")
    raise UnauthorizedError("Invalid or missing admin credentials", code="admin_unauthorized")
