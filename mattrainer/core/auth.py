"""
Principal resolution.

Identity is owned by the upstream identity layer. It either populates
request.state.principal directly or forwards the authenticated user in
the X-User-Id / X-User-Role headers.
"""
from typing import Optional

from fastapi import Header, Request

from mattrainer.core.errors import UnauthorizedError
from mattrainer.features.billing.models import Principal

ADMIN_ROLE = "admin"


def principal_from_headers(user_id: Optional[str], role: Optional[str]) -> Optional[Principal]:
    user_id = (user_id or "").strip()
    if not user_id:
        return None
    return Principal(principal_id=user_id, is_admin=(role or "").strip().lower() == ADMIN_ROLE)


def get_current_principal(
    request: Request,
    x_user_id: Optional[str] = Header(None, description="Authenticated user id from the identity layer"),
    x_user_role: Optional[str] = Header(None, description="Role of the authenticated user"),
) -> Principal:
    """
    FastAPI dependency returning the calling principal.

    Raises:
        UnauthorizedError: No identity on the request
    """
    principal = getattr(request.state, "principal", None)
    if isinstance(principal, Principal):
        return principal

    principal = principal_from_headers(x_user_id, x_user_role)
    if principal is None:
        raise UnauthorizedError("Missing authenticated principal (X-User-Id)")
    return principal
