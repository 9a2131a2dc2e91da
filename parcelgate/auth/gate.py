"""Authorization gate: does a resolved Principal satisfy a route's policy?

Rules:
  - Human principals: ``role in roles``. Exact membership, no hierarchy, so an
    admin-only route refuses warehouse_staff and vice versa. ``roles=None``
    means the route admits no human principal.
  - Machine principals: every permission in ``permissions`` must be held.
    ``permissions=None`` means the route admits no machine principal; an
    empty list admits any machine principal.
  - Courier scope (machine only): when the route names a courier, the key's
    courier code must match it (case-insensitive). Checked before
    permissions, so a cross-courier call reports ScopeMismatch.
"""

from __future__ import annotations

from typing import Iterable, Optional

from parcelgate.auth.errors import ForbiddenError, ForbiddenKind
from parcelgate.auth.models import Principal, Role
from parcelgate.utils.logger import get_logger

logger = get_logger(__name__)


def authorize(
    principal: Principal,
    roles: Optional[Iterable[Role]] = None,
    permissions: Optional[Iterable[str]] = None,
    courier_code: Optional[str] = None,
) -> Principal:
    """Return ``principal`` unchanged if allowed, else raise ForbiddenError."""
    if principal.is_human:
        allowed = frozenset(roles) if roles is not None else frozenset()
        if principal.role not in allowed:
            logger.warning(
                "access_denied_role",
                principal_id=principal.id,
                role=principal.role.value if principal.role else None,
                required_roles=sorted(r.value for r in allowed),
            )
            raise ForbiddenError(
                "Your role does not grant access to this resource",
                required={"roles": sorted(r.value for r in allowed)},
                actual=principal.describe(),
            )
        return principal

    if permissions is None:
        logger.warning("access_denied_machine", key_id=principal.key_id)
        raise ForbiddenError(
            "API keys cannot access this resource",
            required={"kind": "human"},
            actual=principal.describe(),
        )

    if courier_code is not None:
        enforce_courier_scope(principal, courier_code)

    required = list(dict.fromkeys(permissions))
    missing = [p for p in required if p not in principal.permissions]
    if missing:
        logger.warning(
            "access_denied_permission",
            key_id=principal.key_id,
            missing=missing,
        )
        raise ForbiddenError(
            f"API key lacks required permission(s): {', '.join(missing)}",
            required={"permissions": required},
            actual=principal.describe(),
        )
    return principal


def enforce_courier_scope(principal: Principal, courier_code: str) -> None:
    """Raise ScopeMismatch unless a machine principal is scoped to ``courier_code``.

    Human principals are not courier-scoped and pass unchanged; their access
    is governed by role alone.
    """
    if not principal.is_machine:
        return
    held = principal.scope.courier_code if principal.scope else None
    if held is None or held.upper() != courier_code.upper():
        logger.warning(
            "access_denied_scope",
            key_id=principal.key_id,
            key_courier=held,
            requested_courier=courier_code,
        )
        raise ForbiddenError(
            f"API key is not scoped to courier '{courier_code}'",
            required={"courier_code": courier_code.upper()},
            actual=principal.describe(),
            kind=ForbiddenKind.SCOPE_MISMATCH,
        )
