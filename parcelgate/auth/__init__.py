"""Credential resolution, authorization and API key lifecycle.

Route handlers normally need only the FastAPI dependencies:

    from parcelgate.auth import Principal, Role, require_access

    @router.get("/api/kcd/customers")
    async def customers(
        principal: Principal = Depends(
            require_access(roles=[Role.ADMIN], permissions=["kcd_integration"])
        ),
    ): ...
"""

from parcelgate.auth.errors import (
    AccountInactiveError,
    AuthenticationError,
    AuthFailure,
    DuplicateKeyError,
    ForbiddenError,
    ForbiddenKind,
    InvalidScopeError,
    NotFoundError,
    ParcelGateError,
)
from parcelgate.auth.gate import authorize, enforce_courier_scope
from parcelgate.auth.middleware import (
    authenticate_human,
    authenticate_machine,
    authenticate_request,
    authenticate_webhook,
    require_access,
    require_admin,
)
from parcelgate.auth.models import (
    ApiKeyRecord,
    KeyScope,
    Principal,
    PrincipalKind,
    RateLimitPolicy,
    Role,
    WebhookContext,
)
from parcelgate.auth.resolver import CredentialResolver

__all__ = [
    "AccountInactiveError",
    "ApiKeyRecord",
    "AuthFailure",
    "AuthenticationError",
    "CredentialResolver",
    "DuplicateKeyError",
    "ForbiddenError",
    "ForbiddenKind",
    "InvalidScopeError",
    "KeyScope",
    "NotFoundError",
    "ParcelGateError",
    "Principal",
    "PrincipalKind",
    "RateLimitPolicy",
    "Role",
    "WebhookContext",
    "authenticate_human",
    "authenticate_machine",
    "authenticate_request",
    "authenticate_webhook",
    "authorize",
    "enforce_courier_scope",
    "require_access",
    "require_admin",
]
