"""Error taxonomy for the ParcelGate auth layer.

Every error carries a machine-readable ``code``, a human-readable ``message``
and the HTTP status it maps to. Conversion to ``HTTPException`` happens at the
FastAPI boundary (middleware.py / router.py) via ``to_http_exception()`` so the
resolver, gate and issuance service stay framework-free.

HTTP mapping:
  AuthenticationError  → 401 (+ WWW-Authenticate, remediation hint)
  AccountInactiveError → 403
  ForbiddenError       → 403 (echoes required vs. actual)
  NotFoundError        → 404 (admin callers only)
  InvalidScopeError    → 400 (admin callers only)
  DuplicateKeyError    → 400 (admin callers only)
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Iterable, Optional

from fastapi import HTTPException

from parcelgate.constants import BEARER_SCHEME

# Endpoint that re-issues a partner key; named in remediation hints.
KEY_REISSUE_ENDPOINT = "POST /api/admin/api-keys"


class AuthFailure(str, Enum):
    """Why a credential could not be resolved to a principal."""

    MISSING_CREDENTIAL = "MissingCredential"
    MALFORMED_CREDENTIAL = "MalformedCredential"
    CREDENTIAL_NOT_FOUND = "CredentialNotFound"
    CREDENTIAL_INACTIVE = "CredentialInactive"
    CREDENTIAL_EXPIRED = "CredentialExpired"
    SESSION_EXPIRED = "SessionExpired"
    SESSION_INVALID = "SessionInvalid"


class ForbiddenKind(str, Enum):
    FORBIDDEN = "Forbidden"
    SCOPE_MISMATCH = "ScopeMismatch"


class ParcelGateError(Exception):
    """Base class for all auth-layer errors."""

    status_code: int = 500
    code: str = "internal_error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_detail(self) -> dict[str, Any]:
        """Client-facing error body (never contains secrets)."""
        return {"error": self.code, "message": self.message}

    def headers(self) -> Optional[dict[str, str]]:
        return None


class AuthenticationError(ParcelGateError):
    """The caller's credential is missing, malformed, unknown, unusable or stale.

    Never retried automatically. ``hint`` tells the caller which header or
    scheme to use, or where a replacement key comes from.
    """

    status_code = 401

    def __init__(self, kind: AuthFailure, message: str, hint: Optional[str] = None) -> None:
        super().__init__(message)
        self.kind = kind
        self.code = kind.value
        self.hint = hint

    def to_detail(self) -> dict[str, Any]:
        detail = super().to_detail()
        if self.hint:
            detail["hint"] = self.hint
        return detail

    def headers(self) -> Optional[dict[str, str]]:
        return {"WWW-Authenticate": BEARER_SCHEME}


class AccountInactiveError(ParcelGateError):
    """The session token is valid but the account behind it is not active.

    Surfaced as 403 so the client knows the credential itself was fine.
    """

    status_code = 403
    code = "AccountInactive"

    def __init__(self, user_id: str, account_status: str) -> None:
        super().__init__(
            f"Account is not active (status: {account_status}). "
            "Contact an administrator to reactivate it."
        )
        self.user_id = user_id
        self.account_status = account_status


class ForbiddenError(ParcelGateError):
    """An authenticated principal lacks the role, permission or scope a route needs."""

    status_code = 403

    def __init__(
        self,
        message: str,
        *,
        required: dict[str, Any],
        actual: dict[str, Any],
        kind: ForbiddenKind = ForbiddenKind.FORBIDDEN,
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.code = kind.value
        self.required = required
        self.actual = actual

    def to_detail(self) -> dict[str, Any]:
        detail = super().to_detail()
        detail["required"] = self.required
        detail["actual"] = self.actual
        return detail


class NotFoundError(ParcelGateError):
    """An admin operation referenced an API key id that does not exist."""

    status_code = 404
    code = "NotFound"

    def __init__(self, key_id: str) -> None:
        super().__init__(f"API key '{key_id}' not found")
        self.key_id = key_id


class InvalidScopeError(ParcelGateError):
    """Issuance input (scope identifier, permission, expiry, policy) is invalid."""

    status_code = 400
    code = "InvalidScope"


class DuplicateKeyError(ParcelGateError):
    """Generated key value collides with a live or retired key. Retry generation."""

    status_code = 400
    code = "DuplicateKey"

    def __init__(self, message: str = "Generated API key collides with an existing key") -> None:
        super().__init__(message)


def to_http_exception(exc: ParcelGateError) -> HTTPException:
    """Map an auth-layer error onto FastAPI's HTTPException."""
    return HTTPException(
        status_code=exc.status_code,
        detail=exc.to_detail(),
        headers=exc.headers(),
    )


def accepted_headers_hint(api_key_headers: Iterable[str]) -> str:
    """Remediation text naming every accepted credential header form."""
    names = " or ".join(f"{name}: <api-key>" for name in api_key_headers)
    return f"Provide either Authorization: Bearer <token> or {names}."
