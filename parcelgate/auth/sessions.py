"""Human session tokens (signed JWTs via PyJWT).

Tokens issued here carry ``sub`` (user id), ``iat`` and ``exp``. Tokens from
the surrounding login flow name the user in ``userId`` instead of ``sub``;
both are accepted, with ``sub`` taking precedence. Verification is
stateless; the resolver reloads the user afterwards to check account status,
so a deactivated account is refused even while its token is unexpired.

Issuing tokens belongs to the login flow of the surrounding application.
``issue_session_token`` exists for that flow, for tests and for local tooling.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Optional

import jwt

from parcelgate.auth.errors import AuthFailure, AuthenticationError
from parcelgate.auth.models import utcnow
from parcelgate.utils.logger import get_logger

logger = get_logger(__name__)

DEFAULT_SESSION_TTL = timedelta(hours=24)
_LOGIN_HINT = "Log in again to obtain a new session token."

# Claims naming the user, in order of precedence.
SUBJECT_CLAIMS: tuple[str, ...] = ("sub", "userId")


def issue_session_token(
    user_id: str,
    secret: str,
    *,
    algorithm: str = "HS256",
    ttl: timedelta = DEFAULT_SESSION_TTL,
    now: Optional[datetime] = None,
) -> str:
    issued_at = now or utcnow()
    payload = {"sub": user_id, "iat": issued_at, "exp": issued_at + ttl}
    return jwt.encode(payload, secret, algorithm=algorithm)


def verify_session_token(
    token: str,
    secret: str,
    *,
    algorithm: str = "HS256",
    leeway_seconds: int = 0,
) -> dict[str, Any]:
    """Verify signature and expiry; return the claims.

    The returned claims always carry the user id in ``sub``, copied from
    ``userId`` when the token has no ``sub``.

    Raises:
        AuthenticationError(SessionExpired): ``exp`` is in the past.
        AuthenticationError(SessionInvalid): Bad signature, malformed token or
                                             no subject claim.
    """
    try:
        claims = jwt.decode(
            token,
            secret,
            algorithms=[algorithm],
            leeway=leeway_seconds,
            options={"require": ["exp"]},
        )
    except jwt.ExpiredSignatureError as exc:
        raise AuthenticationError(
            AuthFailure.SESSION_EXPIRED, "Session token has expired", hint=_LOGIN_HINT
        ) from exc
    except jwt.InvalidTokenError as exc:
        logger.debug("session_token_rejected", reason=type(exc).__name__)
        raise AuthenticationError(
            AuthFailure.SESSION_INVALID, "Session token is invalid", hint=_LOGIN_HINT
        ) from exc

    subject = next((claims[name] for name in SUBJECT_CLAIMS if name in claims), None)
    if not isinstance(subject, str) or not subject:
        raise AuthenticationError(
            AuthFailure.SESSION_INVALID, "Session token has no subject", hint=_LOGIN_HINT
        )
    claims["sub"] = subject
    return claims
