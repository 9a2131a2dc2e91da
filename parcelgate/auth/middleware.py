"""FastAPI dependencies wrapping the CredentialResolver and the gate.

  - authenticate_request()   combined mode (API key first, then bearer token)
  - authenticate_machine()   API key only
  - authenticate_human()     bearer token only
  - authenticate_webhook()   webhook alias set, returns WebhookContext
  - require_access()         dependency factory: authenticate + authorize

Handlers receive the Principal as a dependency result. Nothing is attached
to ``request.state``. FastAPI caches a dependency's result per request, so a
handler that depends on both ``authenticate_request`` and a
``require_access(...)`` built on it resolves (and meters) the key once.

All ParcelGateError subclasses are converted to HTTPException here; the
resolver and gate stay framework-free.
"""

from __future__ import annotations

from typing import Awaitable, Callable, Iterable, Literal, Optional

from fastapi import Depends, Request

from parcelgate.auth.errors import ParcelGateError, to_http_exception
from parcelgate.auth.gate import authorize
from parcelgate.auth.models import Principal, Role, WebhookContext
from parcelgate.auth.resolver import CredentialResolver
from parcelgate.utils.logger import get_logger

logger = get_logger(__name__)

AuthMode = Literal["combined", "machine", "human"]


def get_resolver(request: Request) -> CredentialResolver:
    resolver: Optional[CredentialResolver] = getattr(request.app.state, "resolver", None)
    if resolver is None:
        raise RuntimeError("CredentialResolver not configured on app.state.resolver")
    return resolver


def _log_failure(request: Request, exc: ParcelGateError) -> None:
    logger.warning(
        "Authentication failed",
        code=exc.code,
        path=str(request.url.path),
        method=request.method,
    )


async def authenticate_request(request: Request) -> Principal:
    """FastAPI dependency: resolve either credential scheme to a Principal.

    Raises:
        HTTPException(401): Missing, malformed, unknown, inactive or expired
                            credential, or a bad session token.
        HTTPException(403): Valid session for an account that is not active.
    """
    try:
        return await get_resolver(request).resolve(request.headers)
    except ParcelGateError as exc:
        _log_failure(request, exc)
        raise to_http_exception(exc) from exc


async def authenticate_machine(request: Request) -> Principal:
    """FastAPI dependency: API key only. Bearer tokens are ignored."""
    try:
        return await get_resolver(request).resolve_machine(request.headers)
    except ParcelGateError as exc:
        _log_failure(request, exc)
        raise to_http_exception(exc) from exc


async def authenticate_human(request: Request) -> Principal:
    """FastAPI dependency: bearer session token only. API key headers are ignored."""
    try:
        return await get_resolver(request).resolve_human(request.headers)
    except ParcelGateError as exc:
        _log_failure(request, exc)
        raise to_http_exception(exc) from exc


async def authenticate_webhook(request: Request) -> WebhookContext:
    """FastAPI dependency for inbound webhook routes."""
    try:
        return await get_resolver(request).resolve_webhook(request.headers)
    except ParcelGateError as exc:
        _log_failure(request, exc)
        raise to_http_exception(exc) from exc


_AUTHENTICATORS: dict[str, Callable[[Request], Awaitable[Principal]]] = {
    "combined": authenticate_request,
    "machine": authenticate_machine,
    "human": authenticate_human,
}


def require_access(
    roles: Optional[Iterable[Role]] = None,
    permissions: Optional[Iterable[str]] = None,
    *,
    mode: AuthMode = "combined",
    courier_param: Optional[str] = None,
) -> Callable[..., Awaitable[Principal]]:
    """Build a dependency that authenticates and then authorizes.

    Args:
        roles:         Human roles admitted (exact match). None admits no humans.
        permissions:   Permissions a machine principal must all hold. None
                       admits no machines; [] admits any machine.
        mode:          Which credential scheme(s) to accept.
        courier_param: Path parameter holding the courier code the route acts
                       on; machine principals must be scoped to it.

    Usage:
        @router.get("/api/kcd/customers")
        async def customers(
            principal: Principal = Depends(
                require_access(roles=[Role.ADMIN], permissions=["kcd_integration"])
            ),
        ): ...
    """
    role_set = frozenset(roles) if roles is not None else None
    permission_list = list(permissions) if permissions is not None else None
    authenticator = _AUTHENTICATORS[mode]

    async def dependency(
        request: Request,
        principal: Principal = Depends(authenticator),
    ) -> Principal:
        courier_code = request.path_params.get(courier_param) if courier_param else None
        try:
            return authorize(
                principal,
                roles=role_set,
                permissions=permission_list,
                courier_code=courier_code,
            )
        except ParcelGateError as exc:
            logger.warning(
                "Authorization failed",
                code=exc.code,
                principal_id=principal.id,
                path=str(request.url.path),
            )
            raise to_http_exception(exc) from exc

    return dependency


# Admin-only routes (the key management API).
require_admin = require_access(roles=[Role.ADMIN], mode="human")
