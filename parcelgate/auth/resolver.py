"""CredentialResolver: turn request headers into a Principal.

Resolution order (combined mode, ``resolve()``):
  1. Machine-credential header (X-API-Key or an alias, case-insensitive)
       empty / wrong format   → MalformedCredential
       unknown digest         → CredentialNotFound
       expired                → CredentialExpired   (checked before inactive)
       inactive               → CredentialInactive
       success                → machine Principal, one usage update queued
  2. Authorization header (tolerant Bearer parsing)
       empty token            → MalformedCredential
       JWT expired / invalid  → SessionExpired / SessionInvalid
       unknown user           → SessionInvalid
       account not active     → AccountInactiveError (403)
       success                → human Principal
  3. Neither                  → MissingCredential (names both header forms)

A request carrying both headers always resolves as machine; the bearer token
is not consulted. ``resolve_machine()`` and ``resolve_human()`` run only their
own step. ``resolve_webhook()`` runs step 1 with the wider webhook alias set
and returns a WebhookContext.

The resolver returns its result; it never writes to request state. Key
validity is read from the store on every call. There is no validation cache,
so deactivation takes effect on the very next request.
"""

from __future__ import annotations

from typing import Iterable, Optional, Sequence

from parcelgate.auth.errors import (
    KEY_REISSUE_ENDPOINT,
    AccountInactiveError,
    AuthFailure,
    AuthenticationError,
    accepted_headers_hint,
)
from parcelgate.auth.headers import HeaderSource, extract_bearer_token, first_header
from parcelgate.auth.keys import hash_key_value, is_well_formed_key
from parcelgate.auth.metering import UsageMeter
from parcelgate.auth.models import (
    ApiKeyRecord,
    KeyScope,
    Principal,
    PrincipalKind,
    WebhookContext,
    utcnow,
)
from parcelgate.auth.sessions import verify_session_token
from parcelgate.auth.store import KeyStore
from parcelgate.auth.users import UserDirectory
from parcelgate.config import Config
from parcelgate.constants import (
    API_KEY_HEADER,
    API_KEY_HEADER_ALIASES,
    API_KEY_LENGTH,
    AUTHORIZATION_HEADER,
    WEBHOOK_KEY_HEADER_ALIASES,
)
from parcelgate.utils.logger import get_logger

logger = get_logger(__name__)

_REISSUE_HINT = f"Ask an administrator to issue a new key ({KEY_REISSUE_ENDPOINT})."


class CredentialResolver:
    """Resolves machine (API key) and human (session JWT) credentials."""

    def __init__(
        self,
        store: KeyStore,
        users: UserDirectory,
        meter: UsageMeter,
        *,
        jwt_secret: str,
        jwt_algorithm: str = "HS256",
        jwt_leeway_seconds: int = 0,
        api_key_headers: Sequence[str] = (API_KEY_HEADER, *API_KEY_HEADER_ALIASES),
        webhook_headers: Sequence[str] = WEBHOOK_KEY_HEADER_ALIASES,
    ) -> None:
        self._store = store
        self._users = users
        self._meter = meter
        self._jwt_secret = jwt_secret
        self._jwt_algorithm = jwt_algorithm
        self._jwt_leeway_seconds = jwt_leeway_seconds
        self.api_key_headers: tuple[str, ...] = tuple(api_key_headers)
        self.webhook_headers: tuple[str, ...] = tuple(webhook_headers)

    @classmethod
    def from_config(
        cls,
        config: Config,
        store: KeyStore,
        users: UserDirectory,
        meter: UsageMeter,
    ) -> "CredentialResolver":
        auth = config.auth
        api_key_headers = [auth.api_key_header]
        api_key_headers += [
            name for name in auth.api_key_aliases
            if name.lower() != auth.api_key_header.lower()
        ]
        return cls(
            store,
            users,
            meter,
            jwt_secret=auth.jwt_secret,
            jwt_algorithm=auth.jwt_algorithm,
            jwt_leeway_seconds=auth.jwt_leeway_seconds,
            api_key_headers=api_key_headers,
            webhook_headers=auth.webhook_header_aliases,
        )

    # ── Public entry points ───────────────────────────────────────────────────

    async def resolve(self, headers: HeaderSource) -> Principal:
        """Combined mode: machine header first, then bearer token."""
        raw_key = first_header(headers, self.api_key_headers)
        if raw_key is not None:
            return await self._machine_principal(raw_key)

        authorization = first_header(headers, (AUTHORIZATION_HEADER,))
        if authorization is not None:
            return await self._human_principal(authorization)

        raise AuthenticationError(
            AuthFailure.MISSING_CREDENTIAL,
            "Authentication required. " + accepted_headers_hint(self.api_key_headers),
        )

    async def resolve_machine(self, headers: HeaderSource) -> Principal:
        raw_key = first_header(headers, self.api_key_headers)
        if raw_key is None:
            raise self._missing(self.api_key_headers)
        return await self._machine_principal(raw_key)

    async def resolve_human(self, headers: HeaderSource) -> Principal:
        authorization = first_header(headers, (AUTHORIZATION_HEADER,))
        if authorization is None:
            raise AuthenticationError(
                AuthFailure.MISSING_CREDENTIAL,
                "Authentication required. Provide Authorization: Bearer <token>.",
            )
        return await self._human_principal(authorization)

    async def resolve_webhook(
        self, headers: HeaderSource, source: Optional[str] = None
    ) -> WebhookContext:
        """Validate a webhook sender's key. No bearer fallback.

        ``source`` tags the context (e.g. the webhook route's partner name);
        it defaults to the key's courier code, then its owner reference.
        """
        raw_key = first_header(headers, self.webhook_headers)
        if raw_key is None:
            raise self._missing(self.webhook_headers)
        record = await self._usable_key(raw_key)
        courier_code = record.scope.courier_code
        return WebhookContext(
            source=source or courier_code or record.owner_ref,
            validated_at=utcnow(),
            key_id=record.id,
            courier_code=courier_code,
        )

    # ── Machine credentials ───────────────────────────────────────────────────

    async def _machine_principal(self, raw_key: str) -> Principal:
        record = await self._usable_key(raw_key)
        return Principal(
            kind=PrincipalKind.MACHINE,
            id=record.owner_ref,
            permissions=frozenset(record.permissions),
            scope=record.scope,
            key_id=record.id,
        )

    async def _usable_key(self, raw_key: str) -> ApiKeyRecord:
        """Look up a key, check can_use(), and queue exactly one usage update."""
        if not raw_key or not is_well_formed_key(raw_key):
            logger.warning("api_key_malformed", length=len(raw_key))
            raise AuthenticationError(
                AuthFailure.MALFORMED_CREDENTIAL,
                f"API key must be {API_KEY_LENGTH} letters or digits with no prefix",
                hint="Send the plain key value, without 'Bearer' or any other prefix.",
            )

        record = await self._store.get_by_hash(hash_key_value(raw_key))
        if record is None:
            logger.warning("api_key_not_found")
            raise AuthenticationError(
                AuthFailure.CREDENTIAL_NOT_FOUND, "Invalid API key", hint=_REISSUE_HINT
            )

        now = utcnow()
        if not record.can_use(now):
            if record.is_expired(now):
                logger.warning("api_key_expired", key_id=record.id)
                raise AuthenticationError(
                    AuthFailure.CREDENTIAL_EXPIRED, "API key has expired", hint=_REISSUE_HINT
                )
            logger.warning("api_key_inactive", key_id=record.id)
            raise AuthenticationError(
                AuthFailure.CREDENTIAL_INACTIVE, "API key is inactive", hint=_REISSUE_HINT
            )

        self._meter.record_use(record.id, now)
        logger.debug("api_key_resolved", key_id=record.id, owner_ref=record.owner_ref)
        return record

    # ── Human credentials ─────────────────────────────────────────────────────

    async def _human_principal(self, authorization: str) -> Principal:
        token = extract_bearer_token(authorization)
        if not token:
            raise AuthenticationError(
                AuthFailure.MALFORMED_CREDENTIAL,
                "Authorization header carries no token",
                hint="Provide Authorization: Bearer <token>.",
            )

        claims = verify_session_token(
            token,
            self._jwt_secret,
            algorithm=self._jwt_algorithm,
            leeway_seconds=self._jwt_leeway_seconds,
        )
        user_id: str = claims["sub"]

        user = await self._users.get_user(user_id)
        if user is None:
            logger.warning("session_user_not_found", user_id=user_id)
            raise AuthenticationError(
                AuthFailure.SESSION_INVALID,
                "Session refers to an unknown user",
                hint="Log in again to obtain a new session token.",
            )
        if not user.is_active:
            logger.warning(
                "session_account_inactive",
                user_id=user_id,
                account_status=user.account_status,
            )
            raise AccountInactiveError(user_id, user.account_status)

        return Principal(
            kind=PrincipalKind.HUMAN,
            id=user.id,
            role=user.role,
            scope=KeyScope(warehouse_id=user.warehouse_id) if user.warehouse_id else None,
        )

    # ── Helpers ───────────────────────────────────────────────────────────────

    @staticmethod
    def _missing(names: Iterable[str]) -> AuthenticationError:
        forms = " or ".join(f"{name}: <api-key>" for name in names)
        return AuthenticationError(
            AuthFailure.MISSING_CREDENTIAL,
            f"API key required. Provide {forms}.",
        )
