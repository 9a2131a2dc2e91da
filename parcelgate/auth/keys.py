"""API key issuance and lifecycle operations.

Implements:
  - generate_key_value()   48-char alphanumeric value from ``secrets``
  - hash_key_value()       SHA-256 digest used as the lookup key
  - issue_api_key()        validate, persist, return the raw value ONCE
  - list_api_keys()        masked records with read-time ``is_expired``
  - get_api_key()          one masked record
  - deactivate_api_key()   is_active = False (idempotent)
  - activate_api_key()     is_active = True  (idempotent)
  - delete_api_key()       permanent delete; digest is retired
  - rotate_api_key()       replacement key, old key deactivated atomically
  - extend_api_key()       new expiry counted from now, or none
  - connection_info()      non-secret partner integration metadata

Non-negotiables:
  - The raw key value is never persisted and never logged. Only the
    IssuedKey returned by issue_api_key() / rotate_api_key() carries it.
  - The generator alphabet and length are exactly those of API_KEY_PATTERN,
    so every generated value passes the resolver's format check.
  - Activation changes only ``is_active`` and ``updated_at``; reactivating an
    expired key does not make it usable until its expiry is extended.
"""

from __future__ import annotations

import hashlib
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Iterable, Optional

from parcelgate.auth.errors import InvalidScopeError, NotFoundError
from parcelgate.auth.models import ApiKeyRecord, KeyScope, RateLimitPolicy, utcnow
from parcelgate.auth.store import KeyFilters, KeyStore
from parcelgate.constants import (
    API_KEY_ALPHABET,
    API_KEY_HINT_LENGTH,
    API_KEY_LENGTH,
    API_KEY_PATTERN,
    COURIER_CODE_PATTERN,
    DEFAULT_COURIER_PERMISSIONS,
    DEFAULT_KEY_EXPIRY_DAYS,
    MAX_DESCRIPTION_LENGTH,
    MAX_KEY_EXPIRY_DAYS,
    PARTNER_ENDPOINT_PATHS,
    PERMISSION_PATTERN,
    WAREHOUSE_ID_PATTERN,
    WEBHOOK_ENDPOINT_PATHS,
)
from parcelgate.utils.logger import get_logger
from parcelgate.utils.ulid import generate_ulid

logger = get_logger(__name__)


# ─── Key material ─────────────────────────────────────────────────────────────


def generate_key_value() -> str:
    """Return a fresh 48-character alphanumeric key value."""
    return "".join(secrets.choice(API_KEY_ALPHABET) for _ in range(API_KEY_LENGTH))


def hash_key_value(raw_key: str) -> str:
    """SHA-256 hex digest of a raw key value.

    Deterministic, so lookups are an exact match on the indexed digest column.
    """
    return hashlib.sha256(raw_key.encode("utf-8")).hexdigest()


def is_well_formed_key(value: str) -> bool:
    return bool(API_KEY_PATTERN.fullmatch(value))


# ─── IssuedKey ────────────────────────────────────────────────────────────────


@dataclass
class IssuedKey:
    """Result of issuance or rotation. The only object that holds ``raw_key``."""

    raw_key: str
    record: ApiKeyRecord

    def to_response(self, now: Optional[datetime] = None) -> dict[str, Any]:
        body = self.record.to_public_dict(now)
        body["key"] = self.raw_key
        body["message"] = "API key created. Store this key now. It will not be shown again."
        return body


# ─── Validation ───────────────────────────────────────────────────────────────


def _normalize_scope(scope: KeyScope) -> KeyScope:
    courier_code = scope.courier_code.strip().upper() if scope.courier_code else None
    warehouse_id = scope.warehouse_id.strip() if scope.warehouse_id else None

    if courier_code is None and warehouse_id is None:
        raise InvalidScopeError("A key must be scoped to a courier_code or a warehouse_id")
    if courier_code is not None and not COURIER_CODE_PATTERN.fullmatch(courier_code):
        raise InvalidScopeError(
            f"Invalid courier_code '{courier_code}': expected 2-12 letters or digits"
        )
    if warehouse_id is not None and not WAREHOUSE_ID_PATTERN.fullmatch(warehouse_id):
        raise InvalidScopeError(
            f"Invalid warehouse_id '{warehouse_id}': expected 1-64 of [A-Za-z0-9_-]"
        )
    return KeyScope(courier_code=courier_code, warehouse_id=warehouse_id)


def _normalize_permissions(
    permissions: Optional[Iterable[str]], scope: KeyScope
) -> tuple[str, ...]:
    """Validate tokens and de-duplicate, keeping first-seen order."""
    cleaned: list[str] = []
    for token in permissions or ():
        token = token.strip()
        if not PERMISSION_PATTERN.fullmatch(token):
            raise InvalidScopeError(f"Invalid permission token '{token}'")
        if token not in cleaned:
            cleaned.append(token)
    if not cleaned and scope.courier_code is not None:
        return DEFAULT_COURIER_PERMISSIONS
    return tuple(cleaned)


def _validate_expiry_days(expires_in_days: Optional[int]) -> None:
    if expires_in_days is None:
        return
    if isinstance(expires_in_days, bool) or not isinstance(expires_in_days, int):
        raise InvalidScopeError("expires_in_days must be an integer or null")
    if not 1 <= expires_in_days <= MAX_KEY_EXPIRY_DAYS:
        raise InvalidScopeError(
            f"expires_in_days must be between 1 and {MAX_KEY_EXPIRY_DAYS}"
        )


def _validate_rate_limit(policy: Optional[RateLimitPolicy]) -> None:
    if policy is None:
        return
    for name, value in policy.to_dict().items():
        if value < 1:
            raise InvalidScopeError(f"rate_limit.{name} must be a positive integer")
    if not policy.per_minute <= policy.per_hour <= policy.per_day:
        raise InvalidScopeError("rate_limit must satisfy per_minute <= per_hour <= per_day")


def _expires_at(now: datetime, expires_in_days: Optional[int]) -> Optional[datetime]:
    return now + timedelta(days=expires_in_days) if expires_in_days is not None else None


# ─── Issuance ─────────────────────────────────────────────────────────────────


async def issue_api_key(
    store: KeyStore,
    owner_ref: str,
    scope: KeyScope,
    permissions: Optional[Iterable[str]] = None,
    expires_in_days: Optional[int] = DEFAULT_KEY_EXPIRY_DAYS,
    description: str = "",
    rate_limit: Optional[RateLimitPolicy] = None,
    created_by: Optional[str] = None,
) -> IssuedKey:
    """Create and persist a new API key.

    ``owner_ref`` names the entity the key acts for (the courier or
    warehouse); ``created_by`` is the user id of the admin issuing it.
    ``expires_in_days=None`` issues a key that never expires.

    Raises:
        InvalidScopeError: Bad scope identifier, permission, expiry, policy,
                           owner or description.
        DuplicateKeyError: The generated value collides with a live or retired
                           key. Callers may retry.
    """
    owner_ref = (owner_ref or "").strip()
    if not owner_ref:
        raise InvalidScopeError("owner_ref is required")
    if len(description) > MAX_DESCRIPTION_LENGTH:
        raise InvalidScopeError(
            f"description must be at most {MAX_DESCRIPTION_LENGTH} characters"
        )
    scope = _normalize_scope(scope)
    perms = _normalize_permissions(permissions, scope)
    _validate_expiry_days(expires_in_days)
    _validate_rate_limit(rate_limit)

    raw_key = generate_key_value()
    now = utcnow()
    record = ApiKeyRecord(
        id=generate_ulid(),
        key_hash=hash_key_value(raw_key),
        key_hint=raw_key[-API_KEY_HINT_LENGTH:],
        owner_ref=owner_ref,
        scope=scope,
        permissions=perms,
        description=description,
        is_active=True,
        expires_at=_expires_at(now, expires_in_days),
        usage_count=0,
        last_used_at=None,
        rate_limit=rate_limit,
        created_at=now,
        updated_at=now,
        created_by=created_by,
    )
    await store.insert(record)

    logger.info(
        "api_key_issued",
        key_id=record.id,
        owner_ref=owner_ref,
        created_by=created_by,
        courier_code=scope.courier_code,
        warehouse_id=scope.warehouse_id,
        permissions=list(perms),
        expires_at=record.expires_at.isoformat() if record.expires_at else None,
    )
    return IssuedKey(raw_key=raw_key, record=record)


# ─── Reads ────────────────────────────────────────────────────────────────────


async def list_api_keys(
    store: KeyStore, filters: Optional[KeyFilters] = None
) -> list[dict[str, Any]]:
    """Masked records matching ``filters``. Never includes key material."""
    now = utcnow()
    return [record.to_public_dict(now) for record in await store.list(filters)]


async def get_api_key(store: KeyStore, key_id: str) -> dict[str, Any]:
    record = await store.get(key_id)
    if record is None:
        raise NotFoundError(key_id)
    return record.to_public_dict(utcnow())


# ─── Mutations ────────────────────────────────────────────────────────────────


async def _set_active(store: KeyStore, key_id: str, active: bool) -> dict[str, Any]:
    now = utcnow()
    record = await store.set_active(key_id, active, now)
    if record is None:
        raise NotFoundError(key_id)
    logger.info(
        "api_key_activated" if active else "api_key_deactivated",
        key_id=key_id,
        is_expired=record.is_expired(now),
    )
    return record.to_public_dict(now)


async def deactivate_api_key(store: KeyStore, key_id: str) -> dict[str, Any]:
    """Revoke a key. Takes effect on the next request; idempotent."""
    return await _set_active(store, key_id, False)


async def activate_api_key(store: KeyStore, key_id: str) -> dict[str, Any]:
    """Re-enable a key. Idempotent. An expired key stays unusable."""
    return await _set_active(store, key_id, True)


async def delete_api_key(store: KeyStore, key_id: str) -> dict[str, str]:
    """Permanently delete a key. Its value can never be issued again."""
    record = await store.delete(key_id, utcnow())
    if record is None:
        raise NotFoundError(key_id)
    logger.info("api_key_deleted", key_id=key_id, owner_ref=record.owner_ref)
    return {"deleted_id": key_id}


async def rotate_api_key(
    store: KeyStore, key_id: str, created_by: Optional[str] = None
) -> IssuedKey:
    """Issue a replacement for ``key_id`` and deactivate the old key.

    The replacement copies owner, scope, permissions, description and rate
    limit. ``created_by`` records the rotating admin; when omitted the old
    key's issuer carries over. It keeps the old key's expiry instant while that is still in the
    future; for an already-expired key the original window length is counted
    again from now. Both writes happen in one transaction.

    Raises:
        NotFoundError: Unknown key_id.
        DuplicateKeyError: Generated value collision. Callers may retry.
    """
    old = await store.get(key_id)
    if old is None:
        raise NotFoundError(key_id)

    now = utcnow()
    expires_at: Optional[datetime] = None
    if old.expires_at is not None:
        expires_at = old.expires_at
        if expires_at <= now:
            expires_at = now + (old.expires_at - old.created_at)

    raw_key = generate_key_value()
    record = ApiKeyRecord(
        id=generate_ulid(),
        key_hash=hash_key_value(raw_key),
        key_hint=raw_key[-API_KEY_HINT_LENGTH:],
        owner_ref=old.owner_ref,
        scope=old.scope,
        permissions=old.permissions,
        description=old.description,
        is_active=True,
        expires_at=expires_at,
        usage_count=0,
        last_used_at=None,
        rate_limit=old.rate_limit,
        created_at=now,
        updated_at=now,
        created_by=created_by or old.created_by,
    )
    if not await store.replace(key_id, record, now):
        raise NotFoundError(key_id)

    logger.info(
        "api_key_rotated",
        old_key_id=key_id,
        new_key_id=record.id,
        created_by=record.created_by,
    )
    return IssuedKey(raw_key=raw_key, record=record)


async def extend_api_key(
    store: KeyStore, key_id: str, expires_in_days: Optional[int]
) -> dict[str, Any]:
    """Set a new expiry counted from now. ``None`` removes the expiry."""
    _validate_expiry_days(expires_in_days)
    now = utcnow()
    record = await store.set_expiry(key_id, _expires_at(now, expires_in_days), now)
    if record is None:
        raise NotFoundError(key_id)
    logger.info(
        "api_key_expiry_changed",
        key_id=key_id,
        expires_at=record.expires_at.isoformat() if record.expires_at else None,
    )
    return record.to_public_dict(now)


# ─── Connection info ──────────────────────────────────────────────────────────


async def connection_info(
    store: KeyStore,
    base_url: str,
    *,
    partner_name: str = "KCD Logistics",
    portal_url: Optional[str] = None,
    api_key_headers: Iterable[str] = (),
    webhook_headers: Iterable[str] = (),
) -> dict[str, Any]:
    """Everything a partner administrator needs to configure the integration.

    Contains endpoint URLs, accepted header names and masked active
    courier-scoped keys. Never contains a key value.
    """
    base = base_url.rstrip("/")
    now = utcnow()
    active = [
        record
        for record in await store.list(KeyFilters(is_active=True, courier_scoped_only=True))
        if not record.is_expired(now)
    ]
    if active:
        instruction = (
            "An active key exists. Key values are shown only once; rotate or "
            "issue a new key via POST /api/admin/api-keys to obtain a value."
        )
    else:
        instruction = "No active key. Issue one via POST /api/admin/api-keys."

    return {
        "partner_name": partner_name,
        "portal_url": portal_url,
        "has_active_key": bool(active),
        "active_key_count": len(active),
        "instruction": instruction,
        "api_token_note": (
            "Paste the plain 48-character key with no prefix and no 'Bearer' scheme."
        ),
        "accepted_headers": list(api_key_headers),
        "webhook_headers": list(webhook_headers),
        "endpoints": {name: base + path for name, path in PARTNER_ENDPOINT_PATHS.items()},
        "webhook_endpoints": {
            name: base + path for name, path in WEBHOOK_ENDPOINT_PATHS.items()
        },
        "active_keys": [record.to_public_dict(now) for record in active],
    }
