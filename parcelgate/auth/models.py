"""Data contracts for the ParcelGate auth layer.

  - Principal        resolved identity threaded through a single request
  - KeyScope         courier / warehouse restriction carried by a key
  - RateLimitPolicy  stored per-key limits consumed by an external throttler
  - ApiKeyRecord     persisted machine credential (no raw key material)
  - WebhookContext   lightweight result of webhook credential validation

Timestamps are timezone-aware UTC datetimes.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from parcelgate.constants import (
    DEFAULT_RATE_PER_DAY,
    DEFAULT_RATE_PER_HOUR,
    DEFAULT_RATE_PER_MINUTE,
)


def utcnow() -> datetime:
    """Current time as an aware UTC datetime. Patched in tests."""
    return datetime.now(timezone.utc)


# ─── Enums ────────────────────────────────────────────────────────────────────


class PrincipalKind(str, Enum):
    HUMAN = "human"
    MACHINE = "machine"


class Role(str, Enum):
    ADMIN = "admin"
    WAREHOUSE_STAFF = "warehouse_staff"
    CUSTOMER = "customer"

    @classmethod
    def parse(cls, value: str) -> "Role":
        """Parse a stored role string. Accepts the legacy 'warehouse' spelling."""
        normalized = value.strip().lower()
        if normalized == "warehouse":
            return cls.WAREHOUSE_STAFF
        return cls(normalized)


# ─── Scope / Policy ───────────────────────────────────────────────────────────


@dataclass(frozen=True)
class KeyScope:
    """Business records a principal may touch.

    A partner integration key is scoped to a courier; a warehouse integration
    key to a warehouse. Both may be set.
    """

    courier_code: Optional[str] = None
    warehouse_id: Optional[str] = None

    def to_dict(self) -> dict[str, Optional[str]]:
        return {"courier_code": self.courier_code, "warehouse_id": self.warehouse_id}


@dataclass(frozen=True)
class RateLimitPolicy:
    per_minute: int = DEFAULT_RATE_PER_MINUTE
    per_hour: int = DEFAULT_RATE_PER_HOUR
    per_day: int = DEFAULT_RATE_PER_DAY

    def to_dict(self) -> dict[str, int]:
        return {
            "per_minute": self.per_minute,
            "per_hour": self.per_hour,
            "per_day": self.per_day,
        }


# ─── Principal ────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class Principal:
    """Authenticated identity for one request.

    Constructed fresh by the resolver and returned to the caller; never stored
    on shared request state and never persisted.

    Human principals carry ``role`` and an empty permission set.
    Machine principals carry ``permissions``, ``scope`` and the ``key_id`` of
    the API key that produced them; ``id`` is the key's owner reference.
    """

    kind: PrincipalKind
    id: str
    role: Optional[Role] = None
    permissions: frozenset[str] = field(default_factory=frozenset)
    scope: Optional[KeyScope] = None
    key_id: Optional[str] = None

    @property
    def is_machine(self) -> bool:
        return self.kind is PrincipalKind.MACHINE

    @property
    def is_human(self) -> bool:
        return self.kind is PrincipalKind.HUMAN

    def describe(self) -> dict[str, Any]:
        """Summary echoed in authorization failures. Contains no secrets."""
        if self.is_human:
            return {"kind": self.kind.value, "role": self.role.value if self.role else None}
        return {
            "kind": self.kind.value,
            "permissions": sorted(self.permissions),
            "courier_code": self.scope.courier_code if self.scope else None,
        }


# ─── ApiKeyRecord ─────────────────────────────────────────────────────────────


@dataclass
class ApiKeyRecord:
    """Persisted API key. Holds a SHA-256 digest, never the raw value.

    ``can_use()`` is the only predicate the resolver trusts; ``is_active`` and
    ``expires_at`` are independent and both must pass.
    """

    id: str
    key_hash: str
    key_hint: str
    owner_ref: str
    scope: KeyScope
    permissions: tuple[str, ...]
    description: str
    is_active: bool
    expires_at: Optional[datetime]
    usage_count: int
    last_used_at: Optional[datetime]
    rate_limit: Optional[RateLimitPolicy]
    created_at: datetime
    updated_at: datetime
    created_by: Optional[str] = None
    """User id of the admin who issued (or last rotated into) this key."""

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if self.expires_at is None:
            return False
        return self.expires_at <= (now or utcnow())

    def can_use(self, now: Optional[datetime] = None) -> bool:
        return self.is_active and not self.is_expired(now)

    @property
    def masked_key(self) -> str:
        return f"...{self.key_hint}"

    def to_public_dict(self, now: Optional[datetime] = None) -> dict[str, Any]:
        """Serializable view for list/get/info responses.

        Excludes ``key_hash`` and any other key material. ``is_expired`` is
        computed at read time.
        """
        return {
            "id": self.id,
            "masked_key": self.masked_key,
            "owner_ref": self.owner_ref,
            "courier_code": self.scope.courier_code,
            "warehouse_id": self.scope.warehouse_id,
            "permissions": list(self.permissions),
            "description": self.description,
            "is_active": self.is_active,
            "is_expired": self.is_expired(now),
            "expires_at": _iso(self.expires_at),
            "usage_count": self.usage_count,
            "last_used_at": _iso(self.last_used_at),
            "rate_limit": self.rate_limit.to_dict() if self.rate_limit else None,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
            "created_by": self.created_by,
        }


# ─── WebhookContext ───────────────────────────────────────────────────────────


@dataclass(frozen=True)
class WebhookContext:
    """Result of validating an inbound webhook credential.

    Webhook handlers key idempotency off payload fields (tracking number,
    courier code), not caller identity, so no full Principal is built.
    """

    source: str
    validated_at: datetime
    key_id: str
    courier_code: Optional[str] = None


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None
