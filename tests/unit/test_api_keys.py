"""Unit tests for parcelgate/auth/keys.py: issuance and lifecycle operations.

Properties verified:
  - Shown-once: only the IssuedKey from issue/rotate carries the raw value
  - Every generated value matches the resolver's key pattern
  - Scope / permission / expiry / policy validation
  - Idempotent activate/deactivate that touch only is_active + updated_at
  - Delete retires the value permanently
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest

from parcelgate.auth.errors import DuplicateKeyError, InvalidScopeError, NotFoundError
from parcelgate.auth.keys import (
    activate_api_key,
    connection_info,
    deactivate_api_key,
    delete_api_key,
    extend_api_key,
    generate_key_value,
    get_api_key,
    hash_key_value,
    is_well_formed_key,
    issue_api_key,
    list_api_keys,
    rotate_api_key,
)
from parcelgate.auth.models import KeyScope, RateLimitPolicy
from parcelgate.auth.store import KeyFilters, KeyStore
from parcelgate.constants import API_KEY_PATTERN

pytestmark = pytest.mark.asyncio

ACME = KeyScope(courier_code="ACME")
T0 = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


# ─── Key material ─────────────────────────────────────────────────────────────


class TestKeyMaterial:
    def test_generated_values_match_pattern(self) -> None:
        for _ in range(200):
            assert API_KEY_PATTERN.fullmatch(generate_key_value())

    def test_generated_values_are_distinct(self) -> None:
        assert len({generate_key_value() for _ in range(200)}) == 200

    def test_hash_is_deterministic_sha256(self) -> None:
        value = generate_key_value()
        assert hash_key_value(value) == hash_key_value(value)
        assert len(hash_key_value(value)) == 64

    @pytest.mark.parametrize(
        "value",
        ["", "short", "A" * 47, "A" * 49, "kcd_live_" + "A" * 39, "A" * 47 + "-"],
    )
    def test_malformed_values(self, value: str) -> None:
        assert is_well_formed_key(value) is False


# ─── Issuance ─────────────────────────────────────────────────────────────────


class TestIssue:
    async def test_issue_returns_raw_key_once(self, key_store: KeyStore) -> None:
        issued = await issue_api_key(key_store, "ACME", ACME, ["packages:write"], 30)

        assert is_well_formed_key(issued.raw_key)
        assert issued.record.key_hash == hash_key_value(issued.raw_key)
        assert issued.record.is_active is True
        assert issued.record.usage_count == 0
        assert issued.to_response()["key"] == issued.raw_key

        listed = await list_api_keys(key_store)
        fetched = await get_api_key(key_store, issued.record.id)
        for body in (*listed, fetched):
            assert issued.raw_key not in repr(body)
            assert "key" not in body
            assert "key_hash" not in body
            assert body["masked_key"] == "..." + issued.raw_key[-4:]

    async def test_courier_code_uppercased(self, key_store: KeyStore) -> None:
        issued = await issue_api_key(key_store, "acme", KeyScope(courier_code=" acme "))
        assert issued.record.scope.courier_code == "ACME"

    async def test_default_courier_permissions(self, key_store: KeyStore) -> None:
        issued = await issue_api_key(key_store, "ACME", ACME)
        assert issued.record.permissions == ("kcd_integration",)

    async def test_warehouse_key_has_no_default_permissions(self, key_store: KeyStore) -> None:
        issued = await issue_api_key(key_store, "WH-1", KeyScope(warehouse_id="WH-1"))
        assert issued.record.permissions == ()

    async def test_permissions_deduplicated_in_order(self, key_store: KeyStore) -> None:
        issued = await issue_api_key(
            key_store, "ACME", ACME, ["packages:write", "customers:read", "packages:write"]
        )
        assert issued.record.permissions == ("packages:write", "customers:read")

    async def test_default_expiry_is_365_days(self, key_store: KeyStore) -> None:
        with patch("parcelgate.auth.keys.utcnow", return_value=T0):
            issued = await issue_api_key(key_store, "ACME", ACME)
        assert issued.record.expires_at == T0 + timedelta(days=365)

    async def test_null_expiry_never_expires(self, key_store: KeyStore) -> None:
        issued = await issue_api_key(key_store, "ACME", ACME, expires_in_days=None)
        assert issued.record.expires_at is None

    async def test_rate_limit_stored(self, key_store: KeyStore) -> None:
        policy = RateLimitPolicy(per_minute=5, per_hour=50, per_day=500)
        issued = await issue_api_key(key_store, "ACME", ACME, rate_limit=policy)
        stored = await key_store.get(issued.record.id)
        assert stored is not None and stored.rate_limit == policy

    @pytest.mark.parametrize(
        "scope",
        [
            KeyScope(),
            KeyScope(courier_code="A"),
            KeyScope(courier_code="ACME-1"),
            KeyScope(courier_code="TOOLONGCOURIER1"),
            KeyScope(warehouse_id="wh 1"),
            KeyScope(warehouse_id="x" * 65),
        ],
    )
    async def test_invalid_scope(self, key_store: KeyStore, scope: KeyScope) -> None:
        with pytest.raises(InvalidScopeError):
            await issue_api_key(key_store, "owner", scope)
        assert await key_store.list() == []

    @pytest.mark.parametrize("permission", ["", "Packages", "packages:", "a:b:c", "has space"])
    async def test_invalid_permission(self, key_store: KeyStore, permission: str) -> None:
        with pytest.raises(InvalidScopeError):
            await issue_api_key(key_store, "ACME", ACME, [permission])

    @pytest.mark.parametrize("days", [0, -1, 3651, True])
    async def test_invalid_expiry(self, key_store: KeyStore, days) -> None:
        with pytest.raises(InvalidScopeError):
            await issue_api_key(key_store, "ACME", ACME, expires_in_days=days)

    @pytest.mark.parametrize(
        "policy",
        [
            RateLimitPolicy(per_minute=0),
            RateLimitPolicy(per_minute=100, per_hour=10, per_day=1000),
        ],
    )
    async def test_invalid_rate_limit(self, key_store: KeyStore, policy) -> None:
        with pytest.raises(InvalidScopeError):
            await issue_api_key(key_store, "ACME", ACME, rate_limit=policy)

    async def test_blank_owner_rejected(self, key_store: KeyStore) -> None:
        with pytest.raises(InvalidScopeError):
            await issue_api_key(key_store, "  ", ACME)

    async def test_description_too_long(self, key_store: KeyStore) -> None:
        with pytest.raises(InvalidScopeError):
            await issue_api_key(key_store, "ACME", ACME, description="x" * 501)

    async def test_collision_raises_duplicate(self, key_store: KeyStore) -> None:
        fixed = "Z" * 48
        with patch("parcelgate.auth.keys.generate_key_value", return_value=fixed):
            await issue_api_key(key_store, "ACME", ACME)
            with pytest.raises(DuplicateKeyError):
                await issue_api_key(key_store, "ACME", ACME)


# ─── Reads ────────────────────────────────────────────────────────────────────


class TestReads:
    async def test_list_filters(self, key_store: KeyStore) -> None:
        await issue_api_key(key_store, "ACME", ACME)
        await issue_api_key(key_store, "OTHER", KeyScope(courier_code="OTHER"))
        listed = await list_api_keys(key_store, KeyFilters(courier_code="OTHER"))
        assert [k["courier_code"] for k in listed] == ["OTHER"]

    async def test_list_reports_expired(self, key_store: KeyStore) -> None:
        with patch("parcelgate.auth.keys.utcnow", return_value=T0):
            await issue_api_key(key_store, "ACME", ACME, expires_in_days=1)
        with patch("parcelgate.auth.keys.utcnow", return_value=T0 + timedelta(days=2)):
            listed = await list_api_keys(key_store)
        assert listed[0]["is_expired"] is True
        assert listed[0]["is_active"] is True

    async def test_get_unknown(self, key_store: KeyStore) -> None:
        with pytest.raises(NotFoundError):
            await get_api_key(key_store, "missing")


# ─── Lifecycle ────────────────────────────────────────────────────────────────


class TestLifecycle:
    async def test_deactivate_idempotent(self, key_store: KeyStore) -> None:
        issued = await issue_api_key(key_store, "ACME", ACME)
        first = await deactivate_api_key(key_store, issued.record.id)
        second = await deactivate_api_key(key_store, issued.record.id)
        assert first["is_active"] is False
        assert second["is_active"] is False
        assert {k: v for k, v in first.items() if k != "updated_at"} == {
            k: v for k, v in second.items() if k != "updated_at"
        }

    async def test_activate_idempotent(self, key_store: KeyStore) -> None:
        issued = await issue_api_key(key_store, "ACME", ACME)
        assert (await activate_api_key(key_store, issued.record.id))["is_active"] is True
        assert (await activate_api_key(key_store, issued.record.id))["is_active"] is True

    async def test_toggle_touches_only_flag(self, key_store: KeyStore) -> None:
        issued = await issue_api_key(key_store, "ACME", ACME, ["packages:write"])
        before = issued.record.to_public_dict()
        after = await deactivate_api_key(key_store, issued.record.id)
        changed = {k for k in before if before[k] != after[k]}
        assert changed <= {"is_active", "updated_at"}

    async def test_reactivating_expired_key_stays_unusable(self, key_store: KeyStore) -> None:
        with patch("parcelgate.auth.keys.utcnow", return_value=T0):
            issued = await issue_api_key(key_store, "ACME", ACME, expires_in_days=1)
            await deactivate_api_key(key_store, issued.record.id)
        later = T0 + timedelta(days=5)
        with patch("parcelgate.auth.keys.utcnow", return_value=later):
            body = await activate_api_key(key_store, issued.record.id)
        assert body["is_active"] is True
        assert body["is_expired"] is True
        record = await key_store.get(issued.record.id)
        assert record is not None and record.can_use(later) is False

    async def test_toggle_unknown(self, key_store: KeyStore) -> None:
        with pytest.raises(NotFoundError):
            await deactivate_api_key(key_store, "missing")
        with pytest.raises(NotFoundError):
            await activate_api_key(key_store, "missing")

    async def test_delete(self, key_store: KeyStore) -> None:
        issued = await issue_api_key(key_store, "ACME", ACME)
        assert await delete_api_key(key_store, issued.record.id) == {
            "deleted_id": issued.record.id
        }
        with pytest.raises(NotFoundError):
            await get_api_key(key_store, issued.record.id)
        with pytest.raises(NotFoundError):
            await delete_api_key(key_store, issued.record.id)

    async def test_deleted_value_never_reissued(self, key_store: KeyStore) -> None:
        fixed = "Q" * 48
        with patch("parcelgate.auth.keys.generate_key_value", return_value=fixed):
            issued = await issue_api_key(key_store, "ACME", ACME)
            await delete_api_key(key_store, issued.record.id)
            with pytest.raises(DuplicateKeyError):
                await issue_api_key(key_store, "ACME", ACME)

    async def test_extend_and_clear_expiry(self, key_store: KeyStore) -> None:
        issued = await issue_api_key(key_store, "ACME", ACME, expires_in_days=1)
        with patch("parcelgate.auth.keys.utcnow", return_value=T0):
            body = await extend_api_key(key_store, issued.record.id, 90)
        assert body["expires_at"] == (T0 + timedelta(days=90)).isoformat()
        cleared = await extend_api_key(key_store, issued.record.id, None)
        assert cleared["expires_at"] is None

    async def test_extend_unknown(self, key_store: KeyStore) -> None:
        with pytest.raises(NotFoundError):
            await extend_api_key(key_store, "missing", 30)


class TestRotate:
    async def test_rotation_copies_settings_and_deactivates_old(
        self, key_store: KeyStore
    ) -> None:
        policy = RateLimitPolicy(per_minute=1, per_hour=2, per_day=3)
        old = await issue_api_key(
            key_store, "ACME", ACME, ["packages:write"], 30, "primary", policy
        )
        new = await rotate_api_key(key_store, old.record.id)

        assert new.raw_key != old.raw_key
        assert new.record.id != old.record.id
        assert new.record.scope == old.record.scope
        assert new.record.permissions == old.record.permissions
        assert new.record.rate_limit == policy
        assert new.record.description == "primary"
        assert new.record.expires_at == old.record.expires_at

        old_stored = await key_store.get(old.record.id)
        assert old_stored is not None and old_stored.is_active is False

    async def test_rotating_expired_key_restarts_window(self, key_store: KeyStore) -> None:
        with patch("parcelgate.auth.keys.utcnow", return_value=T0):
            old = await issue_api_key(key_store, "ACME", ACME, expires_in_days=10)
        later = T0 + timedelta(days=20)
        with patch("parcelgate.auth.keys.utcnow", return_value=later):
            new = await rotate_api_key(key_store, old.record.id)
        assert new.record.expires_at == later + timedelta(days=10)

    async def test_issuer_recorded_and_carried_through_rotation(
        self, key_store: KeyStore
    ) -> None:
        old = await issue_api_key(key_store, "ACME", ACME, created_by="u-admin")
        stored = await key_store.get(old.record.id)
        assert stored is not None and stored.created_by == "u-admin"
        assert stored.owner_ref == "ACME"

        carried = await rotate_api_key(key_store, old.record.id)
        assert carried.record.created_by == "u-admin"
        replaced = await rotate_api_key(key_store, carried.record.id, created_by="u-ops")
        assert (await key_store.get(replaced.record.id)).created_by == "u-ops"

    async def test_rotate_unknown(self, key_store: KeyStore) -> None:
        with pytest.raises(NotFoundError):
            await rotate_api_key(key_store, "missing")


class TestConnectionInfo:
    async def test_no_active_key(self, key_store: KeyStore) -> None:
        info = await connection_info(key_store, "https://api.example.com/")
        assert info["has_active_key"] is False
        assert info["active_key_count"] == 0
        assert info["endpoints"]["get_customers"] == "https://api.example.com/api/kcd/customers"

    async def test_lists_only_usable_courier_keys_masked(self, key_store: KeyStore) -> None:
        active = await issue_api_key(key_store, "ACME", ACME)
        inactive = await issue_api_key(key_store, "ACME", ACME)
        await deactivate_api_key(key_store, inactive.record.id)
        await issue_api_key(key_store, "WH-1", KeyScope(warehouse_id="WH-1"))

        info = await connection_info(
            key_store,
            "https://api.example.com",
            api_key_headers=["X-API-Key"],
            webhook_headers=["X-Webhook-Key"],
        )

        assert info["active_key_count"] == 1
        assert [k["id"] for k in info["active_keys"]] == [active.record.id]
        assert active.raw_key not in repr(info)
        assert info["accepted_headers"] == ["X-API-Key"]
        assert info["webhook_endpoints"]["package_created"].startswith("https://api.example.com/")
