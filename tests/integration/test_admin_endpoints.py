"""Integration tests for the admin API key endpoints (/api/admin/api-keys).

Verifies:
  - Admin role only (401 without session, 403 for other roles and for keys)
  - Raw key shown once: present in create/rotate responses, absent everywhere else
  - Error mapping: 400 invalid scope, 404 unknown key
  - Idempotent deactivate/activate; delete is permanent
"""

from __future__ import annotations

from datetime import timedelta

import pytest

from parcelgate.auth.errors import AuthenticationError, AuthFailure
from parcelgate.auth.keys import issue_api_key
from parcelgate.auth.models import KeyScope, utcnow

pytestmark = pytest.mark.asyncio

BASE = "/api/admin/api-keys"


async def _create(client, admin_headers, **body) -> dict:
    payload = {"courier_code": "ACME", **body}
    response = await client.post(BASE, json=payload, headers=admin_headers)
    assert response.status_code == 201, response.text
    return response.json()


class TestAdminOnly:
    async def test_no_session_401(self, client) -> None:
        response = await client.get(BASE)
        assert response.status_code == 401

    @pytest.mark.parametrize("user_id", ["u-staff", "u-customer"])
    async def test_non_admin_403(self, client, make_token, user_id) -> None:
        response = await client.get(
            BASE, headers={"Authorization": f"Bearer {make_token(user_id)}"}
        )
        assert response.status_code == 403

    async def test_api_key_cannot_manage_keys(self, client, key_store) -> None:
        issued = await issue_api_key(key_store, "ACME", KeyScope(courier_code="ACME"))
        response = await client.get(BASE, headers={"X-API-Key": issued.raw_key})
        assert response.status_code == 401


class TestCreate:
    async def test_create_returns_key_once(self, client, admin_headers) -> None:
        created = await _create(
            client,
            admin_headers,
            permissions=["packages:write"],
            description="KCD portal",
            rate_limit={"per_minute": 30},
        )
        raw_key = created["key"]
        assert len(raw_key) == 48
        assert created["courier_code"] == "ACME"
        assert created["owner_ref"] == "ACME"
        assert created["created_by"] == "u-admin"
        assert created["permissions"] == ["packages:write"]
        assert created["rate_limit"] == {"per_minute": 30, "per_hour": 1000, "per_day": 10000}
        assert created["masked_key"] == "..." + raw_key[-4:]

        listed = await client.get(BASE, headers=admin_headers)
        fetched = await client.get(f"{BASE}/{created['id']}", headers=admin_headers)
        info = await client.get(f"{BASE}/connection-info", headers=admin_headers)
        for response in (listed, fetched, info):
            assert response.status_code == 200
            assert raw_key not in response.text

    async def test_default_expiry_and_permissions(self, client, admin_headers) -> None:
        created = await _create(client, admin_headers, courier_code="acme")
        assert created["courier_code"] == "ACME"
        assert created["permissions"] == ["kcd_integration"]
        assert created["expires_at"] is not None

    async def test_explicit_null_expiry(self, client, admin_headers) -> None:
        created = await _create(client, admin_headers, expires_in_days=None)
        assert created["expires_at"] is None

    async def test_invalid_scope_400(self, client, admin_headers) -> None:
        response = await client.post(
            BASE, json={"courier_code": "not valid!"}, headers=admin_headers
        )
        assert response.status_code == 400
        assert response.json()["error"]["error"] == "InvalidScope"

    async def test_missing_scope_400(self, client, admin_headers) -> None:
        response = await client.post(BASE, json={"description": "x"}, headers=admin_headers)
        assert response.status_code == 400


class TestListAndGet:
    async def test_list_filters(self, client, admin_headers) -> None:
        await _create(client, admin_headers, courier_code="ACME")
        await _create(client, admin_headers, courier_code="OTHER")
        response = await client.get(
            BASE, params={"courier_code": "other"}, headers=admin_headers
        )
        body = response.json()
        assert body["count"] == 1
        assert body["keys"][0]["courier_code"] == "OTHER"

    async def test_get_unknown_404(self, client, admin_headers) -> None:
        response = await client.get(f"{BASE}/nope", headers=admin_headers)
        assert response.status_code == 404
        assert response.json()["error"]["error"] == "NotFound"


class TestLifecycle:
    async def test_deactivate_activate_idempotent(self, client, admin_headers) -> None:
        created = await _create(client, admin_headers)
        key_id = created["id"]
        for _ in range(2):
            response = await client.put(f"{BASE}/{key_id}/deactivate", headers=admin_headers)
            assert response.status_code == 200
            assert response.json()["is_active"] is False
        for _ in range(2):
            response = await client.put(f"{BASE}/{key_id}/activate", headers=admin_headers)
            assert response.status_code == 200
            assert response.json()["is_active"] is True

    async def test_toggle_unknown_404(self, client, admin_headers) -> None:
        response = await client.put(f"{BASE}/nope/deactivate", headers=admin_headers)
        assert response.status_code == 404

    async def test_rotate(self, client, admin_headers, resolver) -> None:
        created = await _create(client, admin_headers, permissions=["packages:write"])
        response = await client.post(f"{BASE}/{created['id']}/rotate", headers=admin_headers)
        assert response.status_code == 200
        rotated = response.json()
        assert rotated["key"] != created["key"]
        assert rotated["replaced_id"] == created["id"]
        assert rotated["permissions"] == ["packages:write"]
        assert rotated["created_by"] == "u-admin"

        old = await client.get(f"{BASE}/{created['id']}", headers=admin_headers)
        assert old.json()["is_active"] is False

        with pytest.raises(AuthenticationError) as exc_info:
            await resolver.resolve({"X-API-Key": created["key"]})
        assert exc_info.value.kind is AuthFailure.CREDENTIAL_INACTIVE
        new_principal = await resolver.resolve({"X-API-Key": rotated["key"]})
        assert new_principal.key_id == rotated["id"]

    async def test_expiry_update(self, client, admin_headers) -> None:
        created = await _create(client, admin_headers)
        response = await client.put(
            f"{BASE}/{created['id']}/expiry",
            json={"expires_in_days": None},
            headers=admin_headers,
        )
        assert response.status_code == 200
        assert response.json()["expires_at"] is None

        response = await client.put(
            f"{BASE}/{created['id']}/expiry",
            json={"expires_in_days": 0},
            headers=admin_headers,
        )
        assert response.status_code == 400

    async def test_delete(self, client, admin_headers) -> None:
        created = await _create(client, admin_headers)
        response = await client.delete(f"{BASE}/{created['id']}", headers=admin_headers)
        assert response.status_code == 200
        assert response.json() == {"deleted_id": created["id"]}
        again = await client.delete(f"{BASE}/{created['id']}", headers=admin_headers)
        assert again.status_code == 404


class TestConnectionInfo:
    async def test_connection_info(self, client, admin_headers) -> None:
        await _create(client, admin_headers)
        response = await client.get(f"{BASE}/connection-info", headers=admin_headers)
        body = response.json()
        assert body["has_active_key"] is True
        assert body["active_key_count"] == 1
        assert body["endpoints"]["add_package"] == "https://api.example.com/api/kcd/packages/add"
        assert body["accepted_headers"] == ["X-API-Key", "X-KCD-API-Key"]

    async def test_expired_keys_not_counted(self, client, admin_headers, key_store) -> None:
        created = await _create(client, admin_headers, expires_in_days=1)
        await key_store.set_expiry(created["id"], utcnow() - timedelta(seconds=1), utcnow())
        response = await client.get(f"{BASE}/connection-info", headers=admin_headers)
        assert response.json()["active_key_count"] == 0
