"""Admin API for partner API keys.

Provides (mounted under /api/admin/api-keys):
  POST   /                    issue a key (raw value shown ONCE)
  GET    /                    list keys (masked)
  GET    /connection-info     endpoint URLs, accepted headers, masked active keys
  GET    /{key_id}            one key (masked)
  PUT    /{key_id}/deactivate
  PUT    /{key_id}/activate
  POST   /{key_id}/rotate     replacement key (raw value shown ONCE)
  PUT    /{key_id}/expiry     new expiry from now, or none
  DELETE /{key_id}            permanent delete

Every endpoint requires a human session with the admin role. Raw key values
appear only in the issue and rotate responses.
"""

from __future__ import annotations

from typing import Any, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel, Field

from parcelgate.auth.errors import ParcelGateError, to_http_exception
from parcelgate.auth.keys import (
    activate_api_key,
    connection_info,
    deactivate_api_key,
    delete_api_key,
    extend_api_key,
    get_api_key,
    issue_api_key,
    list_api_keys,
    rotate_api_key,
)
from parcelgate.auth.middleware import require_admin
from parcelgate.auth.models import KeyScope, Principal, RateLimitPolicy
from parcelgate.auth.store import KeyFilters, KeyStore
from parcelgate.config import Config
from parcelgate.constants import (
    DEFAULT_RATE_PER_DAY,
    DEFAULT_RATE_PER_HOUR,
    DEFAULT_RATE_PER_MINUTE,
)
from parcelgate.utils.logger import get_logger

logger = get_logger(__name__)

router = APIRouter(tags=["api-keys"])


# ─── Request Models ───────────────────────────────────────────────────────────


class RateLimitBody(BaseModel):
    """Partial policies are completed with the defaults."""

    per_minute: int = DEFAULT_RATE_PER_MINUTE
    per_hour: int = DEFAULT_RATE_PER_HOUR
    per_day: int = DEFAULT_RATE_PER_DAY


class CreateKeyRequest(BaseModel):
    """Request body for POST /api/admin/api-keys.

    Omitting ``expires_in_days`` applies the configured default; an explicit
    null issues a key that never expires. ``owner_ref`` defaults to the
    courier code, then the warehouse id. The issuing admin is recorded as
    ``created_by`` from the session, never from the body.
    """

    courier_code: Optional[str] = None
    warehouse_id: Optional[str] = None
    owner_ref: Optional[str] = None
    permissions: Optional[list[str]] = None
    expires_in_days: Optional[int] = None
    description: str = ""
    rate_limit: Optional[RateLimitBody] = None


class ExpiryRequest(BaseModel):
    """Request body for PUT /{key_id}/expiry. null removes the expiry."""

    expires_in_days: Optional[int] = Field(...)


# ─── Helpers ──────────────────────────────────────────────────────────────────


def _store(request: Request) -> KeyStore:
    return request.app.state.key_store


def _config(request: Request) -> Config:
    return request.app.state.config


def _http_error(exc: ParcelGateError) -> HTTPException:
    logger.warning("Admin API key operation failed", code=exc.code, message=exc.message)
    return to_http_exception(exc)


# ─── Endpoints ────────────────────────────────────────────────────────────────


@router.post("", status_code=201)
async def create_key(
    body: CreateKeyRequest,
    request: Request,
    admin: Principal = Depends(require_admin),
) -> dict[str, Any]:
    """Issue a new API key. Returns the raw key ONCE in the response.

    Returns:
        JSON: masked record fields plus ``key`` (raw value) and ``message``.

    Raises:
        HTTP 400: Invalid scope, permission, expiry or rate limit; key collision.
    """
    if "expires_in_days" in body.model_fields_set:
        expires_in_days = body.expires_in_days
    else:
        expires_in_days = _config(request).keys.default_expiry_days

    scope = KeyScope(courier_code=body.courier_code, warehouse_id=body.warehouse_id)
    owner_ref = (
        body.owner_ref
        or (body.courier_code or "").strip().upper()
        or body.warehouse_id
        or ""
    )
    rate_limit = RateLimitPolicy(**body.rate_limit.model_dump()) if body.rate_limit else None

    try:
        issued = await issue_api_key(
            _store(request),
            owner_ref=owner_ref,
            scope=scope,
            permissions=body.permissions,
            expires_in_days=expires_in_days,
            description=body.description,
            rate_limit=rate_limit,
            created_by=admin.id,
        )
    except ParcelGateError as exc:
        raise _http_error(exc) from exc

    logger.info("API key issued via admin API", admin_id=admin.id, key_id=issued.record.id)
    return issued.to_response()


@router.get("")
async def get_keys(
    request: Request,
    courier_code: Optional[str] = Query(default=None),
    warehouse_id: Optional[str] = Query(default=None),
    owner_ref: Optional[str] = Query(default=None),
    is_active: Optional[bool] = Query(default=None),
    admin: Principal = Depends(require_admin),
) -> dict[str, Any]:
    """List API keys (masked). The raw key is NEVER returned."""
    filters = KeyFilters(
        courier_code=courier_code.upper() if courier_code else None,
        warehouse_id=warehouse_id,
        owner_ref=owner_ref,
        is_active=is_active,
    )
    keys = await list_api_keys(_store(request), filters)
    return {"keys": keys, "count": len(keys)}


@router.get("/connection-info")
async def get_connection_info(
    request: Request,
    admin: Principal = Depends(require_admin),
) -> dict[str, Any]:
    """Non-secret integration metadata for configuring the partner portal."""
    config = _config(request)
    resolver = request.app.state.resolver
    return await connection_info(
        _store(request),
        config.integration.base_url,
        partner_name=config.integration.partner_name,
        portal_url=config.integration.portal_url,
        api_key_headers=resolver.api_key_headers,
        webhook_headers=resolver.webhook_headers,
    )


@router.get("/{key_id}")
async def get_key(
    key_id: str,
    request: Request,
    admin: Principal = Depends(require_admin),
) -> dict[str, Any]:
    try:
        return await get_api_key(_store(request), key_id)
    except ParcelGateError as exc:
        raise _http_error(exc) from exc


@router.put("/{key_id}/deactivate")
async def deactivate_key(
    key_id: str,
    request: Request,
    admin: Principal = Depends(require_admin),
) -> dict[str, Any]:
    """Revoke a key. Takes effect on the next request. Idempotent."""
    try:
        record = await deactivate_api_key(_store(request), key_id)
    except ParcelGateError as exc:
        raise _http_error(exc) from exc
    logger.info("API key deactivated via admin API", admin_id=admin.id, key_id=key_id)
    return record


@router.put("/{key_id}/activate")
async def activate_key(
    key_id: str,
    request: Request,
    admin: Principal = Depends(require_admin),
) -> dict[str, Any]:
    """Re-enable a key. Idempotent. An expired key stays unusable until extended."""
    try:
        record = await activate_api_key(_store(request), key_id)
    except ParcelGateError as exc:
        raise _http_error(exc) from exc
    logger.info("API key activated via admin API", admin_id=admin.id, key_id=key_id)
    return record


@router.post("/{key_id}/rotate")
async def rotate_key(
    key_id: str,
    request: Request,
    admin: Principal = Depends(require_admin),
) -> dict[str, Any]:
    """Replace a key. Returns the new raw key ONCE; the old key stops working."""
    try:
        issued = await rotate_api_key(_store(request), key_id, created_by=admin.id)
    except ParcelGateError as exc:
        raise _http_error(exc) from exc
    logger.info(
        "API key rotated via admin API",
        admin_id=admin.id,
        old_key_id=key_id,
        new_key_id=issued.record.id,
    )
    body = issued.to_response()
    body["replaced_id"] = key_id
    return body


@router.put("/{key_id}/expiry")
async def set_key_expiry(
    key_id: str,
    body: ExpiryRequest,
    request: Request,
    admin: Principal = Depends(require_admin),
) -> dict[str, Any]:
    try:
        return await extend_api_key(_store(request), key_id, body.expires_in_days)
    except ParcelGateError as exc:
        raise _http_error(exc) from exc


@router.delete("/{key_id}")
async def delete_key(
    key_id: str,
    request: Request,
    admin: Principal = Depends(require_admin),
) -> dict[str, str]:
    """Permanently delete a key. Its value can never be reissued."""
    try:
        result = await delete_api_key(_store(request), key_id)
    except ParcelGateError as exc:
        raise _http_error(exc) from exc
    logger.info("API key deleted via admin API", admin_id=admin.id, key_id=key_id)
    return result
