"""Health endpoint for ParcelGate.

  GET /health: 503 before the lifespan marks the app ready, then 200 with
              key store status and the usage-metering backlog.

Polled by container health probes. Unauthenticated, and reports no key data.
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, HTTPException, Request

from parcelgate.auth.metering import UsageMeter
from parcelgate.auth.store import KeyStore

router = APIRouter(tags=["health"])


@router.get("/health")
async def health(request: Request) -> dict[str, Any]:
    """Primary health check.

    Response body (200):
        {
          "status": "ok" | "degraded",
          "key_store": "healthy" | "error",
          "metering_pending": 0,
          "metering_failed": 0
        }
    """
    if not getattr(request.app.state, "ready", False):
        raise HTTPException(
            status_code=503,
            detail={"status": "starting", "message": "ParcelGate is starting up."},
        )

    store: KeyStore = request.app.state.key_store
    meter: UsageMeter = request.app.state.usage_meter
    store_ok = await store.health_check()

    return {
        "status": "ok" if store_ok else "degraded",
        "key_store": "healthy" if store_ok else "error",
        "metering_pending": meter.pending,
        "metering_failed": meter.failed_count,
    }
