"""Health endpoint for Dayline.

  GET /health - 503 before ``app.state.ready`` is set, 200 after.

Polled by container health probes and by the desktop client before it starts
syncing. The store probe is a single cheap query; a failing store reports
``degraded`` but still answers 200 so the probe can tell "up but unhealthy"
from "not started".
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, HTTPException, Request

from dayline.store.protocol import Store

router = APIRouter(tags=["health"])


@router.get("/health")
async def health(request: Request) -> dict[str, Any]:
    """Primary health check endpoint.

    Response body (200):
        {
          "status": "ok" | "degraded",
          "store": "healthy" | "error",
          "store_backend": "sqlite" | "supabase"
        }

    Response body (503):
        {"error": {"status": "starting", "message": "Dayline is starting up..."}}
    """
    if not getattr(request.app.state, "ready", False):
        raise HTTPException(
            status_code=503,
            detail={"status": "starting", "message": "Dayline is starting up..."},
        )

    store: Store = request.app.state.store
    store_ok = await store.health_check()

    return {
        "status": "ok" if store_ok else "degraded",
        "store": "healthy" if store_ok else "error",
        "store_backend": getattr(store, "backend_name", type(store).__name__),
    }
