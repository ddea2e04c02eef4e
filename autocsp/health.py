"""Health and readiness endpoints."""

from __future__ import annotations

import httpx
import structlog
from fastapi import APIRouter
from fastapi.responses import JSONResponse

from autocsp.config.loader import get_settings

logger = structlog.get_logger()
router = APIRouter()


async def _check_upstream() -> bool:
    """Check if upstream is reachable with a HEAD request."""
    settings = get_settings()
    try:
        async with httpx.AsyncClient(timeout=5.0) as client:
            resp = await client.head(settings.upstream_url)
            return resp.status_code < 500
    except httpx.HTTPError:
        return False


def _engine_ready() -> bool:
    from autocsp import main

    return main._engine is not None


@router.get("/health")
async def health():
    """Health check: returns status of the proxy, CSP engine and upstream."""
    upstream_ok = await _check_upstream()
    engine_ok = _engine_ready()

    return {
        "status": "healthy" if (upstream_ok and engine_ok) else "degraded",
        "proxy": "up",
        "engine": "up" if engine_ok else "down",
        "upstream": "up" if upstream_ok else "down",
    }


@router.get("/ready")
async def ready():
    """Readiness check: 200 only once the engine is built and upstream answers."""
    upstream_ok = await _check_upstream()
    engine_ok = _engine_ready()

    if upstream_ok and engine_ok:
        return {"status": "ready"}

    return JSONResponse(
        status_code=503,
        content={
            "status": "not_ready",
            "engine": "up" if engine_ok else "down",
            "upstream": "up" if upstream_ok else "down",
        },
    )
