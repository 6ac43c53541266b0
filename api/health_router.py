"""
Health and Monitoring Router.

Public, unauthenticated endpoints for health checks and operational state.

Endpoints Provided:
- `/healthcheck`: A lightweight liveness check.
- `/monitoring/sync`: Backend mode, configuration state, queue depth and the
  last sync error.
- `/monitoring/cache/stats`: Statistics for the signed-URL, decoded-media and
  identity caches.

Architectural Design:
- Public Access: these routers are mounted without the API key dependency so
  automated probes can reach them.
- Graceful Degradation: `/monitoring/sync` reports "degraded" when items are
  stuck with errors instead of failing the probe.
"""

from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import APIRouter, Depends

from core.logging_config import get_logger
from .dependencies import ServiceContainer, get_container

logger = get_logger(__name__)

SERVICE_NAME = "Practice Sync API"
SERVICE_VERSION = "1.0.0"

health_router = APIRouter(tags=["Health & Monitoring"])

monitoring_router = APIRouter(prefix="/monitoring", tags=["Health & Monitoring"])


@health_router.get("/healthcheck")
async def health_check() -> Dict[str, Any]:
    """
    Basic health check endpoint (no authentication required)

    Returns:
        Dict with status, timestamp, and version info
    """
    logger.debug("Health check requested")
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "version": SERVICE_VERSION,
        "service": SERVICE_NAME,
    }


@monitoring_router.get("/sync")
async def sync_status(container: ServiceContainer = Depends(get_container)) -> Dict[str, Any]:
    engine = container.engine
    items = container.queue.snapshot()
    failing = [item for item in items if item.last_error]
    state = container.feed_store.state

    return {
        "status": "degraded" if failing else "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "mode": engine.mode.value,
        "mode_title": engine.mode.display_title,
        "network_enabled": engine.mode.is_network_enabled,
        "configured": container.transport.is_configured,
        "owner_configured": bool(engine.owner_user_id),
        "queue": {
            "depth": len(items),
            "failing": len(failing),
            "max_attempts": max((item.attempts for item in items), default=0),
        },
        "last_sync_error": state.last_sync_error,
        "last_sync_error_at": state.last_sync_error_at.isoformat()
        if state.last_sync_error_at
        else None,
    }


@monitoring_router.get("/cache/stats")
async def cache_stats(container: ServiceContainer = Depends(get_container)) -> Dict[str, Any]:
    stats = await container.media.stats()
    stats["identity"] = container.identity_cache.stats()
    return stats
