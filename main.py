"""
Practice Sync API - Main Application Entry Point.

This module initializes and configures the FastAPI application that hosts the
offline-first sync core of the practice journal: the durable publish queue,
the flush engine, the account directory, the feed and media access.

Key Responsibilities:
- Configure logging and load backend settings from the environment.
- Build the `ServiceContainer` once at startup and expose it on `app.state`.
- Drain the publish queue once on startup, and close the transport on shutdown.
- Mount the health, monitoring and sync routers.

Architecture:
The application follows a standard FastAPI structure: routers in `api/`, the
sync core in `services/`, outward adapters in `providers/` and shared
infrastructure in `core/`. Middleware handles correlation and timing, and one
exception handler renders every `SyncAPIException` as JSON.
"""

import os
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI, Header, HTTPException

from api.dependencies import build_container
from api.endpoints import router
from api.health_router import health_router, monitoring_router
from core.config import load_settings
from core.exceptions import SyncAPIException
from core.logging_config import get_logger, setup_logging
from core.middleware import CorrelationMiddleware, PerformanceMiddleware, sync_exception_handler


# API Key security
async def verify_api_key(x_api_key: Optional[str] = Header(None, alias="X-API-Key")):
    expected_key = os.getenv("LOCAL_API_KEY")
    if not expected_key:
        return x_api_key
    if x_api_key != expected_key:
        raise HTTPException(status_code=401, detail="Invalid API key")
    return x_api_key


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    setup_logging()
    logger = get_logger("api.startup")

    settings = load_settings()
    settings.validate()
    container = build_container(settings)
    app.state.container = container
    logger.info(f"Sync core initialized in {settings.mode.value} mode")

    try:
        report = await container.engine.flush_now()
        logger.info(f"Startup flush: {report.to_dict()}")
    except SyncAPIException as e:
        logger.error(f"Startup flush failed: {e.message}")

    yield

    # Cleanup on shutdown
    logger.info("Shutting down Practice Sync API")
    await container.close()
    logger.info("Cleanup completed")


app = FastAPI(
    title="Practice Sync API",
    description="Offline-first publish queue, directory and feed sync for the practice journal",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(PerformanceMiddleware)
app.add_middleware(CorrelationMiddleware)
app.add_exception_handler(SyncAPIException, sync_exception_handler)

# Health routers first (no authentication required for monitoring)
app.include_router(health_router)
app.include_router(monitoring_router)

app.include_router(router, dependencies=[Depends(verify_api_key)])


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "main:app",
        host="127.0.0.1",
        port=int(os.getenv("PORT", "8002")),
        log_level=os.getenv("LOG_LEVEL", "info").lower(),
    )
