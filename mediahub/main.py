"""Application entry point for the media backend."""
from __future__ import annotations

import asyncio
import logging
import os
from typing import Iterable

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .config import get_settings
from .database import init_db
from .routers import images_router, media_router
from .services import get_rate_limiter

settings = get_settings()

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)

APP_NAME = settings.app_name
API_VERSION = settings.api_version
DISABLE_SWEEP = (
    os.getenv("DISABLE_RATE_LIMIT_SWEEP", "").lower() == "true" or os.getenv("PYTEST_CURRENT_TEST") is not None
)

app = FastAPI(title=APP_NAME, version=API_VERSION)

cors_origins = os.getenv("CORS_ORIGINS")
if cors_origins:
    origins: Iterable[str] = [origin.strip() for origin in cors_origins.split(",") if origin.strip()]
else:
    origins = ["*"]

app.add_middleware(
    CORSMiddleware,
    allow_origins=list(origins),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(media_router)
app.include_router(images_router)

_sweep_task: asyncio.Task[None] | None = None
_sweep_stop = asyncio.Event()


async def _sweep_once() -> None:
    try:
        removed = await get_rate_limiter().sweep_expired()
    except Exception:
        logger.exception("Rate limit sweep failed")
        return
    if removed:
        logger.debug("Removed %d expired rate limit windows", removed)


async def _sweep_loop() -> None:
    """Drop expired rate-limit windows on a fixed interval."""

    while not _sweep_stop.is_set():
        await _sweep_once()
        try:
            await asyncio.wait_for(_sweep_stop.wait(), timeout=settings.rate_limit_sweep_interval_seconds)
        except asyncio.TimeoutError:
            continue


@app.on_event("startup")
async def _startup() -> None:
    """Ensure the database schema exists and start the rate-limit sweeper."""

    try:
        init_db()
    except Exception:
        logger.exception("Database initialisation failed")
        raise

    if DISABLE_SWEEP:
        logger.info("Rate limit sweep disabled (testing mode)")
        return

    global _sweep_task
    if _sweep_task is None or _sweep_task.done():
        _sweep_stop.clear()
        _sweep_task = asyncio.create_task(_sweep_loop())


@app.on_event("shutdown")
async def _shutdown() -> None:
    _sweep_stop.set()
    if _sweep_task is not None:
        try:
            await _sweep_task
        except asyncio.CancelledError:
            pass


@app.get("/api", tags=["system"])
def api_info() -> dict[str, str]:
    return {"service": APP_NAME, "version": API_VERSION}


@app.get("/health", tags=["system"])
async def healthcheck() -> dict[str, str]:
    return {"status": "ok", "kv_backend": settings.kv_backend}
