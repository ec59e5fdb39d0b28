"""
backend/app/main.py

Purpose:
    FastAPI application bootstrap, middleware/router wiring, scheduler
    lifecycle for the league lifecycle and payout retry workers.

Dependencies:
    - app.database
    - app.workers.lifecycle_tick
    - app.workers.payout_dispatcher
"""

import logging
from contextlib import asynccontextmanager

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from bson.errors import InvalidId
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pymongo.errors import (
    ConnectionFailure,
    DuplicateKeyError,
    OperationFailure,
    ServerSelectionTimeoutError,
)

import app.database as _db
from app.config import settings
from app.database import close_db, connect_db
from app.middleware.logging import StructuredLoggingMiddleware, setup_logging
from app.utils import ensure_utc

logger = logging.getLogger("phantacci")
scheduler = AsyncIOScheduler()


def _build_job_specs() -> list[dict]:
    from app.workers.lifecycle_tick import advance_league_lifecycles
    from app.workers.payout_dispatcher import retry_payout_credits

    return [
        {
            "id": "lifecycle_tick",
            "func": advance_league_lifecycles,
            "trigger": "interval",
            "trigger_kwargs": {"minutes": settings.LIFECYCLE_TICK_MINUTES},
        },
        {
            "id": "payout_dispatcher",
            "func": retry_payout_credits,
            "trigger": "interval",
            "trigger_kwargs": {"minutes": settings.PAYOUT_RETRY_MINUTES},
        },
    ]


def _register_jobs() -> int:
    added = 0
    for spec in _build_job_specs():
        if scheduler.get_job(spec["id"]):
            continue
        scheduler.add_job(
            spec["func"],
            spec["trigger"],
            id=spec["id"],
            replace_existing=True,
            max_instances=1,
            coalesce=True,
            **spec["trigger_kwargs"],
        )
        added += 1
    return added


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging()
    await connect_db()

    if settings.SCHEDULER_ENABLED:
        added = _register_jobs()
        scheduler.start()
        logger.info("Background scheduler started with %d jobs", added)
    else:
        logger.info("Background scheduler disabled via config")

    yield

    if scheduler.running:
        scheduler.shutdown(wait=False)
    await close_db()


app = FastAPI(
    title="Phantacci",
    description="Gameweek fantasy leagues with prize payouts",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.BACKEND_CORS_ORIGINS.split(","),
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type"],
)

# Structured logging
app.add_middleware(StructuredLoggingMiddleware)

# Routers
from app.routers.leagues import router as leagues_router
from app.routers.admin_leagues import router as admin_leagues_router
from app.routers.wallet import router as wallet_router

app.include_router(leagues_router)
app.include_router(admin_leagues_router)
app.include_router(wallet_router)


@app.exception_handler(InvalidId)
async def invalid_object_id_handler(request: Request, exc: InvalidId):
    return JSONResponse(status_code=400, content={"detail": "Invalid ID."})


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    """Return clean validation errors without leaking internal field paths."""
    errors = []
    for err in exc.errors():
        loc = err.get("loc", ())
        # Strip the "body" / "query" prefix for cleaner messages
        field = ".".join(str(l) for l in loc[1:]) if len(loc) > 1 else str(loc[-1]) if loc else "unknown"
        errors.append({"field": field, "message": err.get("msg", "Invalid value.")})
    return JSONResponse(status_code=422, content={"detail": "Validation error.", "errors": errors})


@app.exception_handler(DuplicateKeyError)
async def duplicate_key_handler(request: Request, exc: DuplicateKeyError):
    return JSONResponse(status_code=409, content={"detail": "Duplicate entry."})


@app.exception_handler(ServerSelectionTimeoutError)
async def db_timeout_handler(request: Request, exc: ServerSelectionTimeoutError):
    logger.error("Database timeout: %s %s", request.method, request.url.path)
    return JSONResponse(status_code=503, content={"detail": "Service temporarily unavailable."})


@app.exception_handler(ConnectionFailure)
async def db_connection_handler(request: Request, exc: ConnectionFailure):
    logger.error("Database connection failure: %s %s", request.method, request.url.path)
    return JSONResponse(status_code=503, content={"detail": "Service temporarily unavailable."})


@app.exception_handler(OperationFailure)
async def db_operation_handler(request: Request, exc: OperationFailure):
    logger.error("Database operation error on %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=500, content={"detail": "An internal error occurred."})


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    """Catch-all: log the real error, return a safe generic message."""
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"detail": "An internal error occurred."})


@app.get("/health")
async def health():
    """Health check -- verifies DB connection, scheduler state and last job runs."""
    from app.workers._state import get_synced_at

    try:
        result = await _db.db.command("ping")
        db_ok = result.get("ok") == 1.0
    except Exception:
        db_ok = False

    workers = {}
    if db_ok:
        for worker_id in ("lifecycle_tick", "payout_dispatcher"):
            synced_at = await get_synced_at(worker_id)
            workers[worker_id] = ensure_utc(synced_at).isoformat() if synced_at else None

    return {
        "status": "healthy" if db_ok else "degraded",
        "db": "connected" if db_ok else "disconnected",
        "scheduler": "running" if scheduler.running else "stopped",
        "workers": workers,
    }
