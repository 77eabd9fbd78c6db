"""
Anchor AppView - FastAPI Backend
Serves check-in feeds and runs the ingestion and social graph jobs.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, Awaitable, Callable, Dict

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from config import settings, validate_job_settings
from database import ensure_schema
import models  # noqa: F401
from routers import cron, feeds, health
from services.ingestion import run_ingestion_cycle
from services.profile_resolver import refresh_stale_profiles
from services.social_graph import run_social_graph_sync

logging.basicConfig(
    level=settings.LOG_LEVEL.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)


async def _periodic(
    label: str,
    interval_minutes: int,
    job: Callable[[], Awaitable[Dict[str, Any]]],
    summary: Callable[[Dict[str, Any]], str],
) -> None:
    while True:
        await asyncio.sleep(interval_minutes * 60)
        try:
            result = await job()
            print(f"{label}: {summary(result)}")
        except Exception as exc:
            print(f"⚠️ {label} tick failed: {exc}")


def _ingest_summary(result: Dict[str, Any]) -> str:
    return (
        f"events={result.get('eventsProcessed', 0)} inserted={result.get('inserted', 0)} "
        f"errors={result.get('errors', 0)}"
    )


def _social_summary(result: Dict[str, Any]) -> str:
    return (
        f"users={result.get('usersProcessed', 0)} added={result.get('followsAdded', 0)} "
        f"removed={result.get('followsRemoved', 0)} errors={len(result.get('errors') or [])}"
    )


def _profile_summary(result: Dict[str, Any]) -> str:
    return f"refreshed={result.get('refreshed', 0)} failed={result.get('failed', 0)}"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown."""
    # Startup
    print("🚀 Starting Anchor AppView API...")
    validate_job_settings()
    if settings.AUTO_CREATE_DB_SCHEMA:
        try:
            await ensure_schema()
            print("🗄️ Database schema verified.")
        except Exception as e:
            print(f"⚠️ Database bootstrap skipped: {e}")

    loops = [
        (settings.INGEST_LOOP_ENABLED, "📡 Check-in ingestion", settings.INGEST_INTERVAL_MINUTES,
         run_ingestion_cycle, _ingest_summary),
        (settings.SOCIAL_SYNC_LOOP_ENABLED, "🧭 Social graph sync", settings.SOCIAL_SYNC_INTERVAL_MINUTES,
         run_social_graph_sync, _social_summary),
        (settings.PROFILE_REFRESH_LOOP_ENABLED, "👤 Profile refresh", settings.PROFILE_REFRESH_INTERVAL_MINUTES,
         refresh_stale_profiles, _profile_summary),
    ]
    tasks = []
    for enabled, label, interval, job, summary in loops:
        interval_minutes = max(int(interval), 0)
        if enabled and interval_minutes > 0:
            tasks.append(asyncio.create_task(_periodic(label, interval_minutes, job, summary)))
            print(f"📅 {label} loop enabled (every {interval_minutes} min).")
    yield
    # Shutdown
    for task in tasks:
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
    print("👋 Shutting down API...")


app = FastAPI(
    title="Anchor AppView API",
    description="Location check-in feeds aggregated from the AT Protocol network",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=False,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["*"],
)

# Include routers
app.include_router(health.router, tags=["Health"])
app.include_router(feeds.router, tags=["Feeds"])
app.include_router(cron.router, prefix="/cron", tags=["Jobs"])


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": "Anchor AppView API",
        "version": "0.1.0",
        "status": "running"
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("main:app", host=settings.API_HOST, port=settings.API_PORT, log_level=settings.LOG_LEVEL.lower())
