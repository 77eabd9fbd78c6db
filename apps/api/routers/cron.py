"""Job trigger endpoints for external schedulers."""

from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Dict, Optional

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse

from routers.rate_limit import rate_limit
from services.address_resolver import backfill_unresolved_addresses
from services.ingestion import run_ingestion_cycle
from services.profile_resolver import refresh_stale_profiles
from services.social_graph import get_follow_sync_strategy, run_social_graph_sync

logger = logging.getLogger(__name__)

router = APIRouter()


async def _run_job(name: str, job: Callable[[], Awaitable[Dict[str, Any]]]):
    try:
        result = await job()
    except Exception as exc:
        logger.exception("Cron job %s failed", name)
        return JSONResponse(
            status_code=500,
            content={"success": False, "error": f"{name} failed: {exc}"},
        )
    logger.info("Cron job %s result: %s", name, result)
    return result


@router.post("/ingest")
async def trigger_ingest(
    _rate_limit: None = Depends(rate_limit("cron_ingest", limit=30, window_seconds=3600)),
):
    """Run one ingestion cycle."""
    return await _run_job("ingest", run_ingestion_cycle)


@router.post("/social-graph")
async def trigger_social_graph(
    strategy: Optional[str] = Query(default=None),
    _rate_limit: None = Depends(rate_limit("cron_social_graph", limit=6, window_seconds=3600)),
):
    """Sync follow edges for recently active authors."""
    if strategy and strategy not in {"replace", "diff"}:
        return JSONResponse(status_code=400, content={"error": "strategy must be replace or diff"})
    return await _run_job(
        "social-graph",
        lambda: run_social_graph_sync(strategy=get_follow_sync_strategy(strategy)),
    )


@router.post("/profiles")
async def trigger_profile_refresh(
    limit: Optional[int] = Query(default=None, ge=1, le=1000),
    _rate_limit: None = Depends(rate_limit("cron_profiles", limit=30, window_seconds=3600)),
):
    """Refetch stale cached profiles."""
    return await _run_job("profiles", lambda: refresh_stale_profiles(limit))


@router.post("/addresses")
async def trigger_address_backfill(
    limit: Optional[int] = Query(default=None, ge=1, le=500),
    _rate_limit: None = Depends(rate_limit("cron_addresses", limit=30, window_seconds=3600)),
):
    """Resolve addresses for check-ins still missing them."""
    return await _run_job("addresses", lambda: backfill_unresolved_addresses(limit))
