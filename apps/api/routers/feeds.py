"""Public check-in feed endpoints."""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from services.atproto_client import AtprotoClient, get_atproto_client
from services.feeds import (
    get_following_feed,
    get_global_feed,
    get_nearby_checkins,
    get_user_checkins,
)
from services.geo import parse_coordinate
from services.stats import get_stats

router = APIRouter()


def _bad_request(message: str) -> JSONResponse:
    return JSONResponse(status_code=400, content={"error": message})


@router.get("/global")
async def global_feed(
    limit: Optional[str] = Query(default=None),
    cursor: Optional[str] = Query(default=None),
    db: AsyncSession = Depends(get_db),
    client: AtprotoClient = Depends(get_atproto_client),
):
    """Newest check-ins across all authors."""
    return await get_global_feed(db=db, limit=limit, cursor=cursor or None, client=client)


@router.get("/nearby")
async def nearby_feed(
    lat: Optional[str] = Query(default=None),
    lng: Optional[str] = Query(default=None),
    radius: Optional[str] = Query(default=None),
    limit: Optional[str] = Query(default=None),
    db: AsyncSession = Depends(get_db),
    client: AtprotoClient = Depends(get_atproto_client),
):
    """Recent check-ins within a radius (km) of a point, closest first."""
    latitude = parse_coordinate(lat)
    longitude = parse_coordinate(lng)
    if latitude is None or longitude is None:
        return _bad_request("lat and lng parameters required")
    return await get_nearby_checkins(
        db=db,
        lat=latitude,
        lng=longitude,
        radius_km=radius,
        limit=limit,
        client=client,
    )


@router.get("/user")
async def user_feed(
    did: Optional[str] = Query(default=None),
    limit: Optional[str] = Query(default=None),
    db: AsyncSession = Depends(get_db),
    client: AtprotoClient = Depends(get_atproto_client),
):
    if not did:
        return _bad_request("did parameter required")
    return await get_user_checkins(db=db, did=did, limit=limit, client=client)


@router.get("/following")
async def following_feed(
    user: Optional[str] = Query(default=None),
    limit: Optional[str] = Query(default=None),
    cursor: Optional[str] = Query(default=None),
    db: AsyncSession = Depends(get_db),
    client: AtprotoClient = Depends(get_atproto_client),
):
    if not user:
        return _bad_request("user parameter required")
    return await get_following_feed(db=db, follower_did=user, limit=limit, cursor=cursor or None, client=client)


@router.get("/stats")
async def stats(db: AsyncSession = Depends(get_db)):
    return await get_stats(db=db)
