"""Read-side feed queries over stored check-ins."""

from __future__ import annotations

from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.checkin import Checkin
from models.user_follow import UserFollow
from services.atproto_client import AtprotoClient
from services.geo import calculate_distance
from services.profile_resolver import AuthorProfile, batch_resolve_profiles

NO_FOLLOWS_MESSAGE = "No follows found for user"


def clamp_limit(value: Any) -> int:
    try:
        limit = int(value) if value is not None else settings.FEED_DEFAULT_LIMIT
    except (TypeError, ValueError):
        limit = settings.FEED_DEFAULT_LIMIT
    return max(1, min(limit, settings.FEED_MAX_LIMIT))


def clamp_radius(value: Any) -> float:
    try:
        radius = float(value) if value is not None else settings.NEARBY_DEFAULT_RADIUS_KM
    except (TypeError, ValueError):
        radius = settings.NEARBY_DEFAULT_RADIUS_KM
    if radius != radius or radius <= 0:
        radius = settings.NEARBY_DEFAULT_RADIUS_KM
    return min(radius, settings.NEARBY_MAX_RADIUS_KM)


def format_checkin(row: Checkin, profile: Optional[AuthorProfile] = None, distance: Optional[float] = None) -> Dict[str, Any]:
    author: Dict[str, Any] = {
        "did": row.author_did,
        "handle": (profile.handle if profile else None) or row.author_handle or row.author_did,
    }
    if profile and profile.display_name:
        author["displayName"] = profile.display_name
    if profile and profile.avatar:
        author["avatar"] = profile.avatar

    view: Dict[str, Any] = {
        "id": row.id,
        "uri": row.uri,
        "author": author,
        "text": row.text or "",
        "createdAt": row.created_at,
    }
    if row.latitude is not None and row.longitude is not None:
        view["coordinates"] = {"latitude": row.latitude, "longitude": row.longitude}

    address = {
        "name": row.cached_address_name,
        "street": row.cached_address_street,
        "locality": row.cached_address_locality,
        "region": row.cached_address_region,
        "country": row.cached_address_country,
        "postalCode": row.cached_address_postal_code,
    }
    if any(address.values()):
        view["address"] = address
    if distance is not None:
        view["distance"] = round(distance, 2)
    return view


async def _profiles_for(rows: Sequence[Checkin], db: AsyncSession, client: Optional[AtprotoClient]) -> Dict[str, AuthorProfile]:
    if not rows:
        return {}
    return await batch_resolve_profiles([row.author_did for row in rows], db=db, client=client)


def _newest_first(query, cursor: Optional[str]):
    if cursor:
        query = query.where(Checkin.created_at < cursor)
    return query.order_by(Checkin.created_at.desc(), Checkin.id.desc())


async def _page(query, *, db: AsyncSession, limit: int, cursor: Optional[str], client: Optional[AtprotoClient]) -> Dict[str, Any]:
    result = await db.execute(_newest_first(query, cursor).limit(limit))
    rows = result.scalars().all()
    profiles = await _profiles_for(rows, db, client)
    return {
        "checkins": [format_checkin(row, profiles.get(row.author_did)) for row in rows],
        "cursor": rows[-1].created_at if rows else None,
    }


async def get_global_feed(
    *,
    db: AsyncSession,
    limit: Any = None,
    cursor: Optional[str] = None,
    client: Optional[AtprotoClient] = None,
) -> Dict[str, Any]:
    return await _page(select(Checkin), db=db, limit=clamp_limit(limit), cursor=cursor, client=client)


async def get_nearby_checkins(
    *,
    db: AsyncSession,
    lat: float,
    lng: float,
    radius_km: Any = None,
    limit: Any = None,
    client: Optional[AtprotoClient] = None,
) -> Dict[str, Any]:
    """Closest check-ins among the most recent located ones.

    Candidates are the newest ``limit * NEARBY_OVERSAMPLE_FACTOR`` rows with
    coordinates; those within the radius are sorted by distance.
    """
    page_limit = clamp_limit(limit)
    radius = clamp_radius(radius_km)
    candidate_limit = page_limit * max(int(settings.NEARBY_OVERSAMPLE_FACTOR), 1)

    result = await db.execute(
        select(Checkin)
        .where(Checkin.latitude.isnot(None), Checkin.longitude.isnot(None))
        .order_by(Checkin.created_at.desc(), Checkin.id.desc())
        .limit(candidate_limit)
    )
    nearby = []
    for row in result.scalars().all():
        distance = calculate_distance(lat, lng, row.latitude, row.longitude)
        if distance <= radius:
            nearby.append((distance, row))
    nearby.sort(key=lambda pair: pair[0])
    nearby = nearby[:page_limit]

    profiles = await _profiles_for([row for _, row in nearby], db, client)
    return {
        "checkins": [format_checkin(row, profiles.get(row.author_did), distance) for distance, row in nearby],
        "center": {"latitude": lat, "longitude": lng},
        "radius": radius,
    }


async def get_user_checkins(
    *,
    db: AsyncSession,
    did: str,
    limit: Any = None,
    client: Optional[AtprotoClient] = None,
) -> Dict[str, Any]:
    result = await db.execute(
        select(Checkin)
        .where(Checkin.author_did == did)
        .order_by(Checkin.created_at.desc(), Checkin.id.desc())
        .limit(clamp_limit(limit))
    )
    rows = result.scalars().all()
    profiles = await _profiles_for(rows, db, client)
    return {
        "checkins": [format_checkin(row, profiles.get(row.author_did)) for row in rows],
        "user": {"did": did},
    }


async def get_following_dids(*, db: AsyncSession, follower_did: str) -> List[str]:
    result = await db.execute(select(UserFollow.following_did).where(UserFollow.follower_did == follower_did))
    return [row[0] for row in result.all()]


async def get_following_feed(
    *,
    db: AsyncSession,
    follower_did: str,
    limit: Any = None,
    cursor: Optional[str] = None,
    client: Optional[AtprotoClient] = None,
) -> Dict[str, Any]:
    following = await get_following_dids(db=db, follower_did=follower_did)
    if not following:
        return {"checkins": [], "message": NO_FOLLOWS_MESSAGE}

    page = await _page(
        select(Checkin).where(Checkin.author_did.in_(following)),
        db=db,
        limit=clamp_limit(limit),
        cursor=cursor,
        client=client,
    )
    page["followingCount"] = len(following)
    return page
