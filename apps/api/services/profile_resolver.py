"""Author profile cache backed by the public AppView."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import func
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from database import async_session_maker
from models.profile_cache import ProfileCache
from services.atproto_client import AtprotoClient, AtprotoRequestError, client_scope

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AuthorProfile:
    did: str
    handle: Optional[str]
    display_name: Optional[str]
    avatar: Optional[str]
    description: Optional[str] = None


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _is_fresh(row: ProfileCache, now: datetime) -> bool:
    fetched = _as_utc(row.fetched_at)
    return fetched is not None and now - fetched < timedelta(hours=settings.PROFILE_CACHE_TTL_HOURS)


def _to_profile(row: ProfileCache) -> AuthorProfile:
    return AuthorProfile(
        did=row.did,
        handle=row.handle,
        display_name=row.display_name,
        avatar=row.avatar,
        description=row.description,
    )


def _profile_values(did: str, data: Dict[str, Any], previous: Optional[ProfileCache], now: datetime) -> Dict[str, Any]:
    return {
        "did": did,
        "handle": data.get("handle") or (previous.handle if previous is not None else None),
        "display_name": data.get("displayName"),
        "avatar": data.get("avatar"),
        "description": data.get("description"),
        "fetched_at": now,
    }


def _upsert_profiles(dialect: str, values: List[Dict[str, Any]]):
    if dialect == "postgresql":
        stmt = pg_insert(ProfileCache).values(values)
    elif dialect == "sqlite":
        stmt = sqlite_insert(ProfileCache).values(values)
    else:
        raise RuntimeError(f"Unsupported database dialect for profile cache: {dialect or 'unknown'}")
    return stmt.on_conflict_do_update(
        index_elements=[ProfileCache.did],
        set_={
            "handle": func.coalesce(stmt.excluded.handle, ProfileCache.handle),
            "display_name": stmt.excluded.display_name,
            "avatar": stmt.excluded.avatar,
            "description": stmt.excluded.description,
            "fetched_at": stmt.excluded.fetched_at,
            "updated_at": func.now(),
        },
    )


async def _fetch_profile(did: str, client: AtprotoClient) -> Optional[Dict[str, Any]]:
    try:
        return await client.get_profile(did)
    except AtprotoRequestError as exc:
        logger.warning("Profile fetch failed for %s: %s", did, exc)
        return None


async def _fetch_profiles(
    dids: List[str],
    *,
    cached: Dict[str, ProfileCache],
    client: Optional[AtprotoClient],
    now: datetime,
) -> Dict[str, Dict[str, Any]]:
    """Fetch profiles concurrently in small batches; returns column values per fetched DID."""
    fetched: Dict[str, Dict[str, Any]] = {}
    batch_size = max(int(settings.PROFILE_BATCH_SIZE), 1)
    async with client_scope(client) as atproto:
        for start in range(0, len(dids), batch_size):
            if start and settings.PROFILE_BATCH_DELAY_SECONDS > 0:
                await asyncio.sleep(settings.PROFILE_BATCH_DELAY_SECONDS)
            chunk = dids[start:start + batch_size]
            payloads = await asyncio.gather(*(_fetch_profile(did, atproto) for did in chunk))
            for did, data in zip(chunk, payloads):
                if data:
                    fetched[did] = _profile_values(did, data, cached.get(did), now)
    return fetched


async def _write_profiles(db: AsyncSession, values: List[Dict[str, Any]]) -> None:
    await db.execute(_upsert_profiles(db.bind.dialect.name, values))
    await db.commit()


async def _write_profiles_best_effort(bind, values: List[Dict[str, Any]]) -> None:
    # Separate session: a failed write must not expire rows the caller still holds.
    async with AsyncSession(bind=bind, expire_on_commit=False) as writer:
        try:
            await _write_profiles(writer, values)
        except Exception as exc:
            await writer.rollback()
            logger.warning("Profile cache write skipped: %s", exc)


async def batch_resolve_profiles(
    dids: Iterable[str],
    *,
    db: AsyncSession,
    client: Optional[AtprotoClient] = None,
) -> Dict[str, AuthorProfile]:
    """Resolve many DIDs: cache first, then concurrent fetches in small batches.

    A stale entry is still returned when its refetch fails. Cache writes go
    through their own session, so ``db`` is only ever read from.
    """
    unique = list(dict.fromkeys(did for did in dids if did))
    if not unique:
        return {}

    now = datetime.now(timezone.utc)
    result = await db.execute(select(ProfileCache).where(ProfileCache.did.in_(unique)))
    cached = {row.did: row for row in result.scalars().all()}
    profiles = {did: _to_profile(row) for did, row in cached.items()}

    missing = [did for did in unique if did not in cached or not _is_fresh(cached[did], now)]
    if not missing:
        return profiles

    fetched = await _fetch_profiles(missing, cached=cached, client=client, now=now)
    for did, values in fetched.items():
        profiles[did] = AuthorProfile(
            did=did,
            handle=values["handle"],
            display_name=values["display_name"],
            avatar=values["avatar"],
            description=values["description"],
        )
    if fetched:
        await _write_profiles_best_effort(db.bind, list(fetched.values()))
    return profiles


async def resolve_profile(
    did: str,
    *,
    db: AsyncSession,
    client: Optional[AtprotoClient] = None,
) -> Optional[AuthorProfile]:
    profiles = await batch_resolve_profiles([did], db=db, client=client)
    return profiles.get(did)


async def refresh_stale_profiles(
    limit: Optional[int] = None,
    *,
    session_factory=None,
    client: Optional[AtprotoClient] = None,
) -> Dict[str, Any]:
    """Refetch the oldest cache entries that are past the TTL."""
    factory = session_factory or async_session_maker
    batch_limit = max(int(limit or settings.PROFILE_REFRESH_LIMIT), 1)
    now = datetime.now(timezone.utc)
    cutoff = now - timedelta(hours=settings.PROFILE_CACHE_TTL_HOURS)

    async with factory() as db:
        result = await db.execute(
            select(ProfileCache)
            .where(ProfileCache.fetched_at < cutoff)
            .order_by(ProfileCache.fetched_at.asc())
            .limit(batch_limit)
        )
        cached = {row.did: row for row in result.scalars().all()}
        stale = list(cached)
        fetched = await _fetch_profiles(stale, cached=cached, client=client, now=now)
        if fetched:
            await _write_profiles(db, list(fetched.values()))

    logger.info("Profile refresh: checked=%s refreshed=%s", len(stale), len(fetched))
    return {
        "success": True,
        "checked": len(stale),
        "refreshed": len(fetched),
        "failed": len(stale) - len(fetched),
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
