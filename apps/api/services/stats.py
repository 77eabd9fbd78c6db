"""Aggregate counters for the stats endpoint."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from sqlalchemy import distinct, func
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from models.address_cache import AddressCache
from models.checkin import Checkin
from models.processing_log import ProcessingLog
from models.profile_cache import ProfileCache
from models.user_follow import UserFollow


async def _scalar(db: AsyncSession, statement) -> int:
    result = await db.execute(statement)
    return int(result.scalar() or 0)


def _serialize_processing_log(row: Optional[ProcessingLog]) -> Optional[Dict[str, Any]]:
    if row is None:
        return None
    return {
        "runAt": row.run_at.isoformat() if row.run_at else None,
        "eventsProcessed": int(row.events_processed or 0),
        "streamEvents": int(row.stream_events or 0),
        "fallbackEvents": int(row.fallback_events or 0),
        "errors": int(row.errors or 0),
        "durationMs": int(row.duration_ms or 0),
    }


async def get_stats(*, db: AsyncSession) -> Dict[str, Any]:
    now = datetime.now(timezone.utc)
    recent_cutoff = (now - timedelta(hours=24)).strftime("%Y-%m-%dT%H:%M:%S")
    sync_cutoff = now - timedelta(hours=24)

    total_checkins = await _scalar(db, select(func.count()).select_from(Checkin))
    total_users = await _scalar(db, select(func.count(distinct(Checkin.author_did))))
    recent_activity = await _scalar(
        db, select(func.count()).select_from(Checkin).where(Checkin.created_at >= recent_cutoff)
    )
    with_addresses = await _scalar(
        db, select(func.count()).select_from(Checkin).where(Checkin.address_resolved_at.isnot(None))
    )

    addresses_total = await _scalar(db, select(func.count()).select_from(AddressCache))
    addresses_resolved = await _scalar(
        db, select(func.count()).select_from(AddressCache).where(AddressCache.failed_at.is_(None))
    )
    addresses_failed = await _scalar(
        db, select(func.count()).select_from(AddressCache).where(AddressCache.failed_at.isnot(None))
    )

    total_follows = await _scalar(db, select(func.count()).select_from(UserFollow))
    total_followers = await _scalar(db, select(func.count(distinct(UserFollow.follower_did))))
    total_following = await _scalar(db, select(func.count(distinct(UserFollow.following_did))))
    recent_syncs = await _scalar(
        db, select(func.count(distinct(UserFollow.follower_did))).where(UserFollow.synced_at >= sync_cutoff)
    )
    cached_profiles = await _scalar(db, select(func.count()).select_from(ProfileCache))

    last_run = await db.execute(select(ProcessingLog).order_by(ProcessingLog.id.desc()).limit(1))

    return {
        "totalCheckins": total_checkins,
        "totalUsers": total_users,
        "recentActivity": recent_activity,
        "checkinsWithAddresses": with_addresses,
        "addresses": {
            "total": addresses_total,
            "resolved": addresses_resolved,
            "failed": addresses_failed,
        },
        "follows": {
            "totalFollows": total_follows,
            "totalFollowers": total_followers,
            "totalFollowing": total_following,
            "recentSyncs": recent_syncs,
        },
        "profiles": {"cached": cached_profiles},
        "lastProcessingRun": _serialize_processing_log(last_run.scalars().first()),
        "timestamp": now.isoformat(),
    }
