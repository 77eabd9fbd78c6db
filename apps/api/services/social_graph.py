"""Follow-graph sync for authors with recent check-in activity."""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import delete
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from database import async_session_maker
from models.checkin import Checkin
from models.user_follow import UserFollow
from services.atproto_client import AtprotoClient, AtprotoRequestError, client_scope

logger = logging.getLogger(__name__)

FOLLOW_COLLECTION = "app.bsky.graph.follow"


@dataclass(frozen=True)
class FollowEntry:
    did: str
    created_at: Optional[str] = None


@dataclass
class FollowSyncResult:
    strategy: str
    total_active_users: int = 0
    users_processed: int = 0
    users_skipped: int = 0
    follows_added: int = 0
    follows_removed: int = 0
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": True,
            "strategy": self.strategy,
            "totalActiveUsers": self.total_active_users,
            "usersProcessed": self.users_processed,
            "usersSkipped": self.users_skipped,
            "followsAdded": self.follows_added,
            "followsRemoved": self.follows_removed,
            "errors": self.errors,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }


def _dedupe(entries: List[FollowEntry]) -> List[FollowEntry]:
    seen: Dict[str, FollowEntry] = {}
    for entry in entries:
        if entry.did and entry.did not in seen:
            seen[entry.did] = entry
    return list(seen.values())


async def _existing_following(db: AsyncSession, follower_did: str) -> set:
    result = await db.execute(select(UserFollow.following_did).where(UserFollow.follower_did == follower_did))
    return {row[0] for row in result.all()}


def _edge(follower_did: str, entry: FollowEntry, now: datetime) -> UserFollow:
    return UserFollow(
        follower_did=follower_did,
        following_did=entry.did,
        created_at=entry.created_at,
        synced_at=now,
    )


class FollowSyncStrategy(ABC):
    """Fetches one author's follow set and writes it to the edge table.

    ``fetch_follows`` returns None when the author is unknown upstream, in
    which case the stored edges are left untouched. A page that vanishes
    mid-pagination raises, so a partial set is never applied.
    """

    name: str

    @abstractmethod
    async def fetch_follows(self, did: str, client: AtprotoClient) -> Optional[List[FollowEntry]]:
        raise NotImplementedError

    @abstractmethod
    async def apply(self, db: AsyncSession, follower_did: str, follows: List[FollowEntry]) -> Tuple[int, int]:
        raise NotImplementedError


class PublicApiReplaceStrategy(FollowSyncStrategy):
    """getFollows from the public AppView, then delete-all and reinsert."""

    name = "replace"

    async def fetch_follows(self, did: str, client: AtprotoClient) -> Optional[List[FollowEntry]]:
        follows: List[FollowEntry] = []
        cursor: Optional[str] = None
        first_page = True
        while True:
            page = await client.get_follows(did, cursor=cursor, limit=settings.SOCIAL_SYNC_PAGE_SIZE)
            if page is None:
                if first_page:
                    return None
                raise AtprotoRequestError(f"Follow page for {did} disappeared mid-pagination", status_code=404)
            first_page = False
            for item in page.get("follows") or []:
                if item.get("did"):
                    follows.append(FollowEntry(did=item["did"], created_at=item.get("createdAt")))
            cursor = page.get("cursor")
            if not cursor:
                break
            if settings.SOCIAL_SYNC_PAGE_DELAY_SECONDS > 0:
                await asyncio.sleep(settings.SOCIAL_SYNC_PAGE_DELAY_SECONDS)
        return _dedupe(follows)

    async def apply(self, db: AsyncSession, follower_did: str, follows: List[FollowEntry]) -> Tuple[int, int]:
        existing = await _existing_following(db, follower_did)
        observed = {entry.did for entry in follows}
        now = datetime.now(timezone.utc)
        await db.execute(delete(UserFollow).where(UserFollow.follower_did == follower_did))
        db.add_all([_edge(follower_did, entry, now) for entry in follows])
        await db.commit()
        return len(observed - existing), len(existing - observed)


class RepoDiffStrategy(FollowSyncStrategy):
    """Reads follow records from the author's repository and applies only the delta."""

    name = "diff"

    async def fetch_follows(self, did: str, client: AtprotoClient) -> Optional[List[FollowEntry]]:
        follows: List[FollowEntry] = []
        cursor: Optional[str] = None
        first_page = True
        while True:
            page = await client.list_records(did, FOLLOW_COLLECTION, cursor=cursor, limit=settings.SOCIAL_SYNC_PAGE_SIZE)
            if page is None:
                if first_page:
                    return None
                raise AtprotoRequestError(f"Follow page for {did} disappeared mid-pagination", status_code=404)
            first_page = False
            for item in page.get("records") or []:
                value = item.get("value") or {}
                subject = value.get("subject")
                if isinstance(subject, str) and subject:
                    follows.append(FollowEntry(did=subject, created_at=value.get("createdAt")))
            cursor = page.get("cursor")
            if not cursor:
                break
            if settings.SOCIAL_SYNC_PAGE_DELAY_SECONDS > 0:
                await asyncio.sleep(settings.SOCIAL_SYNC_PAGE_DELAY_SECONDS)
        return _dedupe(follows)

    async def apply(self, db: AsyncSession, follower_did: str, follows: List[FollowEntry]) -> Tuple[int, int]:
        existing = await _existing_following(db, follower_did)
        by_did = {entry.did: entry for entry in follows}
        to_add = [by_did[did] for did in by_did if did not in existing]
        to_remove = [did for did in existing if did not in by_did]
        now = datetime.now(timezone.utc)
        if to_remove:
            await db.execute(
                delete(UserFollow).where(
                    UserFollow.follower_did == follower_did,
                    UserFollow.following_did.in_(to_remove),
                )
            )
        db.add_all([_edge(follower_did, entry, now) for entry in to_add])
        await db.commit()
        return len(to_add), len(to_remove)


def get_follow_sync_strategy(name: Optional[str] = None) -> FollowSyncStrategy:
    key = (name or settings.FOLLOW_SYNC_STRATEGY or "replace").strip().lower()
    if key == "diff":
        return RepoDiffStrategy()
    if key == "replace":
        return PublicApiReplaceStrategy()
    raise ValueError(f"Unknown follow sync strategy: {key}")


async def get_active_user_dids(*, db: AsyncSession, days: Optional[int] = None, limit: Optional[int] = None) -> List[str]:
    """Distinct authors with a check-in created inside the activity window."""
    window = days if days is not None else settings.SOCIAL_SYNC_ACTIVE_DAYS
    cutoff = (datetime.now(timezone.utc) - timedelta(days=window)).strftime("%Y-%m-%dT%H:%M:%S")
    result = await db.execute(
        select(Checkin.author_did)
        .where(Checkin.created_at >= cutoff)
        .group_by(Checkin.author_did)
        .order_by(Checkin.author_did)
        .limit(max(int(limit or settings.SOCIAL_SYNC_MAX_USERS), 1))
    )
    return [row[0] for row in result.all()]


async def sync_user_follows(
    did: str,
    *,
    strategy: FollowSyncStrategy,
    session_factory,
    client: AtprotoClient,
) -> Optional[Tuple[int, int]]:
    follows = await strategy.fetch_follows(did, client)
    if follows is None:
        return None
    async with session_factory() as db:
        return await strategy.apply(db, did, follows)


async def run_social_graph_sync(
    *,
    strategy: Optional[FollowSyncStrategy] = None,
    session_factory=None,
    client: Optional[AtprotoClient] = None,
) -> Dict[str, Any]:
    """Sync follow edges for every recently active author; per-user failures are collected."""
    factory = session_factory or async_session_maker
    active_strategy = strategy or get_follow_sync_strategy()
    result = FollowSyncResult(strategy=active_strategy.name)

    async with factory() as db:
        active = await get_active_user_dids(db=db)
    result.total_active_users = len(active)
    logger.info("Social graph sync (%s): %s active users", active_strategy.name, len(active))

    async with client_scope(client) as atproto:
        for index, did in enumerate(active):
            if index and settings.SOCIAL_SYNC_USER_DELAY_SECONDS > 0:
                await asyncio.sleep(settings.SOCIAL_SYNC_USER_DELAY_SECONDS)
            try:
                delta = await sync_user_follows(did, strategy=active_strategy, session_factory=factory, client=atproto)
            except Exception as exc:
                logger.warning("Follow sync failed for %s: %s", did, exc)
                result.errors.append(f"{did}: {exc}")
                continue
            if delta is None:
                logger.info("Follow sync skipped for %s: not found upstream", did)
                result.users_skipped += 1
                continue
            added, removed = delta
            result.users_processed += 1
            result.follows_added += added
            result.follows_removed += removed

    logger.info(
        "Social graph sync finished: processed=%s added=%s removed=%s errors=%s",
        result.users_processed,
        result.follows_added,
        result.follows_removed,
        len(result.errors),
    )
    return result.to_dict()
