from datetime import datetime, timedelta, timezone

import httpx
import pytest

from config import settings
from models.profile_cache import ProfileCache
from services.profile_resolver import batch_resolve_profiles, refresh_stale_profiles, resolve_profile

PROFILE_PATH = "/xrpc/app.bsky.actor.getProfile"


def _profile_handler(request: httpx.Request) -> httpx.Response:
    actor = request.url.params["actor"]
    return httpx.Response(
        200,
        json={"did": actor, "handle": actor.split(":")[-1] + ".test", "displayName": actor.upper()},
    )


@pytest.mark.asyncio
async def test_miss_is_fetched_cached_and_then_served_from_cache(session_maker, upstream):
    upstream.add(PROFILE_PATH, _profile_handler)

    async with upstream.client() as client:
        async with session_maker() as db:
            first = await resolve_profile("did:plc:alice", db=db, client=client)
        async with session_maker() as db:
            second = await resolve_profile("did:plc:alice", db=db, client=client)

    assert first.handle == "alice.test"
    assert second == first
    assert len(upstream.calls_to(PROFILE_PATH)) == 1


@pytest.mark.asyncio
async def test_stale_entry_is_returned_when_refetch_fails(session_maker, upstream):
    stale_at = datetime.now(timezone.utc) - timedelta(hours=settings.PROFILE_CACHE_TTL_HOURS + 1)
    async with session_maker() as db:
        db.add(ProfileCache(did="did:plc:alice", handle="alice.old", display_name="Old", fetched_at=stale_at))
        await db.commit()
    upstream.add(PROFILE_PATH, lambda request: httpx.Response(503))

    async with upstream.client() as client:
        async with session_maker() as db:
            profile = await resolve_profile("did:plc:alice", db=db, client=client)

    assert profile.handle == "alice.old"
    assert profile.display_name == "Old"


@pytest.mark.asyncio
async def test_batch_resolution_fetches_each_missing_did_once(session_maker, upstream, monkeypatch):
    monkeypatch.setattr(settings, "PROFILE_BATCH_SIZE", 3)
    upstream.add(PROFILE_PATH, _profile_handler)
    dids = [f"did:plc:user{i}" for i in range(7)]

    async with upstream.client() as client:
        async with session_maker() as db:
            profiles = await batch_resolve_profiles(dids + dids[:2] + [""], db=db, client=client)

    assert sorted(profiles) == sorted(dids)
    assert len(upstream.calls_to(PROFILE_PATH)) == 7
    async with session_maker() as db:
        assert await db.get(ProfileCache, "did:plc:user6") is not None


@pytest.mark.asyncio
async def test_unknown_actor_resolves_to_nothing(session_maker, upstream):
    async with upstream.client() as client:
        async with session_maker() as db:
            assert await resolve_profile("did:plc:ghost", db=db, client=client) is None


@pytest.mark.asyncio
async def test_refresh_only_touches_stale_entries(session_maker, upstream):
    now = datetime.now(timezone.utc)
    async with session_maker() as db:
        db.add_all(
            [
                ProfileCache(did="did:plc:stale", handle="stale.old", fetched_at=now - timedelta(days=2)),
                ProfileCache(did="did:plc:fresh", handle="fresh.test", fetched_at=now - timedelta(minutes=5)),
            ]
        )
        await db.commit()
    upstream.add(PROFILE_PATH, _profile_handler)

    async with upstream.client() as client:
        result = await refresh_stale_profiles(session_factory=session_maker, client=client)

    assert result["checked"] == 1
    assert result["refreshed"] == 1
    assert result["failed"] == 0
    assert [request.url.params["actor"] for request in upstream.calls_to(PROFILE_PATH)] == ["did:plc:stale"]
    async with session_maker() as db:
        refreshed = await db.get(ProfileCache, "did:plc:stale")
    assert refreshed.handle == "stale.test"
