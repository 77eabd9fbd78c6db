from typing import Any, Callable, Dict, List, Optional, Union

import httpx
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from config import settings
from database import Base, get_db
from main import app
from routers import rate_limit
from services.atproto_client import AtprotoClient, get_atproto_client

PDS_URL = "https://pds.test"

RouteHandler = Union[Dict[str, Any], Callable[[httpx.Request], httpx.Response]]


class FakeUpstream:
    """Offline stand-in for the AppView, PDS and PLC directory, keyed by URL path."""

    def __init__(self):
        self.routes: Dict[str, RouteHandler] = {}
        self.calls: List[httpx.Request] = []

    def add(self, path: str, handler: RouteHandler) -> None:
        self.routes[path] = handler

    def add_did(self, did: str, pds: str = PDS_URL) -> None:
        self.add(
            f"/{did}",
            {
                "id": did,
                "service": [
                    {"id": "#atproto_pds", "type": "AtprotoPersonalDataServer", "serviceEndpoint": pds},
                ],
            },
        )

    def calls_to(self, path: str) -> List[httpx.Request]:
        return [request for request in self.calls if request.url.path == path]

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.calls.append(request)
        handler = self.routes.get(request.url.path)
        if handler is None:
            return httpx.Response(404, json={"error": "NotFound"})
        if callable(handler):
            return handler(request)
        return httpx.Response(200, json=handler)

    def client(self) -> AtprotoClient:
        return AtprotoClient(transport=httpx.MockTransport(self))


@pytest.fixture(autouse=True)
def reset_local_rate_limit_counters():
    """Keep in-memory rate-limit state isolated between tests."""
    previous = getattr(app.state, "disable_rate_limits", False)
    app.state.disable_rate_limits = True
    rate_limit._local_counters.clear()
    yield
    rate_limit._local_counters.clear()
    app.state.disable_rate_limits = previous


@pytest.fixture(autouse=True)
def no_upstream_delays(monkeypatch):
    """Pacing sleeps only matter against real upstreams."""
    monkeypatch.setattr(settings, "PROFILE_BATCH_DELAY_SECONDS", 0)
    monkeypatch.setattr(settings, "SOCIAL_SYNC_PAGE_DELAY_SECONDS", 0)
    monkeypatch.setattr(settings, "SOCIAL_SYNC_USER_DELAY_SECONDS", 0)
    monkeypatch.setattr(settings, "ADDRESS_BACKFILL_DELAY_SECONDS", 0)
    monkeypatch.setattr(settings, "ADDRESS_RESOLUTION_USE_QUEUE", False)


@pytest.fixture
def upstream():
    return FakeUpstream()


@pytest_asyncio.fixture
async def session_maker(tmp_path):
    db_path = tmp_path / "anchor.db"
    engine = create_async_engine(f"sqlite+aiosqlite:///{db_path}")
    maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield maker
    await engine.dispose()


@pytest_asyncio.fixture
async def api_client(session_maker, upstream):
    async def override_get_db():
        async with session_maker() as session:
            yield session

    async def override_get_atproto_client():
        client = upstream.client()
        try:
            yield client
        finally:
            await client.aclose()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_atproto_client] = override_get_atproto_client
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client
    app.dependency_overrides.pop(get_db, None)
    app.dependency_overrides.pop(get_atproto_client, None)


def checkin_record(
    *,
    text: str = "",
    created_at: Optional[str] = None,
    lat: Any = None,
    lng: Any = None,
    address_uri: Optional[str] = None,
) -> Dict[str, Any]:
    record: Dict[str, Any] = {"$type": "app.dropanchor.checkin", "text": text}
    if created_at is not None:
        record["createdAt"] = created_at
    if lat is not None or lng is not None:
        record["coordinates"] = {"latitude": lat, "longitude": lng}
    if address_uri is not None:
        record["addressRef"] = {"uri": address_uri, "cid": "bafyaddress"}
    return record
