import asyncio
import json
from typing import List
from urllib.parse import parse_qs, urlparse

import pytest

from ingestion.jetstream import JetstreamConsumer, build_subscribe_url, default_cursor

COLLECTION = "app.dropanchor.checkin"


def _commit(rkey: str, time_us: int, *, collection: str = COLLECTION, operation: str = "create") -> str:
    return json.dumps(
        {
            "did": "did:plc:author1",
            "time_us": time_us,
            "kind": "commit",
            "commit": {
                "rev": "3l",
                "operation": operation,
                "collection": collection,
                "rkey": rkey,
                "record": {"text": rkey, "createdAt": "2026-10-01T00:00:00Z"},
                "cid": "bafy",
            },
        }
    )


class _FakeWebSocket:
    """Serves queued frames, then stays silent like a caught-up stream."""

    def __init__(self, frames: List[str], *, trickle_seconds: float = 0.0, endless: bool = False):
        self.frames = list(frames)
        self.trickle_seconds = trickle_seconds
        self.endless = endless
        self.sent = 0

    async def recv(self):
        if self.trickle_seconds:
            await asyncio.sleep(self.trickle_seconds)
        if self.frames:
            self.sent += 1
            return self.frames.pop(0)
        if self.endless:
            self.sent += 1
            return json.dumps({"did": "did:plc:x", "time_us": 10_000 + self.sent, "kind": "identity"})
        await asyncio.sleep(3600)


class _FakeConnection:
    def __init__(self, websocket):
        self.websocket = websocket

    async def __aenter__(self):
        return self.websocket

    async def __aexit__(self, *exc_info):
        return False


def _connector(websocket, urls: List[str]):
    def connect(url):
        urls.append(url)
        return _FakeConnection(websocket)

    return connect


def test_subscribe_url_carries_collection_and_cursor():
    url = build_subscribe_url(1725911162329308, base_url="wss://jetstream.test/subscribe", collection=COLLECTION)
    query = parse_qs(urlparse(url).query)
    assert url.startswith("wss://jetstream.test/subscribe?")
    assert query["wantedCollections"] == [COLLECTION]
    assert query["cursor"] == ["1725911162329308"]


def test_default_cursor_is_one_hour_back():
    assert default_cursor(now_us=10_000_000_000) == 10_000_000_000 - 3_600_000_000


@pytest.mark.asyncio
async def test_consumer_handles_checkin_creates_and_stops_when_idle():
    handled = []

    async def handler(event):
        handled.append(event["commit"]["rkey"])
        return True

    frames = [
        _commit("a", 100),
        _commit("b", 300, operation="delete"),
        _commit("c", 200, collection="app.bsky.feed.post"),
        _commit("d", 400),
    ]
    urls: List[str] = []
    consumer = JetstreamConsumer(
        handler,
        collection=COLLECTION,
        hard_timeout=5,
        inactivity_timeout=0.05,
        connect=_connector(_FakeWebSocket(frames), urls),
    )

    result = await consumer.run(50)

    assert handled == ["a", "d"]
    assert result.processed == 2
    assert result.inserted == 2
    assert result.messages == 4
    assert result.cursor == 400
    assert result.errors == 0
    assert result.stop_reason == "idle"
    assert "cursor=50" in urls[0]


@pytest.mark.asyncio
async def test_bad_messages_are_counted_without_stopping_the_loop():
    async def handler(event):
        if event["commit"]["rkey"] == "boom":
            raise RuntimeError("db down")
        return False

    frames = ["not json", _commit("boom", 100), _commit("ok", 200)]
    consumer = JetstreamConsumer(
        handler,
        collection=COLLECTION,
        hard_timeout=5,
        inactivity_timeout=0.05,
        connect=_connector(_FakeWebSocket(frames), []),
    )

    result = await consumer.run(None)

    assert result.errors == 2
    assert result.processed == 1
    assert result.inserted == 0
    # The next run resumes just before the failed event.
    assert result.cursor == 99
    assert len(result.error_messages) == 2


@pytest.mark.asyncio
async def test_failed_event_holds_cursor_even_after_later_successes():
    handled = []

    async def handler(event):
        rkey = event["commit"]["rkey"]
        if rkey == "fails":
            raise RuntimeError("db down")
        handled.append(rkey)
        return True

    frames = [_commit("first", 150), _commit("fails", 200), _commit("later", 300), _commit("last", 400)]
    consumer = JetstreamConsumer(
        handler,
        collection=COLLECTION,
        hard_timeout=5,
        inactivity_timeout=0.05,
        connect=_connector(_FakeWebSocket(frames), []),
    )

    result = await consumer.run(100)

    assert handled == ["first", "later", "last"]
    assert result.errors == 1
    assert result.inserted == 3
    assert result.cursor == 199


@pytest.mark.asyncio
async def test_hard_deadline_ends_a_busy_stream():
    async def handler(event):
        return True

    consumer = JetstreamConsumer(
        handler,
        collection=COLLECTION,
        hard_timeout=0.2,
        inactivity_timeout=1.0,
        connect=_connector(_FakeWebSocket([], trickle_seconds=0.01, endless=True), []),
    )

    result = await consumer.run(None)

    assert result.stop_reason == "deadline"
    assert result.messages > 0
    assert result.errors == 0


@pytest.mark.asyncio
async def test_connection_failures_retry_with_backoff_then_resolve():
    sleeps: List[float] = []
    attempts: List[str] = []

    async def fake_sleep(seconds):
        sleeps.append(seconds)

    def refusing_connect(url):
        attempts.append(url)
        raise OSError("connection refused")

    async def handler(event):
        return True

    consumer = JetstreamConsumer(
        handler,
        collection=COLLECTION,
        hard_timeout=60,
        inactivity_timeout=15,
        max_attempts=3,
        retry_base_seconds=1.0,
        connect=refusing_connect,
        sleep=fake_sleep,
    )

    result = await consumer.run(123)

    assert len(attempts) == 3
    assert sleeps == [1.0, 2.0]
    assert result.attempts == 3
    assert result.errors == 3
    assert result.processed == 0
    assert result.cursor == 123
    assert result.stop_reason == "connection_failed"
