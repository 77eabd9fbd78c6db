"""
Jetstream subscription loop.
Consumes JSON commit events for one collection until the stream goes quiet
or the run deadline passes.
"""

import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional
from urllib.parse import urlencode

import websockets
from websockets.exceptions import WebSocketException

from config import settings

logger = logging.getLogger(__name__)

MAX_ERROR_MESSAGES = 50

EventHandler = Callable[[Dict[str, Any]], Awaitable[bool]]


@dataclass
class StreamRunResult:
    """Outcome of one bounded Jetstream session."""

    cursor: Optional[int] = None
    processed: int = 0
    inserted: int = 0
    messages: int = 0
    errors: int = 0
    error_messages: List[str] = field(default_factory=list)
    attempts: int = 0
    stop_reason: str = "pending"
    cursor_held: bool = False

    def record_error(self, message: str) -> None:
        self.errors += 1
        if len(self.error_messages) < MAX_ERROR_MESSAGES:
            self.error_messages.append(message)

    def advance_cursor(self, time_us: int) -> None:
        if not self.cursor_held:
            self.cursor = max(self.cursor or 0, time_us)

    def hold_cursor_before(self, time_us: int) -> None:
        """Pin the cursor below a failed event so the next run replays it."""
        self.cursor_held = True
        ceiling = time_us - 1
        if self.cursor is None or self.cursor > ceiling:
            self.cursor = ceiling


def default_cursor(now_us: Optional[int] = None) -> int:
    """Cursor pointing one lookback window into the past, in microseconds."""
    if now_us is None:
        now_us = int(time.time() * 1_000_000)
    return now_us - settings.JETSTREAM_CURSOR_LOOKBACK_MINUTES * 60 * 1_000_000


def build_subscribe_url(cursor: Optional[int], *, base_url: Optional[str] = None, collection: Optional[str] = None) -> str:
    params = {"wantedCollections": collection or settings.CHECKIN_COLLECTION}
    if cursor is not None:
        params["cursor"] = str(cursor)
    return f"{base_url or settings.JETSTREAM_URL}?{urlencode(params)}"


def _default_connect(url: str):
    return websockets.connect(
        url,
        open_timeout=settings.JETSTREAM_CONNECT_TIMEOUT_SECONDS,
        close_timeout=5,
        max_size=2 ** 22,
    )


class JetstreamConsumer:
    """Bounded Jetstream consumer.

    ``run`` never raises for transport problems: failed connection attempts are
    retried with exponential backoff and reported on the returned result.
    """

    def __init__(
        self,
        handler: EventHandler,
        *,
        url: Optional[str] = None,
        collection: Optional[str] = None,
        hard_timeout: Optional[float] = None,
        inactivity_timeout: Optional[float] = None,
        max_attempts: Optional[int] = None,
        retry_base_seconds: Optional[float] = None,
        connect: Optional[Callable[[str], Any]] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self._handler = handler
        self.url = url or settings.JETSTREAM_URL
        self.collection = collection or settings.CHECKIN_COLLECTION
        self.hard_timeout = hard_timeout if hard_timeout is not None else settings.JETSTREAM_HARD_TIMEOUT_SECONDS
        self.inactivity_timeout = (
            inactivity_timeout if inactivity_timeout is not None else settings.JETSTREAM_INACTIVITY_TIMEOUT_SECONDS
        )
        self.max_attempts = max(int(max_attempts or settings.JETSTREAM_MAX_ATTEMPTS), 1)
        self.retry_base_seconds = (
            retry_base_seconds if retry_base_seconds is not None else settings.JETSTREAM_RETRY_BASE_SECONDS
        )
        self._connect = connect or _default_connect
        self._clock = clock
        self._sleep = sleep

    def _is_checkin_create(self, event: Dict[str, Any]) -> bool:
        if event.get("kind") != "commit":
            return False
        commit = event.get("commit") or {}
        return commit.get("collection") == self.collection and commit.get("operation") == "create"

    async def _dispatch(self, raw: Any, result: StreamRunResult) -> None:
        result.messages += 1
        time_us: Optional[int] = None
        try:
            event = json.loads(raw)
            if not isinstance(event, dict):
                raise ValueError("event is not a JSON object")
            raw_time = event.get("time_us")
            if isinstance(raw_time, int) and not isinstance(raw_time, bool):
                time_us = raw_time
            if self._is_checkin_create(event):
                inserted = await self._handler(event)
                result.processed += 1
                if inserted:
                    result.inserted += 1
            if time_us is not None:
                result.advance_cursor(time_us)
        except Exception as exc:
            logger.warning("Jetstream event handling failed: %s", exc)
            result.record_error(f"event: {exc}")
            # Frames without a timestamp cannot be replayed, so only timed events hold the cursor.
            if time_us is not None:
                result.hold_cursor_before(time_us)

    async def _consume(self, result: StreamRunResult, deadline: float) -> None:
        subscribe_url = build_subscribe_url(result.cursor, base_url=self.url, collection=self.collection)
        async with self._connect(subscribe_url) as websocket:
            logger.info("Connected to Jetstream (cursor=%s)", result.cursor)
            while True:
                remaining = deadline - self._clock()
                if remaining <= 0:
                    result.stop_reason = "deadline"
                    return
                wait = min(self.inactivity_timeout, remaining)
                try:
                    raw = await asyncio.wait_for(websocket.recv(), timeout=wait)
                except asyncio.TimeoutError:
                    result.stop_reason = "idle" if wait >= self.inactivity_timeout else "deadline"
                    return
                await self._dispatch(raw, result)

    async def run(self, cursor: Optional[int]) -> StreamRunResult:
        result = StreamRunResult(cursor=cursor)
        deadline = self._clock() + self.hard_timeout
        for attempt in range(1, self.max_attempts + 1):
            result.attempts = attempt
            try:
                await self._consume(result, deadline)
                logger.info(
                    "Jetstream session ended (%s): processed=%s errors=%s",
                    result.stop_reason,
                    result.processed,
                    result.errors,
                )
                return result
            except (OSError, asyncio.TimeoutError, WebSocketException) as exc:
                logger.warning("Jetstream attempt %s/%s failed: %s", attempt, self.max_attempts, exc)
                result.record_error(f"connection attempt {attempt}: {exc}")
            remaining = deadline - self._clock()
            if attempt >= self.max_attempts or remaining <= 0:
                break
            await self._sleep(min(self.retry_base_seconds * (2 ** (attempt - 1)), remaining))
        result.stop_reason = "connection_failed"
        return result
