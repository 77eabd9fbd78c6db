"""Ingestion cycle: Jetstream session, repository polling fallback and run logging."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.future import select

from config import settings
from database import async_session_maker, ensure_schema
from ingestion.jetstream import JetstreamConsumer, default_cursor
from models.processing_log import ProcessingLog
from services.atproto_client import AtprotoClient, AtprotoRequestError, client_scope, parse_record_uri
from services.checkin_ingest import StoreOutcome, store_checkin_record

logger = logging.getLogger(__name__)

MAX_LOGGED_ERRORS = 20


@dataclass
class IngestionCycleResult:
    stream_events: int = 0
    fallback_events: int = 0
    inserted: int = 0
    errors: int = 0
    error_messages: List[str] = field(default_factory=list)
    cursor: Optional[int] = None
    stop_reason: Optional[str] = None
    fallback_used: bool = False
    duration_ms: int = 0

    @property
    def events_processed(self) -> int:
        return self.stream_events + self.fallback_events

    def record_error(self, message: str) -> None:
        self.errors += 1
        self.error_messages.append(message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": True,
            "eventsProcessed": self.events_processed,
            "streamEvents": self.stream_events,
            "fallbackEvents": self.fallback_events,
            "inserted": self.inserted,
            "errors": self.errors,
            "errorMessages": self.error_messages[:MAX_LOGGED_ERRORS],
            "cursor": self.cursor,
            "stopReason": self.stop_reason,
            "fallbackUsed": self.fallback_used,
            "durationMs": self.duration_ms,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }


async def load_resume_cursor(session_factory=None) -> int:
    """Last persisted stream cursor, or one lookback window before now."""
    factory = session_factory or async_session_maker
    async with factory() as db:
        result = await db.execute(
            select(ProcessingLog.cursor)
            .where(ProcessingLog.cursor.isnot(None))
            .order_by(ProcessingLog.id.desc())
            .limit(1)
        )
        stored = result.scalar_one_or_none()
    return int(stored) if stored is not None else default_cursor()


async def _poll_repository(
    did: str,
    *,
    session_factory,
    client: AtprotoClient,
    result: IngestionCycleResult,
) -> None:
    page_cursor: Optional[str] = None
    for _ in range(max(int(settings.FALLBACK_MAX_PAGES), 1)):
        page = await client.list_records(
            did,
            settings.CHECKIN_COLLECTION,
            cursor=page_cursor,
            limit=settings.FALLBACK_PAGE_SIZE,
        )
        if not page:
            return
        for item in page.get("records") or []:
            ref = parse_record_uri(str(item.get("uri") or ""))
            if ref is None:
                result.record_error(f"{did}: record without usable uri")
                continue
            try:
                async with session_factory() as db:
                    outcome = await store_checkin_record(
                        db=db,
                        author_did=ref.repo,
                        rkey=ref.rkey,
                        record=item.get("value") or {},
                        collection=ref.collection,
                        client=client,
                    )
            except Exception as exc:
                logger.warning("Fallback record %s failed: %s", ref.rkey, exc)
                result.record_error(f"{did}/{ref.rkey}: {exc}")
                continue
            result.fallback_events += 1
            if outcome is StoreOutcome.INSERTED:
                result.inserted += 1
        page_cursor = page.get("cursor")
        if not page_cursor:
            return


async def poll_fallback_repositories(
    *,
    session_factory=None,
    client: Optional[AtprotoClient] = None,
    result: Optional[IngestionCycleResult] = None,
    dids: Optional[List[str]] = None,
) -> IngestionCycleResult:
    """Read check-ins straight from known repositories via listRecords."""
    factory = session_factory or async_session_maker
    outcome = result or IngestionCycleResult()
    outcome.fallback_used = True
    async with client_scope(client) as atproto:
        for did in dids if dids is not None else settings.FALLBACK_REPO_DIDS:
            try:
                await _poll_repository(did, session_factory=factory, client=atproto, result=outcome)
            except AtprotoRequestError as exc:
                logger.warning("Fallback polling failed for %s: %s", did, exc)
                outcome.record_error(f"{did}: {exc}")
    return outcome


async def _write_processing_log(session_factory, result: IngestionCycleResult) -> None:
    async with session_factory() as db:
        db.add(
            ProcessingLog(
                events_processed=result.events_processed,
                stream_events=result.stream_events,
                fallback_events=result.fallback_events,
                errors=result.errors,
                duration_ms=result.duration_ms,
                cursor=result.cursor,
                error_messages=result.error_messages[:MAX_LOGGED_ERRORS] or None,
            )
        )
        await db.commit()


async def run_ingestion_cycle(
    *,
    session_factory=None,
    client: Optional[AtprotoClient] = None,
    consumer_factory: Optional[Callable[..., JetstreamConsumer]] = None,
) -> Dict[str, Any]:
    """Run one bounded ingestion pass; always resolves with counts and errors."""
    factory = session_factory or async_session_maker
    started = time.monotonic()
    result = IngestionCycleResult()

    try:
        await ensure_schema(factory)
        result.cursor = await load_resume_cursor(factory)
    except Exception as exc:
        logger.exception("Ingestion aborted: database unavailable")
        result.record_error(f"database: {exc}")
        result.stop_reason = "database_unavailable"
        result.duration_ms = int((time.monotonic() - started) * 1000)
        return result.to_dict()

    async with client_scope(client) as atproto:

        async def handle_event(event: Dict[str, Any]) -> bool:
            commit = event.get("commit") or {}
            async with factory() as db:
                outcome = await store_checkin_record(
                    db=db,
                    author_did=str(event.get("did") or ""),
                    rkey=str(commit.get("rkey") or ""),
                    record=commit.get("record") or {},
                    collection=commit.get("collection"),
                    client=atproto,
                )
            return outcome is StoreOutcome.INSERTED

        consumer = (consumer_factory or JetstreamConsumer)(handle_event)
        stream = await consumer.run(result.cursor)
        result.stream_events = stream.processed
        result.inserted += stream.inserted
        result.errors += stream.errors
        result.error_messages.extend(stream.error_messages)
        result.cursor = stream.cursor
        result.stop_reason = stream.stop_reason

        if result.stream_events == 0 and settings.FALLBACK_REPO_DIDS:
            logger.info("No stream events this run; polling %s known repositories", len(settings.FALLBACK_REPO_DIDS))
            await poll_fallback_repositories(session_factory=factory, client=atproto, result=result)

    result.duration_ms = int((time.monotonic() - started) * 1000)
    try:
        await _write_processing_log(factory, result)
    except Exception as exc:
        logger.exception("Processing log write failed")
        result.record_error(f"processing_log: {exc}")

    logger.info(
        "Ingestion cycle finished: events=%s inserted=%s errors=%s duration_ms=%s",
        result.events_processed,
        result.inserted,
        result.errors,
        result.duration_ms,
    )
    return result.to_dict()
