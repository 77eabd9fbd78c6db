"""Idempotent storage of check-in records delivered by the stream or repo polling."""

from __future__ import annotations

import enum
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from models.checkin import Checkin
from services.address_resolver import resolve_and_cache_address
from services.atproto_client import AtprotoClient, build_record_uri
from services.geo import parse_coordinates
from services.job_queue import enqueue_address_resolution_job

logger = logging.getLogger(__name__)


class StoreOutcome(str, enum.Enum):
    INSERTED = "inserted"
    DUPLICATE = "duplicate"


def _insert_ignoring_conflicts(db: AsyncSession, values: Dict[str, Any]):
    dialect = db.bind.dialect.name if db.bind is not None else ""
    if dialect == "postgresql":
        return pg_insert(Checkin).values(**values).on_conflict_do_nothing()
    if dialect == "sqlite":
        return sqlite_insert(Checkin).values(**values).on_conflict_do_nothing()
    raise RuntimeError(f"Unsupported database dialect for check-in ingest: {dialect or 'unknown'}")


def checkin_values_from_record(author_did: str, rkey: str, record: Dict[str, Any], collection: Optional[str] = None) -> Dict[str, Any]:
    """Map a raw check-in record onto column values."""
    coordinates = record.get("coordinates") or {}
    if not isinstance(coordinates, dict):
        coordinates = {}
    raw_lat = coordinates.get("latitude")
    raw_lng = coordinates.get("longitude")
    latitude, longitude = parse_coordinates(raw_lat, raw_lng)
    if latitude is None and (raw_lat is not None or raw_lng is not None):
        logger.warning("Invalid coordinates for checkin %s: lat=%r lng=%r", rkey, raw_lat, raw_lng)

    address_ref = record.get("addressRef") or {}
    if not isinstance(address_ref, dict):
        address_ref = {}

    text = record.get("text")
    created_at = record.get("createdAt")
    return {
        "id": rkey,
        "uri": build_record_uri(author_did, collection or settings.CHECKIN_COLLECTION, rkey),
        "author_did": author_did,
        "author_handle": author_did,
        "text": text if isinstance(text, str) else "",
        "created_at": created_at if isinstance(created_at, str) and created_at else datetime.now(timezone.utc).isoformat(),
        "latitude": latitude,
        "longitude": longitude,
        "address_ref_uri": address_ref.get("uri") or None,
        "address_ref_cid": address_ref.get("cid") or None,
    }


async def _schedule_address_resolution(
    *,
    db: AsyncSession,
    checkin_id: str,
    ref_uri: str,
    ref_cid: Optional[str],
    client: Optional[AtprotoClient],
) -> None:
    if settings.ADDRESS_RESOLUTION_USE_QUEUE:
        try:
            enqueue_address_resolution_job(checkin_id, ref_uri, ref_cid)
            return
        except Exception as exc:
            logger.warning("Address job enqueue failed for %s, resolving inline: %s", checkin_id, exc)
    try:
        await resolve_and_cache_address(
            db=db,
            checkin_id=checkin_id,
            ref_uri=ref_uri,
            ref_cid=ref_cid,
            client=client,
        )
    except Exception as exc:
        await db.rollback()
        logger.warning("Address resolution skipped for checkin %s (%s): %s", checkin_id, ref_uri, exc)


async def store_checkin_record(
    *,
    db: AsyncSession,
    author_did: str,
    rkey: str,
    record: Dict[str, Any],
    collection: Optional[str] = None,
    resolve_addresses: bool = True,
    client: Optional[AtprotoClient] = None,
) -> StoreOutcome:
    """Insert a check-in unless one with the same record key or URI exists."""
    if not author_did or not rkey:
        raise ValueError("Check-in record is missing author DID or record key")
    if not isinstance(record, dict):
        raise ValueError(f"Check-in record {rkey} is not an object")

    if await db.get(Checkin, rkey) is not None:
        logger.debug("Skipping duplicate checkin %s", rkey)
        return StoreOutcome.DUPLICATE

    values = checkin_values_from_record(author_did, rkey, record, collection)
    result = await db.execute(_insert_ignoring_conflicts(db, values))
    await db.commit()
    if not result.rowcount:
        return StoreOutcome.DUPLICATE

    logger.info("Stored checkin %s from %s", rkey, author_did)
    if resolve_addresses and values["address_ref_uri"]:
        await _schedule_address_resolution(
            db=db,
            checkin_id=rkey,
            ref_uri=values["address_ref_uri"],
            ref_cid=values["address_ref_cid"],
            client=client,
        )
    return StoreOutcome.INSERTED
