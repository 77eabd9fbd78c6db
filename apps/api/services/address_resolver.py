"""Address (venue) resolution for check-ins that carry an addressRef StrongRef."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from database import async_session_maker
from models.address_cache import AddressCache
from models.checkin import Checkin
from services.atproto_client import AtprotoClient, AtprotoRequestError, client_scope, parse_record_uri

logger = logging.getLogger(__name__)


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _is_fresh(timestamp: Optional[datetime], now: datetime) -> bool:
    stamp = _as_utc(timestamp)
    if stamp is None:
        return False
    return now - stamp < timedelta(days=settings.ADDRESS_CACHE_EXPIRY_DAYS)


def _optional_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _optional_float(value: Any) -> Optional[float]:
    try:
        return float(value) if value is not None else None
    except (TypeError, ValueError):
        return None


async def _fetch_address_value(uri: str, client: AtprotoClient) -> Optional[Dict[str, Any]]:
    ref = parse_record_uri(uri)
    if ref is None:
        return None
    try:
        record = await client.get_record(ref.repo, ref.collection, ref.rkey)
    except AtprotoRequestError as exc:
        logger.warning("Address record fetch failed for %s: %s", uri, exc)
        return None
    if not record or not isinstance(record.get("value"), dict):
        return None
    return record["value"]


def _apply_to_checkin(checkin: Checkin, entry: AddressCache, now: datetime) -> None:
    checkin.cached_address_name = entry.name
    checkin.cached_address_street = entry.street
    checkin.cached_address_locality = entry.locality
    checkin.cached_address_region = entry.region
    checkin.cached_address_country = entry.country
    checkin.cached_address_postal_code = entry.postal_code
    checkin.cached_address_full = entry.full_data
    checkin.address_resolved_at = now


async def resolve_and_cache_address(
    *,
    db: AsyncSession,
    checkin_id: str,
    ref_uri: str,
    ref_cid: Optional[str] = None,
    client: Optional[AtprotoClient] = None,
) -> bool:
    """Resolve an address record through the cache and copy it onto the check-in.

    Returns True when the check-in now carries address fields.
    """
    now = datetime.now(timezone.utc)
    entry = await db.get(AddressCache, ref_uri)

    if entry is not None and entry.failed_at is None and _is_fresh(entry.resolved_at, now):
        logger.debug("Using cached address data for %s", ref_uri)
    elif entry is not None and entry.failed_at is not None and _is_fresh(entry.failed_at, now):
        logger.debug("Skipping recently failed address %s", ref_uri)
        return False
    else:
        async with client_scope(client) as atproto:
            value = await _fetch_address_value(ref_uri, atproto)
        if entry is None:
            entry = AddressCache(uri=ref_uri)
            db.add(entry)
        entry.cid = ref_cid or entry.cid
        if value is None:
            entry.failed_at = now
            await db.commit()
            logger.info("Address resolution failed, marked as failed: %s", ref_uri)
            return False
        entry.name = _optional_str(value.get("name"))
        entry.street = _optional_str(value.get("street"))
        entry.locality = _optional_str(value.get("locality"))
        entry.region = _optional_str(value.get("region"))
        entry.country = _optional_str(value.get("country"))
        entry.postal_code = _optional_str(value.get("postalCode"))
        entry.latitude = _optional_float(value.get("latitude"))
        entry.longitude = _optional_float(value.get("longitude"))
        entry.full_data = value
        entry.resolved_at = now
        entry.failed_at = None

    checkin = await db.get(Checkin, checkin_id)
    if checkin is None:
        await db.commit()
        return False
    _apply_to_checkin(checkin, entry, now)
    await db.commit()
    return True


async def backfill_unresolved_addresses(
    limit: Optional[int] = None,
    *,
    session_factory=None,
    client: Optional[AtprotoClient] = None,
) -> Dict[str, Any]:
    """Resolve addresses for the newest check-ins still missing them."""
    batch_limit = max(int(limit or settings.ADDRESS_BACKFILL_LIMIT), 1)
    factory = session_factory or async_session_maker
    async with factory() as db:
        result = await db.execute(
            select(Checkin.id, Checkin.address_ref_uri, Checkin.address_ref_cid)
            .where(Checkin.address_ref_uri.isnot(None), Checkin.address_resolved_at.is_(None))
            .order_by(Checkin.created_at.desc())
            .limit(batch_limit)
        )
        pending = result.all()

    resolved = 0
    failed = 0
    errors = []
    async with client_scope(client) as atproto:
        for index, (checkin_id, ref_uri, ref_cid) in enumerate(pending):
            if index and settings.ADDRESS_BACKFILL_DELAY_SECONDS > 0:
                await asyncio.sleep(settings.ADDRESS_BACKFILL_DELAY_SECONDS)
            try:
                async with factory() as db:
                    ok = await resolve_and_cache_address(
                        db=db,
                        checkin_id=checkin_id,
                        ref_uri=ref_uri,
                        ref_cid=ref_cid,
                        client=atproto,
                    )
            except Exception as exc:
                logger.exception("Address backfill failed for checkin %s", checkin_id)
                errors.append(f"{checkin_id}: {exc}")
                failed += 1
                continue
            if ok:
                resolved += 1
            else:
                failed += 1

    return {
        "success": True,
        "processed": len(pending),
        "resolved": resolved,
        "failed": failed,
        "errors": errors,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


async def process_address_resolution_job_async(checkin_id: str, ref_uri: str, ref_cid: Optional[str] = None) -> bool:
    async with async_session_maker() as db:
        return await resolve_and_cache_address(
            db=db,
            checkin_id=checkin_id,
            ref_uri=ref_uri,
            ref_cid=ref_cid,
        )


def process_address_resolution_job(checkin_id: str, ref_uri: str, ref_cid: Optional[str] = None) -> bool:
    """RQ worker entrypoint for address resolution jobs."""
    return asyncio.run(process_address_resolution_job_async(checkin_id, ref_uri, ref_cid))
