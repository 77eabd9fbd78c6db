from unittest.mock import patch

import httpx
import pytest
from sqlalchemy import func
from sqlalchemy.future import select

from config import settings
from conftest import PDS_URL, checkin_record
from models.address_cache import AddressCache
from models.checkin import Checkin
from services.checkin_ingest import StoreOutcome, checkin_values_from_record, store_checkin_record

AUTHOR = "did:plc:author1"
VENUE_DID = "did:plc:venues"
ADDRESS_URI = f"at://{VENUE_DID}/community.lexicon.location.address/cafe-de-plek"


async def _count(session_maker) -> int:
    async with session_maker() as db:
        result = await db.execute(select(func.count()).select_from(Checkin))
        return int(result.scalar())


@pytest.mark.asyncio
async def test_same_event_twice_stores_one_row(session_maker):
    record = checkin_record(text="coffee", created_at="2026-10-01T09:00:00.000Z", lat=52.37, lng=4.90)

    async with session_maker() as db:
        first = await store_checkin_record(db=db, author_did=AUTHOR, rkey="3kabc", record=record)
    async with session_maker() as db:
        second = await store_checkin_record(db=db, author_did=AUTHOR, rkey="3kabc", record=record)

    assert first is StoreOutcome.INSERTED
    assert second is StoreOutcome.DUPLICATE
    assert await _count(session_maker) == 1

    async with session_maker() as db:
        row = await db.get(Checkin, "3kabc")
    assert row.uri == f"at://{AUTHOR}/app.dropanchor.checkin/3kabc"
    assert row.author_did == AUTHOR
    assert row.author_handle == AUTHOR
    assert row.text == "coffee"
    assert row.created_at == "2026-10-01T09:00:00.000Z"
    assert (row.latitude, row.longitude) == (52.37, 4.90)


@pytest.mark.asyncio
async def test_out_of_range_coordinates_store_nulls(session_maker):
    async with session_maker() as db:
        outcome = await store_checkin_record(
            db=db,
            author_did=AUTHOR,
            rkey="bad-lat",
            record=checkin_record(created_at="2026-10-01T09:00:00Z", lat=95, lng=10),
        )
        assert outcome is StoreOutcome.INSERTED
        row = await db.get(Checkin, "bad-lat")
    assert row.latitude is None
    assert row.longitude is None


def test_record_mapping_parses_string_coordinates_and_defaults():
    values = checkin_values_from_record(AUTHOR, "r1", {"coordinates": {"latitude": "0", "longitude": "-0.5"}})
    assert values["latitude"] == 0.0
    assert values["longitude"] == -0.5
    assert values["text"] == ""
    assert values["created_at"]
    assert values["address_ref_uri"] is None


@pytest.mark.asyncio
async def test_address_ref_is_resolved_after_insert(session_maker, upstream):
    upstream.add_did(VENUE_DID)
    upstream.add(
        "/xrpc/com.atproto.repo.getRecord",
        {
            "uri": ADDRESS_URI,
            "cid": "bafyaddress",
            "value": {
                "name": "Cafe de Plek",
                "street": "Plein 1",
                "locality": "Amsterdam",
                "country": "NL",
                "postalCode": "1011",
            },
        },
    )

    async with upstream.client() as client:
        async with session_maker() as db:
            outcome = await store_checkin_record(
                db=db,
                author_did=AUTHOR,
                rkey="with-address",
                record=checkin_record(created_at="2026-10-02T10:00:00Z", address_uri=ADDRESS_URI),
                client=client,
            )

    assert outcome is StoreOutcome.INSERTED
    async with session_maker() as db:
        row = await db.get(Checkin, "with-address")
    assert row.address_ref_uri == ADDRESS_URI
    assert row.address_ref_cid == "bafyaddress"
    assert row.cached_address_name == "Cafe de Plek"
    assert row.cached_address_postal_code == "1011"
    assert row.address_resolved_at is not None
    request = upstream.calls_to("/xrpc/com.atproto.repo.getRecord")[0]
    assert str(request.url).startswith(PDS_URL)
    assert request.url.params["rkey"] == "cafe-de-plek"


@pytest.mark.asyncio
async def test_address_failure_does_not_fail_insert(session_maker, upstream):
    upstream.add_did(VENUE_DID)
    upstream.add("/xrpc/com.atproto.repo.getRecord", lambda request: httpx.Response(502))

    async with upstream.client() as client:
        async with session_maker() as db:
            outcome = await store_checkin_record(
                db=db,
                author_did=AUTHOR,
                rkey="address-down",
                record=checkin_record(created_at="2026-10-02T10:00:00Z", address_uri=ADDRESS_URI),
                client=client,
            )

    assert outcome is StoreOutcome.INSERTED
    async with session_maker() as db:
        row = await db.get(Checkin, "address-down")
        cached = await db.get(AddressCache, ADDRESS_URI)
    assert row.address_resolved_at is None
    assert cached.failed_at is not None


@pytest.mark.asyncio
async def test_queue_mode_enqueues_address_job(session_maker, monkeypatch):
    monkeypatch.setattr(settings, "ADDRESS_RESOLUTION_USE_QUEUE", True)

    with patch("services.checkin_ingest.enqueue_address_resolution_job") as mock_enqueue, \
         patch("services.checkin_ingest.resolve_and_cache_address") as mock_inline:
        async with session_maker() as db:
            await store_checkin_record(
                db=db,
                author_did=AUTHOR,
                rkey="queued",
                record=checkin_record(created_at="2026-10-02T10:00:00Z", address_uri=ADDRESS_URI),
            )

    mock_enqueue.assert_called_once_with("queued", ADDRESS_URI, "bafyaddress")
    mock_inline.assert_not_called()


@pytest.mark.asyncio
async def test_duplicate_insert_does_not_resolve_address_again(session_maker):
    record = checkin_record(created_at="2026-10-02T10:00:00Z", address_uri=ADDRESS_URI)
    with patch("services.checkin_ingest.resolve_and_cache_address") as mock_resolve:
        async with session_maker() as db:
            await store_checkin_record(db=db, author_did=AUTHOR, rkey="once", record=record)
        async with session_maker() as db:
            await store_checkin_record(db=db, author_did=AUTHOR, rkey="once", record=record)
    assert mock_resolve.await_count == 1


@pytest.mark.asyncio
async def test_missing_rkey_is_rejected(session_maker):
    async with session_maker() as db:
        with pytest.raises(ValueError):
            await store_checkin_record(db=db, author_did=AUTHOR, rkey="", record={})
