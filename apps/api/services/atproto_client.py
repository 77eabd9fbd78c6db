"""HTTP client for the AT Protocol XRPC endpoints the AppView reads from."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, Optional

import httpx
from atproto import AtUri

from config import settings

logger = logging.getLogger(__name__)


class AtprotoRequestError(RuntimeError):
    """Raised when an upstream XRPC or directory call fails."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


@dataclass(frozen=True)
class RecordRef:
    repo: str
    collection: str
    rkey: str


def parse_record_uri(uri: str) -> Optional[RecordRef]:
    """Split an at:// record URI into repo, collection and record key."""
    try:
        parsed = AtUri.from_str(uri)
    except Exception as exc:
        logger.warning("Unparseable record URI %s: %s", uri, exc)
        return None
    if not parsed.host or not parsed.collection or not parsed.rkey:
        return None
    return RecordRef(repo=parsed.host, collection=parsed.collection, rkey=parsed.rkey)


def build_record_uri(repo: str, collection: str, rkey: str) -> str:
    return f"at://{repo}/{collection}/{rkey}"


class AtprotoClient:
    """Thin async wrapper over public AppView, PDS and PLC directory reads.

    A 404 from upstream is reported as ``None``; any other failure raises
    ``AtprotoRequestError``.
    """

    def __init__(
        self,
        *,
        public_api_url: Optional[str] = None,
        plc_directory_url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.public_api_url = (public_api_url or settings.PUBLIC_API_URL).rstrip("/")
        self.plc_directory_url = (plc_directory_url or settings.PLC_DIRECTORY_URL).rstrip("/")
        self._pds_cache: Dict[str, str] = {}
        self._client = httpx.AsyncClient(
            timeout=timeout if timeout is not None else settings.HTTP_TIMEOUT_SECONDS,
            headers={"User-Agent": settings.USER_AGENT, "Accept": "application/json"},
            follow_redirects=True,
            transport=transport,
        )

    async def __aenter__(self) -> "AtprotoClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _get_json(self, url: str, params: Optional[Dict[str, Any]] = None) -> Optional[Dict[str, Any]]:
        clean_params = {key: value for key, value in (params or {}).items() if value is not None}
        try:
            response = await self._client.get(url, params=clean_params)
        except httpx.HTTPError as exc:
            raise AtprotoRequestError(f"GET {url} failed: {exc}") from exc
        if response.status_code == 404:
            return None
        if response.status_code >= 400:
            raise AtprotoRequestError(
                f"GET {url} returned {response.status_code}",
                status_code=response.status_code,
            )
        try:
            payload = response.json()
        except ValueError as exc:
            raise AtprotoRequestError(f"GET {url} returned invalid JSON") from exc
        if not isinstance(payload, dict):
            raise AtprotoRequestError(f"GET {url} returned unexpected payload")
        return payload

    async def get_profile(self, actor: str) -> Optional[Dict[str, Any]]:
        return await self._get_json(
            f"{self.public_api_url}/xrpc/app.bsky.actor.getProfile",
            {"actor": actor},
        )

    async def get_follows(
        self,
        actor: str,
        *,
        cursor: Optional[str] = None,
        limit: int = 100,
    ) -> Optional[Dict[str, Any]]:
        return await self._get_json(
            f"{self.public_api_url}/xrpc/app.bsky.graph.getFollows",
            {"actor": actor, "limit": limit, "cursor": cursor},
        )

    async def resolve_pds(self, did: str) -> str:
        """Return the PDS endpoint advertised in a DID document."""
        cached = self._pds_cache.get(did)
        if cached:
            return cached
        if did.startswith("did:web:"):
            doc_url = f"https://{did[len('did:web:'):]}/.well-known/did.json"
        else:
            doc_url = f"{self.plc_directory_url}/{did}"
        document = await self._get_json(doc_url)
        if document is None:
            raise AtprotoRequestError(f"DID document not found for {did}", status_code=404)
        for service in document.get("service") or []:
            service_id = str(service.get("id") or "")
            endpoint = service.get("serviceEndpoint")
            if service_id.endswith("#atproto_pds") and isinstance(endpoint, str) and endpoint:
                pds = endpoint.rstrip("/")
                self._pds_cache[did] = pds
                return pds
        raise AtprotoRequestError(f"No PDS endpoint in DID document for {did}")

    async def list_records(
        self,
        repo: str,
        collection: str,
        *,
        cursor: Optional[str] = None,
        limit: int = 100,
    ) -> Optional[Dict[str, Any]]:
        pds = await self.resolve_pds(repo)
        return await self._get_json(
            f"{pds}/xrpc/com.atproto.repo.listRecords",
            {"repo": repo, "collection": collection, "limit": limit, "cursor": cursor},
        )

    async def get_record(self, repo: str, collection: str, rkey: str) -> Optional[Dict[str, Any]]:
        pds = await self.resolve_pds(repo)
        return await self._get_json(
            f"{pds}/xrpc/com.atproto.repo.getRecord",
            {"repo": repo, "collection": collection, "rkey": rkey},
        )


@asynccontextmanager
async def client_scope(client: Optional[AtprotoClient] = None) -> AsyncIterator[AtprotoClient]:
    """Yield the given client, or a short-lived one closed on exit."""
    if client is not None:
        yield client
        return
    owned = AtprotoClient()
    try:
        yield owned
    finally:
        await owned.aclose()


async def get_atproto_client() -> AsyncIterator[AtprotoClient]:
    """FastAPI dependency yielding a request-scoped client."""
    async with AtprotoClient() as client:
        yield client
