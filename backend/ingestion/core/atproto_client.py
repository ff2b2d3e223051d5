"""atproto network client.

The only gateway for outbound HTTP made by the hydrators and the blob
processor. Every request is admitted by the shared RateLimiter and wrapped in
the RetryPolicy; responses are classified into the errors of
`ingestion.core.errors` so callers can tell "not found" from transient faults.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Protocol, TypeVar
from urllib.parse import unquote

import httpx

from ingestion.core.errors import (
    AuthenticationError,
    FetchError,
    NetworkError,
    OriginResolutionError,
    RateLimitedError,
    RecordNotFoundError,
    RetryExhaustedError,
    ServerError,
    root_cause,
)
from ingestion.core.rate_limiter import RateLimiter
from ingestion.core.retry import RetryPolicy

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 30.0
THUMBNAIL_URL_TEMPLATE = "https://cdn.bsky.app/img/feed_thumbnail/plain/{did}/{cid}@jpeg"
PDS_SERVICE_ID = "#atproto_pds"
PDS_SERVICE_TYPE = "AtprotoPersonalDataServer"

# XRPC error names that mean the subject does not exist.
NOT_FOUND_ERRORS = frozenset(
    {
        "RecordNotFound",
        "NotFound",
        "RepoNotFound",
        "BlobNotFound",
        "AccountNotFound",
        "AccountDeactivated",
        "AccountTakedown",
        "RepoDeactivated",
        "RepoTakendown",
    }
)
AUTH_ERRORS = frozenset({"ExpiredToken", "InvalidToken", "AuthenticationRequired"})

S = TypeVar("S", bound="BlobSink")


class BlobSink(Protocol):
    def update(self, data: bytes, /) -> None: ...


@dataclass(frozen=True, slots=True)
class AuthSession:
    did: str
    handle: str
    access_jwt: str
    refresh_jwt: Optional[str] = None


@dataclass(frozen=True, slots=True)
class BlobPayload:
    data: bytes
    mimetype: Optional[str] = None


def service_url(host: str) -> str:
    host = host.strip().rstrip("/")
    if host.startswith(("http://", "https://")):
        return host
    return f"https://{host}"


def _xrpc_error(response: httpx.Response) -> tuple[Optional[str], str]:
    try:
        body = response.json()
    except ValueError:
        return None, response.text[:200]
    if not isinstance(body, dict):
        return None, ""
    return body.get("error"), str(body.get("message") or "")


def _retry_after(response: httpx.Response) -> Optional[float]:
    value = response.headers.get("retry-after")
    if value:
        try:
            return float(value)
        except ValueError:
            return None
    return None


def analyze_response(response: httpx.Response) -> None:
    """Raise the matching FetchError subclass for a non-success response."""
    status = response.status_code
    if 200 <= status < 300:
        return

    error, message = _xrpc_error(response)
    detail = f"{response.request.method} {response.request.url.path} -> {status} {error or ''} {message}".strip()
    lowered = message.lower()

    if status == 404 or error in NOT_FOUND_ERRORS:
        raise RecordNotFoundError(detail, status=status, error=error)
    if status == 400 and ("not found" in lowered or "could not find" in lowered):
        raise RecordNotFoundError(detail, status=status, error=error)
    if status == 401 or error in AUTH_ERRORS:
        raise AuthenticationError(detail, status=status, error=error)
    if status == 429:
        raise RateLimitedError(detail, retry_after=_retry_after(response), status=status, error=error)
    if status >= 500:
        raise ServerError(detail, status=status, error=error)
    raise FetchError(detail, status=status, error=error)


class AtprotoClient:
    def __init__(
        self,
        *,
        limiter: RateLimiter,
        retry: RetryPolicy,
        pds: str = "bsky.social",
        plc_directory_url: str = "https://plc.directory",
        identifier: Optional[str] = None,
        password: Optional[str] = None,
        http: Optional[httpx.AsyncClient] = None,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
    ) -> None:
        self._limiter = limiter
        self._retry = retry
        self._pds_url = service_url(pds)
        self._plc_url = service_url(plc_directory_url)
        self._identifier = identifier
        self._password = password
        self._owns_http = http is None
        self._http = http or httpx.AsyncClient(timeout=timeout, follow_redirects=True)
        self._session: Optional[AuthSession] = None
        self._login_lock = asyncio.Lock()
        self._origins: Dict[str, str] = {}

    @property
    def session(self) -> Optional[AuthSession]:
        return self._session

    async def __aenter__(self) -> "AtprotoClient":
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.close()

    async def close(self) -> None:
        if self._owns_http:
            await self._http.aclose()

    # --- transport -------------------------------------------------------

    async def _send(self, method: str, url: str, *, auth: bool, **kwargs: Any) -> httpx.Response:
        """One admitted request; on an expired token, log in again once."""
        relogged = False
        while True:
            headers = dict(kwargs.pop("headers", None) or {})
            if auth and self._session is not None:
                headers["Authorization"] = f"Bearer {self._session.access_jwt}"
            async with self._limiter.slot():
                try:
                    response = await self._http.request(method, url, headers=headers, **kwargs)
                except httpx.RequestError as e:
                    raise NetworkError(f"{method} {url}: {e!r}") from e
            try:
                analyze_response(response)
            except AuthenticationError:
                if not auth or relogged or self._identifier is None:
                    raise
                logger.info("Access token rejected; logging in again")
                await self._create_session()
                relogged = True
                continue
            return response

    async def _call(self, method: str, url: str, *, auth: bool = False, **kwargs: Any) -> httpx.Response:
        return await self._retry.call(self._send, method, url, auth=auth, **kwargs)

    def _xrpc(self, nsid: str, host: Optional[str] = None) -> str:
        return f"{service_url(host) if host else self._pds_url}/xrpc/{nsid}"

    # --- auth --------------------------------------------------------------

    async def _create_session(self) -> AuthSession:
        async with self._login_lock:
            url = self._xrpc("com.atproto.server.createSession")
            payload = {"identifier": self._identifier, "password": self._password}
            async with self._limiter.slot():
                try:
                    response = await self._http.post(url, json=payload)
                except httpx.RequestError as e:
                    raise NetworkError(f"createSession: {e!r}") from e
            analyze_response(response)
            body = response.json()
            self._session = AuthSession(
                did=body["did"],
                handle=body.get("handle", ""),
                access_jwt=body["accessJwt"],
                refresh_jwt=body.get("refreshJwt"),
            )
            return self._session

    async def login(self) -> AuthSession:
        if not self._identifier or not self._password:
            raise AuthenticationError("Missing credentials for createSession")
        try:
            session = await self._retry.call(self._create_session)
        except RetryExhaustedError as e:
            cause = root_cause(e)
            if isinstance(cause, AuthenticationError):
                raise cause from e
            raise AuthenticationError(f"Login failed: {cause}") from e
        logger.info(f"Logged in as {session.handle} ({session.did}) on {self._pds_url}")
        return session

    # --- records -------------------------------------------------------------

    async def get_record(self, repo: str, collection: str, rkey: str) -> dict[str, Any]:
        """Return the record envelope `{uri, cid, value}`."""
        response = await self._call(
            "GET",
            self._xrpc("com.atproto.repo.getRecord"),
            auth=True,
            params={"repo": repo, "collection": collection, "rkey": rkey},
        )
        return response.json()

    async def get_profile(self, actor: str) -> dict[str, Any]:
        response = await self._call(
            "GET",
            self._xrpc("app.bsky.actor.getProfile"),
            auth=True,
            params={"actor": actor},
        )
        return response.json()

    # --- identity ------------------------------------------------------------

    def _did_document_url(self, did: str) -> str:
        if did.startswith("did:plc:"):
            return f"{self._plc_url}/{did}"
        if did.startswith("did:web:"):
            parts = [unquote(p) for p in did[len("did:web:"):].split(":")]
            host, path = parts[0], parts[1:]
            if path:
                return f"https://{host}/{'/'.join(path)}/did.json"
            return f"https://{host}/.well-known/did.json"
        raise OriginResolutionError(f"Unsupported DID method: {did}")

    async def resolve_pds(self, did: str) -> str:
        """Service endpoint hosting `did`'s repo and blobs (cached per DID)."""
        cached = self._origins.get(did)
        if cached is not None:
            return cached

        url = self._did_document_url(did)
        try:
            response = await self._call("GET", url)
            document = response.json()
        except (RetryExhaustedError, ValueError) as e:
            raise OriginResolutionError(f"Could not fetch DID document for {did}: {root_cause(e)}") from e

        endpoint = None
        for service in document.get("service") or []:
            if not isinstance(service, dict):
                continue
            service_id = str(service.get("id", ""))
            if service_id.endswith(PDS_SERVICE_ID) or service.get("type") == PDS_SERVICE_TYPE:
                endpoint = service.get("serviceEndpoint")
                break
        if not isinstance(endpoint, str) or not endpoint:
            raise OriginResolutionError(f"No {PDS_SERVICE_ID} service in DID document for {did}")

        endpoint = endpoint.rstrip("/")
        self._origins[did] = endpoint
        logger.debug(f"Resolved {did} -> {endpoint}")
        return endpoint

    # --- blobs ---------------------------------------------------------------

    async def get_blob(self, origin: str, did: str, cid: str) -> BlobPayload:
        response = await self._call(
            "GET",
            self._xrpc("com.atproto.sync.getBlob", host=origin),
            params={"did": did, "cid": cid},
        )
        return BlobPayload(data=response.content, mimetype=response.headers.get("content-type"))

    async def _stream_once(
        self, url: str, params: dict[str, str], sink_factory: Callable[[], S], chunk_size: int
    ) -> tuple[S, Optional[str]]:
        async with self._limiter.slot():
            try:
                async with self._http.stream("GET", url, params=params) as response:
                    if response.status_code >= 300:
                        await response.aread()
                        analyze_response(response)
                    sink = sink_factory()
                    async for chunk in response.aiter_bytes(chunk_size):
                        sink.update(chunk)
                    return sink, response.headers.get("content-type")
            except httpx.RequestError as e:
                raise NetworkError(f"GET {url}: {e!r}") from e

    async def stream_blob(
        self, origin: str, did: str, cid: str, sink_factory: Callable[[], S], chunk_size: int = 64 * 1024
    ) -> tuple[S, Optional[str]]:
        """Feed the blob through a fresh sink without keeping the bytes.

        Each attempt gets a new sink so a retried transfer never double-counts.
        """
        url = self._xrpc("com.atproto.sync.getBlob", host=origin)
        return await self._retry.call(self._stream_once, url, {"did": did, "cid": cid}, sink_factory, chunk_size)

    async def get_thumbnail(self, did: str, cid: str) -> Optional[bytes]:
        """CDN thumbnail rendition of an image blob, or None when unavailable."""
        url = THUMBNAIL_URL_TEMPLATE.format(did=did, cid=cid)
        try:
            response = await self._call("GET", url)
        except RetryExhaustedError as e:
            cause = root_cause(e)
            if isinstance(cause, FetchError) and cause.status is not None and 400 <= cause.status < 500:
                logger.debug(f"No thumbnail for {did}/{cid}: {cause.status}")
                return None
            raise
        return response.content
