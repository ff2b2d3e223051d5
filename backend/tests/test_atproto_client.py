from __future__ import annotations

import asyncio
import hashlib
from typing import Callable

import httpx
import pytest

from ingestion.core.atproto_client import AtprotoClient, analyze_response
from ingestion.core.errors import (
    AuthenticationError,
    OriginResolutionError,
    RateLimitedError,
    RecordNotFoundError,
    RetryExhaustedError,
    ServerError,
)
from ingestion.core.rate_limiter import RateLimiter
from ingestion.core.retry import RetryPolicy


async def _no_sleep(_: float) -> None:
    return None


def _client(handler: Callable[[httpx.Request], httpx.Response], **kwargs) -> AtprotoClient:
    return AtprotoClient(
        limiter=RateLimiter(max_calls=100, window_seconds=1, concurrency=4),
        retry=RetryPolicy(max_attempts=3, sleep=_no_sleep),
        identifier="watcher.bsky.social",
        password="app-password",
        http=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
        **kwargs,
    )


def _session_response() -> httpx.Response:
    return httpx.Response(
        200,
        json={"did": "did:plc:watcher", "handle": "watcher.bsky.social", "accessJwt": "token-1", "refreshJwt": "r"},
    )


def test_login_then_get_record_sends_bearer_token() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        if request.url.path.endswith("createSession"):
            return _session_response()
        return httpx.Response(200, json={"uri": "at://x", "cid": "c", "value": {"text": "hi"}})

    async def scenario() -> dict:
        client = _client(handler)
        await client.login()
        return await client.get_record("did:plc:user", "app.bsky.feed.post", "abc")

    envelope = asyncio.run(scenario())
    assert envelope["value"] == {"text": "hi"}
    assert seen[0].url.host == "bsky.social"
    assert seen[1].headers["Authorization"] == "Bearer token-1"
    assert seen[1].url.params["repo"] == "did:plc:user"
    assert seen[1].url.params["rkey"] == "abc"


def test_record_not_found_is_not_retried() -> None:
    calls = {"n": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["n"] += 1
        return httpx.Response(400, json={"error": "RecordNotFound", "message": "Could not locate record"})

    with pytest.raises(RetryExhaustedError) as exc_info:
        asyncio.run(_client(handler).get_record("did:plc:user", "app.bsky.feed.post", "gone"))

    assert isinstance(exc_info.value.last_error, RecordNotFoundError)
    assert exc_info.value.attempts == 1
    assert calls["n"] == 1


def test_server_errors_are_retried() -> None:
    responses = [httpx.Response(503), httpx.Response(502), httpx.Response(200, json={"handle": "alice.test"})]

    def handler(request: httpx.Request) -> httpx.Response:
        return responses.pop(0)

    profile = asyncio.run(_client(handler).get_profile("did:plc:alice"))
    assert profile["handle"] == "alice.test"
    assert responses == []


def test_expired_token_triggers_one_relogin() -> None:
    tokens = iter(["token-1", "token-2"])
    profile_calls: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("createSession"):
            return httpx.Response(200, json={"did": "did:plc:w", "handle": "w", "accessJwt": next(tokens)})
        profile_calls.append(request.headers.get("Authorization", ""))
        if request.headers.get("Authorization") == "Bearer token-1":
            return httpx.Response(400, json={"error": "ExpiredToken", "message": "Token has expired"})
        return httpx.Response(200, json={"handle": "bob.test"})

    async def scenario() -> dict:
        client = _client(handler)
        await client.login()
        return await client.get_profile("did:plc:bob")

    assert asyncio.run(scenario())["handle"] == "bob.test"
    assert profile_calls == ["Bearer token-1", "Bearer token-2"]


def test_bad_credentials_raise_authentication_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(401, json={"error": "AuthenticationRequired", "message": "Invalid identifier or password"})

    with pytest.raises(AuthenticationError):
        asyncio.run(_client(handler).login())


def test_resolve_pds_from_plc_is_cached() -> None:
    calls: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(str(request.url))
        return httpx.Response(
            200,
            json={
                "id": "did:plc:alice",
                "service": [
                    {"id": "#atproto_labeler", "type": "AtprotoLabeler", "serviceEndpoint": "https://labeler.test"},
                    {"id": "#atproto_pds", "type": "AtprotoPersonalDataServer", "serviceEndpoint": "https://pds.alice.test/"},
                ],
            },
        )

    async def scenario() -> tuple[str, str]:
        client = _client(handler, plc_directory_url="https://plc.directory")
        return await client.resolve_pds("did:plc:alice"), await client.resolve_pds("did:plc:alice")

    first, second = asyncio.run(scenario())
    assert first == second == "https://pds.alice.test"
    assert calls == ["https://plc.directory/did:plc:alice"]


def test_resolve_pds_did_web() -> None:
    urls: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        urls.append(str(request.url))
        return httpx.Response(200, json={"service": [{"id": "#atproto_pds", "serviceEndpoint": "https://pds.example.com"}]})

    assert asyncio.run(_client(handler).resolve_pds("did:web:example.com")) == "https://pds.example.com"
    assert urls == ["https://example.com/.well-known/did.json"]


def test_resolve_pds_without_service_fails() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"service": []})

    with pytest.raises(OriginResolutionError):
        asyncio.run(_client(handler).resolve_pds("did:plc:nobody"))


def test_unsupported_did_method() -> None:
    with pytest.raises(OriginResolutionError):
        asyncio.run(_client(lambda r: httpx.Response(500)).resolve_pds("did:key:z6Mk"))


def test_thumbnail_missing_returns_none() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.host == "cdn.bsky.app"
        assert request.url.path == "/img/feed_thumbnail/plain/did:plc:alice/bafyimg@jpeg"
        return httpx.Response(404)

    assert asyncio.run(_client(handler).get_thumbnail("did:plc:alice", "bafyimg")) is None


def test_stream_blob_feeds_sink() -> None:
    payload = b"x" * 200_000

    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/xrpc/com.atproto.sync.getBlob"
        assert request.url.params["cid"] == "bafyvid"
        return httpx.Response(200, content=payload, headers={"content-type": "video/mp4"})

    sink, content_type = asyncio.run(
        _client(handler).stream_blob("https://pds.alice.test", "did:plc:alice", "bafyvid", hashlib.sha256)
    )
    assert sink.hexdigest() == hashlib.sha256(payload).hexdigest()
    assert content_type == "video/mp4"


def test_analyze_response_classification() -> None:
    request = httpx.Request("GET", "https://bsky.social/xrpc/x")

    with pytest.raises(RecordNotFoundError):
        analyze_response(httpx.Response(404, request=request))
    with pytest.raises(RecordNotFoundError):
        analyze_response(httpx.Response(400, json={"error": "InvalidRequest", "message": "Profile not found"}, request=request))
    with pytest.raises(RateLimitedError) as rl:
        analyze_response(httpx.Response(429, headers={"retry-after": "12"}, request=request))
    assert rl.value.retry_after == 12.0
    with pytest.raises(ServerError):
        analyze_response(httpx.Response(500, request=request))
    analyze_response(httpx.Response(200, request=request))
