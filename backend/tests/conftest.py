from __future__ import annotations

import hashlib
import io
import sys
from pathlib import Path
from types import SimpleNamespace
from typing import Any, Callable, Generator, Optional

import cbor2
import pytest
from PIL import Image
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker


ROOT = Path(__file__).resolve().parents[2]

# Ensure `backend/` is importable for tests (store, ingestion).
BACKEND_DIR = ROOT / "backend"
if str(BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(BACKEND_DIR))

from ingestion.core.atproto_client import BlobPayload  # noqa: E402
from ingestion.core.errors import (  # noqa: E402
    OriginResolutionError,
    RecordNotFoundError,
    RetryExhaustedError,
    ServerError,
)
from store.core.db import create_db_engine, create_session_factory, init_schema  # noqa: E402
from store.repositories.blobs_repo import BlobsRepository, ProfileBlobsRepository  # noqa: E402
from store.repositories.cursor_repo import StreamCursorRepository  # noqa: E402
from store.repositories.failures_repo import HydrationFailuresRepository  # noqa: E402
from store.repositories.labels_repo import LabelsRepository  # noqa: E402
from store.repositories.posts_repo import PostsRepository  # noqa: E402
from store.repositories.profiles_repo import ProfilesRepository  # noqa: E402


@pytest.fixture()
def engine() -> Generator[Engine, None, None]:
    """Fresh in-memory SQLite database with every table."""
    eng = create_db_engine("sqlite://")
    init_schema(eng)
    try:
        yield eng
    finally:
        eng.dispose()


@pytest.fixture()
def session_factory(engine: Engine) -> sessionmaker[Session]:
    return create_session_factory(engine)


@pytest.fixture()
def repos(session_factory: sessionmaker[Session]) -> SimpleNamespace:
    return SimpleNamespace(
        labels=LabelsRepository(session_factory),
        posts=PostsRepository(session_factory),
        profiles=ProfilesRepository(session_factory),
        blobs=BlobsRepository(session_factory),
        profile_blobs=ProfileBlobsRepository(session_factory),
        failures=HydrationFailuresRepository(session_factory),
        cursors=StreamCursorRepository(session_factory),
    )


def _exhausted(error: Exception) -> RetryExhaustedError:
    return RetryExhaustedError(str(error), attempts=1, last_error=error)


class FakeAtprotoClient:
    """In-memory stand-in for AtprotoClient; records every call."""

    def __init__(self) -> None:
        self.records: dict[tuple[str, str, str], dict[str, Any]] = {}
        self.profiles: dict[str, dict[str, Any]] = {}
        self.origins: dict[str, str] = {}
        self.blobs: dict[str, tuple[bytes, Optional[str]]] = {}
        self.thumbnails: dict[str, bytes] = {}
        self.failing: dict[str, Exception] = {}
        self.calls: list[tuple[str, ...]] = []

    def count(self, name: str) -> int:
        return sum(1 for call in self.calls if call[0] == name)

    def _maybe_fail(self, key: str) -> None:
        error = self.failing.get(key)
        if error is not None:
            raise _exhausted(error)

    async def get_record(self, repo: str, collection: str, rkey: str) -> dict[str, Any]:
        self.calls.append(("get_record", repo, collection, rkey))
        self._maybe_fail(f"record:{repo}/{collection}/{rkey}")
        value = self.records.get((repo, collection, rkey))
        if value is None:
            raise _exhausted(RecordNotFoundError(f"Could not locate record: {repo}/{collection}/{rkey}", status=400, error="RecordNotFound"))
        return {"uri": f"at://{repo}/{collection}/{rkey}", "cid": "bafyrecord", "value": value}

    async def get_profile(self, actor: str) -> dict[str, Any]:
        self.calls.append(("get_profile", actor))
        self._maybe_fail(f"profile:{actor}")
        profile = self.profiles.get(actor)
        if profile is None:
            raise _exhausted(RecordNotFoundError("Profile not found", status=400, error="InvalidRequest"))
        return profile

    async def resolve_pds(self, did: str) -> str:
        self.calls.append(("resolve_pds", did))
        origin = self.origins.get(did)
        if origin is None:
            raise OriginResolutionError(f"No #atproto_pds service in DID document for {did}")
        return origin

    async def get_blob(self, origin: str, did: str, cid: str) -> BlobPayload:
        self.calls.append(("get_blob", origin, did, cid))
        self._maybe_fail(f"blob:{cid}")
        if cid not in self.blobs:
            raise _exhausted(RecordNotFoundError("Blob not found", status=400, error="BlobNotFound"))
        data, mimetype = self.blobs[cid]
        return BlobPayload(data=data, mimetype=mimetype)

    async def stream_blob(self, origin: str, did: str, cid: str, sink_factory: Callable[[], Any], chunk_size: int = 65536):
        self.calls.append(("stream_blob", origin, did, cid))
        self._maybe_fail(f"blob:{cid}")
        if cid not in self.blobs:
            raise _exhausted(RecordNotFoundError("Blob not found", status=400, error="BlobNotFound"))
        data, mimetype = self.blobs[cid]
        sink = sink_factory()
        for i in range(0, len(data), chunk_size):
            sink.update(data[i : i + chunk_size])
        return sink, mimetype

    async def get_thumbnail(self, did: str, cid: str) -> Optional[bytes]:
        self.calls.append(("get_thumbnail", did, cid))
        self._maybe_fail(f"thumb:{cid}")
        return self.thumbnails.get(cid)


@pytest.fixture()
def fake_client() -> FakeAtprotoClient:
    return FakeAtprotoClient()


@pytest.fixture()
def server_error() -> Callable[[str], ServerError]:
    return lambda message="upstream unavailable": ServerError(message, status=503)


def _png(color: Any = (200, 30, 30), size: tuple[int, int] = (32, 32), split: bool = False) -> bytes:
    image = Image.new("RGB", size, color)
    if split:
        # Left half black, right half white.
        for x in range(size[0] // 2):
            for y in range(size[1]):
                image.putpixel((x, y), (0, 0, 0))
        for x in range(size[0] // 2, size[0]):
            for y in range(size[1]):
                image.putpixel((x, y), (255, 255, 255))
    buf = io.BytesIO()
    image.save(buf, format="PNG")
    return buf.getvalue()


@pytest.fixture()
def png_bytes() -> Callable[..., bytes]:
    return _png


@pytest.fixture()
def cbor_frame() -> Callable[[dict, dict], bytes]:
    """Encode a stream frame: CBOR header followed by CBOR body."""
    return lambda header, body: cbor2.dumps(header) + cbor2.dumps(body)


@pytest.fixture()
def sha256_hex() -> Callable[[bytes], str]:
    return lambda data: hashlib.sha256(data).hexdigest()
