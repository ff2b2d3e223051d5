"""Blob processor.

For each blob referenced by a post or a profile:
1. reuse fingerprints already computed for the same CID (no refetch),
2. resolve the owner's origin host,
3. fetch: full download into storage when HYDRATE_BLOBS is on; otherwise a
   thumbnail (images) or a streamed, discarded read,
4. fingerprint (sha256 always, phash for raster images),
5. persist the row for this owner.

Failures are isolated per blob.
"""

from __future__ import annotations

import asyncio
import logging
from collections import OrderedDict
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Optional, Sequence

from ingestion.blobs.hasher import BlobHashes, StreamingSha256, compute_blob_hashes, supports_phash
from ingestion.blobs.references import BlobReference, extract_blob_references
from ingestion.blobs.storage.base import BlobStorage
from ingestion.core.atproto_client import AtprotoClient
from ingestion.core.errors import BlobFetchError, OriginResolutionError, RetryExhaustedError, root_cause
from ingestion.core.structured_log import log_event
from store.models.blob import SCOPE_FULL, SCOPE_THUMBNAIL
from store.models.hydration_failure import REASON_BLOB_FAILED, REASON_ORIGIN_UNRESOLVED
from store.models.profile_blob import BLOB_TYPES
from store.repositories.blobs_repo import BlobRow, BlobsRepository, ProfileBlobRow, ProfileBlobsRepository
from store.repositories.failures_repo import HydrationFailuresRepository

logger = logging.getLogger(__name__)

PROFILE_OWNER_SCHEME = "profile://"
DEFAULT_CONCURRENCY = 4
KNOWN_CACHE_SIZE = 50_000
THUMBNAIL_MIMETYPE = "image/jpeg"

__all__ = [
    "BlobOwner",
    "BlobProcessor",
    "BlobResult",
    "Fingerprint",
    "extract_blob_references",
    "parse_owner_uri",
    "profile_owner_uri",
]


@dataclass(frozen=True, slots=True)
class BlobOwner:
    did: str
    post_uri: Optional[str] = None
    blob_type: Optional[str] = None

    @property
    def uri(self) -> str:
        if self.post_uri is not None:
            return self.post_uri
        return profile_owner_uri(self.did, self.blob_type or "")


def profile_owner_uri(did: str, blob_type: str) -> str:
    return f"{PROFILE_OWNER_SCHEME}{did}/{blob_type}"


def parse_owner_uri(owner: str) -> BlobOwner:
    """`at://did/collection/rkey` -> post owner; `profile://did/avatar|banner` -> profile owner."""
    if owner.startswith(PROFILE_OWNER_SCHEME):
        did, _, blob_type = owner[len(PROFILE_OWNER_SCHEME):].partition("/")
        if not did or blob_type not in BLOB_TYPES:
            raise ValueError(f"Invalid profile blob owner: {owner!r}")
        return BlobOwner(did=did, blob_type=blob_type)
    if owner.startswith("at://"):
        parts = owner[len("at://"):].split("/")
        if len(parts) != 3 or not all(parts):
            raise ValueError(f"Invalid post blob owner: {owner!r}")
        return BlobOwner(did=parts[0], post_uri=owner)
    raise ValueError(f"Unsupported blob owner: {owner!r}")


@dataclass(frozen=True, slots=True)
class Fingerprint:
    sha256: str
    sha256_scope: str = SCOPE_FULL
    phash: Optional[str] = None
    storage_path: Optional[str] = None
    mimetype: Optional[str] = None


@dataclass(frozen=True, slots=True)
class BlobResult:
    owner: str
    cid: str
    fingerprint: Fingerprint
    reused: bool = False


class _CidLock:
    __slots__ = ("lock", "users")

    def __init__(self) -> None:
        self.lock = asyncio.Lock()
        self.users = 0


class BlobProcessor:
    def __init__(
        self,
        client: AtprotoClient,
        blobs: BlobsRepository,
        profile_blobs: ProfileBlobsRepository,
        failures: Optional[HydrationFailuresRepository] = None,
        storage: Optional[BlobStorage] = None,
        *,
        hydrate_blobs: bool = False,
        concurrency: int = DEFAULT_CONCURRENCY,
    ) -> None:
        if hydrate_blobs and storage is None:
            raise ValueError("hydrate_blobs requires a storage backend")
        self._client = client
        self._blobs = blobs
        self._profile_blobs = profile_blobs
        self._failures = failures
        self._storage = storage
        self._hydrate_blobs = hydrate_blobs
        self._concurrency = max(1, concurrency)
        self._known: "OrderedDict[str, Fingerprint]" = OrderedDict()
        self._locks: dict[str, _CidLock] = {}

    @property
    def hydrate_blobs(self) -> bool:
        return self._hydrate_blobs

    # --- content-addressed table -----------------------------------------

    def _remember(self, cid: str, fingerprint: Fingerprint) -> None:
        self._known[cid] = fingerprint
        self._known.move_to_end(cid)
        while len(self._known) > KNOWN_CACHE_SIZE:
            self._known.popitem(last=False)

    def known_fingerprint(self, cid: str) -> Optional[Fingerprint]:
        cached = self._known.get(cid)
        if cached is not None:
            self._known.move_to_end(cid)
            return cached
        row = self._blobs.find_by_cid(cid) or self._profile_blobs.find_by_cid(cid)
        if row is None:
            return None
        fingerprint = Fingerprint(
            sha256=row.sha256,
            sha256_scope=row.sha256_scope,
            phash=row.phash,
            storage_path=row.storage_path,
            mimetype=row.mimetype,
        )
        self._remember(cid, fingerprint)
        return fingerprint

    @asynccontextmanager
    async def _cid_guard(self, cid: str) -> AsyncIterator[None]:
        entry = self._locks.get(cid)
        if entry is None:
            entry = self._locks[cid] = _CidLock()
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0:
                self._locks.pop(cid, None)

    # --- processing ------------------------------------------------------

    async def process(self, owner: str, ref: BlobReference) -> BlobResult:
        """Process one blob for `owner`; raises on failure."""
        target = parse_owner_uri(owner)
        async with self._cid_guard(ref.cid):
            known = self.known_fingerprint(ref.cid)
            if known is not None:
                self._persist(target, ref.cid, known)
                logger.debug(f"Blob {ref.cid} already fingerprinted; reusing for {owner}")
                return BlobResult(owner=owner, cid=ref.cid, fingerprint=known, reused=True)

            origin = await self._client.resolve_pds(target.did)
            try:
                fingerprint = await self._fetch_and_fingerprint(origin, target.did, ref)
            except RetryExhaustedError as e:
                raise BlobFetchError(f"Could not fetch blob {ref.cid} from {origin}: {root_cause(e)}") from e

            self._persist(target, ref.cid, fingerprint)
            self._remember(ref.cid, fingerprint)
            logger.info(
                f"Blob processed: owner={owner} cid={ref.cid} sha256={fingerprint.sha256} "
                f"scope={fingerprint.sha256_scope} stored={fingerprint.storage_path is not None}"
            )
            return BlobResult(owner=owner, cid=ref.cid, fingerprint=fingerprint)

    async def _fetch_and_fingerprint(self, origin: str, did: str, ref: BlobReference) -> Fingerprint:
        if self._hydrate_blobs and self._storage is not None:
            payload = await self._client.get_blob(origin, did, ref.cid)
            mimetype = ref.mimetype or payload.mimetype
            hashes = await asyncio.to_thread(compute_blob_hashes, payload.data, mimetype)
            storage_path = await self._storage.store(ref.cid, payload.data, mimetype)
            return self._fingerprint(hashes, SCOPE_FULL, mimetype, storage_path)

        if supports_phash(ref.mimetype):
            thumbnail = await self._client.get_thumbnail(did, ref.cid)
            if thumbnail:
                hashes = await asyncio.to_thread(compute_blob_hashes, thumbnail, THUMBNAIL_MIMETYPE)
                return self._fingerprint(hashes, SCOPE_THUMBNAIL, ref.mimetype)
            logger.debug(f"No thumbnail for {ref.cid}; hashing the original")
            payload = await self._client.get_blob(origin, did, ref.cid)
            hashes = await asyncio.to_thread(compute_blob_hashes, payload.data, ref.mimetype)
            return self._fingerprint(hashes, SCOPE_FULL, ref.mimetype)

        sink, content_type = await self._client.stream_blob(origin, did, ref.cid, StreamingSha256)
        return self._fingerprint(BlobHashes(sha256=sink.hexdigest()), SCOPE_FULL, ref.mimetype or content_type)

    @staticmethod
    def _fingerprint(
        hashes: BlobHashes, scope: str, mimetype: Optional[str], storage_path: Optional[str] = None
    ) -> Fingerprint:
        return Fingerprint(
            sha256=hashes.sha256,
            sha256_scope=scope,
            phash=hashes.phash,
            storage_path=storage_path,
            mimetype=mimetype,
        )

    def _persist(self, target: BlobOwner, cid: str, fp: Fingerprint) -> None:
        if target.post_uri is not None:
            self._blobs.upsert(
                BlobRow(
                    post_uri=target.post_uri,
                    blob_cid=cid,
                    sha256=fp.sha256,
                    sha256_scope=fp.sha256_scope,
                    phash=fp.phash,
                    storage_path=fp.storage_path,
                    mimetype=fp.mimetype,
                )
            )
            return
        self._profile_blobs.upsert(
            ProfileBlobRow(
                did=target.did,
                blob_type=target.blob_type or "",
                blob_cid=cid,
                sha256=fp.sha256,
                sha256_scope=fp.sha256_scope,
                phash=fp.phash,
                storage_path=fp.storage_path,
                mimetype=fp.mimetype,
            )
        )

    def _record_failure(self, owner: str, ref: BlobReference, error: Exception) -> None:
        reason = REASON_ORIGIN_UNRESOLVED if isinstance(error, OriginResolutionError) else REASON_BLOB_FAILED
        log_event(logger, "blob_skipped", logging.WARNING, owner=owner, cid=ref.cid, reason=reason, error=str(error))
        if self._failures is not None:
            self._failures.record(kind="blob", subject=owner, identifier=ref.cid, reason=reason, detail=str(error))

    async def process_blobs(self, owner: str, refs: Sequence[BlobReference]) -> list[BlobResult]:
        """Process every ref with bounded concurrency; one failure never affects siblings."""
        if not refs:
            return []
        gate = asyncio.Semaphore(self._concurrency)

        async def _one(ref: BlobReference) -> Optional[BlobResult]:
            async with gate:
                try:
                    return await self.process(owner, ref)
                except Exception as e:
                    logger.error(f"Failed to process blob {ref.cid} for {owner}: {e}")
                    self._record_failure(owner, ref, e)
                    return None

        results = await asyncio.gather(*(_one(ref) for ref in refs))
        return [r for r in results if r is not None]
