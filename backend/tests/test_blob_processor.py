from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from ingestion.blobs.hasher import compute_perceptual_hash
from ingestion.blobs.processor import BlobOwner, BlobProcessor, parse_owner_uri, profile_owner_uri
from ingestion.blobs.references import BlobReference
from ingestion.blobs.storage.local import LocalBlobStorage
from store.models.blob import SCOPE_FULL, SCOPE_THUMBNAIL
from store.models.hydration_failure import REASON_BLOB_FAILED, REASON_ORIGIN_UNRESOLVED
from store.repositories.blobs_repo import BlobRow
from store.repositories.posts_repo import PostRow
from store.repositories.profiles_repo import ProfileRow


ALICE = "did:plc:alice"
POST = f"at://{ALICE}/app.bsky.feed.post/1"
OTHER_POST = f"at://{ALICE}/app.bsky.feed.post/2"
ORIGIN = "https://pds.alice.test"


@pytest.fixture(autouse=True)
def owners(repos) -> None:
    # Blob rows reference their owning post or profile.
    for uri in (POST, OTHER_POST):
        repos.posts.upsert(PostRow(uri=uri, did=ALICE))
    repos.profiles.upsert(ProfileRow(did=ALICE))


def _processor(fake_client, repos, **kwargs) -> BlobProcessor:
    return BlobProcessor(fake_client, repos.blobs, repos.profile_blobs, repos.failures, **kwargs)


def test_image_fingerprinted_from_thumbnail(fake_client, repos, png_bytes, sha256_hex) -> None:
    thumb = png_bytes(split=True)
    fake_client.origins[ALICE] = ORIGIN
    fake_client.thumbnails["bafyimg"] = thumb

    results = asyncio.run(_processor(fake_client, repos).process_blobs(POST, [BlobReference("bafyimg", "image/png")]))

    assert len(results) == 1
    fp = results[0].fingerprint
    assert fp.sha256 == sha256_hex(thumb)
    assert fp.sha256_scope == SCOPE_THUMBNAIL
    assert fp.phash == compute_perceptual_hash(thumb)
    assert fp.storage_path is None
    assert fake_client.count("get_blob") == 0

    row = repos.blobs.find_by_cid("bafyimg")
    assert row.post_uri == POST
    assert row.sha256_scope == SCOPE_THUMBNAIL


def test_missing_thumbnail_falls_back_to_original(fake_client, repos, png_bytes, sha256_hex) -> None:
    original = png_bytes((1, 2, 3))
    fake_client.origins[ALICE] = ORIGIN
    fake_client.blobs["bafyimg"] = (original, "image/png")

    results = asyncio.run(_processor(fake_client, repos).process_blobs(POST, [BlobReference("bafyimg", "image/png")]))

    assert results[0].fingerprint.sha256 == sha256_hex(original)
    assert results[0].fingerprint.sha256_scope == SCOPE_FULL
    assert fake_client.count("get_thumbnail") == 1
    assert fake_client.count("get_blob") == 1


def test_non_image_is_streamed_and_not_kept(fake_client, repos, sha256_hex, tmp_path: Path) -> None:
    video = b"\x00\x00\x00\x18ftypmp42" * 10_000
    fake_client.origins[ALICE] = ORIGIN
    fake_client.blobs["bafyvid"] = (video, "video/mp4")

    results = asyncio.run(_processor(fake_client, repos).process_blobs(POST, [BlobReference("bafyvid", "video/mp4")]))

    fp = results[0].fingerprint
    assert fp.sha256 == sha256_hex(video)
    assert fp.phash is None
    assert fp.storage_path is None
    assert fake_client.count("stream_blob") == 1
    assert list(tmp_path.iterdir()) == []


def test_download_mode_stores_original(fake_client, repos, png_bytes, sha256_hex, tmp_path: Path) -> None:
    original = png_bytes(split=True, size=(48, 48))
    fake_client.origins[ALICE] = ORIGIN
    fake_client.blobs["bafyimg"] = (original, "image/png")
    processor = _processor(fake_client, repos, storage=LocalBlobStorage(tmp_path), hydrate_blobs=True)

    results = asyncio.run(processor.process_blobs(POST, [BlobReference("bafyimg", "image/png")]))

    fp = results[0].fingerprint
    assert fp.sha256 == sha256_hex(original)
    assert fp.sha256_scope == SCOPE_FULL
    assert fp.phash == "0f0f0f0f0f0f0f0f"
    assert Path(fp.storage_path).read_bytes() == original
    assert fake_client.count("get_thumbnail") == 0


def test_download_mode_requires_storage(fake_client, repos) -> None:
    with pytest.raises(ValueError):
        _processor(fake_client, repos, hydrate_blobs=True)


def test_same_cid_is_fetched_once(fake_client, repos, png_bytes) -> None:
    fake_client.origins[ALICE] = ORIGIN
    fake_client.thumbnails["bafyimg"] = png_bytes()
    processor = _processor(fake_client, repos)
    ref = BlobReference("bafyimg", "image/png")

    async def scenario():
        first = await processor.process_blobs(POST, [ref, ref])
        second = await processor.process_blobs(OTHER_POST, [ref])
        return first, second

    first, second = asyncio.run(scenario())

    assert fake_client.count("get_thumbnail") == 1
    assert len(first) == 2
    assert first[0].fingerprint == first[1].fingerprint
    assert [r.reused for r in first].count(True) == 1
    assert second[0].reused is True
    assert second[0].fingerprint == first[0].fingerprint
    assert len(repos.blobs.find_by_post_uri(POST)) == 1
    assert len(repos.blobs.find_by_post_uri(OTHER_POST)) == 1


def test_fingerprint_known_from_database(fake_client, repos) -> None:
    repos.blobs.upsert(BlobRow(post_uri=OTHER_POST, blob_cid="bafyold", sha256="d" * 64, phash="ffff000000000000"))

    result = asyncio.run(_processor(fake_client, repos).process(POST, BlobReference("bafyold", "image/jpeg")))

    assert result.reused is True
    assert result.fingerprint.phash == "ffff000000000000"
    assert fake_client.calls == []
    assert repos.blobs.find_by_post_uri(POST)[0].sha256 == "d" * 64


def test_unresolvable_origin_skips_only_that_owner(fake_client, repos, png_bytes) -> None:
    fake_client.thumbnails["bafyimg"] = png_bytes()

    results = asyncio.run(_processor(fake_client, repos).process_blobs(POST, [BlobReference("bafyimg", "image/png")]))

    assert results == []
    failures = repos.failures.find_by_subject(POST)
    assert [(f.kind, f.reason, f.identifier) for f in failures] == [("blob", REASON_ORIGIN_UNRESOLVED, "bafyimg")]
    assert repos.blobs.find_by_cid("bafyimg") is None


def test_failing_blob_does_not_affect_siblings(fake_client, repos, png_bytes, server_error) -> None:
    fake_client.origins[ALICE] = ORIGIN
    fake_client.thumbnails["bafyok"] = png_bytes()
    fake_client.failing["thumb:bafybad"] = server_error()

    results = asyncio.run(
        _processor(fake_client, repos).process_blobs(
            POST, [BlobReference("bafybad", "image/jpeg"), BlobReference("bafyok", "image/png")]
        )
    )

    assert [r.cid for r in results] == ["bafyok"]
    failures = repos.failures.find_by_subject(POST)
    assert [(f.reason, f.identifier) for f in failures] == [(REASON_BLOB_FAILED, "bafybad")]


def test_undecodable_image_keeps_sha256(fake_client, repos, sha256_hex, tmp_path: Path) -> None:
    fake_client.origins[ALICE] = ORIGIN
    fake_client.blobs["bafybroken"] = (b"truncated", "image/png")
    processor = _processor(fake_client, repos, storage=LocalBlobStorage(tmp_path), hydrate_blobs=True)

    result = asyncio.run(processor.process(POST, BlobReference("bafybroken", "image/png")))

    assert result.fingerprint.sha256 == sha256_hex(b"truncated")
    assert result.fingerprint.phash is None


def test_profile_owner(fake_client, repos, png_bytes) -> None:
    fake_client.origins[ALICE] = ORIGIN
    fake_client.thumbnails["bafyav"] = png_bytes()
    owner = profile_owner_uri(ALICE, "avatar")

    asyncio.run(_processor(fake_client, repos).process_blobs(owner, [BlobReference("bafyav", "image/jpeg")]))

    row = repos.profile_blobs.find_latest_by_did_and_type(ALICE, "avatar")
    assert row.blob_cid == "bafyav"
    assert repos.blobs.find_by_cid("bafyav") is None


def test_parse_owner_uri() -> None:
    assert parse_owner_uri(POST) == BlobOwner(did=ALICE, post_uri=POST)
    assert parse_owner_uri("profile://did:plc:bob/banner") == BlobOwner(did="did:plc:bob", blob_type="banner")
    assert BlobOwner(did="did:plc:bob", blob_type="avatar").uri == "profile://did:plc:bob/avatar"
    for bad in ("profile://did:plc:bob/header", "at://did:plc:bob", "https://example.com"):
        with pytest.raises(ValueError):
            parse_owner_uri(bad)
