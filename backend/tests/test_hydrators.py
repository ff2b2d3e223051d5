from __future__ import annotations

import asyncio

import pytest

from ingestion.blobs.processor import BlobProcessor
from ingestion.core.errors import RetryExhaustedError
from ingestion.hydration.outcomes import HydrationOutcome
from ingestion.hydration.posts_service import PostHydrationService
from ingestion.hydration.profiles_service import ProfileHydrationService
from ingestion.hydration.records import PostRecord
from store.models.hydration_failure import REASON_FETCH_FAILED, REASON_INVALID_SUBJECT, REASON_NOT_FOUND
from store.models.profile import CHECKED_ABSENT


ALICE = "did:plc:alice"
POST = f"at://{ALICE}/app.bsky.feed.post/3kpost"
ORIGIN = "https://pds.alice.test"


def _image(cid: str, mime: str = "image/jpeg") -> dict:
    return {"$type": "blob", "ref": {"$link": cid}, "mimeType": mime, "size": 1234}


def _post_value(**extra) -> dict:
    value = {
        "$type": "app.bsky.feed.post",
        "text": "look at this",
        "langs": ["en"],
        "createdAt": "2025-01-15T12:00:00.000Z",
        "embed": {
            "$type": "app.bsky.embed.images",
            "images": [{"alt": "", "image": _image("bafyimg1")}, {"alt": "", "image": _image("bafyimg2")}],
        },
    }
    value.update(extra)
    return value


def _services(fake_client, repos):
    processor = BlobProcessor(fake_client, repos.blobs, repos.profile_blobs, repos.failures)
    posts = PostHydrationService(fake_client, repos.posts, processor, repos.failures)
    profiles = ProfileHydrationService(fake_client, repos.profiles, processor, repos.failures)
    return posts, profiles


def test_post_hydrated_with_blobs(fake_client, repos, png_bytes) -> None:
    fake_client.records[(ALICE, "app.bsky.feed.post", "3kpost")] = _post_value(reply={"root": {}, "parent": {}})
    fake_client.origins[ALICE] = ORIGIN
    fake_client.thumbnails["bafyimg1"] = png_bytes()
    fake_client.thumbnails["bafyimg2"] = png_bytes(split=True)
    posts, _ = _services(fake_client, repos)

    assert asyncio.run(posts.hydrate(POST)) is HydrationOutcome.HYDRATED

    stored = repos.posts.find_by_uri(POST)
    assert stored.text == "look at this"
    assert stored.is_reply is True
    assert stored.embeds[0]["$type"] == "app.bsky.embed.images"
    assert {b.blob_cid for b in repos.blobs.find_by_post_uri(POST)} == {"bafyimg1", "bafyimg2"}


def test_existing_post_is_skipped(fake_client, repos) -> None:
    fake_client.records[(ALICE, "app.bsky.feed.post", "3kpost")] = _post_value(embed=None)
    posts, _ = _services(fake_client, repos)

    asyncio.run(posts.hydrate(POST))
    assert asyncio.run(posts.hydrate(POST)) is HydrationOutcome.SKIPPED
    assert fake_client.count("get_record") == 1


def test_deleted_post_is_recorded_not_stored(fake_client, repos) -> None:
    posts, _ = _services(fake_client, repos)

    assert asyncio.run(posts.hydrate(POST)) is HydrationOutcome.NOT_FOUND
    assert repos.posts.find_by_uri(POST) is None
    assert [f.reason for f in repos.failures.find_by_subject(POST)] == [REASON_NOT_FOUND]


def test_invalid_post_uri(fake_client, repos) -> None:
    posts, _ = _services(fake_client, repos)
    bad = f"at://{ALICE}/app.bsky.feed.post"

    assert asyncio.run(posts.hydrate(bad)) is HydrationOutcome.INVALID
    assert fake_client.calls == []
    assert [f.reason for f in repos.failures.find_by_subject(bad)] == [REASON_INVALID_SUBJECT]


def test_transient_post_failure_is_recorded_and_raised(fake_client, repos, server_error) -> None:
    fake_client.failing[f"record:{ALICE}/app.bsky.feed.post/3kpost"] = server_error()
    posts, _ = _services(fake_client, repos)

    with pytest.raises(RetryExhaustedError):
        asyncio.run(posts.hydrate(POST))
    assert [f.reason for f in repos.failures.find_by_subject(POST)] == [REASON_FETCH_FAILED]


def test_post_record_parsing() -> None:
    value = _post_value(
        embed={
            "$type": "app.bsky.embed.recordWithMedia",
            "record": {"record": {"uri": "at://x/app.bsky.feed.post/y"}},
            "media": {"$type": "app.bsky.embed.video", "video": _image("bafyvid", "video/mp4")},
        },
        createdAt="not a date",
        tags=["a", 3, "b"],
    )
    record = PostRecord.from_value(POST, ALICE, value)

    assert record.created_at is None
    assert record.tags == ["a", "b"]
    assert [b.cid for b in record.blobs] == ["bafyvid"]
    assert record.is_reply is False


def test_profile_fully_hydrated(fake_client, repos, png_bytes) -> None:
    fake_client.profiles[ALICE] = {"did": ALICE, "handle": "alice.test"}
    fake_client.records[(ALICE, "app.bsky.actor.profile", "self")] = {
        "displayName": "Alice",
        "description": "hi",
        "avatar": _image("bafyavatar"),
    }
    fake_client.origins[ALICE] = ORIGIN
    fake_client.thumbnails["bafyavatar"] = png_bytes()
    _, profiles = _services(fake_client, repos)

    assert asyncio.run(profiles.hydrate(ALICE)) is HydrationOutcome.HYDRATED

    stored = repos.profiles.find_by_did(ALICE)
    assert stored.handle == "alice.test"
    assert stored.display_name == "Alice"
    assert stored.avatar_cid == "bafyavatar"
    assert stored.banner_cid == CHECKED_ABSENT
    assert stored.hydration_passes == 1
    assert repos.profile_blobs.find_latest_by_did_and_type(ALICE, "avatar").blob_cid == "bafyavatar"

    assert asyncio.run(profiles.hydrate(ALICE)) is HydrationOutcome.SKIPPED


def test_profile_without_record_is_complete(fake_client, repos) -> None:
    fake_client.profiles[ALICE] = {"did": ALICE, "handle": "alice.test"}
    _, profiles = _services(fake_client, repos)

    assert asyncio.run(profiles.hydrate(ALICE)) is HydrationOutcome.HYDRATED
    stored = repos.profiles.find_by_did(ALICE)
    assert (stored.avatar_cid, stored.banner_cid) == (CHECKED_ABSENT, CHECKED_ABSENT)


def test_partial_profile_gets_one_more_pass(fake_client, repos, server_error) -> None:
    fake_client.profiles[ALICE] = {"did": ALICE, "handle": "alice.test"}
    fake_client.failing[f"record:{ALICE}/app.bsky.actor.profile/self"] = server_error()
    _, profiles = _services(fake_client, repos)

    assert asyncio.run(profiles.hydrate(ALICE)) is HydrationOutcome.PARTIAL
    stored = repos.profiles.find_by_did(ALICE)
    assert stored.handle == "alice.test"
    assert stored.avatar_cid is None

    assert asyncio.run(profiles.hydrate(ALICE)) is HydrationOutcome.PARTIAL
    assert repos.profiles.find_by_did(ALICE).hydration_passes == 2

    assert asyncio.run(profiles.hydrate(ALICE)) is HydrationOutcome.SKIPPED
    assert fake_client.count("get_profile") == 2


def test_missing_account_is_terminal(fake_client, repos) -> None:
    _, profiles = _services(fake_client, repos)

    assert asyncio.run(profiles.hydrate(ALICE)) is HydrationOutcome.NOT_FOUND
    assert repos.profiles.find_by_did(ALICE) is None
    assert repos.failures.has_terminal_failure(ALICE)


def test_profile_fails_when_both_reads_fail(fake_client, repos, server_error) -> None:
    fake_client.failing[f"profile:{ALICE}"] = server_error()
    fake_client.failing[f"record:{ALICE}/app.bsky.actor.profile/self"] = server_error()
    _, profiles = _services(fake_client, repos)

    with pytest.raises(RetryExhaustedError):
        asyncio.run(profiles.hydrate(ALICE))
    assert repos.profiles.find_by_did(ALICE) is None
    assert [f.reason for f in repos.failures.find_by_subject(ALICE)] == [REASON_FETCH_FAILED, REASON_FETCH_FAILED]


def test_invalid_profile_subject(fake_client, repos) -> None:
    _, profiles = _services(fake_client, repos)
    assert asyncio.run(profiles.hydrate("alice.test")) is HydrationOutcome.INVALID
    assert fake_client.calls == []
