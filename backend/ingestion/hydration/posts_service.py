"""Post hydration: fetch a labeled post, store it, fingerprint its media."""

from __future__ import annotations

import logging
from typing import Optional

from ingestion.blobs.processor import BlobProcessor
from ingestion.core.atproto_client import AtprotoClient
from ingestion.core.errors import RecordNotFoundError, RetryExhaustedError, root_cause
from ingestion.hydration.outcomes import HydrationOutcome, record_skip
from ingestion.hydration.records import PostRecord, parse_post_uri
from store.models.hydration_failure import REASON_FETCH_FAILED, REASON_INVALID_SUBJECT, REASON_NOT_FOUND
from store.repositories.failures_repo import HydrationFailuresRepository
from store.repositories.posts_repo import PostRow, PostsRepository

logger = logging.getLogger(__name__)

KIND = "post"


class PostHydrationService:
    def __init__(
        self,
        client: AtprotoClient,
        posts: PostsRepository,
        blob_processor: Optional[BlobProcessor] = None,
        failures: Optional[HydrationFailuresRepository] = None,
    ) -> None:
        self._client = client
        self._posts = posts
        self._blobs = blob_processor
        self._failures = failures

    async def hydrate(self, uri: str) -> HydrationOutcome:
        if self._posts.exists(uri):
            logger.debug(f"Post already hydrated, skipping: {uri}")
            return HydrationOutcome.SKIPPED

        try:
            did, collection, rkey = parse_post_uri(uri)
        except ValueError as e:
            record_skip(self._failures, kind=KIND, subject=uri, reason=REASON_INVALID_SUBJECT, detail=str(e))
            return HydrationOutcome.INVALID

        try:
            envelope = await self._client.get_record(did, collection, rkey)
        except RetryExhaustedError as e:
            cause = root_cause(e)
            if isinstance(cause, RecordNotFoundError):
                record_skip(self._failures, kind=KIND, subject=uri, reason=REASON_NOT_FOUND, detail=str(cause))
                return HydrationOutcome.NOT_FOUND
            record_skip(self._failures, kind=KIND, subject=uri, reason=REASON_FETCH_FAILED, detail=str(cause))
            raise

        value = envelope.get("value") if isinstance(envelope, dict) else None
        if not isinstance(value, dict):
            record_skip(self._failures, kind=KIND, subject=uri, reason=REASON_NOT_FOUND, detail="empty record")
            return HydrationOutcome.NOT_FOUND

        post = PostRecord.from_value(uri, did, value)
        self._posts.upsert(
            PostRow(
                uri=post.uri,
                did=post.did,
                text=post.text,
                facets=post.facets,
                embeds=post.embeds,
                langs=post.langs,
                tags=post.tags,
                created_at=post.created_at,
                is_reply=post.is_reply,
            )
        )
        logger.info(f"Post hydrated: {uri} ({len(post.blobs)} blobs)")

        if post.blobs and self._blobs is not None:
            await self._blobs.process_blobs(uri, post.blobs)
        return HydrationOutcome.HYDRATED
