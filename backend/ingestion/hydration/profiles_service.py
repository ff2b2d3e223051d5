"""Profile hydration.

A profile needs two reads: the self-authored profile record (display name,
description, avatar, banner) and getProfile for the current handle. Either
read may fail transiently; whatever was learned is stored and the profile
stays eligible for one more pass.
"""

from __future__ import annotations

import logging
from typing import Optional

from ingestion.blobs.processor import BlobProcessor, profile_owner_uri
from ingestion.blobs.references import BlobReference
from ingestion.core.atproto_client import AtprotoClient
from ingestion.core.errors import RecordNotFoundError, RetryExhaustedError, root_cause
from ingestion.hydration.outcomes import HydrationOutcome, record_skip
from ingestion.hydration.records import PROFILE_COLLECTION, PROFILE_RKEY, ProfileRecord
from store.models.hydration_failure import REASON_FETCH_FAILED, REASON_INVALID_SUBJECT, REASON_NOT_FOUND
from store.models.profile import CHECKED_ABSENT, MAX_HYDRATION_PASSES
from store.repositories.failures_repo import HydrationFailuresRepository
from store.repositories.profiles_repo import ProfileRow, ProfilesRepository

logger = logging.getLogger(__name__)

KIND = "profile"


def _cid_or_absent(ref: Optional[BlobReference]) -> str:
    return ref.cid if ref is not None else CHECKED_ABSENT


class ProfileHydrationService:
    def __init__(
        self,
        client: AtprotoClient,
        profiles: ProfilesRepository,
        blob_processor: Optional[BlobProcessor] = None,
        failures: Optional[HydrationFailuresRepository] = None,
    ) -> None:
        self._client = client
        self._profiles = profiles
        self._blobs = blob_processor
        self._failures = failures

    async def _fetch_profile_record(self, did: str) -> Optional[ProfileRecord]:
        """The profile record; an empty record when the account never wrote one, None on failure."""
        try:
            envelope = await self._client.get_record(did, PROFILE_COLLECTION, PROFILE_RKEY)
        except RetryExhaustedError as e:
            cause = root_cause(e)
            if isinstance(cause, RecordNotFoundError):
                logger.debug(f"No profile record for {did}")
                return ProfileRecord()
            record_skip(
                self._failures,
                kind=KIND,
                subject=did,
                identifier=f"{PROFILE_COLLECTION}/{PROFILE_RKEY}",
                reason=REASON_FETCH_FAILED,
                detail=str(cause),
            )
            return None
        value = envelope.get("value") if isinstance(envelope, dict) else None
        return ProfileRecord.from_value(value) if isinstance(value, dict) else ProfileRecord()

    async def hydrate(self, did: str) -> HydrationOutcome:
        existing = self._profiles.find_by_did(did)
        if existing is not None and (existing.is_complete() or existing.hydration_passes >= MAX_HYDRATION_PASSES):
            logger.debug(f"Profile already hydrated, skipping: {did}")
            return HydrationOutcome.SKIPPED

        if not did.startswith("did:"):
            record_skip(self._failures, kind=KIND, subject=did, reason=REASON_INVALID_SUBJECT, detail="not a DID")
            return HydrationOutcome.INVALID

        handle: Optional[str] = None
        actor_error: Optional[RetryExhaustedError] = None
        try:
            actor = await self._client.get_profile(did)
            handle = actor.get("handle") or None
        except RetryExhaustedError as e:
            cause = root_cause(e)
            if isinstance(cause, RecordNotFoundError):
                record_skip(self._failures, kind=KIND, subject=did, reason=REASON_NOT_FOUND, detail=str(cause))
                return HydrationOutcome.NOT_FOUND
            record_skip(
                self._failures,
                kind=KIND,
                subject=did,
                identifier="app.bsky.actor.getProfile",
                reason=REASON_FETCH_FAILED,
                detail=str(cause),
            )
            actor_error = e

        record = await self._fetch_profile_record(did)
        if record is None and actor_error is not None:
            raise actor_error

        row = ProfileRow(
            did=did,
            handle=handle,
            display_name=record.display_name if record else None,
            description=record.description if record else None,
            avatar_cid=_cid_or_absent(record.avatar) if record else None,
            banner_cid=_cid_or_absent(record.banner) if record else None,
        )
        self._profiles.upsert(row)

        stored = self._profiles.find_by_did(did)
        complete = stored is not None and stored.is_complete()
        logger.info(f"Profile hydrated: {did} handle={handle} complete={complete}")

        if record is not None and self._blobs is not None:
            for blob_type, ref in (("avatar", record.avatar), ("banner", record.banner)):
                if ref is not None:
                    await self._blobs.process_blobs(profile_owner_uri(did, blob_type), [ref])
        return HydrationOutcome.HYDRATED if complete else HydrationOutcome.PARTIAL
