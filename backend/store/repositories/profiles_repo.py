"""Profiles repository."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from sqlalchemy import select

from store.models.profile import Profile
from store.repositories.base import BaseRepository


@dataclass(frozen=True, slots=True)
class ProfileRow:
    did: str
    handle: Optional[str] = None
    display_name: Optional[str] = None
    description: Optional[str] = None
    avatar_cid: Optional[str] = None
    banner_cid: Optional[str] = None


class ProfilesRepository(BaseRepository[Profile]):
    def upsert(self, row: ProfileRow) -> None:
        """Insert or refresh a profile and count the hydration pass.

        Known values are never overwritten with NULL: a later pass can only
        fill in fields that were unknown.
        """
        with self._transaction() as session:
            existing = session.get(Profile, row.did)
            if existing is None:
                session.add(
                    Profile(
                        did=row.did,
                        handle=row.handle,
                        display_name=row.display_name,
                        description=row.description,
                        avatar_cid=row.avatar_cid,
                        banner_cid=row.banner_cid,
                        hydration_passes=1,
                    )
                )
                return
            for field in ("handle", "display_name", "description", "avatar_cid", "banner_cid"):
                value = getattr(row, field)
                if value is not None:
                    setattr(existing, field, value)
            existing.hydration_passes = (existing.hydration_passes or 0) + 1

    def find_by_did(self, did: str) -> Optional[Profile]:
        with self._session() as session:
            return session.get(Profile, did)

    def find_by_handle(self, handle: str) -> Optional[Profile]:
        with self._session() as session:
            return session.execute(select(Profile).where(Profile.handle == handle).limit(1)).scalar_one_or_none()
