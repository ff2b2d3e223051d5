"""Repositories for post blobs and profile blobs."""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Optional, Sequence

from sqlalchemy import select

from store.models.blob import SCOPE_FULL, Blob
from store.models.profile_blob import ProfileBlob
from store.repositories.base import BaseRepository


@dataclass(frozen=True, slots=True)
class BlobRow:
    post_uri: str
    blob_cid: str
    sha256: str
    sha256_scope: str = SCOPE_FULL
    phash: Optional[str] = None
    storage_path: Optional[str] = None
    mimetype: Optional[str] = None


@dataclass(frozen=True, slots=True)
class ProfileBlobRow:
    did: str
    blob_type: str
    blob_cid: str
    sha256: str
    sha256_scope: str = SCOPE_FULL
    phash: Optional[str] = None
    storage_path: Optional[str] = None
    mimetype: Optional[str] = None


_FINGERPRINT_FIELDS = ("sha256", "sha256_scope", "phash", "storage_path", "mimetype")


class BlobsRepository(BaseRepository[Blob]):
    def upsert(self, row: BlobRow) -> None:
        with self._transaction() as session:
            stmt = self._insert(session, Blob.__table__).values(**asdict(row))
            stmt = stmt.on_conflict_do_update(
                index_elements=["post_uri", "blob_cid"],
                set_={f: getattr(stmt.excluded, f) for f in _FINGERPRINT_FIELDS},
            )
            session.execute(stmt)

    def find_by_post_uri(self, post_uri: str) -> Sequence[Blob]:
        with self._session() as session:
            return session.execute(select(Blob).where(Blob.post_uri == post_uri)).scalars().all()

    def find_by_cid(self, cid: str) -> Optional[Blob]:
        with self._session() as session:
            return session.execute(select(Blob).where(Blob.blob_cid == cid).limit(1)).scalar_one_or_none()

    def find_by_sha256(self, sha256: str) -> Optional[Blob]:
        with self._session() as session:
            return session.execute(select(Blob).where(Blob.sha256 == sha256).limit(1)).scalar_one_or_none()

    def find_by_phash(self, phash: str) -> Sequence[Blob]:
        with self._session() as session:
            return session.execute(select(Blob).where(Blob.phash == phash)).scalars().all()


class ProfileBlobsRepository(BaseRepository[ProfileBlob]):
    def upsert(self, row: ProfileBlobRow) -> None:
        with self._transaction() as session:
            stmt = self._insert(session, ProfileBlob.__table__).values(**asdict(row))
            stmt = stmt.on_conflict_do_update(
                index_elements=["did", "blob_type", "blob_cid"],
                set_={f: getattr(stmt.excluded, f) for f in _FINGERPRINT_FIELDS},
            )
            session.execute(stmt)

    def find_by_did(self, did: str) -> Sequence[ProfileBlob]:
        with self._session() as session:
            stmt = select(ProfileBlob).where(ProfileBlob.did == did).order_by(ProfileBlob.captured_at.desc())
            return session.execute(stmt).scalars().all()

    def find_latest_by_did_and_type(self, did: str, blob_type: str) -> Optional[ProfileBlob]:
        with self._session() as session:
            stmt = (
                select(ProfileBlob)
                .where(ProfileBlob.did == did, ProfileBlob.blob_type == blob_type)
                .order_by(ProfileBlob.captured_at.desc())
                .limit(1)
            )
            return session.execute(stmt).scalar_one_or_none()

    def find_by_cid(self, cid: str) -> Optional[ProfileBlob]:
        with self._session() as session:
            stmt = select(ProfileBlob).where(ProfileBlob.blob_cid == cid).limit(1)
            return session.execute(stmt).scalar_one_or_none()

    def find_by_phash(self, phash: str) -> Sequence[ProfileBlob]:
        with self._session() as session:
            return session.execute(select(ProfileBlob).where(ProfileBlob.phash == phash)).scalars().all()
