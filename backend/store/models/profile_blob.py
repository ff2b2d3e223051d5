"""ProfileBlob model: fingerprints of a profile's avatar and banner."""

from __future__ import annotations

from typing import Optional

from sqlalchemy import ForeignKey, Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from store.core.base import Base, CapturedAtMixin
from store.models.blob import SCOPE_FULL


BLOB_TYPES = ("avatar", "banner")


class ProfileBlob(CapturedAtMixin, Base):
    __tablename__ = "profile_blobs"

    did: Mapped[str] = mapped_column(Text, ForeignKey("profiles.did", ondelete="CASCADE"), primary_key=True)
    blob_type: Mapped[str] = mapped_column(String(16), primary_key=True)
    blob_cid: Mapped[str] = mapped_column(Text, primary_key=True)
    sha256: Mapped[str] = mapped_column(String(64), nullable=False)
    sha256_scope: Mapped[str] = mapped_column(String(16), nullable=False, default=SCOPE_FULL)
    phash: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)
    storage_path: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    mimetype: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    __table_args__ = (
        Index("ix_profile_blobs_cid", "blob_cid"),
        Index("ix_profile_blobs_sha256", "sha256"),
        Index("ix_profile_blobs_phash", "phash"),
    )
