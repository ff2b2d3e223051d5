"""Blob model: fingerprints of media embedded in a post.

`sha256_scope` says what the fingerprint covers: the whole blob ("full") or
a derived thumbnail rendition ("thumbnail", download not authorized).
"""

from __future__ import annotations

from typing import Optional

from sqlalchemy import ForeignKey, Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from store.core.base import Base, CapturedAtMixin


SCOPE_FULL = "full"
SCOPE_THUMBNAIL = "thumbnail"


class Blob(CapturedAtMixin, Base):
    __tablename__ = "blobs"

    post_uri: Mapped[str] = mapped_column(Text, ForeignKey("posts.uri", ondelete="CASCADE"), primary_key=True)
    blob_cid: Mapped[str] = mapped_column(Text, primary_key=True)
    sha256: Mapped[str] = mapped_column(String(64), nullable=False)
    sha256_scope: Mapped[str] = mapped_column(String(16), nullable=False, default=SCOPE_FULL)
    phash: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)
    storage_path: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    mimetype: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    __table_args__ = (
        Index("ix_blobs_cid", "blob_cid"),
        Index("ix_blobs_sha256", "sha256"),
        Index("ix_blobs_phash", "phash"),
    )
