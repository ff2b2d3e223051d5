"""LabelEvent model.

Label events are immutable facts emitted by a labeler. A negation is stored
as its own row (`neg=true`); nothing here deletes or rewrites a prior label.
Re-delivery of the same (uri, val, cts) triple must not add a row.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import Boolean, DateTime, Index, Integer, String, Text, UniqueConstraint, false
from sqlalchemy.orm import Mapped, mapped_column, validates

from store.core.base import UTC, Base, CapturedAtMixin


class LabelEvent(CapturedAtMixin, Base):
    __tablename__ = "labels"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    uri: Mapped[str] = mapped_column(Text, nullable=False)
    cid: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    val: Mapped[str] = mapped_column(String(128), nullable=False)
    neg: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default=false())
    cts: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    exp: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    src: Mapped[str] = mapped_column(Text, nullable=False)

    __table_args__ = (
        UniqueConstraint("uri", "val", "cts", name="ux_labels_uri_val_cts"),
        Index("ix_labels_uri", "uri"),
        Index("ix_labels_val", "val"),
        Index("ix_labels_cts", "cts"),
    )

    @validates("cts", "exp")
    def _validate_utc(self, key: str, value: Optional[datetime]) -> Optional[datetime]:
        if value is None:
            return None
        if value.tzinfo is None or value.utcoffset() is None:
            raise ValueError(f"{key} must be timezone-aware (UTC).")
        if value.utcoffset() != timedelta(0):
            raise ValueError(f"{key} must be UTC (offset 0).")
        return value.astimezone(UTC)
