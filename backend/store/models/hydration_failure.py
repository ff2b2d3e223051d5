"""HydrationFailure model.

One row per skipped subject or blob, so an operator can reconstruct what was
not captured and why. Rows are append-only.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy import DateTime, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from store.core.base import Base, utcnow


REASON_NOT_FOUND = "not_found"
REASON_INVALID_SUBJECT = "invalid_subject"
REASON_FETCH_FAILED = "fetch_failed"
REASON_ORIGIN_UNRESOLVED = "origin_unresolved"
REASON_BLOB_FAILED = "blob_failed"

TERMINAL_REASONS = (REASON_NOT_FOUND, REASON_INVALID_SUBJECT)


class HydrationFailure(Base):
    __tablename__ = "hydration_failures"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    kind: Mapped[str] = mapped_column(String(16), nullable=False)  # post|profile|blob
    subject: Mapped[str] = mapped_column(Text, nullable=False)
    identifier: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    reason: Mapped[str] = mapped_column(String(32), nullable=False)
    detail: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (Index("ix_hydration_failures_subject", "subject"),)
