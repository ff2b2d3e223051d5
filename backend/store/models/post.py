"""Post model: hydrated content record for a labeled post URI."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from sqlalchemy import Boolean, DateTime, Index, Text, false
from sqlalchemy.orm import Mapped, mapped_column

from store.core.base import Base, CapturedAtMixin, JSONType


class Post(CapturedAtMixin, Base):
    __tablename__ = "posts"

    uri: Mapped[str] = mapped_column(Text, primary_key=True)
    did: Mapped[str] = mapped_column(Text, nullable=False)
    text: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    facets: Mapped[Optional[Any]] = mapped_column(JSONType, nullable=True)
    # List of embed objects; blob references are extracted from these.
    embeds: Mapped[Optional[Any]] = mapped_column(JSONType, nullable=True)
    langs: Mapped[Optional[Any]] = mapped_column(JSONType, nullable=True)
    tags: Mapped[Optional[Any]] = mapped_column(JSONType, nullable=True)
    created_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    is_reply: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default=false())

    __table_args__ = (Index("ix_posts_did", "did"),)
