"""Profile model: hydrated account record for a labeled DID.

Avatar/banner columns are tri-state:
- NULL: not checked yet (or could not be resolved) -> eligible for another pass
- CHECKED_ABSENT: checked, the profile has none
- anything else: the blob CID
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy import DateTime, Index, Integer, Text
from sqlalchemy.orm import Mapped, mapped_column

from store.core.base import Base, CapturedAtMixin, utcnow


CHECKED_ABSENT = "none"
MAX_HYDRATION_PASSES = 2


class Profile(CapturedAtMixin, Base):
    __tablename__ = "profiles"

    did: Mapped[str] = mapped_column(Text, primary_key=True)
    handle: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    display_name: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    avatar_cid: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    banner_cid: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    hydration_passes: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    updated_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (Index("ix_profiles_handle", "handle"),)

    def is_complete(self) -> bool:
        return self.handle is not None and self.avatar_cid is not None and self.banner_cid is not None
