"""Hydration failure records (append-only)."""

from __future__ import annotations

from typing import Optional, Sequence

from sqlalchemy import select

from store.models.hydration_failure import TERMINAL_REASONS, HydrationFailure
from store.repositories.base import BaseRepository


class HydrationFailuresRepository(BaseRepository[HydrationFailure]):
    def record(
        self,
        *,
        kind: str,
        subject: str,
        reason: str,
        identifier: Optional[str] = None,
        detail: Optional[str] = None,
    ) -> None:
        with self._transaction() as session:
            session.add(
                HydrationFailure(
                    kind=kind,
                    subject=subject,
                    identifier=identifier,
                    reason=reason,
                    detail=(detail or "")[:2000] or None,
                )
            )

    def has_terminal_failure(self, subject: str) -> bool:
        with self._session() as session:
            stmt = (
                select(HydrationFailure.id)
                .where(HydrationFailure.subject == subject, HydrationFailure.reason.in_(TERMINAL_REASONS))
                .limit(1)
            )
            return session.execute(stmt).scalar_one_or_none() is not None

    def find_by_subject(self, subject: str) -> Sequence[HydrationFailure]:
        with self._session() as session:
            stmt = select(HydrationFailure).where(HydrationFailure.subject == subject).order_by(HydrationFailure.id)
            return session.execute(stmt).scalars().all()
