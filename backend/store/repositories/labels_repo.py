"""Label events repository (append-only)."""

from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Optional, Sequence

from sqlalchemy import func, select

from store.models.label_event import LabelEvent
from store.repositories.base import BaseRepository


@dataclass(frozen=True, slots=True)
class LabelRow:
    uri: str
    val: str
    cts: datetime
    src: str
    cid: Optional[str] = None
    neg: bool = False
    exp: Optional[datetime] = None


class LabelsRepository(BaseRepository[LabelEvent]):
    def insert(self, row: LabelRow) -> bool:
        """Insert a label; returns False when the (uri, val, cts) triple already exists."""
        # Run the model validators (UTC enforcement) before building the statement.
        validated = LabelEvent(**asdict(row))
        values = {k: getattr(validated, k) for k in ("uri", "cid", "val", "neg", "cts", "exp", "src")}
        with self._transaction() as session:
            stmt = (
                self._insert(session, LabelEvent.__table__)
                .values(**values)
                .on_conflict_do_nothing(index_elements=["uri", "val", "cts"])
            )
            result = session.execute(stmt)
            return bool(result.rowcount)

    def find_by_uri(self, uri: str) -> Sequence[LabelEvent]:
        with self._session() as session:
            stmt = select(LabelEvent).where(LabelEvent.uri == uri).order_by(LabelEvent.cts)
            return session.execute(stmt).scalars().all()

    def find_by_value(self, val: str) -> Sequence[LabelEvent]:
        with self._session() as session:
            stmt = select(LabelEvent).where(LabelEvent.val == val).order_by(LabelEvent.cts.desc())
            return session.execute(stmt).scalars().all()

    def count(self) -> int:
        with self._session() as session:
            return int(session.execute(select(func.count()).select_from(LabelEvent)).scalar_one())
