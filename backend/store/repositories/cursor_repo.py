"""Stream cursor repository."""

from __future__ import annotations

from typing import Optional

from store.models.stream_cursor import StreamCursor
from store.repositories.base import BaseRepository


class StreamCursorRepository(BaseRepository[StreamCursor]):
    def get(self, endpoint: str) -> Optional[int]:
        with self._session() as session:
            row = session.get(StreamCursor, endpoint)
            return None if row is None else int(row.seq)

    def save(self, endpoint: str, seq: int) -> bool:
        """Commit `seq` unless it would move the cursor backwards."""
        with self._transaction() as session:
            row = session.get(StreamCursor, endpoint)
            if row is None:
                session.add(StreamCursor(endpoint=endpoint, seq=seq))
                return True
            if seq < row.seq:
                return False
            row.seq = seq
            return True
