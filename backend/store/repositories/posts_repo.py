"""Posts repository."""

from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any, Optional, Sequence

from sqlalchemy import select

from store.models.post import Post
from store.repositories.base import BaseRepository


@dataclass(frozen=True, slots=True)
class PostRow:
    uri: str
    did: str
    text: Optional[str] = None
    facets: Optional[Any] = None
    embeds: Optional[Any] = None
    langs: Optional[list[str]] = None
    tags: Optional[list[str]] = None
    created_at: Optional[datetime] = None
    is_reply: bool = False


class PostsRepository(BaseRepository[Post]):
    def upsert(self, row: PostRow) -> None:
        values = asdict(row)
        with self._transaction() as session:
            stmt = self._insert(session, Post.__table__).values(**values)
            stmt = stmt.on_conflict_do_update(
                index_elements=["uri"],
                set_={
                    "text": stmt.excluded.text,
                    "facets": stmt.excluded.facets,
                    "embeds": stmt.excluded.embeds,
                    "langs": stmt.excluded.langs,
                    "tags": stmt.excluded.tags,
                },
            )
            session.execute(stmt)

    def find_by_uri(self, uri: str) -> Optional[Post]:
        with self._session() as session:
            return session.get(Post, uri)

    def exists(self, uri: str) -> bool:
        with self._session() as session:
            return session.execute(select(Post.uri).where(Post.uri == uri).limit(1)).scalar_one_or_none() is not None

    def find_by_did(self, did: str, *, limit: int = 100) -> Sequence[Post]:
        with self._session() as session:
            stmt = select(Post).where(Post.did == did).order_by(Post.created_at.desc()).limit(limit)
            return session.execute(stmt).scalars().all()
