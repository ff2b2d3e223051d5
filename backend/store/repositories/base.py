"""Repository base.

- Repositories are the only layer that talks to the database.
- Writes are insert-ignore or upsert only; nothing here deletes rows.
- Each call runs in its own short session/transaction.
"""

from __future__ import annotations

from contextlib import contextmanager
from typing import Any, Generic, Iterator, TypeVar

from sqlalchemy import Table
from sqlalchemy.orm import Session, sessionmaker


class RepositoryError(RuntimeError):
    """Raised when the store cannot perform a requested write."""


T = TypeVar("T")


class BaseRepository(Generic[T]):
    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self._session_factory = session_factory

    @contextmanager
    def _session(self) -> Iterator[Session]:
        with self._session_factory() as session:
            yield session

    @contextmanager
    def _transaction(self) -> Iterator[Session]:
        with self._session_factory() as session:
            with session.begin():
                yield session

    @staticmethod
    def _insert(session: Session, table: Table) -> Any:
        """Dialect-specific INSERT supporting ON CONFLICT clauses."""
        dialect = session.get_bind().dialect.name
        if dialect == "postgresql":
            from sqlalchemy.dialects.postgresql import insert
        elif dialect == "sqlite":
            from sqlalchemy.dialects.sqlite import insert
        else:
            raise RepositoryError(f"Unsupported database dialect for upserts: {dialect!r}")
        return insert(table)
