"""Cursor persistence.

The cursor is the last stream sequence whose labels were all handed
downstream. It only moves forward, and a partially written value must never
replace the committed one.
"""

from __future__ import annotations

import logging
import os
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional, Union

from store.repositories.cursor_repo import StreamCursorRepository

logger = logging.getLogger(__name__)


class CursorStore(ABC):
    @abstractmethod
    def load(self) -> Optional[int]:
        """Return the committed cursor, or None when starting fresh."""

    @abstractmethod
    def save(self, seq: int) -> bool:
        """Commit `seq`; returns False when it was ignored."""


class FileCursorStore(CursorStore):
    """Plain-text cursor file replaced atomically on every write."""

    def __init__(self, path: Union[str, Path]) -> None:
        self._path = Path(path)
        self._committed: Optional[int] = None

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> Optional[int]:
        try:
            raw = self._path.read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            logger.info(f"No cursor file at {self._path}; starting from live stream")
            return None
        if not raw:
            return None
        try:
            seq = int(raw)
        except ValueError:
            logger.warning(f"Ignoring unreadable cursor file {self._path}: {raw[:32]!r}")
            return None
        self._committed = seq
        logger.info(f"Loaded cursor {seq} from {self._path}")
        return seq

    def save(self, seq: int) -> bool:
        if self._committed is not None and seq < self._committed:
            logger.debug(f"Ignoring cursor {seq} below committed {self._committed}")
            return False
        self._path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=".cursor-", dir=str(self._path.parent))
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                fh.write(str(seq))
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp_name, self._path)
        except BaseException:
            try:
                os.unlink(tmp_name)
            except FileNotFoundError:
                pass
            raise
        self._committed = seq
        return True


class DatabaseCursorStore(CursorStore):
    """One `stream_cursors` row per endpoint."""

    def __init__(self, repo: StreamCursorRepository, endpoint: str) -> None:
        self._repo = repo
        self._endpoint = endpoint

    def load(self) -> Optional[int]:
        seq = self._repo.get(self._endpoint)
        if seq is None:
            logger.info(f"No stored cursor for {self._endpoint}; starting from live stream")
        else:
            logger.info(f"Loaded cursor {seq} for {self._endpoint}")
        return seq

    def save(self, seq: int) -> bool:
        saved = self._repo.save(self._endpoint, seq)
        if not saved:
            logger.debug(f"Ignoring cursor {seq} for {self._endpoint}: below committed value")
        return saved
