"""Blob storage backend interface."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Optional


def shard_prefix(cid: str) -> tuple[str, str]:
    return cid[:2], cid[2:4]


class BlobStorage(ABC):
    """Persists and retrieves blob bytes by CID."""

    @abstractmethod
    async def store(self, cid: str, data: bytes, mimetype: Optional[str] = None) -> str:
        """Persist `data`; returns the storage locator recorded on the blob row."""

    @abstractmethod
    async def retrieve(self, cid: str) -> Optional[bytes]:
        """Bytes for `cid`, or None when not stored."""
