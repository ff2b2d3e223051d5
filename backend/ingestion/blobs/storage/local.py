"""Local filesystem blob storage: <root>/<cid[0:2]>/<cid[2:4]>/<cid><ext>."""

from __future__ import annotations

import asyncio
import logging
import os
from pathlib import Path
from typing import Optional, Union

from ingestion.blobs.storage.base import BlobStorage, shard_prefix
from ingestion.core.errors import StorageError

logger = logging.getLogger(__name__)

EXTENSIONS = {
    "image/jpeg": ".jpg",
    "image/jpg": ".jpg",
    "image/png": ".png",
    "image/webp": ".webp",
    "image/gif": ".gif",
    "video/mp4": ".mp4",
    "video/webm": ".webm",
}
LOOKUP_EXTENSIONS = ("", ".jpg", ".jpeg", ".png", ".webp", ".gif", ".mp4", ".webm")


def extension_for(mimetype: Optional[str]) -> str:
    if not mimetype:
        return ""
    return EXTENSIONS.get(mimetype.split(";")[0].strip().lower(), "")


class LocalBlobStorage(BlobStorage):
    def __init__(self, base_path: Union[str, Path]) -> None:
        self._base = Path(base_path)

    def _dir(self, cid: str) -> Path:
        first, second = shard_prefix(cid)
        return self._base / first / second

    def _write(self, path: Path, data: bytes) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_name(f".{path.name}.part")
        try:
            with open(tmp, "wb") as fh:
                fh.write(data)
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp, path)
        except BaseException:
            try:
                os.unlink(tmp)
            except FileNotFoundError:
                pass
            raise

    async def store(self, cid: str, data: bytes, mimetype: Optional[str] = None) -> str:
        path = self._dir(cid) / f"{cid}{extension_for(mimetype)}"
        try:
            await asyncio.to_thread(self._write, path, data)
        except OSError as e:
            raise StorageError(f"Failed to store blob {cid} at {path}: {e}") from e
        logger.debug(f"Stored blob {cid} at {path}")
        return str(path)

    async def retrieve(self, cid: str) -> Optional[bytes]:
        directory = self._dir(cid)
        for ext in LOOKUP_EXTENSIONS:
            path = directory / f"{cid}{ext}"
            if path.is_file():
                return await asyncio.to_thread(path.read_bytes)
        logger.warning(f"Blob {cid} not found in local storage")
        return None
