"""Content fingerprints.

sha256 covers the exact bytes. The similarity fingerprint is an 8x8 average
hash (16 hex chars) computed only for raster images.
"""

from __future__ import annotations

import hashlib
import io
import logging
from dataclasses import dataclass
from typing import Optional

from PIL import Image, UnidentifiedImageError

logger = logging.getLogger(__name__)

PHASH_SIZE = 8


class PerceptualHashError(ValueError):
    pass


@dataclass(frozen=True, slots=True)
class BlobHashes:
    sha256: str
    phash: Optional[str] = None


def compute_sha256(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def supports_phash(mimetype: Optional[str]) -> bool:
    if not mimetype:
        return False
    mimetype = mimetype.lower()
    return mimetype.startswith("image/") and "svg" not in mimetype


def compute_perceptual_hash(data: bytes) -> str:
    try:
        with Image.open(io.BytesIO(data)) as image:
            width, height = image.size
            if not width or not height:
                raise PerceptualHashError("Image has no dimensions")
            small = image.convert("L").resize((PHASH_SIZE, PHASH_SIZE), Image.Resampling.LANCZOS)
            pixels = list(small.tobytes())
    except (UnidentifiedImageError, OSError) as e:
        raise PerceptualHashError(f"Cannot decode image: {e}") from e

    average = sum(pixels) / len(pixels)
    bits = 0
    for value in pixels:
        bits = (bits << 1) | (1 if value > average else 0)
    return f"{bits:016x}"


def compute_blob_hashes(data: bytes, mimetype: Optional[str] = None) -> BlobHashes:
    sha256 = compute_sha256(data)
    if not supports_phash(mimetype):
        return BlobHashes(sha256=sha256)
    try:
        return BlobHashes(sha256=sha256, phash=compute_perceptual_hash(data))
    except PerceptualHashError as e:
        logger.warning(f"Failed to compute phash ({mimetype}); keeping sha256 only: {e}")
        return BlobHashes(sha256=sha256)


class StreamingSha256:
    """Incremental sha256 over a streamed blob; bytes are not retained."""

    def __init__(self) -> None:
        self._digest = hashlib.sha256()
        self.size = 0

    def update(self, data: bytes) -> None:
        self._digest.update(data)
        self.size += len(data)

    def hexdigest(self) -> str:
        return self._digest.hexdigest()
