"""Blob references embedded in atproto records."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterable, Optional


@dataclass(frozen=True, slots=True)
class BlobReference:
    cid: str
    mimetype: Optional[str] = None
    size: Optional[int] = None

    @property
    def is_image(self) -> bool:
        return bool(self.mimetype) and self.mimetype.lower().startswith("image/")


def cid_of(blob: Any) -> Optional[str]:
    """CID of a blob object: `{ref: {$link}}`, a CID-like ref, or legacy `{cid}`."""
    if not isinstance(blob, dict):
        return None
    ref = blob.get("ref")
    if isinstance(ref, dict):
        link = ref.get("$link")
        return link if isinstance(link, str) and link else None
    if isinstance(ref, str) and ref:
        return ref
    if ref is not None:
        text = str(ref)
        return text or None
    legacy = blob.get("cid")
    return legacy if isinstance(legacy, str) and legacy else None


def blob_reference(blob: Any) -> Optional[BlobReference]:
    cid = cid_of(blob)
    if cid is None:
        return None
    size = blob.get("size")
    return BlobReference(
        cid=cid,
        mimetype=blob.get("mimeType"),
        size=size if isinstance(size, int) else None,
    )


def _images(container: Any) -> Iterable[Any]:
    if not isinstance(container, dict):
        return ()
    images = container.get("images")
    if not isinstance(images, list):
        return ()
    return (img.get("image") for img in images if isinstance(img, dict))


def _media_blobs(container: Any) -> Iterable[Any]:
    if not isinstance(container, dict):
        return
    yield from _images(container)
    video = container.get("video")
    if video is not None:
        yield video
    external = container.get("external")
    if isinstance(external, dict) and external.get("thumb") is not None:
        yield external["thumb"]


def extract_blob_references(embeds: Any) -> list[BlobReference]:
    """Blob refs from a list of embeds: images, record-with-media, video, external thumbs.

    Order is preserved and duplicates are kept; callers dedup by cid.
    """
    if isinstance(embeds, dict):
        embeds = [embeds]
    if not isinstance(embeds, list):
        return []
    refs: list[BlobReference] = []
    for embed in embeds:
        if not isinstance(embed, dict):
            continue
        blobs = list(_media_blobs(embed)) + list(_media_blobs(embed.get("media")))
        for blob in blobs:
            ref = blob_reference(blob)
            if ref is not None:
                refs.append(ref)
    return refs
