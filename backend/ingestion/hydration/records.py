"""Typed records decoded from getRecord / getProfile responses."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Mapping, Optional

from ingestion.blobs.references import BlobReference, blob_reference, extract_blob_references
from ingestion.core.decoder import parse_timestamp
from ingestion.core.errors import DecodeError

POST_COLLECTION = "app.bsky.feed.post"
PROFILE_COLLECTION = "app.bsky.actor.profile"
PROFILE_RKEY = "self"


def split_at_uri(uri: str) -> list[str]:
    return uri[len("at://"):].split("/") if uri.startswith("at://") else []


def parse_post_uri(uri: str) -> tuple[str, str, str]:
    """`at://<did>/<collection>/<rkey>` -> (did, collection, rkey)."""
    parts = split_at_uri(uri)
    if len(parts) != 3 or not all(parts):
        raise ValueError(f"Invalid post URI: {uri!r}")
    return parts[0], parts[1], parts[2]


def _str_list(value: Any) -> Optional[list[str]]:
    if not isinstance(value, list):
        return None
    return [v for v in value if isinstance(v, str)]


@dataclass(frozen=True, slots=True)
class PostRecord:
    uri: str
    did: str
    text: str = ""
    facets: Optional[list[Any]] = None
    embeds: Optional[list[Any]] = None
    langs: Optional[list[str]] = None
    tags: Optional[list[str]] = None
    created_at: Optional[datetime] = None
    is_reply: bool = False
    blobs: tuple[BlobReference, ...] = field(default_factory=tuple)

    @classmethod
    def from_value(cls, uri: str, did: str, value: Mapping[str, Any]) -> "PostRecord":
        embed = value.get("embed")
        embeds = [embed] if isinstance(embed, dict) else None
        created_at = None
        if value.get("createdAt"):
            try:
                created_at = parse_timestamp(value["createdAt"])
            except DecodeError:
                created_at = None
        facets = value.get("facets")
        return cls(
            uri=uri,
            did=did,
            text=value.get("text") if isinstance(value.get("text"), str) else "",
            facets=facets if isinstance(facets, list) else None,
            embeds=embeds,
            langs=_str_list(value.get("langs")),
            tags=_str_list(value.get("tags")),
            created_at=created_at,
            is_reply=bool(value.get("reply")),
            blobs=tuple(extract_blob_references(embeds)),
        )


@dataclass(frozen=True, slots=True)
class ProfileRecord:
    """The self-authored `app.bsky.actor.profile/self` record."""

    display_name: Optional[str] = None
    description: Optional[str] = None
    avatar: Optional[BlobReference] = None
    banner: Optional[BlobReference] = None

    @classmethod
    def from_value(cls, value: Mapping[str, Any]) -> "ProfileRecord":
        return cls(
            display_name=value.get("displayName") if isinstance(value.get("displayName"), str) else None,
            description=value.get("description") if isinstance(value.get("description"), str) else None,
            avatar=blob_reference(value.get("avatar")),
            banner=blob_reference(value.get("banner")),
        )
