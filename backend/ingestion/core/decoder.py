"""Label stream frame decoder.

Frames from `com.atproto.label.subscribeLabels` are two concatenated CBOR
objects: a header `{op, t}` and a body. Only `op == 1` frames of type
`#labels` carry label events; anything else decodes to zero labels.
"""

from __future__ import annotations

import io
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Mapping, Optional, Union

import cbor2

from ingestion.core.errors import DecodeError

logger = logging.getLogger(__name__)

UTC = timezone.utc

OP_MESSAGE = 1
OP_ERROR = -1
LABELS_TYPE = "#labels"
INFO_TYPE = "#info"
MAX_VALUE_LENGTH = 128
REQUIRED_FIELDS = ("src", "uri", "val", "cts")


def parse_timestamp(value: Any) -> datetime:
    """Parse an atproto datetime string into an aware UTC datetime."""
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, str):
        text = value.strip()
        if text.endswith(("Z", "z")):
            text = text[:-1] + "+00:00"
        try:
            dt = datetime.fromisoformat(text)
        except ValueError as e:
            raise DecodeError(f"Invalid timestamp: {value!r}") from e
    else:
        raise DecodeError(f"Invalid timestamp type: {type(value).__name__}")
    if dt.tzinfo is None or dt.utcoffset() is None:
        return dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC)


@dataclass(frozen=True, slots=True)
class LabelEvent:
    """A single label assertion as emitted by the labeler."""

    src: str
    uri: str
    val: str
    cts: str
    cid: Optional[str] = None
    neg: bool = False
    exp: Optional[str] = None
    sig: Optional[bytes] = None
    ver: Optional[int] = None

    @classmethod
    def from_wire(cls, raw: Mapping[str, Any]) -> "LabelEvent":
        sig = raw.get("sig")
        return cls(
            src=str(raw["src"]),
            uri=str(raw["uri"]),
            val=str(raw["val"]),
            cts=str(raw["cts"]),
            cid=str(raw["cid"]) if raw.get("cid") else None,
            neg=bool(raw.get("neg", False)),
            exp=str(raw["exp"]) if raw.get("exp") else None,
            sig=bytes(sig) if isinstance(sig, (bytes, bytearray)) else None,
            ver=raw.get("ver") if isinstance(raw.get("ver"), int) else None,
        )

    @property
    def created_at(self) -> datetime:
        return parse_timestamp(self.cts)

    @property
    def expires_at(self) -> Optional[datetime]:
        return parse_timestamp(self.exp) if self.exp else None


@dataclass(frozen=True, slots=True)
class FirehoseMessage:
    op: int
    type: Optional[str] = None
    seq: Optional[int] = None
    labels: tuple[LabelEvent, ...] = field(default_factory=tuple)
    error: Optional[str] = None


def validate_label(raw: Any) -> bool:
    """Check a wire label before it is turned into a LabelEvent."""
    if not isinstance(raw, Mapping):
        logger.warning("Invalid label: not a mapping")
        return False
    missing = [f for f in REQUIRED_FIELDS if not raw.get(f)]
    if missing:
        logger.warning(f"Invalid label: missing required fields {missing} (uri={raw.get('uri')!r})")
        return False
    if len(str(raw["val"])) > MAX_VALUE_LENGTH:
        logger.warning(f"Invalid label: val longer than {MAX_VALUE_LENGTH} chars (uri={raw.get('uri')!r})")
        return False
    try:
        parse_timestamp(raw["cts"])
        if raw.get("exp"):
            parse_timestamp(raw["exp"])
    except DecodeError as e:
        logger.warning(f"Invalid label: {e} (uri={raw.get('uri')!r})")
        return False
    return True


def extract_labels(body: Mapping[str, Any]) -> list[LabelEvent]:
    """Return every valid label carried by a frame body."""
    raw_labels = body.get("labels")
    if raw_labels is None and body.get("label") is not None:
        raw_labels = [body["label"]]
    if not isinstance(raw_labels, list):
        return []
    return [LabelEvent.from_wire(raw) for raw in raw_labels if validate_label(raw)]


def _seq_of(body: Mapping[str, Any]) -> Optional[int]:
    seq = body.get("seq")
    if isinstance(seq, bool):
        return None
    if isinstance(seq, int):
        return seq
    if isinstance(seq, str) and seq.isdigit():
        return int(seq)
    return None


class StreamDecoder:
    """Turns raw frames into FirehoseMessage values."""

    def decode(self, frame: Union[bytes, bytearray, memoryview, str]) -> FirehoseMessage:
        if isinstance(frame, str):
            return self._decode_json(frame)
        return self._decode_cbor(bytes(frame))

    def _decode_cbor(self, data: bytes) -> FirehoseMessage:
        stream = io.BytesIO(data)
        try:
            decoder = cbor2.CBORDecoder(stream)
            header = decoder.decode()
            body = decoder.decode() if stream.tell() < len(data) else {}
        except (cbor2.CBORDecodeError, EOFError, ValueError) as e:
            raise DecodeError(f"Failed to decode CBOR frame ({len(data)} bytes): {e}") from e

        if not isinstance(header, Mapping) or not isinstance(body, Mapping):
            raise DecodeError("Malformed frame: header and body must be maps")

        op = header.get("op")
        if op == OP_ERROR:
            error = f"{body.get('error')}: {body.get('message')}"
            logger.error(f"Stream error frame: {error}")
            return FirehoseMessage(op=OP_ERROR, error=error)
        if op != OP_MESSAGE:
            raise DecodeError(f"Malformed frame: unknown op {op!r}")

        msg_type = header.get("t")
        seq = _seq_of(body)
        if msg_type == INFO_TYPE:
            logger.info(f"Stream info frame: {body.get('name')} {body.get('message') or ''}".rstrip())
            return FirehoseMessage(op=OP_MESSAGE, type=msg_type, seq=seq)
        if msg_type != LABELS_TYPE:
            logger.debug(f"Ignoring frame type {msg_type!r}")
            return FirehoseMessage(op=OP_MESSAGE, type=msg_type, seq=seq)

        return FirehoseMessage(op=OP_MESSAGE, type=msg_type, seq=seq, labels=tuple(extract_labels(body)))

    def _decode_json(self, text: str) -> FirehoseMessage:
        try:
            body = json.loads(text)
        except json.JSONDecodeError as e:
            raise DecodeError(f"Failed to decode JSON frame: {e}") from e
        if not isinstance(body, Mapping):
            raise DecodeError("Malformed JSON frame: expected an object")
        return FirehoseMessage(
            op=OP_MESSAGE,
            type=body.get("$type") or body.get("t"),
            seq=_seq_of(body),
            labels=tuple(extract_labels(body)),
        )
