"""Ingestion core primitives.

Stream side (decode, filter, cursor, connector) and the outbound call
discipline (rate limiter, retry, atproto client) shared by hydration.
"""

from ingestion.core.cursor_store import CursorStore, DatabaseCursorStore, FileCursorStore
from ingestion.core.decoder import FirehoseMessage, LabelEvent, StreamDecoder
from ingestion.core.label_filter import LabelFilter
from ingestion.core.rate_limiter import RateLimiter
from ingestion.core.retry import RetryPolicy, is_network_error, is_rate_limit_error, is_server_error

__all__ = [
    "CursorStore",
    "DatabaseCursorStore",
    "FileCursorStore",
    "FirehoseMessage",
    "LabelEvent",
    "StreamDecoder",
    "LabelFilter",
    "RateLimiter",
    "RetryPolicy",
    "is_network_error",
    "is_rate_limit_error",
    "is_server_error",
]
