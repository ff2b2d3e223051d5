"""Structured log lines.

Counters and lifecycle events are emitted as one JSON object per line so they
can be grepped and aggregated. Never put record bodies or credentials here.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Any


def _default(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, (set, frozenset, tuple)):
        return list(value)
    return str(value)


def log_event(logger: logging.Logger, event: str, level: int = logging.INFO, **fields: Any) -> None:
    if not logger.isEnabledFor(level):
        return
    payload = {"event": event, "ts": datetime.now(tz=timezone.utc).isoformat(), **fields}
    logger.log(level, json.dumps(payload, ensure_ascii=False, default=_default))


def configure_logging(level: str = "INFO") -> None:
    """Attach a plain message handler to the root logger if none is set."""
    root = logging.getLogger()
    if not root.handlers:
        logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s %(message)s")
    root.setLevel(level)
