"""Pipeline lifecycle events.

The connector and the dispatcher report a fixed set of events to a single
observer callable. Observers must be fast and must not raise.
"""

from __future__ import annotations

import logging
from collections import Counter
from enum import Enum
from typing import Any, Callable, Mapping, Optional

logger = logging.getLogger(__name__)


class PipelineEvent(str, Enum):
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    LABEL_RECEIVED = "label_received"
    TASK_COMPLETED = "task_completed"


Observer = Callable[[PipelineEvent, Mapping[str, Any]], None]


def notify(observer: Optional[Observer], event: PipelineEvent, **details: Any) -> None:
    if observer is None:
        return
    try:
        observer(event, details)
    except Exception:
        logger.exception(f"Observer failed on {event.value}")


class CountingObserver:
    """Keeps per-event counters for the run summary."""

    def __init__(self) -> None:
        self.counts: Counter[str] = Counter()

    def __call__(self, event: PipelineEvent, details: Mapping[str, Any]) -> None:
        self.counts[event.value] += 1
        if event is PipelineEvent.TASK_COMPLETED and not details.get("ok", True):
            self.counts["task_failed"] += 1

    def snapshot(self) -> dict[str, int]:
        return dict(self.counts)
