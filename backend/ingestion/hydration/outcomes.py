"""Hydration outcomes and failure bookkeeping shared by both hydrators."""

from __future__ import annotations

import logging
from enum import Enum
from typing import Optional

from ingestion.core.structured_log import log_event
from store.repositories.failures_repo import HydrationFailuresRepository

logger = logging.getLogger(__name__)


class HydrationOutcome(str, Enum):
    HYDRATED = "hydrated"
    SKIPPED = "skipped"
    PARTIAL = "partial"
    NOT_FOUND = "not_found"
    INVALID = "invalid"


def record_skip(
    failures: Optional[HydrationFailuresRepository],
    *,
    kind: str,
    subject: str,
    reason: str,
    detail: str,
    identifier: Optional[str] = None,
) -> None:
    """Structured log line plus a hydration_failures row for every skip."""
    log_event(
        logger,
        "hydration_skipped",
        logging.WARNING,
        kind=kind,
        subject=subject,
        identifier=identifier,
        reason=reason,
        detail=detail,
    )
    if failures is not None:
        failures.record(kind=kind, subject=subject, identifier=identifier, reason=reason, detail=detail)
