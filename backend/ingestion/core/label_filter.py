"""Allow-list filter over label values."""

from __future__ import annotations

import logging
from typing import Iterable, Optional, Sequence

from ingestion.core.decoder import LabelEvent

logger = logging.getLogger(__name__)


class LabelFilter:
    """Capture everything when no allow-list is configured."""

    def __init__(self, allowed: Optional[Iterable[str]] = None) -> None:
        values = {v.strip() for v in (allowed or ()) if v and v.strip()}
        self._allowed: Optional[frozenset[str]] = frozenset(values) if values else None
        if self._allowed is None:
            logger.info("Label filter disabled: capturing all labels")
        else:
            logger.info(f"Label filter enabled: {sorted(self._allowed)}")

    @property
    def enabled(self) -> bool:
        return self._allowed is not None

    def filtered_labels(self) -> Optional[list[str]]:
        """The configured allow-list, or None when capturing everything."""
        return sorted(self._allowed) if self._allowed is not None else None

    def should_capture(self, label: LabelEvent) -> bool:
        return self._allowed is None or label.val in self._allowed

    def apply(self, labels: Sequence[LabelEvent]) -> list[LabelEvent]:
        kept = [label for label in labels if self.should_capture(label)]
        dropped = len(labels) - len(kept)
        if dropped:
            logger.debug(f"Filtered out {dropped} of {len(labels)} labels")
        return kept
