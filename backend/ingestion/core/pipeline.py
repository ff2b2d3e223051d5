"""Label pipeline: persist each accepted label, then queue hydration for its subject.

- Labels are insert-ignore on (uri, val, cts), so a replayed frame stores nothing twice.
- Subjects are routed by shape: `at://did/collection/rkey` is a post,
  a bare DID (or `at://did`) is a profile. Anything else is only recorded.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from ingestion.core.decoder import LabelEvent
from ingestion.core.structured_log import log_event
from ingestion.hydration.outcomes import HydrationOutcome
from ingestion.hydration.posts_service import PostHydrationService
from ingestion.hydration.profiles_service import ProfileHydrationService
from ingestion.hydration.queue import HydrationDispatcher, HydrationTask, TaskKind
from store.models.profile import MAX_HYDRATION_PASSES
from store.repositories.failures_repo import HydrationFailuresRepository
from store.repositories.labels_repo import LabelRow, LabelsRepository
from store.repositories.posts_repo import PostsRepository
from store.repositories.profiles_repo import ProfilesRepository

logger = logging.getLogger(__name__)


def classify_subject(uri: str) -> Optional[HydrationTask]:
    if uri.startswith("at://"):
        parts = uri[len("at://"):].split("/")
        if len(parts) == 3 and all(parts):
            return HydrationTask(TaskKind.POST, uri)
        if len(parts) == 1 and parts[0].startswith("did:"):
            return HydrationTask(TaskKind.PROFILE, parts[0])
        return None
    if uri.startswith("did:"):
        return HydrationTask(TaskKind.PROFILE, uri)
    return None


@dataclass
class PipelineStats:
    labels_received: int = 0
    labels_inserted: int = 0
    labels_duplicate: int = 0
    tasks_enqueued: int = 0
    unroutable: int = 0

    def as_dict(self) -> dict[str, int]:
        return {
            "labels_received": self.labels_received,
            "labels_inserted": self.labels_inserted,
            "labels_duplicate": self.labels_duplicate,
            "tasks_enqueued": self.tasks_enqueued,
            "unroutable": self.unroutable,
        }


class LabelPipeline:
    def __init__(
        self,
        labels: LabelsRepository,
        posts: PostsRepository,
        profiles: ProfilesRepository,
        failures: HydrationFailuresRepository,
        dispatcher: Optional[HydrationDispatcher] = None,
    ) -> None:
        self._labels = labels
        self._posts = posts
        self._profiles = profiles
        self._failures = failures
        self._dispatcher = dispatcher
        self.stats = PipelineStats()

    def attach(self, dispatcher: HydrationDispatcher) -> None:
        self._dispatcher = dispatcher

    def needs_hydration(self, task: HydrationTask) -> bool:
        if self._failures.has_terminal_failure(task.subject):
            return False
        if task.kind is TaskKind.POST:
            return not self._posts.exists(task.subject)
        profile = self._profiles.find_by_did(task.subject)
        if profile is None:
            return True
        if profile.is_complete():
            return False
        return profile.hydration_passes < MAX_HYDRATION_PASSES

    async def handle_label(self, label: LabelEvent) -> None:
        """Label handler for the stream connector. Raising here recycles the connection."""
        self.stats.labels_received += 1
        inserted = self._labels.insert(
            LabelRow(
                uri=label.uri,
                val=label.val,
                cts=label.created_at,
                src=label.src,
                cid=label.cid,
                neg=label.neg,
                exp=label.expires_at,
            )
        )
        if inserted:
            self.stats.labels_inserted += 1
            logger.info(f"Label stored: {label.val} on {label.uri}{' (negation)' if label.neg else ''}")
        else:
            self.stats.labels_duplicate += 1
            logger.debug(f"Duplicate label ignored: {label.val} on {label.uri} at {label.cts}")

        task = classify_subject(label.uri)
        if task is None:
            self.stats.unroutable += 1
            log_event(logger, "label_unroutable", logging.DEBUG, uri=label.uri, val=label.val)
            return
        if self._dispatcher is not None and self.needs_hydration(task) and self._dispatcher.enqueue(task):
            self.stats.tasks_enqueued += 1


class HydrationRouter:
    """Dispatcher handler: runs the hydrator matching the task kind."""

    def __init__(self, posts: PostHydrationService, profiles: ProfileHydrationService) -> None:
        self._posts = posts
        self._profiles = profiles

    async def __call__(self, task: HydrationTask) -> None:
        if task.kind is TaskKind.POST:
            outcome = await self._posts.hydrate(task.subject)
        else:
            outcome = await self._profiles.hydrate(task.subject)
        if outcome is not HydrationOutcome.HYDRATED:
            logger.debug(f"{task.kind.value} {task.subject}: {outcome.value}")
