from __future__ import annotations

"""Label stream entry point: subscribe -> decode -> filter -> store label -> hydrate.

- Runs until SIGINT/SIGTERM.
- Shutdown stops the stream first (cursor stays at the last committed frame),
  then lets the in-flight hydration task finish.
- Configuration errors exit with status 1.

Run:
  python ingestion/jobs/run_firehose.py
  skywatch-tail
"""

import asyncio
import json
import logging
import signal
import sys
from datetime import datetime, timezone
from pathlib import Path

# Ensure `backend/` is on sys.path so `import store...` works when run from repo root.
BASE_DIR = Path(__file__).resolve().parents[2]
if str(BASE_DIR) not in sys.path:
    sys.path.insert(0, str(BASE_DIR))

from ingestion.blobs.processor import BlobProcessor  # noqa: E402
from ingestion.blobs.storage import create_storage  # noqa: E402
from ingestion.core.atproto_client import AtprotoClient  # noqa: E402
from ingestion.core.cursor_store import CursorStore, DatabaseCursorStore, FileCursorStore  # noqa: E402
from ingestion.core.errors import AuthenticationError  # noqa: E402
from ingestion.core.label_filter import LabelFilter  # noqa: E402
from ingestion.core.observer import CountingObserver  # noqa: E402
from ingestion.core.pipeline import HydrationRouter, LabelPipeline  # noqa: E402
from ingestion.core.rate_limiter import RateLimiter  # noqa: E402
from ingestion.core.retry import RetryPolicy  # noqa: E402
from ingestion.core.stream_connector import StreamConnector  # noqa: E402
from ingestion.core.structured_log import configure_logging  # noqa: E402
from ingestion.hydration.posts_service import PostHydrationService  # noqa: E402
from ingestion.hydration.profiles_service import ProfileHydrationService  # noqa: E402
from ingestion.hydration.queue import HydrationDispatcher  # noqa: E402
from store.core.config import ConfigurationError, Settings, load_settings  # noqa: E402
from store.core.db import create_db_engine, create_session_factory, init_schema  # noqa: E402
from store.repositories.blobs_repo import BlobsRepository, ProfileBlobsRepository  # noqa: E402
from store.repositories.cursor_repo import StreamCursorRepository  # noqa: E402
from store.repositories.failures_repo import HydrationFailuresRepository  # noqa: E402
from store.repositories.labels_repo import LabelsRepository  # noqa: E402
from store.repositories.posts_repo import PostsRepository  # noqa: E402
from store.repositories.profiles_repo import ProfilesRepository  # noqa: E402


UTC = timezone.utc
logger = logging.getLogger("skywatch.firehose")


def _log(event: dict) -> None:
    # Structured logs only; never log credentials or blob bytes.
    logger.info(json.dumps(event, ensure_ascii=False))


def _cursor_store(settings: Settings, session_factory) -> CursorStore:
    if settings.cursor_backend == "database":
        return DatabaseCursorStore(StreamCursorRepository(session_factory), settings.wss_url)
    return FileCursorStore(settings.cursor_path)


async def run(settings: Settings) -> int:
    engine = create_db_engine(settings.database_url)
    init_schema(engine)
    session_factory = create_session_factory(engine)

    labels = LabelsRepository(session_factory)
    posts = PostsRepository(session_factory)
    profiles = ProfilesRepository(session_factory)
    failures = HydrationFailuresRepository(session_factory)

    limiter = RateLimiter(
        max_calls=settings.rate_limit_max_calls,
        window_seconds=settings.rate_limit_window_seconds,
        concurrency=settings.rate_limit_concurrency,
        max_delay=settings.rate_limit_max_delay_seconds,
    )
    retry = RetryPolicy(max_attempts=settings.retry_max_attempts)
    client = AtprotoClient(
        limiter=limiter,
        retry=retry,
        pds=settings.pds,
        plc_directory_url=settings.plc_directory_url,
        identifier=settings.bsky_handle,
        password=settings.bsky_password,
    )

    observer = CountingObserver()
    started_at = datetime.now(tz=UTC).isoformat()
    try:
        try:
            await client.login()
        except AuthenticationError as e:
            logger.error(f"Login failed: {e}")
            return 1

        storage = create_storage(settings) if settings.hydrate_blobs else None
        blob_processor = BlobProcessor(
            client,
            BlobsRepository(session_factory),
            ProfileBlobsRepository(session_factory),
            failures,
            storage,
            hydrate_blobs=settings.hydrate_blobs,
        )
        router = HydrationRouter(
            PostHydrationService(client, posts, blob_processor, failures),
            ProfileHydrationService(client, profiles, blob_processor, failures),
        )
        dispatcher = HydrationDispatcher(router, observer=observer)
        pipeline = LabelPipeline(labels, posts, profiles, failures, dispatcher)
        connector = StreamConnector(
            settings.wss_url,
            handler=pipeline.handle_label,
            cursor_store=_cursor_store(settings, session_factory),
            label_filter=LabelFilter(settings.capture_labels),
            observer=observer,
        )

        _log(
            {
                "event": "firehose_start",
                "ts": started_at,
                "wss_url": settings.wss_url,
                "capture_labels": settings.capture_labels,
                "hydrate_blobs": settings.hydrate_blobs,
                "blob_storage": settings.blob_storage_type if settings.hydrate_blobs else None,
                "cursor_backend": settings.cursor_backend,
            }
        )

        stop = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, stop.set)
            except NotImplementedError:
                # Windows: KeyboardInterrupt still reaches asyncio.run.
                pass

        await dispatcher.start()
        await connector.start()
        await stop.wait()

        logger.info("Shutdown requested; stopping stream")
        await connector.stop()
        await dispatcher.stop()

        _log(
            {
                "event": "firehose_summary",
                "started_at": started_at,
                "finished_at": datetime.now(tz=UTC).isoformat(),
                "cursor": connector.cursor,
                **pipeline.stats.as_dict(),
                "tasks_completed": dispatcher.completed,
                "tasks_failed": dispatcher.failed,
                "events": observer.snapshot(),
            }
        )
        return 0
    finally:
        await client.close()
        engine.dispose()


def main() -> int:
    try:
        settings = load_settings()
    except ConfigurationError as e:
        logging.basicConfig(level=logging.ERROR, format="%(message)s")
        logger.error(str(e))
        return 1

    configure_logging(settings.log_level)
    try:
        return asyncio.run(run(settings))
    except ConfigurationError as e:
        logger.error(str(e))
        return 1
    except KeyboardInterrupt:
        return 0


if __name__ == "__main__":
    raise SystemExit(main())
