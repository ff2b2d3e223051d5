"""SQLAlchemy models package.

All ORM classes are imported here so mapper configuration and
`Base.metadata` are complete regardless of import order.
"""

from store.models import (  # noqa: F401
    blob,
    hydration_failure,
    label_event,
    post,
    profile,
    profile_blob,
    stream_cursor,
)
