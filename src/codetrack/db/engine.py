"""
SQLModel engine singleton.

The engine is created lazily on the first get_engine() call and lives for the
rest of the process. dispose_engine() releases its connection pool and clears
the singleton so the next get_engine() call starts fresh (used on shutdown and
by scripts that switch DATABASE_URL).
"""
from sqlmodel import SQLModel, create_engine

from codetrack.config import get_settings

_engine = None


def get_engine():
    """Return the module-level engine, creating it on first call."""
    global _engine
    if _engine is None:
        settings = get_settings()
        connect_args = {}
        if settings.database_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False  # SQLite only; safe for FastAPI
        _engine = create_engine(settings.database_url, connect_args=connect_args)
        # Import all models so metadata is populated before create_all
        from codetrack.models.integration import GitLabIntegration, SyncErrorEntry, TrackedRepository  # noqa
        from codetrack.models.activity import ActivityRecord  # noqa
        from codetrack.models.sync import SyncLog  # noqa
        SQLModel.metadata.create_all(_engine)
    return _engine


def dispose_engine() -> None:
    """Close pooled connections and forget the engine."""
    global _engine
    if _engine is not None:
        _engine.dispose()
        _engine = None

