"""
APScheduler jobs for background sync.

The nightly job runs an incremental sync for every active integration, one
user at a time with a short pause between users to stay under GitLab's
per-token rate limits. Each user's per-project phase is capped at
SCHEDULED_SYNC_TIMEOUT_SECONDS; projects past the cap are reported as errors.
"""
import logging
from datetime import datetime

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from codetrack.config import get_settings

logger = logging.getLogger(__name__)


def build_scheduler(engine) -> AsyncIOScheduler:
    """
    Create and configure the APScheduler.

    Args:
        engine: SQLAlchemy engine to pass to the sync service.

    Returns:
        Configured AsyncIOScheduler (not yet started).
    """
    settings = get_settings()
    scheduler = AsyncIOScheduler()

    scheduler.add_job(
        _nightly_sync,
        trigger="cron",
        hour=settings.scheduled_sync_hour,
        minute=0,
        id="nightly_sync",
        replace_existing=True,
        kwargs={"engine": engine},
    )

    return scheduler


async def _nightly_sync(engine) -> None:
    """Nightly job: incremental sync for all active integrations. Never raises."""
    from codetrack.gitlab.client import GitLabClient
    from codetrack.gitlab.store import IntegrationStore
    from codetrack.gitlab.sync_service import GitLabSyncService
    from codetrack.gitlab.tokens import TokenManager
    from codetrack.gitlab.vault import get_vault

    settings = get_settings()
    logger.info("Nightly sync starting at %s", datetime.utcnow().isoformat())

    try:
        async with GitLabClient() as client:
            tokens = TokenManager(IntegrationStore(engine), get_vault(), client)
            service = GitLabSyncService(client, engine, tokens)
            summary = await service.sync_all_active(
                deadline_seconds=settings.scheduled_sync_timeout_seconds,
                delay_seconds=settings.scheduled_sync_delay_seconds,
            )
        logger.info(
            "Nightly sync done: %d/%d users synced",
            summary["succeeded"], summary["users"],
        )
    except Exception as exc:
        logger.error("Nightly sync failed: %s", exc)
