"""
Backfill script: pull a longer history of GitLab activity.

Usage:
    python -m codetrack.scripts.backfill --user-id 42 --days 180
    python -m codetrack.scripts.backfill --days 365          # every active user

Runs a custom-window sync per user. Users are processed one at a time with a
pause between them; a failing user is logged and skipped.

Records already in the DB are updated in place (idempotent upserts).
"""
import argparse
import asyncio
import logging

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")
logger = logging.getLogger(__name__)

SLEEP_BETWEEN_USERS = 2.0


async def _backfill(days: int, user_id=None) -> int:
    """Returns the number of users that failed."""
    from codetrack.db.engine import get_engine
    from codetrack.gitlab.client import GitLabClient
    from codetrack.gitlab.store import IntegrationStore
    from codetrack.gitlab.sync_service import GitLabSyncService, SyncMode
    from codetrack.gitlab.tokens import TokenManager
    from codetrack.gitlab.vault import get_vault

    engine = get_engine()
    store = IntegrationStore(engine)
    user_ids = [user_id] if user_id else [i.user_id for i in store.list_active()]
    if not user_ids:
        logger.info("No active GitLab integrations to backfill.")
        return 0

    failed = 0
    async with GitLabClient() as client:
        service = GitLabSyncService(client, engine, TokenManager(store, get_vault(), client))
        for n, uid in enumerate(user_ids):
            if n:
                await asyncio.sleep(SLEEP_BETWEEN_USERS)
            logger.info("Backfilling %d days for user %s", days, uid)
            try:
                result = await service.sync_user(uid, SyncMode.CUSTOM, days=days)
            except Exception as exc:
                logger.warning("Failed to backfill user %s: %s", uid, exc)
                failed += 1
                continue
            logger.info(
                "User %s: %d projects, %d new, %d updated, %d errors",
                uid, result.projects_scanned, result.new_records,
                result.updated_records, len(result.errors),
            )

    logger.info("Backfill complete. Users: %d, failed: %d", len(user_ids), failed)
    return failed


def main() -> None:
    parser = argparse.ArgumentParser(description="Backfill GitLab activity")
    parser.add_argument(
        "--days",
        type=int,
        default=180,
        help="Number of days to backfill (default: 180)",
    )
    parser.add_argument(
        "--user-id",
        default=None,
        help="Only backfill this user (default: all active integrations)",
    )
    args = parser.parse_args()
    if args.days <= 0:
        parser.error("--days must be positive")
    failed = asyncio.run(_backfill(args.days, args.user_id))
    raise SystemExit(1 if failed else 0)


if __name__ == "__main__":
    main()
