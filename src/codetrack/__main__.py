"""
Main entrypoint: runs the APScheduler nightly sync in one process.

FastAPI runs separately under uvicorn.

Usage:
    python -m codetrack setup         # connect a personal access token
    python -m codetrack               # starts the scheduler
    uvicorn codetrack.api.main:app --host 0.0.0.0 --port 8000  # starts API
"""
import asyncio
import logging
import sys

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(name)s %(levelname)s %(message)s",
)
logger = logging.getLogger(__name__)


def _run_setup() -> None:
    from codetrack.scripts.setup import run_setup
    run_setup()


async def _run_scheduler() -> None:
    from codetrack.config import get_settings
    from codetrack.db.engine import dispose_engine, get_engine
    from codetrack.scheduler.jobs import build_scheduler

    settings = get_settings()
    if not settings.encryption_key:
        logger.error("ENCRYPTION_KEY is not set. Configure .env before starting.")
        sys.exit(1)

    engine = get_engine()
    scheduler = build_scheduler(engine)
    scheduler.start()
    logger.info(
        "Scheduler started (nightly sync at %02d:00 UTC)",
        settings.scheduled_sync_hour,
    )

    try:
        await asyncio.Event().wait()
    except (KeyboardInterrupt, SystemExit):
        logger.info("Shutting down...")
    finally:
        scheduler.shutdown()
        dispose_engine()
        logger.info("Goodbye.")


if __name__ == "__main__":
    # Dispatch on first argument: `python -m codetrack setup` or just `python -m codetrack`
    if len(sys.argv) > 1 and sys.argv[1] == "setup":
        _run_setup()
    else:
        asyncio.run(_run_scheduler())
