"""
Reconciliation scheduler.

Runs the three ledger sweeps on cron triggers (UTC):
- expiry sweep: hourly at :00
- daily analytics: 01:00
- renewal sweep: 02:00

Usage:
    python -m subrecon.worker.scheduler
"""

import asyncio
import logging
from datetime import timezone
from typing import Awaitable, Callable

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from sqlalchemy.ext.asyncio import AsyncSession

from subrecon.db.session import close_db, get_session_factory, init_db
from subrecon.services.cache import close_redis
from subrecon.services.scheduled_jobs import run_daily_analytics, run_expiry_sweep, run_renewal_sweep
from subrecon.services.validators.registry import get_registry

logger = logging.getLogger(__name__)


async def _run_job(name: str, job: Callable[[AsyncSession], Awaitable[dict]]) -> dict:
    session_factory = get_session_factory()
    async with session_factory() as session:
        try:
            summary = await job(session)
        except Exception:
            logger.exception("Scheduled job %s failed", name)
            raise
    logger.info("Scheduled job %s finished: %s", name, summary)
    return summary


async def expiry_job() -> dict:
    return await _run_job("expiry_sweep", run_expiry_sweep)


async def renewal_job() -> dict:
    return await _run_job("renewal_sweep", lambda db: run_renewal_sweep(db, get_registry()))


async def analytics_job() -> dict:
    return await _run_job("daily_analytics", run_daily_analytics)


def create_scheduler() -> AsyncIOScheduler:
    """Build the scheduler with all sweep jobs registered (not started)."""
    scheduler = AsyncIOScheduler(timezone=timezone.utc)
    scheduler.add_job(
        expiry_job,
        CronTrigger(minute=0, timezone=timezone.utc),
        id="expiry_sweep",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )
    scheduler.add_job(
        analytics_job,
        CronTrigger(hour=1, minute=0, timezone=timezone.utc),
        id="daily_analytics",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )
    scheduler.add_job(
        renewal_job,
        CronTrigger(hour=2, minute=0, timezone=timezone.utc),
        id="renewal_sweep",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )
    return scheduler


async def _serve() -> None:
    await init_db()
    scheduler = create_scheduler()
    scheduler.start()
    logger.info("Scheduler started: expiry hourly, analytics 01:00 UTC, renewals 02:00 UTC")
    try:
        await asyncio.Event().wait()
    finally:
        scheduler.shutdown(wait=False)
        await close_redis()
        await close_db()


def main() -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        asyncio.run(_serve())
    except (KeyboardInterrupt, SystemExit):
        logger.info("Scheduler stopped")


if __name__ == "__main__":
    main()
