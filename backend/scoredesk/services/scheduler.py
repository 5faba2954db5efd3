"""
Scheduled jobs
Periodic expiry sweep over scratch cards
"""
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from scoredesk.core.database import async_session
from scoredesk.core.config import get_settings
from scoredesk.services.card_admin import expire_cards
import logging

logger = logging.getLogger(__name__)
settings = get_settings()

scheduler = AsyncIOScheduler()


async def expire_stale_cards(session_factory=async_session):
    """
    Expire Active cards whose expires_at has passed

    Runs on an interval; a failed run is logged and retried on the next tick
    """
    async with session_factory() as db:
        try:
            expired_count = await expire_cards(db)
            if expired_count > 0:
                logger.info(f"Expiry sweep finished, {expired_count} cards expired")
            return expired_count
        except Exception:
            logger.exception("Expiry sweep failed")
            await db.rollback()
            return 0


def start_scheduler():
    """Start the job scheduler"""
    scheduler.add_job(
        expire_stale_cards,
        trigger=IntervalTrigger(minutes=settings.expiry_sweep_minutes),
        id="expire_stale_cards",
        name="Expire stale scratch cards",
        replace_existing=True
    )

    scheduler.start()
    logger.info("Job scheduler started")


def stop_scheduler():
    """Stop the job scheduler"""
    scheduler.shutdown()
    logger.info("Job scheduler stopped")
