"""
Vettly — In-process scheduled jobs

Two jobs run on APScheduler's ``AsyncIOScheduler`` inside the API process:

* ``generate_weekly_tip`` — Mondays 01:00 Australia/Sydney by default.
  Generates a tip in a random category and saves it as ``pending`` for a
  matchmaker to review.
* ``expire_stale_matches`` — moves unanswered proposals past their
  ``expires_at`` to ``expired``.

Each job runs in its own ``session_scope`` transaction.  The scheduler is
started and stopped from the FastAPI lifespan.
"""

from __future__ import annotations

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from app.cache import get_redis
from app.config import get_settings
from app.database import async_session_factory, session_scope
from app.services.match_approval_service import MatchApprovalService
from app.services.tip_generation_service import TipGenerationService, random_category
from app.services.tip_service import TipService

logger = structlog.get_logger("vettly.scheduler")

WEEKLY_TIP_JOB_ID = "generate_weekly_tip"
EXPIRY_SWEEP_JOB_ID = "expire_stale_matches"


async def generate_weekly_tip(
    generator: TipGenerationService | None = None,
    tip_service: TipService | None = None,
    session_factory=async_session_factory,
) -> str:
    """Generate and store one pending tip; returns the new tip id."""
    settings = get_settings()
    generator = generator or TipGenerationService()
    tip_service = tip_service or TipService(redis=get_redis())

    category = random_category()
    log = logger.bind(job=WEEKLY_TIP_JOB_ID, category=category)
    log.info("weekly_tip_job_start")

    generated = await generator.generate_tip(category)
    try:
        async with session_scope(session_factory) as session:
            tip = await tip_service.create_tip(
                session,
                generated,
                ai_generated=True,
                author_name=settings.WEEKLY_TIP_AUTHOR,
            )
    except Exception:
        log.exception("weekly_tip_job_failed")
        raise

    log.info("weekly_tip_job_complete", tip_id=str(tip.id), used_fallback=generated["ai_fallback"])
    return str(tip.id)


async def expire_stale_matches(
    approval_service: MatchApprovalService | None = None,
    session_factory=async_session_factory,
) -> int:
    approval_service = approval_service or MatchApprovalService()
    try:
        async with session_scope(session_factory) as session:
            expired = await approval_service.expire_stale_matches(session)
    except Exception:
        logger.exception("expiry_sweep_failed", job=EXPIRY_SWEEP_JOB_ID)
        raise
    return expired


def create_scheduler() -> AsyncIOScheduler:
    settings = get_settings()
    scheduler = AsyncIOScheduler(timezone=settings.SCHEDULER_TIMEZONE)

    scheduler.add_job(
        generate_weekly_tip,
        CronTrigger.from_crontab(settings.WEEKLY_TIP_CRON, timezone=settings.SCHEDULER_TIMEZONE),
        id=WEEKLY_TIP_JOB_ID,
        replace_existing=True,
        coalesce=True,
        max_instances=1,
    )
    scheduler.add_job(
        expire_stale_matches,
        IntervalTrigger(minutes=settings.MATCH_EXPIRY_SWEEP_MINUTES),
        id=EXPIRY_SWEEP_JOB_ID,
        replace_existing=True,
        coalesce=True,
        max_instances=1,
    )

    logger.info(
        "scheduler_configured",
        weekly_tip_cron=settings.WEEKLY_TIP_CRON,
        timezone=settings.SCHEDULER_TIMEZONE,
        sweep_minutes=settings.MATCH_EXPIRY_SWEEP_MINUTES,
    )
    return scheduler
