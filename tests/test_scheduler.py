"""Tests for the scheduled jobs and scheduler wiring."""
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy import select

from app.models.tip import WeeklyTip
from app.scheduler import (
    EXPIRY_SWEEP_JOB_ID,
    WEEKLY_TIP_JOB_ID,
    create_scheduler,
    expire_stale_matches,
    generate_weekly_tip,
)
from app.services.tip_generation_service import fallback_tip


class TestGenerateWeeklyTip:

    @pytest.mark.asyncio
    async def test_saves_pending_ai_tip(self, session_factory, tip_service):
        generator = MagicMock()
        generator.generate_tip = AsyncMock(
            return_value={**fallback_tip("date_ideas"), "title": "Picnic", "ai_fallback": False}
        )

        tip_id = await generate_weekly_tip(generator, tip_service, session_factory)

        async with session_factory() as session:
            tips = (await session.execute(select(WeeklyTip))).scalars().all()
        assert len(tips) == 1
        assert str(tips[0].id) == tip_id
        assert tips[0].status == "pending"
        assert tips[0].ai_generated is True
        assert tips[0].author_name == "AI Assistant"
        generator.generate_tip.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_uses_random_category(self, session_factory, tip_service):
        generator = MagicMock()
        generator.generate_tip = AsyncMock(return_value={**fallback_tip("date_ideas"), "ai_fallback": True})

        with patch("app.scheduler.random_category", return_value="self_improvement"):
            await generate_weekly_tip(generator, tip_service, session_factory)

        generator.generate_tip.assert_awaited_once_with("self_improvement")


class TestExpirySweep:

    @pytest.mark.asyncio
    async def test_commits_sweep(self, session_factory):
        approvals = MagicMock()
        approvals.expire_stale_matches = AsyncMock(return_value=3)

        assert await expire_stale_matches(approvals, session_factory) == 3
        approvals.expire_stale_matches.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_failure_propagates(self, session_factory):
        approvals = MagicMock()
        approvals.expire_stale_matches = AsyncMock(side_effect=RuntimeError("db down"))

        with pytest.raises(RuntimeError):
            await expire_stale_matches(approvals, session_factory)


class TestCreateScheduler:

    def test_jobs_registered(self):
        scheduler = create_scheduler()
        jobs = {job.id: job for job in scheduler.get_jobs()}

        assert set(jobs) == {WEEKLY_TIP_JOB_ID, EXPIRY_SWEEP_JOB_ID}
        assert isinstance(jobs[WEEKLY_TIP_JOB_ID].trigger, CronTrigger)
        assert isinstance(jobs[EXPIRY_SWEEP_JOB_ID].trigger, IntervalTrigger)
        assert str(jobs[WEEKLY_TIP_JOB_ID].trigger.timezone) == "Australia/Sydney"
        assert "day_of_week='mon'" in str(jobs[WEEKLY_TIP_JOB_ID].trigger)
