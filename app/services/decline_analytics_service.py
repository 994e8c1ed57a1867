"""
Vettly — Decline analytics

Per-member decline counters bucketed by calendar month.  Increments run in
the caller's session so they commit together with the decline itself, and
are applied in SQL so overlapping declines by the same member all count.
"""

from __future__ import annotations

import uuid
from datetime import datetime

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import increment_counters, utcnow
from app.models.analytics import DeclineAnalytics, DeclineMonthlyCount
from app.models.user import User

logger = structlog.get_logger("vettly.decline_analytics_service")


class DeclineAnalyticsService:

    async def record_decline(
        self,
        db_session: AsyncSession,
        member: User,
        declined_at: datetime | None = None,
    ) -> DeclineAnalytics:
        """Increment ``member``'s total and the ``YYYY-MM`` bucket."""
        declined_at = declined_at or utcnow()
        month_key = declined_at.strftime("%Y-%m")

        await increment_counters(
            db_session,
            DeclineAnalytics,
            keys={"member_id": member.id},
            increments={"total_declines": 1},
            values={"member_name": member.full_name, "last_updated": utcnow()},
        )
        await increment_counters(
            db_session,
            DeclineMonthlyCount,
            keys={"member_id": member.id, "month": month_key},
            increments={"count": 1},
        )

        analytics = await self.get_decline_analytics(db_session, member.id)
        logger.info(
            "decline_recorded",
            member_id=str(member.id),
            month=month_key,
            total_declines=analytics.total_declines,
        )
        return analytics

    async def get_decline_analytics(
        self,
        db_session: AsyncSession,
        member_id: uuid.UUID,
    ) -> DeclineAnalytics | None:
        # Counters change behind the identity map, so always reload.
        stmt = (
            select(DeclineAnalytics)
            .where(DeclineAnalytics.member_id == member_id)
            .execution_options(populate_existing=True)
        )
        return (await db_session.execute(stmt)).scalar_one_or_none()
