"""
Vettly — Explanation monitoring

Records generation, error and engagement events for match explanations and
keeps a per-day usage aggregate.  Writes share the caller's session, so
they land in the same transaction as the request that produced them.

Every generation and send touches today's aggregate row, so its counters
are incremented in SQL rather than read and written back.
"""

from __future__ import annotations

import uuid
from datetime import datetime

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import increment_counters, utcnow
from app.models.analytics import ExplanationDailyUsage, ExplanationEvent, ExplanationUsageCount

logger = structlog.get_logger("vettly.explanation_monitoring")

ENGAGEMENT_ACTIONS = ("viewed", "liked", "disliked", "accepted", "declined")


def day_key(when: datetime | None = None) -> str:
    return (when or utcnow()).strftime("%Y-%m-%d")


class ExplanationMonitoringService:

    async def _bump_usage(
        self,
        db_session: AsyncSession,
        increments: dict[str, int | float],
        bucket: tuple[str, str] | None = None,
    ) -> None:
        """Add to today's totals and, optionally, one ``(kind, key)`` bucket."""
        day = day_key()
        await increment_counters(
            db_session,
            ExplanationDailyUsage,
            keys={"date": day},
            increments=increments,
            values={"updated_at": utcnow()},
        )
        if bucket is not None:
            kind, key = bucket
            await increment_counters(
                db_session,
                ExplanationUsageCount,
                keys={"date": day, "kind": kind, "key": key},
                increments={"count": 1},
            )

    async def record_generation(
        self,
        db_session: AsyncSession,
        match_id: uuid.UUID | None,
        metrics: dict,
        data_quality_score: int | None = None,
    ) -> ExplanationEvent:
        """Log one generation and fold it into today's aggregate."""
        event = ExplanationEvent(
            match_id=match_id,
            event_type="generation",
            metrics={**metrics, "data_quality_score": data_quality_score},
        )
        db_session.add(event)

        await self._bump_usage(
            db_session,
            {
                "total_generations": 1,
                "total_tokens": int(metrics.get("tokens_used") or 0),
                "total_generation_time_ms": float(metrics.get("generation_time_ms") or 0.0),
            },
        )

        logger.info(
            "explanation_generation_logged",
            match_id=str(match_id),
            tokens_used=metrics.get("tokens_used"),
            source=metrics.get("source"),
        )
        return event

    async def record_error(
        self,
        db_session: AsyncSession,
        match_id: uuid.UUID | None,
        error_type: str,
        error_message: str,
        status_code: int | None = None,
    ) -> ExplanationEvent:
        event = ExplanationEvent(
            match_id=match_id,
            event_type="error",
            error_type=error_type,
            error_message=error_message,
            metrics={"status_code": status_code} if status_code else None,
        )
        db_session.add(event)

        await self._bump_usage(db_session, {"total_errors": 1}, bucket=("error", error_type))

        logger.warning(
            "explanation_error",
            match_id=str(match_id),
            error_type=error_type,
            error_message=error_message,
            status_code=status_code,
        )
        return event

    async def record_engagement(
        self,
        db_session: AsyncSession,
        match_id: uuid.UUID,
        user_id: uuid.UUID,
        action: str,
        duration_ms: int | None = None,
    ) -> ExplanationEvent:
        if action not in ENGAGEMENT_ACTIONS:
            raise ValueError(f"Unknown engagement action {action!r}")

        event = ExplanationEvent(
            match_id=match_id,
            event_type="engagement",
            metrics={"user_id": str(user_id), "action": action, "duration_ms": duration_ms},
        )
        db_session.add(event)

        await self._bump_usage(db_session, {}, bucket=("engagement", action))

        logger.info("explanation_engagement", match_id=str(match_id), action=action)
        return event

    async def get_daily_usage(
        self,
        db_session: AsyncSession,
        day: str,
    ) -> ExplanationDailyUsage | None:
        stmt = (
            select(ExplanationDailyUsage)
            .where(ExplanationDailyUsage.date == day)
            .execution_options(populate_existing=True)
        )
        return (await db_session.execute(stmt)).scalar_one_or_none()
