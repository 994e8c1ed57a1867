"""
Vettly — Analytics API

Decline counters per member and the explanation-monitoring rollups.
"""

from __future__ import annotations

import uuid
from datetime import date

import structlog
from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import get_decline_analytics_service, get_monitoring_service
from app.database import get_db
from app.models.analytics import DeclineAnalytics, ExplanationDailyUsage, ExplanationEvent
from app.schemas.analytics import DailyUsageResponse, DeclineAnalyticsResponse, EngagementResponse
from app.schemas.match import EngagementRequest
from app.services.decline_analytics_service import DeclineAnalyticsService
from app.services.explanation_monitoring_service import ExplanationMonitoringService

logger = structlog.get_logger("vettly.api.analytics")

router = APIRouter()


@router.get(
    "/declines/{member_id}",
    response_model=DeclineAnalyticsResponse,
    summary="Get a member's decline counters",
)
async def get_decline_analytics(
    member_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    declines: DeclineAnalyticsService = Depends(get_decline_analytics_service),
) -> DeclineAnalytics:
    analytics = await declines.get_decline_analytics(db, member_id)
    if analytics is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"No declines recorded for member {member_id}.",
        )
    return analytics


@router.get(
    "/explanations/daily/{day}",
    response_model=DailyUsageResponse,
    summary="Get one day's explanation usage rollup",
)
async def get_daily_usage(
    day: date,
    db: AsyncSession = Depends(get_db),
    monitoring: ExplanationMonitoringService = Depends(get_monitoring_service),
) -> ExplanationDailyUsage:
    usage = await monitoring.get_daily_usage(db, day.isoformat())
    if usage is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"No explanation usage recorded on {day.isoformat()}.",
        )
    return usage


@router.post(
    "/explanations/{match_id}/engagement",
    response_model=EngagementResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Record a member's interaction with an explanation",
)
async def record_engagement(
    match_id: uuid.UUID,
    payload: EngagementRequest,
    db: AsyncSession = Depends(get_db),
    monitoring: ExplanationMonitoringService = Depends(get_monitoring_service),
) -> ExplanationEvent:
    try:
        return await monitoring.record_engagement(
            db, match_id, payload.user_id, payload.action, duration_ms=payload.duration_ms
        )
    except ValueError as exc:
        logger.warning("engagement_rejected", match_id=str(match_id), action=payload.action)
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
