"""
Vettly — Notifications API

Member inbox and matchmaker feed.  Notifications are written by the match
workflow; this router only reads them and records views.
"""

from __future__ import annotations

import uuid

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import get_notification_service
from app.database import get_db
from app.models.notification import MatchmakerNotification, MemberNotification
from app.schemas.notification import (
    MarkAllViewedResponse,
    MatchmakerNotificationResponse,
    MemberNotificationResponse,
)
from app.services.notification_service import NotificationService

logger = structlog.get_logger("vettly.api.notifications")

router = APIRouter()


@router.get(
    "/member/{member_id}",
    response_model=list[MemberNotificationResponse],
    summary="List a member's notifications",
)
async def list_member_notifications(
    member_id: uuid.UUID,
    latest_per_match: bool = Query(True, description="Only the newest notification per match"),
    db: AsyncSession = Depends(get_db),
    notifications: NotificationService = Depends(get_notification_service),
) -> list[MemberNotification]:
    return await notifications.list_member_notifications(
        db, member_id, latest_per_match=latest_per_match
    )


@router.post(
    "/{notification_id}/viewed",
    response_model=MemberNotificationResponse,
    summary="Mark one member notification as viewed",
)
async def mark_viewed(
    notification_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    notifications: NotificationService = Depends(get_notification_service),
) -> MemberNotification:
    notification = await notifications.mark_viewed(db, notification_id)
    if notification is None:
        logger.warning("notification_not_found", notification_id=str(notification_id))
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Notification {notification_id} not found.",
        )
    return notification


@router.post(
    "/member/{member_id}/viewed-all",
    response_model=MarkAllViewedResponse,
    summary="Mark every pending notification for a member as viewed",
)
async def mark_all_viewed(
    member_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    notifications: NotificationService = Depends(get_notification_service),
) -> MarkAllViewedResponse:
    updated = await notifications.mark_all_viewed(db, member_id)
    return MarkAllViewedResponse(member_id=member_id, updated=updated)


@router.get(
    "/matchmaker/{matchmaker_id}",
    response_model=list[MatchmakerNotificationResponse],
    summary="List a matchmaker's notifications",
)
async def list_matchmaker_notifications(
    matchmaker_id: uuid.UUID,
    status_filter: str | None = Query(
        None, alias="status", pattern="^(pending|viewed)$"
    ),
    db: AsyncSession = Depends(get_db),
    notifications: NotificationService = Depends(get_notification_service),
) -> list[MatchmakerNotification]:
    return await notifications.list_matchmaker_notifications(
        db, matchmaker_id, status=status_filter
    )
