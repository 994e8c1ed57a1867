"""
Vettly — Notification fan-out

Writes member, matchmaker and approval notifications for match
transitions.  All writes go through the caller's ``AsyncSession`` so they
commit (or roll back) together with the match update that triggered them.

Every notification id is derived from ``(channel, recipient, match, type)``
with ``uuid5``; writes use ``session.merge`` so emitting the same event twice
overwrites the earlier row instead of creating a duplicate.
"""

from __future__ import annotations

import json
import uuid
from typing import Any

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import utcnow
from app.models.match import Match
from app.models.notification import (
    MatchApprovalNotification,
    MatchmakerNotification,
    MemberNotification,
)
from app.models.user import User

logger = structlog.get_logger("vettly.notification_service")

NOTIFICATION_NAMESPACE = uuid.UUID("5b1f8f0e-3d5c-4b59-9a57-6a1f7d2e9c41")

DEFAULT_MATCHMAKER_NAME = "Your Matchmaker"

DATE_APPROVED_MESSAGE = (
    "Your date has been approved by your matchmaker! You can now arrange "
    "your first meeting with your match."
)

MEMBER_MESSAGES: dict[str, str] = {
    "match_proposal": "Your matchmaker has found a new match for you!",
    "match_accepted_by_other": "{name} has accepted your match. It's your turn to respond.",
    "match_approved": "You have both accepted the match! Complete payment to continue.",
    "match_declined": "Your proposed match with {name} has been declined.",
    "match_expired": "Your proposed match with {name} has expired.",
    "payment_completed": "Payment received. Your matchmaker will now schedule your virtual meeting.",
    "virtual_meeting_scheduled": "Your virtual meeting with your matchmaker has been scheduled.",
    "virtual_meeting_completed": "Your virtual meeting is complete. Your matchmaker is reviewing your match.",
    "matchmaker_approved": "Your matchmaker has approved your match with {name}.",
    "date_approved": DATE_APPROVED_MESSAGE,
}


def notification_id(
    channel: str,
    recipient_id: uuid.UUID,
    match_id: uuid.UUID,
    notification_type: str,
) -> uuid.UUID:
    """Deterministic id for one (recipient, match, transition) notification."""
    return uuid.uuid5(
        NOTIFICATION_NAMESPACE,
        f"{channel}:{recipient_id}:{match_id}:{notification_type}",
    )


def matchmaker_display_name(match: Match) -> str:
    if match.matchmaker is not None and match.matchmaker.full_name:
        return match.matchmaker.full_name
    return DEFAULT_MATCHMAKER_NAME


def decode_points(raw: str | None) -> list[dict]:
    """Decode a JSON-encoded ``[{header, explanation}]`` column value."""
    if not raw:
        return []
    try:
        decoded = json.loads(raw)
    except (json.JSONDecodeError, TypeError):
        return []
    return decoded if isinstance(decoded, list) else []


class NotificationService:
    """Write-side fan-out plus the read helpers clients use."""

    # ══════════════════════════════════════════════════════════════════
    # Member notifications
    # ══════════════════════════════════════════════════════════════════

    @staticmethod
    def build_match_data(
        match: Match,
        recipient: User,
        other: User,
        explanation_text: str | None = None,
    ) -> dict[str, Any]:
        """Denormalized match summary so clients can render without a join."""
        slot = match.member_slot(recipient.id)
        raw_points = match.member1_explanation if slot == 1 else match.member2_explanation
        points = decode_points(raw_points)
        if explanation_text is None:
            explanation_text = " ".join(p.get("explanation", "") for p in points).strip() or None

        return {
            "otherMemberId": str(other.id),
            "otherMemberName": other.first_name,
            "otherMemberPhotoUrl": other.profile_photo_url,
            "compatibilityScore": match.compatibility_score,
            "compatibilityExplanation": explanation_text,
            "explanationPoints": points,
            "matchingPoints": match.matching_points or [],
            "approvedAt": match.approved_at.isoformat() if match.approved_at else None,
            "matchmakerId": str(match.matchmaker_id) if match.matchmaker_id else None,
            "matchmakerName": matchmaker_display_name(match),
        }

    async def notify_member(
        self,
        db_session: AsyncSession,
        match: Match,
        recipient: User,
        other: User,
        notification_type: str,
        message: str | None = None,
        metrics: dict | None = None,
        explanation_text: str | None = None,
    ) -> MemberNotification:
        """Write (or overwrite) one member notification for ``match``."""
        if message is None:
            message = MEMBER_MESSAGES.get(notification_type, "").format(name=other.first_name)

        notification = MemberNotification(
            id=notification_id("member", recipient.id, match.id, notification_type),
            member_id=recipient.id,
            match_id=match.id,
            type=notification_type,
            status="pending",
            message=message,
            match_data=self.build_match_data(match, recipient, other, explanation_text),
            metrics=metrics,
            created_at=utcnow(),
            viewed_at=None,
        )
        merged = await db_session.merge(notification)

        logger.info(
            "member_notification_written",
            notification_id=str(merged.id),
            member_id=str(recipient.id),
            match_id=str(match.id),
            type=notification_type,
        )
        return merged

    async def notify_both_members(
        self,
        db_session: AsyncSession,
        match: Match,
        notification_type: str,
        metrics: dict | None = None,
    ) -> list[MemberNotification]:
        return [
            await self.notify_member(
                db_session, match, match.member1, match.member2, notification_type, metrics=metrics
            ),
            await self.notify_member(
                db_session, match, match.member2, match.member1, notification_type, metrics=metrics
            ),
        ]

    # ══════════════════════════════════════════════════════════════════
    # Matchmaker notifications
    # ══════════════════════════════════════════════════════════════════

    async def _notify_matchmaker(
        self,
        db_session: AsyncSession,
        match: Match,
        member: User,
        notification_type: str,
        message: str,
        additional_data: dict,
    ) -> MatchmakerNotification | None:
        log = logger.bind(match_id=str(match.id), type=notification_type)
        if match.matchmaker_id is None:
            log.info("matchmaker_notification_skipped", reason="no_matchmaker")
            return None

        now = utcnow()
        notification = MatchmakerNotification(
            id=notification_id("matchmaker", match.matchmaker_id, match.id, notification_type),
            matchmaker_id=match.matchmaker_id,
            match_id=match.id,
            member_id=member.id,
            member_name=member.full_name,
            type=notification_type,
            status="pending",
            message=message,
            additional_data=additional_data,
            created_at=now,
            viewed_at=None,
        )
        merged = await db_session.merge(notification)

        match.has_matchmaker_notification = True
        match.last_notification_type = notification_type
        match.last_notification_time = now

        log.info("matchmaker_notification_written", notification_id=str(merged.id))
        return merged

    async def notify_match_declined(
        self,
        db_session: AsyncSession,
        match: Match,
        member: User,
        reason: str | None,
    ) -> MatchmakerNotification | None:
        name = member.full_name or "a member"
        message = f"Match declined by {name}"
        if reason:
            message += f": {reason}"
        return await self._notify_matchmaker(
            db_session,
            match,
            member,
            "match_declined",
            message,
            {
                "declinedAt": (match.declined_at or utcnow()).isoformat(),
                "reason": reason or "No reason provided",
            },
        )

    async def notify_match_accepted(
        self,
        db_session: AsyncSession,
        match: Match,
        member: User,
    ) -> MatchmakerNotification | None:
        message = (
            f"Match accepted by {member.full_name or 'a member'}. Both members have "
            "accepted the match and payment is now required."
        )
        return await self._notify_matchmaker(
            db_session,
            match,
            member,
            "match_accepted",
            message,
            {
                "acceptedAt": (match.approved_at or utcnow()).isoformat(),
                "paymentRequired": True,
                "virtualMeetingRequired": True,
            },
        )

    # ══════════════════════════════════════════════════════════════════
    # Date approval
    # ══════════════════════════════════════════════════════════════════

    async def notify_date_approved(
        self,
        db_session: AsyncSession,
        match: Match,
    ) -> list[MatchApprovalNotification]:
        """Two approval notifications plus two member notifications."""
        approved_at = (match.date_approved_at or utcnow()).isoformat()
        written: list[MatchApprovalNotification] = []
        for member in (match.member1, match.member2):
            notification = MatchApprovalNotification(
                id=notification_id("approval", member.id, match.id, "date_approved"),
                member_id=member.id,
                match_id=match.id,
                type="date_approved",
                status="pending",
                message=DATE_APPROVED_MESSAGE,
                additional_data={"approvedAt": approved_at},
                created_at=utcnow(),
            )
            written.append(await db_session.merge(notification))

        await self.notify_both_members(db_session, match, "date_approved")
        logger.info("date_approved_notifications_written", match_id=str(match.id))
        return written

    # ══════════════════════════════════════════════════════════════════
    # Read side
    # ══════════════════════════════════════════════════════════════════

    async def list_member_notifications(
        self,
        db_session: AsyncSession,
        member_id: uuid.UUID,
        latest_per_match: bool = True,
    ) -> list[MemberNotification]:
        """Newest first; optionally keep only the latest row per match."""
        stmt = (
            select(MemberNotification)
            .where(MemberNotification.member_id == member_id)
            .order_by(MemberNotification.created_at.desc())
        )
        rows = list((await db_session.execute(stmt)).scalars().all())
        if not latest_per_match:
            return rows

        seen: set[uuid.UUID] = set()
        latest: list[MemberNotification] = []
        for row in rows:
            if row.match_id in seen:
                continue
            seen.add(row.match_id)
            latest.append(row)
        return latest

    async def mark_viewed(
        self,
        db_session: AsyncSession,
        notification_uuid: uuid.UUID,
    ) -> MemberNotification | None:
        notification = await db_session.get(MemberNotification, notification_uuid)
        if notification is None:
            return None
        if notification.status == "pending":
            notification.status = "viewed"
            notification.viewed_at = utcnow()
            await db_session.flush()
        return notification

    async def mark_all_viewed(
        self,
        db_session: AsyncSession,
        member_id: uuid.UUID,
    ) -> int:
        stmt = (
            update(MemberNotification)
            .where(MemberNotification.member_id == member_id)
            .where(MemberNotification.status == "pending")
            .values(status="viewed", viewed_at=utcnow())
            .execution_options(synchronize_session="fetch")
        )
        result = await db_session.execute(stmt)
        logger.info("notifications_marked_viewed", member_id=str(member_id), count=result.rowcount)
        return result.rowcount or 0

    async def list_matchmaker_notifications(
        self,
        db_session: AsyncSession,
        matchmaker_id: uuid.UUID,
        status: str | None = None,
    ) -> list[MatchmakerNotification]:
        stmt = select(MatchmakerNotification).where(
            MatchmakerNotification.matchmaker_id == matchmaker_id
        )
        if status is not None:
            stmt = stmt.where(MatchmakerNotification.status == status)
        stmt = stmt.order_by(MatchmakerNotification.created_at.desc())
        return list((await db_session.execute(stmt)).scalars().all())
