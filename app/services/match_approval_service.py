"""
Vettly — Match approval workflow

Owns every stage change of a match, from the matchmaker's proposal through
member acceptance, payment, the virtual meeting and the final date
approval.  Each public operation:

  1. loads the match and checks the requested action against
     ``TRANSITIONS``,
  2. mutates the match and appends ``MatchTransition`` rows,
  3. flushes the versioned update, translating a conflict into
     ``ConcurrentUpdateError``,
  4. writes the notifications for the transition.

All of it happens in the caller's session, so a transition and its
notifications either commit together or not at all.
"""

from __future__ import annotations

import time
import uuid
from datetime import datetime, timedelta
from typing import Any
from zoneinfo import ZoneInfo

import structlog
from sqlalchemy import and_, func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from app.config import get_settings
from app.database import utcnow
from app.models.match import STAGE_ORDER, Match, MatchStage, MatchTransition
from app.models.user import User
from app.services.compatibility_service import CompatibilityService
from app.services.decline_analytics_service import DeclineAnalyticsService
from app.services.explanation_monitoring_service import ExplanationMonitoringService
from app.services.explanation_service import (
    FALLBACK_SENTENCE,
    ExplanationResult,
    ExplanationService,
)
from app.services.notification_service import NotificationService, decode_points

logger = structlog.get_logger("vettly.match_approval_service")


# ──────────────────────────────────────────────────────────────────────────────
# Errors
# ──────────────────────────────────────────────────────────────────────────────


class MatchWorkflowError(Exception):
    """Base class; ``status_code`` is the HTTP status routers map it to."""

    status_code = 400

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}


class MatchNotFoundError(MatchWorkflowError):
    status_code = 404


class MemberNotFoundError(MatchWorkflowError):
    status_code = 404


class NotMatchMemberError(MatchWorkflowError):
    status_code = 403


class PreconditionFailedError(MatchWorkflowError):
    status_code = 400


class LowDataQualityError(PreconditionFailedError):
    """Profiles too sparse to explain the match."""


class InvalidTransitionError(MatchWorkflowError):
    status_code = 409


class ConcurrentUpdateError(MatchWorkflowError):
    status_code = 409


class DuplicateMatchError(MatchWorkflowError):
    status_code = 409


class IncompatibleMatchError(MatchWorkflowError):
    status_code = 422


# ──────────────────────────────────────────────────────────────────────────────
# Transition table
# ──────────────────────────────────────────────────────────────────────────────

# action -> stages the action may start from
TRANSITIONS: dict[str, frozenset[MatchStage]] = {
    "accept": frozenset({MatchStage.PENDING, MatchStage.ACCEPTED_BY_ONE}),
    "decline": frozenset({
        MatchStage.PENDING,
        MatchStage.ACCEPTED_BY_ONE,
        MatchStage.ACCEPTED_BY_BOTH,
        MatchStage.PAYMENT_REQUIRED,
    }),
    "expire": frozenset({MatchStage.PENDING, MatchStage.ACCEPTED_BY_ONE}),
    "complete_payment": frozenset({MatchStage.PAYMENT_REQUIRED}),
    "schedule_virtual_meeting": frozenset({MatchStage.VIRTUAL_MEETING_REQUIRED}),
    "complete_virtual_meeting": frozenset({MatchStage.VIRTUAL_MEETING_SCHEDULED}),
    "matchmaker_approve": frozenset({MatchStage.VIRTUAL_MEETING_COMPLETED}),
    "approve_date": frozenset({
        MatchStage.VIRTUAL_MEETING_COMPLETED,
        MatchStage.MATCHMAKER_APPROVED,
    }),
}

VIRTUAL_MEETING_REQUIRED_MESSAGE = "Virtual meeting must be completed before approving the date"

EXPIRABLE_STAGES = [s.value for s in TRANSITIONS["expire"]]


def is_allowed(action: str, stage: MatchStage) -> bool:
    return stage in TRANSITIONS.get(action, frozenset())


def points_to_text(points: list[dict[str, str]]) -> str:
    return " ".join(p.get("explanation", "") for p in points).strip()


class MatchApprovalService:
    """Stage transitions for matches.

    Collaborators are injected so routers and tests can swap them; the
    explanation service is built lazily since it configures the Gemini
    client on construction.
    """

    def __init__(
        self,
        compatibility_service: CompatibilityService | None = None,
        notification_service: NotificationService | None = None,
        decline_analytics_service: DeclineAnalyticsService | None = None,
        explanation_service: ExplanationService | None = None,
        monitoring_service: ExplanationMonitoringService | None = None,
    ) -> None:
        self._compatibility = compatibility_service or CompatibilityService()
        self._notifications = notification_service or NotificationService()
        self._decline_analytics = decline_analytics_service or DeclineAnalyticsService()
        self._explanations = explanation_service
        self._monitoring = monitoring_service or ExplanationMonitoringService()
        self._settings = get_settings()

    @property
    def explanations(self) -> ExplanationService:
        if self._explanations is None:
            self._explanations = ExplanationService()
        return self._explanations

    # ══════════════════════════════════════════════════════════════════
    # Loading & bookkeeping
    # ══════════════════════════════════════════════════════════════════

    async def get_match(self, db_session: AsyncSession, match_id: uuid.UUID) -> Match:
        match = await db_session.get(Match, match_id)
        if match is None:
            raise MatchNotFoundError("Match not found", {"matchId": str(match_id)})
        return match

    async def _get_user(self, db_session: AsyncSession, user_id: uuid.UUID) -> User:
        user = await db_session.get(User, user_id)
        if user is None:
            raise MemberNotFoundError("Member not found", {"memberId": str(user_id)})
        return user

    async def _next_sequence(self, db_session: AsyncSession, match_id: uuid.UUID) -> int:
        stmt = select(func.coalesce(func.max(MatchTransition.sequence), 0)).where(
            MatchTransition.match_id == match_id
        )
        return int((await db_session.execute(stmt)).scalar_one()) + 1

    @staticmethod
    def _require(match: Match, action: str) -> None:
        if not is_allowed(action, match.stage_enum):
            raise InvalidTransitionError(
                f"Cannot {action.replace('_', ' ')} a match in stage '{match.stage}'",
                {"matchId": str(match.id), "stage": match.stage, "action": action},
            )

    @staticmethod
    def _require_matchmaker(match: Match, matchmaker_id: uuid.UUID | None) -> None:
        if (
            matchmaker_id is not None
            and match.matchmaker_id is not None
            and matchmaker_id != match.matchmaker_id
        ):
            raise NotMatchMemberError(
                "Only the assigned matchmaker can perform this action",
                {"matchId": str(match.id)},
            )

    def _member_slot(self, match: Match, user_id: uuid.UUID) -> int:
        slot = match.member_slot(user_id)
        if slot is None:
            raise NotMatchMemberError(
                "User is not a member of this match",
                {"matchId": str(match.id), "userId": str(user_id)},
            )
        return slot

    async def _advance(
        self,
        db_session: AsyncSession,
        match: Match,
        action: str,
        to_stage: MatchStage,
        sequence: int,
        actor_id: uuid.UUID | None = None,
        payload: dict | None = None,
    ) -> MatchTransition:
        """Move ``match`` to ``to_stage``, append the history row and flush.

        Flushing here issues the versioned UPDATE before any notification
        is written, so a conflicting write surfaces as
        ``ConcurrentUpdateError`` and the row stays locked until commit.
        """
        transition = MatchTransition(
            match_id=match.id,
            action=action,
            from_stage=match.stage,
            to_stage=to_stage.value,
            actor_id=actor_id,
            payload=payload,
            sequence=sequence,
            occurred_at=utcnow(),
        )
        db_session.add(transition)
        match.stage = to_stage.value
        await self._flush(db_session, match)

        logger.info(
            "match_stage_changed",
            match_id=str(match.id),
            action=action,
            from_stage=transition.from_stage,
            to_stage=transition.to_stage,
        )
        return transition

    async def _flush(self, db_session: AsyncSession, match: Match) -> None:
        try:
            await db_session.flush()
        except StaleDataError as exc:
            logger.warning("match_concurrent_update", match_id=str(match.id))
            raise ConcurrentUpdateError(
                "Match was modified by another request; reload and retry",
                {"matchId": str(match.id)},
            ) from exc

    # ══════════════════════════════════════════════════════════════════
    # Proposal
    # ══════════════════════════════════════════════════════════════════

    async def create_match(
        self,
        db_session: AsyncSession,
        member1_id: uuid.UUID,
        member2_id: uuid.UUID,
        matchmaker_id: uuid.UUID | None = None,
        allow_incompatible: bool = False,
    ) -> Match:
        """Score a pair and record the proposal.

        Parameters
        ----------
        member1_id, member2_id:
            The two members.  A pair may only be matched once, in either
            order.
        matchmaker_id:
            The matchmaker curating the proposal.
        allow_incompatible:
            Record the match even when a deal-breaker applies.

        Returns
        -------
        Match
            The new match in stage ``pending``.  Members are not notified
            until the proposal is sent with its explanation.
        """
        log = logger.bind(member1_id=str(member1_id), member2_id=str(member2_id))

        if member1_id == member2_id:
            raise PreconditionFailedError("A member cannot be matched with themselves")

        member1 = await self._get_user(db_session, member1_id)
        member2 = await self._get_user(db_session, member2_id)
        matchmaker = (
            await self._get_user(db_session, matchmaker_id) if matchmaker_id else None
        )

        existing_stmt = select(Match.id).where(
            or_(
                and_(Match.member1_id == member1_id, Match.member2_id == member2_id),
                and_(Match.member1_id == member2_id, Match.member2_id == member1_id),
            )
        )
        existing = (await db_session.execute(existing_stmt)).scalar_one_or_none()
        if existing is not None:
            raise DuplicateMatchError(
                "These members have already been matched",
                {"matchId": str(existing)},
            )

        result = self._compatibility.score_users(member1, member2)
        if not result.compatible and not allow_incompatible:
            log.info("match_rejected_incompatible", reason=result.reason)
            raise IncompatibleMatchError(
                result.reason or "Members are incompatible",
                {"breakdown": result.breakdown},
            )

        now = utcnow()
        match = Match(
            id=uuid.uuid4(),
            member1_id=member1.id,
            member2_id=member2.id,
            matchmaker_id=matchmaker.id if matchmaker else None,
            stage=MatchStage.PENDING.value,
            compatibility_score=result.compatibility_score,
            compatibility_breakdown=result.breakdown,
            compatibility_degraded=result.is_degraded,
            matching_points=self._compatibility.build_matching_points(result),
            member1_accepted=False,
            member2_accepted=False,
            resend_count=0,
            has_matchmaker_notification=False,
            expires_at=now + timedelta(days=self._settings.MATCH_EXPIRY_DAYS),
            created_at=now,
        )
        match.member1 = member1
        match.member2 = member2
        match.matchmaker = matchmaker
        db_session.add(match)

        db_session.add(
            MatchTransition(
                match_id=match.id,
                action="create",
                from_stage=MatchStage.PENDING.value,
                to_stage=MatchStage.PENDING.value,
                actor_id=matchmaker_id,
                payload={"compatibility_score": match.compatibility_score},
                sequence=1,
                occurred_at=now,
            )
        )

        try:
            await db_session.flush()
        except IntegrityError as exc:
            raise DuplicateMatchError("These members have already been matched") from exc

        log.info(
            "match_created",
            match_id=str(match.id),
            compatibility_score=match.compatibility_score,
            degraded=match.compatibility_degraded,
        )
        return match

    # ══════════════════════════════════════════════════════════════════
    # Member responses
    # ══════════════════════════════════════════════════════════════════

    async def accept_match(
        self,
        db_session: AsyncSession,
        match_id: uuid.UUID,
        user_id: uuid.UUID,
    ) -> Match:
        """Record one member's acceptance.

        The first acceptance moves the match to ``accepted_by_one``.  The
        second moves it through ``accepted_by_both`` to ``payment_required``
        and tells the matchmaker.  Accepting twice changes nothing.
        """
        match = await self.get_match(db_session, match_id)
        slot = self._member_slot(match, user_id)
        log = logger.bind(match_id=str(match.id), user_id=str(user_id))

        already = match.member1_accepted if slot == 1 else match.member2_accepted
        if already:
            log.info("match_accept_repeated", stage=match.stage)
            return match

        self._require(match, "accept")
        sequence = await self._next_sequence(db_session, match.id)

        now = utcnow()
        if slot == 1:
            match.member1_accepted, match.member1_accepted_at = True, now
            member, other = match.member1, match.member2
            other_accepted = match.member2_accepted
        else:
            match.member2_accepted, match.member2_accepted_at = True, now
            member, other = match.member2, match.member1
            other_accepted = match.member1_accepted

        if other_accepted:
            match.approved_at = now
            await self._advance(db_session, match, "accept", MatchStage.ACCEPTED_BY_BOTH, sequence, user_id)
            await self._advance(
                db_session, match, "require_payment", MatchStage.PAYMENT_REQUIRED, sequence + 1
            )
            await self._notifications.notify_match_accepted(db_session, match, member)
            await self._notifications.notify_both_members(db_session, match, "match_approved")
        else:
            await self._advance(db_session, match, "accept", MatchStage.ACCEPTED_BY_ONE, sequence, user_id)
            await self._notifications.notify_member(
                db_session, match, other, member, "match_accepted_by_other"
            )

        await self._flush(db_session, match)
        log.info("match_accepted", stage=match.stage)
        return match

    async def decline_match(
        self,
        db_session: AsyncSession,
        match_id: uuid.UUID,
        user_id: uuid.UUID,
        reason: str | None = None,
    ) -> Match:
        match = await self.get_match(db_session, match_id)
        slot = self._member_slot(match, user_id)
        self._require(match, "decline")
        sequence = await self._next_sequence(db_session, match.id)

        member, other = (
            (match.member1, match.member2) if slot == 1 else (match.member2, match.member1)
        )

        now = utcnow()
        match.declined_at = now
        match.declined_by = user_id
        match.decline_reason = reason
        await self._advance(
            db_session, match, "decline", MatchStage.DECLINED, sequence, user_id,
            {"reason": reason} if reason else None,
        )

        await self._notifications.notify_match_declined(db_session, match, member, reason)
        await self._notifications.notify_member(db_session, match, other, member, "match_declined")
        await self._decline_analytics.record_decline(db_session, member, now)

        await self._flush(db_session, match)
        logger.info("match_declined", match_id=str(match.id), user_id=str(user_id))
        return match

    # ══════════════════════════════════════════════════════════════════
    # Expiry
    # ══════════════════════════════════════════════════════════════════

    async def _expire(self, db_session: AsyncSession, match: Match) -> Match:
        self._require(match, "expire")
        sequence = await self._next_sequence(db_session, match.id)

        match.expired_at = utcnow()
        await self._advance(db_session, match, "expire", MatchStage.EXPIRED, sequence)
        await self._notifications.notify_both_members(db_session, match, "match_expired")
        return match

    async def expire_match(self, db_session: AsyncSession, match_id: uuid.UUID) -> Match:
        match = await self._expire(db_session, await self.get_match(db_session, match_id))
        await self._flush(db_session, match)
        return match

    async def expire_stale_matches(
        self,
        db_session: AsyncSession,
        now: datetime | None = None,
    ) -> int:
        """Expire every unanswered match whose ``expires_at`` has passed.

        Each match expires inside its own savepoint.  A match another
        request changed since it was loaded is skipped and left for the
        next sweep; the rest of the batch still commits.
        """
        now = now or utcnow()
        stmt = (
            select(Match)
            .where(Match.stage.in_(EXPIRABLE_STAGES))
            .where(Match.expires_at.is_not(None))
            .where(Match.expires_at <= now)
            .order_by(Match.expires_at)
        )
        stale = list((await db_session.execute(stmt)).scalars().all())

        expired = 0
        for match in stale:
            match_id = match.id
            try:
                async with db_session.begin_nested():
                    await self._expire(db_session, match)
                    await self._flush(db_session, match)
            except (ConcurrentUpdateError, StaleDataError):
                logger.warning("stale_match_expiry_skipped", match_id=str(match_id))
                continue
            expired += 1

        logger.info("stale_matches_expired", count=expired, skipped=len(stale) - expired)
        return expired

    # ══════════════════════════════════════════════════════════════════
    # Payment & virtual meeting
    # ══════════════════════════════════════════════════════════════════

    async def complete_payment(
        self,
        db_session: AsyncSession,
        match_id: uuid.UUID,
        payment_method: str | None = None,
        membership_plan: str | None = None,
    ) -> Match:
        """Record payment and require the virtual meeting.

        Payment providers redeliver events, so a match that is already
        past payment is returned unchanged.
        """
        match = await self.get_match(db_session, match_id)
        log = logger.bind(match_id=str(match.id))
        if match.payment_completed:
            log.info("payment_already_recorded", stage=match.stage)
            return match

        self._require(match, "complete_payment")
        sequence = await self._next_sequence(db_session, match.id)

        match.payment_completed_at = utcnow()
        match.payment_method = payment_method
        match.membership_plan = membership_plan
        await self._advance(
            db_session, match, "complete_payment", MatchStage.PAYMENT_COMPLETED, sequence,
            payload={"payment_method": payment_method, "membership_plan": membership_plan},
        )
        await self._advance(
            db_session, match, "require_virtual_meeting",
            MatchStage.VIRTUAL_MEETING_REQUIRED, sequence + 1,
        )
        await self._notifications.notify_both_members(db_session, match, "payment_completed")

        await self._flush(db_session, match)
        log.info("payment_completed", payment_method=payment_method, plan=membership_plan)
        return match

    def default_meeting_start(self, now: datetime | None = None) -> datetime:
        """``VIRTUAL_MEETING_DAYS_AHEAD`` days out at the configured local hour."""
        tz = ZoneInfo(self._settings.VIRTUAL_MEETING_TIMEZONE)
        local_now = (now or utcnow()).astimezone(tz)
        day = local_now + timedelta(days=self._settings.VIRTUAL_MEETING_DAYS_AHEAD)
        return day.replace(
            hour=self._settings.VIRTUAL_MEETING_HOUR, minute=0, second=0, microsecond=0
        )

    async def schedule_virtual_meeting(
        self,
        db_session: AsyncSession,
        match_id: uuid.UUID,
        start_time: datetime | None = None,
        matchmaker_id: uuid.UUID | None = None,
        meet_link: str | None = None,
        event_id: str | None = None,
    ) -> Match:
        match = await self.get_match(db_session, match_id)
        self._require_matchmaker(match, matchmaker_id)
        self._require(match, "schedule_virtual_meeting")
        sequence = await self._next_sequence(db_session, match.id)

        start = start_time or self.default_meeting_start()
        if start.tzinfo is None:
            start = start.replace(tzinfo=ZoneInfo(self._settings.VIRTUAL_MEETING_TIMEZONE))
        end = start + timedelta(minutes=self._settings.VIRTUAL_MEETING_DURATION_MINUTES)

        details = {
            "event_id": event_id or uuid.uuid4().hex,
            "meet_link": meet_link,
            "start_time": start.isoformat(),
            "end_time": end.isoformat(),
        }
        match.virtual_meeting_scheduled_at = start
        match.virtual_meeting_details = details
        await self._advance(
            db_session, match, "schedule_virtual_meeting",
            MatchStage.VIRTUAL_MEETING_SCHEDULED, sequence, matchmaker_id, details,
        )
        await self._notifications.notify_both_members(
            db_session, match, "virtual_meeting_scheduled", metrics={"meeting": details}
        )

        await self._flush(db_session, match)
        logger.info("virtual_meeting_scheduled", match_id=str(match.id), start_time=details["start_time"])
        return match

    async def complete_virtual_meeting(
        self,
        db_session: AsyncSession,
        match_id: uuid.UUID,
        matchmaker_id: uuid.UUID | None = None,
        notes: str | None = None,
    ) -> Match:
        match = await self.get_match(db_session, match_id)
        self._require_matchmaker(match, matchmaker_id)
        if match.stage_enum in STAGE_ORDER and not match.virtual_meeting_scheduled:
            raise PreconditionFailedError(
                "Virtual meeting must be scheduled before it can be completed",
                {"matchId": str(match.id), "stage": match.stage},
            )
        self._require(match, "complete_virtual_meeting")
        sequence = await self._next_sequence(db_session, match.id)

        match.virtual_meeting_completed_at = utcnow()
        if notes:
            match.matchmaker_notes = notes
        match.member1.has_completed_first_virtual_meeting = True
        match.member2.has_completed_first_virtual_meeting = True
        await self._advance(
            db_session, match, "complete_virtual_meeting",
            MatchStage.VIRTUAL_MEETING_COMPLETED, sequence, matchmaker_id,
        )
        await self._notifications.notify_both_members(db_session, match, "virtual_meeting_completed")

        await self._flush(db_session, match)
        logger.info("virtual_meeting_completed", match_id=str(match.id))
        return match

    # ══════════════════════════════════════════════════════════════════
    # Matchmaker approvals
    # ══════════════════════════════════════════════════════════════════

    async def matchmaker_approve(
        self,
        db_session: AsyncSession,
        match_id: uuid.UUID,
        matchmaker_id: uuid.UUID | None = None,
        notes: str | None = None,
    ) -> Match:
        match = await self.get_match(db_session, match_id)
        self._require_matchmaker(match, matchmaker_id)
        self._require(match, "matchmaker_approve")
        sequence = await self._next_sequence(db_session, match.id)

        match.matchmaker_approved_at = utcnow()
        if notes:
            match.matchmaker_notes = notes
        await self._advance(
            db_session, match, "matchmaker_approve",
            MatchStage.MATCHMAKER_APPROVED, sequence, matchmaker_id,
        )
        await self._notifications.notify_both_members(db_session, match, "matchmaker_approved")

        await self._flush(db_session, match)
        logger.info("match_matchmaker_approved", match_id=str(match.id))
        return match

    async def approve_match_for_date(
        self,
        db_session: AsyncSession,
        match_id: uuid.UUID,
        matchmaker_id: uuid.UUID | None = None,
    ) -> Match:
        """Final sign-off after the virtual meeting."""
        match = await self.get_match(db_session, match_id)
        self._require_matchmaker(match, matchmaker_id)
        if not match.virtual_meeting_completed:
            raise PreconditionFailedError(
                VIRTUAL_MEETING_REQUIRED_MESSAGE,
                {"matchId": str(match.id), "stage": match.stage},
            )
        self._require(match, "approve_date")
        sequence = await self._next_sequence(db_session, match.id)

        match.date_approved_at = utcnow()
        match.date_approved_by = matchmaker_id
        await self._advance(
            db_session, match, "approve_date", MatchStage.DATE_APPROVED, sequence, matchmaker_id
        )
        await self._notifications.notify_date_approved(db_session, match)

        await self._flush(db_session, match)
        logger.info("match_date_approved", match_id=str(match.id))
        return match

    # ══════════════════════════════════════════════════════════════════
    # Explanations
    # ══════════════════════════════════════════════════════════════════

    async def generate_match_explanation(
        self,
        db_session: AsyncSession,
        member1_id: uuid.UUID,
        member2_id: uuid.UUID,
        match_id: uuid.UUID | None = None,
    ) -> ExplanationResult:
        """Generate both members' explanation points and store them.

        Raises
        ------
        LowDataQualityError
            When the profiles score below ``MIN_DATA_QUALITY_SCORE``.  The
            error is recorded before raising.
        """
        member1 = await self._get_user(db_session, member1_id)
        member2 = await self._get_user(db_session, member2_id)
        match = await self.get_match(db_session, match_id) if match_id else None

        quality = ExplanationService.calculate_data_quality_score(member1, member2)
        if quality < self._settings.MIN_DATA_QUALITY_SCORE:
            await self._monitoring.record_error(
                db_session, match_id, "insufficient_data",
                f"Data quality score {quality} below minimum", status_code=400,
            )
            raise LowDataQualityError(
                "Insufficient profile data to generate an explanation",
                {"dataQualityScore": quality, "minimum": self._settings.MIN_DATA_QUALITY_SCORE},
            )

        result = await self.explanations.generate_for_users(
            member1,
            member2,
            match.matching_points if match else None,
            match.compatibility_score if match else None,
        )

        await self._monitoring.record_generation(db_session, match_id, result.metrics, quality)
        if result.error_type:
            await self._monitoring.record_error(
                db_session, match_id, result.error_type, f"Explanation source: {result.source}"
            )

        if match is not None:
            match.member1_explanation = result.member1_json()
            match.member2_explanation = result.member2_json()
            match.explanation_generated_at = utcnow()
            match.explanation_metrics = {**result.metrics, "data_quality_score": quality}
            await self._flush(db_session, match)

        return result

    async def send_with_explanation(
        self,
        db_session: AsyncSession,
        match_id: uuid.UUID,
        is_resend: bool = False,
        regenerate_explanation: bool = False,
    ) -> dict[str, Any]:
        """Deliver a match proposal to both members.

        Generates the explanation when the match has none (or when a resend
        asks for a fresh one), then writes one ``match_proposal``
        notification per member.

        Returns
        -------
        dict
            ``{success, matchId, notificationIds, explanation, metrics}``
        """
        start = time.monotonic()
        match = await self.get_match(db_session, match_id)
        member1, member2 = match.member1, match.member2
        if member1 is None or member2 is None:
            raise MemberNotFoundError("Member not found", {"matchId": str(match.id)})

        log = logger.bind(match_id=str(match.id), is_resend=is_resend)
        log.info("send_with_explanation_start", regenerate=regenerate_explanation)

        if not match.member1_explanation or (is_resend and regenerate_explanation):
            try:
                await self.generate_match_explanation(
                    db_session, member1.id, member2.id, match.id
                )
            except LowDataQualityError as exc:
                log.warning("explanation_skipped", reason=exc.message, **exc.details)

        member1_text = self._explanation_text(match, 1)
        member2_text = self._explanation_text(match, 2)

        metrics = {
            "processingTimeMs": round((time.monotonic() - start) * 1000, 2),
            "isResend": is_resend,
            "regeneratedExplanation": regenerate_explanation,
        }
        first = await self._notifications.notify_member(
            db_session, match, member1, member2, "match_proposal",
            metrics=metrics, explanation_text=member1_text,
        )
        second = await self._notifications.notify_member(
            db_session, match, member2, member1, "match_proposal",
            metrics=metrics, explanation_text=member2_text,
        )
        notification_ids = [str(first.id), str(second.id)]

        for member in (member1, member2):
            await self._monitoring.record_engagement(db_session, match.id, member.id, "viewed")

        now = utcnow()
        total_ms = round((time.monotonic() - start) * 1000, 2)
        match.notification_ids = notification_ids
        match.sent_to_member_at = now
        match.processing_metrics = {
            "totalProcessingTimeMs": total_ms,
            "sentAt": now.isoformat(),
            "isResend": is_resend,
            "regeneratedExplanation": regenerate_explanation,
        }
        if is_resend:
            match.resend_count = (match.resend_count or 0) + 1
            match.last_resend_at = now

        await self._flush(db_session, match)
        log.info("send_with_explanation_complete", processing_ms=total_ms)

        return {
            "success": True,
            "matchId": str(match.id),
            "notificationIds": notification_ids,
            "explanation": {"member1": member1_text, "member2": member2_text},
            "metrics": {"processingTimeMs": total_ms},
        }

    @staticmethod
    def _explanation_text(match: Match, slot: int) -> str:
        raw = match.member1_explanation if slot == 1 else match.member2_explanation
        return points_to_text(decode_points(raw)) or FALLBACK_SENTENCE

    # ══════════════════════════════════════════════════════════════════
    # Reads
    # ══════════════════════════════════════════════════════════════════

    async def list_member_matches(
        self,
        db_session: AsyncSession,
        user_id: uuid.UUID,
        stage: MatchStage | None = None,
    ) -> list[Match]:
        stmt = select(Match).where(
            or_(Match.member1_id == user_id, Match.member2_id == user_id)
        )
        if stage is not None:
            stmt = stmt.where(Match.stage == stage.value)
        stmt = stmt.order_by(Match.created_at.desc())
        return list((await db_session.execute(stmt)).scalars().all())

    async def list_transitions(
        self,
        db_session: AsyncSession,
        match_id: uuid.UUID,
    ) -> list[MatchTransition]:
        await self.get_match(db_session, match_id)
        stmt = (
            select(MatchTransition)
            .where(MatchTransition.match_id == match_id)
            .order_by(MatchTransition.sequence)
        )
        return list((await db_session.execute(stmt)).scalars().all())
