"""
Vettly — Match and MatchTransition models.

A match moves through an explicit ``stage``.  The coarse ``status`` and the
progress flags clients used to read (``payment_required``,
``virtual_meeting_completed``, ...) are derived from it rather than stored.
"""

import enum
import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.database import Base, JSONType, utcnow


class MatchStage(str, enum.Enum):
    PENDING = "pending"
    ACCEPTED_BY_ONE = "accepted_by_one"
    ACCEPTED_BY_BOTH = "accepted_by_both"
    PAYMENT_REQUIRED = "payment_required"
    PAYMENT_COMPLETED = "payment_completed"
    VIRTUAL_MEETING_REQUIRED = "virtual_meeting_required"
    VIRTUAL_MEETING_SCHEDULED = "virtual_meeting_scheduled"
    VIRTUAL_MEETING_COMPLETED = "virtual_meeting_completed"
    MATCHMAKER_APPROVED = "matchmaker_approved"
    DATE_APPROVED = "date_approved"
    DECLINED = "declined"
    EXPIRED = "expired"


# Forward progression; terminal failure stages are not part of it.
STAGE_ORDER: list[MatchStage] = [
    MatchStage.PENDING,
    MatchStage.ACCEPTED_BY_ONE,
    MatchStage.ACCEPTED_BY_BOTH,
    MatchStage.PAYMENT_REQUIRED,
    MatchStage.PAYMENT_COMPLETED,
    MatchStage.VIRTUAL_MEETING_REQUIRED,
    MatchStage.VIRTUAL_MEETING_SCHEDULED,
    MatchStage.VIRTUAL_MEETING_COMPLETED,
    MatchStage.MATCHMAKER_APPROVED,
    MatchStage.DATE_APPROVED,
]


class Match(Base):
    __tablename__ = "matches"
    __table_args__ = (
        UniqueConstraint("member1_id", "member2_id", name="uq_match_pair"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4
    )
    member1_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    member2_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    matchmaker_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    stage: Mapped[str] = mapped_column(
        String(32), default=MatchStage.PENDING.value, nullable=False, index=True
    )

    # ── Scoring ────────────────────────────────────────────────────
    compatibility_score: Mapped[int] = mapped_column(
        Integer, nullable=False, comment="0-100"
    )
    compatibility_breakdown: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
    compatibility_degraded: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False
    )
    matching_points: Mapped[list | None] = mapped_column(
        JSONType, nullable=True, comment="[{category, description, score}]"
    )

    # ── Explanations (JSON-encoded [{header, explanation}]) ────────
    member1_explanation: Mapped[str | None] = mapped_column(Text, nullable=True)
    member2_explanation: Mapped[str | None] = mapped_column(Text, nullable=True)
    explanation_generated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    explanation_metrics: Mapped[dict | None] = mapped_column(JSONType, nullable=True)

    # ── Acceptance ─────────────────────────────────────────────────
    member1_accepted: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    member1_accepted_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    member2_accepted: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    member2_accepted_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    approved_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    declined_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    declined_by: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    decline_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    expires_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True, index=True
    )
    expired_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    # ── Payment ────────────────────────────────────────────────────
    payment_completed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    payment_method: Mapped[str | None] = mapped_column(String, nullable=True)
    membership_plan: Mapped[str | None] = mapped_column(String, nullable=True)

    # ── Virtual meeting & matchmaker approval ─────────────────────
    virtual_meeting_scheduled_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    virtual_meeting_details: Mapped[dict | None] = mapped_column(
        JSONType, nullable=True, comment="{event_id, meet_link, start_time, end_time}"
    )
    virtual_meeting_completed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    matchmaker_approved_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    matchmaker_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    date_approved_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    date_approved_by: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)

    # ── Delivery bookkeeping ───────────────────────────────────────
    notification_ids: Mapped[list | None] = mapped_column(JSONType, nullable=True)
    sent_to_member_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    processing_metrics: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
    resend_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_resend_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    has_matchmaker_notification: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False
    )
    last_notification_type: Mapped[str | None] = mapped_column(String, nullable=True)
    last_notification_time: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    version: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), onupdate=utcnow, nullable=True
    )

    __mapper_args__ = {"version_id_col": version}

    # ── Relationships ──────────────────────────────────────────────
    member1: Mapped["User"] = relationship(
        "User", foreign_keys=[member1_id], lazy="selectin"
    )
    member2: Mapped["User"] = relationship(
        "User", foreign_keys=[member2_id], lazy="selectin"
    )
    matchmaker: Mapped[Optional["User"]] = relationship(
        "User", foreign_keys=[matchmaker_id], lazy="selectin"
    )

    # ── Derived state ──────────────────────────────────────────────

    @property
    def stage_enum(self) -> MatchStage:
        return MatchStage(self.stage)

    def has_reached(self, stage: MatchStage) -> bool:
        """True when the match is at or past ``stage`` on the forward path."""
        current = self.stage_enum
        if current not in STAGE_ORDER:
            return False
        return STAGE_ORDER.index(current) >= STAGE_ORDER.index(stage)

    @property
    def status(self) -> str:
        current = self.stage_enum
        if current in (MatchStage.PENDING, MatchStage.ACCEPTED_BY_ONE):
            return "pending"
        if current == MatchStage.DECLINED:
            return "declined"
        if current == MatchStage.EXPIRED:
            return "expired"
        return "approved"

    @property
    def payment_required(self) -> bool:
        return self.has_reached(MatchStage.PAYMENT_REQUIRED)

    @property
    def payment_completed(self) -> bool:
        return self.has_reached(MatchStage.PAYMENT_COMPLETED)

    @property
    def virtual_meeting_required(self) -> bool:
        return self.has_reached(MatchStage.VIRTUAL_MEETING_REQUIRED)

    @property
    def virtual_meeting_scheduled(self) -> bool:
        return self.has_reached(MatchStage.VIRTUAL_MEETING_SCHEDULED)

    @property
    def virtual_meeting_completed(self) -> bool:
        return self.has_reached(MatchStage.VIRTUAL_MEETING_COMPLETED)

    @property
    def matchmaker_approved(self) -> bool:
        return self.has_reached(MatchStage.MATCHMAKER_APPROVED)

    @property
    def date_approved(self) -> bool:
        return self.stage_enum == MatchStage.DATE_APPROVED

    def member_slot(self, user_id: uuid.UUID) -> int | None:
        """Return 1 or 2 for a member of this match, ``None`` otherwise."""
        if user_id == self.member1_id:
            return 1
        if user_id == self.member2_id:
            return 2
        return None

    def __repr__(self) -> str:
        return (
            f"<Match {self.member1_id} <-> {self.member2_id} "
            f"stage={self.stage!r} score={self.compatibility_score}>"
        )


class MatchTransition(Base):
    """Append-only history of stage changes, written in the same
    transaction as the match update it records."""

    __tablename__ = "match_transitions"
    __table_args__ = (
        UniqueConstraint("match_id", "sequence", name="uq_match_transition_sequence"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4
    )
    match_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("matches.id", ondelete="CASCADE"), nullable=False, index=True
    )
    action: Mapped[str] = mapped_column(String, nullable=False)
    from_stage: Mapped[str] = mapped_column(String(32), nullable=False)
    to_stage: Mapped[str] = mapped_column(String(32), nullable=False)
    actor_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    payload: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
    sequence: Mapped[int] = mapped_column(
        Integer, nullable=False, comment="Position in the match history"
    )
    occurred_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False
    )

    def __repr__(self) -> str:
        return f"<MatchTransition {self.match_id} {self.from_stage}->{self.to_stage}>"
