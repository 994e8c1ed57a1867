"""
Vettly — Analytics models (decline counters, explanation monitoring,
compatibility snapshots).

Counters are only ever changed with SQL-side increments (see
``app.database.increment_counters``); per-month and per-type buckets live
in keyed child rows so each bucket increments independently.
"""

import uuid
from datetime import datetime

from sqlalchemy import DateTime, Float, ForeignKey, Integer, String, Text, Uuid, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.database import Base, JSONType, utcnow


class DeclineAnalytics(Base):
    """Per-member decline counters, bucketed by ``YYYY-MM``."""

    __tablename__ = "decline_analytics"

    member_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), primary_key=True
    )
    member_name: Mapped[str | None] = mapped_column(String, nullable=True)
    total_declines: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_updated: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False
    )

    monthly_counts: Mapped[list["DeclineMonthlyCount"]] = relationship(
        lazy="selectin",
        order_by="DeclineMonthlyCount.month",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    @property
    def monthly_declines(self) -> dict[str, int]:
        return {row.month: row.count for row in self.monthly_counts}

    def __repr__(self) -> str:
        return f"<DeclineAnalytics member={self.member_id} total={self.total_declines}>"


class DeclineMonthlyCount(Base):
    __tablename__ = "decline_monthly_counts"

    member_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("decline_analytics.member_id", ondelete="CASCADE"), primary_key=True
    )
    month: Mapped[str] = mapped_column(String(7), primary_key=True, comment="YYYY-MM")
    count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)


class ExplanationEvent(Base):
    __tablename__ = "explanation_events"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4
    )
    match_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True, index=True)
    event_type: Mapped[str] = mapped_column(
        String, nullable=False, comment="generation / error / engagement"
    )
    metrics: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
    error_type: Mapped[str | None] = mapped_column(String, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False
    )


class ExplanationDailyUsage(Base):
    __tablename__ = "explanation_daily_usage"

    date: Mapped[str] = mapped_column(String(10), primary_key=True, comment="YYYY-MM-DD")
    total_generations: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    total_tokens: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    total_errors: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    total_generation_time_ms: Mapped[float] = mapped_column(
        Float, default=0.0, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False
    )

    counts: Mapped[list["ExplanationUsageCount"]] = relationship(
        lazy="selectin",
        order_by="ExplanationUsageCount.key",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    def _bucket(self, kind: str) -> dict[str, int]:
        return {row.key: row.count for row in self.counts if row.kind == kind}

    @property
    def errors_by_type(self) -> dict[str, int]:
        return self._bucket("error")

    @property
    def engagement_by_type(self) -> dict[str, int]:
        return self._bucket("engagement")

    @property
    def average_generation_time_ms(self) -> float:
        if not self.total_generations:
            return 0.0
        return round(self.total_generation_time_ms / self.total_generations, 2)


class ExplanationUsageCount(Base):
    """One day's count for a single error type or engagement action."""

    __tablename__ = "explanation_usage_counts"

    date: Mapped[str] = mapped_column(
        String(10),
        ForeignKey("explanation_daily_usage.date", ondelete="CASCADE"),
        primary_key=True,
    )
    kind: Mapped[str] = mapped_column(String(16), primary_key=True, comment="error / engagement")
    key: Mapped[str] = mapped_column(String, primary_key=True)
    count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)


class CompatibilitySnapshot(Base):
    """Latest batch scoring of one user against all completed questionnaires."""

    __tablename__ = "compatibility_snapshots"

    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), primary_key=True
    )
    matches: Mapped[list] = mapped_column(
        JSONType, default=list, nullable=False,
        comment="[{userId, score, compatible, breakdown, degraded}] sorted desc",
    )
    last_updated: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False
    )
