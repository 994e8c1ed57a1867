"""
Vettly — Weekly tip models.

``ActiveTipPointer`` is a single-row table (``id`` is pinned to 1) whose
``tip_id`` names the one active tip.  Activation swaps the pointer and the
two tips' statuses inside one transaction.
"""

import uuid
from datetime import datetime

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    func,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base, JSONType, utcnow

TIP_STATUSES = ("pending", "approved", "active", "archived", "rejected")


class WeeklyTip(Base):
    __tablename__ = "weekly_tips"
    __table_args__ = (
        Index(
            "uq_weekly_tips_single_active",
            "status",
            unique=True,
            postgresql_where=text("status = 'active'"),
            sqlite_where=text("status = 'active'"),
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4
    )
    title: Mapped[str] = mapped_column(String, nullable=False)
    short_description: Mapped[str | None] = mapped_column(Text, nullable=True)
    main_content: Mapped[str] = mapped_column(Text, nullable=False)
    why_this_matters: Mapped[str | None] = mapped_column(Text, nullable=True)
    quick_tips: Mapped[list] = mapped_column(JSONType, default=list, nullable=False)
    did_you_know: Mapped[str | None] = mapped_column(Text, nullable=True)
    weekly_challenge: Mapped[str | None] = mapped_column(Text, nullable=True)
    category: Mapped[str] = mapped_column(String, nullable=False, index=True)
    status: Mapped[str] = mapped_column(
        String, default="pending", nullable=False, index=True,
        comment="pending / approved / active / archived / rejected",
    )
    ai_generated: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    view_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    unique_view_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    author_id: Mapped[str | None] = mapped_column(String, nullable=True)
    author_name: Mapped[str | None] = mapped_column(String, nullable=True)
    rejection_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    published_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    expires_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    approved_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    rejected_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    activated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    archived_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), onupdate=utcnow, nullable=True
    )

    def __repr__(self) -> str:
        return f"<WeeklyTip {self.title!r} status={self.status}>"


class ActiveTipPointer(Base):
    """Singleton row naming the active tip.

    ``revision`` goes up on every change to what members should see, so a
    cached copy of the active tip can be checked against it.
    """

    __tablename__ = "active_tip_pointer"
    __table_args__ = (
        CheckConstraint("id = 1", name="ck_active_tip_pointer_singleton"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, default=1)
    tip_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("weekly_tips.id", ondelete="SET NULL"), nullable=True, unique=True
    )
    activated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    revision: Mapped[int] = mapped_column(Integer, default=0, server_default="0", nullable=False)


class TipView(Base):
    __tablename__ = "tip_views"
    __table_args__ = (
        UniqueConstraint("user_id", "tip_id", name="uq_tip_view_user_tip"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    tip_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("weekly_tips.id", ondelete="CASCADE"), nullable=False
    )
    viewed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False
    )
    read_status: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False, comment="True once the tip was read in full"
    )
    dismissed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    dismissed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
