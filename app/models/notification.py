"""
Vettly — Notification models.

Three channels, one table each:

- ``member_notifications``        — proposal / progress updates shown to members
- ``matchmaker_notifications``    — accept / decline events for the matchmaker
- ``match_approval_notifications`` — date-approved notices for members

Primary keys are deterministic (see ``notification_service.notification_id``)
so that re-emitting the same transition overwrites the existing row.
"""

import uuid
from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, String, Text, Uuid, func
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base, JSONType, utcnow


class MemberNotification(Base):
    __tablename__ = "member_notifications"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True)
    member_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    match_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("matches.id", ondelete="CASCADE"), nullable=False, index=True
    )
    type: Mapped[str] = mapped_column(String, nullable=False)
    status: Mapped[str] = mapped_column(
        String, default="pending", nullable=False, comment="pending / viewed / read"
    )
    message: Mapped[str | None] = mapped_column(Text, nullable=True)
    match_data: Mapped[dict | None] = mapped_column(
        JSONType, nullable=True, comment="Denormalized match summary for display"
    )
    metrics: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False
    )
    viewed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    def __repr__(self) -> str:
        return f"<MemberNotification {self.type} member={self.member_id} status={self.status}>"


class MatchmakerNotification(Base):
    __tablename__ = "matchmaker_notifications"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True)
    matchmaker_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    match_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("matches.id", ondelete="CASCADE"), nullable=False, index=True
    )
    member_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    member_name: Mapped[str | None] = mapped_column(String, nullable=True)
    type: Mapped[str] = mapped_column(
        String, nullable=False, comment="match_accepted / match_declined"
    )
    status: Mapped[str] = mapped_column(String, default="pending", nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    additional_data: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False
    )
    viewed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    def __repr__(self) -> str:
        return f"<MatchmakerNotification {self.type} match={self.match_id}>"


class MatchApprovalNotification(Base):
    __tablename__ = "match_approval_notifications"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True)
    member_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    match_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("matches.id", ondelete="CASCADE"), nullable=False, index=True
    )
    type: Mapped[str] = mapped_column(String, nullable=False)
    status: Mapped[str] = mapped_column(String, default="pending", nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    additional_data: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False
    )

    def __repr__(self) -> str:
        return f"<MatchApprovalNotification {self.type} member={self.member_id}>"
