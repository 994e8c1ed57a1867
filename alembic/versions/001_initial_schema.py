"""Initial schema — all 13 Vettly tables.

Revision ID: 001_initial
Revises:
Create Date: 2025-01-01 00:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "001_initial"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _created_at() -> sa.Column:
    return sa.Column(
        "created_at",
        sa.DateTime(timezone=True),
        server_default=sa.func.now(),
        nullable=False,
    )


def _ts(name: str, **kwargs) -> sa.Column:
    return sa.Column(name, sa.DateTime(timezone=True), nullable=True, **kwargs)


def _user_fk(name: str, nullable: bool = False, ondelete: str = "CASCADE") -> sa.Column:
    return sa.Column(
        name,
        postgresql.UUID(as_uuid=True),
        sa.ForeignKey("users.id", ondelete=ondelete),
        nullable=nullable,
    )


def _match_fk() -> sa.Column:
    return sa.Column(
        "match_id",
        postgresql.UUID(as_uuid=True),
        sa.ForeignKey("matches.id", ondelete="CASCADE"),
        nullable=False,
    )


def upgrade() -> None:
    # ── 1. users ────────────────────────────────────────────────────
    op.create_table(
        "users",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("email", sa.String, unique=True, index=True, nullable=False),
        sa.Column("first_name", sa.String, nullable=False),
        sa.Column("last_name", sa.String, nullable=True),
        sa.Column(
            "role",
            sa.String,
            server_default="member",
            nullable=False,
            comment="member / matchmaker",
        ),
        sa.Column("gender", sa.String, nullable=True, comment="MALE / FEMALE"),
        sa.Column("dob", sa.String, nullable=True, comment="DD.MM.YYYY"),
        sa.Column("age", sa.Integer, nullable=True),
        sa.Column("location", sa.String, nullable=True),
        sa.Column("state", sa.String, nullable=True),
        sa.Column("suburb", sa.String, nullable=True),
        sa.Column("marital_status", sa.String, nullable=True),
        sa.Column("has_children", sa.String, nullable=True),
        sa.Column("profile_photo_url", sa.String, nullable=True),
        sa.Column(
            "questionnaire_answers",
            postgresql.JSONB,
            server_default=sa.text("'{}'::jsonb"),
            nullable=False,
            comment="Flat map of namespaced questionnaire keys",
        ),
        sa.Column(
            "questionnaire_completed",
            sa.Boolean,
            server_default="false",
            nullable=False,
        ),
        sa.Column(
            "has_completed_first_virtual_meeting",
            sa.Boolean,
            server_default="false",
            nullable=False,
        ),
        _created_at(),
        _ts("updated_at"),
        sa.Column("is_active", sa.Boolean, server_default="true", nullable=False),
    )

    # ── 2. matches ──────────────────────────────────────────────────
    op.create_table(
        "matches",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        _user_fk("member1_id"),
        _user_fk("member2_id"),
        _user_fk("matchmaker_id", nullable=True, ondelete="SET NULL"),
        sa.Column("stage", sa.String(32), nullable=False),
        sa.Column("compatibility_score", sa.Integer, nullable=False, comment="0-100"),
        sa.Column("compatibility_breakdown", postgresql.JSONB, nullable=True),
        sa.Column(
            "compatibility_degraded",
            sa.Boolean,
            server_default="false",
            nullable=False,
        ),
        sa.Column(
            "matching_points",
            postgresql.JSONB,
            nullable=True,
            comment="[{category, description, score}]",
        ),
        sa.Column("member1_explanation", sa.Text, nullable=True),
        sa.Column("member2_explanation", sa.Text, nullable=True),
        _ts("explanation_generated_at"),
        sa.Column("explanation_metrics", postgresql.JSONB, nullable=True),
        sa.Column("member1_accepted", sa.Boolean, server_default="false", nullable=False),
        _ts("member1_accepted_at"),
        sa.Column("member2_accepted", sa.Boolean, server_default="false", nullable=False),
        _ts("member2_accepted_at"),
        _ts("approved_at"),
        _ts("declined_at"),
        sa.Column("declined_by", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("decline_reason", sa.Text, nullable=True),
        _ts("expires_at"),
        _ts("expired_at"),
        _ts("payment_completed_at"),
        sa.Column("payment_method", sa.String, nullable=True),
        sa.Column("membership_plan", sa.String, nullable=True),
        _ts("virtual_meeting_scheduled_at"),
        sa.Column(
            "virtual_meeting_details",
            postgresql.JSONB,
            nullable=True,
            comment="{event_id, meet_link, start_time, end_time}",
        ),
        _ts("virtual_meeting_completed_at"),
        _ts("matchmaker_approved_at"),
        sa.Column("matchmaker_notes", sa.Text, nullable=True),
        _ts("date_approved_at"),
        sa.Column("date_approved_by", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("notification_ids", postgresql.JSONB, nullable=True),
        _ts("sent_to_member_at"),
        sa.Column("processing_metrics", postgresql.JSONB, nullable=True),
        sa.Column("resend_count", sa.Integer, server_default="0", nullable=False),
        _ts("last_resend_at"),
        sa.Column(
            "has_matchmaker_notification",
            sa.Boolean,
            server_default="false",
            nullable=False,
        ),
        sa.Column("last_notification_type", sa.String, nullable=True),
        _ts("last_notification_time"),
        sa.Column("version", sa.Integer, nullable=False),
        _created_at(),
        _ts("updated_at"),
        sa.UniqueConstraint("member1_id", "member2_id", name="uq_match_pair"),
    )
    op.create_index("ix_matches_member1_id", "matches", ["member1_id"])
    op.create_index("ix_matches_member2_id", "matches", ["member2_id"])
    op.create_index("ix_matches_stage", "matches", ["stage"])
    op.create_index("ix_matches_expires_at", "matches", ["expires_at"])

    # ── 3. match_transitions ────────────────────────────────────────
    op.create_table(
        "match_transitions",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        _match_fk(),
        sa.Column("action", sa.String, nullable=False),
        sa.Column("from_stage", sa.String(32), nullable=False),
        sa.Column("to_stage", sa.String(32), nullable=False),
        sa.Column("actor_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("payload", postgresql.JSONB, nullable=True),
        sa.Column(
            "sequence",
            sa.Integer,
            nullable=False,
            comment="Position in the match history",
        ),
        sa.Column(
            "occurred_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.UniqueConstraint("match_id", "sequence", name="uq_match_transition_sequence"),
    )
    op.create_index("ix_match_transitions_match_id", "match_transitions", ["match_id"])

    # ── 4-6. notifications ──────────────────────────────────────────
    op.create_table(
        "member_notifications",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        _user_fk("member_id"),
        _match_fk(),
        sa.Column("type", sa.String, nullable=False),
        sa.Column(
            "status",
            sa.String,
            server_default="pending",
            nullable=False,
            comment="pending / viewed / read",
        ),
        sa.Column("message", sa.Text, nullable=True),
        sa.Column(
            "match_data",
            postgresql.JSONB,
            nullable=True,
            comment="Denormalized match summary for display",
        ),
        sa.Column("metrics", postgresql.JSONB, nullable=True),
        _created_at(),
        _ts("viewed_at"),
    )
    op.create_index("ix_member_notifications_member_id", "member_notifications", ["member_id"])
    op.create_index("ix_member_notifications_match_id", "member_notifications", ["match_id"])

    op.create_table(
        "matchmaker_notifications",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        _user_fk("matchmaker_id"),
        _match_fk(),
        sa.Column("member_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("member_name", sa.String, nullable=True),
        sa.Column(
            "type",
            sa.String,
            nullable=False,
            comment="match_accepted / match_declined",
        ),
        sa.Column("status", sa.String, server_default="pending", nullable=False),
        sa.Column("message", sa.Text, nullable=False),
        sa.Column("additional_data", postgresql.JSONB, nullable=True),
        _created_at(),
        _ts("viewed_at"),
    )
    op.create_index(
        "ix_matchmaker_notifications_matchmaker_id",
        "matchmaker_notifications",
        ["matchmaker_id"],
    )
    op.create_index(
        "ix_matchmaker_notifications_match_id",
        "matchmaker_notifications",
        ["match_id"],
    )

    op.create_table(
        "match_approval_notifications",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        _user_fk("member_id"),
        _match_fk(),
        sa.Column("type", sa.String, nullable=False),
        sa.Column("status", sa.String, server_default="pending", nullable=False),
        sa.Column("message", sa.Text, nullable=False),
        sa.Column("additional_data", postgresql.JSONB, nullable=True),
        _created_at(),
    )
    op.create_index(
        "ix_match_approval_notifications_member_id",
        "match_approval_notifications",
        ["member_id"],
    )
    op.create_index(
        "ix_match_approval_notifications_match_id",
        "match_approval_notifications",
        ["match_id"],
    )

    # ── 7-10. analytics ─────────────────────────────────────────────
    op.create_table(
        "decline_analytics",
        sa.Column(
            "member_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("users.id", ondelete="CASCADE"),
            primary_key=True,
        ),
        sa.Column("member_name", sa.String, nullable=True),
        sa.Column("total_declines", sa.Integer, server_default="0", nullable=False),
        sa.Column(
            "last_updated",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
    )

    op.create_table(
        "decline_monthly_counts",
        sa.Column(
            "member_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("decline_analytics.member_id", ondelete="CASCADE"),
            primary_key=True,
        ),
        sa.Column("month", sa.String(7), primary_key=True, comment="YYYY-MM"),
        sa.Column("count", sa.Integer, server_default="0", nullable=False),
    )

    op.create_table(
        "explanation_events",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("match_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column(
            "event_type",
            sa.String,
            nullable=False,
            comment="generation / error / engagement",
        ),
        sa.Column("metrics", postgresql.JSONB, nullable=True),
        sa.Column("error_type", sa.String, nullable=True),
        sa.Column("error_message", sa.Text, nullable=True),
        _created_at(),
    )
    op.create_index("ix_explanation_events_match_id", "explanation_events", ["match_id"])

    op.create_table(
        "explanation_daily_usage",
        sa.Column("date", sa.String(10), primary_key=True, comment="YYYY-MM-DD"),
        sa.Column("total_generations", sa.Integer, server_default="0", nullable=False),
        sa.Column("total_tokens", sa.Integer, server_default="0", nullable=False),
        sa.Column("total_errors", sa.Integer, server_default="0", nullable=False),
        sa.Column(
            "total_generation_time_ms",
            sa.Float,
            server_default="0",
            nullable=False,
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
    )

    op.create_table(
        "explanation_usage_counts",
        sa.Column(
            "date",
            sa.String(10),
            sa.ForeignKey("explanation_daily_usage.date", ondelete="CASCADE"),
            primary_key=True,
        ),
        sa.Column("kind", sa.String(16), primary_key=True, comment="error / engagement"),
        sa.Column("key", sa.String, primary_key=True),
        sa.Column("count", sa.Integer, server_default="0", nullable=False),
    )

    op.create_table(
        "compatibility_snapshots",
        sa.Column(
            "user_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("users.id", ondelete="CASCADE"),
            primary_key=True,
        ),
        sa.Column(
            "matches",
            postgresql.JSONB,
            server_default=sa.text("'[]'::jsonb"),
            nullable=False,
            comment="[{userId, score, compatible, breakdown, degraded}] sorted desc",
        ),
        sa.Column(
            "last_updated",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
    )

    # ── 11-13. weekly tips ──────────────────────────────────────────
    op.create_table(
        "weekly_tips",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("title", sa.String, nullable=False),
        sa.Column("short_description", sa.Text, nullable=True),
        sa.Column("main_content", sa.Text, nullable=False),
        sa.Column("why_this_matters", sa.Text, nullable=True),
        sa.Column(
            "quick_tips",
            postgresql.JSONB,
            server_default=sa.text("'[]'::jsonb"),
            nullable=False,
        ),
        sa.Column("did_you_know", sa.Text, nullable=True),
        sa.Column("weekly_challenge", sa.Text, nullable=True),
        sa.Column("category", sa.String, nullable=False),
        sa.Column(
            "status",
            sa.String,
            server_default="pending",
            nullable=False,
            comment="pending / approved / active / archived / rejected",
        ),
        sa.Column("ai_generated", sa.Boolean, server_default="false", nullable=False),
        sa.Column("view_count", sa.Integer, server_default="0", nullable=False),
        sa.Column("unique_view_count", sa.Integer, server_default="0", nullable=False),
        sa.Column("author_id", sa.String, nullable=True),
        sa.Column("author_name", sa.String, nullable=True),
        sa.Column("rejection_reason", sa.Text, nullable=True),
        _ts("published_at"),
        _ts("expires_at"),
        _ts("approved_at"),
        _ts("rejected_at"),
        _ts("activated_at"),
        _ts("archived_at"),
        _created_at(),
        _ts("updated_at"),
    )
    op.create_index("ix_weekly_tips_category", "weekly_tips", ["category"])
    op.create_index("ix_weekly_tips_status", "weekly_tips", ["status"])
    # At most one active tip even if the pointer is bypassed
    op.create_index(
        "uq_weekly_tips_single_active",
        "weekly_tips",
        ["status"],
        unique=True,
        postgresql_where=sa.text("status = 'active'"),
    )

    op.create_table(
        "active_tip_pointer",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column(
            "tip_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("weekly_tips.id", ondelete="SET NULL"),
            unique=True,
            nullable=True,
        ),
        _ts("activated_at"),
        sa.Column("revision", sa.Integer, server_default="0", nullable=False),
        sa.CheckConstraint("id = 1", name="ck_active_tip_pointer_singleton"),
    )

    op.create_table(
        "tip_views",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        _user_fk("user_id"),
        sa.Column(
            "tip_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("weekly_tips.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "viewed_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.Column(
            "read_status",
            sa.Boolean,
            server_default="false",
            nullable=False,
            comment="True once the tip was read in full",
        ),
        sa.Column("dismissed", sa.Boolean, server_default="false", nullable=False),
        _ts("dismissed_at"),
        sa.UniqueConstraint("user_id", "tip_id", name="uq_tip_view_user_tip"),
    )
    op.create_index("ix_tip_views_user_id", "tip_views", ["user_id"])


def downgrade() -> None:
    # Drop in reverse order (children / dependents first).
    op.drop_index("ix_tip_views_user_id", table_name="tip_views")
    op.drop_table("tip_views")
    op.drop_table("active_tip_pointer")

    op.drop_index("uq_weekly_tips_single_active", table_name="weekly_tips")
    op.drop_index("ix_weekly_tips_status", table_name="weekly_tips")
    op.drop_index("ix_weekly_tips_category", table_name="weekly_tips")
    op.drop_table("weekly_tips")

    op.drop_table("compatibility_snapshots")
    op.drop_table("explanation_usage_counts")
    op.drop_table("explanation_daily_usage")
    op.drop_index("ix_explanation_events_match_id", table_name="explanation_events")
    op.drop_table("explanation_events")
    op.drop_table("decline_monthly_counts")
    op.drop_table("decline_analytics")

    op.drop_index(
        "ix_match_approval_notifications_match_id",
        table_name="match_approval_notifications",
    )
    op.drop_index(
        "ix_match_approval_notifications_member_id",
        table_name="match_approval_notifications",
    )
    op.drop_table("match_approval_notifications")
    op.drop_index(
        "ix_matchmaker_notifications_match_id", table_name="matchmaker_notifications"
    )
    op.drop_index(
        "ix_matchmaker_notifications_matchmaker_id", table_name="matchmaker_notifications"
    )
    op.drop_table("matchmaker_notifications")
    op.drop_index("ix_member_notifications_match_id", table_name="member_notifications")
    op.drop_index("ix_member_notifications_member_id", table_name="member_notifications")
    op.drop_table("member_notifications")

    op.drop_index("ix_match_transitions_match_id", table_name="match_transitions")
    op.drop_table("match_transitions")

    op.drop_index("ix_matches_expires_at", table_name="matches")
    op.drop_index("ix_matches_stage", table_name="matches")
    op.drop_index("ix_matches_member2_id", table_name="matches")
    op.drop_index("ix_matches_member1_id", table_name="matches")
    op.drop_table("matches")

    op.drop_table("users")
