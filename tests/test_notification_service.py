"""Tests for NotificationService: deterministic ids and read helpers."""
import uuid
from datetime import timedelta

import pytest
from sqlalchemy import func, select

from app.models.notification import MemberNotification
from app.services.notification_service import (
    DEFAULT_MATCHMAKER_NAME,
    NotificationService,
    decode_points,
    notification_id,
)


@pytest.fixture
def notifications():
    return NotificationService()


@pytest.fixture
def proposed(db_session, approval_service, make_user):
    async def _proposed(matchmaker_id=None):
        member1 = await make_user(first_name="Sam")
        member2 = await make_user(first_name="Alex", gender="FEMALE")
        match = await approval_service.create_match(
            db_session, member1.id, member2.id, matchmaker_id
        )
        return match, member1, member2

    return _proposed


async def _count(db_session):
    return (await db_session.execute(select(func.count()).select_from(MemberNotification))).scalar_one()


class TestNotificationIds:

    def test_deterministic(self):
        recipient, match = uuid.uuid4(), uuid.uuid4()
        assert notification_id("member", recipient, match, "match_proposal") == notification_id(
            "member", recipient, match, "match_proposal"
        )

    def test_channel_and_type_distinguish(self):
        recipient, match = uuid.uuid4(), uuid.uuid4()
        ids = {
            notification_id("member", recipient, match, "match_proposal"),
            notification_id("member", recipient, match, "match_declined"),
            notification_id("matchmaker", recipient, match, "match_proposal"),
        }
        assert len(ids) == 3


class TestNotifyMember:
    """Re-emitting the same event overwrites instead of duplicating."""

    @pytest.mark.asyncio
    async def test_repeat_overwrites(self, db_session, notifications, proposed):
        match, member1, member2 = await proposed()

        first = await notifications.notify_member(db_session, match, member1, member2, "match_proposal")
        first.status = "viewed"
        await db_session.flush()
        second = await notifications.notify_member(db_session, match, member1, member2, "match_proposal")
        await db_session.flush()

        assert first.id == second.id
        assert second.status == "pending"
        assert await _count(db_session) == 1

    @pytest.mark.asyncio
    async def test_match_data_without_matchmaker(self, db_session, notifications, proposed):
        match, member1, member2 = await proposed()

        notification = await notifications.notify_member(
            db_session, match, member2, member1, "match_proposal", explanation_text="Great fit."
        )

        data = notification.match_data
        assert data["otherMemberId"] == str(member1.id)
        assert data["compatibilityScore"] == match.compatibility_score
        assert data["compatibilityExplanation"] == "Great fit."
        assert data["matchmakerName"] == DEFAULT_MATCHMAKER_NAME
        assert data["matchmakerId"] is None

    @pytest.mark.asyncio
    async def test_message_uses_other_name(self, db_session, notifications, proposed):
        match, member1, member2 = await proposed()
        notification = await notifications.notify_member(
            db_session, match, member1, member2, "match_declined"
        )
        assert notification.message == "Your proposed match with Alex has been declined."

    def test_decode_points(self):
        assert decode_points(None) == []
        assert decode_points("not json") == []
        assert decode_points('{"a": 1}') == []
        assert decode_points('[{"header": "h"}]') == [{"header": "h"}]


class TestReadSide:

    @pytest.mark.asyncio
    async def test_latest_per_match(self, db_session, notifications, proposed):
        match, member1, member2 = await proposed()
        older = await notifications.notify_member(db_session, match, member1, member2, "match_proposal")
        older.created_at = older.created_at - timedelta(minutes=5)
        await notifications.notify_member(db_session, match, member1, member2, "match_approved")
        await db_session.flush()

        latest = await notifications.list_member_notifications(db_session, member1.id)
        everything = await notifications.list_member_notifications(
            db_session, member1.id, latest_per_match=False
        )

        assert [n.type for n in latest] == ["match_approved"]
        assert [n.type for n in everything] == ["match_approved", "match_proposal"]

    @pytest.mark.asyncio
    async def test_mark_viewed(self, db_session, notifications, proposed):
        match, member1, member2 = await proposed()
        notification = await notifications.notify_member(db_session, match, member1, member2, "match_proposal")
        await db_session.flush()

        viewed = await notifications.mark_viewed(db_session, notification.id)

        assert viewed.status == "viewed"
        assert viewed.viewed_at is not None
        assert await notifications.mark_viewed(db_session, uuid.uuid4()) is None

    @pytest.mark.asyncio
    async def test_mark_all_viewed(self, db_session, notifications, proposed):
        match, member1, member2 = await proposed()
        await notifications.notify_both_members(db_session, match, "match_expired")
        await notifications.notify_member(db_session, match, member1, member2, "match_proposal")
        await db_session.flush()

        updated = await notifications.mark_all_viewed(db_session, member1.id)

        assert updated == 2
        rows = await notifications.list_member_notifications(
            db_session, member2.id, latest_per_match=False
        )
        assert [n.status for n in rows] == ["pending"]

    @pytest.mark.asyncio
    async def test_matchmaker_status_filter(self, db_session, notifications, proposed, matchmaker):
        match, member1, _ = await proposed(matchmaker.id)
        await notifications.notify_match_declined(db_session, match, member1, None)
        await db_session.flush()

        pending = await notifications.list_matchmaker_notifications(db_session, matchmaker.id, "pending")
        viewed = await notifications.list_matchmaker_notifications(db_session, matchmaker.id, "viewed")

        assert len(pending) == 1
        assert pending[0].additional_data["reason"] == "No reason provided"
        assert viewed == []
