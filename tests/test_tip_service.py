"""Tests for TipService: approval workflow, single active tip, caching, views."""
import json
import uuid

import pytest
from sqlalchemy import func, select

from app.models.tip import ActiveTipPointer, WeeklyTip
from app.services.tip_service import (
    ACTIVE_TIP_CACHE_KEY,
    TipNotFoundError,
    TipStateError,
    category_display_name,
    serialize_tip,
)


def _tip_data(**overrides):
    data = {
        "title": "Ask better questions",
        "short_description": "Go beyond small talk.",
        "main_content": "Open questions invite stories rather than one-word answers.",
        "why_this_matters": "Stories reveal values.",
        "quick_tips": ["Ask why", "Listen", "Follow up", "Share back", "Smile", "Extra"],
        "did_you_know": "People enjoy talking about themselves.",
        "weekly_challenge": "Ask one open question on every date this week.",
        "category": "conversation_starters",
    }
    data.update(overrides)
    return data


@pytest.fixture
def approved_tip(db_session, tip_service):
    async def _make(**overrides):
        tip = await tip_service.create_tip(db_session, _tip_data(**overrides))
        return await tip_service.approve_tip(db_session, tip.id, "mm-1", "Grace")

    return _make


async def _active_count(db_session):
    stmt = select(func.count()).select_from(WeeklyTip).where(WeeklyTip.status == "active")
    return (await db_session.execute(stmt)).scalar_one()


class TestCreateAndUpdate:

    @pytest.mark.asyncio
    async def test_create_pending_tip(self, db_session, tip_service):
        tip = await tip_service.create_tip(db_session, _tip_data(), ai_generated=True)

        assert tip.status == "pending"
        assert tip.ai_generated is True
        assert tip.view_count == 0
        assert len(tip.quick_tips) == 5

    @pytest.mark.asyncio
    async def test_unknown_category(self, db_session, tip_service):
        with pytest.raises(TipStateError):
            await tip_service.create_tip(db_session, _tip_data(category="astrology"))

    @pytest.mark.asyncio
    async def test_update_ignores_none_fields(self, db_session, tip_service):
        tip = await tip_service.create_tip(db_session, _tip_data())

        await tip_service.update_tip(db_session, tip.id, {"title": "New title", "main_content": None})

        assert tip.title == "New title"
        assert tip.main_content.startswith("Open questions")

    @pytest.mark.asyncio
    async def test_missing_tip(self, db_session, tip_service):
        with pytest.raises(TipNotFoundError):
            await tip_service.get_tip(db_session, uuid.uuid4())

    def test_category_display_name(self):
        assert category_display_name("date_ideas") == "Date Ideas"
        assert category_display_name("unknown") == "Dating Tips"


class TestApprovalWorkflow:
    """pending -> approved | rejected; only approved tips can go live."""

    @pytest.mark.asyncio
    async def test_approve_records_matchmaker(self, approved_tip):
        tip = await approved_tip()
        assert tip.status == "approved"
        assert tip.approved_at is not None
        assert tip.author_name == "Grace"

    @pytest.mark.asyncio
    async def test_reject_with_reason(self, db_session, tip_service):
        tip = await tip_service.create_tip(db_session, _tip_data())
        await tip_service.reject_tip(db_session, tip.id, reason="Too generic")
        assert tip.status == "rejected"
        assert tip.rejection_reason == "Too generic"

    @pytest.mark.asyncio
    async def test_rejected_tip_can_be_approved(self, db_session, tip_service):
        tip = await tip_service.create_tip(db_session, _tip_data())
        await tip_service.reject_tip(db_session, tip.id, reason="Too generic")
        await tip_service.approve_tip(db_session, tip.id)
        assert tip.status == "approved"
        assert tip.rejection_reason is None

    @pytest.mark.asyncio
    async def test_pending_tip_cannot_be_activated(self, db_session, tip_service):
        tip = await tip_service.create_tip(db_session, _tip_data())
        with pytest.raises(TipStateError):
            await tip_service.activate_tip(db_session, tip.id)

    @pytest.mark.asyncio
    async def test_active_tip_cannot_be_rejected(self, db_session, tip_service, approved_tip):
        tip = await approved_tip()
        await tip_service.activate_tip(db_session, tip.id)
        with pytest.raises(TipStateError):
            await tip_service.reject_tip(db_session, tip.id)


class TestActivation:
    """Exactly one tip is active at a time."""

    @pytest.mark.asyncio
    async def test_activation_archives_previous(self, db_session, tip_service, approved_tip):
        first = await approved_tip(title="First")
        second = await approved_tip(title="Second")

        await tip_service.activate_tip(db_session, first.id)
        await tip_service.activate_tip(db_session, second.id)

        assert first.status == "archived"
        assert first.archived_at is not None
        assert second.status == "active"
        assert second.published_at is not None
        assert await _active_count(db_session) == 1

        pointer = await db_session.get(ActiveTipPointer, 1)
        assert pointer.tip_id == second.id

    @pytest.mark.asyncio
    async def test_reactivating_active_tip_is_noop(self, db_session, tip_service, approved_tip):
        tip = await approved_tip()
        await tip_service.activate_tip(db_session, tip.id)
        activated_at = tip.activated_at

        await tip_service.activate_tip(db_session, tip.id)

        assert tip.activated_at == activated_at
        assert await _active_count(db_session) == 1

    @pytest.mark.asyncio
    async def test_archived_tip_can_return(self, db_session, tip_service, approved_tip):
        first = await approved_tip(title="First")
        second = await approved_tip(title="Second")
        await tip_service.activate_tip(db_session, first.id)
        await tip_service.activate_tip(db_session, second.id)

        await tip_service.activate_tip(db_session, first.id)

        assert first.status == "active"
        assert second.status == "archived"
        assert await _active_count(db_session) == 1

    @pytest.mark.asyncio
    async def test_archive_clears_pointer(self, db_session, tip_service, approved_tip):
        tip = await approved_tip()
        await tip_service.activate_tip(db_session, tip.id)

        await tip_service.archive_tip(db_session, tip.id)

        pointer = await db_session.get(ActiveTipPointer, 1)
        assert pointer.tip_id is None
        assert await tip_service.get_active_tip(db_session) is None

    @pytest.mark.asyncio
    async def test_delete_active_tip(self, db_session, tip_service, approved_tip):
        tip = await approved_tip()
        await tip_service.activate_tip(db_session, tip.id)

        await tip_service.delete_tip(db_session, tip.id)

        assert await db_session.get(WeeklyTip, tip.id) is None
        assert await tip_service.get_active_tip(db_session) is None


class TestActiveTipCache:

    @pytest.mark.asyncio
    async def test_active_tip_is_cached(self, db_session, tip_service, approved_tip, fake_redis):
        tip = await approved_tip()
        await tip_service.activate_tip(db_session, tip.id)

        data = await tip_service.get_active_tip(db_session)

        cached = json.loads(await fake_redis.get(ACTIVE_TIP_CACHE_KEY))
        pointer = await db_session.get(ActiveTipPointer, 1)
        assert data["id"] == str(tip.id)
        assert cached["tip"]["id"] == str(tip.id)
        assert cached["revision"] == pointer.revision

    @pytest.mark.asyncio
    async def test_current_cache_entry_is_served(self, db_session, tip_service, approved_tip, fake_redis):
        tip = await approved_tip()
        await tip_service.activate_tip(db_session, tip.id)
        await tip_service.get_active_tip(db_session)

        cached = json.loads(await fake_redis.get(ACTIVE_TIP_CACHE_KEY))
        cached["tip"]["title"] = "From cache"
        await fake_redis.set(ACTIVE_TIP_CACHE_KEY, json.dumps(cached))

        assert (await tip_service.get_active_tip(db_session))["title"] == "From cache"

    @pytest.mark.asyncio
    async def test_no_active_tip_ignores_cache(self, db_session, tip_service, fake_redis):
        await fake_redis.set(
            ACTIVE_TIP_CACHE_KEY,
            json.dumps({"revision": 0, "tip": {"id": str(uuid.uuid4())}}),
        )
        assert await tip_service.get_active_tip(db_session) is None

    @pytest.mark.asyncio
    async def test_status_change_replaces_cached_tip(self, db_session, tip_service, approved_tip, fake_redis):
        first = await approved_tip(title="First")
        second = await approved_tip(title="Second")
        await tip_service.activate_tip(db_session, first.id)
        await tip_service.get_active_tip(db_session)

        await tip_service.activate_tip(db_session, second.id)

        assert (await tip_service.get_active_tip(db_session))["title"] == "Second"
        cached = json.loads(await fake_redis.get(ACTIVE_TIP_CACHE_KEY))
        assert cached["tip"]["id"] == str(second.id)

    @pytest.mark.asyncio
    async def test_editing_active_tip_replaces_cached_tip(self, db_session, tip_service, approved_tip):
        tip = await approved_tip()
        await tip_service.activate_tip(db_session, tip.id)
        await tip_service.get_active_tip(db_session)

        await tip_service.update_tip(db_session, tip.id, {"title": "Edited"})

        assert (await tip_service.get_active_tip(db_session))["title"] == "Edited"

    @pytest.mark.asyncio
    async def test_archiving_active_tip_clears_it(self, db_session, tip_service, approved_tip):
        tip = await approved_tip()
        await tip_service.activate_tip(db_session, tip.id)
        await tip_service.get_active_tip(db_session)

        await tip_service.archive_tip(db_session, tip.id)

        assert await tip_service.get_active_tip(db_session) is None

    @pytest.mark.asyncio
    async def test_read_during_uncommitted_activation(self, file_session_factory, tip_service):
        """A reader that caches the old tip mid-activation does not pin it."""
        async with file_session_factory() as session:
            first = await tip_service.create_tip(session, _tip_data(title="First"))
            second = await tip_service.create_tip(session, _tip_data(title="Second"))
            await tip_service.approve_tip(session, first.id, "mm-1", "Grace")
            await tip_service.approve_tip(session, second.id, "mm-1", "Grace")
            await tip_service.activate_tip(session, first.id)
            await session.commit()

        async with file_session_factory() as writer:
            await tip_service.activate_tip(writer, second.id)

            async with file_session_factory() as reader:
                assert (await tip_service.get_active_tip(reader))["title"] == "First"

            await writer.commit()

        async with file_session_factory() as reader:
            assert (await tip_service.get_active_tip(reader))["title"] == "Second"

    @pytest.mark.asyncio
    async def test_serialize_tip(self, approved_tip):
        tip = await approved_tip()
        data = serialize_tip(tip)
        assert data["status"] == "approved"
        assert data["approved_at"] is not None
        assert data["activated_at"] is None
        assert data["category"] == "conversation_starters"


class TestViews:

    @pytest.mark.asyncio
    async def test_first_view_is_unique(self, db_session, tip_service, approved_tip, make_user):
        tip = await approved_tip()
        user = await make_user()

        await tip_service.record_view(db_session, user.id, tip.id)
        await tip_service.record_view(db_session, user.id, tip.id, full_read=True)

        await db_session.refresh(tip)
        assert tip.view_count == 2
        assert tip.unique_view_count == 1
        assert await tip_service.has_user_viewed(db_session, user.id, tip.id)

        views = await tip_service.get_user_viewed_tips(db_session, user.id)
        assert len(views) == 1
        assert views[0].read_status is True

    @pytest.mark.asyncio
    async def test_two_users_two_unique_views(self, db_session, tip_service, approved_tip, make_user):
        tip = await approved_tip()
        for _ in range(2):
            user = await make_user()
            await tip_service.record_view(db_session, user.id, tip.id)

        await db_session.refresh(tip)
        assert tip.unique_view_count == 2

    @pytest.mark.asyncio
    async def test_dismiss_without_prior_view(self, db_session, tip_service, approved_tip, make_user):
        tip = await approved_tip()
        user = await make_user()

        view = await tip_service.dismiss_tip(db_session, user.id, tip.id)

        assert view.dismissed is True
        assert view.dismissed_at is not None

    @pytest.mark.asyncio
    async def test_view_of_missing_tip(self, db_session, tip_service, make_user):
        user = await make_user()
        with pytest.raises(TipNotFoundError):
            await tip_service.record_view(db_session, user.id, uuid.uuid4())
