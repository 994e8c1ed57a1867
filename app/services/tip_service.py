"""
Vettly — Weekly tip lifecycle

Tips move ``pending -> approved | rejected``, then ``approved -> active ->
archived``.  Exactly one tip is active at a time: activation locks the
single ``ActiveTipPointer`` row, archives whatever it points at and swaps
the pointer, all in the caller's transaction.

The active tip is read on every member page load, so its serialized form
is cached in Redis.  Every change members should see bumps the pointer's
``revision`` inside the same transaction; a cached copy is only served
while its revision matches the committed pointer row.
"""

from __future__ import annotations

import json
import uuid
from typing import Any

import structlog
from redis.exceptions import RedisError
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import get_settings
from app.database import utcnow
from app.models.tip import ActiveTipPointer, TipView, WeeklyTip

logger = structlog.get_logger("vettly.tip_service")

TIP_CATEGORIES: dict[str, str] = {
    "profile_improvement": "Profile Improvement",
    "conversation_starters": "Conversation Starters",
    "date_ideas": "Date Ideas",
    "relationship_advice": "Relationship Advice",
    "matchmaking_insights": "Matchmaking Insights",
    "self_improvement": "Self Improvement",
}

ACTIVE_TIP_CACHE_KEY = "vettly:weekly_tip:active"

_EDITABLE_FIELDS = (
    "title",
    "short_description",
    "main_content",
    "why_this_matters",
    "quick_tips",
    "did_you_know",
    "weekly_challenge",
    "category",
)

_DATETIME_FIELDS = (
    "published_at",
    "expires_at",
    "approved_at",
    "rejected_at",
    "activated_at",
    "archived_at",
    "created_at",
    "updated_at",
)


class TipNotFoundError(LookupError):
    pass


class TipStateError(ValueError):
    """The tip's status does not allow the requested change."""


def category_display_name(category: str) -> str:
    return TIP_CATEGORIES.get(category, "Dating Tips")


def serialize_tip(tip: WeeklyTip) -> dict[str, Any]:
    data: dict[str, Any] = {
        "id": str(tip.id),
        "status": tip.status,
        "ai_generated": tip.ai_generated,
        "view_count": tip.view_count,
        "unique_view_count": tip.unique_view_count,
        "author_id": tip.author_id,
        "author_name": tip.author_name,
        "rejection_reason": tip.rejection_reason,
    }
    for name in _EDITABLE_FIELDS:
        data[name] = getattr(tip, name)
    for name in _DATETIME_FIELDS:
        value = getattr(tip, name)
        data[name] = value.isoformat() if value else None
    return data


class TipService:
    """CRUD, approval workflow and view tracking for weekly tips."""

    def __init__(self, redis: Any | None = None) -> None:
        self._redis = redis
        self._cache_ttl = get_settings().ACTIVE_TIP_CACHE_TTL_SECONDS

    async def _get_redis(self) -> Any:
        if self._redis is None:
            import redis.asyncio as aioredis

            settings = get_settings()
            self._redis = aioredis.from_url(
                settings.REDIS_URL,
                decode_responses=True,
                socket_connect_timeout=5,
            )
            logger.info("tip_service_redis_connected")
        return self._redis

    # ── Cache helpers ─────────────────────────────────────────────────────

    async def _load_cached_active(self) -> dict | None:
        redis = await self._get_redis()
        try:
            raw = await redis.get(ACTIVE_TIP_CACHE_KEY)
        except RedisError:
            logger.exception("active_tip_cache_load_failed")
            return None
        if raw is None:
            logger.debug("active_tip_cache_miss")
            return None
        return json.loads(raw)

    async def _cache_active(self, data: dict) -> None:
        redis = await self._get_redis()
        try:
            await redis.setex(ACTIVE_TIP_CACHE_KEY, self._cache_ttl, json.dumps(data))
        except RedisError:
            logger.exception("active_tip_cache_store_failed")

    @staticmethod
    def _bump_revision(pointer: ActiveTipPointer) -> None:
        pointer.revision = (pointer.revision or 0) + 1

    # ── Loading ───────────────────────────────────────────────────────────

    async def get_tip(self, db_session: AsyncSession, tip_id: uuid.UUID) -> WeeklyTip:
        tip = await db_session.get(WeeklyTip, tip_id)
        if tip is None:
            raise TipNotFoundError(f"Tip {tip_id} not found")
        return tip

    async def _pointer(self, db_session: AsyncSession) -> ActiveTipPointer:
        """Lock and return the singleton pointer row, creating it if needed."""
        stmt = select(ActiveTipPointer).where(ActiveTipPointer.id == 1).with_for_update()
        pointer = (await db_session.execute(stmt)).scalar_one_or_none()
        if pointer is None:
            pointer = ActiveTipPointer(id=1, tip_id=None, revision=0)
            db_session.add(pointer)
            await db_session.flush()
        return pointer

    # ── CRUD ──────────────────────────────────────────────────────────────

    async def create_tip(
        self,
        db_session: AsyncSession,
        data: dict[str, Any],
        ai_generated: bool = False,
        author_id: str | None = None,
        author_name: str | None = None,
    ) -> WeeklyTip:
        """Create a tip in ``pending`` status.

        Parameters
        ----------
        data:
            Any of the editable fields.  ``title``, ``main_content`` and
            ``category`` are required.
        ai_generated:
            Marks tips produced by the generator.
        """
        category = data.get("category")
        if category not in TIP_CATEGORIES:
            raise TipStateError(f"Unknown tip category {category!r}")

        tip = WeeklyTip(
            id=uuid.uuid4(),
            title=data["title"],
            short_description=data.get("short_description"),
            main_content=data["main_content"],
            why_this_matters=data.get("why_this_matters"),
            quick_tips=list(data.get("quick_tips") or [])[:5],
            did_you_know=data.get("did_you_know"),
            weekly_challenge=data.get("weekly_challenge"),
            category=category,
            status="pending",
            ai_generated=ai_generated,
            view_count=0,
            unique_view_count=0,
            author_id=author_id,
            author_name=author_name,
            created_at=utcnow(),
        )
        db_session.add(tip)
        await db_session.flush()

        logger.info("tip_created", tip_id=str(tip.id), category=category, ai_generated=ai_generated)
        return tip

    async def update_tip(
        self,
        db_session: AsyncSession,
        tip_id: uuid.UUID,
        updates: dict[str, Any],
    ) -> WeeklyTip:
        tip = await self.get_tip(db_session, tip_id)
        if "category" in updates and updates["category"] not in TIP_CATEGORIES:
            raise TipStateError(f"Unknown tip category {updates['category']!r}")

        # Lock the pointer before touching the tip row, same order as activation.
        if tip.status == "active":
            self._bump_revision(await self._pointer(db_session))

        for name in _EDITABLE_FIELDS:
            if name in updates and updates[name] is not None:
                value = updates[name]
                setattr(tip, name, list(value)[:5] if name == "quick_tips" else value)
        await db_session.flush()

        logger.info("tip_updated", tip_id=str(tip.id), fields=sorted(updates))
        return tip

    async def list_tips(
        self,
        db_session: AsyncSession,
        status: str | None = None,
        limit: int = 50,
    ) -> list[WeeklyTip]:
        stmt = select(WeeklyTip)
        if status is not None:
            stmt = stmt.where(WeeklyTip.status == status)
        stmt = stmt.order_by(WeeklyTip.created_at.desc()).limit(limit)
        return list((await db_session.execute(stmt)).scalars().all())

    async def get_active_tip(self, db_session: AsyncSession) -> dict | None:
        """Serialized active tip, served from Redis while still current.

        The pointer row is read on every call (a primary-key lookup).  A
        cached copy is used only when it was stored under the pointer's
        current ``revision``; a copy written by a reader that raced an
        uncommitted change carries the old revision and is replaced on the
        next read after that change commits.
        """
        stmt = select(ActiveTipPointer.tip_id, ActiveTipPointer.revision).where(
            ActiveTipPointer.id == 1
        )
        pointer = (await db_session.execute(stmt)).one_or_none()
        if pointer is None or pointer.tip_id is None:
            return None

        cached = await self._load_cached_active()
        if (
            cached is not None
            and cached.get("revision") == pointer.revision
            and (cached.get("tip") or {}).get("id") == str(pointer.tip_id)
        ):
            logger.debug("active_tip_cache_hit", tip_id=str(pointer.tip_id))
            return cached["tip"]

        tip = await db_session.get(WeeklyTip, pointer.tip_id)
        if tip is None or tip.status != "active":
            return None

        data = serialize_tip(tip)
        await self._cache_active({"revision": pointer.revision, "tip": data})
        return data

    async def delete_tip(self, db_session: AsyncSession, tip_id: uuid.UUID) -> None:
        tip = await self.get_tip(db_session, tip_id)
        was_active = tip.status == "active"
        if was_active:
            pointer = await self._pointer(db_session)
            pointer.tip_id = None
            pointer.activated_at = None
            self._bump_revision(pointer)
            await db_session.flush()

        await db_session.delete(tip)
        await db_session.flush()

        logger.info("tip_deleted", tip_id=str(tip_id), was_active=was_active)

    # ── Approval workflow ─────────────────────────────────────────────────

    async def approve_tip(
        self,
        db_session: AsyncSession,
        tip_id: uuid.UUID,
        matchmaker_id: str | None = None,
        matchmaker_name: str | None = None,
    ) -> WeeklyTip:
        tip = await self.get_tip(db_session, tip_id)
        if tip.status not in ("pending", "rejected"):
            raise TipStateError(f"Cannot approve a tip in status '{tip.status}'")

        tip.status = "approved"
        tip.approved_at = utcnow()
        tip.rejection_reason = None
        if matchmaker_id:
            tip.author_id, tip.author_name = matchmaker_id, matchmaker_name
        await db_session.flush()

        logger.info("tip_approved", tip_id=str(tip.id), matchmaker_id=matchmaker_id)
        return tip

    async def reject_tip(
        self,
        db_session: AsyncSession,
        tip_id: uuid.UUID,
        matchmaker_id: str | None = None,
        matchmaker_name: str | None = None,
        reason: str | None = None,
    ) -> WeeklyTip:
        tip = await self.get_tip(db_session, tip_id)
        if tip.status not in ("pending", "approved"):
            raise TipStateError(f"Cannot reject a tip in status '{tip.status}'")

        tip.status = "rejected"
        tip.rejected_at = utcnow()
        tip.rejection_reason = reason
        if matchmaker_id:
            tip.author_id, tip.author_name = matchmaker_id, matchmaker_name
        await db_session.flush()

        logger.info("tip_rejected", tip_id=str(tip.id), reason=reason)
        return tip

    async def activate_tip(self, db_session: AsyncSession, tip_id: uuid.UUID) -> WeeklyTip:
        """Make ``tip_id`` the one active tip.

        The pointer row is locked first, so two concurrent activations
        serialize and the loser archives the winner's tip rather than
        leaving two active.
        """
        log = logger.bind(tip_id=str(tip_id))
        pointer = await self._pointer(db_session)
        tip = await self.get_tip(db_session, tip_id)

        if tip.status == "active" and pointer.tip_id == tip.id:
            log.info("tip_already_active")
            return tip
        if tip.status not in ("approved", "archived", "active"):
            raise TipStateError(f"Only approved tips can be activated (status '{tip.status}')")

        now = utcnow()
        # Sweep stragglers too, e.g. rows activated before the pointer existed.
        stmt = (
            select(WeeklyTip)
            .where(WeeklyTip.status == "active")
            .where(WeeklyTip.id != tip.id)
        )
        for previous in (await db_session.execute(stmt)).scalars().all():
            previous.status = "archived"
            previous.archived_at = now
            previous.expires_at = now
            log.info("previous_tip_archived", previous_tip_id=str(previous.id))

        pointer.tip_id = None
        await db_session.flush()

        tip.status = "active"
        tip.published_at = now
        tip.activated_at = now
        tip.expires_at = None
        pointer.tip_id = tip.id
        pointer.activated_at = now
        self._bump_revision(pointer)
        await db_session.flush()

        log.info("tip_activated")
        return tip

    async def archive_tip(self, db_session: AsyncSession, tip_id: uuid.UUID) -> WeeklyTip:
        tip = await self.get_tip(db_session, tip_id)
        if tip.status == "active":
            pointer = await self._pointer(db_session)
            if pointer.tip_id == tip.id:
                pointer.tip_id = None
                pointer.activated_at = None
                self._bump_revision(pointer)

        now = utcnow()
        tip.status = "archived"
        tip.archived_at = now
        tip.expires_at = now
        await db_session.flush()

        logger.info("tip_archived", tip_id=str(tip.id))
        return tip

    # ── Views ─────────────────────────────────────────────────────────────

    async def _get_view(
        self,
        db_session: AsyncSession,
        user_id: uuid.UUID,
        tip_id: uuid.UUID,
    ) -> TipView | None:
        stmt = select(TipView).where(TipView.user_id == user_id, TipView.tip_id == tip_id)
        return (await db_session.execute(stmt)).scalar_one_or_none()

    async def record_view(
        self,
        db_session: AsyncSession,
        user_id: uuid.UUID,
        tip_id: uuid.UUID,
        full_read: bool = False,
    ) -> TipView:
        """Count a view; the first view by a user also counts as unique."""
        await self.get_tip(db_session, tip_id)
        view = await self._get_view(db_session, user_id, tip_id)

        counters: dict[str, Any] = {"view_count": WeeklyTip.view_count + 1}
        if view is None:
            view = TipView(
                user_id=user_id,
                tip_id=tip_id,
                viewed_at=utcnow(),
                read_status=full_read,
                dismissed=False,
                dismissed_at=None,
            )
            db_session.add(view)
            counters["unique_view_count"] = WeeklyTip.unique_view_count + 1
        elif full_read and not view.read_status:
            view.read_status = True
            view.viewed_at = utcnow()

        await db_session.flush()
        await db_session.execute(
            update(WeeklyTip).where(WeeklyTip.id == tip_id).values(**counters)
        )

        logger.info(
            "tip_view_recorded",
            tip_id=str(tip_id),
            user_id=str(user_id),
            unique="unique_view_count" in counters,
        )
        return view

    async def dismiss_tip(
        self,
        db_session: AsyncSession,
        user_id: uuid.UUID,
        tip_id: uuid.UUID,
    ) -> TipView:
        await self.get_tip(db_session, tip_id)
        view = await self._get_view(db_session, user_id, tip_id)
        now = utcnow()
        if view is None:
            view = TipView(
                user_id=user_id,
                tip_id=tip_id,
                viewed_at=now,
                read_status=True,
                dismissed=True,
                dismissed_at=now,
            )
            db_session.add(view)
        else:
            view.dismissed = True
            view.dismissed_at = now
        await db_session.flush()

        logger.info("tip_dismissed", tip_id=str(tip_id), user_id=str(user_id))
        return view

    async def has_user_viewed(
        self,
        db_session: AsyncSession,
        user_id: uuid.UUID,
        tip_id: uuid.UUID,
    ) -> bool:
        return await self._get_view(db_session, user_id, tip_id) is not None

    async def get_user_viewed_tips(
        self,
        db_session: AsyncSession,
        user_id: uuid.UUID,
    ) -> list[TipView]:
        stmt = (
            select(TipView)
            .where(TipView.user_id == user_id)
            .order_by(TipView.viewed_at.desc())
        )
        return list((await db_session.execute(stmt)).scalars().all())
