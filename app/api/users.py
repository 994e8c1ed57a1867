"""
Vettly — Users API

Member/matchmaker CRUD, questionnaire submission, and the stored
compatibility snapshot.
"""

from __future__ import annotations

import uuid

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import get_compatibility_service
from app.database import get_db
from app.models.analytics import CompatibilitySnapshot
from app.models.user import User
from app.schemas.user import (
    CompatibilitySnapshotResponse,
    QuestionnaireResponse,
    QuestionnaireUpdate,
    UserCreate,
    UserResponse,
    UserUpdate,
)
from app.services.compatibility_service import CompatibilityService

logger = structlog.get_logger("vettly.api.users")

router = APIRouter()


async def _load_user(db: AsyncSession, user_id: uuid.UUID) -> User:
    user = await db.get(User, user_id)
    if user is None:
        logger.warning("user_not_found", user_id=str(user_id))
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"User {user_id} not found.",
        )
    return user


# ──────────────────────────────────────────────────────────────────────────────
# POST / — Create a new user
# ──────────────────────────────────────────────────────────────────────────────

@router.post(
    "/",
    response_model=UserResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create a new member or matchmaker",
)
async def create_user(
    payload: UserCreate,
    db: AsyncSession = Depends(get_db),
) -> User:
    """Register a new account.

    Rejects an email that is already in use with 409.
    """
    log = logger.bind(email=payload.email, role=payload.role)
    log.info("create_user_start")

    stmt = select(User).where(User.email == payload.email)
    existing = (await db.execute(stmt)).scalar_one_or_none()
    if existing is not None:
        log.warning("create_user_duplicate_email")
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="A user with this email already exists.",
        )

    new_user = User(
        **payload.model_dump(),
        questionnaire_answers={},
        questionnaire_completed=False,
        has_completed_first_virtual_meeting=False,
        is_active=True,
    )
    db.add(new_user)
    await db.flush()

    log.info("create_user_complete", user_id=str(new_user.id))
    return new_user


# ──────────────────────────────────────────────────────────────────────────────
# GET / — List users with pagination
# ──────────────────────────────────────────────────────────────────────────────

@router.get(
    "/",
    response_model=list[UserResponse],
    summary="List users with pagination",
)
async def list_users(
    role: str | None = Query(None, pattern="^(member|matchmaker)$"),
    limit: int = Query(20, ge=1, le=100, description="Max users to return"),
    offset: int = Query(0, ge=0, description="Number of users to skip"),
    db: AsyncSession = Depends(get_db),
) -> list[User]:
    logger.info("list_users", role=role, limit=limit, offset=offset)

    stmt = select(User).where(User.is_active.is_(True))
    if role is not None:
        stmt = stmt.where(User.role == role)
    stmt = stmt.order_by(User.created_at.desc()).limit(limit).offset(offset)
    return list((await db.execute(stmt)).scalars().all())


# ──────────────────────────────────────────────────────────────────────────────
# GET /{user_id} — Get user by ID
# ──────────────────────────────────────────────────────────────────────────────

@router.get(
    "/{user_id}",
    response_model=UserResponse,
    summary="Get user by ID",
)
async def get_user(
    user_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
) -> User:
    return await _load_user(db, user_id)


# ──────────────────────────────────────────────────────────────────────────────
# PUT /{user_id} — Update user
# ──────────────────────────────────────────────────────────────────────────────

@router.put(
    "/{user_id}",
    response_model=UserResponse,
    summary="Update user details",
)
async def update_user(
    user_id: uuid.UUID,
    payload: UserUpdate,
    db: AsyncSession = Depends(get_db),
) -> User:
    """Update mutable profile fields.

    Only fields present in the request body are applied.
    """
    log = logger.bind(user_id=str(user_id))
    user = await _load_user(db, user_id)

    update_data = payload.model_dump(exclude_unset=True)
    for field, value in update_data.items():
        setattr(user, field, value)

    await db.flush()
    log.info("update_user_complete", updated_fields=list(update_data.keys()))
    return user


# ──────────────────────────────────────────────────────────────────────────────
# PUT /{user_id}/questionnaire — Submit questionnaire answers
# ──────────────────────────────────────────────────────────────────────────────

@router.put(
    "/{user_id}/questionnaire",
    response_model=QuestionnaireResponse,
    summary="Save questionnaire answers",
)
async def update_questionnaire(
    user_id: uuid.UUID,
    payload: QuestionnaireUpdate,
    db: AsyncSession = Depends(get_db),
    compatibility: CompatibilityService = Depends(get_compatibility_service),
) -> QuestionnaireResponse:
    """Merge answers into the user's flat questionnaire map.

    When the questionnaire is (or becomes) complete and
    ``refresh_compatibility`` is set, the user is re-scored against every
    other completed questionnaire and the snapshot is replaced.
    """
    log = logger.bind(user_id=str(user_id))
    user = await _load_user(db, user_id)

    # Reassign so the JSON column is marked dirty
    user.questionnaire_answers = {**(user.questionnaire_answers or {}), **payload.answers}
    if payload.completed is not None:
        user.questionnaire_completed = payload.completed
    await db.flush()

    refreshed = False
    if user.questionnaire_completed and payload.refresh_compatibility:
        await compatibility.analyze_compatibility_for_user(user.id, db)
        refreshed = True

    log.info(
        "questionnaire_saved",
        answer_count=len(user.questionnaire_answers),
        completed=user.questionnaire_completed,
        compatibility_refreshed=refreshed,
    )
    return QuestionnaireResponse(
        user_id=user.id,
        questionnaire_answers=user.questionnaire_answers,
        questionnaire_completed=user.questionnaire_completed,
        compatibility_refreshed=refreshed,
    )


# ──────────────────────────────────────────────────────────────────────────────
# GET /{user_id}/compatibility — Stored compatibility snapshot
# ──────────────────────────────────────────────────────────────────────────────

@router.get(
    "/{user_id}/compatibility",
    response_model=CompatibilitySnapshotResponse,
    summary="Get the latest compatibility analysis for a user",
)
async def get_compatibility_snapshot(
    user_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
) -> CompatibilitySnapshot:
    snapshot = await db.get(CompatibilitySnapshot, user_id)
    if snapshot is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"No compatibility analysis for user {user_id}.",
        )
    return snapshot
