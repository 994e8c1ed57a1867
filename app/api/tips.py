"""
Vettly — Weekly Tips API

AI tip generation, the editorial workflow (pending -> approved -> active ->
archived), the single active tip, and per-member view tracking.
"""

from __future__ import annotations

import uuid
from typing import Any

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import get_tip_generation_service, get_tip_service
from app.database import get_db
from app.models.tip import TipView, WeeklyTip
from app.schemas.tip import (
    TipCreate,
    TipGenerateRequest,
    TipGenerateResponse,
    TipRejectRequest,
    TipResponse,
    TipReviewRequest,
    TipUpdate,
    TipViewRequest,
    TipViewResponse,
)
from app.services.tip_generation_service import TipGenerationService
from app.services.tip_service import TipNotFoundError, TipService, TipStateError

logger = structlog.get_logger("vettly.api.tips")

router = APIRouter()


def _raise_tip_error(exc: Exception) -> None:
    if isinstance(exc, TipNotFoundError):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc


# ──────────────────────────────────────────────────────────────────────────────
# POST /generate — AI-written tip (not persisted)
# ──────────────────────────────────────────────────────────────────────────────

@router.post(
    "/generate",
    response_model=TipGenerateResponse,
    summary="Generate a tip with the LLM",
)
async def generate_tip(
    payload: TipGenerateRequest,
    generator: TipGenerationService = Depends(get_tip_generation_service),
) -> TipGenerateResponse:
    """Draft a tip for ``category`` (random when omitted).

    Falls back to a static tip when the model is unavailable, so this
    endpoint always answers 200.
    """
    tip = await generator.generate_tip(payload.category)
    return TipGenerateResponse(tip=tip)


# ──────────────────────────────────────────────────────────────────────────────
# CRUD
# ──────────────────────────────────────────────────────────────────────────────

@router.post(
    "/",
    response_model=TipResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create a tip for review",
)
async def create_tip(
    payload: TipCreate,
    db: AsyncSession = Depends(get_db),
    tips: TipService = Depends(get_tip_service),
) -> WeeklyTip:
    data: dict[str, Any] = payload.model_dump(exclude={"author_id", "author_name"})
    try:
        return await tips.create_tip(
            db, data, author_id=payload.author_id, author_name=payload.author_name
        )
    except TipStateError as exc:
        _raise_tip_error(exc)


@router.get(
    "/",
    response_model=list[TipResponse],
    summary="List tips",
)
async def list_tips(
    status_filter: str | None = Query(
        None, alias="status", pattern="^(pending|approved|rejected|active|archived)$"
    ),
    limit: int = Query(50, ge=1, le=200),
    db: AsyncSession = Depends(get_db),
    tips: TipService = Depends(get_tip_service),
) -> list[WeeklyTip]:
    return await tips.list_tips(db, status=status_filter, limit=limit)


@router.get(
    "/active",
    summary="Get the currently active tip",
)
async def get_active_tip(
    db: AsyncSession = Depends(get_db),
    tips: TipService = Depends(get_tip_service),
) -> dict[str, Any]:
    """Served from Redis when cached.  ``tip`` is null when none is active."""
    return {"tip": await tips.get_active_tip(db)}


@router.get(
    "/viewed/{user_id}",
    response_model=list[TipViewResponse],
    summary="List the tips a member has viewed",
)
async def get_user_viewed_tips(
    user_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    tips: TipService = Depends(get_tip_service),
) -> list[TipView]:
    return await tips.get_user_viewed_tips(db, user_id)


@router.get(
    "/{tip_id}",
    response_model=TipResponse,
    summary="Get a tip by ID",
)
async def get_tip(
    tip_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    tips: TipService = Depends(get_tip_service),
) -> WeeklyTip:
    try:
        return await tips.get_tip(db, tip_id)
    except TipNotFoundError as exc:
        _raise_tip_error(exc)


@router.put(
    "/{tip_id}",
    response_model=TipResponse,
    summary="Edit a tip",
)
async def update_tip(
    tip_id: uuid.UUID,
    payload: TipUpdate,
    db: AsyncSession = Depends(get_db),
    tips: TipService = Depends(get_tip_service),
) -> WeeklyTip:
    try:
        return await tips.update_tip(db, tip_id, payload.model_dump(exclude_unset=True))
    except (TipNotFoundError, TipStateError) as exc:
        _raise_tip_error(exc)


@router.delete(
    "/{tip_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Delete a tip",
)
async def delete_tip(
    tip_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    tips: TipService = Depends(get_tip_service),
) -> None:
    try:
        await tips.delete_tip(db, tip_id)
    except TipNotFoundError as exc:
        _raise_tip_error(exc)


# ──────────────────────────────────────────────────────────────────────────────
# Editorial workflow
# ──────────────────────────────────────────────────────────────────────────────

@router.post(
    "/{tip_id}/approve",
    response_model=TipResponse,
    summary="Approve a pending tip",
)
async def approve_tip(
    tip_id: uuid.UUID,
    payload: TipReviewRequest,
    db: AsyncSession = Depends(get_db),
    tips: TipService = Depends(get_tip_service),
) -> WeeklyTip:
    try:
        return await tips.approve_tip(
            db, tip_id, matchmaker_id=payload.matchmaker_id, matchmaker_name=payload.matchmaker_name
        )
    except (TipNotFoundError, TipStateError) as exc:
        _raise_tip_error(exc)


@router.post(
    "/{tip_id}/reject",
    response_model=TipResponse,
    summary="Reject a tip",
)
async def reject_tip(
    tip_id: uuid.UUID,
    payload: TipRejectRequest,
    db: AsyncSession = Depends(get_db),
    tips: TipService = Depends(get_tip_service),
) -> WeeklyTip:
    try:
        return await tips.reject_tip(
            db,
            tip_id,
            matchmaker_id=payload.matchmaker_id,
            matchmaker_name=payload.matchmaker_name,
            reason=payload.reason,
        )
    except (TipNotFoundError, TipStateError) as exc:
        _raise_tip_error(exc)


@router.post(
    "/{tip_id}/activate",
    response_model=TipResponse,
    summary="Make a tip the single active tip",
)
async def activate_tip(
    tip_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    tips: TipService = Depends(get_tip_service),
) -> WeeklyTip:
    """Archives whichever tip was active before, in the same transaction."""
    try:
        return await tips.activate_tip(db, tip_id)
    except (TipNotFoundError, TipStateError) as exc:
        _raise_tip_error(exc)


@router.post(
    "/{tip_id}/archive",
    response_model=TipResponse,
    summary="Archive a tip",
)
async def archive_tip(
    tip_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    tips: TipService = Depends(get_tip_service),
) -> WeeklyTip:
    try:
        return await tips.archive_tip(db, tip_id)
    except TipNotFoundError as exc:
        _raise_tip_error(exc)


# ──────────────────────────────────────────────────────────────────────────────
# Member views
# ──────────────────────────────────────────────────────────────────────────────

@router.post(
    "/{tip_id}/view",
    response_model=TipViewResponse,
    summary="Record that a member viewed a tip",
)
async def record_view(
    tip_id: uuid.UUID,
    payload: TipViewRequest,
    db: AsyncSession = Depends(get_db),
    tips: TipService = Depends(get_tip_service),
) -> TipView:
    try:
        return await tips.record_view(db, payload.user_id, tip_id, full_read=payload.full_read)
    except TipNotFoundError as exc:
        _raise_tip_error(exc)


@router.post(
    "/{tip_id}/dismiss",
    response_model=TipViewResponse,
    summary="Dismiss a tip for a member",
)
async def dismiss_tip(
    tip_id: uuid.UUID,
    payload: TipViewRequest,
    db: AsyncSession = Depends(get_db),
    tips: TipService = Depends(get_tip_service),
) -> TipView:
    try:
        return await tips.dismiss_tip(db, payload.user_id, tip_id)
    except TipNotFoundError as exc:
        _raise_tip_error(exc)
