"""
Vettly — Matching API

Match proposals, the approval workflow (accept, decline, payment,
virtual meeting, matchmaker approvals), and AI explanation delivery.

Workflow errors raised by ``MatchApprovalService`` are rendered by the
application-level handler, so routes here only translate request-shape
problems.
"""

from __future__ import annotations

import uuid

import structlog
from fastapi import APIRouter, Depends, Query, Response, status
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import error_response, get_approval_service, get_compatibility_service
from app.database import get_db
from app.models.match import Match, MatchStage, MatchTransition
from app.schemas.match import (
    DeclineRequest,
    GenerateExplanationRequest,
    GenerateExplanationResponse,
    MatchCreate,
    MatchmakerActionRequest,
    MatchResponse,
    MemberActionRequest,
    PaymentRequest,
    ScheduleMeetingRequest,
    ScoreRequest,
    ScoreResponse,
    SendWithExplanationRequest,
    SendWithExplanationResponse,
    TransitionResponse,
)
from app.services.compatibility_service import CompatibilityService
from app.services.match_approval_service import (
    LowDataQualityError,
    MatchApprovalService,
    MatchNotFoundError,
    MemberNotFoundError,
)

logger = structlog.get_logger("vettly.api.matching")

router = APIRouter()

_CORS_PREFLIGHT_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "POST, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type, Authorization",
}


# ──────────────────────────────────────────────────────────────────────────────
# POST / — Propose a match
# ──────────────────────────────────────────────────────────────────────────────

@router.post(
    "/",
    response_model=MatchResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Score a pair and record a match proposal",
)
async def create_match(
    payload: MatchCreate,
    db: AsyncSession = Depends(get_db),
    approvals: MatchApprovalService = Depends(get_approval_service),
) -> Match:
    """Create a match in stage ``pending``.

    Returns 409 if the pair was already matched and 422 when a
    deal-breaker applies (unless ``allow_incompatible`` is set).
    """
    logger.info(
        "create_match_request",
        member1_id=str(payload.member1_id),
        member2_id=str(payload.member2_id),
    )
    return await approvals.create_match(
        db,
        payload.member1_id,
        payload.member2_id,
        matchmaker_id=payload.matchmaker_id,
        allow_incompatible=payload.allow_incompatible,
    )


# ──────────────────────────────────────────────────────────────────────────────
# POST /score — Score two answer maps without persisting anything
# ──────────────────────────────────────────────────────────────────────────────

@router.post(
    "/score",
    response_model=ScoreResponse,
    summary="Score two questionnaire answer maps",
)
async def score_answers(
    payload: ScoreRequest,
    compatibility: CompatibilityService = Depends(get_compatibility_service),
) -> ScoreResponse:
    result = compatibility.calculate_compatibility_score(payload.answers1, payload.answers2)
    return ScoreResponse(
        **result.to_dict(),
        score=result.compatibility_score,
        matching_points=compatibility.build_matching_points(result),
    )


# ──────────────────────────────────────────────────────────────────────────────
# POST /generate-explanation — AI explanation for a pair
# ──────────────────────────────────────────────────────────────────────────────

@router.post(
    "/generate-explanation",
    response_model=GenerateExplanationResponse,
    summary="Generate both members' explanation points",
)
async def generate_explanation(
    payload: GenerateExplanationRequest,
    db: AsyncSession = Depends(get_db),
    approvals: MatchApprovalService = Depends(get_approval_service),
) -> GenerateExplanationResponse | JSONResponse:
    """Generate (and, with ``matchId``, store) the five-point explanations.

    Member ids default to the match's members.  A pair whose profiles are
    too sparse is answered with 400; the rejection is still recorded.
    """
    member1_id, member2_id = payload.member1_id, payload.member2_id
    log = logger.bind(match_id=str(payload.match_id) if payload.match_id else None)

    if payload.match_id and not (member1_id and member2_id):
        try:
            match = await approvals.get_match(db, payload.match_id)
        except MatchNotFoundError as exc:
            return error_response(status.HTTP_404_NOT_FOUND, exc.message, exc.details)
        member1_id = member1_id or match.member1_id
        member2_id = member2_id or match.member2_id

    if not member1_id or not member2_id:
        return error_response(
            status.HTTP_400_BAD_REQUEST,
            "Missing required parameters",
            {"required": ["member1Id", "member2Id"], "optional": ["matchId"]},
        )

    log.info("generate_explanation_request")
    try:
        result = await approvals.generate_match_explanation(
            db, member1_id, member2_id, match_id=payload.match_id
        )
    except (MemberNotFoundError, MatchNotFoundError) as exc:
        return error_response(status.HTTP_404_NOT_FOUND, exc.message, exc.details)
    except LowDataQualityError as exc:
        # Returned rather than raised so the recorded error is committed
        return error_response(status.HTTP_400_BAD_REQUEST, exc.message, exc.details)

    return GenerateExplanationResponse(
        member1Points=result.member1_points,
        member2Points=result.member2_points,
        member1Id=member1_id,
        member2Id=member2_id,
        generated=not result.used_fallback,
        source=result.source,
    )


# ──────────────────────────────────────────────────────────────────────────────
# POST /send-with-explanation — Deliver a proposal to both members
# ──────────────────────────────────────────────────────────────────────────────

@router.options("/send-with-explanation", include_in_schema=False)
async def send_with_explanation_preflight() -> Response:
    return Response(status_code=status.HTTP_204_NO_CONTENT, headers=_CORS_PREFLIGHT_HEADERS)


@router.post(
    "/send-with-explanation",
    response_model=SendWithExplanationResponse,
    summary="Send a match to both members with their explanations",
)
async def send_with_explanation(
    payload: SendWithExplanationRequest,
    db: AsyncSession = Depends(get_db),
    approvals: MatchApprovalService = Depends(get_approval_service),
) -> dict | JSONResponse:
    if payload.match_id is None:
        return error_response(status.HTTP_400_BAD_REQUEST, "Match ID is required")

    try:
        return await approvals.send_with_explanation(
            db,
            payload.match_id,
            is_resend=payload.is_resend,
            regenerate_explanation=payload.regenerate_explanation,
        )
    except (MatchNotFoundError, MemberNotFoundError) as exc:
        return error_response(status.HTTP_404_NOT_FOUND, exc.message, exc.details)


# ──────────────────────────────────────────────────────────────────────────────
# Reads
# ──────────────────────────────────────────────────────────────────────────────

@router.get(
    "/member/{user_id}",
    response_model=list[MatchResponse],
    summary="List all matches for a member",
)
async def list_member_matches(
    user_id: uuid.UUID,
    stage: MatchStage | None = Query(None, description="Only matches in this stage"),
    db: AsyncSession = Depends(get_db),
    approvals: MatchApprovalService = Depends(get_approval_service),
) -> list[Match]:
    return await approvals.list_member_matches(db, user_id, stage=stage)


@router.get(
    "/{match_id}",
    response_model=MatchResponse,
    summary="Get match details",
)
async def get_match(
    match_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    approvals: MatchApprovalService = Depends(get_approval_service),
) -> Match:
    return await approvals.get_match(db, match_id)


@router.get(
    "/{match_id}/transitions",
    response_model=list[TransitionResponse],
    summary="Get the ordered transition log for a match",
)
async def list_transitions(
    match_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    approvals: MatchApprovalService = Depends(get_approval_service),
) -> list[MatchTransition]:
    return await approvals.list_transitions(db, match_id)


# ──────────────────────────────────────────────────────────────────────────────
# Member actions
# ──────────────────────────────────────────────────────────────────────────────

@router.post(
    "/{match_id}/accept",
    response_model=MatchResponse,
    summary="Accept a match as one of its members",
)
async def accept_match(
    match_id: uuid.UUID,
    payload: MemberActionRequest,
    db: AsyncSession = Depends(get_db),
    approvals: MatchApprovalService = Depends(get_approval_service),
) -> Match:
    logger.info("accept_match_request", match_id=str(match_id), user_id=str(payload.user_id))
    return await approvals.accept_match(db, match_id, payload.user_id)


@router.post(
    "/{match_id}/decline",
    response_model=MatchResponse,
    summary="Decline a match as one of its members",
)
async def decline_match(
    match_id: uuid.UUID,
    payload: DeclineRequest,
    db: AsyncSession = Depends(get_db),
    approvals: MatchApprovalService = Depends(get_approval_service),
) -> Match:
    logger.info("decline_match_request", match_id=str(match_id), user_id=str(payload.user_id))
    return await approvals.decline_match(db, match_id, payload.user_id, reason=payload.reason)


@router.post(
    "/{match_id}/expire",
    response_model=MatchResponse,
    summary="Expire an unanswered match",
)
async def expire_match(
    match_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    approvals: MatchApprovalService = Depends(get_approval_service),
) -> Match:
    return await approvals.expire_match(db, match_id)


@router.post(
    "/{match_id}/payment",
    response_model=MatchResponse,
    summary="Record a completed payment",
)
async def complete_payment(
    match_id: uuid.UUID,
    payload: PaymentRequest,
    db: AsyncSession = Depends(get_db),
    approvals: MatchApprovalService = Depends(get_approval_service),
) -> Match:
    return await approvals.complete_payment(
        db,
        match_id,
        payment_method=payload.payment_method,
        membership_plan=payload.membership_plan,
    )


# ──────────────────────────────────────────────────────────────────────────────
# Matchmaker actions
# ──────────────────────────────────────────────────────────────────────────────

@router.post(
    "/{match_id}/schedule-meeting",
    response_model=MatchResponse,
    summary="Schedule the virtual meeting",
)
async def schedule_virtual_meeting(
    match_id: uuid.UUID,
    payload: ScheduleMeetingRequest,
    db: AsyncSession = Depends(get_db),
    approvals: MatchApprovalService = Depends(get_approval_service),
) -> Match:
    """Schedule the meeting; without ``start_time`` it defaults to the
    configured hour a few days ahead in the matchmaking timezone."""
    return await approvals.schedule_virtual_meeting(
        db,
        match_id,
        start_time=payload.start_time,
        matchmaker_id=payload.matchmaker_id,
        meet_link=payload.meet_link,
        event_id=payload.event_id,
    )


@router.post(
    "/{match_id}/complete-meeting",
    response_model=MatchResponse,
    summary="Mark the virtual meeting as held",
)
async def complete_virtual_meeting(
    match_id: uuid.UUID,
    payload: MatchmakerActionRequest,
    db: AsyncSession = Depends(get_db),
    approvals: MatchApprovalService = Depends(get_approval_service),
) -> Match:
    return await approvals.complete_virtual_meeting(
        db, match_id, matchmaker_id=payload.matchmaker_id, notes=payload.notes
    )


@router.post(
    "/{match_id}/matchmaker-approve",
    response_model=MatchResponse,
    summary="Matchmaker approval after the virtual meeting",
)
async def matchmaker_approve(
    match_id: uuid.UUID,
    payload: MatchmakerActionRequest,
    db: AsyncSession = Depends(get_db),
    approvals: MatchApprovalService = Depends(get_approval_service),
) -> Match:
    return await approvals.matchmaker_approve(
        db, match_id, matchmaker_id=payload.matchmaker_id, notes=payload.notes
    )


@router.post(
    "/{match_id}/approve-date",
    response_model=MatchResponse,
    summary="Approve the match for an in-person date",
)
async def approve_match_for_date(
    match_id: uuid.UUID,
    payload: MatchmakerActionRequest,
    db: AsyncSession = Depends(get_db),
    approvals: MatchApprovalService = Depends(get_approval_service),
) -> Match:
    """Returns 400 until the virtual meeting has been completed."""
    return await approvals.approve_match_for_date(
        db, match_id, matchmaker_id=payload.matchmaker_id
    )
