import json
from pydantic import BaseModel, ConfigDict, Field, field_validator
from uuid import UUID
from datetime import datetime
from typing import Any, Optional

class MatchCreate(BaseModel):
    member1_id: UUID
    member2_id: UUID
    matchmaker_id: Optional[UUID] = None
    allow_incompatible: bool = False

class MatchResponse(BaseModel):
    id: UUID
    member1_id: UUID
    member2_id: UUID
    matchmaker_id: Optional[UUID]
    stage: str
    status: str
    compatibility_score: int
    compatibility_breakdown: Optional[dict[str, float]]
    compatibility_degraded: bool
    matching_points: Optional[list[dict[str, Any]]]
    member1_explanation: list[dict[str, str]] = []
    member2_explanation: list[dict[str, str]] = []
    explanation_generated_at: Optional[datetime]
    member1_accepted: bool
    member2_accepted: bool
    approved_at: Optional[datetime]
    declined_at: Optional[datetime]
    declined_by: Optional[UUID]
    decline_reason: Optional[str]
    expires_at: Optional[datetime]
    expired_at: Optional[datetime]
    payment_required: bool
    payment_completed: bool
    payment_completed_at: Optional[datetime]
    virtual_meeting_required: bool
    virtual_meeting_scheduled: bool
    virtual_meeting_details: Optional[dict[str, Any]]
    virtual_meeting_completed: bool
    matchmaker_approved: bool
    date_approved: bool
    date_approved_at: Optional[datetime]
    sent_to_member_at: Optional[datetime]
    resend_count: int
    version: int
    created_at: datetime

    model_config = {"from_attributes": True}

    @field_validator("member1_explanation", "member2_explanation", mode="before")
    @classmethod
    def decode_points(cls, v: Any) -> list:
        # Stored as a JSON-encoded string on the match row
        if v is None:
            return []
        if isinstance(v, str):
            try:
                v = json.loads(v)
            except json.JSONDecodeError:
                return []
        return v if isinstance(v, list) else []

class MemberActionRequest(BaseModel):
    user_id: UUID

class DeclineRequest(BaseModel):
    user_id: UUID
    reason: Optional[str] = Field(None, max_length=1000)

class PaymentRequest(BaseModel):
    payment_method: Optional[str] = None
    membership_plan: Optional[str] = None

class ScheduleMeetingRequest(BaseModel):
    matchmaker_id: Optional[UUID] = None
    start_time: Optional[datetime] = None
    meet_link: Optional[str] = None
    event_id: Optional[str] = None

class MatchmakerActionRequest(BaseModel):
    matchmaker_id: Optional[UUID] = None
    notes: Optional[str] = None

class TransitionResponse(BaseModel):
    id: UUID
    match_id: UUID
    action: str
    from_stage: str
    to_stage: str
    actor_id: Optional[UUID]
    payload: Optional[dict[str, Any]]
    sequence: int
    occurred_at: datetime

    model_config = {"from_attributes": True}

class GenerateExplanationRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    match_id: Optional[UUID] = Field(None, alias="matchId")
    member1_id: Optional[UUID] = Field(None, alias="member1Id")
    member2_id: Optional[UUID] = Field(None, alias="member2Id")

class GenerateExplanationResponse(BaseModel):
    member1Points: list[dict[str, str]]
    member2Points: list[dict[str, str]]
    member1Id: UUID
    member2Id: UUID
    generated: bool
    source: str

class SendWithExplanationRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    match_id: Optional[UUID] = Field(None, alias="matchId")
    is_resend: bool = Field(False, alias="isResend")
    regenerate_explanation: bool = Field(False, alias="regenerateExplanation")

class SendWithExplanationResponse(BaseModel):
    success: bool
    matchId: UUID
    notificationIds: list[str]
    explanation: dict[str, str]
    metrics: dict[str, Any]

class ScoreRequest(BaseModel):
    answers1: Optional[dict[str, Any]] = None
    answers2: Optional[dict[str, Any]] = None

class ScoreResponse(BaseModel):
    compatible: bool
    overall: float
    score: int
    breakdown: dict[str, float]
    reason: Optional[str] = None
    status: str
    degraded_reason: Optional[str] = None
    matching_points: list[dict[str, Any]]

class EngagementRequest(BaseModel):
    user_id: UUID
    action: str
    duration_ms: Optional[int] = Field(None, ge=0)
