from pydantic import BaseModel
from uuid import UUID
from datetime import datetime
from typing import Any, Optional

class MemberNotificationResponse(BaseModel):
    id: UUID
    member_id: UUID
    match_id: UUID
    type: str
    status: str
    message: Optional[str]
    match_data: Optional[dict[str, Any]]
    metrics: Optional[dict[str, Any]]
    created_at: datetime
    viewed_at: Optional[datetime]

    model_config = {"from_attributes": True}

class MatchmakerNotificationResponse(BaseModel):
    id: UUID
    matchmaker_id: UUID
    match_id: UUID
    member_id: Optional[UUID]
    member_name: Optional[str]
    type: str
    status: str
    message: str
    additional_data: Optional[dict[str, Any]]
    created_at: datetime
    viewed_at: Optional[datetime]

    model_config = {"from_attributes": True}

class MarkAllViewedResponse(BaseModel):
    member_id: UUID
    updated: int
