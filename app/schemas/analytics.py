from pydantic import BaseModel
from uuid import UUID
from datetime import datetime
from typing import Optional

class DeclineAnalyticsResponse(BaseModel):
    member_id: UUID
    member_name: Optional[str]
    total_declines: int
    monthly_declines: dict[str, int]
    last_updated: datetime

    model_config = {"from_attributes": True}

class DailyUsageResponse(BaseModel):
    date: str
    total_generations: int
    total_tokens: int
    total_errors: int
    total_generation_time_ms: float
    average_generation_time_ms: float
    errors_by_type: dict[str, int]
    engagement_by_type: dict[str, int]

    model_config = {"from_attributes": True}

class EngagementResponse(BaseModel):
    id: UUID
    match_id: Optional[UUID]
    event_type: str
    created_at: datetime

    model_config = {"from_attributes": True}
