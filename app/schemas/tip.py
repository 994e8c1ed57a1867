from pydantic import BaseModel, Field, computed_field
from uuid import UUID
from datetime import datetime
from typing import Any, Optional

from app.services.tip_service import TIP_CATEGORIES, category_display_name

_CATEGORY_PATTERN = "^(" + "|".join(TIP_CATEGORIES) + ")$"

class TipCreate(BaseModel):
    title: str = Field(min_length=1, max_length=200)
    short_description: Optional[str] = None
    main_content: str = Field(min_length=1)
    why_this_matters: Optional[str] = None
    quick_tips: list[str] = Field(default_factory=list, max_length=5)
    did_you_know: Optional[str] = None
    weekly_challenge: Optional[str] = None
    category: str = Field(pattern=_CATEGORY_PATTERN)
    author_id: Optional[str] = None
    author_name: Optional[str] = None

class TipUpdate(BaseModel):
    title: Optional[str] = Field(None, min_length=1, max_length=200)
    short_description: Optional[str] = None
    main_content: Optional[str] = Field(None, min_length=1)
    why_this_matters: Optional[str] = None
    quick_tips: Optional[list[str]] = Field(None, max_length=5)
    did_you_know: Optional[str] = None
    weekly_challenge: Optional[str] = None
    category: Optional[str] = Field(None, pattern=_CATEGORY_PATTERN)

class TipResponse(BaseModel):
    id: UUID
    title: str
    short_description: Optional[str]
    main_content: str
    why_this_matters: Optional[str]
    quick_tips: list[str]
    did_you_know: Optional[str]
    weekly_challenge: Optional[str]
    category: str
    status: str
    ai_generated: bool
    view_count: int
    unique_view_count: int
    author_id: Optional[str]
    author_name: Optional[str]
    rejection_reason: Optional[str]
    published_at: Optional[datetime]
    expires_at: Optional[datetime]
    approved_at: Optional[datetime]
    activated_at: Optional[datetime]
    archived_at: Optional[datetime]
    created_at: datetime

    model_config = {"from_attributes": True}

    @computed_field
    @property
    def category_display_name(self) -> str:
        return category_display_name(self.category)

class TipGenerateRequest(BaseModel):
    category: Optional[str] = None

class TipGenerateResponse(BaseModel):
    tip: dict[str, Any]

class TipReviewRequest(BaseModel):
    matchmaker_id: Optional[str] = None
    matchmaker_name: Optional[str] = None

class TipRejectRequest(TipReviewRequest):
    reason: Optional[str] = None

class TipViewRequest(BaseModel):
    user_id: UUID
    full_read: bool = False

class TipViewResponse(BaseModel):
    id: UUID
    user_id: UUID
    tip_id: UUID
    viewed_at: datetime
    read_status: bool
    dismissed: bool
    dismissed_at: Optional[datetime]

    model_config = {"from_attributes": True}
