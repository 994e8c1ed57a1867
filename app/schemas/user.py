from pydantic import BaseModel, Field
from uuid import UUID
from datetime import datetime
from typing import Any, Optional

class UserCreate(BaseModel):
    email: str
    first_name: str
    last_name: Optional[str] = None
    role: str = Field("member", pattern="^(member|matchmaker)$")
    gender: Optional[str] = Field(None, pattern="^(MALE|FEMALE)$")
    dob: Optional[str] = Field(None, description="DD.MM.YYYY")
    age: Optional[int] = Field(None, ge=18, le=100)
    location: Optional[str] = None
    state: Optional[str] = None
    suburb: Optional[str] = None
    marital_status: Optional[str] = None
    has_children: Optional[str] = None
    profile_photo_url: Optional[str] = None

class UserResponse(BaseModel):
    id: UUID
    email: str
    first_name: str
    last_name: Optional[str]
    role: str
    gender: Optional[str]
    dob: Optional[str]
    age: Optional[int]
    location: Optional[str]
    state: Optional[str]
    suburb: Optional[str]
    marital_status: Optional[str]
    has_children: Optional[str]
    profile_photo_url: Optional[str]
    questionnaire_completed: bool
    has_completed_first_virtual_meeting: bool
    created_at: datetime
    is_active: bool

    model_config = {"from_attributes": True}

class UserUpdate(BaseModel):
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    gender: Optional[str] = Field(None, pattern="^(MALE|FEMALE)$")
    dob: Optional[str] = None
    age: Optional[int] = Field(None, ge=18, le=100)
    location: Optional[str] = None
    state: Optional[str] = None
    suburb: Optional[str] = None
    marital_status: Optional[str] = None
    has_children: Optional[str] = None
    profile_photo_url: Optional[str] = None
    is_active: Optional[bool] = None

class QuestionnaireUpdate(BaseModel):
    answers: dict[str, Any]
    completed: Optional[bool] = None
    # Re-score against every completed questionnaire once this one is complete
    refresh_compatibility: bool = True

class QuestionnaireResponse(BaseModel):
    user_id: UUID
    questionnaire_answers: dict[str, Any]
    questionnaire_completed: bool
    compatibility_refreshed: bool

class CompatibilitySnapshotResponse(BaseModel):
    user_id: UUID
    matches: list[dict[str, Any]]
    last_updated: datetime

    model_config = {"from_attributes": True}
