from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class ProfileResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    user_id: str
    email: Optional[str] = None
    display_name: Optional[str] = None
    last_name: Optional[str] = None
    bio: Optional[str] = None
    age: Optional[int] = None
    location: Optional[str] = None
    interests: List[str] = Field(default_factory=list)
    avatar_url: Optional[str] = None
    gender: Optional[str] = None
    is_premium: bool = False
    created_at: datetime
    updated_at: datetime


class ProfileSummary(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    user_id: str
    display_name: Optional[str] = None
    avatar_url: Optional[str] = None
    is_premium: bool = False


class ProfileUpdateRequest(BaseModel):
    display_name: Optional[str] = Field(None, max_length=80, json_schema_extra={"example": "Sam"})
    last_name: Optional[str] = Field(None, max_length=80)
    bio: Optional[str] = Field(None, max_length=1000)
    age: Optional[int] = Field(None, ge=18, le=120, json_schema_extra={"example": 29})
    location: Optional[str] = Field(None, max_length=120)
    interests: Optional[List[str]] = Field(
        None, max_length=50, json_schema_extra={"example": ["hiking", "jazz", "hiking"]}
    )
    gender: Optional[str] = Field(None, max_length=40, json_schema_extra={"example": "female"})

    @field_validator("gender")
    @classmethod
    def normalize_gender(cls, value: Optional[str]) -> Optional[str]:
        # "" and whitespace mean "not declared"
        if value is None:
            return None
        value = value.strip().lower()
        return value or None

    @field_validator("interests")
    @classmethod
    def strip_interests(cls, value: Optional[List[str]]) -> Optional[List[str]]:
        if value is None:
            return None
        return [item.strip() for item in value if item and item.strip()]


class DiscoverResponse(BaseModel):
    profiles: List[ProfileResponse]
    limit: int
    offset: int
    has_more: bool
