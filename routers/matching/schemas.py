from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field


class LikeRequest(BaseModel):
    target_user_id: str = Field(..., min_length=1, json_schema_extra={"example": "user_8f2c"})


class LikeResponse(BaseModel):
    target_user_id: str
    result: str = Field(..., json_schema_extra={"example": "mutual_match"})
    is_match: bool


class SentLike(BaseModel):
    user_id: str
    status: str
    created_at: datetime


class MatchItem(BaseModel):
    user_id: str
    matched_at: datetime
    display_name: Optional[str] = None
    avatar_url: Optional[str] = None
    is_premium: bool = False


class MatchListResponse(BaseModel):
    matches: List[MatchItem]
