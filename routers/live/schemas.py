from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


class CreateStreamRequest(BaseModel):
    title: str = Field(..., min_length=1, max_length=120, json_schema_extra={"example": "Friday night Q&A"})
    description: Optional[str] = Field(None, max_length=1000)
    is_premium_only: bool = False
    stream_url: Optional[str] = None


class StreamResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    streamer_id: str
    title: str
    description: Optional[str] = None
    stream_url: Optional[str] = None
    is_active: bool
    is_premium_only: bool
    viewer_count: int
    created_at: datetime
    ended_at: Optional[datetime] = None
    streamer_display_name: Optional[str] = None
    streamer_avatar_url: Optional[str] = None


class StreamListResponse(BaseModel):
    streams: List[StreamResponse]


class JoinResponse(BaseModel):
    result: str = Field(..., json_schema_extra={"example": "joined"})
    viewer_count: int


class ViewerCountResponse(BaseModel):
    stream_id: str
    viewer_count: int
