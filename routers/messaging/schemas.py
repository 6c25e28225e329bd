from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field


class SendMessageRequest(BaseModel):
    body: str = Field(..., json_schema_extra={"example": "hi"})


class MessageResponse(BaseModel):
    id: str
    sender_id: str
    receiver_id: Optional[str] = None
    stream_id: Optional[str] = None
    body: str
    is_read: bool = False
    created_at: datetime


class SendMessageResponse(BaseModel):
    status: str = Field(..., json_schema_extra={"example": "delivered"})
    message: MessageResponse


class TranscriptResponse(BaseModel):
    messages: List[MessageResponse]


class MarkReadResponse(BaseModel):
    updated: int


class ConversationSummary(BaseModel):
    partner_id: str
    partner_display_name: Optional[str] = None
    partner_avatar_url: Optional[str] = None
    partner_is_premium: bool = False
    last_message: str
    last_message_at: datetime
    last_message_from_me: bool
    unread_count: int


class ConversationListResponse(BaseModel):
    conversations: List[ConversationSummary]
