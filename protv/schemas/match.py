from pydantic import BaseModel, Field
from uuid import UUID
from datetime import datetime
from typing import Optional

from protv.schemas.profile import ProfileResponse


class MatchResponse(BaseModel):
    id: UUID
    room_id: str
    user1_id: UUID
    user2_id: UUID
    status: str
    created_at: datetime
    ended_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class RoomDetails(BaseModel):
    match: MatchResponse
    counterpart: Optional[ProfileResponse] = None
    connection_status: Optional[str] = None


class RoomActionRequest(BaseModel):
    user_id: UUID


class ReportCreate(BaseModel):
    user_id: UUID
    reason: str = ""


class RoomExitResponse(BaseModel):
    """Where the client goes after leaving a room."""

    destination: str = "queue"
    match: MatchResponse
    report_id: Optional[UUID] = None


class ChatMessageCreate(BaseModel):
    user_id: UUID
    message: str = Field(max_length=2000)


class ChatMessageResponse(BaseModel):
    id: UUID
    match_id: UUID
    sender_id: UUID
    message: str
    created_at: datetime

    model_config = {"from_attributes": True}


class ConnectionResponse(BaseModel):
    id: UUID
    user1_id: UUID
    user2_id: UUID
    status: str
    created_at: datetime

    model_config = {"from_attributes": True}


class ConnectionListItem(BaseModel):
    connection_id: UUID
    partner: ProfileResponse
    status: str
    created_at: datetime


class ConversationMessageCreate(BaseModel):
    message: str = Field(max_length=2000)
