from datetime import datetime
from typing import List, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


class LeadOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    client_id: UUID
    wa_user_id: str
    wa_profile_name: Optional[str] = None
    conversation_status: str
    routing_state: str
    human_required_reason: Optional[str] = None
    human_operator_id: Optional[str] = None
    score: int
    irrelevant_streak: int
    reminders_sent: int
    current_step_id: Optional[UUID] = None
    taken_at: Optional[datetime] = None
    closed_at: Optional[datetime] = None
    next_reminder_at: Optional[datetime] = None


class MessageOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    direction: str
    text_content: str
    phone_number_id: Optional[str] = None
    external_message_id: Optional[str] = None
    created_at: datetime


class TakeLeadRequest(BaseModel):
    operator_id: Optional[str] = None


class SendMessageRequest(BaseModel):
    text: str = Field(min_length=1, max_length=2000)


class LeadActionResponse(BaseModel):
    success: bool
    lead: LeadOut


class SendMessageResponse(BaseModel):
    success: bool
    message: MessageOut


class LeadMessagesResponse(BaseModel):
    lead: LeadOut
    messages: List[MessageOut]
