from typing import Optional
from uuid import UUID

from pydantic import BaseModel, Field


class OutboundSendRequest(BaseModel):
    session_id: UUID
    target_address: str = Field(min_length=1)
    text: str = Field(min_length=1)
    client_request_id: str = Field(min_length=1, max_length=200)


class OutboundSendResponse(BaseModel):
    success: bool
    created: bool
    chat_id: UUID
    message_id: UUID
    status: str
    remote_address: str
    message: Optional[str] = None
