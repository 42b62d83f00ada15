"""
Messaging API Routes - שיחות ושליחת הודעות של נציגים
"""
from datetime import datetime
from typing import List

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field, field_validator
from sqlalchemy.ext.asyncio import AsyncSession

from indexplus.api.dependencies.auth import get_current_agent
from indexplus.api.dependencies.sender import get_sender
from indexplus.core.auth import TokenPayload
from indexplus.core.exceptions import ConversationNotFoundError
from indexplus.core.logging import get_logger
from indexplus.db.database import get_db
from indexplus.domain.services.conversation_service import ConversationService
from indexplus.domain.services.messaging_service import MessagingService
from indexplus.domain.services.meta.sender import BaseMessageSender

logger = get_logger(__name__)

router = APIRouter()


class SendMessageRequest(BaseModel):
    content: str = Field(min_length=1, max_length=2000)

    @field_validator("content")
    @classmethod
    def strip_content(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("Message content cannot be empty")
        return v


class MessageResponse(BaseModel):
    id: int
    conversation_id: int
    sender_type: str
    sender_id: str | None
    content: str
    external_message_id: str | None
    delivery_status: str | None
    created_at: datetime | None

    model_config = {"from_attributes": True}


class ConversationResponse(BaseModel):
    id: int
    customer_id: int
    channel_id: int | None
    source: str
    status: str
    last_message_at: datetime | None
    unread_count: int

    model_config = {"from_attributes": True}


@router.get(
    "/conversations",
    response_model=List[ConversationResponse],
    summary="List conversations",
    description="Tenant conversations, most recent customer activity first.",
    tags=["Messaging"],
)
async def list_conversations(
    status: str | None = Query(None, pattern="^(open|closed)$"),
    agent: TokenPayload = Depends(get_current_agent),
    db: AsyncSession = Depends(get_db),
) -> List[ConversationResponse]:
    return await ConversationService(db).list_conversations(agent.tenant_id, status)


@router.post(
    "/conversations/{conversation_id}/send",
    response_model=MessageResponse,
    summary="Send an agent message",
    description="שליחת הודעת נציג ללקוח — מותר רק בתוך 24 שעות מההודעה האחרונה של הלקוח.",
    responses={
        200: {"description": "Message sent and stored"},
        404: {"description": "Conversation not found"},
        422: {"description": "Reply window expired or channel not connected"},
        502: {"description": "Meta rejected the message"},
    },
    tags=["Messaging"],
)
async def send_message(
    conversation_id: int,
    request: SendMessageRequest,
    agent: TokenPayload = Depends(get_current_agent),
    db: AsyncSession = Depends(get_db),
    sender: BaseMessageSender = Depends(get_sender),
) -> MessageResponse:
    message = await MessagingService(db, sender).send_agent_message(
        agent.tenant_id,
        conversation_id,
        request.content,
        agent_id=agent.user_id,
    )
    return message


@router.post(
    "/conversations/{conversation_id}/read",
    summary="Mark conversation as read",
    tags=["Messaging"],
)
async def mark_conversation_read(
    conversation_id: int,
    agent: TokenPayload = Depends(get_current_agent),
    db: AsyncSession = Depends(get_db),
) -> dict:
    updated = await ConversationService(db).mark_as_read(agent.tenant_id, conversation_id)
    if not updated:
        raise ConversationNotFoundError(conversation_id)
    return {"success": True, "conversation_id": conversation_id, "unread_count": 0}
