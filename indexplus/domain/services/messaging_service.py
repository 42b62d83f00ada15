"""
Messaging Service - הודעות יוצאות של נציגים.

Meta מתירה הודעה חופשית רק בתוך 24 שעות מההודעה האחרונה של הלקוח.
הבדיקה נעשית לפני כל שליחה; מענה אוטומטי לא עובר כאן.
"""
from __future__ import annotations

from datetime import datetime, timedelta

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from indexplus.core.clock import Clock, utcnow
from indexplus.core.config import settings
from indexplus.core.exceptions import (
    ChannelNotConnectedError,
    ConversationNotFoundError,
    ReplyWindowExpiredError,
)
from indexplus.core.logging import get_logger
from indexplus.db.models.customer import Customer
from indexplus.db.models.message import Message
from indexplus.domain.services.channel_service import ChannelService
from indexplus.domain.services.conversation_service import ConversationService
from indexplus.domain.services.meta.sender import BaseMessageSender

logger = get_logger(__name__)


def reply_window() -> timedelta:
    return timedelta(hours=settings.REPLY_WINDOW_HOURS)


def is_within_reply_window(last_message_at: datetime | None, now: datetime) -> bool:
    # בדיוק 24 שעות עדיין בתוך החלון; רק מעבר לכך נחסם
    if last_message_at is None:
        return False
    return now - last_message_at <= reply_window()


def ensure_reply_window(conversation_id: int, last_message_at: datetime | None, now: datetime) -> None:
    if not is_within_reply_window(last_message_at, now):
        raise ReplyWindowExpiredError(conversation_id, last_message_at)


class MessagingService:
    def __init__(self, db: AsyncSession, sender: BaseMessageSender, clock: Clock = utcnow):
        self.db = db
        self.sender = sender
        self._clock = clock
        self._conversations = ConversationService(db, clock=clock)

    async def send_agent_message(
        self,
        tenant_id: str,
        conversation_id: int,
        content: str,
        agent_id: str | None = None,
    ) -> Message:
        conversation = await self._conversations.get_conversation(tenant_id, conversation_id)
        if conversation is None:
            raise ConversationNotFoundError(conversation_id)

        ensure_reply_window(conversation.id, conversation.last_message_at, self._clock())

        channel = await ChannelService(self.db).get_connected_channel(tenant_id, conversation.source)
        if channel is None:
            raise ChannelNotConnectedError(tenant_id, conversation.source)

        result = await self.db.execute(select(Customer).where(Customer.id == conversation.customer_id))
        customer = result.scalar_one_or_none()
        if customer is None or not customer.external_id:
            raise ConversationNotFoundError(conversation_id)

        # שליחה קודם: הודעה נשמרת רק אם Meta קיבלה אותה
        external_id = await self.sender.send_text(channel, customer.external_id, content)

        message = await self._conversations.record_agent_message(
            conversation,
            content,
            sender_id=agent_id,
            external_message_id=external_id,
        )
        logger.info(
            "Agent message sent",
            extra_data={
                "tenant_id": tenant_id,
                "conversation_id": conversation.id,
                "message_id": message.id,
                "platform": conversation.source,
            },
        )
        return message
