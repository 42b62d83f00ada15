"""
Conversation Service - ניתוב הודעה נכנסת ללקוח ולשיחה.

find-or-create של לקוח ושל שיחה נשען על אילוצי unique ב-DB:
insert בתוך savepoint, ואם מתחרה הקדים אותנו (IntegrityError) — קוראים
מחדש את השורה המנצחת. כך שתי הודעות מקבילות של לקוח חדש מגיעות לאותה שיחה.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from indexplus.core.clock import Clock, utcnow
from indexplus.core.logging import get_logger, mask_identifier
from indexplus.db.models.channel import Channel, ChannelPlatform
from indexplus.db.models.conversation import Conversation, ConversationStatus
from indexplus.db.models.customer import Customer
from indexplus.db.models.message import Message, SenderType

logger = get_logger(__name__)

NON_TEXT_PLACEHOLDER = "[محتوى غير نصي]"


def customer_metadata_key(platform: str) -> str:
    # WhatsApp נשמר גם הוא תחת psid: רק Instagram מקבל מפתח משלו
    if platform == ChannelPlatform.INSTAGRAM.value:
        return "igsid"
    return "psid"


def synthesize_customer_name(platform: str, external_sender_id: str) -> str:
    """שם זמני עד שהנציג מעדכן: "Instagram Customer (12345)" """
    return f"{platform.capitalize()} Customer ({external_sender_id[:5]})"


@dataclass(frozen=True)
class InboundRoute:
    customer: Customer
    conversation: Conversation
    message: Message


class ConversationService:
    def __init__(self, db: AsyncSession, clock: Clock = utcnow):
        self.db = db
        self._clock = clock

    # ──────────────────────────────────────────────
    #  Customers
    # ──────────────────────────────────────────────

    async def _find_customer(self, tenant_id: str, platform: str, external_id: str) -> Customer | None:
        result = await self.db.execute(
            select(Customer).where(
                Customer.tenant_id == tenant_id,
                Customer.platform == platform,
                Customer.external_id == external_id,
            )
        )
        return result.scalar_one_or_none()

    async def find_or_create_customer(
        self,
        tenant_id: str,
        external_sender_id: str,
        platform: str,
        *,
        name: str | None = None,
        phone: str | None = None,
    ) -> Customer:
        existing = await self._find_customer(tenant_id, platform, external_sender_id)
        if existing is not None:
            return existing

        customer = Customer(
            tenant_id=tenant_id,
            name=name or synthesize_customer_name(platform, external_sender_id),
            phone=phone or external_sender_id,
            platform=platform,
            external_id=external_sender_id,
            tags=[],
            meta={customer_metadata_key(platform): external_sender_id, "platform": platform},
            created_at=self._clock(),
        )
        try:
            async with self.db.begin_nested():
                self.db.add(customer)
            await self.db.commit()
        except IntegrityError:
            winner = await self._find_customer(tenant_id, platform, external_sender_id)
            if winner is None:
                raise
            logger.info(
                "Customer created concurrently, using existing row",
                extra_data={"tenant_id": tenant_id, "customer_id": winner.id},
            )
            return winner

        logger.info(
            "Customer created from inbound message",
            extra_data={
                "tenant_id": tenant_id,
                "customer_id": customer.id,
                "platform": platform,
                "sender": mask_identifier(external_sender_id),
            },
        )
        return customer

    async def add_tag(self, tenant_id: str, customer_id: int, tag: str) -> bool:
        """הוספת תגית — idempotent. מחזיר True רק אם התגית נוספה עכשיו"""
        result = await self.db.execute(
            select(Customer)
            .where(Customer.id == customer_id, Customer.tenant_id == tenant_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        customer = result.scalar_one_or_none()
        if customer is None:
            return False
        tags = list(customer.tags or [])
        if tag in tags:
            return False
        # השמה של list חדש: JSON column לא עוקב אחרי mutation במקום
        customer.tags = tags + [tag]
        await self.db.commit()
        return True

    # ──────────────────────────────────────────────
    #  Conversations
    # ──────────────────────────────────────────────

    async def _find_open_conversation(self, tenant_id: str, customer_id: int, source: str) -> Conversation | None:
        result = await self.db.execute(
            select(Conversation).where(
                Conversation.tenant_id == tenant_id,
                Conversation.customer_id == customer_id,
                Conversation.source == source,
                Conversation.status == ConversationStatus.OPEN.value,
            )
        )
        return result.scalar_one_or_none()

    async def find_or_create_conversation(
        self,
        tenant_id: str,
        customer_id: int,
        channel_id: int | None,
        source: str,
    ) -> Conversation:
        existing = await self._find_open_conversation(tenant_id, customer_id, source)
        if existing is not None:
            return existing

        now = self._clock()
        conversation = Conversation(
            tenant_id=tenant_id,
            customer_id=customer_id,
            channel_id=channel_id,
            source=source,
            status=ConversationStatus.OPEN.value,
            last_message_at=now,
            unread_count=0,
            created_at=now,
        )
        try:
            async with self.db.begin_nested():
                self.db.add(conversation)
            await self.db.commit()
        except IntegrityError:
            winner = await self._find_open_conversation(tenant_id, customer_id, source)
            if winner is None:
                raise
            logger.info(
                "Conversation created concurrently, using existing row",
                extra_data={"tenant_id": tenant_id, "conversation_id": winner.id},
            )
            return winner
        return conversation

    async def get_conversation(self, tenant_id: str, conversation_id: int) -> Conversation | None:
        result = await self.db.execute(
            select(Conversation).where(
                Conversation.id == conversation_id,
                Conversation.tenant_id == tenant_id,
            )
        )
        return result.scalar_one_or_none()

    async def list_conversations(self, tenant_id: str, status: str | None = None) -> list[Conversation]:
        query = select(Conversation).where(Conversation.tenant_id == tenant_id)
        if status:
            query = query.where(Conversation.status == status)
        query = query.order_by(Conversation.last_message_at.desc().nulls_last(), Conversation.id.desc())
        result = await self.db.execute(query)
        return list(result.scalars().all())

    async def mark_as_read(self, tenant_id: str, conversation_id: int) -> bool:
        result = await self.db.execute(
            update(Conversation)
            .where(
                Conversation.id == conversation_id,
                Conversation.tenant_id == tenant_id,
            )
            .values(unread_count=0)
            .execution_options(synchronize_session="fetch")
        )
        await self.db.commit()
        return result.rowcount > 0

    # ──────────────────────────────────────────────
    #  Messages
    # ──────────────────────────────────────────────

    async def record_inbound_message(
        self,
        conversation: Conversation,
        content: str | None,
        *,
        external_message_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> Message:
        now = self._clock()
        message = Message(
            conversation_id=conversation.id,
            tenant_id=conversation.tenant_id,
            sender_type=SenderType.CUSTOMER.value,
            content=content or NON_TEXT_PLACEHOLDER,
            external_message_id=external_message_id,
            meta=metadata,
            created_at=now,
        )
        self.db.add(message)
        # עדכון אטומי: שתי הודעות מקבילות לא דורסות זו את זו
        await self.db.execute(
            update(Conversation)
            .where(Conversation.id == conversation.id)
            .values(
                last_message_at=now,
                unread_count=Conversation.unread_count + 1,
            )
            .execution_options(synchronize_session="fetch")
        )
        await self.db.commit()
        await self.db.refresh(conversation)
        return message

    async def record_agent_message(
        self,
        conversation: Conversation,
        content: str,
        *,
        sender_id: str | None = None,
        external_message_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> Message:
        """הודעת נציג / מענה אוטומטי — לא מזיזה את last_message_at (חלון המענה נמדד מהלקוח)"""
        message = Message(
            conversation_id=conversation.id,
            tenant_id=conversation.tenant_id,
            sender_type=SenderType.AGENT.value,
            sender_id=sender_id,
            content=content,
            external_message_id=external_message_id,
            delivery_status="sent" if external_message_id else None,
            meta=metadata,
            created_at=self._clock(),
        )
        self.db.add(message)
        await self.db.commit()
        return message

    async def route_inbound(
        self,
        channel: Channel,
        external_sender_id: str,
        content: str | None,
        *,
        external_message_id: str | None = None,
        customer_name: str | None = None,
        customer_phone: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> InboundRoute:
        """לקוח → שיחה פתוחה → הודעה, עבור הערוץ שקיבל את האירוע"""
        customer = await self.find_or_create_customer(
            channel.tenant_id,
            external_sender_id,
            channel.platform,
            name=customer_name,
            phone=customer_phone,
        )
        conversation = await self.find_or_create_conversation(
            channel.tenant_id, customer.id, channel.id, channel.platform
        )
        message = await self.record_inbound_message(
            conversation,
            content,
            external_message_id=external_message_id,
            metadata=metadata,
        )
        return InboundRoute(customer=customer, conversation=conversation, message=message)
