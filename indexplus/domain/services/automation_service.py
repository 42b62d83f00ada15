"""
Automation Service - מענה אוטומטי לפי מילות מפתח + רישום טריגרים של אוטומציה.

סדר הערכת הכללים: priority יורד, אחר כך created_at עולה, אחר כך id עולה.
הכלל הראשון שאחת ממילות המפתח שלו מתאימה — מנצח.
"""
from __future__ import annotations

import enum
from typing import Any, Iterable

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from indexplus.core.exceptions import MessagingPlatformError
from indexplus.core.logging import get_logger
from indexplus.db.models.automation_event import AutomationEvent
from indexplus.db.models.automation_rule import AutomationRule
from indexplus.db.models.conversation import Conversation
from indexplus.db.models.customer import Customer
from indexplus.domain.services.channel_service import ChannelService
from indexplus.domain.services.conversation_service import ConversationService
from indexplus.domain.services.meta.sender import BaseMessageSender

logger = get_logger(__name__)

AUTO_RESPONSE_TYPE = "auto_response"


def normalize_text(value: str | None) -> str:
    return (value or "").strip().lower()


class TriggerType(str, enum.Enum):
    EXACT = "exact"
    CONTAINS = "contains"
    STARTS_WITH = "starts_with"

    def matches(self, text: str, keyword: str) -> bool:
        """השוואה אחרי נרמול של שני הצדדים; מילת מפתח ריקה לא מתאימה לעולם"""
        text = normalize_text(text)
        keyword = normalize_text(keyword)
        if not keyword:
            return False
        if self is TriggerType.EXACT:
            return text == keyword
        if self is TriggerType.CONTAINS:
            return keyword in text
        return text.startswith(keyword)

    @classmethod
    def parse(cls, value: str | None) -> "TriggerType | None":
        try:
            return cls(normalize_text(value))
        except ValueError:
            return None


def rule_matches(rule: AutomationRule, text: str) -> bool:
    trigger = TriggerType.parse(rule.trigger_type)
    if trigger is None:
        logger.warning(
            "Automation rule has unknown trigger type",
            extra_data={"rule_id": rule.id, "trigger_type": rule.trigger_type},
        )
        return False
    return any(trigger.matches(text, keyword) for keyword in (rule.keywords or []))


def select_rule(rules: Iterable[AutomationRule], text: str) -> AutomationRule | None:
    """הכלל הראשון שמתאים — rules כבר ממוינים לפי סדר ההערכה"""
    for rule in rules:
        if rule_matches(rule, text):
            return rule
    return None


class AutomationService:
    def __init__(self, db: AsyncSession, sender: BaseMessageSender | None = None):
        self.db = db
        self.sender = sender

    async def get_active_rules(self, tenant_id: str) -> list[AutomationRule]:
        result = await self.db.execute(
            select(AutomationRule)
            .where(
                AutomationRule.tenant_id == tenant_id,
                AutomationRule.is_active.is_(True),
            )
            .order_by(
                AutomationRule.priority.desc(),
                AutomationRule.created_at.asc(),
                AutomationRule.id.asc(),
            )
        )
        return list(result.scalars().all())

    async def match_rule(self, tenant_id: str, text: str | None) -> AutomationRule | None:
        if not normalize_text(text):
            return None
        return select_rule(await self.get_active_rules(tenant_id), text or "")

    async def handle_inbound(
        self,
        conversation: Conversation,
        customer: Customer,
        text: str | None,
    ) -> AutomationRule | None:
        """
        מענה אוטומטי להודעה נכנסת.

        חלון 24 השעות לא נבדק כאן — המענה הוא תגובה מיידית להודעת הלקוח.
        כשלי שליחה נרשמים בלוג ולא נזרקים: ההודעה הנכנסת כבר נשמרה.
        """
        rule = await self.match_rule(conversation.tenant_id, text)
        if rule is None:
            return None

        channel = await ChannelService(self.db).get_connected_channel(
            conversation.tenant_id, conversation.source
        )
        if channel is None or self.sender is None:
            logger.warning(
                "Automation rule matched but channel is not connected",
                extra_data={
                    "tenant_id": conversation.tenant_id,
                    "rule_id": rule.id,
                    "platform": conversation.source,
                },
            )
            return rule

        try:
            external_id = await self.sender.send_text(channel, customer.external_id, rule.response_content)
        except MessagingPlatformError as e:
            logger.error(
                "Automation auto-response send failed",
                extra_data={
                    "tenant_id": conversation.tenant_id,
                    "rule_id": rule.id,
                    "conversation_id": conversation.id,
                    "error": e.message,
                    "details": e.details,
                },
            )
            return rule

        await ConversationService(self.db).record_agent_message(
            conversation,
            rule.response_content,
            external_message_id=external_id,
            metadata={"automation_rule_id": rule.id, "type": AUTO_RESPONSE_TYPE},
        )
        logger.info(
            "Automation auto-response sent",
            extra_data={
                "tenant_id": conversation.tenant_id,
                "rule_id": rule.id,
                "conversation_id": conversation.id,
            },
        )
        return rule

    async def fire_event(
        self,
        tenant_id: str,
        event_type: str,
        *,
        transaction_id: int | None = None,
        customer_id: int | None = None,
        payload: dict[str, Any] | None = None,
    ) -> AutomationEvent:
        event = AutomationEvent(
            tenant_id=tenant_id,
            event_type=event_type,
            transaction_id=transaction_id,
            customer_id=customer_id,
            payload=payload,
        )
        self.db.add(event)
        await self.db.commit()
        logger.info(
            "Automation event fired",
            extra_data={
                "tenant_id": tenant_id,
                "event_type": event_type,
                "transaction_id": transaction_id,
            },
        )
        return event
