"""
Meta Webhook Service - עיבוד אירועי Facebook / Instagram / WhatsApp אחרי אימות החתימה.

מבנה ה-payload:
  page / instagram:           entry[] → messaging[] → {sender, message{mid, text, is_echo}}
  whatsapp_business_account:  entry[] → changes[] → value{metadata, contacts[], messages[], statuses[]}

כל הודעה עוברת idempotency לפי המזהה שלה, ואז ניתוב ללקוח/שיחה ומענה אוטומטי.
עדכוני סטטוס של WhatsApp (sent/delivered/read/failed) מעדכנים את ההודעה היוצאת.
"""
from __future__ import annotations

from dataclasses import dataclass, asdict
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import or_, update
from sqlalchemy.ext.asyncio import AsyncSession

from indexplus.core.clock import Clock, utcnow
from indexplus.core.logging import get_logger, mask_identifier
from indexplus.db.models.channel import Channel, ChannelPlatform
from indexplus.db.models.message import DeliveryStatus, Message
from indexplus.domain.services.automation_service import AutomationService
from indexplus.domain.services.channel_service import ChannelService
from indexplus.domain.services.conversation_service import ConversationService
from indexplus.domain.services.idempotency_service import IdempotencyService
from indexplus.domain.services.meta.sender import BaseMessageSender

logger = get_logger(__name__)

OBJECT_PLATFORMS = {
    "page": ChannelPlatform.FACEBOOK.value,
    "instagram": ChannelPlatform.INSTAGRAM.value,
    "whatsapp_business_account": ChannelPlatform.WHATSAPP.value,
}

# סטטוס לא יורד: read שהגיע לפני delivered לא נדרס
_DELIVERY_RANK = {
    DeliveryStatus.SENT.value: 1,
    DeliveryStatus.DELIVERED.value: 2,
    DeliveryStatus.READ.value: 3,
    DeliveryStatus.FAILED.value: 3,
}


@dataclass
class ProcessingSummary:
    processed: int = 0
    duplicates: int = 0
    ignored: int = 0
    failed: int = 0


def extract_whatsapp_text(message: dict[str, Any]) -> str | None:
    msg_type = message.get("type")
    if msg_type == "text":
        return (message.get("text") or {}).get("body")
    if msg_type == "button":
        return (message.get("button") or {}).get("text")
    if msg_type == "interactive":
        interactive = message.get("interactive") or {}
        reply = interactive.get("button_reply") or interactive.get("list_reply") or {}
        return reply.get("title")
    return None


def _parse_timestamp(value: Any, fallback: datetime) -> datetime:
    try:
        return datetime.fromtimestamp(int(value), tz=timezone.utc).replace(tzinfo=None)
    except (TypeError, ValueError, OverflowError, OSError):
        return fallback


class MetaWebhookService:
    def __init__(self, db: AsyncSession, sender: BaseMessageSender | None = None, clock: Clock = utcnow):
        self.db = db
        self.sender = sender
        self._clock = clock
        self._channels = ChannelService(db)
        self._idempotency = IdempotencyService(db, clock=clock)

    async def process(self, payload: dict[str, Any]) -> dict[str, Any]:
        platform = OBJECT_PLATFORMS.get(payload.get("object"))
        if platform is None:
            logger.info("Meta webhook with unsupported object ignored", extra_data={"object": payload.get("object")})
            return {"status": "ignored", "reason": "unsupported object"}

        summary = ProcessingSummary()
        for entry in payload.get("entry") or []:
            if not isinstance(entry, dict):
                continue
            if platform == ChannelPlatform.WHATSAPP.value:
                await self._process_whatsapp_entry(entry, summary)
            else:
                await self._process_messaging_entry(platform, entry, summary)

        return {"status": "ok", "platform": platform, **asdict(summary)}

    # ──────────────────────────────────────────────
    #  Facebook / Instagram
    # ──────────────────────────────────────────────

    async def _process_messaging_entry(self, platform: str, entry: dict[str, Any], summary: ProcessingSummary) -> None:
        events = entry.get("messaging") or []
        channel = await self._channels.get_by_platform_id(platform, str(entry.get("id")))
        if channel is None:
            logger.warning(
                "Meta webhook for unknown channel",
                extra_data={"platform": platform, "platform_id": entry.get("id")},
            )
            summary.ignored += len(events)
            return

        for event in events:
            message = event.get("message") if isinstance(event, dict) else None
            # echo = הודעה שהעמוד עצמו שלח; אירועים בלי message (read/delivery/postback) לא מנותבים
            if not isinstance(message, dict) or message.get("is_echo"):
                summary.ignored += 1
                continue
            sender_id = (event.get("sender") or {}).get("id")
            mid = message.get("mid")
            if not sender_id or not mid:
                summary.ignored += 1
                continue

            await self._ingest_message(
                channel,
                external_id=mid,
                sender_id=str(sender_id),
                text=message.get("text"),
                raw=event,
                summary=summary,
                metadata={"platform": platform, "attachments": message.get("attachments")} if message.get("attachments") else None,
            )

    # ──────────────────────────────────────────────
    #  WhatsApp
    # ──────────────────────────────────────────────

    async def _process_whatsapp_entry(self, entry: dict[str, Any], summary: ProcessingSummary) -> None:
        for change in entry.get("changes") or []:
            value = change.get("value") if isinstance(change, dict) else None
            if not isinstance(value, dict):
                continue
            messages = value.get("messages") or []
            statuses = value.get("statuses") or []

            phone_number_id = (value.get("metadata") or {}).get("phone_number_id")
            channel = (
                await self._channels.get_by_platform_id(ChannelPlatform.WHATSAPP.value, str(phone_number_id))
                if phone_number_id else None
            )
            if channel is None:
                logger.warning(
                    "WhatsApp webhook for unknown phone number",
                    extra_data={"phone_number_id": phone_number_id},
                )
                summary.ignored += len(messages) + len(statuses)
                continue

            contact_names = {
                contact.get("wa_id"): (contact.get("profile") or {}).get("name")
                for contact in value.get("contacts") or []
                if isinstance(contact, dict)
            }

            for message in messages:
                wa_id = message.get("from")
                msg_id = message.get("id")
                if not wa_id or not msg_id:
                    summary.ignored += 1
                    continue
                await self._ingest_message(
                    channel,
                    external_id=msg_id,
                    sender_id=str(wa_id),
                    text=extract_whatsapp_text(message),
                    raw=message,
                    summary=summary,
                    customer_name=contact_names.get(wa_id),
                    customer_phone=str(wa_id),
                    metadata={"platform": channel.platform, "type": message.get("type")},
                )

            for status in statuses:
                await self._apply_delivery_status(channel, status, summary)

    async def _apply_delivery_status(self, channel: Channel, status: dict[str, Any], summary: ProcessingSummary) -> None:
        wamid = status.get("id")
        state = status.get("status")
        if not wamid or state not in _DELIVERY_RANK:
            summary.ignored += 1
            return

        # Meta משתמשת באותו id לכל שלבי החיים של ההודעה
        registration = await self._idempotency.register(
            ChannelPlatform.WHATSAPP.value, f"{wamid}:{state}", status, company_id=channel.tenant_id
        )
        if not registration.new:
            summary.duplicates += 1
            return

        at = _parse_timestamp(status.get("timestamp"), self._clock())
        values: dict[Any, Any] = {Message.delivery_status: state}
        if state == DeliveryStatus.DELIVERED.value:
            values[Message.delivered_at] = at
        elif state == DeliveryStatus.READ.value:
            values[Message.read_at] = at

        lower_states = [s for s, rank in _DELIVERY_RANK.items() if rank < _DELIVERY_RANK[state]]
        await self.db.execute(
            update(Message)
            .where(
                Message.external_message_id == wamid,
                Message.tenant_id == channel.tenant_id,
                or_(Message.delivery_status.is_(None), Message.delivery_status.in_(lower_states)),
            )
            .values(values)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        await self._idempotency.mark_processed(registration.record, company_id=channel.tenant_id)
        summary.processed += 1

    # ──────────────────────────────────────────────
    #  שלב משותף
    # ──────────────────────────────────────────────

    async def _ingest_message(
        self,
        channel: Channel,
        *,
        external_id: str,
        sender_id: str,
        text: str | None,
        raw: dict[str, Any],
        summary: ProcessingSummary,
        customer_name: str | None = None,
        customer_phone: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        tenant_id = channel.tenant_id
        channel_id = channel.id
        registration = await self._idempotency.register(
            channel.platform, external_id, raw, company_id=tenant_id
        )
        if not registration.new:
            summary.duplicates += 1
            return

        try:
            route = await ConversationService(self.db, clock=self._clock).route_inbound(
                channel,
                sender_id,
                text,
                external_message_id=external_id,
                customer_name=customer_name,
                customer_phone=customer_phone,
                metadata=metadata,
            )
            if text:
                await AutomationService(self.db, self.sender).handle_inbound(
                    route.conversation, route.customer, text
                )
        except Exception as e:
            # האירוע נשמר כ-failed ולא יעובד שוב; Meta מקבלת 200 כדי לא להציף ב-retries
            await self.db.rollback()
            await self._idempotency.mark_failed(registration.record, str(e))
            # ה-rollback עשה expire לערוץ; שאר האירועים ב-batch עדיין צריכים אותו
            await self.db.refresh(channel)
            logger.error(
                "Inbound Meta message processing failed",
                extra_data={
                    "tenant_id": tenant_id,
                    "channel_id": channel_id,
                    "external_id": external_id,
                    "sender": mask_identifier(sender_id),
                    "error": str(e),
                },
                exc_info=True,
            )
            summary.failed += 1
            return

        await self._idempotency.mark_processed(registration.record, company_id=tenant_id)
        summary.processed += 1
