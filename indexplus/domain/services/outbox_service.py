"""
Outbox Service - Transactional Outbox Pattern for customer notifications

התראות נכתבות לטבלת outbox ונשלחות ע"י Celery worker, כך שכשל של Meta
לא מפיל את עיבוד ה-webhook שיצר אותן.
"""
from __future__ import annotations

from datetime import timedelta
from typing import Any

from sqlalchemy import select, or_
from sqlalchemy.ext.asyncio import AsyncSession

from indexplus.core.clock import Clock, utcnow
from indexplus.core.config import settings
from indexplus.db.models.outbox_message import OutboxMessage, MessageStatus


def _calculate_backoff_seconds(
    retry_count: int,
    *,
    base_seconds: int,
    max_backoff_seconds: int,
) -> int:
    """
    Exponential backoff: base_seconds * 2**retry_count, חסום ב-max_backoff_seconds.

    לא מחשבים 2**retry_count ישירות — retry_count גדול במיוחד היה מייצר מספר ענק.
    """
    if base_seconds <= 0 or max_backoff_seconds <= 0:
        return 0
    retry_count = max(retry_count, 0)
    if base_seconds >= max_backoff_seconds:
        return max_backoff_seconds

    # הכפלה הדרגתית עד שחוצים את התקרה
    backoff = base_seconds
    for _ in range(retry_count):
        backoff *= 2
        if backoff >= max_backoff_seconds:
            return max_backoff_seconds
    return backoff


class OutboxService:
    def __init__(self, db: AsyncSession, clock: Clock = utcnow):
        self.db = db
        self._clock = clock

    async def queue_message(
        self,
        tenant_id: str,
        platform: str,
        recipient_id: str,
        message_type: str,
        message_content: dict[str, Any],
    ) -> OutboxMessage:
        """הוספה ל-outbox — ה-commit באחריות הקורא"""
        message = OutboxMessage(
            tenant_id=tenant_id,
            platform=platform,
            recipient_id=recipient_id,
            message_type=message_type,
            message_content=message_content,
            status=MessageStatus.PENDING,
            retry_count=0,
            created_at=self._clock(),
        )
        self.db.add(message)
        return message

    async def get_pending_messages(self, limit: int | None = None) -> list[OutboxMessage]:
        """הודעות ממתינות שזמן ה-retry שלהן הגיע"""
        now = self._clock()
        result = await self.db.execute(
            select(OutboxMessage)
            .where(
                OutboxMessage.status == MessageStatus.PENDING,
                or_(OutboxMessage.next_retry_at.is_(None), OutboxMessage.next_retry_at <= now),
            )
            .order_by(OutboxMessage.created_at, OutboxMessage.id)
            .limit(limit or settings.OUTBOX_BATCH_SIZE)
            .with_for_update(skip_locked=True)
        )
        return list(result.scalars().all())

    async def _get(self, message_id: int) -> OutboxMessage | None:
        result = await self.db.execute(select(OutboxMessage).where(OutboxMessage.id == message_id))
        return result.scalar_one_or_none()

    async def mark_as_processing(self, message_id: int) -> None:
        message = await self._get(message_id)
        if message:
            message.status = MessageStatus.PROCESSING
            await self.db.commit()

    async def mark_as_sent(self, message_id: int) -> None:
        message = await self._get(message_id)
        if message:
            message.status = MessageStatus.SENT
            message.processed_at = self._clock()
            message.last_error = None
            await self.db.commit()

    async def mark_as_failed(self, message_id: int, error: str) -> None:
        """כשל שליחה — חזרה ל-pending עם backoff, או FAILED אחרי max_retries"""
        message = await self._get(message_id)
        if not message:
            return
        message.retry_count = (message.retry_count or 0) + 1
        message.last_error = error[:1000]
        if message.retry_count >= (message.max_retries or 0):
            message.status = MessageStatus.FAILED
            message.processed_at = self._clock()
        else:
            message.status = MessageStatus.PENDING
            backoff = _calculate_backoff_seconds(
                message.retry_count,
                base_seconds=settings.OUTBOX_RETRY_BASE_SECONDS,
                max_backoff_seconds=settings.OUTBOX_MAX_BACKOFF_SECONDS,
            )
            message.next_retry_at = self._clock() + timedelta(seconds=backoff)
        await self.db.commit()
