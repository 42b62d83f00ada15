"""
Idempotency Service - הופך מסירת webhook "לפחות פעם אחת" לעיבוד "לכל היותר פעם אחת".

ה-insert רץ בתוך savepoint. הפרת ה-unique על (platform, external_id) פירושה
שהאירוע כבר נראה, בלי קשר לסטטוס שלו. רשומה ב-retryable נתבעת מחדש ב-UPDATE
מותנה, כך שרק מסירה אחת מבין כמה מקבילות מקבלת אותה.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from indexplus.core.clock import Clock, utcnow
from indexplus.core.logging import get_logger
from indexplus.db.models.webhook_event import WebhookEvent, WebhookEventStatus

logger = get_logger(__name__)


@dataclass(frozen=True)
class RegistrationResult:
    new: bool
    record: WebhookEvent
    # עיבוד קודם של אותו אירוע נקטע באמצע
    resumed: bool = False


class IdempotencyService:
    """רישום אירועי webhook וסימון סיום עיבוד"""

    def __init__(self, db: AsyncSession, clock: Clock = utcnow):
        self.db = db
        self._clock = clock

    async def register(
        self,
        platform: str,
        external_id: str,
        payload: dict[str, Any] | None = None,
        company_id: str | None = None,
    ) -> RegistrationResult:
        record = WebhookEvent(
            platform=platform,
            external_id=external_id,
            payload=payload,
            status=WebhookEventStatus.RECEIVED,
            company_id=company_id,
            created_at=self._clock(),
        )
        try:
            async with self.db.begin_nested():
                self.db.add(record)
            await self.db.commit()
        except IntegrityError:
            # ה-savepoint כבר גולגל: הטרנזקציה החיצונית עדיין שמישה
            existing = await self._get(platform, external_id)
            if existing is not None and existing.status == WebhookEventStatus.RETRYABLE:
                if await self._reclaim(existing):
                    logger.info(
                        "Interrupted webhook event reclaimed",
                        extra_data={"platform": platform, "external_id": external_id},
                    )
                    return RegistrationResult(new=True, record=existing, resumed=True)
            logger.info(
                "Duplicate webhook event ignored",
                extra_data={
                    "platform": platform,
                    "external_id": external_id,
                    "existing_status": existing.status.value if existing else None,
                },
            )
            if existing is None:
                # השורה המתחרה עדיין לא committed: מתייחסים כאל כפילות
                return RegistrationResult(new=False, record=record)
            return RegistrationResult(new=False, record=existing)

        return RegistrationResult(new=True, record=record)

    async def _reclaim(self, record: WebhookEvent) -> bool:
        result = await self.db.execute(
            update(WebhookEvent)
            .where(
                WebhookEvent.id == record.id,
                WebhookEvent.status == WebhookEventStatus.RETRYABLE,
            )
            .values(status=WebhookEventStatus.RECEIVED, error=None, processed_at=None)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        if result.rowcount != 1:
            return False
        await self.db.refresh(record)
        return True

    async def mark_processed(self, record: WebhookEvent, company_id: str | None = None) -> None:
        record.status = WebhookEventStatus.PROCESSED
        record.processed_at = self._clock()
        if company_id:
            record.company_id = company_id
        await self.db.commit()

    async def mark_failed(self, record: WebhookEvent, error: str) -> None:
        record.status = WebhookEventStatus.FAILED
        record.processed_at = self._clock()
        record.error = error[:1000]
        await self.db.commit()

    async def mark_retryable(self, record: WebhookEvent, error: str) -> None:
        """העיבוד נקטע: המסירה הבאה של אותו אירוע תעבד אותו שוב"""
        record.status = WebhookEventStatus.RETRYABLE
        record.processed_at = self._clock()
        record.error = error[:1000]
        await self.db.commit()

    async def _get(self, platform: str, external_id: str) -> WebhookEvent | None:
        result = await self.db.execute(
            select(WebhookEvent)
            .where(
                WebhookEvent.platform == platform,
                WebhookEvent.external_id == external_id,
            )
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()
