"""
Webhook Event Model - טבלת idempotency למניעת עיבוד כפול של webhooks.

כל אירוע נכנס נרשם לפי (platform, external_id) ולא נמחק לעולם. רשומה קיימת חוסמת
עיבוד חוזר; אירוע שנכשל לא מעובד שוב אוטומטית. היוצא מן הכלל הוא retryable:
עיבוד שנקטע בשגיאה לא צפויה, והמסירה הבאה של אותו אירוע תובעת אותו מחדש.
"""
import enum

from sqlalchemy import Column, Integer, String, DateTime, JSON, Enum as SQLEnum, UniqueConstraint, Index

from indexplus.core.clock import utcnow
from indexplus.db.database import Base


class WebhookPlatform(str, enum.Enum):
    FACEBOOK = "facebook"
    INSTAGRAM = "instagram"
    WHATSAPP = "whatsapp"
    PAYMOB = "paymob"


class WebhookEventStatus(str, enum.Enum):
    RECEIVED = "received"
    PROCESSED = "processed"
    FAILED = "failed"
    RETRYABLE = "retryable"


class WebhookEvent(Base):
    """רשומת idempotency - אירוע שהתקבל מ-webhook"""

    __tablename__ = "webhook_events"

    id = Column(Integer, primary_key=True, index=True)
    platform = Column(String(20), nullable=False)
    external_id = Column(String(255), nullable=False)
    payload = Column(JSON, nullable=True)
    status = Column(SQLEnum(WebhookEventStatus), nullable=False, default=WebhookEventStatus.RECEIVED)
    company_id = Column(String(36), nullable=True)  # tenant, אם זוהה
    error = Column(String(1000), nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    processed_at = Column(DateTime, nullable=True)

    __table_args__ = (
        UniqueConstraint("platform", "external_id", name="uq_webhook_events_platform_external_id"),
        Index("ix_webhook_events_status_created", "status", "created_at"),
    )
