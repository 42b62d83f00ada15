"""
Outbox Message Model - Transactional Outbox Pattern

התראות ללקוח (תשלום התקבל / נכשל) נכתבות כאן ונשלחות ע"י ה-worker.
"""
import enum

from sqlalchemy import Column, Integer, String, DateTime, Enum as SQLEnum, JSON

from indexplus.core.clock import utcnow
from indexplus.db.database import Base


class MessageStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    SENT = "sent"
    FAILED = "failed"


class OutboxMessage(Base):
    """הודעה יוצאת ממתינה עם מעקב retry"""

    __tablename__ = "outbox_messages"

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(String(36), nullable=False)

    platform = Column(String(20), nullable=False)  # whatsapp / facebook / instagram
    recipient_id = Column(String(100), nullable=False)  # PSID / IGSID / טלפון

    message_type = Column(String(50), nullable=False)  # payment_success / payment_failed
    message_content = Column(JSON, nullable=False)

    status = Column(SQLEnum(MessageStatus), default=MessageStatus.PENDING, index=True)
    retry_count = Column(Integer, default=0)
    max_retries = Column(Integer, default=3)

    created_at = Column(DateTime, default=utcnow)
    processed_at = Column(DateTime, nullable=True)
    next_retry_at = Column(DateTime, nullable=True)

    last_error = Column(String(1000), nullable=True)
