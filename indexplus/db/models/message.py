"""
Message Model
"""
import enum

from sqlalchemy import Column, Integer, String, DateTime, JSON, Text, Index

from indexplus.core.clock import utcnow
from indexplus.db.database import Base


class SenderType(str, enum.Enum):
    CUSTOMER = "customer"
    AGENT = "agent"


class DeliveryStatus(str, enum.Enum):
    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"
    FAILED = "failed"


class Message(Base):
    __tablename__ = "messages"

    id = Column(Integer, primary_key=True, index=True)
    conversation_id = Column(Integer, nullable=False, index=True)
    tenant_id = Column(String(36), nullable=False)
    sender_type = Column(String(20), nullable=False)
    sender_id = Column(String(100), nullable=True)  # user id של הנציג
    content = Column(Text, nullable=False)
    meta = Column("metadata", JSON, nullable=True)

    external_message_id = Column(String(255), nullable=True)
    delivery_status = Column(String(20), nullable=True)
    delivered_at = Column(DateTime, nullable=True)
    read_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=utcnow)

    __table_args__ = (
        Index("ix_messages_external_message_id", "external_message_id"),
    )
