"""
Conversation Model

לכל (tenant, customer, source) יש לכל היותר שיחה פתוחה אחת — אכיפה
באינדקס unique חלקי (status = 'open').
"""
import enum

from sqlalchemy import Column, Integer, String, DateTime, Index, text

from indexplus.core.clock import utcnow
from indexplus.db.database import Base


class ConversationStatus(str, enum.Enum):
    OPEN = "open"
    CLOSED = "closed"


class Conversation(Base):
    __tablename__ = "conversations"

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(String(36), nullable=False, index=True)
    customer_id = Column(Integer, nullable=False)
    channel_id = Column(Integer, nullable=True)
    source = Column(String(20), nullable=False)
    status = Column(String(20), nullable=False, default=ConversationStatus.OPEN.value)
    last_message_at = Column(DateTime, nullable=True)
    unread_count = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime, default=utcnow)

    __table_args__ = (
        Index(
            "uq_conversations_open_per_customer_source",
            "tenant_id", "customer_id", "source",
            unique=True,
            sqlite_where=text("status = 'open'"),
            postgresql_where=text("status = 'open'"),
        ),
        Index("ix_conversations_tenant_last_message", "tenant_id", "last_message_at"),
    )
