"""
Automation Event Model - טריגר שנורה (payment_success / payment_failed) ונצרך ע"י מנוע ה-flows
"""
from sqlalchemy import Column, Integer, String, DateTime, JSON, Index

from indexplus.core.clock import utcnow
from indexplus.db.database import Base


class AutomationEvent(Base):
    __tablename__ = "automation_events"

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(String(36), nullable=False)
    event_type = Column(String(50), nullable=False)
    transaction_id = Column(Integer, nullable=True)
    customer_id = Column(Integer, nullable=True)
    payload = Column(JSON, nullable=True)

    created_at = Column(DateTime, default=utcnow)

    __table_args__ = (
        Index("ix_automation_events_tenant_type", "tenant_id", "event_type"),
    )
