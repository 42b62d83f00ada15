"""
Automation Rule Model - כללי מענה אוטומטי לפי מילות מפתח (קריאה בלבד מכאן)
"""
from sqlalchemy import Column, Integer, String, DateTime, JSON, Text, Boolean

from indexplus.core.clock import utcnow
from indexplus.db.database import Base


class AutomationRule(Base):
    __tablename__ = "automation_rules"

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(String(36), nullable=False, index=True)
    name = Column(String(255), nullable=True)
    keywords = Column(JSON, nullable=False, default=list)
    trigger_type = Column(String(20), nullable=False, default="contains")
    response_content = Column(Text, nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
    priority = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime, default=utcnow)
