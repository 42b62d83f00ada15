"""
Sales Record Model - ההזמנה שהתשלום מסלק (רק status נכתב מהשירות הזה)
"""
import enum

from sqlalchemy import Column, Integer, String, DateTime, Numeric, Enum as SQLEnum

from indexplus.core.clock import utcnow
from indexplus.db.database import Base


class SalesRecordStatus(str, enum.Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class SalesRecord(Base):
    __tablename__ = "sales_records"

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(String(36), nullable=False, index=True)
    customer_id = Column(Integer, nullable=True)
    amount = Column(Numeric(12, 2), nullable=True)
    status = Column(SQLEnum(SalesRecordStatus), nullable=False, default=SalesRecordStatus.PENDING)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
