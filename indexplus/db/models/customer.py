"""
Customer Model
"""
from sqlalchemy import Column, Integer, String, DateTime, JSON, UniqueConstraint

from indexplus.core.clock import utcnow
from indexplus.db.database import Base


class Customer(Base):
    """לקוח קצה של טנאנט — מזוהה לפי (tenant, platform, external_id)"""

    __tablename__ = "customers"

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(String(36), nullable=False, index=True)
    name = Column(String(255), nullable=True)
    phone = Column(String(50), nullable=True)
    platform = Column(String(20), nullable=True)
    external_id = Column(String(100), nullable=True)  # PSID / IGSID / מספר WhatsApp
    tags = Column(JSON, nullable=False, default=list)
    meta = Column("metadata", JSON, nullable=True)

    created_at = Column(DateTime, default=utcnow)

    __table_args__ = (
        UniqueConstraint("tenant_id", "platform", "external_id", name="uq_customers_tenant_platform_external"),
    )
