"""
Payment Gateway Config Model - הגדרות Paymob לכל טנאנט
"""
from sqlalchemy import Column, String, Integer, DateTime

from indexplus.core.clock import utcnow
from indexplus.db.database import Base


class PaymentGatewayConfig(Base):
    """פרטי התחברות ל-Paymob — רשומה אחת לטנאנט"""

    __tablename__ = "payment_gateway_configs"

    tenant_id = Column(String(36), primary_key=True)
    api_key = Column(String(500), nullable=False)
    integration_id_card = Column(Integer, nullable=True)
    integration_id_fawry = Column(Integer, nullable=True)
    integration_id_wallet = Column(Integer, nullable=True)
    iframe_id = Column(String(50), nullable=True)
    hmac_secret = Column(String(255), nullable=False)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
