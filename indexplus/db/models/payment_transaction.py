"""
Payment Transaction Model - ניסיון תשלום אחד מול Paymob

אחרי היצירה רק מנוע ה-reconciliation משנה את status,
וסטטוס סופי (SUCCESS / FAILED) לא משתנה לעולם.
"""
import enum

from sqlalchemy import Column, Integer, String, DateTime, Numeric, JSON, Text, Enum as SQLEnum, Index

from indexplus.core.clock import utcnow
from indexplus.db.database import Base


class PaymentStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    SUCCESS = "success"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_PAYMENT_STATUSES


TERMINAL_PAYMENT_STATUSES = frozenset({PaymentStatus.SUCCESS, PaymentStatus.FAILED})


class PaymentMethod(str, enum.Enum):
    CARD = "card"
    FAWRY = "fawry"
    VODAFONE_CASH = "vodafone_cash"
    ORANGE_MONEY = "orange_money"
    ETISALAT_CASH = "etisalat_cash"

    @property
    def is_wallet(self) -> bool:
        return self in (
            PaymentMethod.VODAFONE_CASH,
            PaymentMethod.ORANGE_MONEY,
            PaymentMethod.ETISALAT_CASH,
        )


class PaymentTransaction(Base):
    """עסקת תשלום — merchant_order_id = "{tenant_id}-{id}" מקשר בין העסקה להזמנה ב-Paymob"""

    __tablename__ = "payment_transactions"

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(String(36), nullable=False, index=True)
    customer_id = Column(Integer, nullable=True)
    order_id = Column(Integer, nullable=True)  # SalesRecord שהתשלום מסלק

    merchant_order_id = Column(String(100), unique=True, nullable=True)
    gateway_order_id = Column(String(50), nullable=True)
    gateway_transaction_id = Column(String(50), nullable=True)

    amount = Column(Numeric(12, 2), nullable=False)
    currency = Column(String(3), nullable=False, default="EGP")
    payment_method = Column(String(30), nullable=False)
    status = Column(SQLEnum(PaymentStatus), nullable=False, default=PaymentStatus.PENDING)
    failure_reason = Column(Text, nullable=True)

    payment_url = Column(Text, nullable=True)
    reference_code = Column(String(50), nullable=True)  # קוד Fawry
    expires_at = Column(DateTime, nullable=True)
    paid_at = Column(DateTime, nullable=True)

    # שם העמודה "metadata" שמור ב-declarative, לכן attribute בשם אחר
    meta = Column("metadata", JSON, nullable=True)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("ix_payment_transactions_tenant_status", "tenant_id", "status"),
    )

    def build_merchant_order_id(self) -> str:
        return f"{self.tenant_id}-{self.id}"
