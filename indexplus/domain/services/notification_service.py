"""
Notification Service - התראות ללקוח על תוצאת תשלום (דרך ה-outbox)
"""
from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from indexplus.core.logging import get_logger
from indexplus.db.models.customer import Customer
from indexplus.db.models.outbox_message import OutboxMessage
from indexplus.db.models.payment_transaction import PaymentStatus, PaymentTransaction
from indexplus.domain.services.outbox_service import OutboxService

logger = get_logger(__name__)


@dataclass(frozen=True)
class PaymentSnapshot:
    """
    עותק ערכים של עסקה.

    rollback של תופעת לוואי אחת מבצע expire לאובייקטי ה-ORM בסשן, והגישה
    לשדות אחריו הייתה טוענת lazy מחוץ ל-greenlet — לכן עובדים עם עותק.
    """
    id: int
    tenant_id: str
    customer_id: int | None
    order_id: int | None
    merchant_order_id: str | None
    amount: Decimal | None
    gateway_transaction_id: str | None

    @classmethod
    def of(cls, transaction: PaymentTransaction) -> "PaymentSnapshot":
        return cls(
            id=transaction.id,
            tenant_id=transaction.tenant_id,
            customer_id=transaction.customer_id,
            order_id=transaction.order_id,
            merchant_order_id=transaction.merchant_order_id,
            amount=transaction.amount,
            gateway_transaction_id=transaction.gateway_transaction_id,
        )


def _format_amount(amount: Decimal | float | None) -> str:
    if amount is None:
        return "0"
    value = Decimal(str(amount))
    return f"{value:.2f}".rstrip("0").rstrip(".") if value % 1 else f"{value:.0f}"


def build_payment_success_text(amount: Decimal | float | None, gateway_transaction_id: str | None) -> str:
    return (
        "✅ تم استلام دفعتك بنجاح!\n"
        f"المبلغ: {_format_amount(amount)} جنيه\n"
        f"رقم المعاملة: {gateway_transaction_id or '-'}"
    )


def build_payment_failed_text(reason: str | None) -> str:
    reason_line = f"السبب: {reason}\n" if reason else ""
    return f"❌ فشلت عملية الدفع\n{reason_line}جرب طريقة دفع أخرى أو تواصل معنا."


class NotificationService:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def queue_payment_notification(
        self,
        transaction: PaymentSnapshot,
        status: PaymentStatus,
        reason: str | None = None,
    ) -> OutboxMessage | None:
        """
        הכנסת התראת תשלום ל-outbox.

        מחזיר None כשאין לקוח משויך / ללקוח אין מזהה פלטפורמה — אין לאן לשלוח.
        """
        if transaction.customer_id is None:
            return None
        result = await self.db.execute(
            select(Customer).where(
                Customer.id == transaction.customer_id,
                Customer.tenant_id == transaction.tenant_id,
            )
        )
        customer = result.scalar_one_or_none()
        if customer is None or not customer.platform or not customer.external_id:
            logger.info(
                "Payment notification skipped — customer has no messaging identity",
                extra_data={"transaction_id": transaction.id, "customer_id": transaction.customer_id},
            )
            return None

        if status is PaymentStatus.SUCCESS:
            message_type = "payment_success"
            text = build_payment_success_text(transaction.amount, transaction.gateway_transaction_id)
        else:
            message_type = "payment_failed"
            text = build_payment_failed_text(reason)

        message = await OutboxService(self.db).queue_message(
            tenant_id=transaction.tenant_id,
            platform=customer.platform,
            recipient_id=customer.external_id,
            message_type=message_type,
            message_content={"message_text": text, "transaction_id": transaction.id},
        )
        await self.db.commit()
        return message
