"""
Payment Service - פתיחת ניסיון תשלום מול Paymob.

יוצר עסקה PENDING, גוזר ממנה merchant_order_id = "{tenant_id}-{id}",
וקורא ל-PaymobClient. הצלחה שומרת URL / קוד Fawry / תוקף; כשל מסמן
את העסקה FAILED עם הודעת השגיאה. customer_id חייב להיות של אותו טנאנט.
"""
from __future__ import annotations

from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from indexplus.core.clock import Clock, utcnow
from indexplus.core.config import settings
from indexplus.core.exceptions import (
    CustomerNotFoundError,
    GatewayConfigMissingError,
    UnsupportedPaymentMethodError,
)
from indexplus.core.logging import get_logger
from indexplus.db.models.customer import Customer
from indexplus.db.models.payment_gateway_config import PaymentGatewayConfig
from indexplus.db.models.payment_transaction import PaymentMethod, PaymentStatus, PaymentTransaction
from indexplus.domain.services.paymob import (
    BillingData,
    PaymentRequest,
    PaymentResult,
    PaymobClient,
    get_paymob_client,
)

logger = get_logger(__name__)


class PaymentService:
    def __init__(
        self,
        db: AsyncSession,
        client: PaymobClient | None = None,
        clock: Clock = utcnow,
    ):
        self.db = db
        self._client = client
        self._clock = clock

    async def _get_config(self, tenant_id: str) -> PaymentGatewayConfig:
        result = await self.db.execute(
            select(PaymentGatewayConfig).where(PaymentGatewayConfig.tenant_id == tenant_id)
        )
        config = result.scalar_one_or_none()
        if config is None:
            raise GatewayConfigMissingError(tenant_id)
        return config

    async def _get_customer(self, tenant_id: str, customer_id: int) -> Customer:
        result = await self.db.execute(
            select(Customer).where(Customer.id == customer_id, Customer.tenant_id == tenant_id)
        )
        customer = result.scalar_one_or_none()
        if customer is None:
            raise CustomerNotFoundError(customer_id)
        return customer

    async def initiate_payment(
        self,
        tenant_id: str,
        amount: Decimal,
        payment_method: str,
        *,
        customer_id: int | None = None,
        order_id: int | None = None,
        billing: BillingData | None = None,
    ) -> tuple[PaymentTransaction, PaymentResult]:
        if payment_method not in {m.value for m in PaymentMethod}:
            raise UnsupportedPaymentMethodError(payment_method)
        config = await self._get_config(tenant_id)
        client = self._client or get_paymob_client(config)
        customer = await self._get_customer(tenant_id, customer_id) if customer_id is not None else None
        if billing is None:
            billing = BillingData(name=customer.name, phone=customer.phone) if customer else BillingData()

        now = self._clock()
        transaction = PaymentTransaction(
            tenant_id=tenant_id,
            customer_id=customer_id,
            order_id=order_id,
            amount=amount,
            currency=settings.PAYMOB_CURRENCY,
            payment_method=payment_method,
            status=PaymentStatus.PENDING,
            created_at=now,
            updated_at=now,
        )
        self.db.add(transaction)
        await self.db.flush()
        transaction.merchant_order_id = transaction.build_merchant_order_id()
        await self.db.commit()

        result = await client.create_payment(
            PaymentRequest(
                amount=amount,
                payment_method=payment_method,
                merchant_order_id=transaction.merchant_order_id,
                billing=billing,
            )
        )

        if result.success:
            transaction.gateway_order_id = result.gateway_order_id
            transaction.payment_url = result.payment_url
            transaction.reference_code = result.reference_code
            transaction.expires_at = result.expires_at
        else:
            # הניסיון לא הגיע ל-Paymob: לא יגיע עליו webhook
            transaction.status = PaymentStatus.FAILED
            transaction.failure_reason = result.error
        transaction.updated_at = self._clock()
        await self.db.commit()

        logger.info(
            "Payment initiated" if result.success else "Payment initiation failed",
            extra_data={
                "tenant_id": tenant_id,
                "transaction_id": transaction.id,
                "merchant_order_id": transaction.merchant_order_id,
                "payment_method": payment_method,
                "success": result.success,
            },
        )
        return transaction, result
