"""
Payment API Routes
"""
from datetime import datetime
from decimal import Decimal

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field, field_serializer
from sqlalchemy.ext.asyncio import AsyncSession

from indexplus.api.dependencies.auth import get_current_agent
from indexplus.core.auth import TokenPayload
from indexplus.core.logging import get_logger
from indexplus.db.database import get_db
from indexplus.domain.services.payment_service import PaymentService
from indexplus.domain.services.paymob import BillingData

logger = get_logger(__name__)

router = APIRouter()


class BillingInfo(BaseModel):
    name: str | None = Field(default=None, max_length=200)
    email: str | None = Field(default=None, max_length=200)
    phone: str | None = Field(default=None, max_length=30)


class PaymentCreate(BaseModel):
    """Schema for initiating a Paymob payment"""
    amount: Decimal = Field(gt=0, max_digits=12, decimal_places=2)
    payment_method: str
    customer_id: int | None = None
    order_id: int | None = None
    billing: BillingInfo | None = None


class PaymentResponse(BaseModel):
    transaction_id: int
    merchant_order_id: str
    status: str
    success: bool
    payment_url: str | None = None
    reference_code: str | None = None
    expires_at: datetime | None = None
    error: str | None = None

    @field_serializer("status")
    def serialize_status(self, v) -> str:
        return str(getattr(v, "value", v))


@router.post(
    "",
    response_model=PaymentResponse,
    summary="Initiate a payment",
    description="Creates a pending transaction and requests a card / Fawry / wallet payment from Paymob.",
    responses={
        200: {"description": "Attempt recorded (check `success`)"},
        400: {"description": "Unsupported payment method"},
        404: {"description": "Tenant has no payment gateway configuration"},
    },
    tags=["Payments"],
)
async def create_payment(
    payment_data: PaymentCreate,
    agent: TokenPayload = Depends(get_current_agent),
    db: AsyncSession = Depends(get_db),
) -> PaymentResponse:
    logger.info(
        "Payment requested",
        extra_data={
            "tenant_id": agent.tenant_id,
            "user_id": agent.user_id,
            "payment_method": payment_data.payment_method,
        },
    )
    billing = BillingData(**payment_data.billing.model_dump()) if payment_data.billing else None
    transaction, result = await PaymentService(db).initiate_payment(
        agent.tenant_id,
        payment_data.amount,
        payment_data.payment_method,
        customer_id=payment_data.customer_id,
        order_id=payment_data.order_id,
        billing=billing,
    )
    return PaymentResponse(
        transaction_id=transaction.id,
        merchant_order_id=transaction.merchant_order_id,
        status=transaction.status,
        success=result.success,
        payment_url=result.payment_url,
        reference_code=result.reference_code,
        expires_at=result.expires_at,
        error=result.error,
    )
