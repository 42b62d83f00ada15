"""
Paymob Webhook Service - קליטת callback של Paymob מקצה לקצה.

parse → זיהוי טנאנט מה-merchant_order_id → אימות HMAC → גזירת סטטוס →
idempotency → reconciliation → סימון האירוע.

כל תוצאה חוזרת כ-dict שנשלח ל-Paymob עם HTTP 200, גם כשל לא צפוי: האירוע מסומן
retryable והמסירה הבאה שלו משלימה את תופעות הלוואי. קוד שגיאה היה גורם
ל-Paymob לשלוח שוב ושוב.
"""
from __future__ import annotations

from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from indexplus.core.clock import Clock, utcnow
from indexplus.core.exceptions import SignatureInvalidError, TransactionNotFoundError, WebhookPayloadError
from indexplus.core.logging import get_logger
from indexplus.core.security import require_paymob_hmac
from indexplus.db.models.payment_gateway_config import PaymentGatewayConfig
from indexplus.db.models.webhook_event import WebhookEvent, WebhookPlatform
from indexplus.domain.services.idempotency_service import IdempotencyService
from indexplus.domain.services.reconciliation_service import (
    ReconciliationService,
    derive_payment_status,
    extract_merchant_order_id,
    parse_merchant_order_id,
)

logger = get_logger(__name__)


def paymob_event_key(obj: dict[str, Any], status: str) -> str:
    """מזהה האירוע: אותה עסקה ב-pending ואחר כך ב-success הם שני אירועים שונים"""
    return f"{obj.get('id')}:{status}"


class PaymobWebhookService:
    def __init__(self, db: AsyncSession, clock: Clock = utcnow):
        self.db = db
        self._clock = clock

    async def _get_config(self, tenant_id: str) -> PaymentGatewayConfig | None:
        result = await self.db.execute(
            select(PaymentGatewayConfig).where(PaymentGatewayConfig.tenant_id == tenant_id)
        )
        return result.scalar_one_or_none()

    @staticmethod
    def _rejected(error: str) -> dict[str, Any]:
        return {"received": False, "error": error}

    async def _release(self, idempotency: IdempotencyService, record: WebhookEvent, error: str) -> None:
        """מחזיר את האירוע למצב שבו המסירה הבאה שלו תעובד מחדש"""
        try:
            await self.db.rollback()
            await idempotency.mark_retryable(record, error)
        except Exception:
            logger.error(
                "Could not mark Paymob webhook event as retryable",
                extra_data={"error": error},
                exc_info=True,
            )

    async def handle(self, payload: Any, query_hmac: str | None = None) -> dict[str, Any]:
        obj = payload.get("obj") if isinstance(payload, dict) else None
        if not isinstance(obj, dict):
            logger.warning("Paymob webhook without obj")
            return self._rejected("Invalid payload")

        merchant_order_id = extract_merchant_order_id(obj)
        parsed = parse_merchant_order_id(merchant_order_id)
        if parsed is None:
            logger.warning(
                "Paymob webhook with invalid merchant order reference",
                extra_data={"merchant_order_id": merchant_order_id, "gateway_transaction_id": obj.get("id")},
            )
            return self._rejected("Invalid merchant order reference")
        tenant_id = parsed[0]

        config = await self._get_config(tenant_id)
        if config is None:
            logger.warning(
                "Paymob webhook for tenant without gateway config",
                extra_data={"tenant_id": tenant_id, "merchant_order_id": merchant_order_id},
            )
            return self._rejected("Payment gateway configuration not found")

        try:
            require_paymob_hmac(obj, payload.get("hmac") or query_hmac, config.hmac_secret)
        except SignatureInvalidError as e:
            logger.warning(
                "Paymob webhook signature invalid",
                extra_data={
                    "tenant_id": tenant_id,
                    "merchant_order_id": merchant_order_id,
                    "error_code": e.error_code.value,
                },
            )
            return self._rejected("Invalid HMAC signature")

        decision = derive_payment_status(obj)
        idempotency = IdempotencyService(self.db, clock=self._clock)
        registration = await idempotency.register(
            WebhookPlatform.PAYMOB.value,
            paymob_event_key(obj, decision.status.value),
            payload,
            company_id=tenant_id,
        )
        if not registration.new:
            return {"received": True, "duplicate": True}

        record = registration.record
        try:
            outcome = await ReconciliationService(self.db, clock=self._clock).reconcile(
                obj, decision, resume=registration.resumed
            )
        except (TransactionNotFoundError, WebhookPayloadError) as e:
            logger.warning(
                "Paymob webhook could not be reconciled",
                extra_data={
                    "tenant_id": tenant_id,
                    "merchant_order_id": merchant_order_id,
                    "error_code": e.error_code.value,
                },
            )
            await idempotency.mark_failed(record, e.message)
            return self._rejected(e.message)
        except Exception as e:
            logger.error(
                "Paymob webhook processing interrupted",
                extra_data={
                    "tenant_id": tenant_id,
                    "merchant_order_id": merchant_order_id,
                    "error": str(e),
                },
                exc_info=True,
            )
            await self._release(idempotency, record, str(e))
            return self._rejected("Internal processing error")

        await idempotency.mark_processed(record, company_id=tenant_id)
        return {
            "received": True,
            "status": outcome.status.value,
            "applied": outcome.applied,
        }
