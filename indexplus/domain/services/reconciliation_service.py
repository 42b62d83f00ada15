"""
Reconciliation Service - החלת סטטוס תשלום שדווח ע"י Paymob.

העדכון הוא UPDATE מותנה אחד (רק אם הסטטוס הנוכחי אינו סופי) ואחריו commit —
זה גבול העמידות. תופעות הלוואי (סגירת הזמנה, תגית, התראה, טריגר אוטומציה)
רצות אחרי ה-commit, כל אחת מבודדת: כשל באחת נרשם בלוג ולא מבטל את הסטטוס
ולא את האחרות.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from indexplus.core.clock import Clock, utcnow
from indexplus.core.exceptions import TransactionNotFoundError, WebhookPayloadError
from indexplus.core.logging import get_logger
from indexplus.db.models.payment_transaction import (
    PaymentStatus,
    PaymentTransaction,
    TERMINAL_PAYMENT_STATUSES,
)
from indexplus.db.models.sales_record import SalesRecord, SalesRecordStatus
from indexplus.domain.services.automation_service import AutomationService
from indexplus.domain.services.conversation_service import ConversationService
from indexplus.domain.services.notification_service import NotificationService, PaymentSnapshot

logger = get_logger(__name__)

TAG_PAID = "Paid"
TAG_PAYMENT_FAILED = "Payment Failed"
EVENT_PAYMENT_SUCCESS = "payment_success"
EVENT_PAYMENT_FAILED = "payment_failed"

DEFAULT_FAILURE_REASON = "Payment failed"
UNKNOWN_FAILURE_REASON = "unknown error"

_TERMINAL = sorted(TERMINAL_PAYMENT_STATUSES, key=lambda s: s.value)


@dataclass(frozen=True)
class StatusDecision:
    status: PaymentStatus
    reason: str | None = None


@dataclass(frozen=True)
class ReconciliationOutcome:
    merchant_order_id: str
    status: PaymentStatus
    applied: bool
    transaction_id: int | None = None


def _flag(obj: dict[str, Any], key: str) -> bool:
    value = obj.get(key)
    if isinstance(value, str):
        return value.strip().lower() == "true"
    return bool(value)


def derive_payment_status(obj: dict[str, Any]) -> StatusDecision:
    """
    טבלת החלטה לפי סדר עדיפות:
      success → SUCCESS
      pending → PROCESSING
      error_occured → FAILED (סיבה מ-data.message / source_data.message)
      אחרת → FAILED עם "unknown error"
    """
    if _flag(obj, "success"):
        return StatusDecision(PaymentStatus.SUCCESS)
    if _flag(obj, "pending"):
        return StatusDecision(PaymentStatus.PROCESSING)
    if _flag(obj, "error_occured"):
        data = obj.get("data") if isinstance(obj.get("data"), dict) else {}
        source_data = obj.get("source_data") if isinstance(obj.get("source_data"), dict) else {}
        reason = data.get("message") or source_data.get("message") or DEFAULT_FAILURE_REASON
        return StatusDecision(PaymentStatus.FAILED, str(reason))
    return StatusDecision(PaymentStatus.FAILED, UNKNOWN_FAILURE_REASON)


def extract_merchant_order_id(obj: dict[str, Any]) -> str | None:
    order = obj.get("order")
    if not isinstance(order, dict):
        return None
    value = order.get("merchant_order_id")
    return str(value) if value not in (None, "") else None


def parse_merchant_order_id(reference: str | None) -> tuple[str, str] | None:
    """"{tenant_id}-{local_id}" → (tenant_id, local_id). ה-tenant הוא כל מה שלפני ה-"-" האחרון"""
    if not reference or "-" not in reference:
        return None
    tenant_id, local_id = reference.rsplit("-", 1)
    if not tenant_id or not local_id:
        return None
    return tenant_id, local_id


class ReconciliationService:
    def __init__(self, db: AsyncSession, clock: Clock = utcnow):
        self.db = db
        self._clock = clock

    async def _get_transaction(self, merchant_order_id: str) -> PaymentTransaction | None:
        result = await self.db.execute(
            select(PaymentTransaction)
            .where(PaymentTransaction.merchant_order_id == merchant_order_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def reconcile(
        self,
        obj: dict[str, Any],
        decision: StatusDecision | None = None,
        *,
        resume: bool = False,
    ) -> ReconciliationOutcome:
        merchant_order_id = extract_merchant_order_id(obj)
        if not merchant_order_id:
            raise WebhookPayloadError("paymob", "missing order.merchant_order_id")
        decision = decision or derive_payment_status(obj)
        now = self._clock()

        values: dict[Any, Any] = {
            PaymentTransaction.status: decision.status,
            PaymentTransaction.failure_reason: decision.reason,
            PaymentTransaction.meta: obj,
            PaymentTransaction.updated_at: now,
        }
        if obj.get("id") is not None:
            values[PaymentTransaction.gateway_transaction_id] = str(obj["id"])
        if decision.status is PaymentStatus.SUCCESS:
            values[PaymentTransaction.paid_at] = now

        result = await self.db.execute(
            update(PaymentTransaction)
            .where(
                PaymentTransaction.merchant_order_id == merchant_order_id,
                PaymentTransaction.status.notin_(_TERMINAL),
            )
            .values(values)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()

        transaction = await self._get_transaction(merchant_order_id)
        if transaction is None:
            raise TransactionNotFoundError(merchant_order_id)

        stale = result.rowcount == 0
        # מסירה שנתבעה מחדש: הסטטוס נכתב בניסיון הקודם, תופעות הלוואי לא
        resuming = stale and resume and transaction.status == decision.status
        if stale and not resuming:
            logger.info(
                "Stale payment webhook ignored: transaction already terminal",
                extra_data={
                    "merchant_order_id": merchant_order_id,
                    "current_status": transaction.status.value,
                    "reported_status": decision.status.value,
                },
            )
            return ReconciliationOutcome(
                merchant_order_id=merchant_order_id,
                status=transaction.status,
                applied=False,
                transaction_id=transaction.id,
            )

        logger.info(
            "Resuming payment side effects" if resuming else "Payment transaction reconciled",
            extra_data={
                "tenant_id": transaction.tenant_id,
                "transaction_id": transaction.id,
                "merchant_order_id": merchant_order_id,
                "status": decision.status.value,
            },
        )
        snapshot = PaymentSnapshot.of(transaction)
        await self._apply_side_effects(snapshot, decision)
        return ReconciliationOutcome(
            merchant_order_id=merchant_order_id,
            status=decision.status,
            applied=True,
            transaction_id=snapshot.id,
        )

    # ──────────────────────────────────────────────
    #  תופעות לוואי
    # ──────────────────────────────────────────────

    async def _isolated(
        self,
        effect: str,
        transaction: PaymentSnapshot,
        action: Callable[[], Awaitable[Any]],
    ) -> None:
        try:
            await action()
        except Exception as e:
            # הסטטוס כבר committed: כשל כאן נרשם ולא מבטל אותו
            await self.db.rollback()
            logger.error(
                f"Payment side effect failed: {effect}",
                extra_data={
                    "effect": effect,
                    "transaction_id": transaction.id,
                    "tenant_id": transaction.tenant_id,
                    "error": str(e),
                },
                exc_info=True,
            )

    async def _apply_side_effects(self, transaction: PaymentSnapshot, decision: StatusDecision) -> None:
        if decision.status is PaymentStatus.SUCCESS:
            await self._isolated("complete_sales_record", transaction, lambda: self._complete_sales_record(transaction))
            await self._isolated("tag_customer", transaction, lambda: self._tag_customer(transaction, TAG_PAID))
            await self._isolated(
                "notify_customer", transaction,
                lambda: NotificationService(self.db).queue_payment_notification(transaction, PaymentStatus.SUCCESS),
            )
            await self._isolated(
                "automation_event", transaction,
                lambda: self._fire_event(transaction, EVENT_PAYMENT_SUCCESS, decision),
            )
        elif decision.status is PaymentStatus.FAILED:
            await self._isolated("tag_customer", transaction, lambda: self._tag_customer(transaction, TAG_PAYMENT_FAILED))
            await self._isolated(
                "notify_customer", transaction,
                lambda: NotificationService(self.db).queue_payment_notification(
                    transaction, PaymentStatus.FAILED, decision.reason
                ),
            )
            await self._isolated(
                "automation_event", transaction,
                lambda: self._fire_event(transaction, EVENT_PAYMENT_FAILED, decision),
            )

    async def _complete_sales_record(self, transaction: PaymentSnapshot) -> None:
        if transaction.order_id is None:
            return
        await self.db.execute(
            update(SalesRecord)
            .where(
                SalesRecord.id == transaction.order_id,
                SalesRecord.tenant_id == transaction.tenant_id,
            )
            .values(status=SalesRecordStatus.COMPLETED, updated_at=self._clock())
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()

    async def _tag_customer(self, transaction: PaymentSnapshot, tag: str) -> None:
        if transaction.customer_id is None:
            return
        await ConversationService(self.db, clock=self._clock).add_tag(
            transaction.tenant_id, transaction.customer_id, tag
        )

    async def _fire_event(self, transaction: PaymentSnapshot, event_type: str, decision: StatusDecision) -> None:
        await AutomationService(self.db).fire_event(
            transaction.tenant_id,
            event_type,
            transaction_id=transaction.id,
            customer_id=transaction.customer_id,
            payload={
                "merchant_order_id": transaction.merchant_order_id,
                "amount": str(transaction.amount),
                "gateway_transaction_id": transaction.gateway_transaction_id,
                "reason": decision.reason,
            },
        )
