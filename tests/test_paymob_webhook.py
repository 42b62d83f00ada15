"""
בדיקות ל-webhook של Paymob — POST /api/webhooks/paymob

HMAC, זיהוי טנאנט, idempotency, ותשובה 200 בכל מקרה.
"""
from unittest.mock import patch

import pytest
from sqlalchemy import func, select

from indexplus.db.models.automation_event import AutomationEvent
from indexplus.db.models.customer import Customer
from indexplus.db.models.payment_transaction import PaymentStatus, PaymentTransaction
from indexplus.db.models.webhook_event import WebhookEvent, WebhookEventStatus
from indexplus.domain.services.paymob_webhook_service import PaymobWebhookService, paymob_event_key
from indexplus.domain.services.reconciliation_service import ReconciliationService
from tests.conftest import TEST_HMAC_SECRET, paymob_callback, paymob_obj

WEBHOOK_URL = "/api/webhooks/paymob"


async def _webhook_events(db_session) -> list[WebhookEvent]:
    result = await db_session.execute(select(WebhookEvent).order_by(WebhookEvent.id))
    return list(result.scalars().all())


async def _event_count(db_session) -> int:
    return await db_session.scalar(select(func.count()).select_from(AutomationEvent))


@pytest.fixture
async def pending_tx(gateway_config_factory, transaction_factory):
    await gateway_config_factory()
    return await transaction_factory()


class TestPaymobWebhookEndpoint:
    @pytest.mark.integration
    async def test_success_callback(self, test_client, db_session, pending_tx):
        obj = paymob_obj(transaction_id=555, merchant_order_id=pending_tx.merchant_order_id)

        response = await test_client.post(WEBHOOK_URL, json=paymob_callback(obj))

        assert response.status_code == 200
        assert response.json() == {"received": True, "status": "success", "applied": True}
        tx = await db_session.get(PaymentTransaction, pending_tx.id, populate_existing=True)
        assert tx.status == PaymentStatus.SUCCESS
        events = await _webhook_events(db_session)
        assert len(events) == 1
        assert events[0].external_id == "555:success"
        assert events[0].status == WebhookEventStatus.PROCESSED
        assert events[0].company_id == "t1"

    @pytest.mark.integration
    async def test_hmac_in_query_string(self, test_client, db_session, pending_tx):
        obj = paymob_obj(merchant_order_id=pending_tx.merchant_order_id)
        callback = paymob_callback(obj)
        received_hmac = callback.pop("hmac")

        response = await test_client.post(WEBHOOK_URL, params={"hmac": received_hmac}, json=callback)

        assert response.json()["received"] is True

    @pytest.mark.integration
    async def test_invalid_hmac_rejected_with_200(self, test_client, db_session, pending_tx):
        obj = paymob_obj(merchant_order_id=pending_tx.merchant_order_id)
        callback = paymob_callback(obj, secret="wrong-secret")

        response = await test_client.post(WEBHOOK_URL, json=callback)

        assert response.status_code == 200
        assert response.json() == {"received": False, "error": "Invalid HMAC signature"}
        tx = await db_session.get(PaymentTransaction, pending_tx.id, populate_existing=True)
        assert tx.status == PaymentStatus.PENDING
        assert await _webhook_events(db_session) == []

    @pytest.mark.integration
    async def test_tampered_amount_rejected(self, test_client, db_session, pending_tx):
        obj = paymob_obj(merchant_order_id=pending_tx.merchant_order_id)
        callback = paymob_callback(obj)
        callback["obj"]["amount_cents"] = 100

        response = await test_client.post(WEBHOOK_URL, json=callback)

        assert response.json()["received"] is False

    @pytest.mark.integration
    async def test_duplicate_delivery_processed_once(self, test_client, db_session, pending_tx):
        callback = paymob_callback(paymob_obj(merchant_order_id=pending_tx.merchant_order_id))

        first = await test_client.post(WEBHOOK_URL, json=callback)
        second = await test_client.post(WEBHOOK_URL, json=callback)

        assert first.json()["applied"] is True
        assert second.json() == {"received": True, "duplicate": True}
        assert await _event_count(db_session) == 1
        assert len(await _webhook_events(db_session)) == 1

    @pytest.mark.integration
    async def test_pending_then_success_are_distinct_events(self, test_client, db_session, pending_tx):
        pending = paymob_obj(merchant_order_id=pending_tx.merchant_order_id, success=False, pending=True)
        success = paymob_obj(merchant_order_id=pending_tx.merchant_order_id)

        first = await test_client.post(WEBHOOK_URL, json=paymob_callback(pending))
        second = await test_client.post(WEBHOOK_URL, json=paymob_callback(success))

        assert first.json()["status"] == "processing"
        assert second.json()["status"] == "success"
        keys = [e.external_id for e in await _webhook_events(db_session)]
        assert keys == ["555:processing", "555:success"]

    @pytest.mark.integration
    async def test_unknown_transaction_marks_event_failed(self, test_client, db_session, gateway_config_factory):
        await gateway_config_factory()
        callback = paymob_callback(paymob_obj(merchant_order_id="t1-404"))

        response = await test_client.post(WEBHOOK_URL, json=callback)

        assert response.status_code == 200
        assert response.json() == {"received": False, "error": "Transaction not found"}
        events = await _webhook_events(db_session)
        assert events[0].status == WebhookEventStatus.FAILED
        assert events[0].error == "Transaction not found"

    @pytest.mark.integration
    async def test_failed_event_not_retried(self, test_client, db_session, gateway_config_factory):
        await gateway_config_factory()
        callback = paymob_callback(paymob_obj(merchant_order_id="t1-404"))
        await test_client.post(WEBHOOK_URL, json=callback)

        response = await test_client.post(WEBHOOK_URL, json=callback)

        assert response.json() == {"received": True, "duplicate": True}

    @pytest.mark.integration
    async def test_interrupted_processing_answers_200_and_resumes_on_redelivery(
        self, test_client, db_session, gateway_config_factory, customer_factory, transaction_factory
    ):
        await gateway_config_factory()
        customer = await customer_factory()
        tx = await transaction_factory(customer_id=customer.id)
        customer_id, tx_id = customer.id, tx.id
        callback = paymob_callback(paymob_obj(merchant_order_id=tx.merchant_order_id))

        # הסטטוס נכתב, הקריאה שאחריו נופלת
        with patch.object(ReconciliationService, "_get_transaction", side_effect=RuntimeError("db down")):
            first = await test_client.post(WEBHOOK_URL, json=callback)

        assert first.status_code == 200
        assert first.json() == {"received": False, "error": "Internal processing error"}
        saved = await db_session.get(PaymentTransaction, tx_id, populate_existing=True)
        assert saved.status == PaymentStatus.SUCCESS
        events = await _webhook_events(db_session)
        assert [(e.status, e.error) for e in events] == [(WebhookEventStatus.RETRYABLE, "db down")]
        assert await _event_count(db_session) == 0

        second = await test_client.post(WEBHOOK_URL, json=callback)

        assert second.json() == {"received": True, "status": "success", "applied": True}
        assert await _event_count(db_session) == 1
        saved_customer = await db_session.get(Customer, customer_id, populate_existing=True)
        assert saved_customer.tags == ["Paid"]
        events = await _webhook_events(db_session)
        assert len(events) == 1
        assert events[0].status == WebhookEventStatus.PROCESSED
        assert events[0].error is None

        third = await test_client.post(WEBHOOK_URL, json=callback)

        assert third.json() == {"received": True, "duplicate": True}
        assert await _event_count(db_session) == 1

    @pytest.mark.integration
    async def test_failure_before_status_write_is_reprocessed(self, test_client, db_session, pending_tx):
        tx_id = pending_tx.id
        callback = paymob_callback(paymob_obj(merchant_order_id=pending_tx.merchant_order_id))

        with patch.object(ReconciliationService, "reconcile", side_effect=RuntimeError("db down")):
            first = await test_client.post(WEBHOOK_URL, json=callback)

        assert first.json()["received"] is False
        saved = await db_session.get(PaymentTransaction, tx_id, populate_existing=True)
        assert saved.status == PaymentStatus.PENDING

        second = await test_client.post(WEBHOOK_URL, json=callback)

        assert second.json() == {"received": True, "status": "success", "applied": True}
        assert await _event_count(db_session) == 1

    @pytest.mark.integration
    async def test_tenant_without_config(self, test_client, db_session):
        callback = paymob_callback(paymob_obj(merchant_order_id="ghost-1"))

        response = await test_client.post(WEBHOOK_URL, json=callback)

        assert response.json() == {"received": False, "error": "Payment gateway configuration not found"}

    @pytest.mark.integration
    @pytest.mark.parametrize("reference", ["", "noseparator"])
    async def test_invalid_merchant_reference(self, test_client, reference):
        callback = paymob_callback(paymob_obj(merchant_order_id=reference))

        response = await test_client.post(WEBHOOK_URL, json=callback)

        assert response.json() == {"received": False, "error": "Invalid merchant order reference"}

    @pytest.mark.integration
    async def test_broken_json(self, test_client):
        response = await test_client.post(
            WEBHOOK_URL, content=b"{not json", headers={"Content-Type": "application/json"}
        )

        assert response.status_code == 200
        assert response.json() == {"received": False, "error": "Invalid payload"}

    @pytest.mark.integration
    async def test_payload_without_obj(self, test_client):
        response = await test_client.post(WEBHOOK_URL, json={"type": "TRANSACTION"})

        assert response.json() == {"received": False, "error": "Invalid payload"}


class TestPaymobWebhookService:
    @pytest.mark.unit
    def test_event_key_includes_status(self):
        assert paymob_event_key({"id": 555}, "success") == "555:success"
        assert paymob_event_key({"id": 555}, "failed") == "555:failed"

    @pytest.mark.asyncio
    async def test_tenant_with_dashes(self, db_session, gateway_config_factory, transaction_factory):
        tenant = "acme-eg"
        await gateway_config_factory(tenant_id=tenant)
        tx = await transaction_factory(tenant_id=tenant)
        assert tx.merchant_order_id == f"acme-eg-{tx.id}"

        result = await PaymobWebhookService(db_session).handle(
            paymob_callback(paymob_obj(merchant_order_id=tx.merchant_order_id))
        )

        assert result["received"] is True
        assert result["status"] == "success"

    @pytest.mark.asyncio
    async def test_body_hmac_wins_over_query(self, db_session, pending_tx):
        callback = paymob_callback(paymob_obj(merchant_order_id=pending_tx.merchant_order_id))

        result = await PaymobWebhookService(db_session).handle(callback, query_hmac="garbage")

        assert result["received"] is True

    @pytest.mark.asyncio
    async def test_secret_is_per_tenant(self, db_session, gateway_config_factory, transaction_factory):
        await gateway_config_factory(tenant_id="t2", hmac_secret="t2-secret")
        tx = await transaction_factory(tenant_id="t2")
        callback = paymob_callback(paymob_obj(merchant_order_id=tx.merchant_order_id), secret=TEST_HMAC_SECRET)

        result = await PaymobWebhookService(db_session).handle(callback)

        assert result == {"received": False, "error": "Invalid HMAC signature"}
