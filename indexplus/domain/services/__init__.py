"""
Domain Services
"""
from indexplus.domain.services.automation_service import AutomationService
from indexplus.domain.services.channel_service import ChannelService
from indexplus.domain.services.conversation_service import ConversationService
from indexplus.domain.services.idempotency_service import IdempotencyService
from indexplus.domain.services.messaging_service import MessagingService
from indexplus.domain.services.notification_service import NotificationService
from indexplus.domain.services.outbox_service import OutboxService
from indexplus.domain.services.payment_service import PaymentService
from indexplus.domain.services.paymob_webhook_service import PaymobWebhookService
from indexplus.domain.services.reconciliation_service import ReconciliationService

__all__ = [
    "AutomationService",
    "ChannelService",
    "ConversationService",
    "IdempotencyService",
    "MessagingService",
    "NotificationService",
    "OutboxService",
    "PaymentService",
    "PaymobWebhookService",
    "ReconciliationService",
]
