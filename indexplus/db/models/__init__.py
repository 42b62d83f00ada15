"""
Database Models
"""
from indexplus.db.models.webhook_event import WebhookEvent
from indexplus.db.models.payment_gateway_config import PaymentGatewayConfig
from indexplus.db.models.payment_transaction import PaymentTransaction
from indexplus.db.models.sales_record import SalesRecord
from indexplus.db.models.channel import Channel
from indexplus.db.models.customer import Customer
from indexplus.db.models.conversation import Conversation
from indexplus.db.models.message import Message
from indexplus.db.models.automation_rule import AutomationRule
from indexplus.db.models.automation_event import AutomationEvent
from indexplus.db.models.outbox_message import OutboxMessage

__all__ = [
    "WebhookEvent",
    "PaymentGatewayConfig",
    "PaymentTransaction",
    "SalesRecord",
    "Channel",
    "Customer",
    "Conversation",
    "Message",
    "AutomationRule",
    "AutomationEvent",
    "OutboxMessage",
]
