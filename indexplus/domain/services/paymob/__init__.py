"""
Paymob Accept integration
"""
from indexplus.domain.services.paymob.client import PaymobClient
from indexplus.domain.services.paymob.models import (
    AuthToken,
    BillingData,
    GatewayCredentials,
    PaymentRequest,
    PaymentResult,
    amount_to_cents,
)
from indexplus.domain.services.paymob.registry import get_paymob_client, reset_paymob_clients

__all__ = [
    "PaymobClient",
    "AuthToken",
    "BillingData",
    "GatewayCredentials",
    "PaymentRequest",
    "PaymentResult",
    "amount_to_cents",
    "get_paymob_client",
    "reset_paymob_clients",
]
