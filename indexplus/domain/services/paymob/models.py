"""
Value objects של Paymob — credentials, token, בקשת תשלום ותוצאה.
"""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP

from indexplus.db.models.payment_gateway_config import PaymentGatewayConfig
from indexplus.db.models.payment_transaction import PaymentMethod

_NON_DIGITS_RE = re.compile(r"\D")

PLACEHOLDER_NAME = "Customer"
PLACEHOLDER_EMAIL = "customer@indexplus.com"
PLACEHOLDER_FIELD = "NA"


def amount_to_cents(amount: Decimal | float | int | str) -> int:
    """המרה לאגורות (piasters) עם עיגול half-up — לעולם לא חיתוך"""
    cents = (Decimal(str(amount)) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    return int(cents)


@dataclass(frozen=True)
class GatewayCredentials:
    tenant_id: str
    api_key: str
    hmac_secret: str
    integration_id_card: int | None = None
    integration_id_fawry: int | None = None
    integration_id_wallet: int | None = None
    iframe_id: str | None = None

    @classmethod
    def from_config(cls, config: PaymentGatewayConfig) -> "GatewayCredentials":
        return cls(
            tenant_id=config.tenant_id,
            api_key=config.api_key,
            hmac_secret=config.hmac_secret,
            integration_id_card=config.integration_id_card,
            integration_id_fawry=config.integration_id_fawry,
            integration_id_wallet=config.integration_id_wallet,
            iframe_id=config.iframe_id,
        )

    def integration_id_for(self, method: PaymentMethod) -> int | None:
        if method is PaymentMethod.CARD:
            return self.integration_id_card
        if method is PaymentMethod.FAWRY:
            return self.integration_id_fawry
        if method.is_wallet:
            return self.integration_id_wallet
        return None

    def __repr__(self) -> str:
        # לא חושפים api_key / hmac_secret בלוגים
        return f"GatewayCredentials(tenant_id={self.tenant_id!r})"


@dataclass(frozen=True)
class AuthToken:
    token: str
    expires_at: datetime

    def is_valid(self, now: datetime) -> bool:
        return now < self.expires_at


@dataclass(frozen=True)
class BillingData:
    name: str | None = None
    email: str | None = None
    phone: str | None = None

    def to_paymob(self) -> dict[str, str]:
        parts = (self.name or "").split()
        first_name = parts[0] if parts else PLACEHOLDER_NAME
        last_name = " ".join(parts[1:]) or PLACEHOLDER_NAME
        phone = _NON_DIGITS_RE.sub("", self.phone or "") or PLACEHOLDER_FIELD
        return {
            "first_name": first_name,
            "last_name": last_name,
            "email": self.email or PLACEHOLDER_EMAIL,
            "phone_number": phone,
            "apartment": PLACEHOLDER_FIELD,
            "floor": PLACEHOLDER_FIELD,
            "street": PLACEHOLDER_FIELD,
            "building": PLACEHOLDER_FIELD,
            "shipping_method": PLACEHOLDER_FIELD,
            "postal_code": PLACEHOLDER_FIELD,
            "city": "Cairo",
            "country": "EG",
            "state": "Cairo",
        }


@dataclass(frozen=True)
class PaymentRequest:
    amount: Decimal
    payment_method: str
    merchant_order_id: str
    billing: BillingData = field(default_factory=BillingData)


@dataclass(frozen=True)
class PaymentResult:
    success: bool
    payment_method: str | None = None
    payment_url: str | None = None
    reference_code: str | None = None
    gateway_order_id: str | None = None
    expires_at: datetime | None = None
    error: str | None = None

    @classmethod
    def failure(cls, error: str, payment_method: str | None = None) -> "PaymentResult":
        return cls(success=False, payment_method=payment_method, error=error)
