"""
Paymob Accept client.

זרימה לכל תשלום:
    auth/tokens → ecommerce/orders → acceptance/payment_keys → URL / קוד Fawry / redirect לארנק

ה-auth token נשמר ב-cache ברמת ה-instance (50 דקות מתוך 60) ומוגן ב-asyncio.Lock,
כך שקוראים מקבילים מייצרים קריאת auth אחת בלבד. הכתיבה ל-cache היא השמה אחת
אחרי response מפוענח במלואו — כשל באמצע משאיר את ה-cache הקודם כמו שהוא.

create_payment לא זורק לעולם: כל כשל חוזר כ-PaymentResult(success=False).
"""
from __future__ import annotations

import asyncio
from datetime import timedelta
from decimal import Decimal, InvalidOperation
from typing import Any

import httpx

from indexplus.core.clock import Clock, utcnow
from indexplus.core.config import settings
from indexplus.core.exceptions import GatewayAuthError, GatewayRequestError
from indexplus.core.logging import get_logger
from indexplus.db.models.payment_transaction import PaymentMethod
from indexplus.domain.services.paymob.models import (
    AuthToken,
    BillingData,
    GatewayCredentials,
    PaymentRequest,
    PaymentResult,
    amount_to_cents,
)

logger = get_logger(__name__)

CARD_URL_TTL = timedelta(hours=1)
FAWRY_REFERENCE_TTL = timedelta(hours=48)
WALLET_REDIRECT_TTL = timedelta(minutes=30)
FAWRY_REFERENCE_LENGTH = 16


class PaymobClient:
    """Client אחד לטנאנט — מחזיק את ה-token cache של אותם credentials"""

    def __init__(
        self,
        credentials: GatewayCredentials,
        *,
        http_client: httpx.AsyncClient | None = None,
        clock: Clock = utcnow,
        base_url: str | None = None,
        timeout: float | None = None,
        currency: str | None = None,
        token_ttl: timedelta | None = None,
    ) -> None:
        self.credentials = credentials
        self.base_url = (base_url or settings.paymob_base_url).rstrip("/")
        self._http_client = http_client
        self._clock = clock
        self._timeout = timeout or settings.PAYMOB_TIMEOUT_SECONDS
        self._currency = currency or settings.PAYMOB_CURRENCY
        self._token_ttl = token_ttl or timedelta(minutes=settings.PAYMOB_TOKEN_CACHE_MINUTES)
        self._token: AuthToken | None = None
        self._token_lock = asyncio.Lock()

    @property
    def site_url(self) -> str:
        # דפי התשלום (Fawry) יושבים מחוץ ל-/api
        return self.base_url[: -len("/api")] if self.base_url.endswith("/api") else self.base_url

    # ──────────────────────────────────────────────
    #  HTTP
    # ──────────────────────────────────────────────

    async def _post(
        self,
        path: str,
        payload: dict[str, Any],
        error_cls: type[GatewayAuthError] | type[GatewayRequestError],
    ) -> dict[str, Any]:
        url = f"{self.base_url}{path}"
        try:
            if self._http_client is not None:
                response = await self._http_client.post(url, json=payload, timeout=self._timeout)
            else:
                async with httpx.AsyncClient(timeout=self._timeout) as client:
                    response = await client.post(url, json=payload)
        except httpx.TimeoutException as e:
            raise error_cls(
                f"{path} timed out after {self._timeout}s",
                details={"operation": path, "timeout_seconds": self._timeout},
            ) from e
        except httpx.HTTPError as e:
            raise error_cls(
                f"{path} transport error: {e}",
                details={"operation": path},
            ) from e

        if response.status_code >= 400:
            raise error_cls.from_response(path, response)

        try:
            data = response.json()
        except ValueError as e:
            raise error_cls(f"{path} returned invalid JSON", details={"operation": path}) from e
        if not isinstance(data, dict):
            raise error_cls(f"{path} returned unexpected body", details={"operation": path})
        return data

    # ──────────────────────────────────────────────
    #  שלבי הזרימה
    # ──────────────────────────────────────────────

    async def authenticate(self) -> str:
        """מחזיר auth token — מה-cache אם עדיין בתוקף, אחרת קריאת auth אחת"""
        cached = self._token
        if cached is not None and cached.is_valid(self._clock()):
            return cached.token

        async with self._token_lock:
            # קורא אחר אולי כבר רענן בזמן שחיכינו ל-lock
            cached = self._token
            if cached is not None and cached.is_valid(self._clock()):
                return cached.token

            data = await self._post(
                "/auth/tokens",
                {"api_key": self.credentials.api_key},
                GatewayAuthError,
            )
            token = data.get("token")
            if not token or not isinstance(token, str):
                raise GatewayAuthError("auth response has no token")

            self._token = AuthToken(token=token, expires_at=self._clock() + self._token_ttl)
            logger.info(
                "Paymob auth token refreshed",
                extra_data={
                    "tenant_id": self.credentials.tenant_id,
                    "expires_at": self._token.expires_at,
                },
            )
            return token

    def invalidate_token(self) -> None:
        self._token = None

    async def register_order(
        self,
        auth_token: str,
        amount: Decimal,
        merchant_order_id: str,
    ) -> int:
        data = await self._post(
            "/ecommerce/orders",
            {
                "auth_token": auth_token,
                "delivery_needed": False,
                "amount_cents": amount_to_cents(amount),
                "currency": self._currency,
                "merchant_order_id": merchant_order_id,
                "items": [],
            },
            GatewayRequestError,
        )
        order_id = data.get("id")
        if order_id is None:
            raise GatewayRequestError("order response has no id", details={"operation": "/ecommerce/orders"})
        return order_id

    async def issue_payment_key(
        self,
        auth_token: str,
        amount: Decimal,
        gateway_order_id: int,
        billing: BillingData,
        integration_id: int,
    ) -> str:
        data = await self._post(
            "/acceptance/payment_keys",
            {
                "auth_token": auth_token,
                "amount_cents": amount_to_cents(amount),
                "expiration": settings.PAYMOB_PAYMENT_KEY_EXPIRATION_SECONDS,
                "order_id": gateway_order_id,
                "billing_data": billing.to_paymob(),
                "currency": self._currency,
                "integration_id": int(integration_id),
            },
            GatewayRequestError,
        )
        token = data.get("token")
        if not token or not isinstance(token, str):
            raise GatewayRequestError(
                "payment key response has no token",
                details={"operation": "/acceptance/payment_keys"},
            )
        return token

    # ──────────────────────────────────────────────
    #  נקודת הכניסה הציבורית
    # ──────────────────────────────────────────────

    async def create_payment(self, request: PaymentRequest) -> PaymentResult:
        try:
            method = PaymentMethod(request.payment_method)
        except ValueError:
            return PaymentResult.failure("Unsupported payment method", request.payment_method)

        try:
            amount = Decimal(str(request.amount))
        except (InvalidOperation, ValueError, TypeError):
            return PaymentResult.failure("Invalid amount", method.value)
        if not amount.is_finite() or amount <= 0:
            return PaymentResult.failure("Amount must be positive", method.value)

        integration_id = self.credentials.integration_id_for(method)
        if not integration_id:
            return PaymentResult.failure(
                f"No Paymob integration configured for {method.value}", method.value
            )
        if method is PaymentMethod.CARD and not self.credentials.iframe_id:
            return PaymentResult.failure("No Paymob iframe configured for card payments", method.value)

        try:
            auth_token = await self.authenticate()
            gateway_order_id = await self.register_order(
                auth_token, amount, request.merchant_order_id
            )
            payment_token = await self.issue_payment_key(
                auth_token, amount, gateway_order_id, request.billing, integration_id
            )
        except (GatewayAuthError, GatewayRequestError) as e:
            if e.details.get("status_code") == 401:
                # Paymob ביטל את ה-token לפני תום ה-TTL שלנו
                self.invalidate_token()
            logger.error(
                "Paymob payment creation failed",
                extra_data={
                    "tenant_id": self.credentials.tenant_id,
                    "merchant_order_id": request.merchant_order_id,
                    "payment_method": method.value,
                    "error_code": e.error_code.value,
                    "error": e.message,
                    "details": e.details,
                },
            )
            return PaymentResult.failure(e.message, method.value)

        result = self._shape_result(method, payment_token, str(gateway_order_id))
        logger.info(
            "Paymob payment created",
            extra_data={
                "tenant_id": self.credentials.tenant_id,
                "merchant_order_id": request.merchant_order_id,
                "gateway_order_id": result.gateway_order_id,
                "payment_method": method.value,
            },
        )
        return result

    def _shape_result(self, method: PaymentMethod, payment_token: str, gateway_order_id: str) -> PaymentResult:
        now = self._clock()
        if method is PaymentMethod.CARD:
            return PaymentResult(
                success=True,
                payment_method=method.value,
                payment_url=(
                    f"{self.base_url}/acceptance/iframes/{self.credentials.iframe_id}"
                    f"?payment_token={payment_token}"
                ),
                gateway_order_id=gateway_order_id,
                expires_at=now + CARD_URL_TTL,
            )
        if method is PaymentMethod.FAWRY:
            return PaymentResult(
                success=True,
                payment_method=method.value,
                payment_url=f"{self.site_url}/fawry?payment_token={payment_token}",
                reference_code=payment_token[-FAWRY_REFERENCE_LENGTH:],
                gateway_order_id=gateway_order_id,
                expires_at=now + FAWRY_REFERENCE_TTL,
            )
        # vodafone_cash / orange_money / etisalat_cash
        return PaymentResult(
            success=True,
            payment_method=method.value,
            payment_url=f"{self.base_url}/acceptance/post_pay?payment_token={payment_token}",
            gateway_order_id=gateway_order_id,
            expires_at=now + WALLET_REDIRECT_TTL,
        )
