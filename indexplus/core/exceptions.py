"""
Custom Exception Hierarchy

Provides structured exceptions for consistent error handling across the application.
User-facing messages of the messaging errors are in Arabic (shown as-is in the agent inbox).
"""
from typing import Any
from enum import Enum


class ErrorCode(str, Enum):
    """Standard error codes for API responses"""

    # General errors (1xxx)
    INTERNAL_ERROR = "ERR_1000"
    VALIDATION_ERROR = "ERR_1001"
    NOT_FOUND = "ERR_1002"
    UNAUTHORIZED = "ERR_1004"
    FORBIDDEN = "ERR_1005"
    RATE_LIMITED = "ERR_1006"

    # Webhook errors (2xxx)
    SIGNATURE_INVALID = "ERR_2001"
    WEBHOOK_PAYLOAD_INVALID = "ERR_2002"

    # Payment errors (3xxx)
    TRANSACTION_NOT_FOUND = "ERR_3001"
    GATEWAY_CONFIG_MISSING = "ERR_3002"
    UNSUPPORTED_PAYMENT_METHOD = "ERR_3003"
    CUSTOMER_NOT_FOUND = "ERR_3004"

    # Messaging errors (4xxx)
    CONVERSATION_NOT_FOUND = "ERR_4001"
    REPLY_WINDOW_EXPIRED = "ERR_4002"
    CHANNEL_NOT_CONNECTED = "ERR_4003"

    # External service errors (5xxx)
    GATEWAY_AUTH_FAILED = "ERR_5001"
    GATEWAY_REQUEST_FAILED = "ERR_5002"
    MESSAGING_PLATFORM_ERROR = "ERR_5003"
    EXTERNAL_SERVICE_TIMEOUT = "ERR_5004"


class AppException(Exception):
    """Base exception for all application errors"""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.INTERNAL_ERROR,
        status_code: int = 500,
        details: dict[str, Any] | None = None
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.status_code = status_code
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to dictionary for API response"""
        return {
            "error": {
                "code": self.error_code.value,
                "message": self.message,
                "details": self.details
            }
        }


class NotFoundException(AppException):
    """Raised when a requested resource is not found"""

    def __init__(
        self,
        resource: str,
        identifier: Any,
        error_code: ErrorCode = ErrorCode.NOT_FOUND,
        message: str | None = None,
    ):
        super().__init__(
            message=message or f"{resource} not found: {identifier}",
            error_code=error_code,
            status_code=404,
            details={"resource": resource, "identifier": str(identifier)}
        )


# ──────────────────────────────────────────────
#  Webhooks
# ──────────────────────────────────────────────


class SignatureInvalidError(AppException):
    """חתימת webhook חסרה או לא תואמת"""

    def __init__(self, platform: str):
        super().__init__(
            message="فشل التحقق من التوقيع",
            error_code=ErrorCode.SIGNATURE_INVALID,
            status_code=403,
            details={"platform": platform},
        )


class WebhookPayloadError(AppException):
    """Payload שלא ניתן לפענח (JSON שבור / שדות חובה חסרים)"""

    def __init__(self, platform: str, reason: str):
        super().__init__(
            message=f"Invalid {platform} webhook payload: {reason}",
            error_code=ErrorCode.WEBHOOK_PAYLOAD_INVALID,
            status_code=400,
            details={"platform": platform, "reason": reason},
        )


# ──────────────────────────────────────────────
#  Payments
# ──────────────────────────────────────────────


class TransactionNotFoundError(NotFoundException):
    """אין עסקה מקומית שמתאימה ל-merchant_order_id שהגיע מ-Paymob"""

    def __init__(self, merchant_order_id: str):
        super().__init__(
            resource="PaymentTransaction",
            identifier=merchant_order_id,
            error_code=ErrorCode.TRANSACTION_NOT_FOUND,
            message="Transaction not found",
        )


class GatewayConfigMissingError(NotFoundException):
    """לטנאנט אין הגדרות Paymob"""

    def __init__(self, tenant_id: str):
        super().__init__(
            resource="PaymentGatewayConfig",
            identifier=tenant_id,
            error_code=ErrorCode.GATEWAY_CONFIG_MISSING,
            message="Payment gateway configuration not found",
        )


class CustomerNotFoundError(NotFoundException):
    """הלקוח לא קיים, או שייך לטנאנט אחר"""

    def __init__(self, customer_id: int):
        super().__init__(
            resource="Customer",
            identifier=customer_id,
            error_code=ErrorCode.CUSTOMER_NOT_FOUND,
            message="Customer not found",
        )


class UnsupportedPaymentMethodError(AppException):
    def __init__(self, method: str):
        super().__init__(
            message="Unsupported payment method",
            error_code=ErrorCode.UNSUPPORTED_PAYMENT_METHOD,
            status_code=400,
            details={"payment_method": method},
        )


class ExternalServiceException(AppException):
    """Base exception for external service errors"""

    def __init__(
        self,
        service_name: str,
        message: str,
        error_code: ErrorCode,
        status_code: int = 502,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            message=message,
            error_code=error_code,
            status_code=status_code,
            details=details
        )
        self.details["service"] = service_name

    @classmethod
    def from_response(
        cls,
        operation: str,
        response: Any,
        *,
        max_response_chars: int = 500
    ) -> "ExternalServiceException":
        """
        בניית שגיאה מתוך httpx.Response בצורה עקבית.

        Args:
            operation: שם הפעולה (auth/tokens, ecommerce/orders, me/messages ...)
            response: אובייקט response
            max_response_chars: חיתוך response_text כדי לא לנפח לוגים
        """
        status_code = getattr(response, "status_code", None)
        response_text = getattr(response, "text", "") or ""
        return cls(
            f"{operation} returned status {status_code}",
            details={
                "operation": operation,
                "status_code": status_code,
                "response_text": response_text[:max_response_chars],
            },
        )


class GatewayAuthError(ExternalServiceException):
    """Paymob סירב להנפיק auth token (api key שגוי / תקלה / timeout)"""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(
            service_name="paymob",
            message=f"Paymob authentication failed: {message}",
            error_code=ErrorCode.GATEWAY_AUTH_FAILED,
            details=details,
        )


class GatewayRequestError(ExternalServiceException):
    """כשל ברישום הזמנה או בהנפקת payment key"""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(
            service_name="paymob",
            message=f"Paymob request failed: {message}",
            error_code=ErrorCode.GATEWAY_REQUEST_FAILED,
            details=details,
        )


class MessagingPlatformError(ExternalServiceException):
    """Graph API החזיר שגיאה בשליחת הודעה"""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(
            service_name="meta",
            message=f"Meta Graph API error: {message}",
            error_code=ErrorCode.MESSAGING_PLATFORM_ERROR,
            details=details,
        )


# ──────────────────────────────────────────────
#  Messaging
# ──────────────────────────────────────────────


class ConversationNotFoundError(NotFoundException):
    def __init__(self, conversation_id: int):
        super().__init__(
            resource="Conversation",
            identifier=conversation_id,
            error_code=ErrorCode.CONVERSATION_NOT_FOUND,
            message="المحادثة غير موجودة",
        )


class ReplyWindowExpiredError(AppException):
    """נציג מנסה לענות אחרי שחלון ה-24 שעות של Meta נסגר"""

    def __init__(self, conversation_id: int, last_message_at: Any):
        super().__init__(
            message="خارج نافذة الـ 24 ساعة المسموح بها للرد",
            error_code=ErrorCode.REPLY_WINDOW_EXPIRED,
            status_code=422,
            details={
                "conversation_id": conversation_id,
                "last_message_at": str(last_message_at) if last_message_at else None,
            },
        )


class ChannelNotConnectedError(AppException):
    """אין ערוץ מחובר (או שחסר לו token) לפלטפורמה של השיחה"""

    def __init__(self, tenant_id: str, platform: str):
        super().__init__(
            message="قناة التواصل غير مربوطة أو الرمز مفقود",
            error_code=ErrorCode.CHANNEL_NOT_CONNECTED,
            status_code=422,
            details={"tenant_id": tenant_id, "platform": platform},
        )
