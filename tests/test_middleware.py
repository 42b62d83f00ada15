"""
בדיקות ל-Middleware — indexplus/core/middleware.py

מכסה:
- CorrelationIdMiddleware: הפצת correlation ID בבקשות
- WebhookRateLimitMiddleware: הגבלת קצב webhook עם שעון מוזרק
- Exception handlers: מבנה {"error": {code, message, details}}
"""
import pytest
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import PlainTextResponse
from starlette.routing import Route
from starlette.testclient import TestClient

from indexplus.core.exceptions import AppException, ConversationNotFoundError, ErrorCode
from indexplus.core.middleware import (
    CorrelationIdMiddleware,
    RequestLoggingMiddleware,
    WebhookRateLimitMiddleware,
    app_exception_handler,
    generic_exception_handler,
)


# ============================================================================
# Helpers
# ============================================================================


def _hello(request: Request) -> PlainTextResponse:
    """endpoint מינימלי לבדיקה."""
    return PlainTextResponse("ok")


def _webhook(request: Request) -> PlainTextResponse:
    """endpoint שמדמה webhook."""
    return PlainTextResponse("webhook ok")


def _not_found(request: Request) -> PlainTextResponse:
    raise ConversationNotFoundError(99)


def _error(request: Request) -> PlainTextResponse:
    """endpoint שזורק שגיאה."""
    raise ValueError("שגיאת בדיקה")


class ManualClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


def _build_app(*, middlewares: list[tuple] | None = None) -> Starlette:
    """בונה אפליקציית Starlette מינימלית עם middleware."""
    app = Starlette(
        routes=[
            Route("/test", _hello),
            Route("/api/webhooks/paymob", _webhook, methods=["POST"]),
            Route("/not-found", _not_found),
            Route("/error", _error),
        ],
        exception_handlers={
            AppException: app_exception_handler,
            Exception: generic_exception_handler,
        },
    )
    for mw_class, kwargs in middlewares or []:
        app.add_middleware(mw_class, **kwargs)
    return app


# ============================================================================
# CorrelationIdMiddleware
# ============================================================================


class TestCorrelationIdMiddleware:
    """הפצת X-Correlation-ID"""

    @pytest.mark.unit
    def test_echoes_incoming_header(self) -> None:
        client = TestClient(_build_app(middlewares=[(CorrelationIdMiddleware, {})]))

        response = client.get("/test", headers={"X-Correlation-ID": "abc12345"})

        assert response.status_code == 200
        assert response.headers["X-Correlation-ID"] == "abc12345"

    @pytest.mark.unit
    def test_generates_when_missing(self) -> None:
        client = TestClient(_build_app(middlewares=[(CorrelationIdMiddleware, {})]))

        response = client.get("/test")

        assert len(response.headers["X-Correlation-ID"]) == 8

    @pytest.mark.unit
    def test_request_logging_passes_response_through(self) -> None:
        client = TestClient(_build_app(middlewares=[(RequestLoggingMiddleware, {})]))

        response = client.get("/test")

        assert response.status_code == 200
        assert response.text == "ok"


# ============================================================================
# WebhookRateLimitMiddleware
# ============================================================================


class TestWebhookRateLimitMiddleware:
    """חלון הזזה לפי IP, חל רק על /webhooks"""

    @pytest.mark.unit
    def test_blocks_after_limit_with_retry_after(self) -> None:
        clock = ManualClock()
        app = _build_app(middlewares=[
            (WebhookRateLimitMiddleware, {"max_requests": 2, "window_seconds": 60, "clock": clock}),
        ])
        client = TestClient(app)

        assert client.post("/api/webhooks/paymob").status_code == 200
        assert client.post("/api/webhooks/paymob").status_code == 200
        blocked = client.post("/api/webhooks/paymob")

        assert blocked.status_code == 429
        assert blocked.headers["Retry-After"] == "60"
        assert blocked.json()["error"]["code"] == ErrorCode.RATE_LIMITED.value

    @pytest.mark.unit
    def test_window_slides(self) -> None:
        clock = ManualClock()
        client = TestClient(_build_app(middlewares=[
            (WebhookRateLimitMiddleware, {"max_requests": 1, "window_seconds": 60, "clock": clock}),
        ]))

        assert client.post("/api/webhooks/paymob").status_code == 200
        assert client.post("/api/webhooks/paymob").status_code == 429

        clock.now += 61
        assert client.post("/api/webhooks/paymob").status_code == 200

    @pytest.mark.unit
    def test_non_webhook_paths_not_limited(self) -> None:
        client = TestClient(_build_app(middlewares=[
            (WebhookRateLimitMiddleware, {"max_requests": 1, "window_seconds": 60, "clock": ManualClock()}),
        ]))

        for _ in range(5):
            assert client.get("/test").status_code == 200


# ============================================================================
# Exception handlers
# ============================================================================


class TestExceptionHandlers:
    """מבנה תשובות שגיאה אחיד"""

    @pytest.mark.unit
    def test_app_exception_shape(self) -> None:
        client = TestClient(_build_app())

        response = client.get("/not-found")

        assert response.status_code == 404
        error = response.json()["error"]
        assert error["code"] == ErrorCode.CONVERSATION_NOT_FOUND.value
        assert error["details"]["identifier"] == "99"
        assert "X-Correlation-ID" in response.headers

    @pytest.mark.unit
    def test_unexpected_exception_hidden(self) -> None:
        client = TestClient(_build_app(), raise_server_exceptions=False)

        response = client.get("/error")

        assert response.status_code == 500
        error = response.json()["error"]
        assert error["code"] == ErrorCode.INTERNAL_ERROR.value
        assert "שגיאת בדיקה" not in error["message"]
