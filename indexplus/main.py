"""
Index Plus - Main FastAPI Application
"""
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text

from indexplus.core.config import settings
from indexplus.core.logging import setup_logging, get_logger
from indexplus.core.middleware import setup_middleware, setup_exception_handlers
from indexplus.api.routes import router as api_router
from indexplus.db.database import engine, Base
from indexplus.db import models  # noqa: F401  רישום הטבלאות ב-Base.metadata

# Setup logging before anything else
setup_logging(
    level="DEBUG" if settings.DEBUG else "INFO",
    json_format=not settings.DEBUG,
    app_name=settings.APP_NAME
)

logger = get_logger(__name__)


def _parse_allowed_origins(raw: str) -> list[str]:
    """Parse comma-separated CORS origins string into a clean list."""
    return [origin.strip() for origin in raw.split(",") if origin.strip()]


_OPENAPI_TAGS = [
    {"name": "Messaging", "description": "שיחות עם לקוחות ושליחת הודעות נציג (חלון 24 שעות)."},
    {"name": "Payments", "description": "פתיחת תשלום ב-Paymob: כרטיס, Fawry וארנקים דיגיטליים."},
    {"name": "Webhooks", "description": "Webhook-ים של Meta (Facebook / Instagram / WhatsApp) ו-Paymob."},
]


app = FastAPI(
    title=settings.APP_NAME,
    version="1.0.0",
    description=(
        "Backend של Index Plus: תיבת הודעות מאוחדת ל-Facebook, Instagram ו-WhatsApp, "
        "מענה אוטומטי ותשלומים דרך Paymob."
    ),
    openapi_tags=_OPENAPI_TAGS,
    openapi_url="/openapi.json",
)

# Setup middleware (rate limit, correlation ID, request logging)
setup_middleware(app)
setup_exception_handlers(app)

allowed_origins = _parse_allowed_origins(settings.ALLOWED_ORIGINS)

if not allowed_origins and settings.DEBUG:
    allowed_origins = [
        "http://localhost",
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ]

if allowed_origins:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Authorization", "Content-Type", "X-Correlation-ID"],
    )

app.include_router(api_router, prefix="/api")


@app.on_event("startup")
async def startup() -> None:
    """Initialize database tables on startup"""
    logger.info("Starting application", extra_data={"app_name": settings.APP_NAME})
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables initialized")


@app.on_event("shutdown")
async def shutdown() -> None:
    """Cleanup on shutdown"""
    logger.info("Shutting down application")
    await engine.dispose()
    logger.info("Database connections disposed")


@app.get(
    "/health",
    summary="בדיקת חיוּת (Liveness Check)",
    description="בדיקה קלה שהתהליך חי ומגיב. לא בודק תלויות חיצוניות.",
    tags=["Health"],
)
async def health_check() -> dict[str, str]:
    """Liveness check: התהליך חי ומגיב."""
    return {"status": "healthy"}


@app.get(
    "/health/ready",
    summary="בדיקת מוכנות (Readiness Check)",
    description="בודק חיבור למסד הנתונים. 503 עם פירוט השגיאה אם אינו זמין.",
    tags=["Health"],
)
async def readiness_check() -> JSONResponse:
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
    except Exception as e:
        logger.error("Readiness check failed", extra_data={"error": str(e)})
        return JSONResponse(content={"status": "degraded", "db": f"error: {type(e).__name__}"}, status_code=503)
    return JSONResponse(content={"status": "healthy", "db": "ok"})
