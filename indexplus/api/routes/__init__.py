"""
API Routes
"""
from fastapi import APIRouter

from indexplus.api.routes.messaging import router as messaging_router
from indexplus.api.routes.payments import router as payments_router
from indexplus.api.webhooks.meta import router as meta_webhook_router
from indexplus.api.webhooks.paymob import router as paymob_webhook_router

router = APIRouter()

router.include_router(messaging_router, prefix="/messaging", tags=["messaging"])
router.include_router(payments_router, prefix="/payments", tags=["payments"])
# paymob לפני meta: אחרת /webhooks/{platform} תופס את /webhooks/paymob
router.include_router(paymob_webhook_router, prefix="/webhooks", tags=["webhooks"])
router.include_router(meta_webhook_router, prefix="/webhooks", tags=["webhooks"])
