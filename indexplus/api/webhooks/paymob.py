"""
Paymob Webhook Handler — callback של עסקאות (Transaction processed callback).

התשובה תמיד 200 עם {"received": bool, ...}: Paymob שולחת שוב כל callback
שלא נענה ב-200, גם כשהבעיה אצלנו (חתימה / הזמנה לא מוכרת).
"""
from __future__ import annotations

import json

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from indexplus.core.logging import get_logger
from indexplus.db.database import get_db
from indexplus.domain.services.paymob_webhook_service import PaymobWebhookService

logger = get_logger(__name__)

router = APIRouter()


@router.post(
    "/paymob",
    summary="Paymob Transaction Callback",
    description="עדכון סטטוס עסקה מ-Paymob — אימות HMAC, idempotency ו-reconciliation.",
    responses={200: {"description": "ה-callback התקבל (ראו received / error)"}},
    tags=["Webhooks"],
)
async def paymob_webhook(
    request: Request,
    hmac: str | None = Query(None, description="HMAC כשהוא נשלח ב-query string"),
    db: AsyncSession = Depends(get_db),
) -> dict:
    body = await request.body()
    try:
        payload = json.loads(body)
    except (ValueError, UnicodeDecodeError):
        logger.warning("Paymob webhook body is not valid JSON")
        return {"received": False, "error": "Invalid payload"}

    return await PaymobWebhookService(db).handle(payload, query_hmac=hmac)
