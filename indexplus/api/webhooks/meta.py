"""
Meta Webhook Handler — Facebook Messenger, Instagram Direct ו-WhatsApp Cloud.

GET  /{platform}  — אימות רישום ה-webhook מול Meta (hub.challenge)
POST /{platform}  — אימות x-hub-signature-256 ועיבוד האירועים

Meta שולחת שוב כל אירוע שלא קיבל 200, לכן חתימה לא תקינה, JSON שבור
וכפילויות מקבלים תשובת 200 עם status=ignored ונרשמים בלוג.
"""
from __future__ import annotations

import hmac
import json

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import PlainTextResponse
from sqlalchemy.ext.asyncio import AsyncSession

from indexplus.api.dependencies.sender import get_sender
from indexplus.core.config import settings
from indexplus.core.logging import get_logger
from indexplus.core.exceptions import SignatureInvalidError
from indexplus.core.security import require_meta_signature
from indexplus.db.database import get_db
from indexplus.db.models.channel import ChannelPlatform
from indexplus.domain.services.meta.sender import BaseMessageSender
from indexplus.domain.services.meta.webhook_service import MetaWebhookService

logger = get_logger(__name__)

router = APIRouter()


# ──────────────────────────────────────────────
#  אימות webhook: Meta verification & signature
# ──────────────────────────────────────────────


@router.get(
    "/{platform}",
    summary="Meta Webhook Verification",
    description="אימות webhook מול Meta — מחזיר hub.challenge כטקסט.",
    response_class=PlainTextResponse,
    tags=["Webhooks"],
)
async def meta_verify(
    platform: ChannelPlatform,
    hub_mode: str = Query(None, alias="hub.mode"),
    hub_challenge: str = Query(None, alias="hub.challenge"),
    hub_verify_token: str = Query(None, alias="hub.verify_token"),
) -> PlainTextResponse:
    if (
        hub_mode == "subscribe"
        and hub_challenge
        and hub_verify_token
        and settings.META_VERIFY_TOKEN
        and hmac.compare_digest(hub_verify_token, settings.META_VERIFY_TOKEN)
    ):
        logger.info("Meta webhook verified successfully", extra_data={"platform": platform.value})
        return PlainTextResponse(hub_challenge)
    logger.warning(
        "Meta webhook verification failed",
        extra_data={"platform": platform.value, "hub_mode": hub_mode},
    )
    raise HTTPException(status_code=403, detail="Verification failed")


# ──────────────────────────────────────────────
#  Webhook handler ראשי
# ──────────────────────────────────────────────


@router.post(
    "/{platform}",
    summary="Meta Webhook",
    description="קבלת הודעות ועדכוני סטטוס מ-Facebook / Instagram / WhatsApp.",
    responses={200: {"description": "האירוע התקבל (גם אם נדחה — ראו status)"}},
    tags=["Webhooks"],
)
async def meta_webhook(
    platform: ChannelPlatform,
    request: Request,
    db: AsyncSession = Depends(get_db),
    sender: BaseMessageSender = Depends(get_sender),
) -> dict:
    """
    1. אימות חתימת Meta על ה-body הגולמי
    2. פענוח JSON
    3. ניתוב לפי object (page / instagram / whatsapp_business_account)
    """
    body = await request.body()
    signature = request.headers.get("x-hub-signature-256")

    try:
        require_meta_signature(body, signature, settings.META_APP_SECRET)
    except SignatureInvalidError as e:
        logger.warning(
            "Meta webhook signature invalid",
            extra_data={
                "platform": platform.value,
                "has_signature": bool(signature),
                "error_code": e.error_code.value,
            },
        )
        return {"status": "ignored", "reason": "invalid signature"}

    try:
        payload = json.loads(body)
    except (ValueError, UnicodeDecodeError):
        logger.warning("Meta webhook body is not valid JSON", extra_data={"platform": platform.value})
        return {"status": "ignored", "reason": "invalid payload"}
    if not isinstance(payload, dict):
        return {"status": "ignored", "reason": "invalid payload"}

    return await MetaWebhookService(db, sender).process(payload)
