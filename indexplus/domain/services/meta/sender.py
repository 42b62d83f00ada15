"""
שליחת הודעות יוצאות דרך Meta Graph API.

- Facebook / Instagram: POST {graph}/{version}/me/messages עם page token
- WhatsApp Cloud:       POST {graph}/{version}/{phone_number_id}/messages

שכבת הלוגיקה תלויה רק ב-BaseMessageSender — בבדיקות מחליפים במימוש מזויף.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any

import httpx

from indexplus.core.config import settings
from indexplus.core.exceptions import MessagingPlatformError
from indexplus.core.logging import get_logger, mask_identifier
from indexplus.db.models.channel import Channel, ChannelPlatform

logger = get_logger(__name__)


class BaseMessageSender(ABC):
    """ממשק אחיד לשליחת טקסט ללקוח בערוץ מחובר"""

    @abstractmethod
    async def send_text(self, channel: Channel, recipient_id: str, text: str) -> str | None:
        """
        שליחת הודעת טקסט.

        Returns:
            מזהה ההודעה אצל Meta (mid / wamid) אם הוחזר.

        Raises:
            MessagingPlatformError: בכשלון שליחה.
        """


class MetaMessageSender(BaseMessageSender):
    def __init__(
        self,
        http_client: httpx.AsyncClient | None = None,
        *,
        graph_url: str | None = None,
        timeout: float | None = None,
    ) -> None:
        self._http_client = http_client
        self._graph_url = (graph_url or settings.META_GRAPH_API_URL).rstrip("/")
        self._timeout = timeout or settings.META_SEND_TIMEOUT_SECONDS

    def _build_request(self, channel: Channel, recipient_id: str, text: str) -> tuple[str, dict[str, Any]]:
        if channel.platform == ChannelPlatform.WHATSAPP.value:
            url = f"{self._graph_url}/{settings.META_WHATSAPP_API_VERSION}/{channel.platform_id}/messages"
            body = {
                "messaging_product": "whatsapp",
                "to": recipient_id,
                "type": "text",
                "text": {"body": text},
            }
        else:
            url = f"{self._graph_url}/{settings.META_MESSENGER_API_VERSION}/me/messages"
            body = {
                "recipient": {"id": recipient_id},
                "messaging_type": "RESPONSE",
                "message": {"text": text},
            }
        return url, body

    async def send_text(self, channel: Channel, recipient_id: str, text: str) -> str | None:
        if not channel.token:
            raise MessagingPlatformError("channel has no access token", details={"channel_id": channel.id})

        url, body = self._build_request(channel, recipient_id, text)
        headers = {"Authorization": f"Bearer {channel.token}"}
        operation = f"{channel.platform}:send"

        try:
            if self._http_client is not None:
                response = await self._http_client.post(url, json=body, headers=headers, timeout=self._timeout)
            else:
                async with httpx.AsyncClient(timeout=self._timeout) as client:
                    response = await client.post(url, json=body, headers=headers)
        except httpx.TimeoutException as e:
            raise MessagingPlatformError(
                f"{operation} timed out after {self._timeout}s",
                details={"operation": operation, "timeout_seconds": self._timeout},
            ) from e
        except httpx.HTTPError as e:
            raise MessagingPlatformError(
                f"{operation} network error: {e}",
                details={"operation": operation},
            ) from e

        if response.status_code >= 400:
            logger.warning(
                "Meta send failed",
                extra_data={
                    "platform": channel.platform,
                    "recipient": mask_identifier(recipient_id),
                    "status_code": response.status_code,
                },
            )
            raise MessagingPlatformError.from_response(operation, response)

        try:
            data = response.json()
        except ValueError:
            data = {}
        return self._extract_message_id(data)

    @staticmethod
    def _extract_message_id(data: Any) -> str | None:
        if not isinstance(data, dict):
            return None
        if data.get("message_id"):
            return data["message_id"]
        messages = data.get("messages") or []
        if messages and isinstance(messages[0], dict):
            return messages[0].get("id")
        return None


_default_sender: BaseMessageSender | None = None


def get_message_sender() -> BaseMessageSender:
    """Sender ברירת מחדל לתהליך — FastAPI dependency וה-worker משתמשים בו"""
    global _default_sender
    if _default_sender is None:
        _default_sender = MetaMessageSender()
    return _default_sender
