"""
FastAPI dependency ל-sender של הודעות יוצאות.

בבדיקות מחליפים דרך app.dependency_overrides[get_sender].
"""
from indexplus.domain.services.meta.sender import BaseMessageSender, get_message_sender


def get_sender() -> BaseMessageSender:
    return get_message_sender()
