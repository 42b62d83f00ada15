"""
Meta (Facebook / Instagram / WhatsApp Cloud) integration
"""
from indexplus.domain.services.meta.sender import (
    BaseMessageSender,
    MetaMessageSender,
    get_message_sender,
)

__all__ = [
    "BaseMessageSender",
    "MetaMessageSender",
    "get_message_sender",
]
