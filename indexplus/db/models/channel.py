"""
Channel Model - נכס Meta מחובר של טנאנט (עמוד פייסבוק / חשבון אינסטגרם / מספר WhatsApp)
"""
import enum

from sqlalchemy import Column, Integer, String, DateTime, Text, UniqueConstraint

from indexplus.core.clock import utcnow
from indexplus.db.database import Base


class ChannelPlatform(str, enum.Enum):
    WHATSAPP = "whatsapp"
    FACEBOOK = "facebook"
    INSTAGRAM = "instagram"


class ChannelStatus(str, enum.Enum):
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"


class Channel(Base):
    """platform_id = page id / IG account id / WhatsApp phone-number id"""

    __tablename__ = "channels"

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(String(36), nullable=False, index=True)
    platform = Column(String(20), nullable=False)
    platform_id = Column(String(100), nullable=False)
    token = Column(Text, nullable=True)  # page / system-user access token
    status = Column(String(20), nullable=False, default=ChannelStatus.CONNECTED.value)

    created_at = Column(DateTime, default=utcnow)

    __table_args__ = (
        UniqueConstraint("platform", "platform_id", name="uq_channels_platform_platform_id"),
    )

    @property
    def is_usable(self) -> bool:
        return self.status == ChannelStatus.CONNECTED.value and bool(self.token)
