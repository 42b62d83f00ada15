"""
Channel Service - איתור ערוצי Meta מחוברים
"""
from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from indexplus.db.models.channel import Channel, ChannelStatus


class ChannelService:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_by_platform_id(self, platform: str, platform_id: str) -> Channel | None:
        """הערוץ שאליו Meta שלחה את האירוע (page id / IG id / phone_number_id)"""
        result = await self.db.execute(
            select(Channel).where(
                Channel.platform == platform,
                Channel.platform_id == str(platform_id),
            )
        )
        return result.scalar_one_or_none()

    async def get_connected_channel(self, tenant_id: str, platform: str) -> Channel | None:
        """ערוץ מחובר עם token לטנאנט — None אם אין (לא זורק)"""
        result = await self.db.execute(
            select(Channel)
            .where(
                Channel.tenant_id == tenant_id,
                Channel.platform == platform,
                Channel.status == ChannelStatus.CONNECTED.value,
                Channel.token.is_not(None),
            )
            .order_by(Channel.id)
            .limit(1)
        )
        return result.scalar_one_or_none()
