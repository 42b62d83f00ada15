"""
בדיקות לניתוב הודעות נכנסות — לקוח → שיחה פתוחה → הודעה
"""
import asyncio
from datetime import datetime
from unittest.mock import patch

import pytest
from sqlalchemy import func, select

from indexplus.db.models.channel import Channel
from indexplus.db.models.conversation import Conversation
from indexplus.db.models.customer import Customer
from indexplus.db.models.message import Message, SenderType
from indexplus.domain.services.conversation_service import (
    NON_TEXT_PLACEHOLDER,
    ConversationService,
    customer_metadata_key,
    synthesize_customer_name,
)


async def _count(db_session, model) -> int:
    return await db_session.scalar(select(func.count()).select_from(model))


class _LateReader(ConversationService):
    """
    קורא שני: חיפוש הלקוח שלו רץ לפני שהקורא הראשון כתב משהו, והוא ממשיך
    רק אחרי שהראשון סיים. גם חיפוש השיחה הראשון שלו "ישן".
    """

    def __init__(self, db, looked_up: asyncio.Event, first_done: asyncio.Event):
        super().__init__(db)
        self._looked_up = looked_up
        self._first_done = first_done
        self._stale_conversation = True

    async def _find_customer(self, tenant_id, platform, external_id):
        found = await super()._find_customer(tenant_id, platform, external_id)
        self._looked_up.set()
        await self._first_done.wait()
        return found

    async def _find_open_conversation(self, tenant_id, customer_id, source):
        if self._stale_conversation:
            self._stale_conversation = False
            return None
        return await super()._find_open_conversation(tenant_id, customer_id, source)


class TestCustomerIdentity:
    @pytest.mark.unit
    @pytest.mark.parametrize("platform,key", [
        ("facebook", "psid"),
        ("instagram", "igsid"),
        ("whatsapp", "psid"),
    ])
    def test_metadata_key_per_platform(self, platform, key):
        assert customer_metadata_key(platform) == key

    @pytest.mark.unit
    def test_synthesized_name_uses_sender_prefix(self):
        assert synthesize_customer_name("instagram", "1784139021") == "Instagram Customer (17841)"
        assert synthesize_customer_name("facebook", "12") == "Facebook Customer (12)"


class TestRouteInbound:
    @pytest.mark.asyncio
    async def test_first_message_creates_customer_and_conversation(self, db_session, fake_clock, channel_factory):
        channel = await channel_factory(platform="instagram", platform_id="ig-1")
        service = ConversationService(db_session, clock=fake_clock)

        route = await service.route_inbound(channel, "1784139021", "hello", external_message_id="mid.1")

        assert route.customer.name == "Instagram Customer (17841)"
        assert route.customer.phone == "1784139021"
        assert route.customer.meta == {"igsid": "1784139021", "platform": "instagram"}
        assert route.conversation.source == "instagram"
        assert route.conversation.channel_id == channel.id
        assert route.conversation.unread_count == 1
        assert route.conversation.last_message_at == fake_clock.now
        assert route.message.sender_type == SenderType.CUSTOMER.value
        assert route.message.external_message_id == "mid.1"

    @pytest.mark.asyncio
    async def test_whatsapp_contact_name_and_phone_kept(self, db_session, channel_factory):
        channel = await channel_factory(platform="whatsapp", platform_id="phone-1")

        route = await ConversationService(db_session).route_inbound(
            channel, "201001234567", "hi", customer_name="Mona", customer_phone="+201001234567"
        )

        assert route.customer.name == "Mona"
        assert route.customer.phone == "+201001234567"
        assert route.customer.meta == {"psid": "201001234567", "platform": "whatsapp"}

    @pytest.mark.asyncio
    async def test_second_message_reuses_conversation(self, db_session, fake_clock, channel_factory):
        channel = await channel_factory()
        service = ConversationService(db_session, clock=fake_clock)
        first = await service.route_inbound(channel, "psid-1", "hi")

        fake_clock.advance(minutes=5)
        second = await service.route_inbound(channel, "psid-1", "are you there?")

        assert second.conversation.id == first.conversation.id
        assert second.customer.id == first.customer.id
        assert second.conversation.unread_count == 2
        assert second.conversation.last_message_at == fake_clock.now
        assert await _count(db_session, Conversation) == 1
        assert await _count(db_session, Message) == 2

    @pytest.mark.asyncio
    async def test_non_text_message_gets_placeholder(self, db_session, channel_factory):
        channel = await channel_factory()

        route = await ConversationService(db_session).route_inbound(channel, "psid-1", None)

        assert route.message.content == NON_TEXT_PLACEHOLDER

    @pytest.mark.asyncio
    async def test_closed_conversation_opens_new_one(self, db_session, channel_factory, customer_factory, conversation_factory):
        channel = await channel_factory()
        customer = await customer_factory(external_id="psid-1")
        closed = await conversation_factory(customer, channel, status="closed")

        route = await ConversationService(db_session).route_inbound(channel, "psid-1", "back again")

        assert route.conversation.id != closed.id
        assert route.conversation.status == "open"

    @pytest.mark.asyncio
    async def test_same_sender_on_other_platform_is_other_customer(self, db_session, channel_factory):
        facebook = await channel_factory(platform="facebook", platform_id="page-1")
        instagram = await channel_factory(platform="instagram", platform_id="ig-1")
        service = ConversationService(db_session)

        on_facebook = await service.route_inbound(facebook, "same-id", "hi")
        on_instagram = await service.route_inbound(instagram, "same-id", "hi")

        assert on_facebook.customer.id != on_instagram.customer.id
        assert on_facebook.conversation.id != on_instagram.conversation.id

    @pytest.mark.asyncio
    async def test_tenants_are_isolated(self, db_session, channel_factory):
        first = await channel_factory(tenant_id="t1", platform_id="page-1")
        second = await channel_factory(tenant_id="t2", platform_id="page-2")
        service = ConversationService(db_session)

        a = await service.route_inbound(first, "psid-1", "hi")
        b = await service.route_inbound(second, "psid-1", "hi")

        assert a.customer.id != b.customer.id
        assert b.customer.tenant_id == "t2"


class TestConcurrentCreation:
    """
    מדמה מתחרה שהקדים אותנו: החיפוש הראשון לא מוצא כלום, ה-insert נכשל
    על ה-unique, והחיפוש החוזר מחזיר את השורה של המתחרה.
    """

    @pytest.mark.asyncio
    async def test_customer_race_returns_winner(self, db_session, customer_factory):
        winner = await customer_factory(external_id="psid-race")
        service = ConversationService(db_session)
        original = ConversationService._find_customer
        calls = {"n": 0}

        async def racing_find(self, tenant_id, platform, external_id):
            calls["n"] += 1
            if calls["n"] == 1:
                return None
            return await original(self, tenant_id, platform, external_id)

        with patch.object(ConversationService, "_find_customer", racing_find):
            customer = await service.find_or_create_customer("t1", "psid-race", "facebook")

        assert customer.id == winner.id
        assert await _count(db_session, Customer) == 1

    @pytest.mark.asyncio
    async def test_conversation_race_returns_winner(
        self, db_session, channel_factory, customer_factory, conversation_factory
    ):
        channel = await channel_factory()
        customer = await customer_factory()
        winner = await conversation_factory(customer, channel)
        service = ConversationService(db_session)
        original = ConversationService._find_open_conversation
        calls = {"n": 0}

        async def racing_find(self, tenant_id, customer_id, source):
            calls["n"] += 1
            if calls["n"] == 1:
                return None
            return await original(self, tenant_id, customer_id, source)

        with patch.object(ConversationService, "_find_open_conversation", racing_find):
            conversation = await service.find_or_create_conversation("t1", customer.id, channel.id, "facebook")

        assert conversation.id == winner.id
        assert await _count(db_session, Conversation) == 1

    @pytest.mark.asyncio
    async def test_session_usable_after_lost_race(self, db_session, channel_factory, customer_factory):
        channel = await channel_factory()
        await customer_factory(external_id="psid-race")
        original = ConversationService._find_customer
        calls = {"n": 0}

        async def racing_find(self, tenant_id, platform, external_id):
            calls["n"] += 1
            if calls["n"] == 1:
                return None
            return await original(self, tenant_id, platform, external_id)

        with patch.object(ConversationService, "_find_customer", racing_find):
            route = await ConversationService(db_session).route_inbound(channel, "psid-race", "hi")

        assert route.message.id is not None
        assert route.conversation.unread_count == 1

    @pytest.mark.asyncio
    async def test_parallel_first_messages_on_separate_sessions(self, file_session_maker):
        async with file_session_maker() as session:
            channel = Channel(tenant_id="t1", platform="facebook", platform_id="page-1", token="page-token")
            session.add(channel)
            await session.commit()
        looked_up, first_done = asyncio.Event(), asyncio.Event()

        async def first():
            await looked_up.wait()
            try:
                async with file_session_maker() as session:
                    route = await ConversationService(session).route_inbound(channel, "psid-race", "hi")
                    return route.customer.id, route.conversation.id
            finally:
                first_done.set()

        async def second():
            async with file_session_maker() as session:
                route = await _LateReader(session, looked_up, first_done).route_inbound(
                    channel, "psid-race", "hello"
                )
                return route.customer.id, route.conversation.id

        first_ids, second_ids = await asyncio.gather(first(), second())

        assert first_ids == second_ids
        async with file_session_maker() as session:
            assert await _count(session, Customer) == 1
            assert await _count(session, Conversation) == 1
            assert await _count(session, Message) == 2
            conversation = await session.get(Conversation, first_ids[1])
            assert conversation.unread_count == 2


class TestConversationQueries:
    @pytest.mark.asyncio
    async def test_list_orders_by_recent_activity_with_nulls_last(
        self, db_session, customer_factory, conversation_factory
    ):
        a = await conversation_factory(await customer_factory(external_id="a"), last_message_at=datetime(2024, 5, 1, 9))
        b = await conversation_factory(await customer_factory(external_id="b"), last_message_at=None)
        c = await conversation_factory(await customer_factory(external_id="c"), last_message_at=datetime(2024, 5, 1, 11))

        conversations = await ConversationService(db_session).list_conversations("t1")

        assert [conv.id for conv in conversations] == [c.id, a.id, b.id]

    @pytest.mark.asyncio
    async def test_list_filters_status_and_tenant(self, db_session, customer_factory, conversation_factory):
        open_conv = await conversation_factory(await customer_factory(external_id="a"))
        await conversation_factory(await customer_factory(external_id="b"), status="closed")
        await conversation_factory(await customer_factory(external_id="c", tenant_id="t2"))

        conversations = await ConversationService(db_session).list_conversations("t1", status="open")

        assert [conv.id for conv in conversations] == [open_conv.id]

    @pytest.mark.asyncio
    async def test_mark_as_read(self, db_session, customer_factory, conversation_factory):
        conversation = await conversation_factory(await customer_factory(), unread_count=4)
        service = ConversationService(db_session)

        assert await service.mark_as_read("t1", conversation.id) is True
        refreshed = await db_session.get(Conversation, conversation.id, populate_existing=True)
        assert refreshed.unread_count == 0

    @pytest.mark.asyncio
    async def test_mark_as_read_other_tenant(self, db_session, customer_factory, conversation_factory):
        conversation = await conversation_factory(await customer_factory(), unread_count=4)

        assert await ConversationService(db_session).mark_as_read("t2", conversation.id) is False

    @pytest.mark.asyncio
    async def test_add_tag_is_idempotent(self, db_session, customer_factory):
        customer = await customer_factory(tags=["VIP"])
        service = ConversationService(db_session)

        assert await service.add_tag("t1", customer.id, "Paid") is True
        assert await service.add_tag("t1", customer.id, "Paid") is False

        refreshed = await db_session.get(Customer, customer.id, populate_existing=True)
        assert refreshed.tags == ["VIP", "Paid"]

    @pytest.mark.asyncio
    async def test_add_tag_unknown_customer(self, db_session):
        assert await ConversationService(db_session).add_tag("t1", 9999, "Paid") is False

    @pytest.mark.asyncio
    async def test_add_tag_other_tenant_untouched(self, db_session, customer_factory):
        customer = await customer_factory(tenant_id="t2", tags=["VIP"])

        assert await ConversationService(db_session).add_tag("t1", customer.id, "Paid") is False

        refreshed = await db_session.get(Customer, customer.id, populate_existing=True)
        assert refreshed.tags == ["VIP"]

    @pytest.mark.asyncio
    async def test_agent_message_does_not_move_window(self, db_session, fake_clock, customer_factory, conversation_factory):
        started = fake_clock.now
        conversation = await conversation_factory(await customer_factory(), last_message_at=started)
        fake_clock.advance(hours=2)

        message = await ConversationService(db_session, clock=fake_clock).record_agent_message(
            conversation, "On it!", sender_id="agent-1", external_message_id="mid.out.1"
        )

        assert message.sender_type == SenderType.AGENT.value
        assert message.delivery_status == "sent"
        refreshed = await db_session.get(Conversation, conversation.id, populate_existing=True)
        assert refreshed.last_message_at == started
