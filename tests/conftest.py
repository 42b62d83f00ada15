"""
Pytest Configuration and Fixtures

Provides fixtures for:
- Database sessions (async, in-memory SQLite; file-backed for concurrency tests)
- Fake outbound sender (Meta Graph API)
- Test data factories (channels, customers, rules, gateway configs, transactions)
- Signing helpers for Meta / Paymob webhooks
"""
# הגדרת סודות לפני ייבוא indexplus: Settings נטען בזמן import
import os
os.environ.setdefault("JWT_SECRET_KEY", "test-jwt-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("META_APP_SECRET", "test-meta-app-secret")
os.environ.setdefault("META_VERIFY_TOKEN", "test-verify-token")

import hashlib
import hmac
import json
from datetime import datetime, timedelta
from decimal import Decimal
from typing import AsyncGenerator

import pytest
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import StaticPool

from indexplus.api.dependencies.sender import get_sender
from indexplus.core.auth import create_access_token
from indexplus.core.config import settings
from indexplus.core.exceptions import MessagingPlatformError
from indexplus.core.security import compute_paymob_hmac
from indexplus.db.database import Base, get_db
from indexplus.db.models.automation_rule import AutomationRule
from indexplus.db.models.channel import Channel, ChannelStatus
from indexplus.db.models.conversation import Conversation
from indexplus.db.models.customer import Customer
from indexplus.db.models.payment_gateway_config import PaymentGatewayConfig
from indexplus.db.models.payment_transaction import PaymentStatus, PaymentTransaction
from indexplus.domain.services.meta.sender import BaseMessageSender
from indexplus.domain.services.paymob import reset_paymob_clients
from indexplus.main import app


# Test database URL (SQLite in memory for fast tests)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

TEST_TENANT = "t1"
TEST_HMAC_SECRET = "paymob-hmac-secret"


@pytest.fixture(scope="function")
async def async_engine():
    """Create async test database engine"""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        echo=False
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture(scope="function")
async def db_session(async_engine) -> AsyncGenerator[AsyncSession, None]:
    """Create async database session for tests"""
    async_session_maker = async_sessionmaker(
        async_engine,
        class_=AsyncSession,
        expire_on_commit=False
    )

    async with async_session_maker() as session:
        yield session
        await session.rollback()


@pytest.fixture(scope="function")
async def file_session_maker(tmp_path):
    """DB על קובץ: כל session מקבל חיבור משלו, לבדיקות של קוראים מקבילים"""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'concurrency.db'}",
        connect_args={"timeout": 30},
        echo=False,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    await engine.dispose()


@pytest.fixture(scope="function")
async def test_client(db_session: AsyncSession, fake_sender):
    """Create test client with database and sender overrides"""
    from httpx import AsyncClient, ASGITransport

    async def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_sender] = lambda: fake_sender

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()


@pytest.fixture(autouse=True)
def reset_paymob_registry():
    """ה-registry של PaymobClient גלובלי לתהליך — מנקים בין בדיקות"""
    reset_paymob_clients()
    yield
    reset_paymob_clients()


# ============================================================================
# Fakes
# ============================================================================


class FakeSender(BaseMessageSender):
    """Sender מזויף — רושם כל שליחה ומחזיר mid רץ"""

    def __init__(self) -> None:
        self.sent: list[dict] = []
        self.fail_with: Exception | None = None

    async def send_text(self, channel: Channel, recipient_id: str, text: str) -> str | None:
        if self.fail_with is not None:
            raise self.fail_with
        self.sent.append({
            "platform": channel.platform,
            "channel_id": channel.id,
            "recipient_id": recipient_id,
            "text": text,
        })
        return f"mid.out.{len(self.sent)}"

    def fail(self, message: str = "Graph API returned status 400") -> None:
        self.fail_with = MessagingPlatformError(message)


class FakeClock:
    """שעון ניתן להזזה — naive UTC כמו utcnow()"""

    def __init__(self, now: datetime | None = None) -> None:
        self.now = now or datetime(2024, 5, 1, 12, 0, 0)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture
def fake_sender() -> FakeSender:
    return FakeSender()


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


# ============================================================================
# Helpers
# ============================================================================


def auth_headers(tenant_id: str = TEST_TENANT, user_id: str = "agent-1", role: str = "agent") -> dict:
    token = create_access_token(tenant_id=tenant_id, user_id=user_id, role=role)
    return {"Authorization": f"Bearer {token}"}


def sign_meta_body(body: bytes, secret: str | None = None) -> str:
    secret = secret or settings.META_APP_SECRET
    return "sha256=" + hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


def meta_request(payload: dict) -> tuple[bytes, dict]:
    """body + headers חתומים ל-POST webhook של Meta"""
    body = json.dumps(payload).encode()
    return body, {"Content-Type": "application/json", "X-Hub-Signature-256": sign_meta_body(body)}


def paymob_obj(
    transaction_id: int = 555,
    merchant_order_id: str = "t1-1",
    *,
    success: bool = True,
    pending: bool = False,
    error_occured: bool = False,
    message: str | None = None,
) -> dict:
    return {
        "id": transaction_id,
        "amount_cents": 15000,
        "created_at": "2024-05-01T12:00:00.000000",
        "currency": "EGP",
        "error_occured": error_occured,
        "has_parent_transaction": False,
        "integration_id": 111,
        "is_3d_secure": True,
        "is_auth": False,
        "is_capture": False,
        "is_refunded": False,
        "is_standalone_payment": True,
        "is_voided": False,
        "order": {"id": 9001, "merchant_order_id": merchant_order_id},
        "owner": 42,
        "pending": pending,
        "source_data": {"pan": "2346", "sub_type": "MasterCard", "type": "card"},
        "success": success,
        "data": {"message": message} if message else {},
    }


def paymob_callback(obj: dict, secret: str = TEST_HMAC_SECRET) -> dict:
    return {"type": "TRANSACTION", "obj": obj, "hmac": compute_paymob_hmac(obj, secret)}


# ============================================================================
# Test Data Factories
# ============================================================================


@pytest.fixture
def channel_factory(db_session: AsyncSession):
    async def _create(
        platform: str = "facebook",
        platform_id: str = "page-1",
        tenant_id: str = TEST_TENANT,
        token: str | None = "page-token",
        status: str = ChannelStatus.CONNECTED.value,
    ) -> Channel:
        channel = Channel(
            tenant_id=tenant_id,
            platform=platform,
            platform_id=platform_id,
            token=token,
            status=status,
        )
        db_session.add(channel)
        await db_session.commit()
        return channel

    return _create


@pytest.fixture
def customer_factory(db_session: AsyncSession):
    async def _create(
        external_id: str = "psid-12345",
        platform: str = "facebook",
        tenant_id: str = TEST_TENANT,
        name: str = "Mona Ali",
        phone: str | None = "+201001234567",
        tags: list[str] | None = None,
    ) -> Customer:
        customer = Customer(
            tenant_id=tenant_id,
            name=name,
            phone=phone,
            platform=platform,
            external_id=external_id,
            tags=tags or [],
        )
        db_session.add(customer)
        await db_session.commit()
        return customer

    return _create


@pytest.fixture
def conversation_factory(db_session: AsyncSession):
    async def _create(
        customer: Customer,
        channel: Channel | None = None,
        last_message_at: datetime | None = None,
        source: str | None = None,
        status: str = "open",
        unread_count: int = 0,
    ) -> Conversation:
        conversation = Conversation(
            tenant_id=customer.tenant_id,
            customer_id=customer.id,
            channel_id=channel.id if channel else None,
            source=source or customer.platform,
            status=status,
            last_message_at=last_message_at,
            unread_count=unread_count,
        )
        db_session.add(conversation)
        await db_session.commit()
        return conversation

    return _create


@pytest.fixture
def rule_factory(db_session: AsyncSession):
    async def _create(
        keywords: list[str],
        response_content: str = "Thanks! We'll reply shortly.",
        trigger_type: str = "contains",
        priority: int = 0,
        tenant_id: str = TEST_TENANT,
        is_active: bool = True,
        created_at: datetime | None = None,
    ) -> AutomationRule:
        rule = AutomationRule(
            tenant_id=tenant_id,
            keywords=keywords,
            response_content=response_content,
            trigger_type=trigger_type,
            priority=priority,
            is_active=is_active,
            created_at=created_at or datetime(2024, 1, 1),
        )
        db_session.add(rule)
        await db_session.commit()
        return rule

    return _create


@pytest.fixture
def gateway_config_factory(db_session: AsyncSession):
    async def _create(
        tenant_id: str = TEST_TENANT,
        api_key: str = "paymob-api-key",
        hmac_secret: str = TEST_HMAC_SECRET,
        iframe_id: str | None = "777",
    ) -> PaymentGatewayConfig:
        config = PaymentGatewayConfig(
            tenant_id=tenant_id,
            api_key=api_key,
            hmac_secret=hmac_secret,
            integration_id_card=111,
            integration_id_fawry=222,
            integration_id_wallet=333,
            iframe_id=iframe_id,
        )
        db_session.add(config)
        await db_session.commit()
        return config

    return _create


@pytest.fixture
def transaction_factory(db_session: AsyncSession):
    async def _create(
        tenant_id: str = TEST_TENANT,
        amount: Decimal = Decimal("150.00"),
        status: PaymentStatus = PaymentStatus.PENDING,
        customer_id: int | None = None,
        order_id: int | None = None,
        payment_method: str = "card",
        id: int | None = None,
    ) -> PaymentTransaction:
        transaction = PaymentTransaction(
            id=id,
            tenant_id=tenant_id,
            customer_id=customer_id,
            order_id=order_id,
            amount=amount,
            currency="EGP",
            payment_method=payment_method,
            status=status,
        )
        db_session.add(transaction)
        await db_session.flush()
        transaction.merchant_order_id = transaction.build_merchant_order_id()
        await db_session.commit()
        return transaction

    return _create
