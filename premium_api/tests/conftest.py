"""
Shared fixtures for the subscription API test-suite.

The environment is pinned before the application is imported: an in-memory
SQLite database, rate limiting off, scheduler cron jobs off and no SMTP.
Each test gets a fresh StaticPool engine; the payment gateway and the
notifier are replaced by in-process fakes.
"""
import os

os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["RATE_LIMIT_ENABLED"] = "false"
os.environ["DISABLE_SUBSCRIPTION_JOBS"] = "true"
os.environ["SMTP_HOST"] = ""
os.environ["RAZORPAY_KEY_ID"] = ""
os.environ["RAZORPAY_KEY_SECRET"] = ""

import hashlib
import hmac
from datetime import timedelta
from itertools import count

import pytest
import pytest_asyncio
from fastapi import Depends
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import AsyncAdaptedQueuePool, StaticPool

from premium_api.main import app
from premium_api.core.database import Base, get_db
from premium_api.core.dependencies import (
    get_current_user,
    get_email_notifier,
    get_gateway,
    get_subscription_scheduler,
)
from premium_api.core.notifier import Notifier
from premium_api.core.payment_gateway import GatewayOrder, RazorpayGateway
from premium_api.core.scheduler import SubscriptionScheduler
from premium_api.core.timeutils import utcnow
from premium_api.models.promocode import Promocode, PromocodePlanLink
from premium_api.models.subscription_plan import SubscriptionPlan
from premium_api.models.user import User
from premium_api.models.user_subscription import UserSubscription

TEST_KEY_ID = "rzp_test_key"
TEST_KEY_SECRET = "rzp_test_secret"


def sign(order_id: str, payment_id: str, secret: str = TEST_KEY_SECRET) -> str:
    """Signature the gateway would attach to a genuine payment callback."""
    return hmac.new(secret.encode(), f"{order_id}|{payment_id}".encode(), hashlib.sha256).hexdigest()


class FakeGateway(RazorpayGateway):
    """Gateway that creates orders in memory; signature checks stay real."""

    def __init__(self, configured: bool = True):
        super().__init__(
            key_id=TEST_KEY_ID if configured else None,
            key_secret=TEST_KEY_SECRET if configured else None,
        )
        self.orders = []
        self._ids = count(1)

    async def create_order(self, amount, currency, receipt, notes=None):
        order = GatewayOrder(id=f"order_test_{next(self._ids)}", amount=amount, currency=currency)
        self.orders.append({"order": order, "receipt": receipt, "notes": notes})
        return order


class RecordingNotifier(Notifier):
    """Records every notice; events listed in fail_on raise instead."""

    def __init__(self):
        self.sent = []
        self.fail_on = set()

    async def _record(self, event, user, subscription):
        if event in self.fail_on:
            raise ConnectionError(f"SMTP down while sending {event}")
        self.sent.append((event, user.id, subscription.id))

    async def send_subscription_activated(self, user, subscription):
        await self._record("activated", user, subscription)

    async def send_auto_renew_changed(self, user, subscription):
        await self._record("auto_renew_changed", user, subscription)

    async def send_subscription_canceled(self, user, subscription):
        await self._record("canceled", user, subscription)

    async def send_renewal_reminder(self, user, subscription):
        await self._record("renewal_reminder", user, subscription)

    async def send_expiry_reminder(self, user, subscription):
        await self._record("expiry_reminder", user, subscription)

    async def send_subscription_expired(self, user, subscription):
        await self._record("expired", user, subscription)

    def events(self, name):
        return [entry for entry in self.sent if entry[0] == name]


class Factory:
    """Seeds rows directly through the ORM, one short session per call."""

    def __init__(self, session_factory):
        self.session_factory = session_factory
        self._seq = count(1)

    async def _save(self, obj):
        async with self.session_factory() as db:
            db.add(obj)
            await db.commit()
            await db.refresh(obj)
        return obj

    async def user(self, role="user", **fields):
        n = next(self._seq)
        fields.setdefault("email", f"user{n}@example.com")
        fields.setdefault("name", f"User {n}")
        return await self._save(User(supabase_user_id=f"supabase-{n}", role=role, **fields))

    async def plan(self, **fields):
        n = next(self._seq)
        fields.setdefault("name", f"Plan {n}")
        fields.setdefault("slug", f"plan-{n}")
        fields.setdefault("duration_days", 30)
        fields.setdefault("price_cents", 50000)
        fields.setdefault("features", ["All premium exams"])
        return await self._save(SubscriptionPlan(**fields))

    async def promo(self, plan_ids=(), **fields):
        fields.setdefault("code", f"PROMO{next(self._seq)}")
        fields.setdefault("discount_type", "percent")
        fields.setdefault("discount_value", 20)
        promo = Promocode(**fields)
        promo.plan_links = [PromocodePlanLink(plan_id=plan_id) for plan_id in plan_ids]
        return await self._save(promo)

    async def subscription(self, user, plan, status="active", expires_in=timedelta(days=30), **fields):
        now = utcnow()
        fields.setdefault("gateway_order_id", f"order_seed_{next(self._seq)}")
        fields.setdefault("amount_cents", plan.price_cents)
        fields.setdefault("auto_renew", True)
        if status != "pending":
            fields.setdefault("gateway_payment_id", f"pay_seed_{next(self._seq)}")
            fields.setdefault("started_at", now)
            fields.setdefault("expires_at", now + expires_in)
        return await self._save(
            UserSubscription(user_id=user.id, plan_id=plan.id, status=status, **fields)
        )

    async def project(self, user, subscription):
        """Set the user's premium projection to match a subscription."""
        async with self.session_factory() as db:
            row = await db.get(User, user.id)
            row.is_premium = True
            row.subscription_plan_id = subscription.plan_id
            row.subscription_expires_at = subscription.expires_at
            row.subscription_auto_renew = subscription.auto_renew
            await db.commit()

    async def get(self, model, ident):
        async with self.session_factory() as db:
            return await db.get(model, ident)


@pytest_asyncio.fixture
async def db_engine():
    """Fresh in-memory database per test."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        echo=False,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db_session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def factory(session_factory):
    return Factory(session_factory)


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def scheduler(session_factory, notifier):
    return SubscriptionScheduler(
        session_factory=session_factory,
        notifier=notifier,
        reminder_window_hours=72,
        pending_ttl_hours=24,
        concurrency=1,
        timezone="UTC",
    )


@pytest_asyncio.fixture
async def client(session_factory, gateway, notifier, scheduler):
    """HTTP client against the app with the store and collaborators overridden."""
    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_gateway] = lambda: gateway
    app.dependency_overrides[get_email_notifier] = lambda: notifier
    app.dependency_overrides[get_subscription_scheduler] = lambda: scheduler

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://testserver") as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest.fixture
def login_as():
    """Authenticate subsequent requests as the given user."""
    def _login(user):
        async def current_user(db: AsyncSession = Depends(get_db)):
            return await db.get(User, user.id)

        app.dependency_overrides[get_current_user] = current_user

    return _login


@pytest.fixture
def unconfigured_gateway():
    return FakeGateway(configured=False)


@pytest.fixture(name="sign")
def sign_fixture():
    """Callable producing a genuine callback signature."""
    return sign


@pytest_asyncio.fixture
async def pooled_session_factory(tmp_path):
    """
    File-backed database behind a single pooled connection.

    Concurrent sessions queue for the connection, so each transaction runs
    in isolation while the coroutines themselves interleave.
    """
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'checkout.db'}",
        poolclass=AsyncAdaptedQueuePool,
        pool_size=1,
        max_overflow=0,
        echo=False,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    await engine.dispose()


@pytest.fixture
def pooled_factory(pooled_session_factory):
    return Factory(pooled_session_factory)
