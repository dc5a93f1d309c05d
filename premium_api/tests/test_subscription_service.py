"""
Test suite for the subscription lifecycle store.
Covers guarded state transitions, the premium projection rebuild and the
admin transaction listing.
"""
from datetime import timedelta

import pytest

from premium_api.core.subscription_service import SubscriptionService
from premium_api.core.timeutils import ensure_utc, utcnow
from premium_api.models.user import User
from premium_api.models.user_subscription import UserSubscription


@pytest.mark.asyncio
async def test_create_pending_then_activate(factory, db_session):
    """
    Validates:
    - A pending row is bound to its order id with no payment id
    - Activation sets payment id and the entitlement window
    - A second activation of the same row is refused
    """
    # Setup: Seed a user and a plan
    user = await factory.user()
    plan = await factory.plan()

    # Execute: Create the pending row
    pending = await SubscriptionService.create_pending(
        db_session,
        user_id=user.id,
        plan_id=plan.id,
        promocode_id=None,
        auto_renew=True,
        amount_cents=plan.price_cents,
        currency_code="INR",
        gateway_order_id="order_abc",
    )
    await db_session.commit()

    # Assert: Pending invariants
    found = await SubscriptionService.get_pending_by_order(db_session, "order_abc")
    assert found.id == pending.id
    assert found.gateway_payment_id is None

    # Execute: Activate
    now = utcnow()
    assert await SubscriptionService.activate(db_session, pending.id, "pay_1", now, now + timedelta(days=30))
    await db_session.commit()

    # Assert: Active invariants and replay refusal
    active = await SubscriptionService.get_by_id(db_session, pending.id)
    assert active.status == "active"
    assert active.gateway_payment_id == "pay_1"
    assert active.expires_at is not None
    assert not await SubscriptionService.activate(db_session, pending.id, "pay_2", now, now)
    assert await SubscriptionService.get_pending_by_order(db_session, "order_abc") is None


@pytest.mark.asyncio
async def test_terminal_rows_are_never_rewritten(factory, db_session):
    """
    Validates:
    - Expired and canceled rows cannot be activated, expired or canceled again
    - Auto-renew cannot be toggled on terminal rows
    """
    # Setup: One expired and one canceled subscription
    user = await factory.user()
    plan = await factory.plan()
    expired = await factory.subscription(user, plan, status="expired")
    canceled = await factory.subscription(user, plan, status="canceled")
    now = utcnow()

    # Execute / Assert: Every transition is a no-op
    for row in (expired, canceled):
        assert not await SubscriptionService.activate(db_session, row.id, "pay_x", now, now + timedelta(days=1))
        assert not await SubscriptionService.expire(db_session, row.id)
        assert not await SubscriptionService.cancel(db_session, row.id, user.id, now)
        assert not await SubscriptionService.set_auto_renew(db_session, row.id, True)
        assert not await SubscriptionService.reap_pending(db_session, row.id)
    await db_session.commit()

    assert (await SubscriptionService.get_by_id(db_session, expired.id)).status == "expired"
    assert (await SubscriptionService.get_by_id(db_session, canceled.id)).status == "canceled"


@pytest.mark.asyncio
async def test_cancel_keeps_projection_until_expiry(factory, db_session):
    """
    Validates:
    - Cancel flips active -> canceled and clears auto-renew
    - The user stays premium until expires_at, with auto-renew off
    - Another user's cancel attempt is refused
    """
    # Setup: Active subscription reflected on the user
    user = await factory.user()
    other = await factory.user()
    plan = await factory.plan()
    subscription = await factory.subscription(user, plan)
    await factory.project(user, subscription)

    # Execute: Wrong owner, then the owner
    assert not await SubscriptionService.cancel(db_session, subscription.id, other.id, utcnow())
    assert await SubscriptionService.cancel(db_session, subscription.id, user.id, utcnow())
    await db_session.commit()

    # Assert: Row and projection
    row = await SubscriptionService.get_by_id(db_session, subscription.id)
    assert row.status == "canceled"
    assert row.auto_renew is False

    projected = await db_session.get(User, user.id, populate_existing=True)
    assert projected.is_premium is True
    assert projected.subscription_auto_renew is False
    assert projected.subscription_plan_id == plan.id


@pytest.mark.asyncio
async def test_recompute_clears_projection_without_entitlement(factory, db_session):
    # Setup: Premium flag left behind by a subscription that already lapsed
    user = await factory.user()
    plan = await factory.plan()
    lapsed = await factory.subscription(user, plan, status="canceled", expires_in=timedelta(hours=-1))
    await factory.project(user, lapsed)

    # Execute
    current = await SubscriptionService.recompute_premium_projection(db_session, user.id, utcnow())
    await db_session.commit()

    # Assert
    projected = await db_session.get(User, user.id, populate_existing=True)
    assert current is None
    assert projected.is_premium is False
    assert projected.subscription_plan_id is None
    assert projected.subscription_expires_at is None


@pytest.mark.asyncio
async def test_recompute_prefers_newest_entitled_subscription(factory, db_session):
    user = await factory.user()
    basic = await factory.plan(price_cents=10000)
    pro = await factory.plan(price_cents=90000)
    now = utcnow()
    await factory.subscription(user, basic, started_at=now - timedelta(days=10))
    newest = await factory.subscription(user, pro, started_at=now, auto_renew=False)

    current = await SubscriptionService.recompute_premium_projection(db_session, user.id, now)
    await db_session.commit()

    projected = await db_session.get(User, user.id, populate_existing=True)
    assert current.id == newest.id
    assert projected.is_premium is True
    assert projected.subscription_plan_id == pro.id
    assert projected.subscription_auto_renew is False


@pytest.mark.asyncio
async def test_reminder_markers_are_set_once(factory, db_session):
    user = await factory.user()
    plan = await factory.plan()
    subscription = await factory.subscription(user, plan)
    now = utcnow()

    assert await SubscriptionService.mark_renewal_reminder_sent(db_session, subscription.id, now)
    assert not await SubscriptionService.mark_renewal_reminder_sent(db_session, subscription.id, now)
    assert await SubscriptionService.mark_expiry_reminder_sent(db_session, subscription.id, now)
    await db_session.commit()

    row = await SubscriptionService.get_by_id(db_session, subscription.id)
    assert ensure_utc(row.renewal_reminder_sent_at) is not None
    assert ensure_utc(row.expiry_reminder_sent_at) is not None


@pytest.mark.asyncio
async def test_scheduler_queries(factory, db_session):
    """
    Validates:
    - Reminder queries split on auto-renew and respect the window
    - Expiration query only returns active rows past expires_at
    - Stale pending query honors the cutoff
    """
    # Setup: A spread of subscriptions around now
    user = await factory.user()
    plan = await factory.plan()
    now = utcnow()
    renewing = await factory.subscription(user, plan, expires_in=timedelta(hours=10))
    ending = await factory.subscription(user, plan, expires_in=timedelta(hours=10), auto_renew=False)
    far = await factory.subscription(user, plan, expires_in=timedelta(days=20))
    overdue = await factory.subscription(user, plan, expires_in=timedelta(hours=-2))
    await factory.subscription(user, plan, status="canceled", expires_in=timedelta(hours=-2))
    stale = await factory.subscription(user, plan, status="pending", created_at=now - timedelta(hours=30))
    await factory.subscription(user, plan, status="pending")

    # Execute / Assert
    assert await SubscriptionService.due_for_renewal_reminder(db_session, now, 72) == [renewing.id]
    assert await SubscriptionService.due_for_expiry_reminder(db_session, now, 72) == [ending.id]
    assert far.id not in await SubscriptionService.due_for_renewal_reminder(db_session, now, 72)
    assert await SubscriptionService.due_for_expiration(db_session, now) == [overdue.id]
    assert await SubscriptionService.stale_pending(db_session, now - timedelta(hours=24)) == [stale.id]


@pytest.mark.asyncio
async def test_list_transactions_filters_and_clamps(factory, db_session):
    """
    Validates:
    - Newest rows come first
    - status, plan_id and search filters apply
    - limit is clamped to the 1..200 range
    """
    # Setup: Rows across two plans
    user = await factory.user()
    monthly = await factory.plan()
    yearly = await factory.plan()
    await factory.subscription(user, monthly, gateway_order_id="order_AAA111")
    await factory.subscription(user, yearly, status="pending", gateway_order_id="order_BBB222")
    last = await factory.subscription(user, yearly, gateway_order_id="order_CCC333", gateway_payment_id="pay_Match")

    # Execute / Assert: ordering and limit clamping
    rows = await SubscriptionService.list_transactions(db_session)
    assert [row.id for row in rows][0] == last.id
    assert len(await SubscriptionService.list_transactions(db_session, limit=0)) == 1
    assert len(await SubscriptionService.list_transactions(db_session, limit=1000)) == 3

    # Execute / Assert: filters
    pending = await SubscriptionService.list_transactions(db_session, status="pending")
    assert [row.gateway_order_id for row in pending] == ["order_BBB222"]

    yearly_rows = await SubscriptionService.list_transactions(db_session, plan_id=yearly.id)
    assert {row.gateway_order_id for row in yearly_rows} == {"order_BBB222", "order_CCC333"}

    by_order = await SubscriptionService.list_transactions(db_session, search="aaa1")
    assert [row.gateway_order_id for row in by_order] == ["order_AAA111"]

    by_payment = await SubscriptionService.list_transactions(db_session, search="PAY_MATCH")
    assert [row.id for row in by_payment] == [last.id]
    assert by_payment[0].user.email == user.email
