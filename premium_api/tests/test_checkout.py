"""
Test suite for the checkout orchestrator.
Exercises quote/start/confirm, auto-renew and cancel against the store,
with the gateway and notifier replaced by fakes.
"""
import asyncio
from datetime import timedelta

import pytest
from sqlalchemy import func, select

from premium_api.core import exceptions as errors
from premium_api.core.checkout_service import CheckoutService, build_receipt
from premium_api.core.timeutils import ensure_utc, utcnow
from premium_api.models.promocode import Promocode
from premium_api.models.user import User
from premium_api.models.user_subscription import UserSubscription


def test_build_receipt_format():
    now = utcnow()

    receipt = build_receipt(42, now)
    long_receipt = build_receipt("3f2b9c1e-7d4a-4b8e-9f10-aa11bb22cc33", now)

    assert receipt == f"sub_42_{int(now.timestamp() * 1000)}"
    assert long_receipt.startswith("sub_3f2b9c1e7d4a_")
    assert len(long_receipt) <= 40


@pytest.mark.asyncio
async def test_quote_applies_promo(factory, db_session):
    plan = await factory.plan(price_cents=50000)
    await factory.promo(code="SAVE20", discount_value=20, min_amount_cents=30000)

    quote = await CheckoutService.quote(db_session, plan.id, " save20 ", True)

    assert quote.amount_cents == 50000
    assert quote.adjusted_amount_cents == 40000
    assert quote.promo.code == "SAVE20"
    assert quote.promo_description == "20% off • Saved ₹100.00"


@pytest.mark.asyncio
async def test_quote_rejections(factory, db_session):
    """
    Validates:
    - Inactive plans are not purchasable
    - Unknown promo codes are reported as not found
    - The minimum is checked against the discounted amount
    """
    inactive = await factory.plan(is_active=False)
    plan = await factory.plan(price_cents=50000)
    await factory.promo(code="HALF", discount_value=50, min_amount_cents=30000)

    with pytest.raises(errors.NotFound) as excinfo:
        await CheckoutService.quote(db_session, inactive.id)
    assert excinfo.value.code == errors.PLAN_NOT_FOUND

    with pytest.raises(errors.ValidationFailed) as excinfo:
        await CheckoutService.quote(db_session, plan.id, "NOPE")
    assert excinfo.value.code == errors.PROMO_NOT_FOUND

    with pytest.raises(errors.ValidationFailed) as excinfo:
        await CheckoutService.quote(db_session, plan.id, "HALF")
    assert excinfo.value.code == errors.PROMO_MINIMUM_NOT_MET


@pytest.mark.asyncio
async def test_start_requires_configured_gateway(factory, db_session, unconfigured_gateway):
    """Gateway availability is checked before anything touches the store."""
    user = await factory.user()

    with pytest.raises(errors.GatewayUnavailable):
        await CheckoutService.start(db_session, unconfigured_gateway, user, plan_id=999)


@pytest.mark.asyncio
async def test_start_creates_pending_subscription(factory, db_session, gateway):
    """
    Validates:
    - The gateway order is created for the discounted amount
    - Receipt and notes identify plan and user
    - A pending row is bound to the order id
    """
    # Setup
    user = await factory.user()
    plan = await factory.plan(price_cents=50000)
    promo = await factory.promo(code="SAVE20", discount_value=20)

    # Execute
    subscription, quote = await CheckoutService.start(db_session, gateway, user, plan.id, "SAVE20", True)

    # Assert: Gateway call
    call = gateway.orders[0]
    assert call["order"].amount == 40000
    assert call["receipt"].startswith(f"sub_{plan.id}_")
    assert call["notes"] == {"plan_id": plan.id, "user_id": user.id}

    # Assert: Pending row
    row = await factory.get(UserSubscription, subscription.id)
    assert row.status == "pending"
    assert row.gateway_order_id == call["order"].id
    assert row.gateway_payment_id is None
    assert row.amount_cents == 40000
    assert row.promocode_id == promo.id
    assert quote.adjusted_amount_cents == 40000


@pytest.mark.asyncio
async def test_confirm_rejects_forged_signature_before_store_access(factory, db_session, gateway, notifier):
    # Setup: A started checkout
    user = await factory.user()
    plan = await factory.plan()
    subscription, _ = await CheckoutService.start(db_session, gateway, user, plan.id)

    # Execute
    with pytest.raises(errors.SignatureMismatch):
        await CheckoutService.confirm(
            db_session, gateway, notifier, user,
            subscription.gateway_order_id, "pay_1", "forged-signature",
        )

    # Assert: Nothing changed, nobody notified
    row = await factory.get(UserSubscription, subscription.id)
    assert row.status == "pending"
    assert notifier.sent == []


@pytest.mark.asyncio
async def test_confirm_activates_and_projects(factory, db_session, gateway, notifier, sign):
    """
    Validates:
    - Confirmation activates the row with payment id and expiry
    - The user's premium projection reflects the new subscription
    - The promo redemption is counted
    - An activation email is sent
    """
    # Setup
    user = await factory.user()
    plan = await factory.plan(duration_days=30)
    promo = await factory.promo(code="SAVE20", max_redemptions=10)
    subscription, _ = await CheckoutService.start(db_session, gateway, user, plan.id, "SAVE20", True)
    order_id = subscription.gateway_order_id

    # Execute
    before = utcnow()
    result = await CheckoutService.confirm(
        db_session, gateway, notifier, user, order_id, "pay_1", sign(order_id, "pay_1")
    )

    # Assert: Subscription
    row = await factory.get(UserSubscription, subscription.id)
    assert row.status == "active"
    assert row.gateway_payment_id == "pay_1"
    expires_at = ensure_utc(row.expires_at)
    assert before + timedelta(days=30) <= expires_at <= utcnow() + timedelta(days=30)
    assert result.promo_applied is True

    # Assert: Projection, promo counter, email
    projected = await factory.get(User, user.id)
    assert projected.is_premium is True
    assert projected.subscription_plan_id == plan.id
    assert projected.subscription_auto_renew is True
    assert (await factory.get(Promocode, promo.id)).redemptions_count == 1
    assert notifier.events("activated") == [("activated", user.id, subscription.id)]


@pytest.mark.asyncio
async def test_confirm_is_single_use(factory, db_session, gateway, notifier, sign):
    user = await factory.user()
    plan = await factory.plan()
    subscription, _ = await CheckoutService.start(db_session, gateway, user, plan.id)
    order_id = subscription.gateway_order_id
    signature = sign(order_id, "pay_1")

    await CheckoutService.confirm(db_session, gateway, notifier, user, order_id, "pay_1", signature)

    with pytest.raises(errors.NotFound) as excinfo:
        await CheckoutService.confirm(db_session, gateway, notifier, user, order_id, "pay_1", signature)
    assert excinfo.value.code == errors.PENDING_NOT_FOUND


@pytest.mark.asyncio
async def test_confirm_rejects_other_users_order(factory, db_session, gateway, notifier, sign):
    owner = await factory.user()
    intruder = await factory.user()
    plan = await factory.plan()
    subscription, _ = await CheckoutService.start(db_session, gateway, owner, plan.id)
    order_id = subscription.gateway_order_id

    with pytest.raises(errors.Forbidden) as excinfo:
        await CheckoutService.confirm(
            db_session, gateway, notifier, intruder, order_id, "pay_1", sign(order_id, "pay_1")
        )

    assert excinfo.value.code == errors.UNAUTHORIZED_CONFIRMATION
    assert (await factory.get(UserSubscription, subscription.id)).status == "pending"


@pytest.mark.asyncio
async def test_confirm_with_exhausted_promo_still_activates(factory, db_session, gateway, notifier, sign):
    """The promo counter is best-effort: a lost race only produces a warning."""
    # Setup: Start with the last available redemption
    user = await factory.user()
    plan = await factory.plan()
    promo = await factory.promo(code="LAST1", max_redemptions=1)
    subscription, _ = await CheckoutService.start(db_session, gateway, user, plan.id, "LAST1")
    order_id = subscription.gateway_order_id

    # Setup: Someone else redeems it meanwhile
    async with factory.session_factory() as db:
        row = await db.get(Promocode, promo.id)
        row.redemptions_count = 1
        await db.commit()

    # Execute
    result = await CheckoutService.confirm(
        db_session, gateway, notifier, user, order_id, "pay_1", sign(order_id, "pay_1")
    )

    # Assert
    assert result.promo_applied is False
    assert result.subscription.status == "active"
    assert (await factory.get(Promocode, promo.id)).redemptions_count == 1


@pytest.mark.asyncio
async def test_confirm_survives_email_failure(factory, db_session, gateway, notifier, sign):
    user = await factory.user()
    plan = await factory.plan()
    subscription, _ = await CheckoutService.start(db_session, gateway, user, plan.id)
    order_id = subscription.gateway_order_id
    notifier.fail_on.add("activated")

    result = await CheckoutService.confirm(
        db_session, gateway, notifier, user, order_id, "pay_1", sign(order_id, "pay_1")
    )

    assert result.subscription.status == "active"


@pytest.mark.asyncio
async def test_toggle_auto_renew_updates_row_and_projection(factory, db_session, notifier):
    user = await factory.user()
    plan = await factory.plan()
    subscription = await factory.subscription(user, plan, auto_renew=True)
    await factory.project(user, subscription)

    updated = await CheckoutService.toggle_auto_renew(db_session, notifier, user, False)

    assert updated.auto_renew is False
    assert (await factory.get(User, user.id)).subscription_auto_renew is False
    assert notifier.events("auto_renew_changed") == [("auto_renew_changed", user.id, subscription.id)]


@pytest.mark.asyncio
async def test_toggle_auto_renew_without_subscription(factory, db_session, notifier):
    user = await factory.user()

    with pytest.raises(errors.NotFound) as excinfo:
        await CheckoutService.toggle_auto_renew(db_session, notifier, user, True)

    assert excinfo.value.code == errors.SUBSCRIPTION_NOT_FOUND


@pytest.mark.asyncio
async def test_cancel_latest_active_subscription(factory, db_session, notifier):
    """
    Validates:
    - Cancel moves the subscription to canceled
    - Premium access stays until expiry
    - A second cancel is refused
    """
    # Setup
    user = await factory.user()
    plan = await factory.plan()
    subscription = await factory.subscription(user, plan)
    await factory.project(user, subscription)

    # Execute
    canceled = await CheckoutService.cancel(db_session, notifier, user)

    # Assert
    assert canceled.status == "canceled"
    projected = await factory.get(User, user.id)
    assert projected.is_premium is True
    assert projected.subscription_auto_renew is False
    assert notifier.events("canceled") == [("canceled", user.id, subscription.id)]

    with pytest.raises(errors.NotFound):
        await CheckoutService.cancel(db_session, notifier, user)


@pytest.mark.asyncio
async def test_start_warns_but_allows_second_checkout(factory, db_session, gateway):
    user = await factory.user()
    plan = await factory.plan()
    await factory.subscription(user, plan)

    subscription, _ = await CheckoutService.start(db_session, gateway, user, plan.id)

    count = await db_session.scalar(
        select(func.count()).select_from(UserSubscription).where(UserSubscription.user_id == user.id)
    )
    assert subscription.status == "pending"
    assert count == 2


@pytest.mark.asyncio
async def test_cancel_ignores_newer_abandoned_checkout(factory, db_session, scheduler, notifier):
    """
    Validates:
    - A newer pending checkout that was reaped does not hide the active subscription
    - Cancel acts on the active row
    """
    # Setup: Paid subscription, then an abandoned second checkout
    user = await factory.user()
    plan = await factory.plan()
    active = await factory.subscription(user, plan)
    abandoned = await factory.subscription(user, plan, status="pending")
    await factory.project(user, active)
    await scheduler.run_pending_reaper(now=utcnow() + timedelta(hours=25))
    assert (await factory.get(UserSubscription, abandoned.id)).status == "expired"

    # Execute
    canceled = await CheckoutService.cancel(db_session, notifier, user)

    # Assert
    assert canceled.id == active.id
    assert canceled.status == "canceled"
    assert (await factory.get(User, user.id)).subscription_auto_renew is False
    assert notifier.events("canceled") == [("canceled", user.id, active.id)]


@pytest.mark.asyncio
async def test_toggle_auto_renew_prefers_active_over_newer_pending(factory, db_session, notifier):
    """
    Validates:
    - The active subscription is updated even when a newer pending row exists
    - The pending row is left alone
    - The projection follows the active row
    """
    # Setup: Paid subscription, then a second checkout left pending
    user = await factory.user()
    plan = await factory.plan()
    active = await factory.subscription(user, plan, auto_renew=True)
    pending = await factory.subscription(user, plan, status="pending", auto_renew=True)
    await factory.project(user, active)

    # Execute
    updated = await CheckoutService.toggle_auto_renew(db_session, notifier, user, False)

    # Assert
    assert updated.id == active.id
    assert (await factory.get(UserSubscription, active.id)).auto_renew is False
    assert (await factory.get(UserSubscription, pending.id)).auto_renew is True
    assert (await factory.get(User, user.id)).subscription_auto_renew is False


@pytest.mark.asyncio
async def test_toggle_auto_renew_falls_back_to_pending(factory, db_session, notifier):
    user = await factory.user()
    plan = await factory.plan()
    await factory.subscription(user, plan, status="expired", expires_in=timedelta(days=-2))
    pending = await factory.subscription(user, plan, status="pending", auto_renew=True)

    updated = await CheckoutService.toggle_auto_renew(db_session, notifier, user, False)

    assert updated.id == pending.id
    assert updated.auto_renew is False


@pytest.mark.asyncio
async def test_concurrent_confirmations_respect_promo_cap(pooled_factory, pooled_session_factory, gateway, notifier, sign):
    """
    Validates:
    - Racing confirmations of checkouts that share a capped promo all activate
    - redemptions_count never passes max_redemptions
    - promo_applied is reported only for counted redemptions
    """
    # Setup: Five buyers start checkouts with a promo capped at two
    plan = await pooled_factory.plan()
    promo = await pooled_factory.promo(code="RACE2", max_redemptions=2)
    checkouts = []
    for _ in range(5):
        user = await pooled_factory.user()
        async with pooled_session_factory() as db:
            subscription, _ = await CheckoutService.start(db, gateway, user, plan.id, "RACE2")
        checkouts.append((user, subscription.id, subscription.gateway_order_id))

    async def confirm(user, order_id):
        async with pooled_session_factory() as db:
            return await CheckoutService.confirm(
                db, gateway, notifier, user, order_id, "pay_" + order_id, sign(order_id, "pay_" + order_id)
            )

    # Execute: Confirm all of them at once
    results = await asyncio.gather(*(confirm(user, order_id) for user, _, order_id in checkouts))

    # Assert: Cap held, every checkout activated
    stored = await pooled_factory.get(Promocode, promo.id)
    assert stored.redemptions_count <= 2
    assert sum(result.promo_applied for result in results) == stored.redemptions_count
    for _, subscription_id, _ in checkouts:
        assert (await pooled_factory.get(UserSubscription, subscription_id)).status == "active"
