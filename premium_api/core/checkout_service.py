"""
Checkout orchestration: preview -> start -> confirm, plus the user-facing
auto-renew toggle and cancellation.

The orchestrator composes the catalog, the discount engine, the payment
gateway and the lifecycle store. It never writes subscription rows itself.
"""
import asyncio
from collections import defaultdict
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import NamedTuple, Optional

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from premium_api.core import exceptions as errors
from premium_api.core.catalog_service import CatalogService, normalize_promo_code
from premium_api.core.discount import (
    apply_discount,
    check_minimum,
    describe_discount,
    validate_promocode,
)
from premium_api.core.notifier import Notifier
from premium_api.core.payment_gateway import RazorpayGateway
from premium_api.core.subscription_service import ACTIVE, PENDING, SubscriptionService
from premium_api.core.timeutils import utcnow
from premium_api.models.promocode import Promocode
from premium_api.models.subscription_plan import SubscriptionPlan
from premium_api.models.user import User
from premium_api.models.user_subscription import UserSubscription

logger = structlog.get_logger(__name__)

RECEIPT_MAX_LENGTH = 40

CANCEL_MESSAGE = (
    "Auto renew disabled. Your premium access remains active until the current expiry date."
)


class CheckoutQuote(NamedTuple):
    plan: SubscriptionPlan
    promo: Optional[Promocode]
    amount_cents: int
    adjusted_amount_cents: int
    promo_description: Optional[str]


class ConfirmResult(NamedTuple):
    subscription: UserSubscription
    promo_applied: Optional[bool]


class _UserLocks:
    """In-process asyncio locks keyed by user id, dropped once unused."""

    def __init__(self):
        self._locks: dict[int, asyncio.Lock] = {}
        self._holders: dict[int, int] = defaultdict(int)

    @asynccontextmanager
    async def hold(self, user_id: int):
        lock = self._locks.setdefault(user_id, asyncio.Lock())
        self._holders[user_id] += 1
        try:
            async with lock:
                yield
        finally:
            self._holders[user_id] -= 1
            if self._holders[user_id] == 0:
                del self._holders[user_id]
                self._locks.pop(user_id, None)


checkout_locks = _UserLocks()


def build_receipt(plan_id, now) -> str:
    """Gateway receipt: sub_<plan id, 12 chars max>_<epoch ms>, at most 40 chars."""
    plan_part = str(plan_id).replace("-", "")[:12]
    epoch_ms = int(now.timestamp() * 1000)
    return f"sub_{plan_part}_{epoch_ms}"[:RECEIPT_MAX_LENGTH]


class CheckoutService:
    """
    Service class for the checkout flow.

    Methods are static and receive their collaborators (session, gateway,
    notifier) explicitly so the endpoints can inject them as dependencies.
    """

    @staticmethod
    async def quote(
        db: AsyncSession,
        plan_id: int,
        promo_code: Optional[str] = None,
        auto_renew: bool = True,
    ) -> CheckoutQuote:
        """
        Resolve a plan/promo selection into amounts.

        Args:
            db (AsyncSession): Database session
            plan_id (int): Plan being purchased (must be active)
            promo_code (str, optional): Promo code as typed by the user
            auto_renew (bool): Whether auto-renew is requested

        Returns:
            CheckoutQuote: plan, promo, original and adjusted amounts

        Raises:
            NotFound: Plan missing or inactive
            ValidationFailed: Promo code rejected (reason in .code)
        """
        plan = await CatalogService.get_plan(db, plan_id)
        if not plan or not plan.is_active:
            raise errors.NotFound("Plan not found", code=errors.PLAN_NOT_FOUND)

        amount = int(plan.price_cents)
        code = normalize_promo_code(promo_code)
        promo = None

        if code:
            promo = await CatalogService.get_promocode_by_code(db, code)
            validation = validate_promocode(promo, plan.id, auto_renew, utcnow())
            if not validation.valid:
                raise errors.ValidationFailed(validation.message, code=validation.reason)

        adjusted = apply_discount(amount, promo)

        minimum = check_minimum(promo, adjusted)
        if not minimum.valid:
            raise errors.ValidationFailed(minimum.message, code=minimum.reason)

        return CheckoutQuote(
            plan=plan,
            promo=promo,
            amount_cents=amount,
            adjusted_amount_cents=adjusted,
            promo_description=describe_discount(promo, amount, adjusted),
        )

    @staticmethod
    async def start(
        db: AsyncSession,
        gateway: RazorpayGateway,
        user: User,
        plan_id: int,
        promo_code: Optional[str] = None,
        auto_renew: bool = True,
    ) -> tuple[UserSubscription, CheckoutQuote]:
        """
        Create a gateway order and the pending subscription bound to it.

        Raises:
            GatewayUnavailable: Gateway not configured (checked first) or the
                order could not be created
        """
        if not gateway.is_configured():
            raise errors.GatewayUnavailable()

        quote = await CheckoutService.quote(db, plan_id, promo_code, auto_renew)
        plan = quote.plan

        async with checkout_locks.hold(user.id):
            now = utcnow()
            if await SubscriptionService.has_active_subscription(db, user.id, now):
                logger.warning("checkout_start_with_active_subscription", user_id=user.id, plan_id=plan.id)

            receipt = build_receipt(plan.id, now)
            order = await gateway.create_order(
                amount=quote.adjusted_amount_cents,
                currency=plan.currency_code,
                receipt=receipt,
                notes={"plan_id": plan.id, "user_id": user.id},
            )

            try:
                subscription = await SubscriptionService.create_pending(
                    db,
                    user_id=user.id,
                    plan_id=plan.id,
                    promocode_id=quote.promo.id if quote.promo else None,
                    auto_renew=auto_renew,
                    amount_cents=quote.adjusted_amount_cents,
                    currency_code=plan.currency_code,
                    gateway_order_id=order.id,
                )
            except SQLAlchemyError as exc:
                await db.rollback()
                logger.error("pending_subscription_create_failed", exc_info=True, order_id=order.id, user_id=user.id)
                raise errors.DependencyFailure() from exc

            await SubscriptionService.commit(
                db, "pending_subscription_commit_failed", order_id=order.id, user_id=user.id
            )

        logger.info(
            "checkout_started",
            subscription_id=subscription.id,
            order_id=order.id,
            user_id=user.id,
            plan_id=plan.id,
            amount=quote.adjusted_amount_cents,
        )
        return subscription, quote

    @staticmethod
    async def confirm(
        db: AsyncSession,
        gateway: RazorpayGateway,
        notifier: Notifier,
        user: User,
        order_id: str,
        payment_id: str,
        signature: str,
    ) -> ConfirmResult:
        """
        Activate a pending subscription after a signed payment callback.

        The signature is checked before anything is read from the store.
        Activation and the projection rebuild are committed together; the
        promo redemption is counted afterwards and only ever warns.
        """
        if not gateway.verify_signature(order_id, payment_id, signature):
            logger.warning("payment_signature_mismatch", order_id=order_id, user_id=user.id)
            raise errors.SignatureMismatch()

        subscription = await SubscriptionService.get_pending_by_order(db, order_id)
        if not subscription:
            raise errors.NotFound("Pending subscription not found", code=errors.PENDING_NOT_FOUND)

        if subscription.user_id != user.id:
            logger.warning(
                "confirmation_ownership_mismatch",
                subscription_id=subscription.id,
                order_id=order_id,
                user_id=user.id,
            )
            raise errors.Forbidden(
                "You cannot confirm this subscription", code=errors.UNAUTHORIZED_CONFIRMATION
            )

        plan = await CatalogService.get_plan(db, subscription.plan_id)
        if not plan:
            raise errors.NotFound("Plan not found", code=errors.PLAN_NOT_FOUND)

        now = utcnow()
        expires_at = now + timedelta(days=int(plan.duration_days))
        subscription_id = subscription.id
        promocode_id = subscription.promocode_id

        try:
            activated = await SubscriptionService.activate(db, subscription_id, payment_id, now, expires_at)
            if activated:
                await SubscriptionService.recompute_premium_projection(db, user.id, now)
        except SQLAlchemyError as exc:
            await db.rollback()
            logger.error("subscription_activation_failed", exc_info=True, subscription_id=subscription_id)
            raise errors.DependencyFailure() from exc

        if not activated:
            await db.rollback()
            raise errors.NotFound("Pending subscription not found", code=errors.PENDING_NOT_FOUND)

        await SubscriptionService.commit(db, "subscription_activation_failed", subscription_id=subscription_id)
        logger.info(
            "subscription_activated",
            subscription_id=subscription_id,
            order_id=order_id,
            user_id=user.id,
            expires_at=expires_at.isoformat(),
        )

        promo_applied = None
        if promocode_id:
            promo_applied = await CheckoutService._redeem_promocode(db, promocode_id, subscription_id)

        subscription = await SubscriptionService.get_by_id(db, subscription_id)
        await CheckoutService._notify(notifier.send_subscription_activated, user, subscription)
        return ConfirmResult(subscription=subscription, promo_applied=promo_applied)

    @staticmethod
    async def toggle_auto_renew(
        db: AsyncSession,
        notifier: Notifier,
        user: User,
        enable: bool,
    ) -> UserSubscription:
        """
        Flip auto-renew on the current subscription.

        The latest active row wins; a pending checkout is only touched when
        the user has no active subscription.
        """
        subscription = await SubscriptionService.get_latest_for_user(db, user.id, statuses=(ACTIVE,))
        if not subscription:
            subscription = await SubscriptionService.get_latest_for_user(db, user.id, statuses=(PENDING,))
        if not subscription:
            raise errors.NotFound("No active subscription found", code=errors.SUBSCRIPTION_NOT_FOUND)

        subscription_id = subscription.id
        if not await SubscriptionService.set_auto_renew(db, subscription_id, enable):
            await db.rollback()
            raise errors.NotFound("No active subscription found", code=errors.SUBSCRIPTION_NOT_FOUND)
        await SubscriptionService.recompute_premium_projection(db, user.id, utcnow())
        await SubscriptionService.commit(db, "auto_renew_update_failed", subscription_id=subscription_id)
        logger.info("auto_renew_updated", subscription_id=subscription_id, user_id=user.id, enabled=enable)

        subscription = await SubscriptionService.get_by_id(db, subscription_id)
        await CheckoutService._notify(notifier.send_auto_renew_changed, user, subscription)
        return subscription

    @staticmethod
    async def cancel(db: AsyncSession, notifier: Notifier, user: User) -> UserSubscription:
        """
        Cancel the user's latest active subscription.

        Newer pending or expired checkouts are ignored. Premium access is kept
        until expires_at.
        """
        subscription = await SubscriptionService.get_latest_for_user(db, user.id, statuses=(ACTIVE,))
        if not subscription:
            raise errors.NotFound("No active subscription found", code=errors.SUBSCRIPTION_NOT_FOUND)

        subscription_id = subscription.id
        if not await SubscriptionService.cancel(db, subscription_id, user.id, utcnow()):
            await db.rollback()
            raise errors.NotFound("No active subscription found", code=errors.SUBSCRIPTION_NOT_FOUND)
        await SubscriptionService.commit(db, "subscription_cancel_failed", subscription_id=subscription_id)
        logger.info("subscription_canceled", subscription_id=subscription_id, user_id=user.id)

        subscription = await SubscriptionService.get_by_id(db, subscription_id)
        await CheckoutService._notify(notifier.send_subscription_canceled, user, subscription)
        return subscription

    @staticmethod
    async def _redeem_promocode(db: AsyncSession, promocode_id: int, subscription_id: int) -> bool:
        try:
            counted = await CatalogService.increment_promocode_usage(db, promocode_id)
        except SQLAlchemyError:
            await db.rollback()
            logger.warning(
                "promocode_redemption_failed",
                exc_info=True,
                promocode_id=promocode_id,
                subscription_id=subscription_id,
            )
            return False
        if not counted:
            logger.warning(
                "promocode_redemption_not_counted",
                promocode_id=promocode_id,
                subscription_id=subscription_id,
            )
        return counted

    @staticmethod
    async def _notify(send, user: User, subscription: UserSubscription) -> None:
        """Best-effort email: failures are logged, never raised."""
        try:
            await send(user, subscription)
        except Exception:
            logger.warning(
                "subscription_email_failed",
                exc_info=True,
                notice=getattr(send, "__name__", str(send)),
                subscription_id=subscription.id,
            )
