"""
Service layer for the subscription lifecycle.

This module owns every write to user_subscriptions and to the premium
projection stored on users. State changes are conditional UPDATEs guarded by
the current status, so a row that reached 'expired' or 'canceled' is never
rewritten, whichever caller gets there first.

Methods flush but never commit: the checkout orchestrator and the scheduler
decide which changes form one unit and call SubscriptionService.commit().
"""
from datetime import datetime, timedelta
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, update, or_
from sqlalchemy.exc import SQLAlchemyError
import structlog

from premium_api.core import exceptions as errors
from premium_api.models.user import User
from premium_api.models.user_subscription import UserSubscription
from premium_api.schemas.user_subscription import SubscriptionStatus

logger = structlog.get_logger(__name__)

PENDING = SubscriptionStatus.PENDING.value
ACTIVE = SubscriptionStatus.ACTIVE.value
EXPIRED = SubscriptionStatus.EXPIRED.value
CANCELED = SubscriptionStatus.CANCELED.value

# Statuses that still grant premium access until expires_at
ENTITLED_STATUSES = (ACTIVE, CANCELED)

TRANSACTIONS_DEFAULT_LIMIT = 50
TRANSACTIONS_MAX_LIMIT = 200


class SubscriptionService:
    """
    Service class for subscription lifecycle operations.

    Encapsulates the state machine (pending -> active -> expired/canceled,
    pending -> expired) and the denormalized premium flag on the user.
    """

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    @staticmethod
    async def get_by_id(db: AsyncSession, subscription_id: int) -> UserSubscription | None:
        """Load a subscription, discarding any stale copy in the session."""
        return await db.get(UserSubscription, subscription_id, populate_existing=True)

    @staticmethod
    async def get_pending_by_order(db: AsyncSession, order_id: str) -> UserSubscription | None:
        """
        Find the pending subscription bound to a gateway order.

        Args:
            db (AsyncSession): Database session
            order_id (str): Gateway order id returned by checkout start

        Returns:
            UserSubscription | None: The pending row, or None if the order is
            unknown or no longer pending
        """
        result = await db.execute(
            select(UserSubscription)
            .where(UserSubscription.gateway_order_id == order_id)
            .where(UserSubscription.status == PENDING)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    @staticmethod
    async def get_latest_for_user(
        db: AsyncSession,
        user_id: int,
        statuses: tuple[str, ...] | None = None,
    ) -> UserSubscription | None:
        """
        Get the user's most recent subscription (newest first).

        Args:
            db (AsyncSession): Database session
            user_id (int): ID of the user
            statuses (tuple, optional): Only consider rows in these statuses

        Returns:
            UserSubscription | None: Latest matching subscription
        """
        stmt = (
            select(UserSubscription)
            .where(UserSubscription.user_id == user_id)
            .order_by(UserSubscription.created_at.desc(), UserSubscription.id.desc())
            .limit(1)
            .execution_options(populate_existing=True)
        )
        if statuses:
            stmt = stmt.where(UserSubscription.status.in_(statuses))
        result = await db.execute(stmt)
        return result.scalars().first()

    @staticmethod
    async def has_active_subscription(db: AsyncSession, user_id: int, now: datetime) -> bool:
        result = await db.execute(
            select(UserSubscription.id)
            .where(UserSubscription.user_id == user_id)
            .where(UserSubscription.status == ACTIVE)
            .where(UserSubscription.expires_at > now)
            .limit(1)
        )
        return result.scalar_one_or_none() is not None

    # ------------------------------------------------------------------
    # State transitions
    # ------------------------------------------------------------------
    @staticmethod
    async def create_pending(
        db: AsyncSession,
        *,
        user_id: int,
        plan_id: int,
        promocode_id: int | None,
        auto_renew: bool,
        amount_cents: int,
        currency_code: str,
        gateway_order_id: str,
    ) -> UserSubscription:
        """
        Record a checkout attempt bound to a gateway order.

        The row is flushed so its id is available; the caller commits.
        """
        subscription = UserSubscription(
            user_id=user_id,
            plan_id=plan_id,
            promocode_id=promocode_id,
            status=PENDING,
            auto_renew=auto_renew,
            amount_cents=amount_cents,
            currency_code=currency_code,
            gateway_order_id=gateway_order_id,
        )
        db.add(subscription)
        await db.flush()
        return subscription

    @staticmethod
    async def activate(
        db: AsyncSession,
        subscription_id: int,
        payment_id: str,
        started_at: datetime,
        expires_at: datetime,
    ) -> bool:
        """
        Move a pending subscription to active.

        Returns:
            bool: False when the row was no longer pending (already confirmed,
            reaped, or unknown)
        """
        return await SubscriptionService._transition(
            db,
            subscription_id,
            from_statuses=(PENDING,),
            values={
                "status": ACTIVE,
                "gateway_payment_id": payment_id,
                "started_at": started_at,
                "expires_at": expires_at,
            },
        )

    @staticmethod
    async def cancel(db: AsyncSession, subscription_id: int, user_id: int, now: datetime) -> bool:
        """
        Cancel an active subscription and rebuild the owner's projection.

        Canceled rows keep their expires_at, so the projection stays premium
        until then; the expiration sweep revokes it afterwards.
        """
        changed = await SubscriptionService._transition(
            db,
            subscription_id,
            from_statuses=(ACTIVE,),
            values={"status": CANCELED, "auto_renew": False},
            extra_filters=(UserSubscription.user_id == user_id,),
        )
        if changed:
            await SubscriptionService.recompute_premium_projection(db, user_id, now)
        return changed

    @staticmethod
    async def expire(db: AsyncSession, subscription_id: int) -> bool:
        """Active -> expired. The caller rebuilds the projection."""
        return await SubscriptionService._transition(
            db,
            subscription_id,
            from_statuses=(ACTIVE,),
            values={"status": EXPIRED, "auto_renew": False},
        )

    @staticmethod
    async def reap_pending(db: AsyncSession, subscription_id: int) -> bool:
        """Pending -> expired for an abandoned checkout."""
        return await SubscriptionService._transition(
            db,
            subscription_id,
            from_statuses=(PENDING,),
            values={"status": EXPIRED, "auto_renew": False},
        )

    @staticmethod
    async def set_auto_renew(db: AsyncSession, subscription_id: int, enable: bool) -> bool:
        return await SubscriptionService._transition(
            db,
            subscription_id,
            from_statuses=(PENDING, ACTIVE),
            values={"auto_renew": enable},
        )

    @staticmethod
    async def mark_renewal_reminder_sent(db: AsyncSession, subscription_id: int, sent_at: datetime) -> bool:
        return await SubscriptionService._transition(
            db,
            subscription_id,
            from_statuses=(ACTIVE,),
            values={"renewal_reminder_sent_at": sent_at},
            extra_filters=(UserSubscription.renewal_reminder_sent_at.is_(None),),
        )

    @staticmethod
    async def mark_expiry_reminder_sent(db: AsyncSession, subscription_id: int, sent_at: datetime) -> bool:
        return await SubscriptionService._transition(
            db,
            subscription_id,
            from_statuses=(ACTIVE,),
            values={"expiry_reminder_sent_at": sent_at},
            extra_filters=(UserSubscription.expiry_reminder_sent_at.is_(None),),
        )

    @staticmethod
    async def _transition(
        db: AsyncSession,
        subscription_id: int,
        from_statuses: tuple[str, ...],
        values: dict,
        extra_filters: tuple = (),
    ) -> bool:
        stmt = (
            update(UserSubscription)
            .where(UserSubscription.id == subscription_id)
            .where(UserSubscription.status.in_(from_statuses))
        )
        for condition in extra_filters:
            stmt = stmt.where(condition)
        result = await db.execute(
            stmt.values(**values).execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    # ------------------------------------------------------------------
    # Premium projection
    # ------------------------------------------------------------------
    @staticmethod
    async def set_premium_projection(
        db: AsyncSession,
        user_id: int,
        plan_id: int,
        expires_at: datetime,
        auto_renew: bool,
    ) -> None:
        await db.execute(
            update(User)
            .where(User.id == user_id)
            .values(
                is_premium=True,
                subscription_plan_id=plan_id,
                subscription_expires_at=expires_at,
                subscription_auto_renew=auto_renew,
            )
            .execution_options(synchronize_session=False)
        )

    @staticmethod
    async def clear_premium_projection(db: AsyncSession, user_id: int) -> None:
        await db.execute(
            update(User)
            .where(User.id == user_id)
            .values(
                is_premium=False,
                subscription_plan_id=None,
                subscription_expires_at=None,
                subscription_auto_renew=False,
            )
            .execution_options(synchronize_session=False)
        )

    @staticmethod
    async def recompute_premium_projection(
        db: AsyncSession,
        user_id: int,
        now: datetime,
    ) -> UserSubscription | None:
        """
        Rebuild the user's premium projection from the subscription table.

        The newest subscription that is active or canceled and has not yet
        reached expires_at wins; with none, the projection is cleared.

        Returns:
            UserSubscription | None: The subscription the projection now
            reflects
        """
        result = await db.execute(
            select(UserSubscription)
            .where(UserSubscription.user_id == user_id)
            .where(UserSubscription.status.in_(ENTITLED_STATUSES))
            .where(UserSubscription.expires_at > now)
            .order_by(UserSubscription.started_at.desc(), UserSubscription.id.desc())
            .limit(1)
            .execution_options(populate_existing=True)
        )
        current = result.scalars().first()

        if current is None:
            await SubscriptionService.clear_premium_projection(db, user_id)
        else:
            await SubscriptionService.set_premium_projection(
                db,
                user_id,
                plan_id=current.plan_id,
                expires_at=current.expires_at,
                auto_renew=current.auto_renew,
            )
        return current

    # ------------------------------------------------------------------
    # Scheduler queries (ids only: each item is processed in its own session)
    # ------------------------------------------------------------------
    @staticmethod
    async def due_for_renewal_reminder(db: AsyncSession, now: datetime, window_hours: int) -> list[int]:
        return await SubscriptionService._due_for_reminder(
            db, now, window_hours,
            auto_renew=True,
            marker=UserSubscription.renewal_reminder_sent_at,
        )

    @staticmethod
    async def due_for_expiry_reminder(db: AsyncSession, now: datetime, window_hours: int) -> list[int]:
        return await SubscriptionService._due_for_reminder(
            db, now, window_hours,
            auto_renew=False,
            marker=UserSubscription.expiry_reminder_sent_at,
        )

    @staticmethod
    async def _due_for_reminder(db, now, window_hours, auto_renew, marker) -> list[int]:
        window_end = now + timedelta(hours=window_hours)
        result = await db.execute(
            select(UserSubscription.id)
            .where(UserSubscription.status == ACTIVE)
            .where(UserSubscription.auto_renew == auto_renew)
            .where(UserSubscription.expires_at >= now)
            .where(UserSubscription.expires_at <= window_end)
            .where(marker.is_(None))
            .order_by(UserSubscription.expires_at)
        )
        return list(result.scalars().all())

    @staticmethod
    async def due_for_expiration(db: AsyncSession, now: datetime) -> list[int]:
        result = await db.execute(
            select(UserSubscription.id)
            .where(UserSubscription.status == ACTIVE)
            .where(UserSubscription.expires_at <= now)
            .order_by(UserSubscription.expires_at)
        )
        return list(result.scalars().all())

    @staticmethod
    async def stale_pending(db: AsyncSession, older_than: datetime) -> list[int]:
        result = await db.execute(
            select(UserSubscription.id)
            .where(UserSubscription.status == PENDING)
            .where(UserSubscription.created_at < older_than)
            .order_by(UserSubscription.created_at)
        )
        return list(result.scalars().all())

    @staticmethod
    async def users_with_lapsed_projection(db: AsyncSession, now: datetime) -> list[int]:
        """Users still flagged premium although their projected expiry has passed."""
        result = await db.execute(
            select(User.id)
            .where(User.is_premium == True)
            .where(
                or_(
                    User.subscription_expires_at.is_(None),
                    User.subscription_expires_at <= now,
                )
            )
        )
        return list(result.scalars().all())

    # ------------------------------------------------------------------
    # Admin listing
    # ------------------------------------------------------------------
    @staticmethod
    async def list_transactions(
        db: AsyncSession,
        status: str | None = None,
        plan_id: int | None = None,
        search: str | None = None,
        limit: int | None = None,
    ) -> list[UserSubscription]:
        """
        List subscription rows for the admin dashboard, newest first.

        Args:
            db (AsyncSession): Database session
            status (str, optional): Filter by status
            plan_id (int, optional): Filter by plan
            search (str, optional): Case-insensitive match on gateway order
                or payment id
            limit (int, optional): Page size, clamped to 1..200 (default 50)

        Returns:
            list[UserSubscription]: Rows with user, plan and promo loaded
        """
        if limit is None:
            limit = TRANSACTIONS_DEFAULT_LIMIT
        limit = max(1, min(int(limit), TRANSACTIONS_MAX_LIMIT))

        stmt = (
            select(UserSubscription)
            .order_by(UserSubscription.created_at.desc(), UserSubscription.id.desc())
            .limit(limit)
        )
        if status:
            stmt = stmt.where(UserSubscription.status == status)
        if plan_id is not None:
            stmt = stmt.where(UserSubscription.plan_id == plan_id)
        if search and search.strip():
            pattern = f"%{search.strip()}%"
            stmt = stmt.where(
                or_(
                    UserSubscription.gateway_order_id.ilike(pattern),
                    UserSubscription.gateway_payment_id.ilike(pattern),
                )
            )

        result = await db.execute(stmt)
        return list(result.scalars().all())

    # ------------------------------------------------------------------
    # Unit of work
    # ------------------------------------------------------------------
    @staticmethod
    async def commit(db: AsyncSession, event: str, **context) -> None:
        """
        Commit the pending changes of one logical operation.

        Store failures are rolled back, logged with the given context and
        surfaced as a generic DependencyFailure.
        """
        try:
            await db.commit()
        except SQLAlchemyError as exc:
            await db.rollback()
            logger.error(event, exc_info=True, **context)
            raise errors.DependencyFailure() from exc
