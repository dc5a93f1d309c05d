"""
Service layer for the plan and promo code catalog.

Read access is used by checkout; write access backs the admin endpoints.
Promo codes are always stored and looked up upper-cased.
"""
import structlog
from sqlalchemy import select, update, or_
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from premium_api.core import exceptions as errors
from premium_api.models.subscription_plan import SubscriptionPlan
from premium_api.models.promocode import Promocode, PromocodePlanLink
from premium_api.schemas.subscription_plan import SubscriptionPlanCreate, SubscriptionPlanUpdate
from premium_api.schemas.promocode import PromocodeCreate, PromocodeUpdate

logger = structlog.get_logger(__name__)


def normalize_promo_code(code: str | None) -> str | None:
    if code is None:
        return None
    code = code.strip().upper()
    return code or None


class CatalogService:
    """
    Catalog operations over plans, promo codes and their plan links.

    Like the other services, methods are static and take the session
    explicitly so endpoints and background jobs can share them.
    """

    # ------------------------------------------------------------------
    # Plans
    # ------------------------------------------------------------------
    @staticmethod
    async def list_plans(db: AsyncSession, include_inactive: bool = False) -> list[SubscriptionPlan]:
        """
        Retrieve plans ordered by price (cheapest first).

        Args:
            db (AsyncSession): Database session
            include_inactive (bool): Admin listing includes disabled plans

        Returns:
            list[SubscriptionPlan]: Plans in display order
        """
        stmt = select(SubscriptionPlan).order_by(SubscriptionPlan.price_cents, SubscriptionPlan.id)
        if not include_inactive:
            stmt = stmt.where(SubscriptionPlan.is_active == True)
        result = await db.execute(stmt)
        return list(result.scalars().all())

    @staticmethod
    async def get_plan(db: AsyncSession, plan_id: int) -> SubscriptionPlan | None:
        result = await db.execute(
            select(SubscriptionPlan).where(SubscriptionPlan.id == plan_id)
        )
        return result.scalar_one_or_none()

    @staticmethod
    async def get_plan_or_404(db: AsyncSession, plan_id: int) -> SubscriptionPlan:
        plan = await CatalogService.get_plan(db, plan_id)
        if not plan:
            raise errors.NotFound("Plan not found", code=errors.PLAN_NOT_FOUND)
        return plan

    @staticmethod
    async def create_plan(db: AsyncSession, data: SubscriptionPlanCreate) -> SubscriptionPlan:
        plan = SubscriptionPlan(**data.model_dump())
        db.add(plan)
        await CatalogService._commit(db, "plan_create_failed", slug=data.slug)
        await db.refresh(plan)
        logger.info("plan_created", plan_id=plan.id, slug=plan.slug)
        return plan

    @staticmethod
    async def update_plan(db: AsyncSession, plan_id: int, data: SubscriptionPlanUpdate) -> SubscriptionPlan:
        plan = await CatalogService.get_plan_or_404(db, plan_id)
        for field, value in data.model_dump(exclude_unset=True).items():
            setattr(plan, field, value)
        await CatalogService._commit(db, "plan_update_failed", plan_id=plan_id)
        await db.refresh(plan)
        logger.info("plan_updated", plan_id=plan_id)
        return plan

    @staticmethod
    async def toggle_plan(db: AsyncSession, plan_id: int, is_active: bool) -> SubscriptionPlan:
        return await CatalogService.update_plan(
            db, plan_id, SubscriptionPlanUpdate(is_active=is_active)
        )

    # ------------------------------------------------------------------
    # Promo codes
    # ------------------------------------------------------------------
    @staticmethod
    async def list_promocodes(db: AsyncSession) -> list[Promocode]:
        result = await db.execute(
            select(Promocode).order_by(Promocode.created_at.desc(), Promocode.id.desc())
        )
        return list(result.scalars().all())

    @staticmethod
    async def get_promocode(db: AsyncSession, promocode_id: int) -> Promocode | None:
        result = await db.execute(select(Promocode).where(Promocode.id == promocode_id))
        return result.scalar_one_or_none()

    @staticmethod
    async def get_promocode_by_code(db: AsyncSession, code: str) -> Promocode | None:
        """Case-insensitive lookup; returns None when the code is unknown."""
        code = normalize_promo_code(code)
        if not code:
            return None
        result = await db.execute(select(Promocode).where(Promocode.code == code))
        return result.scalar_one_or_none()

    @staticmethod
    async def create_promocode(db: AsyncSession, data: PromocodeCreate) -> Promocode:
        payload = data.model_dump(exclude={"plan_ids"})
        promo = Promocode(**payload)
        CatalogService.set_plan_links(promo, data.plan_ids)
        db.add(promo)
        await CatalogService._commit(db, "promocode_create_failed", code=data.code)
        logger.info("promocode_created", promocode_id=promo.id, code=promo.code)
        return await CatalogService._reload_promocode(db, promo.id)

    @staticmethod
    async def update_promocode(db: AsyncSession, promocode_id: int, data: PromocodeUpdate) -> Promocode:
        promo = await CatalogService.get_promocode(db, promocode_id)
        if not promo:
            raise errors.NotFound("Promo code not found", code=errors.PROMO_NOT_FOUND)

        changes = data.model_dump(exclude_unset=True, exclude={"plan_ids"})
        for field, value in changes.items():
            setattr(promo, field, value)

        if data.plan_ids is not None:
            CatalogService.set_plan_links(promo, data.plan_ids)

        await CatalogService._commit(db, "promocode_update_failed", promocode_id=promocode_id)
        logger.info("promocode_updated", promocode_id=promocode_id)
        return await CatalogService._reload_promocode(db, promocode_id)

    @staticmethod
    def set_plan_links(promo: Promocode, plan_ids: list[int]) -> None:
        """
        Replace the plan restriction of a promo code (caller commits).

        Links that survive are kept as-is; dropped ones are deleted through
        the delete-orphan cascade.
        """
        existing = {link.plan_id: link for link in promo.plan_links}
        promo.plan_links = [
            existing.get(plan_id) or PromocodePlanLink(plan_id=plan_id)
            for plan_id in dict.fromkeys(plan_ids)
        ]

    @staticmethod
    async def increment_promocode_usage(db: AsyncSession, promocode_id: int) -> bool:
        """
        Count one redemption without ever exceeding the cap.

        The increment is a single conditional UPDATE, so concurrent
        confirmations cannot push redemptions_count past max_redemptions.
        Commits on its own, independently of the activation it follows.

        Returns:
            bool: False when the cap was already reached (or the code is gone)
        """
        result = await db.execute(
            update(Promocode)
            .where(Promocode.id == promocode_id)
            .where(
                or_(
                    Promocode.max_redemptions.is_(None),
                    Promocode.redemptions_count < Promocode.max_redemptions,
                )
            )
            .values(redemptions_count=Promocode.redemptions_count + 1)
            .execution_options(synchronize_session=False)
        )
        await db.commit()
        return result.rowcount == 1

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    @staticmethod
    async def _reload_promocode(db: AsyncSession, promocode_id: int) -> Promocode:
        db.expire_all()
        promo = await CatalogService.get_promocode(db, promocode_id)
        if not promo:
            raise errors.NotFound("Promo code not found", code=errors.PROMO_NOT_FOUND)
        return promo

    @staticmethod
    async def _commit(db: AsyncSession, event: str, **context) -> None:
        try:
            await db.commit()
        except IntegrityError as exc:
            await db.rollback()
            logger.warning(event, reason="integrity_error", **context)
            raise errors.Conflict(
                "A record with the same unique value already exists or a constraint was violated"
            ) from exc
        except SQLAlchemyError as exc:
            await db.rollback()
            logger.error(event, exc_info=True, **context)
            raise errors.DependencyFailure() from exc
