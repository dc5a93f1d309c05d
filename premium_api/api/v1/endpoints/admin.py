"""
Admin endpoints: plan and promo code catalog, transaction listing and
manual scheduler runs. Every route requires the 'admin' role.
"""
from typing import List, Optional
from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from premium_api.core.database import get_db
from premium_api.core.dependencies import get_subscription_scheduler, require_admin
from premium_api.core.catalog_service import CatalogService
from premium_api.core.scheduler import SubscriptionScheduler
from premium_api.core.subscription_service import (
    SubscriptionService,
    TRANSACTIONS_DEFAULT_LIMIT,
    TRANSACTIONS_MAX_LIMIT,
)
from premium_api.schemas.subscription_plan import (
    SubscriptionPlanCreate,
    SubscriptionPlanResponse,
    SubscriptionPlanToggle,
    SubscriptionPlanUpdate,
)
from premium_api.schemas.promocode import PromocodeCreate, PromocodeResponse, PromocodeUpdate
from premium_api.schemas.user_subscription import SubscriptionStatus, SubscriptionTransaction

router = APIRouter(dependencies=[Depends(require_admin)])


# ============================================
# PLANS
# ============================================
@router.get("/plans", response_model=List[SubscriptionPlanResponse])
async def list_plans(db: AsyncSession = Depends(get_db)):
    """All plans, including disabled ones."""
    return await CatalogService.list_plans(db, include_inactive=True)


@router.post("/plans", response_model=SubscriptionPlanResponse, status_code=status.HTTP_201_CREATED)
async def create_plan(data: SubscriptionPlanCreate, db: AsyncSession = Depends(get_db)):
    """
    Create a plan.

    Raises:
        409: Slug already in use
    """
    return await CatalogService.create_plan(db, data)


@router.put("/plans/{plan_id}", response_model=SubscriptionPlanResponse)
async def update_plan(plan_id: int, data: SubscriptionPlanUpdate, db: AsyncSession = Depends(get_db)):
    return await CatalogService.update_plan(db, plan_id, data)


@router.patch("/plans/{plan_id}/toggle", response_model=SubscriptionPlanResponse)
async def toggle_plan(plan_id: int, data: SubscriptionPlanToggle, db: AsyncSession = Depends(get_db)):
    """Enable or disable a plan; disabled plans cannot be purchased."""
    return await CatalogService.toggle_plan(db, plan_id, data.is_active)


# ============================================
# PROMO CODES
# ============================================
@router.get("/promocodes", response_model=List[PromocodeResponse])
async def list_promocodes(db: AsyncSession = Depends(get_db)):
    return await CatalogService.list_promocodes(db)


@router.post("/promocodes", response_model=PromocodeResponse, status_code=status.HTTP_201_CREATED)
async def create_promocode(data: PromocodeCreate, db: AsyncSession = Depends(get_db)):
    """
    Create a promo code, optionally restricted to `plan_ids`.

    Raises:
        409: Code already exists
    """
    return await CatalogService.create_promocode(db, data)


@router.put("/promocodes/{promocode_id}", response_model=PromocodeResponse)
async def update_promocode(promocode_id: int, data: PromocodeUpdate, db: AsyncSession = Depends(get_db)):
    return await CatalogService.update_promocode(db, promocode_id, data)


# ============================================
# TRANSACTIONS
# ============================================
@router.get("/transactions", response_model=List[SubscriptionTransaction])
async def list_transactions(
    status_filter: Optional[SubscriptionStatus] = Query(None, alias="status"),
    plan_id: Optional[int] = Query(None),
    search: Optional[str] = Query(None, description="Gateway order or payment id"),
    limit: int = Query(TRANSACTIONS_DEFAULT_LIMIT, description=f"1-{TRANSACTIONS_MAX_LIMIT}"),
    db: AsyncSession = Depends(get_db)
):
    """
    Subscription rows newest first, with user, plan and promo details.

    `limit` is clamped to 1..200.
    """
    return await SubscriptionService.list_transactions(
        db,
        status=status_filter.value if status_filter else None,
        plan_id=plan_id,
        search=search,
        limit=limit,
    )


# ============================================
# JOBS
# ============================================
@router.post("/jobs/{job}/run")
async def run_job(job: str, scheduler: SubscriptionScheduler = Depends(get_subscription_scheduler)):
    """
    Run one reconciliation job immediately.

    Jobs: renewal-reminders, expiry-reminders, expiration-sweep, pending-reaper.
    """
    if job not in scheduler.jobs:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Unknown job '{job}'"
        )
    result = await scheduler.run_job(job)
    return {
        "job": result.job,
        "processed": result.processed,
        "failed": result.failed,
        "skipped": result.skipped,
        "overlapped": result.overlapped,
        "errored": result.errored,
    }
