"""
API endpoints for subscription checkout and management.

This module provides REST API endpoints for users to:
- View available subscription plans
- Preview a plan/promo selection
- Start and confirm a checkout
- Toggle auto-renew or cancel
- View their premium status
"""
from typing import List
from fastapi import APIRouter, Depends, Request, Response
from sqlalchemy.ext.asyncio import AsyncSession

from premium_api.core.database import get_db
from premium_api.core.dependencies import get_current_user, get_email_notifier, get_gateway
from premium_api.core.rate_limit import (
    limiter,
    CHECKOUT_PREVIEW_LIMIT,
    CHECKOUT_START_LIMIT,
    CHECKOUT_CONFIRM_LIMIT,
    SUBSCRIPTION_UPDATE_LIMIT,
)
from premium_api.core.catalog_service import CatalogService
from premium_api.core.checkout_service import CANCEL_MESSAGE, CheckoutService
from premium_api.core.subscription_service import SubscriptionService
from premium_api.core.notifier import Notifier
from premium_api.core.payment_gateway import RazorpayGateway
from premium_api.models.user import User
from premium_api.schemas.checkout import (
    AutoRenewRequest,
    CheckoutConfirmRequest,
    CheckoutConfirmResponse,
    CheckoutPreview,
    CheckoutRequest,
    CheckoutStartResponse,
    MessageResponse,
    PremiumStatusResponse,
)
from premium_api.schemas.subscription_plan import SubscriptionPlanResponse, SubscriptionPlanSummary
from premium_api.schemas.promocode import PromocodeSummary
from premium_api.schemas.user_subscription import UserSubscriptionResponse

router = APIRouter()


@router.get("/plans", response_model=List[SubscriptionPlanResponse])
async def list_subscription_plans(db: AsyncSession = Depends(get_db)):
    """
    Get all purchasable subscription plans, cheapest first.

    Public: no authentication needed to browse plans.
    """
    return await CatalogService.list_plans(db)


@router.post("/checkout/preview", response_model=CheckoutPreview)
@limiter.limit(CHECKOUT_PREVIEW_LIMIT)
async def preview_checkout(
    request: Request,
    response: Response,
    data: CheckoutRequest,
    db: AsyncSession = Depends(get_db)
):
    """
    Compute the price of a plan with an optional promo code.

    Read-only. Promo rejections come back as 400 with the reason in `code`
    (e.g. PROMO_EXPIRED, PROMO_MINIMUM_NOT_MET).
    """
    quote = await CheckoutService.quote(db, data.plan_id, data.promo_code, data.auto_renew)
    return CheckoutPreview(
        plan=SubscriptionPlanSummary.model_validate(quote.plan),
        amount_cents=quote.amount_cents,
        adjusted_amount_cents=quote.adjusted_amount_cents,
        promo=PromocodeSummary.model_validate(quote.promo) if quote.promo else None,
        promo_description=quote.promo_description,
    )


@router.post("/checkout/start", response_model=CheckoutStartResponse)
@limiter.limit(CHECKOUT_START_LIMIT)
async def start_checkout(
    request: Request,
    response: Response,
    data: CheckoutRequest,
    user: User = Depends(get_current_user),
    gateway: RazorpayGateway = Depends(get_gateway),
    db: AsyncSession = Depends(get_db)
):
    """
    Create a payment order and a pending subscription.

    The returned order id and public key id are handed to the client-side
    payment widget; its signed callback goes to /checkout/confirm.

    Raises:
        503: Payment gateway not configured or unreachable
    """
    subscription, quote = await CheckoutService.start(
        db, gateway, user, data.plan_id, data.promo_code, data.auto_renew
    )
    return CheckoutStartResponse(
        order_id=subscription.gateway_order_id,
        amount=quote.adjusted_amount_cents,
        currency=subscription.currency_code,
        gateway_key_id=gateway.key_id,
        subscription_id=subscription.id,
        adjusted_amount_cents=quote.adjusted_amount_cents,
        promo_description=quote.promo_description,
    )


@router.post("/checkout/confirm", response_model=CheckoutConfirmResponse)
@limiter.limit(CHECKOUT_CONFIRM_LIMIT)
async def confirm_checkout(
    request: Request,
    response: Response,
    data: CheckoutConfirmRequest,
    user: User = Depends(get_current_user),
    gateway: RazorpayGateway = Depends(get_gateway),
    notifier: Notifier = Depends(get_email_notifier),
    db: AsyncSession = Depends(get_db)
):
    """
    Verify the payment signature and activate the subscription.

    Raises:
        400 SIGNATURE_MISMATCH: Forged or corrupted callback
        404 PENDING_NOT_FOUND: Unknown or already processed order
        403 UNAUTHORIZED_CONFIRMATION: Order belongs to another user
    """
    result = await CheckoutService.confirm(
        db, gateway, notifier, user, data.order_id, data.payment_id, data.signature
    )
    return CheckoutConfirmResponse(
        message="Subscription activated",
        subscription=UserSubscriptionResponse.model_validate(result.subscription),
        promo_applied=result.promo_applied,
    )


@router.post("/auto-renew", response_model=MessageResponse)
@limiter.limit(SUBSCRIPTION_UPDATE_LIMIT)
async def update_auto_renew(
    request: Request,
    response: Response,
    data: AutoRenewRequest,
    user: User = Depends(get_current_user),
    notifier: Notifier = Depends(get_email_notifier),
    db: AsyncSession = Depends(get_db)
):
    """Enable or disable auto-renew on the current subscription."""
    subscription = await CheckoutService.toggle_auto_renew(db, notifier, user, data.enable)
    return MessageResponse(
        message="Auto renew enabled" if data.enable else "Auto renew disabled",
        subscription=UserSubscriptionResponse.model_validate(subscription),
    )


@router.post("/cancel", response_model=MessageResponse)
@limiter.limit(SUBSCRIPTION_UPDATE_LIMIT)
async def cancel_subscription(
    request: Request,
    response: Response,
    user: User = Depends(get_current_user),
    notifier: Notifier = Depends(get_email_notifier),
    db: AsyncSession = Depends(get_db)
):
    """
    Cancel the active subscription.

    Premium access stays until the current expiry date.
    """
    subscription = await CheckoutService.cancel(db, notifier, user)
    return MessageResponse(
        message=CANCEL_MESSAGE,
        subscription=UserSubscriptionResponse.model_validate(subscription),
    )


@router.get("/me", response_model=PremiumStatusResponse)
async def get_my_subscription(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    """
    Get the authenticated user's premium status and latest subscription.
    """
    await db.refresh(user)
    subscription = await SubscriptionService.get_latest_for_user(db, user.id)
    return PremiumStatusResponse(
        is_premium=user.is_premium,
        plan_id=user.subscription_plan_id,
        expires_at=user.subscription_expires_at,
        auto_renew=user.subscription_auto_renew,
        subscription=UserSubscriptionResponse.model_validate(subscription) if subscription else None,
    )
