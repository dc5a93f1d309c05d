"""
Request/response schemas for the checkout flow and user-facing
subscription management.
"""
from pydantic import BaseModel, Field
from typing import Optional
from datetime import datetime

from premium_api.schemas.subscription_plan import SubscriptionPlanSummary
from premium_api.schemas.promocode import PromocodeSummary
from premium_api.schemas.user_subscription import UserSubscriptionResponse


class CheckoutRequest(BaseModel):
    """Plan selection shared by preview and start"""
    plan_id: int
    promo_code: Optional[str] = Field(None, max_length=64)
    auto_renew: bool = True


class CheckoutPreview(BaseModel):
    """Computed amounts for a plan/promo selection"""
    plan: SubscriptionPlanSummary
    amount_cents: int
    adjusted_amount_cents: int
    promo: Optional[PromocodeSummary] = None
    promo_description: Optional[str] = None


class CheckoutStartResponse(BaseModel):
    """Gateway order handle returned to the client-side payment step"""
    order_id: str
    amount: int
    currency: str
    gateway_key_id: Optional[str] = None
    subscription_id: int
    adjusted_amount_cents: int
    promo_description: Optional[str] = None


class CheckoutConfirmRequest(BaseModel):
    """Signed payment callback from the client-side payment step"""
    order_id: str = Field(..., min_length=1)
    payment_id: str = Field(..., min_length=1)
    signature: str = Field(..., min_length=1)


class CheckoutConfirmResponse(BaseModel):
    message: str
    subscription: UserSubscriptionResponse
    promo_applied: Optional[bool] = None


class AutoRenewRequest(BaseModel):
    enable: bool


class MessageResponse(BaseModel):
    message: str
    subscription: Optional[UserSubscriptionResponse] = None


class PremiumStatusResponse(BaseModel):
    """The user's premium projection plus their latest subscription"""
    is_premium: bool
    plan_id: Optional[int] = None
    expires_at: Optional[datetime] = None
    auto_renew: bool = False
    subscription: Optional[UserSubscriptionResponse] = None
