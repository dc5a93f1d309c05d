from pydantic import BaseModel
from typing import Optional
from datetime import datetime
from enum import Enum

from premium_api.schemas.subscription_plan import SubscriptionPlanSummary
from premium_api.schemas.promocode import PromocodeSummary


class SubscriptionStatus(str, Enum):
    """Subscription status enumeration"""
    PENDING = "pending"
    ACTIVE = "active"
    EXPIRED = "expired"
    CANCELED = "canceled"


TERMINAL_STATUSES = (SubscriptionStatus.EXPIRED.value, SubscriptionStatus.CANCELED.value)


class UserSubscriptionResponse(BaseModel):
    """Schema for user subscription response"""
    id: int
    user_id: int
    plan_id: int
    promocode_id: Optional[int] = None
    status: SubscriptionStatus
    auto_renew: bool
    amount_cents: int
    currency_code: str
    gateway_order_id: str
    gateway_payment_id: Optional[str] = None
    started_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    renewal_reminder_sent_at: Optional[datetime] = None
    expiry_reminder_sent_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class TransactionUser(BaseModel):
    """User fields exposed in the admin transaction listing"""
    id: int
    name: Optional[str] = None
    email: str

    class Config:
        from_attributes = True


class SubscriptionTransaction(UserSubscriptionResponse):
    """Admin view of a subscription row with its user, plan and promo"""
    user: TransactionUser
    plan: SubscriptionPlanSummary
    promocode: Optional[PromocodeSummary] = None

    class Config:
        from_attributes = True
