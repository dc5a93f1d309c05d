from pydantic import BaseModel, Field, field_validator
from typing import Optional, List
from datetime import datetime


def _parse_features(value):
    """Accept either a list or a comma-separated string of features."""
    if value is None:
        return []
    if isinstance(value, str):
        return [item.strip() for item in value.split(",") if item.strip()]
    return value


class SubscriptionPlanBase(BaseModel):
    """Base schema for subscription plan"""
    name: str = Field(..., min_length=1, max_length=100)
    slug: str = Field(..., min_length=1, max_length=100)
    description: str = ""
    duration_days: int = Field(default=30, ge=1)
    price_cents: int = Field(default=0, ge=0)
    currency_code: str = Field(default="INR", min_length=3, max_length=3)
    features: List[str] = []

    @field_validator("features", mode="before")
    @classmethod
    def normalize_features(cls, value):
        return _parse_features(value)


class SubscriptionPlanCreate(SubscriptionPlanBase):
    """Schema for creating a new subscription plan"""
    pass


class SubscriptionPlanUpdate(BaseModel):
    """Schema for updating subscription plan (all fields optional)"""
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    slug: Optional[str] = Field(None, min_length=1, max_length=100)
    description: Optional[str] = None
    duration_days: Optional[int] = Field(None, ge=1)
    price_cents: Optional[int] = Field(None, ge=0)
    currency_code: Optional[str] = Field(None, min_length=3, max_length=3)
    features: Optional[List[str]] = None
    is_active: Optional[bool] = None

    @field_validator("features", mode="before")
    @classmethod
    def normalize_features(cls, value):
        return _parse_features(value)


class SubscriptionPlanToggle(BaseModel):
    """Schema for activating/deactivating a plan"""
    is_active: bool


class SubscriptionPlanResponse(SubscriptionPlanBase):
    """Schema for subscription plan response"""
    id: int
    is_active: bool
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class SubscriptionPlanSummary(BaseModel):
    """Compact plan view embedded in checkout and transaction responses"""
    id: int
    name: str
    duration_days: int
    price_cents: int
    currency_code: str

    class Config:
        from_attributes = True
