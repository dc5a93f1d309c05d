from pydantic import BaseModel, Field, field_validator
from typing import Optional, List, Literal
from datetime import datetime


DiscountType = Literal["percent", "fixed"]


def _normalize_code(value):
    if isinstance(value, str):
        return value.strip().upper()
    return value


class PromocodeBase(BaseModel):
    """Base schema for promo codes"""
    code: str = Field(..., min_length=1, max_length=64)
    description: str = ""
    discount_type: DiscountType = "percent"
    discount_value: int = Field(..., gt=0)
    start_at: Optional[datetime] = None
    end_at: Optional[datetime] = None
    max_redemptions: Optional[int] = Field(None, ge=1)
    min_amount_cents: Optional[int] = Field(None, ge=0)
    auto_renew_only: bool = False

    @field_validator("code", mode="before")
    @classmethod
    def upper_code(cls, value):
        return _normalize_code(value)


class PromocodeCreate(PromocodeBase):
    """Schema for creating a promo code, optionally restricted to plans"""
    plan_ids: List[int] = []


class PromocodeUpdate(BaseModel):
    """
    Schema for updating a promo code (all fields optional).

    plan_ids replaces the plan restriction when present; omit it to keep the
    current links, send [] to lift the restriction.
    """
    code: Optional[str] = Field(None, min_length=1, max_length=64)
    description: Optional[str] = None
    discount_type: Optional[DiscountType] = None
    discount_value: Optional[int] = Field(None, gt=0)
    start_at: Optional[datetime] = None
    end_at: Optional[datetime] = None
    max_redemptions: Optional[int] = Field(None, ge=1)
    min_amount_cents: Optional[int] = Field(None, ge=0)
    auto_renew_only: Optional[bool] = None
    plan_ids: Optional[List[int]] = None

    @field_validator("code", mode="before")
    @classmethod
    def upper_code(cls, value):
        return _normalize_code(value)


class PromocodeResponse(PromocodeBase):
    """Schema for promo code response"""
    id: int
    redemptions_count: int
    applicable_plan_ids: List[int] = []
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class PromocodeSummary(BaseModel):
    """Compact promo view embedded in checkout and transaction responses"""
    id: int
    code: str
    discount_type: DiscountType
    discount_value: int

    class Config:
        from_attributes = True
