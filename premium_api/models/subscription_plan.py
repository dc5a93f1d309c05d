from sqlalchemy import Column, Integer, String, Boolean, DateTime, Text, JSON
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship
from premium_api.core.database import Base
from premium_api.core.timeutils import utcnow


class SubscriptionPlan(Base):
    """
    Subscription plan catalog entry.

    A plan is a purchasable, time-boxed tier. Prices are stored in minor
    currency units (paise/cents) to avoid floating point issues. Only
    active plans can be purchased.
    """
    __tablename__ = "subscription_plans"

    # Primary key
    id = Column(Integer, primary_key=True, index=True)

    # Human-readable name and URL-safe identifier
    name = Column(String(100), nullable=False)
    slug = Column(String(100), unique=True, nullable=False, index=True)

    # Plan description for UI display
    description = Column(Text, nullable=False, default="")

    # Length of one subscription period
    duration_days = Column(Integer, nullable=False, default=30)

    # Pricing information (minor units)
    price_cents = Column(Integer, nullable=False, default=0)
    currency_code = Column(String(3), nullable=False, default="INR")

    # Marketing feature list, e.g. ["Unlimited mock tests", "Analytics"]
    features = Column(JSON, nullable=False, default=list)

    # Plan status
    is_active = Column(Boolean, nullable=False, default=True)

    # Timestamps
    created_at = Column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        nullable=False
    )
    updated_at = Column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        onupdate=utcnow,
        nullable=False
    )

    # Relationships
    user_subscriptions = relationship(
        "UserSubscription",
        back_populates="plan",
        lazy="select"
    )

    def __repr__(self):
        return f"<SubscriptionPlan(id={self.id}, slug='{self.slug}', price_cents={self.price_cents})>"
