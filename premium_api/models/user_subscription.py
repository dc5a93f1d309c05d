from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, Boolean
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship
from premium_api.core.database import Base
from premium_api.core.timeutils import utcnow


class UserSubscription(Base):
    """
    User subscription model.

    One row per checkout attempt. Lifecycle:
        pending  -> active     (payment confirmed)
        pending  -> expired    (abandoned checkout reaped)
        active   -> expired    (scheduler, expires_at reached)
        active   -> canceled   (user action)
    'expired' and 'canceled' are terminal.
    """
    __tablename__ = "user_subscriptions"

    # Primary key
    id = Column(Integer, primary_key=True, index=True)

    # Foreign key: relationship to User
    user_id = Column(
        Integer,
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )

    # Foreign key: relationship to SubscriptionPlan
    plan_id = Column(
        Integer,
        ForeignKey("subscription_plans.id", ondelete="RESTRICT"),
        nullable=False,
        index=True
    )

    # Foreign key: promo code applied at checkout (optional)
    promocode_id = Column(
        Integer,
        ForeignKey("promocodes.id", ondelete="SET NULL"),
        nullable=True
    )

    # Subscription status: 'pending', 'active', 'expired', 'canceled'
    status = Column(String(20), nullable=False, default="pending", index=True)

    # Auto-renewal flag
    auto_renew = Column(Boolean, nullable=False, default=True)

    # Amount actually charged (after discount, minor units)
    amount_cents = Column(Integer, nullable=False)
    currency_code = Column(String(3), nullable=False, default="INR")

    # Payment gateway identifiers
    gateway_order_id = Column(String(255), unique=True, nullable=False, index=True)
    gateway_payment_id = Column(String(255), nullable=True, index=True)

    # Entitlement window (set at activation)
    started_at = Column(DateTime(timezone=True), nullable=True)
    expires_at = Column(DateTime(timezone=True), nullable=True, index=True)

    # Scheduler idempotency markers
    renewal_reminder_sent_at = Column(DateTime(timezone=True), nullable=True)
    expiry_reminder_sent_at = Column(DateTime(timezone=True), nullable=True)

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
    user = relationship(
        "User",
        back_populates="subscriptions",
        lazy="joined"
    )
    plan = relationship(
        "SubscriptionPlan",
        back_populates="user_subscriptions",
        lazy="joined"
    )
    promocode = relationship(
        "Promocode",
        lazy="joined"
    )

    def __repr__(self):
        return f"<UserSubscription(id={self.id}, user_id={self.user_id}, plan_id={self.plan_id}, status='{self.status}')>"
