from sqlalchemy import (
    Column, Integer, String, Boolean, DateTime, Text, ForeignKey, CheckConstraint
)
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship
from premium_api.core.database import Base
from premium_api.core.timeutils import utcnow


class PromocodePlanLink(Base):
    """
    Many-to-many join restricting a promo code to specific plans.

    A promo code without links applies to every plan.
    """
    __tablename__ = "promocode_plan_links"

    promocode_id = Column(
        Integer,
        ForeignKey("promocodes.id", ondelete="CASCADE"),
        primary_key=True
    )
    plan_id = Column(
        Integer,
        ForeignKey("subscription_plans.id", ondelete="CASCADE"),
        primary_key=True
    )

    def __repr__(self):
        return f"<PromocodePlanLink(promocode_id={self.promocode_id}, plan_id={self.plan_id})>"


class Promocode(Base):
    """
    Promotional discount rule.

    Codes are matched case-insensitively and stored upper-cased. The rule may
    be bounded by a validity window, a redemption cap, a minimum charge, a set
    of plans, and an "auto-renew only" requirement.
    """
    __tablename__ = "promocodes"
    __table_args__ = (
        CheckConstraint("discount_type IN ('percent', 'fixed')", name="ck_promocodes_discount_type"),
        CheckConstraint(
            "max_redemptions IS NULL OR redemptions_count <= max_redemptions",
            name="ck_promocodes_redemptions_cap"
        ),
    )

    # Primary key
    id = Column(Integer, primary_key=True, index=True)

    # Code as typed by users (upper-cased)
    code = Column(String(64), unique=True, nullable=False, index=True)
    description = Column(Text, nullable=False, default="")

    # 'percent' (value is a percentage) or 'fixed' (value in major units)
    discount_type = Column(String(16), nullable=False, default="percent")
    discount_value = Column(Integer, nullable=False)

    # Optional validity window
    start_at = Column(DateTime(timezone=True), nullable=True)
    end_at = Column(DateTime(timezone=True), nullable=True)

    # Optional usage cap and running counter
    max_redemptions = Column(Integer, nullable=True)
    redemptions_count = Column(Integer, nullable=False, default=0)

    # Optional floor for the discounted amount (minor units)
    min_amount_cents = Column(Integer, nullable=True)

    auto_renew_only = Column(Boolean, nullable=False, default=False)

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
    plan_links = relationship(
        "PromocodePlanLink",
        cascade="all, delete-orphan",
        lazy="selectin"
    )

    @property
    def applicable_plan_ids(self) -> list[int]:
        """Plan ids this code is restricted to (empty means every plan)."""
        return [link.plan_id for link in self.plan_links]

    def __repr__(self):
        return f"<Promocode(id={self.id}, code='{self.code}', type='{self.discount_type}')>"
