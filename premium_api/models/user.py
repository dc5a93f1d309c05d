from sqlalchemy import Column, Integer, String, Boolean, DateTime, ForeignKey
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship
from premium_api.core.database import Base
from premium_api.core.timeutils import utcnow


class User(Base):
    """
    User model synchronized with Supabase Auth.

    Note: Passwords are not stored here - Supabase Auth manages authentication.
    This model stores user metadata plus the denormalized premium projection
    (is_premium, subscription_*), a cache of the subscription table that the
    rest of the platform reads to gate premium features.
    """
    __tablename__ = "users"

    # Primary key
    id = Column(Integer, primary_key=True, index=True)

    # Supabase Auth UUID (auth.users.id)
    supabase_user_id = Column(String(255), unique=True, index=True, nullable=False)

    # User email address and display name
    email = Column(String(255), unique=True, index=True, nullable=False)
    name = Column(String(255), nullable=True)

    # User role: 'user', 'admin', etc.
    role = Column(String(50), nullable=False, default="user")

    # Account status
    is_active = Column(Boolean, nullable=False, default=True)

    # Premium projection (rebuilt by recompute_premium_projection)
    is_premium = Column(Boolean, nullable=False, default=False, index=True)
    subscription_plan_id = Column(
        Integer,
        ForeignKey("subscription_plans.id", ondelete="SET NULL"),
        nullable=True
    )
    subscription_expires_at = Column(DateTime(timezone=True), nullable=True, index=True)
    subscription_auto_renew = Column(Boolean, nullable=False, default=False)

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

    # Relationships: One user can have multiple subscriptions (historical)
    subscriptions = relationship(
        "UserSubscription",
        back_populates="user",
        cascade="all, delete-orphan",
        lazy="select"
    )

    def __repr__(self):
        return f"<User(id={self.id}, email='{self.email}', role='{self.role}')>"
