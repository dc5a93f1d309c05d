"""
FastAPI dependencies for authentication, authorization and the collaborators
the subscription endpoints need (payment gateway, notifier, scheduler).

Endpoints depend on these functions rather than constructing anything
themselves, so the test-suite can swap each one through
app.dependency_overrides.
"""
from fastapi import Depends, HTTPException, Request, status

from premium_api.core.notifier import Notifier, get_notifier
from premium_api.core.payment_gateway import RazorpayGateway, get_payment_gateway
from premium_api.core.scheduler import SubscriptionScheduler
from premium_api.core.supabase_auth import get_current_user_from_supabase
from premium_api.models.user import User


async def get_current_user(
    request: Request,
    jwt_user: User | None = Depends(get_current_user_from_supabase),
) -> User:
    """
    Authentication dependency used by every user-facing subscription route.

    Usage in endpoints:
        @router.get("/me")
        async def me(user: User = Depends(get_current_user)):
            return {"user_id": user.id}

    Raises:
        HTTPException 401: No valid bearer token
        HTTPException 403: The account is disabled
    """
    if not jwt_user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing or invalid authentication credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )

    if not jwt_user.is_active:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="User account is inactive"
        )

    # Read by the rate limiter key function
    request.state.user = jwt_user
    return jwt_user


async def require_admin(
    user: User = Depends(get_current_user)
) -> User:
    """
    Authorization dependency that requires admin privileges.

    Raises:
        HTTPException 403: If user does not have admin role
    """
    if user.role != "admin":
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="This endpoint requires admin privileges"
        )
    return user


def get_gateway() -> RazorpayGateway:
    return get_payment_gateway()


def get_email_notifier() -> Notifier:
    return get_notifier()


def get_subscription_scheduler(request: Request) -> SubscriptionScheduler:
    """The scheduler created in the application lifespan."""
    scheduler = getattr(request.app.state, "subscription_scheduler", None)
    if scheduler is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Subscription scheduler is not available"
        )
    return scheduler
