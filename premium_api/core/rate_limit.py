"""
Rate limiting configuration and utilities.
"""
import structlog
from slowapi import Limiter
from slowapi.util import get_remote_address
from fastapi import Request

from premium_api.core import config

logger = structlog.get_logger(__name__)


def get_rate_limit_key(request: Request) -> str:
    """
    Custom key function for rate limiting.

    Priority:
    1. User ID from JWT (if authenticated)
    2. IP address (fallback)

    Returns:
        str: Unique identifier for rate limiting
    """
    user = getattr(request.state, "user", None)
    if user is not None:
        return f"user:{user.id}"

    return f"ip:{get_remote_address(request)}"


# If Redis URL is not configured, use in-memory storage (for local dev)
if config.RATE_LIMIT_ENABLED and config.REDIS_URL == "memory://":
    logger.warning("rate_limit_memory_storage", hint="Set REDIS_URL to share limits across workers")

limiter = Limiter(
    key_func=get_rate_limit_key,
    default_limits=["100/hour"],
    storage_uri=config.REDIS_URL,
    strategy="fixed-window",
    headers_enabled=True,
    enabled=config.RATE_LIMIT_ENABLED,
)

# Per-route limits
CHECKOUT_PREVIEW_LIMIT = "60/minute"
CHECKOUT_START_LIMIT = "10/minute"
CHECKOUT_CONFIRM_LIMIT = "20/minute"
SUBSCRIPTION_UPDATE_LIMIT = "20/minute"
