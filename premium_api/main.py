from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
import structlog

from premium_api.core import config
from premium_api.core.database import engine, Base, AsyncSessionLocal
from premium_api.core.exceptions import SubscriptionError
from premium_api.core.logging import setup_logging
from premium_api.core.notifier import get_notifier
from premium_api.core.rate_limit import limiter
from premium_api.core.scheduler import SubscriptionScheduler
from premium_api.api.v1.router import api_v1_router

# Register every mapped model before create_all
from premium_api.models import user, subscription_plan, promocode, user_subscription  # noqa: F401

logger = structlog.get_logger(__name__)


# --- Lifespan events (startup / shutdown) ---
@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan context.

    On startup:
      - Configure logging and report configuration problems.
      - Ensure all database tables exist (create if missing).
      - Start the subscription reconciliation scheduler.

    On shutdown:
      - Stop the scheduler and dispose of the engine.
    """
    setup_logging()
    status = config.validate_config()
    for warning in status["warnings"]:
        logger.warning("config_warning", detail=warning)
    logger.info("startup", service="premium-subscriptions-api")

    async with engine.begin() as conn:
        # Create tables automatically if they do not exist
        await conn.run_sync(Base.metadata.create_all)

    scheduler = SubscriptionScheduler(
        session_factory=AsyncSessionLocal,
        notifier=get_notifier(),
        reminder_window_hours=config.SUBSCRIPTION_REMINDER_WINDOW_HOURS,
        pending_ttl_hours=config.PENDING_TTL_HOURS,
        concurrency=config.JOB_CONCURRENCY,
        timezone=config.CRON_TIMEZONE,
    )
    scheduler.start()
    app.state.subscription_scheduler = scheduler

    yield

    scheduler.shutdown()
    await engine.dispose()
    logger.info("shutdown")


# --- FastAPI application instance ---
app = FastAPI(
    title="Premium Subscriptions API",
    version="1.0.0",
    lifespan=lifespan,
    description="""
    Subscription plans, promo codes and checkout for premium access.

    ## Authentication

    Send the Supabase session token in the header:
    `Authorization: Bearer <token>`.
    Plan listing and checkout preview are public; admin routes require
    the `admin` role.

    ## Checkout flow

    1. `POST /subscriptions/checkout/preview` to price a plan and promo code
    2. `POST /subscriptions/checkout/start` to create the payment order
    3. Pay through the gateway widget with the returned order id
    4. `POST /subscriptions/checkout/confirm` with the signed callback

    ## Errors

    Failures return `{"detail": "...", "code": "REASON_CODE"}`.
    """
)

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
app.add_middleware(SlowAPIMiddleware)


@app.exception_handler(SubscriptionError)
async def subscription_error_handler(request: Request, exc: SubscriptionError):
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message, "code": exc.code},
        headers=exc.headers,
    )


# --- CORS configuration ---
# Allowed origins for browser-based clients (the frontend that hosts checkout).
origins = [
    config.FRONTEND_URL,
]

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# --- Root health / welcome endpoint ---
@app.get("/")
@limiter.limit("10/minute")
async def root(request: Request, response: Response):
    """
    Simple health/welcome endpoint.

    Can be used by uptime checks or to verify that the API is running.
    """
    return {
        "message": "Welcome to the Premium Subscriptions API",
        "status": "OK",
        "docs": "/docs",
    }


# --- Mount versioned API routers ---
# All versioned routes are exposed under /api/v1.
app.include_router(api_v1_router, prefix="/api/v1")
