"""
Runtime configuration loaded from the environment.

Values are read once at import time (after loading an optional .env file)
and exposed as module-level constants, grouped by concern.
"""
import os
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    try:
        return int(value)
    except ValueError:
        return default


# ============================================
# DATABASE CONFIGURATION
# ============================================
DATABASE_URL = os.getenv("DATABASE_URL")
DB_COMMAND_TIMEOUT_SECONDS = _env_int("DB_COMMAND_TIMEOUT_SECONDS", 10)


# ============================================
# AUTHENTICATION (Supabase)
# ============================================
SUPABASE_URL = os.getenv("SUPABASE_URL")
SUPABASE_JWT_SECRET = os.getenv("SUPABASE_JWT_SECRET")


# ============================================
# PAYMENT GATEWAY (Razorpay)
# ============================================
RAZORPAY_KEY_ID = os.getenv("RAZORPAY_KEY_ID")
RAZORPAY_KEY_SECRET = os.getenv("RAZORPAY_KEY_SECRET")
RAZORPAY_API_URL = os.getenv("RAZORPAY_API_URL", "https://api.razorpay.com/v1")
GATEWAY_TIMEOUT_SECONDS = _env_int("GATEWAY_TIMEOUT_SECONDS", 10)


# ============================================
# SUBSCRIPTION JOBS
# ============================================
SUBSCRIPTION_REMINDER_WINDOW_HOURS = _env_int("SUBSCRIPTION_REMINDER_WINDOW_HOURS", 72)
SUBSCRIPTION_RENEWAL_CRON = os.getenv("SUBSCRIPTION_RENEWAL_CRON", "0 * * * *")
SUBSCRIPTION_EXPIRY_REMINDER_CRON = os.getenv("SUBSCRIPTION_EXPIRY_REMINDER_CRON", "15 * * * *")
SUBSCRIPTION_EXPIRATION_CRON = os.getenv("SUBSCRIPTION_EXPIRATION_CRON", "30 * * * *")
SUBSCRIPTION_PENDING_REAPER_CRON = os.getenv("SUBSCRIPTION_PENDING_REAPER_CRON", "45 * * * *")
PENDING_TTL_HOURS = _env_int("PENDING_TTL_HOURS", 24)
JOB_CONCURRENCY = _env_int("JOB_CONCURRENCY", 10)
CRON_TIMEZONE = os.getenv("CRON_TIMEZONE", "Asia/Kolkata")
DISABLE_SUBSCRIPTION_JOBS = _env_bool("DISABLE_SUBSCRIPTION_JOBS", False)


# ============================================
# EMAIL (SMTP)
# ============================================
SMTP_HOST = os.getenv("SMTP_HOST")
SMTP_PORT = _env_int("SMTP_PORT", 587)
SMTP_USERNAME = os.getenv("SMTP_USERNAME")
SMTP_PASSWORD = os.getenv("SMTP_PASSWORD")
SMTP_USE_TLS = _env_bool("SMTP_USE_TLS", True)
SMTP_FROM_EMAIL = os.getenv("SMTP_FROM_EMAIL", "noreply@example.com")
SMTP_TIMEOUT_SECONDS = _env_int("SMTP_TIMEOUT_SECONDS", 10)
FRONTEND_URL = os.getenv("FRONTEND_URL", "http://localhost:3000")
CURRENCY_SYMBOL = os.getenv("CURRENCY_SYMBOL", "₹")


# ============================================
# RATE LIMITING
# ============================================
REDIS_URL = os.getenv("REDIS_URL", "memory://")
RATE_LIMIT_ENABLED = _env_bool("RATE_LIMIT_ENABLED", True)


# ============================================
# LOGGING
# ============================================
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_FORMAT = os.getenv("LOG_FORMAT", "console").lower()


def validate_config() -> dict:
    """
    Validate that all required configuration is present.

    Returns:
        dict: Configuration status with warnings and errors
    """
    errors = []
    warnings = []

    if not DATABASE_URL:
        errors.append("DATABASE_URL is not set")

    if not (RAZORPAY_KEY_ID and RAZORPAY_KEY_SECRET):
        warnings.append("Razorpay credentials missing - checkout start will be unavailable")

    if not SMTP_HOST:
        warnings.append("SMTP_HOST not set - emails will only be logged")

    if not (SUPABASE_JWT_SECRET or SUPABASE_URL):
        warnings.append("Supabase settings missing - authenticated endpoints will reject all tokens")

    return {
        "valid": not errors,
        "errors": errors,
        "warnings": warnings,
    }
