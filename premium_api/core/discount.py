"""
Promo code validation and discount computation.

Everything here is pure: no database access, no clock reads (callers pass
`now`). The checkout orchestrator composes these functions; tests exercise
them directly.
"""
import math
from datetime import datetime
from typing import NamedTuple, Optional

from premium_api.core import config
from premium_api.core import exceptions as errors
from premium_api.core.timeutils import ensure_utc
from premium_api.models.promocode import Promocode

# No checkout is ever cheaper than this many minor units
MIN_CHARGE_CENTS = 100


class PromoValidation(NamedTuple):
    valid: bool
    reason: Optional[str] = None
    message: Optional[str] = None


def validate_promocode(
    promo: Optional[Promocode],
    plan_id: int,
    auto_renew: bool,
    now: datetime,
) -> PromoValidation:
    """
    Check a promo code against a plan selection.

    Rules are evaluated in a fixed order and the first failure wins:
    existence, validity window, redemption cap, plan restriction, and
    the auto-renew requirement.

    Args:
        promo: The promo code looked up by code (None when it does not exist)
        plan_id: Plan the user is buying
        auto_renew: Whether the user asked for auto-renewal
        now: Evaluation time (timezone-aware)

    Returns:
        PromoValidation: valid flag plus reason code and message on failure
    """
    if promo is None:
        return PromoValidation(False, errors.PROMO_NOT_FOUND, "Promo code not found")

    start_at = ensure_utc(promo.start_at)
    end_at = ensure_utc(promo.end_at)
    now = ensure_utc(now)

    if start_at and start_at > now:
        return PromoValidation(False, errors.PROMO_NOT_YET_ACTIVE, "Promo code is not active yet")

    if end_at and end_at < now:
        return PromoValidation(False, errors.PROMO_EXPIRED, "Promo code has expired")

    if promo.max_redemptions is not None and (promo.redemptions_count or 0) >= promo.max_redemptions:
        return PromoValidation(False, errors.PROMO_USAGE_LIMIT_REACHED, "Promo code usage limit reached")

    plan_ids = promo.applicable_plan_ids
    if plan_ids and plan_id not in plan_ids:
        return PromoValidation(
            False, errors.PROMO_PLAN_NOT_APPLICABLE, "Promo code not applicable for this plan"
        )

    if promo.auto_renew_only and not auto_renew:
        return PromoValidation(
            False, errors.PROMO_AUTO_RENEW_REQUIRED, "Promo code requires auto renew to be enabled"
        )

    return PromoValidation(True)


def apply_discount(amount_cents: int, promo: Optional[Promocode]) -> int:
    """
    Compute the charge after applying a promo code.

    Percent discounts are floored to the nearest minor unit; fixed discounts
    are expressed in major units. The result is clamped to MIN_CHARGE_CENTS
    and never exceeds the original amount.
    """
    amount_cents = int(amount_cents)
    if promo is None:
        return amount_cents

    value = int(promo.discount_value)
    if promo.discount_type == "percent":
        discount = math.floor(amount_cents * value / 100)
    else:
        discount = value * 100

    adjusted = max(MIN_CHARGE_CENTS, amount_cents - discount)
    return min(adjusted, amount_cents)


def check_minimum(promo: Optional[Promocode], adjusted_amount_cents: int) -> PromoValidation:
    """Reject a promo whose minimum is not met by the discounted amount."""
    if promo is not None and promo.min_amount_cents and adjusted_amount_cents < promo.min_amount_cents:
        return PromoValidation(
            False, errors.PROMO_MINIMUM_NOT_MET, "Plan price does not meet promo minimum"
        )
    return PromoValidation(True)


def format_currency(amount_cents: int) -> str:
    return f"{config.CURRENCY_SYMBOL}{amount_cents / 100:.2f}"


def describe_discount(
    promo: Optional[Promocode],
    amount_before: int,
    amount_after: int,
) -> Optional[str]:
    """Human-readable summary shown next to the checkout total."""
    if promo is None:
        return None
    saved = max(0, amount_before - amount_after)
    if promo.discount_type == "percent":
        return f"{promo.discount_value}% off • Saved {format_currency(saved)}"
    return f"Saved {format_currency(saved)} with {promo.code}"
