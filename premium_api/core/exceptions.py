"""
Error taxonomy for the subscription engine.

Every error is an HTTPException carrying a machine-readable reason code so
services can raise them directly and FastAPI renders them without extra
translation. The exception handler in main.py adds the code to the body.
"""
from fastapi import HTTPException, status


class SubscriptionError(HTTPException):
    """Base error: an HTTP status, a reason code and a caller-safe message."""

    status_code = status.HTTP_400_BAD_REQUEST
    default_code = "SUBSCRIPTION_ERROR"
    default_message = "Subscription request failed"

    def __init__(self, message: str | None = None, code: str | None = None):
        self.code = code or self.default_code
        self.message = message or self.default_message
        super().__init__(status_code=self.status_code, detail=self.message)


class NotFound(SubscriptionError):
    status_code = status.HTTP_404_NOT_FOUND
    default_code = "NOT_FOUND"
    default_message = "Resource not found"


class Forbidden(SubscriptionError):
    status_code = status.HTTP_403_FORBIDDEN
    default_code = "FORBIDDEN"
    default_message = "You don't have permission to perform this action"


class Conflict(SubscriptionError):
    status_code = status.HTTP_409_CONFLICT
    default_code = "CONFLICT"
    default_message = "Resource already exists"


class ValidationFailed(SubscriptionError):
    status_code = status.HTTP_400_BAD_REQUEST
    default_code = "VALIDATION_FAILED"
    default_message = "Request validation failed"


class GatewayUnavailable(SubscriptionError):
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    default_code = "GATEWAY_UNAVAILABLE"
    default_message = "Payment gateway not configured"


class SignatureMismatch(SubscriptionError):
    status_code = status.HTTP_400_BAD_REQUEST
    default_code = "SIGNATURE_MISMATCH"
    default_message = "Payment verification failed"


class DependencyFailure(SubscriptionError):
    """A store write failed; the caller only ever sees the generic message."""

    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_code = "DEPENDENCY_FAILURE"
    default_message = "Operation failed, please try again later"


# Reason codes shared by the discount engine and the checkout orchestrator
PLAN_NOT_FOUND = "PLAN_NOT_FOUND"
PROMO_NOT_FOUND = "PROMO_NOT_FOUND"
PROMO_NOT_YET_ACTIVE = "PROMO_NOT_YET_ACTIVE"
PROMO_EXPIRED = "PROMO_EXPIRED"
PROMO_USAGE_LIMIT_REACHED = "PROMO_USAGE_LIMIT_REACHED"
PROMO_PLAN_NOT_APPLICABLE = "PROMO_PLAN_NOT_APPLICABLE"
PROMO_AUTO_RENEW_REQUIRED = "PROMO_AUTO_RENEW_REQUIRED"
PROMO_MINIMUM_NOT_MET = "PROMO_MINIMUM_NOT_MET"
PENDING_NOT_FOUND = "PENDING_NOT_FOUND"
SUBSCRIPTION_NOT_FOUND = "SUBSCRIPTION_NOT_FOUND"
UNAUTHORIZED_CONFIRMATION = "UNAUTHORIZED_CONFIRMATION"
