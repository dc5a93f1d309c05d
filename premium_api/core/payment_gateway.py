"""
Razorpay payment gateway adapter.

Only the two operations the checkout flow needs: creating an order for the
client-side payment step, and verifying the signature Razorpay attaches to
the payment callback.
"""
import hashlib
import hmac
from typing import NamedTuple, Optional

import httpx
import structlog

from premium_api.core import config
from premium_api.core import exceptions as errors

logger = structlog.get_logger(__name__)


class GatewayOrder(NamedTuple):
    id: str
    amount: int
    currency: str


class RazorpayGateway:
    """
    Thin async client over the Razorpay Orders API.

    Args:
        key_id: Public key id (also handed to the browser checkout widget)
        key_secret: Secret used for basic auth and signature verification
        base_url: API root, e.g. https://api.razorpay.com/v1
        timeout: Per-request timeout in seconds
        transport: Optional httpx transport, e.g. httpx.MockTransport in tests
    """

    def __init__(
        self,
        key_id: Optional[str] = None,
        key_secret: Optional[str] = None,
        base_url: str = "https://api.razorpay.com/v1",
        timeout: float = 10,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.key_id = key_id
        self.key_secret = key_secret
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.transport = transport

    def is_configured(self) -> bool:
        return bool(self.key_id and self.key_secret)

    async def create_order(
        self,
        amount: int,
        currency: str,
        receipt: str,
        notes: Optional[dict] = None,
    ) -> GatewayOrder:
        """
        Create a gateway order for the given amount (minor units).

        Raises:
            GatewayUnavailable: Gateway not configured, unreachable, or it
                rejected the request
        """
        if not self.is_configured():
            raise errors.GatewayUnavailable()

        payload = {
            "amount": int(amount),
            "currency": currency,
            "receipt": receipt,
            "notes": {key: str(value) for key, value in (notes or {}).items()},
        }

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.post(
                    f"{self.base_url}/orders",
                    json=payload,
                    auth=(self.key_id, self.key_secret),
                )
        except httpx.HTTPError as exc:
            logger.error("gateway_order_request_failed", receipt=receipt, error=str(exc))
            raise errors.GatewayUnavailable("Payment gateway unavailable, please try again later") from exc

        if response.status_code >= 400:
            logger.error(
                "gateway_order_rejected",
                receipt=receipt,
                status_code=response.status_code,
                body=response.text[:500],
            )
            raise errors.GatewayUnavailable("Payment gateway rejected the order")

        data = response.json()
        order = GatewayOrder(
            id=data["id"],
            amount=int(data.get("amount", amount)),
            currency=data.get("currency", currency),
        )
        logger.info("gateway_order_created", order_id=order.id, amount=order.amount, receipt=receipt)
        return order

    def verify_signature(self, order_id: str, payment_id: str, signature: str) -> bool:
        """
        Check the callback signature: HMAC-SHA256 of "order_id|payment_id"
        keyed with the secret, hex encoded. Always False when unconfigured.
        """
        if not self.key_secret or not signature:
            return False
        expected = hmac.new(
            self.key_secret.encode(),
            f"{order_id}|{payment_id}".encode(),
            hashlib.sha256,
        ).hexdigest()
        return hmac.compare_digest(expected.encode(), signature.encode())


def get_payment_gateway() -> RazorpayGateway:
    """FastAPI dependency: gateway built from the environment."""
    return RazorpayGateway(
        key_id=config.RAZORPAY_KEY_ID,
        key_secret=config.RAZORPAY_KEY_SECRET,
        base_url=config.RAZORPAY_API_URL,
        timeout=config.GATEWAY_TIMEOUT_SECONDS,
    )
