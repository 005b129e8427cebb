"""
Payment gateway integration (Razorpay).

``RazorpayGateway`` is the HTTP client for the gateway's Orders API and owns
the shared secret used to verify checkout callbacks. It is constructed once
by the application and handed to ``PaymentService`` through a FastAPI
dependency, so tests can swap in a fake.

Amounts stored on orders are in the base currency unit; conversion to minor
units (paise) happens only here.
"""
import hashlib
import hmac
import logging
import os
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, Optional

import httpx

from database import now
from errors import AlreadyPaid, InvalidSignature, InvalidState, PaymentGatewayError
from orders import OrderEngine
from schemas import CurrentUser, PaymentResult

logger = logging.getLogger(__name__)

DEFAULT_API_URL = "https://api.razorpay.com/v1"


def to_minor_units(amount: float) -> int:
    """Base currency amount to integer minor units, rounding half up."""
    return int((Decimal(str(amount)) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def sign(secret: str, gateway_order_id: str, payment_id: str) -> str:
    """HMAC-SHA256 hex digest the gateway sends back with a completed checkout."""
    message = f"{gateway_order_id}|{payment_id}".encode()
    return hmac.new(secret.encode(), message, hashlib.sha256).hexdigest()


class RazorpayGateway:
    def __init__(
        self,
        key_id: Optional[str],
        key_secret: Optional[str],
        base_url: str = DEFAULT_API_URL,
        currency: str = "INR",
        client: Optional[httpx.Client] = None,
        timeout: float = 10.0,
    ):
        self.key_id = key_id
        self.key_secret = key_secret
        self.base_url = base_url.rstrip("/")
        self.currency = currency
        self._client = client or httpx.Client(timeout=timeout)

    @classmethod
    def from_env(cls) -> "RazorpayGateway":
        return cls(
            key_id=os.getenv("RAZORPAY_KEY_ID"),
            key_secret=os.getenv("RAZORPAY_KEY_SECRET"),
            base_url=os.getenv("RAZORPAY_API_URL", DEFAULT_API_URL),
            currency=os.getenv("PAYMENT_CURRENCY", "INR"),
        )

    @property
    def is_configured(self) -> bool:
        return bool(self.key_id and self.key_secret)

    def create_order_intent(self, amount: int, currency: str, receipt: str) -> Dict[str, Any]:
        if not self.is_configured:
            raise PaymentGatewayError("Payment gateway is not configured")
        try:
            response = self._client.post(
                f"{self.base_url}/orders",
                auth=(self.key_id, self.key_secret),
                json={
                    "amount": amount,
                    "currency": currency,
                    "receipt": receipt,
                    "payment_capture": 1,
                },
            )
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.exception(f"Razorpay order creation failed for receipt {receipt}: {e}")
            raise PaymentGatewayError(f"Error creating payment order: {e}") from e
        data = response.json()
        return {"id": data["id"], "amount": data["amount"], "currency": data["currency"]}

    def verify_signature(self, gateway_order_id: str, payment_id: str, signature: str) -> bool:
        if not self.key_secret:
            raise PaymentGatewayError("Payment gateway is not configured")
        expected = sign(self.key_secret, gateway_order_id, payment_id)
        return hmac.compare_digest(expected, signature or "")

    def close(self) -> None:
        self._client.close()


class PaymentService:
    def __init__(self, orders: OrderEngine, gateway: RazorpayGateway):
        self.orders = orders
        self.gateway = gateway

    def create_intent(self, user: CurrentUser, order_id: str) -> Dict[str, Any]:
        order = self.orders.get_order(user, order_id)
        if order.get("is_paid"):
            raise AlreadyPaid(order_id)

        intent = self.gateway.create_order_intent(
            amount=to_minor_units(order["total_price"]),
            currency=self.gateway.currency,
            receipt=str(order["_id"]),
        )
        # a newer intent replaces the previous one; callbacks for the old one are refused
        self.orders.attach_payment_intent(order["_id"], intent["id"])
        logger.info(f"Payment intent {intent['id']} created for order {order['_id']}")
        return {
            "order": {
                "id": intent["id"],
                "amount": intent["amount"],
                "currency": intent["currency"],
                "order_id": str(order["_id"]),
            },
            "key": self.gateway.key_id,
        }

    def verify_callback(
        self,
        user: CurrentUser,
        gateway_order_id: str,
        payment_id: str,
        signature: str,
        order_id: str,
    ) -> dict:
        if not self.gateway.verify_signature(gateway_order_id, payment_id, signature):
            logger.warning(f"Rejected payment callback with bad signature for order {order_id}")
            raise InvalidSignature()

        order = self.orders.get_order(user, order_id)
        if order.get("payment_intent_id") != gateway_order_id:
            logger.warning(f"Payment {payment_id} for intent {gateway_order_id} does not belong to order {order_id}")
            raise InvalidState("Payment was not created for this order")
        if order.get("is_paid"):
            raise AlreadyPaid(order_id)

        result = PaymentResult(
            id=payment_id,
            status="completed",
            update_time=now().isoformat(),
            email_address=user.email,
        )
        return self.orders.mark_paid(order_id, result, payment_intent_id=gateway_order_id)
