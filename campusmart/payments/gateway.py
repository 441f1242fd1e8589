"""Payment gateway port and adapters.

The checkout and webhook code program against ``PaymentGateway``;
``StripeGateway`` talks to Stripe (optionally on a seller's connected
account), ``FakeGateway`` is used in development and tests.
"""
import hashlib
import hmac
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional
from uuid import uuid4

import stripe
import structlog

from campusmart.core.config import settings
from campusmart.core.errors import InvalidSignature, PaymentSessionCreationFailed

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class LineItem:
    name: str
    unit_amount: int
    quantity: int
    image: Optional[str] = None


@dataclass(frozen=True)
class CheckoutRequest:
    line_items: list[LineItem]
    currency: str
    success_url: str
    cancel_url: str
    metadata: dict[str, str]
    customer_email: Optional[str] = None
    connected_account_id: Optional[str] = None
    application_fee_amount: Optional[int] = None
    idempotency_key: Optional[str] = None


@dataclass(frozen=True)
class CheckoutSession:
    id: str
    url: str


class PaymentGateway(ABC):
    """Abstract payment gateway interface."""

    @abstractmethod
    def create_checkout_session(self, request: CheckoutRequest) -> CheckoutSession:
        """Create a hosted checkout session. Raises PaymentSessionCreationFailed."""
        ...

    @abstractmethod
    def verify_webhook(self, payload: bytes, signature: Optional[str]) -> None:
        """Raise InvalidSignature unless the payload was signed by the gateway."""
        ...


class StripeGateway(PaymentGateway):
    def __init__(self, api_key: str, webhook_secret: str, tolerance: int = 300) -> None:
        self.api_key = api_key
        self.webhook_secret = webhook_secret
        self.tolerance = tolerance

    def _params(self, request: CheckoutRequest) -> dict:
        intent_data: dict = {"metadata": dict(request.metadata)}
        if request.connected_account_id and request.application_fee_amount:
            intent_data["application_fee_amount"] = request.application_fee_amount
        params = {
            "payment_method_types": ["card"],
            "mode": "payment",
            "line_items": [
                {
                    "price_data": {
                        "currency": request.currency,
                        "product_data": {
                            "name": item.name,
                            "images": [item.image] if item.image else [],
                        },
                        "unit_amount": item.unit_amount,
                    },
                    "quantity": item.quantity,
                }
                for item in request.line_items
            ],
            "success_url": request.success_url,
            "cancel_url": request.cancel_url,
            "metadata": dict(request.metadata),
            "payment_intent_data": intent_data,
        }
        if request.customer_email:
            params["customer_email"] = request.customer_email
        return params

    def create_checkout_session(self, request: CheckoutRequest) -> CheckoutSession:
        options = {"api_key": self.api_key}
        if request.connected_account_id:
            options["stripe_account"] = request.connected_account_id
        if request.idempotency_key:
            options["idempotency_key"] = request.idempotency_key
        try:
            session = stripe.checkout.Session.create(**self._params(request), **options)
        except stripe.StripeError as e:
            logger.error(
                "stripe_session_failed",
                error=str(e),
                error_type=type(e).__name__,
                account=request.connected_account_id,
            )
            raise PaymentSessionCreationFailed("Failed to create checkout session") from e
        return CheckoutSession(id=session.id, url=session.url)

    def verify_webhook(self, payload: bytes, signature: Optional[str]) -> None:
        if not signature:
            raise InvalidSignature("Missing stripe-signature header")
        try:
            stripe.WebhookSignature.verify_header(
                payload.decode("utf-8"), signature, self.webhook_secret, self.tolerance
            )
        except (stripe.SignatureVerificationError, UnicodeDecodeError) as e:
            raise InvalidSignature("Webhook signature verification failed") from e


class FakeGateway(PaymentGateway):
    """Configurable fake gateway: records calls, signs with a plain HMAC."""

    def __init__(self, webhook_secret: str = "whsec_test") -> None:
        self.webhook_secret = webhook_secret
        self.should_succeed: bool = True
        self.failure_reason: str = "Gateway unreachable"
        self.calls: list[CheckoutRequest] = []

    def configure(self, should_succeed: bool, failure_reason: str = "Gateway unreachable") -> None:
        self.should_succeed = should_succeed
        self.failure_reason = failure_reason

    def create_checkout_session(self, request: CheckoutRequest) -> CheckoutSession:
        self.calls.append(request)
        if not self.should_succeed:
            raise PaymentSessionCreationFailed(self.failure_reason)
        session_id = f"cs_test_{uuid4().hex[:16]}"
        return CheckoutSession(id=session_id, url=f"https://checkout.fake/pay/{session_id}")

    def sign(self, payload: bytes) -> str:
        return hmac.new(self.webhook_secret.encode(), payload, hashlib.sha256).hexdigest()

    def verify_webhook(self, payload: bytes, signature: Optional[str]) -> None:
        if not signature or not hmac.compare_digest(self.sign(payload), signature):
            raise InvalidSignature("Webhook signature verification failed")


_current_gateway: Optional[PaymentGateway] = None


def get_gateway() -> PaymentGateway:
    """Return the active gateway, building it from settings on first use."""
    global _current_gateway
    if _current_gateway is None:
        if settings.PAYMENT_GATEWAY == "fake":
            _current_gateway = FakeGateway(settings.STRIPE_WEBHOOK_SECRET)
        else:
            _current_gateway = StripeGateway(settings.STRIPE_SECRET_KEY, settings.STRIPE_WEBHOOK_SECRET)
    return _current_gateway


def set_gateway(gateway: PaymentGateway) -> None:
    """Override the active payment gateway (useful for tests)."""
    global _current_gateway
    _current_gateway = gateway


def reset_gateway() -> None:
    global _current_gateway
    _current_gateway = None
