"""Error taxonomy shared by the checkout path and both reconcilers.

Checkout errors carry enough detail for the buyer to fix the cart. Webhook
handlers never expose these messages to the provider.
"""


class MarketError(Exception):
    status_code = 500

    def __init__(self, message: str = "", **context):
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__
        self.context = context


# --- user-correctable -------------------------------------------------------

class ValidationError(MarketError):
    status_code = 400


class EmptyCart(ValidationError):
    def __init__(self):
        super().__init__("Cart is empty")


class InvalidAddress(ValidationError):
    def __init__(self, address_id: int):
        super().__init__("Invalid delivery address", address_id=address_id)
        self.address_id = address_id


class ProductNotFound(ValidationError):
    def __init__(self, product_id: int):
        super().__init__(f"Product with ID {product_id} not found", product_id=product_id)
        self.product_id = product_id


class InsufficientStock(ValidationError):
    def __init__(self, product_id: int, product_name: str, available: int):
        super().__init__(
            f'Not enough stock for "{product_name}". Available: {available}',
            product_id=product_id,
            available=available,
        )
        self.product_id = product_id
        self.available = available


class MixedPaymentAccounts(ValidationError):
    def __init__(self, seller_ids):
        super().__init__(
            "Items from these sellers must be checked out separately",
            seller_ids=list(seller_ids),
        )
        self.seller_ids = list(seller_ids)


class OrderNotFound(ValidationError):
    status_code = 404

    def __init__(self, order_id=None, tracking_number=None):
        super().__init__("Order not found", order_id=order_id, tracking_number=tracking_number)


class NotOrderOwner(ValidationError):
    status_code = 403

    def __init__(self, order_id: int):
        super().__init__("Order does not belong to you", order_id=order_id)


class InvalidOrderState(ValidationError):
    status_code = 409


# --- third parties ----------------------------------------------------------

class UpstreamUnavailable(MarketError):
    status_code = 502


class PaymentSessionCreationFailed(UpstreamUnavailable):
    pass


class CourierUnavailable(UpstreamUnavailable):
    pass


class MailDeliveryFailed(UpstreamUnavailable):
    pass


# --- inbound webhooks -------------------------------------------------------

class InvalidSignature(MarketError):
    status_code = 400


class IntegrityViolation(MarketError):
    """Webhook payload is missing or has unparseable correlation metadata."""
    status_code = 200


class ConflictIgnored(MarketError):
    """A conditional write found its precondition already false.

    Not a failure: this is how a redelivered or stale event is recognised.
    """
    status_code = 200
