"""Order factory: one pending, unpaid Order per seller group.

No stock is touched here. If the payment session cannot be created
afterwards the orders simply stay pending/unpaid.
"""
import secrets
import time
from decimal import Decimal, ROUND_HALF_UP
from typing import Mapping, Optional

import structlog
from sqlalchemy.orm import Session

from campusmart.checkout.partition import SellerGroup
from campusmart.core.config import settings
from campusmart.db.models import Order, OrderItem, OrderStatus, PaymentStatus
from campusmart.kafka.producer import emit_order_event

logger = structlog.get_logger(__name__)


def new_checkout_token() -> str:
    return f"{settings.ORDER_NUMBER_PREFIX}-{int(time.time() * 1000)}-{secrets.token_hex(3)}"


def fee_split(subtotal_cents: int, rate: Optional[float] = None) -> tuple[int, int]:
    """Return (platform_fee_cents, seller_payout_cents)."""
    rate = settings.PLATFORM_FEE_RATE if rate is None else rate
    fee = int((Decimal(subtotal_cents) * Decimal(str(rate))).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    return fee, subtotal_cents - fee


def safe_image_url(url: Optional[str]) -> Optional[str]:
    if not url or url.startswith("data:") or len(url) > settings.MAX_IMAGE_URL_LENGTH:
        return None
    return url


def create_orders(
    db: Session,
    groups: Mapping[int, SellerGroup],
    buyer_id: int,
    address_id: int,
    checkout_token: Optional[str] = None,
) -> list[Order]:
    token = checkout_token or new_checkout_token()
    orders = []
    for seller_id, group in groups.items():
        subtotal = group.subtotal_cents
        fee, payout = fee_split(subtotal)
        order = Order(
            order_number=f"{token}-{seller_id}",
            checkout_token=token,
            seller_id=seller_id,
            buyer_id=buyer_id,
            address_id=address_id,
            total_cents=subtotal,
            platform_fee_cents=fee,
            seller_payout_cents=payout,
            currency=settings.CURRENCY,
            status=OrderStatus.PENDING.value,
            payment_status=PaymentStatus.UNPAID.value,
        )
        for line in group.lines:
            order.items.append(
                OrderItem(
                    product_id=line.product_id,
                    quantity=line.quantity,
                    unit_price_cents=line.unit_price_cents,
                    total_price_cents=line.unit_price_cents * line.quantity,
                    variation=line.variation,
                    product_name=line.product_name,
                    product_image=safe_image_url(line.product_image),
                )
            )
        db.add(order)
        orders.append(order)

    db.commit()
    for order in orders:
        db.refresh(order)

    logger.info(
        "orders_created",
        checkout_token=token,
        buyer_id=buyer_id,
        order_ids=[o.id for o in orders],
    )
    for order in orders:
        emit_order_event({
            "type": "order.created",
            "order_id": order.id,
            "order_number": order.order_number,
            "buyer_id": buyer_id,
            "seller_id": order.seller_id,
            "amount_cents": order.total_cents,
            "items": [
                {"product_id": it.product_id, "qty": it.quantity, "unit_price_cents": it.unit_price_cents}
                for it in order.items
            ],
        })
    return orders
