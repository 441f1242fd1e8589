"""Payment session creation for a freshly created order set."""
from dataclasses import dataclass
from typing import Optional, Sequence

import structlog
from sqlalchemy import select, update
from sqlalchemy.orm import Session

from campusmart.core.config import settings
from campusmart.core.errors import MixedPaymentAccounts, PaymentSessionCreationFailed
from campusmart.db.models import Order, OrderStatus, PaymentStatus, Shop
from campusmart.payments.gateway import CheckoutRequest, LineItem, PaymentGateway, get_gateway
from campusmart.payments.metadata import build_metadata, encode_order_ids

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class PaymentSessionResult:
    redirect_url: str
    session_id: str
    payment_account_id: Optional[str]


def resolve_payment_account(db: Session, orders: Sequence[Order]) -> Optional[str]:
    """Connected account the session is created on, or None for the platform."""
    seller_ids = {o.seller_id for o in orders}
    accounts = dict(
        db.execute(select(Shop.id, Shop.stripe_account_id).where(Shop.id.in_(seller_ids))).all()
    )
    distinct = {accounts.get(sid) for sid in seller_ids}
    if len(distinct) > 1:
        raise MixedPaymentAccounts(seller_ids)
    return distinct.pop()


def create_payment_session(
    db: Session,
    orders: Sequence[Order],
    customer_email: Optional[str] = None,
    gateway: Optional[PaymentGateway] = None,
) -> PaymentSessionResult:
    if not orders:
        raise PaymentSessionCreationFailed("No orders to pay for")
    gateway = gateway or get_gateway()
    account_id = resolve_payment_account(db, orders)
    order_ids = [o.id for o in orders]
    buyer_id = orders[0].buyer_id

    request = CheckoutRequest(
        line_items=[
            LineItem(
                name=item.product_name,
                unit_amount=item.unit_price_cents,
                quantity=item.quantity,
                image=item.product_image,
            )
            for order in orders
            for item in order.items
        ],
        currency=settings.CURRENCY,
        success_url=f"{settings.APP_BASE_URL}/checkout/success?session_id={{CHECKOUT_SESSION_ID}}",
        cancel_url=f"{settings.APP_BASE_URL}/checkout/cancel",
        metadata=build_metadata(order_ids, buyer_id),
        customer_email=customer_email,
        connected_account_id=account_id,
        application_fee_amount=sum(o.platform_fee_cents for o in orders) if account_id else None,
        idempotency_key=f"checkout_{encode_order_ids(order_ids)}",
    )

    try:
        session = gateway.create_checkout_session(request)
    except PaymentSessionCreationFailed:
        logger.error("payment_session_failed", order_ids=order_ids, account=account_id)
        raise

    # only orders nobody has settled or cancelled in the meantime
    db.execute(
        update(Order)
        .where(
            Order.id.in_(order_ids),
            Order.status == OrderStatus.PENDING.value,
            Order.payment_status == PaymentStatus.UNPAID.value,
        )
        .values(payment_session_id=session.id, payment_account_id=account_id)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    for order in orders:
        db.refresh(order)

    logger.info(
        "payment_session_created",
        session_id=session.id,
        order_ids=order_ids,
        account=account_id or "platform",
    )
    return PaymentSessionResult(redirect_url=session.url, session_id=session.id, payment_account_id=account_id)
