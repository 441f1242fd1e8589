"""Cart partitioning: validate a buyer's cart and split it per seller.

Prices come from the product table only. Whether a discount applies is
decided here, at checkout time, from the product's discount window.
"""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, Sequence

import structlog
from sqlalchemy import select
from sqlalchemy.orm import Session, selectinload

from campusmart.core.errors import (
    EmptyCart,
    InsufficientStock,
    InvalidAddress,
    MixedPaymentAccounts,
    ProductNotFound,
    ValidationError,
)
from campusmart.db.models import Address, Product, utcnow

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class CartLine:
    product_id: int
    quantity: int
    variation: Optional[str] = None


@dataclass(frozen=True)
class PricedLine:
    product_id: int
    quantity: int
    unit_price_cents: int
    total_price_cents: int
    product_name: str
    product_image: Optional[str]
    variation: Optional[str] = None


@dataclass
class SellerGroup:
    seller_id: int
    payment_account_id: Optional[str]
    lines: list[PricedLine] = field(default_factory=list)

    @property
    def subtotal_cents(self) -> int:
        return sum(line.total_price_cents for line in self.lines)


def is_discount_active(product: Product, now: datetime) -> bool:
    if not product.discount_percentage:
        return False
    if product.discount_start is not None and now < product.discount_start:
        return False
    if product.discount_end is not None and now > product.discount_end:
        return False
    return True


def effective_unit_price(product: Product, now: datetime) -> int:
    if not is_discount_active(product, now):
        return product.price_cents
    if product.discounted_price_cents is not None:
        return product.discounted_price_cents
    discounted = product.price_cents * (100 - product.discount_percentage)
    return (discounted + 50) // 100


def partition_cart(
    db: Session,
    buyer_id: int,
    lines: Sequence[CartLine],
    address_id: int,
    now: Optional[datetime] = None,
) -> dict[int, SellerGroup]:
    if not lines:
        raise EmptyCart()
    for line in lines:
        if line.quantity < 1:
            raise ValidationError(f"Invalid quantity for product {line.product_id}", product_id=line.product_id)

    address = db.execute(
        select(Address).where(Address.id == address_id, Address.user_id == buyer_id)
    ).scalar_one_or_none()
    if address is None:
        raise InvalidAddress(address_id)

    ids = {line.product_id for line in lines}
    products = {
        p.id: p
        for p in db.execute(
            select(Product).where(Product.id.in_(ids)).options(selectinload(Product.shop))
        ).scalars()
    }

    # quantities are summed per product so two lines cannot oversell together
    requested: dict[int, int] = {}
    for line in lines:
        product = products.get(line.product_id)
        if product is None:
            raise ProductNotFound(line.product_id)
        requested[line.product_id] = requested.get(line.product_id, 0) + line.quantity
        if product.stock < requested[line.product_id]:
            raise InsufficientStock(product.id, product.name, product.stock)

    now = now or utcnow()
    groups: dict[int, SellerGroup] = {}
    for line in lines:
        product = products[line.product_id]
        unit_price = effective_unit_price(product, now)
        group = groups.get(product.shop_id)
        if group is None:
            group = groups[product.shop_id] = SellerGroup(
                seller_id=product.shop_id,
                payment_account_id=product.shop.stripe_account_id,
            )
        group.lines.append(
            PricedLine(
                product_id=product.id,
                quantity=line.quantity,
                unit_price_cents=unit_price,
                total_price_cents=unit_price * line.quantity,
                product_name=product.name,
                product_image=(product.images or [None])[0],
                variation=line.variation,
            )
        )

    accounts = {g.payment_account_id for g in groups.values()}
    if len(accounts) > 1:
        raise MixedPaymentAccounts(groups.keys())

    logger.debug("cart_partitioned", buyer_id=buyer_id, sellers=list(groups), lines=len(lines))
    return groups
