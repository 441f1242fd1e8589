"""Settlement reconciler: applies payment provider webhooks to orders.

Deliveries are at-least-once and may arrive concurrently. Every order
mutation is a conditional UPDATE on the fields it transitions, and stock is
only decremented when that UPDATE matched a row, so a redelivered event is a
no-op (``ConflictIgnored``) rather than a second decrement.
"""
import json
from dataclasses import dataclass, field
from typing import Callable, Optional

import structlog
from sqlalchemy import case, select, update
from sqlalchemy.orm import Session

from campusmart.cart.store import remove_products
from campusmart.core.errors import ConflictIgnored, IntegrityViolation
from campusmart.db.models import Order, OrderItem, OrderStatus, PaymentStatus, Product, utcnow
from campusmart.kafka.producer import emit_payment_event
from campusmart.payments.gateway import PaymentGateway, get_gateway
from campusmart.payments.metadata import parse_buyer_id, parse_order_ids

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class PaymentEvent:
    id: str
    type: str
    object_id: Optional[str]
    metadata: dict
    session_id: Optional[str]
    source_account_id: Optional[str]
    payment_status: Optional[str] = None


@dataclass
class SettlementOutcome:
    event_type: str
    result: str = "ignored"  # applied | ignored | integrity_violation | unhandled
    applied: list[int] = field(default_factory=list)
    conflicts: list[int] = field(default_factory=list)
    buyer_id: Optional[int] = None

    @property
    def paid_order_ids(self) -> list[int]:
        if self.event_type in PAID_EVENTS:
            return list(self.applied)
        return []


def parse_event(raw_body: bytes, source_account_id: Optional[str] = None) -> PaymentEvent:
    try:
        body = json.loads(raw_body)
    except ValueError as e:
        raise IntegrityViolation("Webhook body is not valid JSON") from e
    if not isinstance(body, dict) or not body.get("type"):
        raise IntegrityViolation("Webhook body has no event type")

    obj = (body.get("data") or {}).get("object") or {}
    event_type = body["type"]
    return PaymentEvent(
        id=body.get("id", ""),
        type=event_type,
        object_id=obj.get("id"),
        metadata=obj.get("metadata") or {},
        session_id=obj.get("id") if event_type.startswith("checkout.session.") else None,
        source_account_id=source_account_id or body.get("account"),
        payment_status=obj.get("payment_status"),
    )


def _source_matches(event: PaymentEvent):
    clauses = []
    if event.session_id:
        clauses.append(Order.payment_session_id == event.session_id)
    if event.source_account_id:
        clauses.append(Order.payment_account_id == event.source_account_id)
    else:
        clauses.append(Order.payment_account_id.is_(None))
    return clauses


def mark_paid(db: Session, order_id: int, event: PaymentEvent) -> None:
    """pending/unpaid -> processing/paid, or ConflictIgnored."""
    result = db.execute(
        update(Order)
        .where(
            Order.id == order_id,
            Order.status == OrderStatus.PENDING.value,
            Order.payment_status == PaymentStatus.UNPAID.value,
            *_source_matches(event),
        )
        .values(status=OrderStatus.PROCESSING.value, payment_status=PaymentStatus.PAID.value, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise ConflictIgnored("Order already settled or not from this source", order_id=order_id)


def mark_failed(db: Session, order_id: int, event: PaymentEvent, reason: str) -> None:
    """unpaid -> failed and the order -> cancelled, or ConflictIgnored."""
    now = utcnow()
    result = db.execute(
        update(Order)
        .where(
            Order.id == order_id,
            Order.payment_status == PaymentStatus.UNPAID.value,
            Order.status != OrderStatus.CANCELLED.value,
            *_source_matches(event),
        )
        .values(
            status=OrderStatus.CANCELLED.value,
            payment_status=PaymentStatus.FAILED.value,
            cancellation_date=now,
            cancellation_reason=reason,
            cancelled_by="system",
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise ConflictIgnored("Order already settled or not from this source", order_id=order_id)


def decrement_stock(db: Session, order_id: int) -> list[int]:
    """Floored stock decrement for every item of one order. Only called
    inside the transaction whose mark_paid matched."""
    items = db.execute(
        select(OrderItem.product_id, OrderItem.quantity).where(OrderItem.order_id == order_id)
    ).all()
    for product_id, qty in items:
        db.execute(
            update(Product)
            .where(Product.id == product_id)
            .values(stock=case((Product.stock > qty, Product.stock - qty), else_=0))
            .execution_options(synchronize_session=False)
        )
    return [pid for pid, _ in items]


def _settle(db: Session, event: PaymentEvent, apply: Callable[[int], None], paid: bool) -> SettlementOutcome:
    outcome = SettlementOutcome(event_type=event.type, buyer_id=parse_buyer_id(event.metadata))
    order_ids = parse_order_ids(event.metadata)
    purchased: list[int] = []

    for order_id in order_ids:
        try:
            apply(order_id)
        except ConflictIgnored:
            outcome.conflicts.append(order_id)
            continue
        if paid:
            purchased.extend(decrement_stock(db, order_id))
        outcome.applied.append(order_id)
    db.commit()

    outcome.result = "applied" if outcome.applied else "ignored"
    logger.info(
        "payment_event_settled",
        event_id=event.id,
        event_type=event.type,
        applied=outcome.applied,
        conflicts=outcome.conflicts,
        account=event.source_account_id or "platform",
    )

    for order_id in outcome.applied:
        emit_payment_event({
            "type": "payment.succeeded" if paid else "payment.failed",
            "order_id": order_id,
            "buyer_id": outcome.buyer_id,
            "session_id": event.session_id,
            "provider_event_id": event.id,
        })
    if paid and purchased and outcome.buyer_id is not None:
        remove_products(outcome.buyer_id, purchased)
    return outcome


def _on_paid(db: Session, event: PaymentEvent) -> SettlementOutcome:
    if event.type == "checkout.session.completed" and event.payment_status == "unpaid":
        # delayed payment methods settle later via async_payment_succeeded
        logger.info("checkout_completed_awaiting_payment", session_id=event.session_id)
        return SettlementOutcome(event_type=event.type)
    return _settle(db, event, lambda oid: mark_paid(db, oid, event), paid=True)


def _on_failed(reason: str):
    def handler(db: Session, event: PaymentEvent) -> SettlementOutcome:
        return _settle(db, event, lambda oid: mark_failed(db, oid, event, reason), paid=False)
    return handler


PAID_EVENTS = {
    "checkout.session.completed",
    "checkout.session.async_payment_succeeded",
    "payment_intent.succeeded",
}

HANDLERS = {
    "checkout.session.completed": _on_paid,
    "checkout.session.async_payment_succeeded": _on_paid,
    "payment_intent.succeeded": _on_paid,
    "payment_intent.payment_failed": _on_failed("Payment failed"),
    "checkout.session.async_payment_failed": _on_failed("Payment failed"),
    "checkout.session.expired": _on_failed("Checkout session expired"),
}


def handle_payment_event(
    db: Session,
    raw_body: bytes,
    signature: Optional[str],
    source_account_id: Optional[str] = None,
    gateway: Optional[PaymentGateway] = None,
) -> SettlementOutcome:
    """Verify, parse and apply one webhook delivery.

    Raises InvalidSignature before looking at the body. Integrity problems
    are logged and reported in the outcome, never raised, so the provider
    gets an acknowledgment and does not retry a delivery that can never
    succeed. Store errors propagate so the provider does retry.
    """
    (gateway or get_gateway()).verify_webhook(raw_body, signature)

    try:
        event = parse_event(raw_body, source_account_id)
    except IntegrityViolation as exc:
        logger.warning("payment_event_rejected", reason=exc.message)
        return SettlementOutcome(event_type="unknown", result="integrity_violation")

    handler = HANDLERS.get(event.type)
    if handler is None:
        logger.info("payment_event_unhandled", event_id=event.id, event_type=event.type)
        return SettlementOutcome(event_type=event.type, result="unhandled")

    try:
        return handler(db, event)
    except IntegrityViolation as exc:
        db.rollback()
        logger.warning(
            "payment_event_integrity_violation",
            event_id=event.id,
            event_type=event.type,
            object_id=event.object_id,
            reason=exc.message,
        )
        return SettlementOutcome(event_type=event.type, result="integrity_violation")
