"""Shipment reconciler: keeps Order tracking fields and checkpoint history in
step with courier data, on demand or from the courier's push webhook.

Status only moves forward (see ``STATUS_PRIORITY``). The regression guard is
part of the UPDATE itself, so two concurrent refreshes cannot move an order
backwards whatever order they commit in.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session

from campusmart.core.errors import (
    CourierUnavailable,
    InvalidOrderState,
    NotOrderOwner,
    OrderNotFound,
    ValidationError,
)
from campusmart.db.models import Order, OrderStatus, PaymentStatus, TrackingCheckpoint, utcnow
from campusmart.kafka.producer import emit_shipping_event
from campusmart.shipping.courier import CourierClient
from campusmart.shipping.normalize import (
    DEFAULT_DETAILED_STATUS,
    STATUS_PRIORITY,
    Checkpoint,
    NormalizedTracking,
    checkpoint_key,
    find_in_listing,
    normalize_tracking,
    normalize_tracking_object,
)

logger = structlog.get_logger(__name__)

ESTIMATED_TRANSIT = timedelta(days=4)

# pending -> processing belongs to payment settlement
COURIER_DRIVEN = {
    OrderStatus.SHIPPED.value,
    OrderStatus.DELIVERED.value,
    OrderStatus.CANCELLED.value,
}

UPSERTS = {"postgresql": pg_insert, "sqlite": sqlite_insert}


@dataclass
class TrackingSnapshot:
    tracking_number: str
    status: str
    detailed_status: str
    checkpoints: list[Checkpoint]
    source: str  # database | api | api_fallback | synthetic
    order_id: Optional[int] = None
    courier_code: Optional[str] = None
    courier_name: Optional[str] = None
    estimated_delivery: Optional[datetime] = None

    def to_dict(self) -> dict:
        return {
            "tracking_number": self.tracking_number,
            "order_id": self.order_id,
            "courier_code": self.courier_code,
            "courier_name": self.courier_name,
            "status": self.status,
            "detailed_status": self.detailed_status,
            "source": self.source,
            "estimated_delivery": self.estimated_delivery.isoformat() if self.estimated_delivery else None,
            "checkpoints": [
                {
                    "time": cp.time.isoformat(),
                    "status": cp.status,
                    "details": cp.details,
                    "location": cp.location,
                }
                for cp in self.checkpoints
            ],
        }


def find_order(db: Session, order_id: Optional[int] = None, tracking_number: Optional[str] = None) -> Optional[Order]:
    if order_id is not None:
        order = db.get(Order, order_id)
        # an order id only resolves together with its own parcel
        if order is None or (tracking_number and order.tracking_number != tracking_number):
            return None
        return order
    if tracking_number:
        return db.execute(
            select(Order).where(Order.tracking_number == tracking_number).order_by(Order.id.desc())
        ).scalars().first()
    return None


def tracking_history(db: Session, order_id: Optional[int] = None, tracking_number: Optional[str] = None) -> list[TrackingCheckpoint]:
    if order_id is None and not tracking_number:
        raise ValidationError("order_id or tracking_number is required")
    stmt = select(TrackingCheckpoint)
    if order_id is not None:
        stmt = stmt.where(TrackingCheckpoint.order_id == order_id)
    if tracking_number:
        stmt = stmt.where(TrackingCheckpoint.tracking_number == tracking_number)
    return list(db.execute(
        stmt.order_by(TrackingCheckpoint.checkpoint_time.desc(), TrackingCheckpoint.created_at.desc())
    ).scalars())


def store_checkpoints(
    db: Session,
    order_id: int,
    tracking_number: str,
    courier_code: Optional[str],
    checkpoints: list[Checkpoint],
) -> int:
    """Upsert checkpoints by dedup key and return the order's history length."""
    insert = UPSERTS.get(db.get_bind().dialect.name)
    for cp in checkpoints:
        values = {
            "id": checkpoint_key(order_id, tracking_number, cp.key_time, cp.details, cp.status),
            "order_id": order_id,
            "tracking_number": tracking_number,
            "courier_code": courier_code or "unknown",
            "status": cp.status,
            "details": cp.details,
            "location": cp.location,
            "checkpoint_time": cp.time,
            "raw_payload": cp.raw,
            "created_at": utcnow(),
        }
        if insert is None:
            db.merge(TrackingCheckpoint(**values))
            continue
        stmt = insert(TrackingCheckpoint).values(**values)
        db.execute(stmt.on_conflict_do_update(
            index_elements=["id"],
            set_={
                "status": stmt.excluded.status,
                "location": stmt.excluded.location,
                "raw_payload": stmt.excluded.raw_payload,
            },
        ))
    db.commit()
    return db.scalar(
        select(func.count()).select_from(TrackingCheckpoint).where(TrackingCheckpoint.order_id == order_id)
    )


def apply_tracking_status(
    db: Session,
    order_id: int,
    status: str,
    detailed_status: Optional[str],
    now: Optional[datetime] = None,
) -> bool:
    """Advance the order to ``status`` unless it is already at or past it.

    The detailed status text is refreshed either way. Returns True when the
    status column actually moved.
    """
    now = now or utcnow()
    advanced = False

    if status in COURIER_DRIVEN:
        lower = [s for s, p in STATUS_PRIORITY.items() if p < STATUS_PRIORITY[status]]
        values = {"status": status, "updated_at": now}
        if status in (OrderStatus.SHIPPED.value, OrderStatus.DELIVERED.value):
            values["shipped_at"] = func.coalesce(Order.shipped_at, now)
        if status == OrderStatus.DELIVERED.value:
            values["delivered_at"] = func.coalesce(Order.delivered_at, now)
        if status == OrderStatus.CANCELLED.value:
            values["cancellation_date"] = func.coalesce(Order.cancellation_date, now)
            values["cancellation_reason"] = func.coalesce(Order.cancellation_reason, detailed_status)
            values["cancelled_by"] = func.coalesce(Order.cancelled_by, "courier")
        result = db.execute(
            update(Order)
            .where(Order.id == order_id, Order.status.in_(lower))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        advanced = result.rowcount == 1

    if detailed_status:
        db.execute(
            update(Order)
            .where(Order.id == order_id)
            .values(detailed_tracking_status=detailed_status[:255])
            .execution_options(synchronize_session=False)
        )
    db.commit()

    if advanced:
        logger.info("order_status_advanced", order_id=order_id, status=status, detailed_status=detailed_status)
        emit_shipping_event({
            "type": "shipping.updated",
            "order_id": order_id,
            "status": status,
            "detailed_status": detailed_status,
        })
    else:
        logger.debug("order_status_unchanged", order_id=order_id, proposed=status)
    return advanced


def _reconcile(db: Session, order: Order, tracking: NormalizedTracking, tracking_number: str) -> None:
    courier_code = tracking.courier_code or order.courier_code
    store_checkpoints(db, order.id, tracking_number, courier_code, tracking.checkpoints)
    if tracking.courier_name or tracking.courier_code:
        db.execute(
            update(Order)
            .where(Order.id == order.id, Order.courier_name.is_(None))
            .values(courier_name=tracking.courier_name or tracking.courier_code)
            .execution_options(synchronize_session=False)
        )
        db.commit()
    apply_tracking_status(db, order.id, tracking.status, tracking.detailed_status)


def synthesize_checkpoints(order: Optional[Order], now: Optional[datetime] = None) -> list[Checkpoint]:
    if order is None:
        return [Checkpoint(time=now or utcnow(), details="Shipment information received", status="info_received")]
    cps = [Checkpoint(time=order.created_at, details="Order created", status="info_received")]
    if order.shipped_at:
        cps.append(Checkpoint(time=order.shipped_at, details="Order shipped", status="in_transit"))
    if order.delivered_at:
        cps.append(Checkpoint(time=order.delivered_at, details="Order delivered", status="delivered"))
    cps.sort(key=lambda c: c.time, reverse=True)
    return cps


def _estimate(status: str, checkpoints: list[Checkpoint]) -> Optional[datetime]:
    if status == OrderStatus.DELIVERED.value or not checkpoints:
        return None
    return min(cp.time for cp in checkpoints) + ESTIMATED_TRANSIT


def _snapshot(
    tracking_number: str,
    source: str,
    checkpoints: list[Checkpoint],
    order: Optional[Order],
    status: str,
    detailed_status: Optional[str],
    courier_code: Optional[str] = None,
    courier_name: Optional[str] = None,
) -> TrackingSnapshot:
    if order is not None:
        status = order.status
        courier_code = courier_code or order.courier_code
        courier_name = courier_name or order.courier_name
    return TrackingSnapshot(
        tracking_number=tracking_number,
        status=status,
        detailed_status=detailed_status or DEFAULT_DETAILED_STATUS,
        checkpoints=checkpoints,
        source=source,
        order_id=order.id if order is not None else None,
        courier_code=courier_code,
        courier_name=courier_name,
        estimated_delivery=_estimate(status, checkpoints),
    )


def _from_history(db: Session, order: Order, tracking_number: str) -> Optional[TrackingSnapshot]:
    rows = tracking_history(db, order_id=order.id)
    if not rows:
        return None
    cps = [Checkpoint(time=r.checkpoint_time, details=r.details, status=r.status, location=r.location) for r in rows]
    return _snapshot(tracking_number, "database", cps, order, order.status, order.detailed_tracking_status or cps[0].details)


def _fetch_remote(client: CourierClient, tracking_number: str, courier_code: Optional[str]):
    try:
        tracking = normalize_tracking(client.get_tracking(tracking_number, courier_code))
        if tracking.checkpoints:
            return tracking, "api"
    except CourierUnavailable as exc:
        logger.warning("tracking_lookup_failed", tracking_number=tracking_number, reason=exc.message)

    try:
        tracking = find_in_listing(client.list_trackings(), tracking_number)
        if tracking is not None and tracking.checkpoints:
            return tracking, "api_fallback"
    except CourierUnavailable as exc:
        logger.warning("tracking_listing_failed", tracking_number=tracking_number, reason=exc.message)
    return None, None


def get_or_create_tracking_snapshot(
    db: Session,
    tracking_number: str,
    courier_code: Optional[str] = None,
    order_id: Optional[int] = None,
    force_refresh: bool = False,
    client: Optional[CourierClient] = None,
    now: Optional[datetime] = None,
) -> TrackingSnapshot:
    """Best available tracking view for a parcel. Never raises for courier
    trouble: local history, then the courier API, then the bulk listing,
    then a timeline synthesised from the order itself."""
    order = find_order(db, order_id, tracking_number)
    courier_code = courier_code or (order.courier_code if order is not None else None)

    if order is not None and not force_refresh:
        cached = _from_history(db, order, tracking_number)
        if cached is not None:
            return cached

    tracking, source = _fetch_remote(client or CourierClient(), tracking_number, courier_code)
    if tracking is not None:
        if order is not None:
            _reconcile(db, order, tracking, tracking_number)
            db.refresh(order)
        logger.info("tracking_refreshed", tracking_number=tracking_number, source=source)
        return _snapshot(
            tracking_number, source, tracking.checkpoints, order,
            tracking.status, tracking.detailed_status,
            tracking.courier_code or courier_code, tracking.courier_name,
        )

    if order is not None:
        cached = _from_history(db, order, tracking_number)
        if cached is not None:
            return cached

    logger.info("tracking_synthesized", tracking_number=tracking_number, order_id=order.id if order else None)
    detailed = order.detailed_tracking_status if order is not None else None
    return _snapshot(
        tracking_number, "synthetic", synthesize_checkpoints(order, now), order,
        OrderStatus.PROCESSING.value, detailed, courier_code,
    )


def handle_courier_webhook(db: Session, payload: dict) -> dict:
    event = payload.get("event") if isinstance(payload, dict) else None
    data = payload.get("data") if isinstance(payload, dict) else None
    if not event or not isinstance(data, dict):
        raise ValidationError("Invalid webhook data format")
    tracking = data.get("tracking")
    if not isinstance(tracking, dict) or not tracking.get("tracking_number"):
        raise ValidationError("Missing tracking information in webhook data")

    number = tracking["tracking_number"]
    normalized = normalize_tracking_object(tracking)
    stmt = select(Order).where(Order.tracking_number == number)
    if normalized.courier_code:
        stmt = stmt.where(Order.courier_code == normalized.courier_code)
    order = db.execute(stmt.order_by(Order.id.desc())).scalars().first()
    if order is None:
        raise OrderNotFound(tracking_number=number)

    result = {"order_id": order.id, "event": event, "advanced": False, "history_length": None}
    if event == "trackings/create":
        logger.info("courier_tracking_registered", order_id=order.id, tracking_number=number)
    elif event in ("trackings/update", "trackings/checkpoint_update"):
        if normalized.checkpoints:
            result["history_length"] = store_checkpoints(
                db, order.id, number, normalized.courier_code or order.courier_code, normalized.checkpoints
            )
        if normalized.checkpoints or tracking.get("status"):
            result["advanced"] = apply_tracking_status(db, order.id, normalized.status, normalized.detailed_status)
    else:
        logger.info("courier_event_unhandled", event=event, tracking_number=number)
    return result


def attach_tracking(
    db: Session,
    order_id: int,
    seller_id: int,
    tracking_number: str,
    courier_code: str,
    client: Optional[CourierClient] = None,
    now: Optional[datetime] = None,
) -> Order:
    """Seller records the parcel for a paid order and the order ships."""
    order = db.get(Order, order_id)
    if order is None:
        raise OrderNotFound(order_id=order_id)
    if order.seller_id != seller_id:
        raise NotOrderOwner(order_id)
    if order.payment_status != PaymentStatus.PAID.value or order.status == OrderStatus.CANCELLED.value:
        raise InvalidOrderState("Only paid, active orders can be shipped", order_id=order_id)

    result = db.execute(
        update(Order)
        .where(Order.id == order_id, Order.status != OrderStatus.CANCELLED.value)
        .values(tracking_number=tracking_number, courier_code=courier_code, updated_at=now or utcnow())
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        db.rollback()
        raise InvalidOrderState("Order was cancelled", order_id=order_id)
    db.commit()
    apply_tracking_status(db, order_id, OrderStatus.SHIPPED.value, "Shipped", now=now)

    try:
        (client or CourierClient()).register_tracking(tracking_number, courier_code)
    except CourierUnavailable as exc:
        logger.warning("tracking_registration_failed", order_id=order_id, tracking_number=tracking_number, reason=exc.message)

    db.refresh(order)
    logger.info("tracking_attached", order_id=order_id, tracking_number=tracking_number, courier=courier_code)
    return order
