from datetime import datetime
from typing import List, Optional

import structlog
from fastapi import APIRouter, BackgroundTasks, Body, Depends, Header, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from campusmart.checkout.orders import create_orders
from campusmart.checkout.partition import CartLine, partition_cart
from campusmart.core.auth import get_current_identity, user_id
from campusmart.core.errors import InvalidSignature, NotOrderOwner, OrderNotFound
from campusmart.db import models
from campusmart.db.session import get_db
from campusmart.notifications.mailer import send_receipts
from campusmart.payments.session import create_payment_session
from campusmart.payments.webhook import handle_payment_event
from campusmart.shipping.reconciler import (
    attach_tracking,
    find_order,
    get_or_create_tracking_snapshot,
    handle_courier_webhook,
    tracking_history,
)

logger = structlog.get_logger(__name__)

router = APIRouter()


def owned_shop_ids(db: Session, uid: int) -> set[int]:
    return set(db.execute(select(models.Shop.id).where(models.Shop.owner_id == uid)).scalars())


def ensure_party(db: Session, order: models.Order, uid: int) -> None:
    if order.buyer_id != uid and order.seller_id not in owned_shop_ids(db, uid):
        raise NotOrderOwner(order.id)


# --- checkout ---

class CheckoutLine(BaseModel):
    product_id: int
    quantity: int = Field(ge=1)
    variation: Optional[str] = None

class CheckoutIn(BaseModel):
    address_id: int
    items: List[CheckoutLine]

class CheckoutOut(BaseModel):
    url: str
    session_id: str
    order_ids: List[int]
    order_numbers: List[str]

@router.post("/v1/checkout", response_model=CheckoutOut)
def checkout(payload: CheckoutIn, identity: dict = Depends(get_current_identity), db: Session = Depends(get_db)):
    buyer_id = user_id(identity)
    lines = [CartLine(product_id=i.product_id, quantity=i.quantity, variation=i.variation) for i in payload.items]
    groups = partition_cart(db, buyer_id, lines, payload.address_id)
    orders = create_orders(db, groups, buyer_id, payload.address_id)
    result = create_payment_session(db, orders, customer_email=identity.get("sub"))
    return CheckoutOut(
        url=result.redirect_url,
        session_id=result.session_id,
        order_ids=[o.id for o in orders],
        order_numbers=[o.order_number for o in orders],
    )


# --- orders ---

class OrderItemOut(BaseModel):
    product_id: int
    product_name: str
    quantity: int
    unit_price_cents: int
    total_price_cents: int
    variation: Optional[str] = None
    product_image: Optional[str] = None

    class Config:
        from_attributes = True

class OrderOut(BaseModel):
    id: int
    order_number: str
    seller_id: int
    buyer_id: int
    status: str
    payment_status: str
    total_cents: int
    platform_fee_cents: int
    seller_payout_cents: int
    currency: str
    tracking_number: Optional[str] = None
    courier_code: Optional[str] = None
    courier_name: Optional[str] = None
    detailed_tracking_status: Optional[str] = None
    shipped_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    cancellation_reason: Optional[str] = None
    created_at: datetime
    items: List[OrderItemOut]

    class Config:
        from_attributes = True

@router.get("/v1/orders/{order_id}", response_model=OrderOut)
def get_order(order_id: int, identity: dict = Depends(get_current_identity), db: Session = Depends(get_db)):
    order = db.get(models.Order, order_id)
    if not order:
        raise OrderNotFound(order_id=order_id)
    ensure_party(db, order, user_id(identity))
    return OrderOut.model_validate(order)


class AttachTrackingIn(BaseModel):
    tracking_number: str = Field(min_length=1, max_length=64)
    courier_code: str = Field(min_length=1, max_length=64)

@router.patch("/v1/seller/orders/{order_id}/tracking", response_model=OrderOut)
def set_tracking(order_id: int, payload: AttachTrackingIn, identity: dict = Depends(get_current_identity), db: Session = Depends(get_db)):
    order = db.get(models.Order, order_id)
    if not order:
        raise OrderNotFound(order_id=order_id)
    if order.seller_id not in owned_shop_ids(db, user_id(identity)):
        raise NotOrderOwner(order_id)
    order = attach_tracking(db, order_id, order.seller_id, payload.tracking_number, payload.courier_code)
    return OrderOut.model_validate(order)


# --- tracking ---

@router.get("/v1/tracking")
def get_tracking(
    tracking_number: str,
    courier: Optional[str] = None,
    order_id: Optional[int] = None,
    refresh: bool = False,
    identity: dict = Depends(get_current_identity),
    db: Session = Depends(get_db),
):
    order = find_order(db, order_id, tracking_number)
    if order_id is not None and order is None:
        raise OrderNotFound(order_id=order_id)
    if order is not None:
        ensure_party(db, order, user_id(identity))
    snapshot = get_or_create_tracking_snapshot(
        db, tracking_number, courier_code=courier, order_id=order_id, force_refresh=refresh
    )
    return snapshot.to_dict()

@router.get("/v1/tracking/history")
def get_tracking_history(
    order_id: Optional[int] = None,
    tracking_number: Optional[str] = None,
    identity: dict = Depends(get_current_identity),
    db: Session = Depends(get_db),
):
    uid = user_id(identity)
    if order_id is not None:
        order = db.get(models.Order, order_id)
        if not order:
            raise OrderNotFound(order_id=order_id)
        ensure_party(db, order, uid)
    shops = owned_shop_ids(db, uid)
    rows = [
        r for r in tracking_history(db, order_id=order_id, tracking_number=tracking_number)
        if r.order.buyer_id == uid or r.order.seller_id in shops
    ]
    return {
        "count": len(rows),
        "checkpoints": [
            {
                "time": r.checkpoint_time.isoformat(),
                "status": r.status,
                "details": r.details,
                "location": r.location,
                "courier_code": r.courier_code,
            }
            for r in rows
        ],
    }


# --- provider webhooks ---

@router.post("/v1/webhooks/stripe")
async def stripe_webhook(
    request: Request,
    background: BackgroundTasks,
    stripe_signature: Optional[str] = Header(default=None, alias="Stripe-Signature"),
    stripe_account: Optional[str] = Header(default=None, alias="Stripe-Account"),
    db: Session = Depends(get_db),
):
    raw_body = await request.body()
    try:
        outcome = await run_in_threadpool(handle_payment_event, db, raw_body, stripe_signature, stripe_account)
    except InvalidSignature:
        logger.warning("payment_webhook_bad_signature")
        return JSONResponse(status_code=400, content={"error": "Invalid signature"})
    except SQLAlchemyError:
        logger.exception("payment_webhook_failed")
        return JSONResponse(status_code=500, content={"error": "Webhook processing failed"})

    if outcome.paid_order_ids:
        background.add_task(send_receipts, outcome.paid_order_ids)
    return {"received": True}

@router.post("/v1/webhooks/tracking")
def tracking_webhook(payload: dict = Body(...), db: Session = Depends(get_db)):
    result = handle_courier_webhook(db, payload)
    return {"received": True, **result}
