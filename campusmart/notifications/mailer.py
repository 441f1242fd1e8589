"""Receipt email for paid orders.

Delivery happens after the payment transaction is committed and never
affects the webhook response: each receipt is retried with a growing delay
and a final failure is only logged.
"""
import smtplib
import time
from email.mime.text import MIMEText
from typing import Callable, Iterable

import structlog
from sqlalchemy import select
from sqlalchemy.orm import Session, selectinload

from campusmart.core.config import settings
from campusmart.core.errors import MailDeliveryFailed
from campusmart.db.models import Order
from campusmart.db.session import SessionLocal

logger = structlog.get_logger(__name__)


def send_email(to: str, subject: str, body: str):
    msg = MIMEText(body, "html")
    msg["Subject"] = subject
    msg["From"] = settings.FROM_EMAIL
    msg["To"] = to
    try:
        with smtplib.SMTP(settings.SMTP_HOST, settings.SMTP_PORT, timeout=settings.HTTP_TIMEOUT) as s:
            s.sendmail(settings.FROM_EMAIL, [to], msg.as_string())
    except (smtplib.SMTPException, OSError) as exc:
        raise MailDeliveryFailed(f"SMTP delivery to {to} failed: {exc}") from exc


def format_amount(cents: int) -> str:
    return f"RM {cents / 100:.2f}"


def render_receipt(order: Order) -> tuple[str, str]:
    rows = "".join(
        f"<tr><td>{it.product_name}</td>"
        f"<td style=\"text-align:center\">{it.quantity}</td>"
        f"<td style=\"text-align:right\">{format_amount(it.unit_price_cents)}</td>"
        f"<td style=\"text-align:right\">{format_amount(it.total_price_cents)}</td></tr>"
        for it in order.items
    )
    name = order.buyer.full_name or order.buyer.email
    body = (
        "<h1>Thank you for your purchase!</h1>"
        f"<p>Dear {name},</p>"
        "<p>Your payment was successful. Here are your order details:</p>"
        f"<p><strong>Order ID:</strong> {order.order_number}<br>"
        f"<strong>Date:</strong> {order.created_at:%d %B %Y}<br>"
        f"<strong>Total Amount:</strong> {format_amount(order.total_cents)}</p>"
        "<table><thead><tr><th>Product</th><th>Quantity</th><th>Unit Price</th><th>Total</th></tr></thead>"
        f"<tbody>{rows}</tbody></table>"
        "<p>You can track your order status in your account dashboard.</p>"
    )
    return f"Order Confirmation #{order.order_number}", body


def send_receipt_with_retry(
    order: Order,
    send: Callable[[str, str, str], None] = send_email,
    sleep: Callable[[float], None] = time.sleep,
    attempts: int | None = None,
) -> bool:
    attempts = attempts or settings.EMAIL_MAX_ATTEMPTS
    if not order.buyer or not order.buyer.email:
        logger.error("receipt_skipped_no_email", order_id=order.id)
        return False

    subject, body = render_receipt(order)
    for attempt in range(1, attempts + 1):
        try:
            send(order.buyer.email, subject, body)
        except MailDeliveryFailed as exc:
            logger.warning("receipt_send_failed", order_id=order.id, attempt=attempt, error=str(exc))
            if attempt < attempts:
                sleep(settings.EMAIL_BACKOFF_SECONDS * attempt)
            continue
        logger.info("receipt_sent", order_id=order.id, to=order.buyer.email, attempt=attempt)
        return True

    logger.error("receipt_abandoned", order_id=order.id, attempts=attempts)
    return False


def send_receipts(
    order_ids: Iterable[int],
    session_factory: Callable[[], Session] = SessionLocal,
    send: Callable[[str, str, str], None] = send_email,
    sleep: Callable[[float], None] = time.sleep,
) -> dict[int, bool]:
    """Background job: one retried receipt per newly paid order."""
    ids = list(order_ids)
    if not ids:
        return {}
    results = {}
    db = session_factory()
    try:
        stmt = (
            select(Order)
            .where(Order.id.in_(ids))
            .options(selectinload(Order.items), selectinload(Order.buyer))
        )
        for order in db.execute(stmt).scalars():
            results[order.id] = send_receipt_with_retry(order, send=send, sleep=sleep)
    finally:
        db.close()
    return results
