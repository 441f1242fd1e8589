"""Courier response normalisation.

tracking.my answers in several shapes depending on endpoint and courier:

    {"tracking": {"latest_checkpoint": {...}}}
    {"tracking": {"checkpoints": [...]}}
    {"data": {"checkpoints": [...]}}

and the push webhook and bulk listing carry a bare tracking object. All of
them collapse to one ``NormalizedTracking``.
"""
import hashlib
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

from campusmart.db.models import OrderStatus, utcnow

STATUS_PRIORITY = {
    OrderStatus.PENDING.value: 1,
    OrderStatus.PROCESSING.value: 2,
    OrderStatus.SHIPPED.value: 3,
    OrderStatus.DELIVERED.value: 4,
    OrderStatus.CANCELLED.value: 5,
}

# free-text courier status, first substring match wins
STATUS_TABLE = [
    ("info received", OrderStatus.PENDING.value),
    ("available for pickup", OrderStatus.PENDING.value),
    ("pending", OrderStatus.PENDING.value),
    ("generated", OrderStatus.PROCESSING.value),
    ("printed", OrderStatus.PROCESSING.value),
    ("in transit", OrderStatus.SHIPPED.value),
    ("delivery office", OrderStatus.SHIPPED.value),
    ("out for delivery", OrderStatus.SHIPPED.value),
    ("attempt fail", OrderStatus.SHIPPED.value),
    ("exception", OrderStatus.SHIPPED.value),
    ("delivered", OrderStatus.DELIVERED.value),
    ("completed", OrderStatus.DELIVERED.value),
    ("cancelled", OrderStatus.CANCELLED.value),
    ("returned", OrderStatus.CANCELLED.value),
    ("expired", OrderStatus.CANCELLED.value),
]

COURIER_STATUS_CODES = {
    "info_received": OrderStatus.PROCESSING.value,
    "pending": OrderStatus.PROCESSING.value,
    "in_transit": OrderStatus.SHIPPED.value,
    "out_for_delivery": OrderStatus.SHIPPED.value,
    "exception": OrderStatus.SHIPPED.value,
    "failed_attempt": OrderStatus.SHIPPED.value,
    "delivered": OrderStatus.DELIVERED.value,
    "cancelled": OrderStatus.CANCELLED.value,
    "returned": OrderStatus.CANCELLED.value,
    "expired": OrderStatus.CANCELLED.value,
}

DEFAULT_DETAILED_STATUS = "Processing"


@dataclass(frozen=True)
class Checkpoint:
    time: datetime
    details: str
    status: str = "info_received"
    location: str = ""
    raw: Optional[dict] = field(default=None, compare=False)
    # no courier time; ``time`` is the ingest time and stays out of the key
    untimed: bool = field(default=False, compare=False)

    @property
    def key_time(self) -> Optional[datetime]:
        return None if self.untimed else self.time


@dataclass
class NormalizedTracking:
    checkpoints: list[Checkpoint]
    status: str
    detailed_status: str
    courier_code: Optional[str] = None
    courier_name: Optional[str] = None
    tracking_number: Optional[str] = None


def map_detailed_status(text: Optional[str]) -> str:
    lowered = (text or "").lower()
    for needle, status in STATUS_TABLE:
        if needle in lowered:
            return status
    return OrderStatus.PROCESSING.value


def map_courier_status(code: Optional[str], detailed: Optional[str] = None) -> str:
    if code:
        mapped = COURIER_STATUS_CODES.get(str(code).strip().lower())
        if mapped:
            return mapped
    return map_detailed_status(detailed or code)


def parse_time(value) -> Optional[datetime]:
    """ISO-8601 (with or without offset) or epoch seconds -> naive UTC."""
    if value is None or value == "":
        return None
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc).replace(tzinfo=None)
    if isinstance(value, datetime):
        dt = value
    else:
        text = str(value).strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            dt = datetime.fromisoformat(text)
        except ValueError:
            return None
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt


def parse_checkpoint(cp: dict) -> Checkpoint:
    when = None
    for key in ("time", "checkpoint_time", "created_at", "date"):
        when = parse_time(cp.get(key))
        if when is not None:
            break
    details = (
        cp.get("content")
        or cp.get("message")
        or cp.get("description")
        or cp.get("status")
        or "Status update"
    )
    return Checkpoint(
        time=when or utcnow(),
        details=str(details),
        status=str(cp.get("status") or "info_received"),
        location=str(cp.get("location") or ""),
        raw=cp,
        untimed=when is None,
    )


def _courier(tracking: dict) -> tuple[Optional[str], Optional[str]]:
    courier = tracking.get("courier")
    if isinstance(courier, dict):
        return courier.get("code"), courier.get("name")
    code = courier or tracking.get("courier_code") or tracking.get("slug")
    return code, tracking.get("courier_name")


def tracking_number_of(tracking: dict) -> Optional[str]:
    return tracking.get("tracking_number") or tracking.get("number") or tracking.get("trackingNumber")


def normalize_tracking_object(tracking: dict) -> NormalizedTracking:
    raw = []
    if isinstance(tracking.get("checkpoints"), list):
        raw.extend(c for c in tracking["checkpoints"] if isinstance(c, dict))
    if isinstance(tracking.get("latest_checkpoint"), dict):
        raw.append(tracking["latest_checkpoint"])

    seen = set()
    checkpoints = []
    for cp in map(parse_checkpoint, raw):
        if (cp.key_time, cp.details) in seen:
            continue
        seen.add((cp.key_time, cp.details))
        checkpoints.append(cp)
    checkpoints.sort(key=lambda c: c.time, reverse=True)

    detailed = checkpoints[0].details if checkpoints else (tracking.get("status") or DEFAULT_DETAILED_STATUS)
    code, name = _courier(tracking)
    return NormalizedTracking(
        checkpoints=checkpoints,
        status=map_courier_status(tracking.get("status"), detailed),
        detailed_status=str(detailed),
        courier_code=code,
        courier_name=name,
        tracking_number=tracking_number_of(tracking),
    )


def normalize_tracking(payload: dict) -> NormalizedTracking:
    if isinstance(payload.get("tracking"), dict):
        return normalize_tracking_object(payload["tracking"])
    if isinstance(payload.get("data"), dict):
        return normalize_tracking_object(payload["data"])
    return normalize_tracking_object(payload)


def find_in_listing(trackings: list[dict], tracking_number: str) -> Optional[NormalizedTracking]:
    for t in trackings:
        if tracking_number_of(t) == tracking_number:
            return normalize_tracking_object(t)
    return None


def checkpoint_key(order_id: int, tracking_number: str, when: Optional[datetime], details: str, status: Optional[str] = None) -> str:
    if when is None:
        raw = f"{order_id}|{tracking_number}|untimed|{details}|{status or ''}"
    else:
        raw = f"{order_id}|{tracking_number}|{when.isoformat()}|{details}"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()
