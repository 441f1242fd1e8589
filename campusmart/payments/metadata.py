"""Order-id correlation carried in payment session metadata.

The provider echoes the metadata back on every webhook, so this is the only
link from an inbound event to our orders. Both directions go through here.
"""
from typing import Iterable, Mapping, Optional

from campusmart.core.errors import IntegrityViolation

ORDER_IDS_KEY = "orderIds"
USER_ID_KEY = "userId"


def encode_order_ids(order_ids: Iterable[int]) -> str:
    return ",".join(str(int(i)) for i in order_ids)


def build_metadata(order_ids: Iterable[int], buyer_id: int) -> dict[str, str]:
    return {ORDER_IDS_KEY: encode_order_ids(order_ids), USER_ID_KEY: str(buyer_id)}


def parse_order_ids(metadata: Optional[Mapping]) -> list[int]:
    """Parse the comma-joined id list; anything absent or malformed raises
    IntegrityViolation rather than a parsing error."""
    raw = (metadata or {}).get(ORDER_IDS_KEY)
    if not raw or not isinstance(raw, str):
        raise IntegrityViolation("Event metadata has no order ids")
    ids = []
    for part in raw.split(","):
        part = part.strip()
        if not part.isdigit():
            raise IntegrityViolation(f"Unparseable order id {part!r} in event metadata")
        ids.append(int(part))
    # order preserved, duplicates dropped
    return list(dict.fromkeys(ids))


def parse_buyer_id(metadata: Optional[Mapping]) -> Optional[int]:
    raw = (metadata or {}).get(USER_ID_KEY)
    if isinstance(raw, str) and raw.isdigit():
        return int(raw)
    return None
