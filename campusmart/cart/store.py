"""Buyer cart hash in Redis, shared with the cart service.

Layout: ``cart:{user_id}`` -> {product_id: item_json}. Settlement only removes
purchased products once an order is paid.
"""
from typing import Iterable
from redis import Redis
from redis.exceptions import RedisError
import structlog
from campusmart.core.config import settings

logger = structlog.get_logger(__name__)

def get_client() -> Redis:
    return Redis.from_url(settings.REDIS_URL, decode_responses=True, socket_timeout=settings.HTTP_TIMEOUT)

def cart_key(user_id: int) -> str:
    return f"cart:{user_id}"

def remove_products(user_id: int, product_ids: Iterable[int], client: Redis | None = None) -> int:
    fields = sorted({str(pid) for pid in product_ids})
    if not fields:
        return 0
    r = client or get_client()
    try:
        removed = r.hdel(cart_key(user_id), *fields)
    except RedisError:
        logger.warning("cart_clear_failed", user_id=user_id, product_ids=fields, exc_info=True)
        return 0
    logger.info("cart_cleared", user_id=user_id, removed=removed)
    return removed
