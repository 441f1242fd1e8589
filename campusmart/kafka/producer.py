from kafka import KafkaProducer
from kafka.errors import KafkaError
import json
import structlog
from campusmart.core.config import settings

logger = structlog.get_logger(__name__)

_producer = None

def get_producer() -> KafkaProducer:
    global _producer
    if _producer is None:
        _producer = KafkaProducer(
            bootstrap_servers=[settings.KAFKA_BOOTSTRAP],
            value_serializer=lambda v: json.dumps(v, default=str).encode("utf-8"),
            key_serializer=lambda v: (v.encode("utf-8") if isinstance(v, str) else v),
            linger_ms=5,
            retries=3,
        )
    return _producer

def send(topic: str, key: str, value: dict):
    """Publish one event. Callers run this after their transaction commits,
    so a broker outage is logged instead of failing the request."""
    if not settings.KAFKA_ENABLED:
        return
    try:
        p = get_producer()
        p.send(topic, key=key, value=value)
        p.flush(5)
    except KafkaError:
        logger.exception("event_publish_failed", topic=topic, key=key, type=value.get("type"))

def emit_order_event(event: dict):
    send(settings.TOPIC_ORDER_EVENTS, key=str(event.get("order_id", "")), value=event)

def emit_payment_event(event: dict):
    send(settings.TOPIC_PAYMENT_EVENTS, key=str(event.get("order_id", "")), value=event)

def emit_shipping_event(event: dict):
    send(settings.TOPIC_SHIPPING_EVENTS, key=str(event.get("order_id", "")), value=event)
