"""Post-commit side effects: cart cleanup and event publishing."""
from kafka.errors import KafkaError
from redis.exceptions import ConnectionError as RedisConnectionError

from campusmart.cart.store import cart_key, remove_products
from campusmart.core.config import settings
from campusmart.kafka import producer


class StubRedis:
    def __init__(self, fail=False):
        self.fail = fail
        self.calls = []

    def hdel(self, key, *fields):
        if self.fail:
            raise RedisConnectionError("redis down")
        self.calls.append((key, fields))
        return len(fields)


class TestCartStore:
    def test_removes_purchased_products(self):
        r = StubRedis()
        assert remove_products(7, [20, 10, 10], client=r) == 2
        assert r.calls == [(cart_key(7), ("10", "20"))]

    def test_redis_outage_is_tolerated(self):
        assert remove_products(7, [10], client=StubRedis(fail=True)) == 0

    def test_nothing_to_remove(self):
        r = StubRedis()
        assert remove_products(7, [], client=r) == 0
        assert r.calls == []


class StubProducer:
    def __init__(self, fail=False):
        self.fail = fail
        self.sent = []

    def send(self, topic, key=None, value=None):
        if self.fail:
            raise KafkaError("broker down")
        self.sent.append((topic, key, value))

    def flush(self, timeout=None):
        pass


class TestEventPublishing:
    def test_disabled_by_setting(self, monkeypatch):
        stub = StubProducer()
        monkeypatch.setattr(producer, "get_producer", lambda: stub)
        producer.emit_order_event({"type": "order.created", "order_id": 1})
        assert stub.sent == []

    def test_keyed_by_order_id(self, monkeypatch):
        stub = StubProducer()
        monkeypatch.setattr(settings, "KAFKA_ENABLED", True)
        monkeypatch.setattr(producer, "get_producer", lambda: stub)
        producer.emit_shipping_event({"type": "shipping.updated", "order_id": 5})
        assert stub.sent == [(settings.TOPIC_SHIPPING_EVENTS, "5", {"type": "shipping.updated", "order_id": 5})]

    def test_broker_failure_does_not_raise(self, monkeypatch):
        monkeypatch.setattr(settings, "KAFKA_ENABLED", True)
        monkeypatch.setattr(producer, "get_producer", lambda: StubProducer(fail=True))
        producer.emit_payment_event({"type": "payment.succeeded", "order_id": 5})
