import os

os.environ.setdefault("ENVIRONMENT", "test")
os.environ["POSTGRES_DSN"] = "sqlite://"
os.environ["KAFKA_ENABLED"] = "false"
os.environ["PAYMENT_GATEWAY"] = "fake"
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_test"
os.environ["JWT_SECRET"] = "test-secret"
os.environ["TRACKING_API_KEY"] = ""
os.environ["EMAIL_BACKOFF_SECONDS"] = "1.0"
os.environ["EMAIL_MAX_ATTEMPTS"] = "3"

import json
from datetime import datetime
from types import SimpleNamespace

import jwt
import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from campusmart.checkout.orders import create_orders
from campusmart.checkout.partition import CartLine, partition_cart
from campusmart.db.models import Address, Order, OrderStatus, PaymentStatus, Product, Shop, User
from campusmart.db.session import Base
from campusmart.payments.gateway import FakeGateway, reset_gateway, set_gateway
from campusmart.payments.session import create_payment_session
from campusmart.payments.webhook import handle_payment_event


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, autocommit=False)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def gateway():
    gw = FakeGateway("whsec_test")
    set_gateway(gw)
    yield gw
    reset_gateway()


@pytest.fixture(autouse=True)
def cart_removals(monkeypatch):
    """Stand-in for the Redis cart: records (buyer_id, product_ids) calls."""
    calls = []
    monkeypatch.setattr(
        "campusmart.payments.webhook.remove_products",
        lambda user_id, product_ids: calls.append((user_id, sorted(set(product_ids)))) or len(calls),
    )
    return calls


@pytest.fixture
def market(db):
    """Buyer 1 with address 1; shop A (owner 2) and shop B (owner 3) on the
    platform account; one product each."""
    db.add_all([
        User(id=1, email="buyer@student.example.edu", full_name="Aisyah", role="buyer"),
        User(id=2, email="seller-a@student.example.edu", full_name="Seller A", role="seller"),
        User(id=3, email="seller-b@student.example.edu", full_name="Seller B", role="seller"),
        User(id=4, email="other@student.example.edu", full_name="Someone Else", role="buyer"),
    ])
    db.flush()
    db.add_all([
        Address(id=1, user_id=1, line1="Kolej Mawar", city="Shah Alam", postcode="40450", state="Selangor"),
        Address(id=2, user_id=4, line1="Kolej Melati", city="Shah Alam", postcode="40450", state="Selangor"),
        Shop(id=1, owner_id=2, name="Shop A"),
        Shop(id=2, owner_id=3, name="Shop B"),
    ])
    db.flush()
    db.add_all([
        Product(id=10, shop_id=1, name="Calculus Notes", price_cents=2500, stock=10,
                images=["https://cdn.example.com/notes.jpg"]),
        Product(id=20, shop_id=2, name="Convocation Print", price_cents=4000, stock=5,
                images=["data:image/png;base64,AAAA"],
                discount_percentage=10, discounted_price_cents=3600,
                discount_start=datetime(2026, 1, 1), discount_end=datetime(2026, 12, 31)),
    ])
    db.commit()
    return SimpleNamespace(buyer_id=1, address_id=1, shop_a=1, shop_b=2, product_a=10, product_b=20)


@pytest.fixture
def checkout(db, market, gateway):
    """Run the checkout path for the standard two-seller cart and return the
    orders (refreshed, with their session id)."""
    def run(lines=None, now=datetime(2026, 6, 1)):
        lines = lines or [CartLine(market.product_a, 2), CartLine(market.product_b, 1)]
        groups = partition_cart(db, market.buyer_id, lines, market.address_id, now=now)
        orders = create_orders(db, groups, market.buyer_id, market.address_id)
        create_payment_session(db, orders, customer_email="buyer@student.example.edu", gateway=gateway)
        return orders
    return run


@pytest.fixture
def deliver(db, gateway):
    """Sign and hand one provider event to the settlement reconciler."""
    def send(event_type, obj, account=None, event_id="evt_1", signature=None):
        body = json.dumps({"id": event_id, "type": event_type, "data": {"object": obj}}).encode()
        sig = gateway.sign(body) if signature is None else signature
        return handle_payment_event(db, body, sig, source_account_id=account, gateway=gateway)
    return send


def session_object(orders, buyer_id=1, **extra):
    obj = {
        "id": orders[0].payment_session_id,
        "payment_status": "paid",
        "metadata": {"orderIds": ",".join(str(o.id) for o in orders), "userId": str(buyer_id)},
    }
    obj.update(extra)
    return obj


@pytest.fixture
def session_event():
    return session_object


@pytest.fixture
def make_order(db, market):
    """Insert a bare order for shipment tests, paid and processing by default."""
    counter = {"n": 0}

    def make(status=OrderStatus.PROCESSING.value, payment_status=PaymentStatus.PAID.value,
             tracking_number=None, courier_code=None, created_at=datetime(2026, 10, 1, 8, 0)):
        counter["n"] += 1
        order = Order(
            order_number=f"UITM-1-test-{counter['n']}",
            checkout_token="UITM-1-test",
            seller_id=market.shop_a,
            buyer_id=market.buyer_id,
            address_id=market.address_id,
            total_cents=5000,
            platform_fee_cents=250,
            seller_payout_cents=4750,
            status=status,
            payment_status=payment_status,
            tracking_number=tracking_number,
            courier_code=courier_code,
            created_at=created_at,
        )
        db.add(order)
        db.commit()
        db.refresh(order)
        return order
    return make


def make_token(uid, email="buyer@student.example.edu", token_type="access"):
    return jwt.encode({"uid": uid, "sub": email, "type": token_type}, "test-secret", algorithm="HS256")


@pytest.fixture
def auth_header():
    return lambda uid, email="buyer@student.example.edu": {"Authorization": f"Bearer {make_token(uid, email)}"}
