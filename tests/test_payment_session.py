"""Payment session creation and the gateway adapters."""
import hashlib
import hmac
import time

import pytest
import stripe

from campusmart.checkout.orders import create_orders
from campusmart.checkout.partition import CartLine, partition_cart
from campusmart.core.errors import (
    IntegrityViolation,
    InvalidSignature,
    MixedPaymentAccounts,
    PaymentSessionCreationFailed,
)
from campusmart.db.models import Order, OrderStatus, PaymentStatus, Shop
from campusmart.payments.gateway import (
    CheckoutRequest,
    FakeGateway,
    LineItem,
    StripeGateway,
    get_gateway,
    reset_gateway,
    set_gateway,
)
from campusmart.payments.metadata import build_metadata, parse_order_ids
from campusmart.payments.session import create_payment_session, resolve_payment_account


def make_orders(db, market, lines=None):
    lines = lines or [CartLine(market.product_a, 2), CartLine(market.product_b, 1)]
    groups = partition_cart(db, market.buyer_id, lines, market.address_id)
    return create_orders(db, groups, market.buyer_id, market.address_id)


class TestCreatePaymentSession:
    def test_one_session_for_all_orders(self, db, market, gateway):
        orders = make_orders(db, market)
        result = create_payment_session(db, orders, customer_email="buyer@student.example.edu", gateway=gateway)

        assert len(gateway.calls) == 1
        request = gateway.calls[0]
        assert request.metadata == {
            "orderIds": ",".join(str(o.id) for o in orders),
            "userId": str(market.buyer_id),
        }
        assert sum(li.unit_amount * li.quantity for li in request.line_items) == 8600
        assert request.currency == "myr"
        assert request.customer_email == "buyer@student.example.edu"
        assert "{CHECKOUT_SESSION_ID}" in request.success_url
        assert result.redirect_url.endswith(result.session_id)
        for order in orders:
            assert order.payment_session_id == result.session_id

    def test_platform_account_has_no_application_fee(self, db, market, gateway):
        orders = make_orders(db, market)
        result = create_payment_session(db, orders, gateway=gateway)
        assert result.payment_account_id is None
        assert gateway.calls[0].connected_account_id is None
        assert gateway.calls[0].application_fee_amount is None

    def test_connected_account_routing_and_fee(self, db, market, gateway):
        for shop_id in (market.shop_a, market.shop_b):
            db.get(Shop, shop_id).stripe_account_id = "acct_club"
        db.commit()
        orders = make_orders(db, market)
        result = create_payment_session(db, orders, gateway=gateway)

        request = gateway.calls[0]
        assert request.connected_account_id == "acct_club"
        assert request.application_fee_amount == 250 + 180
        assert result.payment_account_id == "acct_club"
        for order in orders:
            assert order.payment_account_id == "acct_club"

    def test_filtered_images_are_not_sent(self, db, market, gateway):
        orders = make_orders(db, market)
        create_payment_session(db, orders, gateway=gateway)
        images = {li.name: li.image for li in gateway.calls[0].line_items}
        assert images["Convocation Print"] is None
        assert images["Calculus Notes"] == "https://cdn.example.com/notes.jpg"

    def test_failure_leaves_orders_pending(self, db, market, gateway):
        orders = make_orders(db, market)
        gateway.configure(should_succeed=False, failure_reason="Stripe down")
        with pytest.raises(PaymentSessionCreationFailed):
            create_payment_session(db, orders, gateway=gateway)
        for order in orders:
            db.refresh(order)
            assert order.status == OrderStatus.PENDING.value
            assert order.payment_status == PaymentStatus.UNPAID.value
            assert order.payment_session_id is None

    def test_mixed_accounts_rejected(self, db, market, gateway):
        orders = make_orders(db, market)
        db.get(Shop, market.shop_a).stripe_account_id = "acct_a"
        db.commit()
        with pytest.raises(MixedPaymentAccounts):
            resolve_payment_account(db, orders)

    def test_settled_orders_keep_their_session(self, db, market, gateway):
        orders = make_orders(db, market, [CartLine(market.product_a, 1)])
        orders[0].status = OrderStatus.CANCELLED.value
        db.commit()
        create_payment_session(db, orders, gateway=gateway)
        assert db.get(Order, orders[0].id).payment_session_id is None


class TestMetadata:
    def test_round_trip(self):
        assert parse_order_ids(build_metadata([3, 7], 1)) == [3, 7]

    def test_duplicates_collapse(self):
        assert parse_order_ids({"orderIds": "3,3,7"}) == [3, 7]

    @pytest.mark.parametrize("metadata", [None, {}, {"orderIds": ""}, {"orderIds": "3,abc"}, {"orderIds": 3}])
    def test_unparseable_fails_closed(self, metadata):
        with pytest.raises(IntegrityViolation):
            parse_order_ids(metadata)


def request(account=None, fee=None):
    return CheckoutRequest(
        line_items=[LineItem(name="Notes", unit_amount=2500, quantity=2, image=None)],
        currency="myr",
        success_url="https://shop.example/ok",
        cancel_url="https://shop.example/cancel",
        metadata={"orderIds": "1", "userId": "1"},
        connected_account_id=account,
        application_fee_amount=fee,
        idempotency_key="checkout_1",
    )


class TestStripeGateway:
    def test_params_for_platform_session(self):
        params = StripeGateway("sk_test", "whsec")._params(request())
        assert params["metadata"] == {"orderIds": "1", "userId": "1"}
        assert params["payment_intent_data"] == {"metadata": {"orderIds": "1", "userId": "1"}}
        assert params["line_items"][0]["price_data"]["unit_amount"] == 2500
        assert params["line_items"][0]["price_data"]["product_data"]["images"] == []

    def test_params_for_connected_session(self):
        params = StripeGateway("sk_test", "whsec")._params(request(account="acct_1", fee=250))
        assert params["payment_intent_data"]["application_fee_amount"] == 250

    def test_create_passes_account_and_idempotency_key(self, monkeypatch):
        seen = {}

        class Session:
            id = "cs_live_1"
            url = "https://checkout.stripe.com/c/pay/cs_live_1"

        def fake_create(**kwargs):
            seen.update(kwargs)
            return Session()

        monkeypatch.setattr(stripe.checkout.Session, "create", fake_create)
        session = StripeGateway("sk_test", "whsec").create_checkout_session(request(account="acct_1", fee=250))
        assert session.id == "cs_live_1"
        assert seen["stripe_account"] == "acct_1"
        assert seen["idempotency_key"] == "checkout_1"
        assert seen["api_key"] == "sk_test"

    def test_stripe_error_becomes_session_failure(self, monkeypatch):
        def boom(**kwargs):
            raise stripe.APIConnectionError("network down")

        monkeypatch.setattr(stripe.checkout.Session, "create", boom)
        with pytest.raises(PaymentSessionCreationFailed):
            StripeGateway("sk_test", "whsec").create_checkout_session(request())

    def test_verifies_stripe_signature_header(self):
        secret = "whsec_live"
        payload = b'{"id": "evt_1", "type": "checkout.session.completed"}'
        ts = int(time.time())
        digest = hmac.new(secret.encode(), f"{ts}.".encode() + payload, hashlib.sha256).hexdigest()
        gw = StripeGateway("sk_test", secret)

        gw.verify_webhook(payload, f"t={ts},v1={digest}")
        with pytest.raises(InvalidSignature):
            gw.verify_webhook(payload + b" ", f"t={ts},v1={digest}")
        with pytest.raises(InvalidSignature):
            gw.verify_webhook(payload, None)

    def test_stale_signature_rejected(self):
        secret = "whsec_live"
        payload = b"{}"
        ts = int(time.time()) - 3600
        digest = hmac.new(secret.encode(), f"{ts}.".encode() + payload, hashlib.sha256).hexdigest()
        with pytest.raises(InvalidSignature):
            StripeGateway("sk_test", secret).verify_webhook(payload, f"t={ts},v1={digest}")


class TestGatewayFactory:
    def test_fake_selected_from_settings(self):
        reset_gateway()
        try:
            assert isinstance(get_gateway(), FakeGateway)
        finally:
            reset_gateway()

    def test_set_gateway_overrides(self):
        custom = FakeGateway("whsec_other")
        set_gateway(custom)
        try:
            assert get_gateway() is custom
        finally:
            reset_gateway()
