"""Payment initiation and verification tests."""

import hashlib
import hmac

import pytest
from bson import ObjectId

import payments
from config import Settings
from conftest import ADDRESS, SIGNING_SECRET, headers
from errors import InvalidState
from gateway import FakeGateway, StripeGateway, build_gateway, compute_signature, get_gateway, signature_matches
from main import app


def _fill_cart(client, add_product, prices, user_id="user-a"):
    for n, price in enumerate(prices):
        product_id = add_product(name=f"Item {n}", price=price)
        client.post("/api/cart", json={"product_id": product_id}, headers=headers(user_id))


def _initiate(client, amount=160, user_id="user-a", **extra):
    body = {"amount": amount, "shipping_address": ADDRESS, **extra}
    return client.post("/api/payments/create-order", json=body, headers=headers(user_id))


def _verify(client, order_id, payment_id, signature, user_id="user-a"):
    body = {"order_id": order_id, "payment_id": payment_id, "signature": signature}
    return client.post("/api/payments/verify-payment", json=body, headers=headers(user_id))


@pytest.fixture()
def pending_order(client, add_product):
    _fill_cart(client, add_product, [100, 60])
    response = _initiate(client)
    assert response.status_code == 200
    return response.json()


@pytest.fixture()
def no_gateway(client):
    app.dependency_overrides[get_gateway] = lambda: None


class TestSignature:
    def test_hmac_of_order_and_payment_ids(self):
        expected = hmac.new(b"secret", b"order_1|pay_1", hashlib.sha256).hexdigest()
        assert compute_signature("secret", "order_1", "pay_1") == expected

    def test_matches(self):
        signature = compute_signature("secret", "order_1", "pay_1")
        assert signature_matches("secret", "order_1", "pay_1", signature)

    def test_rejects_other_payment_id(self):
        signature = compute_signature("secret", "order_1", "pay_1")
        assert not signature_matches("secret", "order_1", "pay_2", signature)

    def test_rejects_other_secret(self):
        signature = compute_signature("other", "order_1", "pay_1")
        assert not signature_matches("secret", "order_1", "pay_1", signature)


class TestBuildGateway:
    def test_unconfigured_returns_none(self):
        assert build_gateway(Settings()) is None

    def test_stripe_needs_signing_secret(self):
        assert build_gateway(Settings(stripe_secret_key="sk_test_123")) is None

    def test_stripe(self):
        gateway = build_gateway(Settings(stripe_secret_key="sk_test_123", payment_signing_secret="whsec"))
        assert isinstance(gateway, StripeGateway)
        assert gateway.key_secret == "whsec"

    def test_stripe_signatures_are_keyed_by_signing_secret(self):
        gateway = build_gateway(Settings(stripe_secret_key="sk_test_123", payment_signing_secret="whsec"))
        issued = compute_signature("whsec", "pi_123", "pay_001")
        assert gateway.verify_payment_signature("pi_123", "pay_001", issued)
        assert not gateway.verify_payment_signature(
            "pi_123", "pay_001", compute_signature("sk_test_123", "pi_123", "pay_001")
        )

    def test_fake(self):
        gateway = build_gateway(Settings(payment_gateway="fake", payment_signing_secret="s3cret"))
        assert isinstance(gateway, FakeGateway)
        assert gateway.key_secret == "s3cret"


class TestInitiatePayment:
    def test_opens_gateway_order_and_stores_pending_order(self, client, db, gateway, pending_order):
        assert pending_order["amount"] == 160
        assert pending_order["currency"] == "INR"
        assert pending_order["gateway_order_id"].startswith("order_fake_")

        (call,) = gateway.calls
        assert call["amount"] == 16000
        assert call["currency"] == "INR"
        assert call["receipt"].startswith("rcpt_user-a_")

        order = db["order"].find_one({"_id": ObjectId(pending_order["order_id"])})
        assert order["payment_status"] == "pending"
        assert order["payment_method"] == "fake"
        assert order["gateway_order_id"] == pending_order["gateway_order_id"]
        assert order["total"] == order["subtotal"] + order["shipping"]
        assert len(order["items"]) == 2

    def test_cart_is_consumed(self, client, pending_order):
        cart = client.get("/api/cart", headers=headers()).json()
        assert cart["items"] == []

    def test_currency_is_passed_through(self, client, gateway, add_product):
        _fill_cart(client, add_product, [100, 60])
        response = _initiate(client, currency="usd")
        assert response.json()["currency"] == "USD"
        assert gateway.calls[0]["currency"] == "USD"

    def test_unconfigured_gateway_returns_503(self, client, no_gateway):
        response = _initiate(client)
        assert response.status_code == 503
        assert "not configured" in response.json()["message"]

    @pytest.mark.parametrize("amount", [0, 0.5, -10, None])
    def test_invalid_amount_returns_400(self, client, gateway, add_product, amount):
        _fill_cart(client, add_product, [100])
        response = _initiate(client, amount=amount)
        assert response.status_code == 400
        assert response.json() == {"message": "Invalid amount"}
        assert gateway.calls == []

    def test_empty_cart_returns_400(self, client, db):
        response = _initiate(client)
        assert response.status_code == 400
        assert response.json() == {"message": "Cart is empty"}
        assert db["order"].count_documents({}) == 0

    def test_amount_must_match_cart_total(self, client, db, gateway, add_product):
        _fill_cart(client, add_product, [100, 60])
        response = _initiate(client, amount=1)
        assert response.status_code == 400
        assert response.json() == {"message": "Amount does not match cart total"}
        assert gateway.calls == []
        assert db["order"].count_documents({}) == 0
        assert len(client.get("/api/cart", headers=headers()).json()["items"]) == 2

    def test_gateway_failure_leaves_cart_alone(self, client, db, gateway, add_product):
        _fill_cart(client, add_product, [100, 60])
        gateway.configure(should_succeed=False)

        response = _initiate(client)
        assert response.status_code == 500
        assert response.json() == {"message": "Payment gateway error"}
        assert db["order"].count_documents({}) == 0
        assert len(client.get("/api/cart", headers=headers()).json()["items"]) == 2


class TestVerifyPayment:
    def test_valid_signature_completes_order(self, client, db, pending_order):
        signature = compute_signature(SIGNING_SECRET, pending_order["gateway_order_id"], "pay_001")

        response = _verify(client, pending_order["order_id"], "pay_001", signature)
        assert response.status_code == 200
        assert response.json() == {
            "success": True,
            "message": "Payment verified successfully",
            "order_id": pending_order["order_id"],
        }

        order = db["order"].find_one({"_id": ObjectId(pending_order["order_id"])})
        assert order["payment_status"] == "completed"
        assert order["gateway_payment_id"] == "pay_001"
        assert order["is_paid"] is True
        assert order["paid_at"] is not None

    def test_bad_signature_leaves_order_pending(self, client, db, pending_order):
        response = _verify(client, pending_order["order_id"], "pay_001", "0" * 64)
        assert response.status_code == 400
        assert response.json() == {"success": False, "message": "Payment verification failed"}

        order = db["order"].find_one({"_id": ObjectId(pending_order["order_id"])})
        assert order["payment_status"] == "pending"
        assert order["is_paid"] is False
        assert order.get("gateway_payment_id") is None

    def test_signature_for_other_payment_is_rejected(self, client, pending_order):
        signature = compute_signature(SIGNING_SECRET, pending_order["gateway_order_id"], "pay_other")
        response = _verify(client, pending_order["order_id"], "pay_001", signature)
        assert response.status_code == 400
        assert response.json()["success"] is False

    def test_reverifying_same_payment_succeeds(self, client, pending_order):
        signature = compute_signature(SIGNING_SECRET, pending_order["gateway_order_id"], "pay_001")
        _verify(client, pending_order["order_id"], "pay_001", signature)

        response = _verify(client, pending_order["order_id"], "pay_001", signature)
        assert response.status_code == 200
        assert response.json()["success"] is True

    def test_second_payment_on_paid_order_is_rejected(self, client, db, pending_order):
        gateway_order_id = pending_order["gateway_order_id"]
        _verify(client, pending_order["order_id"], "pay_001", compute_signature(SIGNING_SECRET, gateway_order_id, "pay_001"))

        response = _verify(
            client, pending_order["order_id"], "pay_002", compute_signature(SIGNING_SECRET, gateway_order_id, "pay_002")
        )
        assert response.status_code == 400
        assert response.json() == {"message": "Order is already paid"}
        order = db["order"].find_one({"_id": ObjectId(pending_order["order_id"])})
        assert order["gateway_payment_id"] == "pay_001"

    def test_order_without_gateway_order_fails_verification(self, client, add_product):
        _fill_cart(client, add_product, [100])
        order = client.post("/api/orders", json={"shipping_address": ADDRESS}, headers=headers()).json()

        response = _verify(client, order["id"], "pay_001", compute_signature(SIGNING_SECRET, "None", "pay_001"))
        assert response.status_code == 400
        assert response.json()["success"] is False

    @pytest.mark.parametrize("missing", ["order_id", "payment_id", "signature"])
    def test_missing_fields_return_400(self, client, missing):
        body = {"order_id": str(ObjectId()), "payment_id": "pay_001", "signature": "abc"}
        body.pop(missing)
        response = client.post("/api/payments/verify-payment", json=body, headers=headers())
        assert response.status_code == 400
        assert response.json() == {"message": "Missing payment details"}

    def test_unknown_order_returns_404(self, client):
        response = _verify(client, str(ObjectId()), "pay_001", "abc")
        assert response.status_code == 404
        assert response.json() == {"message": "Order not found"}

    def test_other_users_order_is_forbidden(self, client, db, pending_order):
        signature = compute_signature(SIGNING_SECRET, pending_order["gateway_order_id"], "pay_001")
        response = _verify(client, pending_order["order_id"], "pay_001", signature, user_id="user-b")
        assert response.status_code == 403
        order = db["order"].find_one({"_id": ObjectId(pending_order["order_id"])})
        assert order["payment_status"] == "pending"

    def test_unconfigured_gateway_returns_503(self, client, pending_order, no_gateway):
        response = _verify(client, pending_order["order_id"], "pay_001", "abc")
        assert response.status_code == 503

    def _complete_behind_read(self, db, monkeypatch, order_id, payment_id):
        """Mark the order paid after load_order has returned a pending copy."""
        stale = db["order"].find_one({"_id": ObjectId(order_id)})
        db["order"].update_one(
            {"_id": ObjectId(order_id)},
            {"$set": {"payment_status": "completed", "gateway_payment_id": payment_id, "is_paid": True}},
        )
        monkeypatch.setattr(payments, "load_order", lambda *args: stale)
        return stale

    def test_lost_race_with_same_payment_succeeds(self, db, gateway, pending_order, monkeypatch):
        stale = self._complete_behind_read(db, monkeypatch, pending_order["order_id"], "pay_001")
        assert stale["payment_status"] == "pending"
        signature = compute_signature(SIGNING_SECRET, pending_order["gateway_order_id"], "pay_001")

        result = payments.verify_payment(db, gateway, "user-a", pending_order["order_id"], "pay_001", signature)
        assert result == {
            "success": True,
            "message": "Payment verified successfully",
            "order_id": pending_order["order_id"],
        }

    def test_lost_race_with_other_payment_is_rejected(self, db, gateway, pending_order, monkeypatch):
        self._complete_behind_read(db, monkeypatch, pending_order["order_id"], "pay_001")
        signature = compute_signature(SIGNING_SECRET, pending_order["gateway_order_id"], "pay_002")

        with pytest.raises(InvalidState):
            payments.verify_payment(db, gateway, "user-a", pending_order["order_id"], "pay_002", signature)
        order = db["order"].find_one({"_id": ObjectId(pending_order["order_id"])})
        assert order["gateway_payment_id"] == "pay_001"
