"""
Integration tests for the Payment Engine API
Tests end-to-end workflows using FastAPI TestClient
"""

import pytest
from fastapi.testclient import TestClient

from payment_engine.api import create_app
from payment_engine.async_storage import AsyncInMemoryStorage
from payment_engine.system import PaymentSystem

from conftest import PASSWORD, PIN


@pytest.fixture
def client(config):
    """Test client over an in-memory payment system"""
    system = PaymentSystem(config, storage=AsyncInMemoryStorage())
    with TestClient(create_app(system)) as client:
        yield client


def register(client, name, pin=PIN):
    r = client.post("/auth/register", json={
        "name": name,
        "email": f"{name.lower()}@example.com",
        "password": PASSWORD,
        "payment_pin": pin,
    })
    assert r.status_code == 201, r.text
    return r.json()["account"]["id"]


def as_account(account_id):
    return {"X-Account-Id": account_id}


class TestHealthEndpoints:
    """Test health endpoint"""

    def test_health(self, client):
        r = client.get("/health")
        assert r.status_code == 200
        data = r.json()
        assert data["status"] == "healthy"
        assert data["scheduler_running"] is False
        assert data["circuits"]["payment"] == "closed"
        assert set(data["circuits"]) == {
            "login", "payment", "pin_reset", "password_reset", "product_purchase", "mandate_update"
        }


class TestAuthEndpoints:
    """Test registration, login and password reset"""

    def test_register_and_login(self, client):
        account_id = register(client, "Alice")

        r = client.post("/auth/login", json={"email": "alice@example.com", "password": PASSWORD})
        assert r.status_code == 200
        assert r.json() == {"message": "Login successful.", "account_id": account_id}

    def test_duplicate_email(self, client):
        register(client, "Alice")
        r = client.post("/auth/register", json={
            "name": "Alice", "email": "ALICE@example.com", "password": "x", "payment_pin": "54321"
        })
        assert r.status_code == 400
        assert r.json()["error"] == "invalid_request"

    def test_bad_pin_length(self, client):
        r = client.post("/auth/register", json={
            "name": "Alice", "email": "alice@example.com", "password": "x", "payment_pin": "123"
        })
        assert r.status_code == 400

    def test_missing_field_is_invalid_request(self, client):
        r = client.post("/auth/login", json={"email": "alice@example.com"})
        assert r.status_code == 400
        assert r.json()["error"] == "invalid_request"

    def test_unknown_user(self, client):
        r = client.post("/auth/login", json={"email": "nobody@example.com", "password": "x"})
        assert r.status_code == 404

    def test_lockout_after_repeated_failures(self, client):
        register(client, "Alice")
        body = {"email": "alice@example.com", "password": "wrong"}

        for _ in range(5):
            assert client.post("/auth/login", json=body).status_code == 401

        r = client.post("/auth/login", json=body)
        assert r.status_code == 423
        assert r.json()["detail"]["remaining_minutes"] == 30

        r = client.post("/auth/login", json={"email": "alice@example.com", "password": PASSWORD})
        assert r.status_code == 423

    def test_forget_password(self, client):
        alice = register(client, "Alice")

        r = client.post("/auth/forget-password", headers=as_account(alice), json={
            "email": "alice@example.com", "new_password": "new-secret"
        })
        assert r.status_code == 200

        r = client.post("/auth/login", json={"email": "alice@example.com", "password": "new-secret"})
        assert r.status_code == 200

    def test_forget_password_requires_owner(self, client):
        register(client, "Alice")
        mallory = register(client, "Mallory")
        body = {"email": "alice@example.com", "new_password": "taken-over"}

        r = client.post("/auth/forget-password", json=body)
        assert r.status_code == 401

        r = client.post("/auth/forget-password", headers=as_account(mallory), json=body)
        assert r.status_code == 400

        r = client.post("/auth/login", json={"email": "alice@example.com", "password": "taken-over"})
        assert r.status_code == 401
        r = client.post("/auth/login", json={"email": "alice@example.com", "password": PASSWORD})
        assert r.status_code == 200


class TestUserEndpoints:
    """Test account details and PIN reset"""

    def test_me_requires_identity(self, client):
        r = client.get("/users/me")
        assert r.status_code == 401

    def test_me(self, client):
        account_id = register(client, "Alice")

        r = client.get("/users/me", headers=as_account(account_id))
        assert r.status_code == 200
        user = r.json()["user"]
        assert user["balance"] == "100000.00"
        assert "password_hash" not in user

    def test_forget_pin(self, client):
        alice = register(client, "Alice")
        bob = register(client, "Bob")

        r = client.post("/users/forget-pin", headers=as_account(alice),
                        json={"password": PASSWORD, "new_pin": "99999"})
        assert r.status_code == 200

        r = client.post("/payment/initiate", headers=as_account(alice), json={
            "sender_id": alice, "receiver_id": bob, "amount": "1", "payment_pin": "99999"
        })
        assert r.status_code == 200


class TestPaymentEndpoints:
    """Test payment initiation and history"""

    def test_payment_flow(self, client):
        alice = register(client, "Alice")
        bob = register(client, "Bob")

        r = client.post("/payment/initiate", headers=as_account(alice), json={
            "sender_id": alice, "receiver_id": bob, "amount": "250.50", "payment_pin": PIN
        })
        assert r.status_code == 200
        data = r.json()
        assert data["message"] == "Payment successful."
        assert data["sender_balance"] == "99749.50"
        assert data["receiver_balance"] == "100250.50"
        assert data["transaction"]["transaction_id"].startswith("txn-")

        r = client.get(f"/payment/transactions/{bob}", headers=as_account(bob))
        assert r.status_code == 200
        assert len(r.json()["transactions"]) == 1

    def test_error_status_mapping(self, client):
        alice = register(client, "Alice")
        bob = register(client, "Bob")
        headers = as_account(alice)

        def pay(**overrides):
            body = {"sender_id": alice, "receiver_id": bob, "amount": "10", "payment_pin": PIN}
            body.update(overrides)
            return client.post("/payment/initiate", headers=headers, json=body)

        assert pay(payment_pin="00000").status_code == 401
        assert pay(amount="1000000").status_code == 422
        assert pay(receiver_id="missing").status_code == 404
        assert pay(amount="-5").status_code == 400
        assert pay(sender_id=bob).status_code == 400

    def test_transactions_of_other_account(self, client):
        alice = register(client, "Alice")
        bob = register(client, "Bob")

        r = client.get(f"/payment/transactions/{bob}", headers=as_account(alice))
        assert r.status_code == 400

    def test_no_transactions(self, client):
        alice = register(client, "Alice")
        r = client.get(f"/payment/transactions/{alice}", headers=as_account(alice))
        assert r.status_code == 404


class TestProductEndpoints:
    """Test product listing and purchase"""

    def test_add_and_purchase(self, client):
        seller = register(client, "Seller")
        buyer = register(client, "Buyer")

        r = client.post("/products", headers=as_account(seller),
                        json={"product_id": "SKU-1", "price": "20.00"})
        assert r.status_code == 201
        product_id = r.json()["product"]["id"]

        r = client.post("/products", headers=as_account(seller),
                        json={"product_id": "SKU-1", "price": "25.00"})
        assert r.status_code == 200
        assert r.json()["product"]["id"] == product_id

        r = client.post(f"/products/{product_id}/purchase", headers=as_account(buyer),
                        json={"password": PASSWORD, "payment_pin": PIN})
        assert r.status_code == 200
        assert r.json()["sender_balance"] == "99975.00"
        assert r.json()["transaction"]["status"] == "success"

    def test_purchase_unknown_product(self, client):
        buyer = register(client, "Buyer")
        r = client.post("/products/missing/purchase", headers=as_account(buyer),
                        json={"password": PASSWORD, "payment_pin": PIN})
        assert r.status_code == 404


class TestAutopayEndpoints:
    """Test mandate endpoints"""

    def create(self, client, sender, receiver, **overrides):
        body = {
            "receiver_id": receiver,
            "amount": "100",
            "frequency": "monthly",
            "start_date": "2025-01-01T00:00:00Z",
        }
        body.update(overrides)
        return client.post("/autopay/mandates", headers=as_account(sender), json=body)

    def test_mandate_lifecycle(self, client):
        alice = register(client, "Alice")
        bob = register(client, "Bob")

        r = self.create(client, alice, bob, end_date="2025-12-31T00:00:00Z")
        assert r.status_code == 201
        mandate = r.json()["mandate"]
        assert mandate["status"] == "active"
        assert mandate["sender_id"] == alice

        r = client.get(f"/autopay/mandates/{mandate['id']}", headers=as_account(alice))
        assert r.status_code == 200

        r = client.patch(f"/autopay/mandates/{mandate['id']}/status", headers=as_account(alice),
                         json={"status": "paused", "reason": "Holiday"})
        assert r.status_code == 200
        assert r.json()["message"] == "Mandate paused successfully."

        r = client.get(f"/autopay/mandates/{mandate['id']}/events", headers=as_account(alice))
        assert [e["event_type"] for e in r.json()["events"]] == ["created", "paused"]
        assert r.json()["events"][1]["message"] == "Holiday"

    def test_invalid_mandates(self, client):
        alice = register(client, "Alice")
        bob = register(client, "Bob")

        assert self.create(client, alice, bob, frequency="hourly").status_code == 400
        assert self.create(client, alice, bob, amount="0").status_code == 400
        assert self.create(client, alice, "missing").status_code == 404
        assert self.create(client, alice, bob, start_date="not a date").status_code == 400

    def test_status_rules(self, client):
        alice = register(client, "Alice")
        bob = register(client, "Bob")
        mandate_id = self.create(client, alice, bob).json()["mandate"]["id"]
        url = f"/autopay/mandates/{mandate_id}/status"

        assert client.patch(url, headers=as_account(alice), json={"status": "active"}).status_code == 400
        assert client.patch(url, headers=as_account(bob), json={"status": "paused"}).status_code == 400
        assert client.patch(url, headers=as_account(alice), json={"status": "cancelled"}).status_code == 200
        assert client.patch(url, headers=as_account(alice), json={"status": "paused"}).status_code == 400

    def test_mandate_hidden_from_other_accounts(self, client):
        alice = register(client, "Alice")
        bob = register(client, "Bob")
        mandate_id = self.create(client, alice, bob).json()["mandate"]["id"]

        r = client.get(f"/autopay/mandates/{mandate_id}", headers=as_account(bob))
        assert r.status_code == 400
        r = client.get(f"/autopay/mandates/{mandate_id}/events", headers=as_account(bob))
        assert r.status_code == 400

        r = client.get(f"/autopay/mandates/{mandate_id}/events", headers=as_account(alice))
        assert r.status_code == 200

    def test_unknown_mandate(self, client):
        alice = register(client, "Alice")
        r = client.get("/autopay/mandates/missing", headers=as_account(alice))
        assert r.status_code == 404
        r = client.get("/autopay/mandates/missing/events", headers=as_account(alice))
        assert r.status_code == 404
