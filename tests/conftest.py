import json
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient

from fabrix_orders import auth, crud
from fabrix_orders.config import Settings
from fabrix_orders.main import create_app

from .helpers import WEBHOOK_SECRET, FakeGateway, RecordingNotifier, sign_payload


@pytest.fixture
def settings():
    return Settings(
        database_url="sqlite://",
        jwt_secret="test-secret",
        stripe_secret_key="sk_test_dummy",
        stripe_webhook_secret=WEBHOOK_SECRET,
        shipping_rates={"standard": Decimal("5.00"), "express": Decimal("20.00")},
        tax_rate=Decimal("0.088"),
        environment="test",
        log_level="WARNING",
    )


@pytest.fixture
def gateway(settings):
    return FakeGateway(settings)


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def app(settings, gateway, notifier):
    return create_app(settings, gateway=gateway, notifier=notifier)


@pytest.fixture
def client(app):
    with TestClient(app) as c:
        yield c


@pytest.fixture
def db(app):
    session = app.state.session_factory()
    try:
        yield session
    finally:
        session.close()


def _make_user(app, settings, name, email, role="user"):
    session = app.state.session_factory()
    try:
        user = crud.create_user(session, name, email, auth.get_password_hash("password123"), role=role)
        token = auth.create_access_token(user, settings)
        return {"id": user.id, "email": user.email, "headers": {"Authorization": f"Bearer {token}"}}
    finally:
        session.close()


@pytest.fixture
def customer(app, settings):
    return _make_user(app, settings, "Ada Lovelace", "ada@example.com")


@pytest.fixture
def other_customer(app, settings):
    return _make_user(app, settings, "Grace Hopper", "grace@example.com")


@pytest.fixture
def admin(app, settings):
    return _make_user(app, settings, "Admin", "admin@example.com", role="admin")


@pytest.fixture
def order_payload():
    return {
        "items": [
            {"type": "clothing", "product_id": "p1", "name": "Linen Shirt", "price": "20.00", "quantity": 2,
             "size": "M", "color": "white"},
            {"type": "fabric", "product_id": "p2", "name": "Cotton Twill", "price": "10.00", "quantity": 1,
             "fabric_type": "cotton", "length": "2.5"},
        ],
        "customer": {"first_name": "Ada", "last_name": "Lovelace", "email": "ada@example.com",
                     "phone": "+1 555 0100"},
        "shipping_address": {"address1": "1 Loom Street", "city": "Springfield", "state": "IL",
                             "zip_code": "62701", "country": "US"},
        "shipping_method": "standard",
    }


@pytest.fixture
def create_order(client, order_payload):
    def _create(headers=None, **overrides):
        payload = dict(order_payload, **overrides)
        response = client.post("/api/orders", json=payload, headers=headers or {})
        assert response.status_code == 201, response.text
        return response.json()
    return _create


@pytest.fixture
def post_webhook(client):
    def _post(event, secret=WEBHOOK_SECRET, signature=None):
        payload = json.dumps(event)
        header = signature if signature is not None else sign_payload(payload, secret)
        return client.post(
            "/api/payments/webhook",
            content=payload,
            headers={"Stripe-Signature": header, "Content-Type": "application/json"},
        )
    return _post
