import json

import pytest

from fabrix_orders import crud
from fabrix_orders.errors import InvalidSignature

from .helpers import make_event, sign_payload, succeeded_intent


@pytest.fixture
def order(create_order, customer):
    return create_order(headers=customer["headers"])


def test_succeeded_event_marks_order_paid(client, post_webhook, order, customer, notifier):
    response = post_webhook(make_event("evt_1", "payment_intent.succeeded", succeeded_intent(order)))
    assert response.status_code == 200
    assert response.json() == {"received": True, "event_id": "evt_1", "outcome": "paid"}

    paid = client.get(f"/api/orders/{order['id']}", headers=customer["headers"]).json()
    assert paid["status"] == "processing"
    assert paid["payment"]["is_paid"] is True
    assert paid["payment"]["transaction_id"] == "ch_test_1"
    assert paid["payment"]["payment_intent_id"] == "pi_test_1"
    assert paid["payment"]["card_brand"] == "visa"
    assert paid["payment"]["last_four"] == "4242"
    assert paid["payment"]["paid_at"] is not None
    assert notifier.sent == [("order_confirmed", order["order_number"])]


def test_redelivered_event_is_applied_once(client, post_webhook, order, customer, notifier, db):
    event = make_event("evt_1", "payment_intent.succeeded", succeeded_intent(order))
    assert post_webhook(event).json()["outcome"] == "paid"
    second = post_webhook(event)

    assert second.status_code == 200
    assert second.json()["outcome"] == "duplicate"
    assert crud.count_notifications(db, order["id"], "order_confirmed") == 1
    assert len(notifier.sent) == 1

    timeline = client.get(f"/api/orders/{order['id']}/timeline", headers=customer["headers"]).json()
    assert [e["event_type"] for e in timeline].count("paid") == 1


def test_second_event_for_paid_order_is_a_noop(post_webhook, order, db):
    assert post_webhook(make_event("evt_1", "payment_intent.succeeded", succeeded_intent(order))).json()["outcome"] == "paid"
    response = post_webhook(make_event("evt_2", "payment_intent.succeeded", succeeded_intent(order)))
    assert response.json()["outcome"] == "already_paid"
    assert crud.count_notifications(db, order["id"], "order_confirmed") == 1


def test_tampered_body_is_rejected(client, order, customer):
    payload = json.dumps(make_event("evt_1", "payment_intent.succeeded", succeeded_intent(order)))
    header = sign_payload(payload)
    tampered = payload.replace('"amount_received": 5940', '"amount_received": 9999')
    assert tampered != payload

    response = client.post("/api/payments/webhook", content=tampered, headers={"Stripe-Signature": header})
    assert response.status_code == 400
    assert response.json()["success"] is False

    unchanged = client.get(f"/api/orders/{order['id']}", headers=customer["headers"]).json()
    assert unchanged["status"] == "pending"
    assert unchanged["payment"]["is_paid"] is False


def test_wrong_secret_and_missing_header_are_rejected(client, post_webhook, order):
    event = make_event("evt_1", "payment_intent.succeeded", succeeded_intent(order))
    assert post_webhook(event, secret="whsec_other").status_code == 400

    response = client.post("/api/payments/webhook", content=json.dumps(event))
    assert response.status_code == 400


def test_stale_signature_is_rejected(post_webhook, order):
    event = make_event("evt_1", "payment_intent.succeeded", succeeded_intent(order))
    stale = sign_payload(json.dumps(event), timestamp=1_000_000)
    assert post_webhook(event, signature=stale).status_code == 400


def test_unknown_event_type_is_acknowledged(post_webhook, db):
    response = post_webhook(make_event("evt_9", "customer.created", {"id": "cus_1"}))
    assert response.status_code == 200
    assert response.json()["outcome"] == "ignored"
    assert crud.get_payment_event(db, "evt_9").outcome == "ignored"


def test_event_for_unknown_order_is_acknowledged(post_webhook):
    intent = {"id": "pi_missing", "amount_received": 100, "metadata": {"order_id": "does-not-exist"}}
    response = post_webhook(make_event("evt_1", "payment_intent.succeeded", intent))
    assert response.status_code == 200
    assert response.json()["outcome"] == "order_not_found"


def test_order_found_by_intent_id_without_metadata(client, post_webhook, order, customer):
    created = client.post("/api/payments/create-intent", json={"order_id": order["id"]}, headers=customer["headers"])
    intent = succeeded_intent(order, intent_id=created.json()["payment_intent_id"])
    intent["metadata"] = {}

    response = post_webhook(make_event("evt_1", "payment_intent.succeeded", intent))
    assert response.json()["outcome"] == "paid"


def test_underpayment_is_not_applied(client, post_webhook, order, customer):
    response = post_webhook(make_event("evt_1", "payment_intent.succeeded", succeeded_intent(order, amount=100)))
    assert response.json()["outcome"] == "amount_mismatch"
    assert client.get(f"/api/orders/{order['id']}", headers=customer["headers"]).json()["status"] == "pending"


def test_payment_for_cancelled_order_is_not_applied(client, post_webhook, order, customer):
    assert client.put(f"/api/orders/{order['id']}/cancel", headers=customer["headers"]).status_code == 200
    response = post_webhook(make_event("evt_1", "payment_intent.succeeded", succeeded_intent(order)))
    assert response.json()["outcome"] == "order_not_payable"


def test_failed_payment_is_recorded_without_status_change(client, post_webhook, order, customer):
    intent = succeeded_intent(order)
    intent["last_payment_error"] = {"message": "Your card was declined."}
    response = post_webhook(make_event("evt_1", "payment_intent.payment_failed", intent))
    assert response.json()["outcome"] == "payment_failed"

    fetched = client.get(f"/api/orders/{order['id']}", headers=customer["headers"]).json()
    assert fetched["status"] == "pending"
    timeline = client.get(f"/api/orders/{order['id']}/timeline", headers=customer["headers"]).json()
    assert timeline[-1]["event_type"] == "payment_failed"
    assert "declined" in timeline[-1]["description"]


def test_reconciler_rejects_before_touching_the_ledger(app, db):
    with pytest.raises(InvalidSignature):
        app.state.reconciler.handle(db, b'{"id": "evt_1"}', "t=1,v1=deadbeef")
    assert crud.get_payment_event(db, "evt_1") is None


def test_payment_in_another_currency_is_not_applied(client, post_webhook, create_order, customer, notifier):
    order = create_order(headers=customer["headers"], currency="gbp")
    response = post_webhook(make_event("evt_1", "payment_intent.succeeded", succeeded_intent(order, currency="usd")))

    assert response.json()["outcome"] == "amount_mismatch"
    fetched = client.get(f"/api/orders/{order['id']}", headers=customer["headers"]).json()
    assert (fetched["status"], fetched["payment"]["is_paid"]) == ("pending", False)
    assert notifier.sent == []

    matching = post_webhook(make_event("evt_2", "payment_intent.succeeded", succeeded_intent(order)))
    assert matching.json()["outcome"] == "paid"
