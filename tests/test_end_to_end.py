import json
from decimal import Decimal

from .helpers import make_event, sign_payload, succeeded_intent


def test_checkout_to_delivery(client, create_order, customer, admin, notifier):
    order = create_order(headers=customer["headers"])
    assert order["status"] == "pending"
    assert Decimal(order["payment"]["total"]) == Decimal("59.40")

    intent = client.post("/api/payments/create-intent", json={"order_id": order["id"]}, headers=customer["headers"])
    assert intent.status_code == 201
    assert intent.json()["amount"] == 5940
    intent_id = intent.json()["payment_intent_id"]

    payload = json.dumps(make_event("evt_100", "payment_intent.succeeded", succeeded_intent(order, intent_id=intent_id)))
    ack = client.post("/api/payments/webhook", content=payload, headers={"Stripe-Signature": sign_payload(payload)})
    assert ack.json()["outcome"] == "paid"

    replay = client.post("/api/payments/webhook", content=payload, headers={"Stripe-Signature": sign_payload(payload)})
    assert replay.status_code == 200
    assert replay.json()["outcome"] == "duplicate"
    paid = client.get(f"/api/orders/{order['id']}", headers=customer["headers"]).json()
    assert (paid["status"], paid["payment"]["is_paid"]) == ("processing", True)

    shipped = client.put(f"/api/orders/{order['id']}/status",
                         json={"status": "shipped", "tracking_number": "1Z999AA10123456784",
                               "estimated_delivery": "3-5 business days"},
                         headers=admin["headers"])
    assert shipped.status_code == 200

    delivered = client.put(f"/api/orders/{order['id']}/status", json={"status": "delivered"},
                           headers=admin["headers"])
    assert delivered.json()["status"] == "delivered"

    tracking = client.get(f"/api/orders/number/{order['order_number']}").json()
    assert tracking["status"] == "delivered"
    assert tracking["payment"]["is_paid"] is True
    assert tracking["shipping"]["tracking_number"] == "1Z999AA10123456784"

    timeline = client.get(f"/api/orders/{order['id']}/timeline", headers=customer["headers"]).json()
    assert [e["event_type"] for e in timeline] == [
        "created", "payment_intent_created", "paid", "status_changed", "status_changed",
    ]
    assert notifier.sent == [
        ("order_confirmed", order["order_number"]),
        ("order_shipped", order["order_number"]),
    ]

    # terminal state
    reopened = client.put(f"/api/orders/{order['id']}/status", json={"status": "shipped", "tracking_number": "X"},
                          headers=admin["headers"])
    assert reopened.status_code == 400
