"""Test doubles and webhook signing helpers shared by the test modules."""
import hashlib
import hmac
import time
from decimal import Decimal

from fabrix_orders.clients.stripe_client import PaymentIntentResult, StripeGateway
from fabrix_orders.errors import PaymentProviderError

WEBHOOK_SECRET = "whsec_test_secret"


class FakeGateway:
    """Records intent requests; signature checks use the real Stripe verification."""

    def __init__(self, settings):
        self.calls = []
        self.fail = False
        self._verifier = StripeGateway(settings)

    def create_intent(self, amount_minor, currency, metadata, idempotency_key=None):
        self.calls.append(
            {"amount": amount_minor, "currency": currency, "metadata": metadata, "idempotency_key": idempotency_key}
        )
        if self.fail:
            raise PaymentProviderError("Failed to create payment intent: card_declined")
        n = len(self.calls)
        return PaymentIntentResult(intent_id=f"pi_test_{n}", client_secret=f"pi_test_{n}_secret_abc")

    def verify(self, raw_body, signature_header):
        return self._verifier.verify(raw_body, signature_header)


class RecordingNotifier:
    def __init__(self):
        self.sent = []
        self.fail_with = None

    def notify(self, kind, order):
        if self.fail_with is not None:
            raise self.fail_with
        self.sent.append((kind, order.order_number))


def sign_payload(payload: str, secret: str = WEBHOOK_SECRET, timestamp=None) -> str:
    timestamp = int(timestamp if timestamp is not None else time.time())
    signed = f"{timestamp}.{payload}".encode("utf-8")
    signature = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


def make_event(event_id, event_type, intent):
    return {"id": event_id, "object": "event", "type": event_type, "data": {"object": intent}}


def succeeded_intent(order, intent_id="pi_test_1", amount=None, currency=None):
    return {
        "id": intent_id,
        "object": "payment_intent",
        "amount": amount if amount is not None else int(Decimal(order["payment"]["total"]) * 100),
        "amount_received": amount if amount is not None else int(Decimal(order["payment"]["total"]) * 100),
        "currency": currency or order["payment"]["currency"],
        "metadata": {"order_id": order["id"], "order_number": order["order_number"]},
        "latest_charge": "ch_test_1",
        "charges": {"data": [{"payment_method_details": {"card": {"brand": "visa", "last4": "4242"}}}]},
    }


