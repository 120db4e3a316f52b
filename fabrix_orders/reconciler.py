"""
Reconciliation of payment provider webhooks with orders.

Events are verified against the raw request body before anything else happens.
Each verified event id is recorded in the ``payment_events`` ledger, so a
redelivered event is acknowledged without being applied twice; ``mark_paid``
is itself a no-op for orders that are already paid.

Events that cannot be matched to an order are acknowledged and logged as
anomalies.
"""
import logging
from typing import Any, Callable, Dict, Optional, Tuple

from sqlalchemy.orm import Session

from . import crud, lifecycle, models
from .config import Settings
from .errors import IllegalTransition, ValidationError
from .payments import PaymentGateway
from .validators import quantize

logger = logging.getLogger(__name__)

PAYMENT_SUCCEEDED = "payment_intent.succeeded"
PAYMENT_FAILED = "payment_intent.payment_failed"

Outcome = Tuple[str, Optional[str]]


def _card_details(intent: Dict[str, Any]) -> Tuple[Optional[str], Optional[str]]:
    charges = (intent.get("charges") or {}).get("data") or []
    if not charges:
        return None, None
    card = ((charges[0].get("payment_method_details") or {}).get("card")) or {}
    return card.get("brand"), card.get("last4")


def _transaction_reference(intent: Dict[str, Any]) -> Optional[str]:
    latest_charge = intent.get("latest_charge")
    if isinstance(latest_charge, dict):
        latest_charge = latest_charge.get("id")
    return latest_charge or intent.get("id")


class WebhookReconciler:
    """
    Applies verified payment provider events to orders.

    Args:
        gateway: Payment provider boundary used to verify signatures
        settings: Application settings
    """

    def __init__(self, gateway: PaymentGateway, settings: Settings):
        self.gateway = gateway
        self.settings = settings
        self.handlers: Dict[str, Callable[[Session, Dict[str, Any]], Outcome]] = {
            PAYMENT_SUCCEEDED: self._payment_succeeded,
            PAYMENT_FAILED: self._payment_failed,
        }

    def handle(self, db: Session, raw_body: bytes, signature: Optional[str]) -> Dict[str, Any]:
        """
        Verify and apply a webhook delivery.

        Args:
            db: Database session
            raw_body: Unparsed request body
            signature: Value of the ``Stripe-Signature`` header

        Returns:
            Acknowledgement with the event id and what was done with it

        Raises:
            InvalidSignature: If verification fails; nothing is changed
        """
        event = self.gateway.verify(raw_body, signature)

        event_id = event.get("id")
        event_type = event.get("type")
        if not event_id or not event_type:
            raise ValidationError("Malformed webhook event")

        if crud.get_payment_event(db, event_id) is not None:
            logger.info(f"Webhook event {event_id} ({event_type}) already processed")
            return {"received": True, "event_id": event_id, "outcome": "duplicate"}

        handler = self.handlers.get(event_type)
        if handler is None:
            logger.info(f"Unhandled event type {event_type}")
            outcome, order_id = "ignored", None
        else:
            intent = (event.get("data") or {}).get("object") or {}
            outcome, order_id = handler(db, intent)

        if not crud.record_payment_event(db, event_id, event_type, outcome, order_id):
            outcome = "duplicate"
        return {"received": True, "event_id": event_id, "outcome": outcome}

    def _find_order(self, db: Session, intent: Dict[str, Any]) -> Optional[models.Order]:
        order_id = (intent.get("metadata") or {}).get("order_id")
        db_order = crud.get_order(db, order_id) if order_id else None
        if db_order is None and intent.get("id"):
            db_order = crud.get_order_by_payment_intent(db, intent["id"])
        return db_order

    def _payment_succeeded(self, db: Session, intent: Dict[str, Any]) -> Outcome:
        intent_id = intent.get("id")
        db_order = self._find_order(db, intent)
        if db_order is None:
            logger.warning(
                f"Anomaly: payment {intent_id} succeeded but no order matches "
                f"metadata {intent.get('metadata')}"
            )
            return "order_not_found", (intent.get("metadata") or {}).get("order_id")

        received = intent.get("amount_received", intent.get("amount"))
        if received is not None and int(received) < int(quantize(db_order.total) * 100):
            logger.warning(
                f"Anomaly: payment {intent_id} received {received} minor units "
                f"for order {db_order.order_number} totalling {db_order.total}"
            )
            return "amount_mismatch", db_order.id

        paid_currency = (intent.get("currency") or "").lower()
        if paid_currency != db_order.currency:
            logger.warning(
                f"Anomaly: payment {intent_id} in '{paid_currency}' "
                f"for order {db_order.order_number} priced in {db_order.currency}"
            )
            return "amount_mismatch", db_order.id

        card_brand, last_four = _card_details(intent)
        try:
            _, applied = lifecycle.mark_paid(
                db,
                db_order.id,
                transaction_id=_transaction_reference(intent),
                card_brand=card_brand,
                last_four=last_four,
                payment_intent_id=intent_id,
                max_attempts=self.settings.max_update_retries,
            )
        except IllegalTransition as e:
            logger.warning(f"Anomaly: payment {intent_id} for order {db_order.order_number}: {e.message}")
            return "order_not_payable", db_order.id

        if applied:
            logger.info(f"Order {db_order.order_number} marked paid by payment {intent_id}")
        return ("paid" if applied else "already_paid"), db_order.id

    def _payment_failed(self, db: Session, intent: Dict[str, Any]) -> Outcome:
        intent_id = intent.get("id")
        db_order = self._find_order(db, intent)
        reason = (intent.get("last_payment_error") or {}).get("message") or "unknown reason"
        if db_order is None:
            logger.warning(f"Anomaly: payment {intent_id} failed ({reason}) and no order matches")
            return "order_not_found", (intent.get("metadata") or {}).get("order_id")

        logger.info(f"Payment {intent_id} failed for order {db_order.order_number}: {reason}")
        crud.log_order_event(
            db,
            order_id=db_order.id,
            event_type="payment_failed",
            description=f"Payment failed: {reason}",
            new_value=db_order.status,
        )
        db.commit()
        return "payment_failed", db_order.id
