"""
Order lifecycle operations.

Every change to an existing order is a read-modify-write guarded by the order
version: the change is planned against the current row, applied with a
conditional update and committed together with its timeline event and any
outbox notification. A lost race is retried a bounded number of times.
"""
import logging
from datetime import datetime
from typing import Any, Callable, Dict, Optional, Tuple

from sqlalchemy.orm import Session

from . import crud, models, schemas, validators
from .auth import CurrentUser
from .config import Settings
from .errors import ConcurrentModification, DuplicateOrderNumber, Forbidden, IllegalTransition, NotFound, ValidationError
from .order_numbers import generate_order_number

logger = logging.getLogger(__name__)

ORDER_NUMBER_ATTEMPTS = 3

ORDER_CONFIRMED = "order_confirmed"
ORDER_SHIPPED = "order_shipped"

# A plan inspects the current order and returns None (nothing to do) or the
# column patch plus a callback staging the rows that go with it.
Plan = Callable[[models.Order], Optional[Tuple[Dict[str, Any], Callable[[models.Order], None]]]]


def get_order_or_404(db: Session, order_id: str) -> models.Order:
    db_order = crud.get_order(db, order_id)
    if db_order is None:
        raise NotFound("Order not found")
    return db_order


def ensure_can_view(order: models.Order, actor: Optional[CurrentUser], action: str = "view") -> None:
    """
    Raises:
        Forbidden: Unless the actor is an admin or owns the order
    """
    if actor is not None and (actor.is_admin or (order.user_id is not None and order.user_id == actor.id)):
        return
    raise Forbidden(f"Not authorized to {action} this order")


def place_order(
    db: Session,
    order_in: schemas.OrderCreate,
    user: Optional[CurrentUser],
    settings: Settings,
    number_factory: Callable[[], str] = generate_order_number,
) -> models.Order:
    """
    Price and persist a new order in the ``pending`` state.

    Money fields are computed from the items; a client-submitted breakdown is
    only compared against them. A colliding order number is regenerated up to
    ``ORDER_NUMBER_ATTEMPTS`` times.

    Raises:
        ValidationError: For invalid items, currency, or mismatched totals
        DuplicateOrderNumber: If every generated order number collided
    """
    is_valid, error_message = validators.validate_order_items(order_in.items)
    if not is_valid:
        raise ValidationError(error_message, [{"field": "items", "message": error_message}])

    totals = validators.compute_totals(order_in.items, order_in.shipping_method, settings)
    validators.check_claimed_totals(order_in.payment, totals)
    is_valid, error_message = validators.validate_order_total(*totals)
    if not is_valid:
        raise ValidationError(error_message)

    currency = (order_in.currency or settings.default_currency).lower()
    if currency not in settings.allowed_currencies:
        raise ValidationError("Invalid currency", [{"field": "currency", "message": f"unsupported: {currency}"}])

    values = {
        "items": [item.model_dump(mode="json") for item in order_in.items],
        "customer": order_in.customer.model_dump(mode="json"),
        "shipping_address": order_in.shipping_address.model_dump(mode="json"),
        "shipping_method": order_in.shipping_method,
        "subtotal": totals.subtotal,
        "shipping_cost": totals.shipping,
        "tax": totals.tax,
        "total": totals.total,
        "currency": currency,
        "payment_method_id": order_in.payment_method_id,
        "notes": order_in.notes,
        "status": "pending",
        "is_paid": False,
    }

    last_error = None
    for attempt in range(1, ORDER_NUMBER_ATTEMPTS + 1):
        values["order_number"] = number_factory()
        try:
            db_order = crud.create_order(db, values, user_id=user.id if user else None)
        except DuplicateOrderNumber as e:
            logger.warning(f"Order number {e.order_number} taken (attempt {attempt}/{ORDER_NUMBER_ATTEMPTS})")
            last_error = e
            continue
        logger.info(f"Order {db_order.order_number} created, total {db_order.total} {currency}")
        return db_order

    raise last_error


def _apply(db: Session, order_id: str, plan: Plan, max_attempts: int) -> Tuple[models.Order, bool]:
    for attempt in range(1, max_attempts + 1):
        db_order = get_order_or_404(db, order_id)
        change = plan(db_order)
        if change is None:
            return db_order, False

        patch, stage = change
        try:
            updated = crud.conditional_update(db, order_id, db_order.version, patch)
        except ConcurrentModification:
            db.rollback()
            logger.warning(f"Order {order_id} changed concurrently (attempt {attempt}/{max_attempts})")
            continue

        stage(updated)
        db.commit()
        db.refresh(updated)
        return updated, True

    raise ConcurrentModification(f"Order {order_id} is being modified by another request, try again")


def mark_paid(
    db: Session,
    order_id: str,
    transaction_id: str,
    card_brand: Optional[str] = None,
    last_four: Optional[str] = None,
    payment_intent_id: Optional[str] = None,
    actor_id: Optional[int] = None,
    max_attempts: int = 3,
) -> Tuple[models.Order, bool]:
    """
    Record a confirmed payment and move the order from pending to processing.

    Applying it to an order that is already paid is a no-op.

    Returns:
        Tuple of (order, applied)

    Raises:
        ValidationError: If no transaction reference is given
        IllegalTransition: If the order is not awaiting payment
    """
    if not transaction_id:
        raise ValidationError("A paid order requires a transaction reference",
                              [{"field": "transaction_id", "message": "required"}])

    def plan(order: models.Order):
        if order.is_paid:
            return None
        if order.status != "pending":
            raise IllegalTransition(order.status, "processing", "order is not awaiting payment")

        patch = {
            "is_paid": True,
            "paid_at": datetime.utcnow(),
            "transaction_id": transaction_id,
            "card_brand": card_brand,
            "last_four": last_four,
            "status": "processing",
        }
        if payment_intent_id:
            patch["payment_intent_id"] = payment_intent_id

        def stage(updated: models.Order) -> None:
            crud.log_order_event(
                db, order_id=updated.id, event_type="paid",
                description=f"Payment confirmed (transaction {transaction_id})",
                old_value="pending", new_value="processing", user_id=actor_id,
            )
            crud.enqueue_notification(db, updated.id, ORDER_CONFIRMED)

        return patch, stage

    return _apply(db, order_id, plan, max_attempts)


def update_status(
    db: Session,
    order_id: str,
    new_status: str,
    tracking_number: Optional[str] = None,
    shipping_method: Optional[str] = None,
    estimated_delivery: Optional[str] = None,
    actor_id: Optional[int] = None,
    max_attempts: int = 3,
) -> models.Order:
    """
    Move an order along the state machine.

    Shipping requires a tracking number or shipping method in the same update.
    Moving to processing requires a confirmed payment.

    Raises:
        IllegalTransition: If the state machine forbids the change
        ValidationError: If shipping details are missing
    """
    def plan(order: models.Order):
        validators.ensure_transition(order.status, new_status)
        if new_status == "processing" and not order.is_paid:
            raise IllegalTransition(order.status, new_status, "payment not confirmed")
        if new_status == "shipped" and not (tracking_number or shipping_method):
            raise ValidationError(
                "Shipping an order requires a tracking number or shipping method",
                [{"field": "tracking_number", "message": "required when status is shipped"}],
            )

        patch: Dict[str, Any] = {"status": new_status}
        if tracking_number:
            patch["tracking_number"] = tracking_number
        if shipping_method:
            patch["shipping_method"] = shipping_method
        if estimated_delivery:
            patch["estimated_delivery"] = estimated_delivery
        old_status = order.status

        def stage(updated: models.Order) -> None:
            crud.log_order_event(
                db, order_id=updated.id, event_type="status_changed",
                description=f"Status changed from '{old_status}' to '{new_status}'",
                old_value=old_status, new_value=new_status, user_id=actor_id,
            )
            if new_status == "shipped":
                crud.enqueue_notification(db, updated.id, ORDER_SHIPPED)

        return patch, stage

    db_order, _ = _apply(db, order_id, plan, max_attempts)
    return db_order


def cancel_order(db: Session, order_id: str, actor: CurrentUser, max_attempts: int = 3) -> models.Order:
    """
    Cancel a pending or processing order.

    Customers may only cancel their own orders; admins may cancel any order.

    Raises:
        Forbidden: If the actor neither owns the order nor is an admin
        IllegalTransition: If the order is past the cancellable states
    """
    def plan(order: models.Order):
        ensure_can_view(order, actor, action="cancel")
        if order.status not in validators.CANCELLABLE_STATUSES:
            raise IllegalTransition(order.status, "cancelled", "order cannot be cancelled at this stage")
        old_status = order.status

        def stage(updated: models.Order) -> None:
            crud.log_order_event(
                db, order_id=updated.id, event_type="cancelled",
                description=f"Order cancelled by {'admin' if actor.is_admin else 'customer'}",
                old_value=old_status, new_value="cancelled", user_id=actor.id,
            )

        return {"status": "cancelled"}, stage

    db_order, _ = _apply(db, order_id, plan, max_attempts)
    return db_order


def attach_payment_intent(db: Session, order_id: str, intent_id: str, max_attempts: int = 3) -> models.Order:
    """Remember the provider intent created for an order."""
    def plan(order: models.Order):
        if order.payment_intent_id == intent_id:
            return None
        previous = order.payment_intent_id

        def stage(updated: models.Order) -> None:
            crud.log_order_event(
                db, order_id=updated.id, event_type="payment_intent_created",
                description=f"Payment intent {intent_id} created",
                old_value=previous, new_value=intent_id,
            )

        return {"payment_intent_id": intent_id}, stage

    db_order, _ = _apply(db, order_id, plan, max_attempts)
    return db_order
