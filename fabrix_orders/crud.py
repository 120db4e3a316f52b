"""
Database operations for the orders service.

This module is the order record store: it creates and reads orders and applies
conditional (optimistically locked) updates. Orders are never deleted.

Functions that only stage rows (timeline events, outbox notifications,
conditional updates) leave the commit to the caller, so a status change and
everything it implies are committed together.
"""
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import and_, func, or_, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from . import models
from .errors import ConcurrentModification, DuplicateOrderNumber

# Set up logging
logger = logging.getLogger(__name__)

CLAIM_LEASE = timedelta(minutes=5)


def get_user(db: Session, user_id: int) -> Optional[models.User]:
    return db.query(models.User).filter(models.User.id == user_id).first()


def get_user_by_email(db: Session, email: str) -> Optional[models.User]:
    """
    Retrieve a user by email address.

    Args:
        db: Database session
        email: Email address to search for

    Returns:
        User object or None if not found
    """
    return db.query(models.User).filter(models.User.email == email).first()


def create_user(db: Session, name: str, email: str, password_hash: str, role: str = "user") -> models.User:
    db_user = models.User(name=name, email=email, password_hash=password_hash, role=role, is_active=True)
    db.add(db_user)
    db.commit()
    db.refresh(db_user)
    return db_user


def get_order(db: Session, order_id: str) -> Optional[models.Order]:
    """
    Retrieve a single order by ID.

    Args:
        db: Database session
        order_id: ID of the order to retrieve

    Returns:
        Order object or None if not found
    """
    return db.query(models.Order).filter(models.Order.id == order_id).first()


def get_order_by_number(db: Session, order_number: str) -> Optional[models.Order]:
    return db.query(models.Order).filter(models.Order.order_number == order_number).first()


def get_order_by_payment_intent(db: Session, payment_intent_id: str) -> Optional[models.Order]:
    return db.query(models.Order).filter(models.Order.payment_intent_id == payment_intent_id).first()


def get_orders(db: Session, skip: int = 0, limit: int = 100, user_id: Optional[int] = None) -> List[models.Order]:
    """
    Retrieve orders, newest first, with pagination.

    Args:
        db: Database session
        skip: Number of records to skip (offset)
        limit: Maximum number of records to return
        user_id: Restrict to the orders of this user

    Returns:
        List of Order objects
    """
    query = db.query(models.Order)
    if user_id is not None:
        query = query.filter(models.Order.user_id == user_id)
    return query.order_by(models.Order.created_at.desc()).offset(skip).limit(limit).all()


def count_orders(db: Session, user_id: Optional[int] = None) -> int:
    query = db.query(func.count(models.Order.id))
    if user_id is not None:
        query = query.filter(models.Order.user_id == user_id)
    return query.scalar() or 0


def create_order(db: Session, values: Dict[str, Any], user_id: Optional[int] = None) -> models.Order:
    """
    Insert a new order together with its "created" timeline event.

    NOTE: This function assumes validation and pricing have already been done.

    Args:
        db: Database session
        values: Column values for the new order, including ``order_number``
        user_id: User who placed the order (None for guests)

    Returns:
        Created Order object

    Raises:
        DuplicateOrderNumber: If the order number is already taken
    """
    db_order = models.Order(user_id=user_id, **values)
    db.add(db_order)
    try:
        db.flush()
        log_order_event(
            db,
            order_id=db_order.id,
            event_type="created",
            description=f"Order {db_order.order_number} created with status '{db_order.status}'",
            new_value=db_order.status,
            user_id=user_id,
        )
        db.commit()
    except IntegrityError as e:
        db.rollback()
        if "order_number" in str(e.orig):
            logger.warning(f"Order number collision on {values.get('order_number')}")
            raise DuplicateOrderNumber(values.get("order_number", "")) from e
        raise
    db.refresh(db_order)
    return db_order


def conditional_update(db: Session, order_id: str, expected_version: int, patch: Dict[str, Any]) -> models.Order:
    """
    Apply ``patch`` to an order only if its version still equals ``expected_version``.

    The version is bumped in the same statement. The change is flushed but not
    committed.

    Raises:
        ConcurrentModification: If the order changed since it was read
    """
    values = dict(patch)
    values["version"] = expected_version + 1
    values["updated_at"] = datetime.utcnow()

    result = db.execute(
        update(models.Order)
        .where(models.Order.id == order_id, models.Order.version == expected_version)
        .values(**values)
    )
    if result.rowcount != 1:
        raise ConcurrentModification(f"Order {order_id} was modified concurrently")

    db_order = get_order(db, order_id)
    db.refresh(db_order)
    return db_order


def log_order_event(
    db: Session,
    order_id: str,
    event_type: str,
    description: str,
    old_value: Optional[str] = None,
    new_value: Optional[str] = None,
    user_id: Optional[int] = None,
) -> models.OrderEvent:
    """
    Stage an order event for the timeline.

    Args:
        db: Database session
        order_id: Order identifier
        event_type: Type of event (e.g., "created", "status_changed", "paid")
        description: Human-readable description
        old_value: Previous value (optional)
        new_value: New value (optional)
        user_id: User who triggered the event (optional)
    """
    event = models.OrderEvent(
        order_id=order_id,
        event_type=event_type,
        description=description,
        old_value=old_value,
        new_value=new_value,
        user_id=user_id,
    )
    db.add(event)
    return event


def get_order_events(db: Session, order_id: str) -> List[models.OrderEvent]:
    return (
        db.query(models.OrderEvent)
        .filter(models.OrderEvent.order_id == order_id)
        .order_by(models.OrderEvent.created_at.asc(), models.OrderEvent.id.asc())
        .all()
    )


def get_payment_event(db: Session, event_id: str) -> Optional[models.PaymentEvent]:
    return db.query(models.PaymentEvent).filter(models.PaymentEvent.event_id == event_id).first()


def record_payment_event(
    db: Session, event_id: str, event_type: str, outcome: str, order_id: Optional[str] = None
) -> bool:
    """
    Record a processed provider event.

    Returns:
        True if recorded, False if the event id was already in the ledger
    """
    db.add(models.PaymentEvent(event_id=event_id, event_type=event_type, order_id=order_id, outcome=outcome))
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        logger.info(f"Payment event {event_id} already recorded")
        return False
    return True


def enqueue_notification(db: Session, order_id: str, kind: str) -> models.Notification:
    """Stage an outbox row for a notification about an order."""
    notification = models.Notification(order_id=order_id, kind=kind, status="pending", attempts=0)
    db.add(notification)
    return notification


def _claimable(lease: timedelta):
    """Rows awaiting delivery, plus rows whose claim has outlived the lease."""
    return or_(
        models.Notification.status.in_(("pending", "failed")),
        and_(
            models.Notification.status == "sending",
            models.Notification.claimed_at < datetime.utcnow() - lease,
        ),
    )


def get_pending_notifications(
    db: Session, limit: int = 100, max_attempts: int = 5, lease: timedelta = CLAIM_LEASE
) -> List[models.Notification]:
    """Notifications not yet delivered that still have attempts left, oldest first."""
    return (
        db.query(models.Notification)
        .filter(_claimable(lease), models.Notification.attempts < max_attempts)
        .order_by(models.Notification.id.asc())
        .limit(limit)
        .all()
    )


def claim_notification(db: Session, notification_id: int, lease: timedelta = CLAIM_LEASE) -> bool:
    """
    Mark a notification as being sent, unless another dispatcher got to it first.

    A claim older than ``lease`` is treated as abandoned and can be taken over.

    Returns:
        True if this caller now owns the delivery attempt
    """
    result = db.execute(
        update(models.Notification)
        .where(models.Notification.id == notification_id, _claimable(lease))
        .values(status="sending", attempts=models.Notification.attempts + 1, claimed_at=datetime.utcnow())
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return result.rowcount == 1


def finish_notification(db: Session, notification_id: int, error: Optional[str] = None) -> None:
    values: Dict[str, Any] = {"status": "failed", "last_error": error} if error else {
        "status": "sent", "sent_at": datetime.utcnow(), "last_error": None}
    db.execute(
        update(models.Notification)
        .where(models.Notification.id == notification_id)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    db.commit()


def count_notifications(db: Session, order_id: str, kind: Optional[str] = None) -> int:
    query = db.query(func.count(models.Notification.id)).filter(models.Notification.order_id == order_id)
    if kind is not None:
        query = query.filter(models.Notification.kind == kind)
    return query.scalar() or 0
