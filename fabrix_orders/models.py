"""
SQLAlchemy ORM models for the orders service.

Defines the database schema for users, orders, the order timeline, the payment
event ledger and the notification outbox.
"""
import uuid
from datetime import datetime

from sqlalchemy import JSON, Boolean, Column, DateTime, ForeignKey, Integer, Numeric, String, Text
from sqlalchemy.dialects.postgresql import JSONB

from .database import Base

JSONType = JSON().with_variant(JSONB(), "postgresql")


def _new_id() -> str:
    return uuid.uuid4().hex


class User(Base):
    """
    User model representing a storefront account.

    Attributes:
        id (int): Primary key, auto-incremented user ID
        name (str): User's full name
        email (str): User's email address (unique)
        password_hash (str): Hashed password
        role (str): User role (admin, user)
        is_active (bool): Whether the user account is active
        created_at (datetime): Timestamp when the user was created
    """
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, nullable=False)
    email = Column(String, unique=True, index=True, nullable=False)
    password_hash = Column(String, nullable=False)
    role = Column(String, default="user", nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)


class Order(Base):
    """
    Order model representing a customer purchase.

    Customer and shipping address are snapshots taken at checkout so historical
    orders stay stable when the user profile changes. Payment fields only ever
    hold external references (transaction id, card brand, last four digits).

    Attributes:
        id (str): Opaque primary key
        order_number (str): Human-facing identifier, unique and never regenerated
        user_id (int): Owner of the order, None for guest checkout
        items (list): Line items (stored as JSON)
        customer (dict): Buyer contact snapshot (stored as JSON)
        shipping_address (dict): Destination snapshot (stored as JSON)
        shipping_method (str): Shipping method chosen at checkout
        tracking_number (str): Carrier tracking number, set at dispatch
        estimated_delivery (str): Estimated delivery, set at dispatch
        subtotal, shipping_cost, tax, total (Decimal): Monetary breakdown
        is_paid (bool): Whether the payment has been confirmed
        paid_at (datetime): When the payment was confirmed
        payment_intent_id (str): Provider payment intent tied to the order
        transaction_id (str): Provider transaction reference
        status (str): pending, processing, shipped, delivered or cancelled
        version (int): Optimistic concurrency counter, bumped on every update
    """
    __tablename__ = "orders"

    id = Column(String(32), primary_key=True, index=True, default=_new_id)
    order_number = Column(String, unique=True, index=True, nullable=False)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=True, index=True)

    items = Column(JSONType, nullable=False, default=list)
    customer = Column(JSONType, nullable=False)
    shipping_address = Column(JSONType, nullable=False)
    shipping_method = Column(String, nullable=False)
    tracking_number = Column(String, nullable=True)
    estimated_delivery = Column(String, nullable=True)

    subtotal = Column(Numeric(10, 2), nullable=False, default=0)
    shipping_cost = Column(Numeric(10, 2), nullable=False, default=0)
    tax = Column(Numeric(10, 2), nullable=False, default=0)
    total = Column(Numeric(10, 2), nullable=False, default=0)
    currency = Column(String(3), nullable=False, default="usd")

    is_paid = Column(Boolean, nullable=False, default=False)
    paid_at = Column(DateTime, nullable=True)
    payment_method_id = Column(String, nullable=True)
    payment_intent_id = Column(String, nullable=True, index=True)
    transaction_id = Column(String, nullable=True)
    card_brand = Column(String, nullable=True)
    last_four = Column(String(4), nullable=True)

    status = Column(String, nullable=False, default="pending", index=True)
    notes = Column(Text, nullable=True)
    version = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class OrderEvent(Base):
    """
    OrderEvent model representing historical events in an order's lifecycle.

    Attributes:
        id (int): Primary key, auto-incrementing event ID
        order_id (str): Foreign key to the order
        event_type (str): created, payment_intent_created, paid, payment_failed,
            status_changed or cancelled
        description (str): Human-readable description of the event
        old_value (str): Previous value (for changes, optional)
        new_value (str): New value (for changes, optional)
        user_id (int): ID of the user who triggered the event (optional)
        created_at (datetime): Timestamp when the event occurred
    """
    __tablename__ = "order_events"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    order_id = Column(String(32), ForeignKey("orders.id"), nullable=False, index=True)
    event_type = Column(String, nullable=False)
    description = Column(Text, nullable=False)
    old_value = Column(String, nullable=True)
    new_value = Column(String, nullable=True)
    user_id = Column(Integer, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class PaymentEvent(Base):
    """Ledger of verified payment provider events, keyed by the provider's event id."""
    __tablename__ = "payment_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    event_id = Column(String, unique=True, index=True, nullable=False)
    event_type = Column(String, nullable=False)
    order_id = Column(String, nullable=True, index=True)
    outcome = Column(String, nullable=False)
    received_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class Notification(Base):
    """
    Outbox row for a customer notification.

    Rows are written in the same transaction as the status change that caused
    them and delivered afterwards by the notification dispatcher. A row left in
    "sending" past the claim lease (a worker that died mid-delivery) can be
    claimed again.
    """
    __tablename__ = "notifications"

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(String(32), ForeignKey("orders.id"), nullable=False, index=True)
    kind = Column(String, nullable=False)
    status = Column(String, nullable=False, default="pending", index=True)
    attempts = Column(Integer, nullable=False, default=0)
    claimed_at = Column(DateTime, nullable=True)
    last_error = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    sent_at = Column(DateTime, nullable=True)
