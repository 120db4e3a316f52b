"""
Customer and subscriber notifications for order events.

Status changes write rows to the ``notifications`` outbox in the same commit as
the change itself. The dispatcher delivers them afterwards; a delivery failure
is logged and recorded on the row, never propagated to the state change.
"""
import logging
import smtplib
from datetime import datetime, timedelta, timezone
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from html import escape
from typing import Any, Callable, Dict, List, NamedTuple, Optional, Protocol

import httpx
from sqlalchemy.orm import Session, sessionmaker

from . import crud, models, schemas
from .config import Settings

logger = logging.getLogger(__name__)

WEBHOOK_TIMEOUT = 5.0  # seconds


class Notifier(Protocol):
    def notify(self, kind: str, order: models.Order) -> None:
        ...


def render_order_confirmation(order: models.Order) -> Dict[str, str]:
    customer = order.customer or {}
    address = order.shipping_address or {}
    rows = "".join(
        f"<tr><td>{escape(str(item['name']))}</td><td>{item['quantity']}</td><td>${item['price']}</td></tr>"
        for item in order.items or []
    )
    address_lines = [address.get("address1", ""), address.get("address2") or "",
                     f"{address.get('city', '')}, {address.get('state', '')} {address.get('zip_code', '')}",
                     address.get("country", "")]
    html = (
        f"<h2>Thank you for your order, {escape(customer.get('first_name', ''))}!</h2>"
        f"<p>Order number: <strong>{order.order_number}</strong></p>"
        f"<table><tr><th>Item</th><th>Qty</th><th>Price</th></tr>{rows}</table>"
        f"<p>Subtotal: ${order.subtotal}<br>Shipping: ${order.shipping_cost}<br>"
        f"Tax: ${order.tax}<br><strong>Total: ${order.total}</strong></p>"
        f"<p>{'<br>'.join(escape(line) for line in address_lines if line.strip(', '))}</p>"
    )
    return {
        "subject": f"Your Order Confirmation #{order.order_number}",
        "html": html,
        "text": f"Thank you for your order #{order.order_number}. We'll notify you once your order has shipped.",
    }


def render_shipping_confirmation(order: models.Order) -> Dict[str, str]:
    customer = order.customer or {}
    tracking = order.tracking_number or "Not available"
    estimated = order.estimated_delivery or "Not available"
    name = escape(f"{customer.get('first_name', '')} {customer.get('last_name', '')}")
    html = (
        f"<h2>Good news, {name}!</h2>"
        f"<p>Your order <strong>{order.order_number}</strong> has shipped via {escape(order.shipping_method or '')}.</p>"
        f"<p>Tracking number: {escape(tracking)}<br>Estimated delivery: {escape(estimated)}</p>"
    )
    return {
        "subject": f"Your FabriX Order #{order.order_number} Has Shipped",
        "html": html,
        "text": f"Your order #{order.order_number} has been shipped! Tracking number: {tracking}",
    }


TEMPLATES: Dict[str, Callable[[models.Order], Dict[str, str]]] = {
    "order_confirmed": render_order_confirmation,
    "order_shipped": render_shipping_confirmation,
}


class EmailNotifier:
    """
    Sends order emails to the customer over SMTP.

    Args:
        settings: Application settings with the SMTP configuration
        smtp_factory: Callable returning an SMTP connection for (host, port)
    """

    def __init__(self, settings: Settings, smtp_factory: Optional[Callable[..., smtplib.SMTP]] = None):
        self.settings = settings
        secure = settings.email_port == 465
        self.smtp_factory = smtp_factory or (smtplib.SMTP_SSL if secure else smtplib.SMTP)

    def build_message(self, kind: str, order: models.Order) -> MIMEMultipart:
        render = TEMPLATES.get(kind)
        if render is None:
            raise ValueError(f"Unknown notification kind: {kind}")
        content = render(order)

        message = MIMEMultipart("alternative")
        message["Subject"] = content["subject"]
        message["From"] = f"FabriX <{self.settings.email_from}>"
        message["To"] = (order.customer or {}).get("email", "")
        message.attach(MIMEText(content["text"], "plain"))
        message.attach(MIMEText(content["html"], "html"))
        return message

    def notify(self, kind: str, order: models.Order) -> None:
        message = self.build_message(kind, order)
        with self.smtp_factory(self.settings.email_host, self.settings.email_port, timeout=10) as smtp:
            if self.settings.email_port != 465:
                smtp.starttls()
            if self.settings.email_user:
                smtp.login(self.settings.email_user, self.settings.email_password)
            smtp.send_message(message)
        logger.info(f"{kind} email sent to {message['To']} for order {order.order_number}")


class WebhookNotifier:
    """
    Posts order events to subscriber URLs.

    Subscriber failures are logged per URL and do not fail the notification.
    """

    def __init__(self, urls: List[str], transport: Optional[httpx.BaseTransport] = None):
        self.urls = urls
        self.transport = transport

    def notify(self, kind: str, order: models.Order) -> None:
        if not self.urls:
            return

        payload = {
            "event": f"order.{kind.split('_', 1)[-1]}",
            "data": schemas.Order.from_model(order).model_dump(mode="json"),
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        with httpx.Client(timeout=WEBHOOK_TIMEOUT, transport=self.transport) as client:
            for url in self.urls:
                send_single_webhook(client, url, payload)


def send_single_webhook(client: httpx.Client, url: str, payload: Dict[str, Any]) -> None:
    """
    Send a webhook to a single URL.

    Args:
        client: HTTP client
        url: Webhook URL
        payload: Event payload
    """
    try:
        response = client.post(url, json=payload, headers={"Content-Type": "application/json"})
        if response.status_code >= 400:
            logger.warning(f"Webhook failed for {url}: HTTP {response.status_code}")
    except httpx.HTTPError as e:
        logger.warning(f"Webhook error for {url}: {e}")


class CompositeNotifier:
    """Fans a notification out to several notifiers; the first failure is re-raised after all ran."""

    def __init__(self, *notifiers: Notifier):
        self.notifiers = notifiers

    def notify(self, kind: str, order: models.Order) -> None:
        first_error = None
        for notifier in self.notifiers:
            try:
                notifier.notify(kind, order)
            except Exception as e:
                logger.error(f"{type(notifier).__name__} failed for {kind} on order {order.order_number}: {e}")
                first_error = first_error or e
        if first_error is not None:
            raise first_error


class DispatchResult(NamedTuple):
    sent: int
    failed: int


class NotificationDispatcher:
    """
    Delivers pending outbox notifications.

    Args:
        notifier: Channel used to deliver notifications
        session_factory: Factory for the database sessions used by background runs
        max_attempts: Deliveries attempted per notification before giving up
        lease: How long a claim may stay in "sending" before another run retries it
    """

    def __init__(self, notifier: Notifier, session_factory: sessionmaker, max_attempts: int = 5,
                 lease: timedelta = crud.CLAIM_LEASE):
        self.notifier = notifier
        self.session_factory = session_factory
        self.max_attempts = max_attempts
        self.lease = lease

    def run(self) -> DispatchResult:
        """Dispatch with a fresh session; used as a background task after responses."""
        db = self.session_factory()
        try:
            return self.dispatch_pending(db)
        finally:
            db.close()

    def dispatch_pending(self, db: Session) -> DispatchResult:
        sent = failed = 0
        for notification in crud.get_pending_notifications(db, max_attempts=self.max_attempts, lease=self.lease):
            notification_id, kind = notification.id, notification.kind
            if not crud.claim_notification(db, notification_id, lease=self.lease):
                continue

            order = crud.get_order(db, notification.order_id)
            try:
                self.notifier.notify(kind, order)
            except Exception as e:
                logger.exception(f"Notification {notification_id} ({kind}) failed")
                crud.finish_notification(db, notification_id, error=str(e) or type(e).__name__)
                failed += 1
                continue

            crud.finish_notification(db, notification_id)
            sent += 1

        if sent or failed:
            logger.info(f"Notifications dispatched: {sent} sent, {failed} failed")
        return DispatchResult(sent, failed)


def build_notifier(settings: Settings) -> Notifier:
    return CompositeNotifier(EmailNotifier(settings), WebhookNotifier(settings.webhook_urls))
