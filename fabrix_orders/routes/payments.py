"""
Payment endpoints.

Endpoints:
    POST /api/payments/create-intent: Create a provider payment intent for an order
    POST /api/payments/webhook: Receive provider events (signature verified)
"""
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Request, status
from fastapi.concurrency import run_in_threadpool
from sqlalchemy.orm import Session

from .. import auth, lifecycle, schemas
from ..config import Settings
from ..database import get_db
from ..errors import Unauthorized, ValidationError

router = APIRouter(prefix="/api/payments", tags=["payments"])


@router.post("/create-intent", response_model=schemas.PaymentIntentResponse, status_code=status.HTTP_201_CREATED)
def create_payment_intent(
    body: schemas.PaymentIntentCreate,
    request: Request,
    db: Session = Depends(get_db),
    settings: Settings = Depends(auth.get_settings),
    current_user: Optional[auth.CurrentUser] = Depends(auth.get_optional_user),
):
    """
    Create a payment intent for the full total of a pending order.

    The amount and currency always come from the stored order, never from the request.
    Guest orders can be paid without an account; orders placed by a user need
    that user (or an admin).

    Raises:
        Unauthorized: 401 if the order belongs to a user and no token is sent
        NotFound: 404 if the order does not exist
        Forbidden: 403 if the order belongs to someone else
        ValidationError: 400 if the order is not awaiting payment or the currency differs
        PaymentProviderError: 502 if the provider call fails
    """
    db_order = lifecycle.get_order_or_404(db, body.order_id)
    if db_order.user_id is not None:
        if current_user is None:
            raise Unauthorized("Not authorized, no token")
        lifecycle.ensure_can_view(db_order, current_user, action="pay for")

    if db_order.is_paid:
        raise ValidationError("Order is already paid")
    if db_order.status != "pending":
        raise ValidationError(f"Order cannot be paid in status '{db_order.status}'")
    if body.currency and body.currency.lower() != db_order.currency:
        raise ValidationError(
            "Invalid currency",
            [{"field": "currency", "message": f"order is priced in {db_order.currency}"}],
        )

    intent = request.app.state.coordinator.create_intent(
        db_order.total,
        currency=db_order.currency,
        metadata={"order_id": db_order.id, "order_number": db_order.order_number},
    )
    lifecycle.attach_payment_intent(db, db_order.id, intent.intent_id, max_attempts=settings.max_update_retries)

    return schemas.PaymentIntentResponse(
        client_secret=intent.client_secret,
        payment_intent_id=intent.intent_id,
        order_id=db_order.id,
        amount=intent.amount_minor,
        currency=intent.currency,
    )


@router.post("/webhook", response_model=schemas.WebhookAck)
async def payment_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
):
    """
    Receive a payment provider event.

    The signature is checked against the raw body; a bad signature is rejected
    with 400 and nothing is changed.
    """
    raw_body = await request.body()
    signature: Optional[str] = request.headers.get("stripe-signature")

    ack = await run_in_threadpool(request.app.state.reconciler.handle, db, raw_body, signature)
    if ack.get("outcome") == "paid":
        background_tasks.add_task(request.app.state.dispatcher.run)
    return ack
