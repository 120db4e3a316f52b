"""
Order endpoints.

Endpoints:
    POST /api/orders: Create an order (guests allowed)
    GET /api/orders: List orders (admins see all, users their own)
    GET /api/orders/myorders: Orders of the current user
    GET /api/orders/number/{order_number}: Public order tracking (redacted)
    GET /api/orders/{order_id}: Get a single order (owner or admin)
    GET /api/orders/{order_id}/timeline: Order events (owner or admin)
    PUT /api/orders/{order_id}/pay: Record a payment (admin)
    PUT /api/orders/{order_id}/status: Change status (admin)
    PUT /api/orders/{order_id}/cancel: Cancel an order (owner or admin)
"""
import math
from typing import List, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Query, Request, status
from sqlalchemy.orm import Session

from .. import auth, crud, lifecycle, schemas
from ..config import Settings
from ..database import get_db
from ..errors import NotFound

router = APIRouter(prefix="/api/orders", tags=["orders"])


def schedule_notifications(request: Request, background_tasks: BackgroundTasks) -> None:
    background_tasks.add_task(request.app.state.dispatcher.run)


@router.post("", response_model=schemas.Order, status_code=status.HTTP_201_CREATED)
def create_order(
    order: schemas.OrderCreate,
    request: Request,
    db: Session = Depends(get_db),
    settings: Settings = Depends(auth.get_settings),
    current_user: Optional[auth.CurrentUser] = Depends(auth.get_optional_user),
):
    """
    Create a new order in the pending state.

    Totals are computed from the items; a client-submitted payment breakdown
    must match them.

    Raises:
        ValidationError: 400 if items, shipping method, currency or totals are invalid
        DuplicateOrderNumber: 409 if no free order number could be generated
    """
    db_order = lifecycle.place_order(
        db, order, current_user, settings, number_factory=request.app.state.order_number_factory
    )
    return schemas.Order.from_model(db_order)


@router.get("", response_model=schemas.OrderPage)
def list_orders(
    page: int = Query(1, ge=1),
    page_size: int = Query(10, ge=1, le=100),
    db: Session = Depends(get_db),
    current_user: auth.CurrentUser = Depends(auth.get_current_user),
):
    """List orders, newest first (authenticated users see their own, admins see all)."""
    user_filter = None if current_user.is_admin else current_user.id
    total = crud.count_orders(db, user_id=user_filter)
    orders = crud.get_orders(db, skip=(page - 1) * page_size, limit=page_size, user_id=user_filter)
    return schemas.OrderPage(
        orders=[schemas.Order.from_model(o) for o in orders],
        page=page,
        pages=math.ceil(total / page_size),
        total=total,
    )


@router.get("/myorders", response_model=List[schemas.Order])
def my_orders(
    db: Session = Depends(get_db),
    current_user: auth.CurrentUser = Depends(auth.get_current_user),
):
    orders = crud.get_orders(db, skip=0, limit=1000, user_id=current_user.id)
    return [schemas.Order.from_model(o) for o in orders]


@router.get("/number/{order_number}", response_model=schemas.PublicOrder)
def get_order_by_number(order_number: str, db: Session = Depends(get_db)):
    """
    Public order tracking by order number.

    Contact details and payment references are left out of the response.
    """
    db_order = crud.get_order_by_number(db, order_number)
    if db_order is None:
        raise NotFound("Order not found")
    return schemas.PublicOrder.from_model(db_order)


@router.get("/{order_id}", response_model=schemas.Order)
def get_order(
    order_id: str,
    db: Session = Depends(get_db),
    current_user: auth.CurrentUser = Depends(auth.get_current_user),
):
    """
    Get a single order by ID (owner or admin).

    Raises:
        Forbidden: 403 if not authorized
        NotFound: 404 if order not found
    """
    db_order = lifecycle.get_order_or_404(db, order_id)
    lifecycle.ensure_can_view(db_order, current_user)
    return schemas.Order.from_model(db_order)


@router.get("/{order_id}/timeline", response_model=List[schemas.OrderEvent])
def get_order_timeline(
    order_id: str,
    db: Session = Depends(get_db),
    current_user: auth.CurrentUser = Depends(auth.get_current_user),
):
    """Get the timeline of events for an order in chronological order (owner or admin)."""
    db_order = lifecycle.get_order_or_404(db, order_id)
    lifecycle.ensure_can_view(db_order, current_user, action="view the timeline of")
    return crud.get_order_events(db, order_id)


@router.put("/{order_id}/pay", response_model=schemas.Order)
def mark_order_paid(
    order_id: str,
    payment: schemas.MarkPaid,
    request: Request,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    settings: Settings = Depends(auth.get_settings),
    current_user: auth.CurrentUser = Depends(auth.require_admin),
):
    """
    Record a payment confirmed outside the webhook flow (admin).

    Repeating it for an order that is already paid changes nothing.
    """
    db_order, applied = lifecycle.mark_paid(
        db,
        order_id,
        transaction_id=payment.transaction_id,
        card_brand=payment.card_brand,
        last_four=payment.last_four,
        actor_id=current_user.id,
        max_attempts=settings.max_update_retries,
    )
    if applied:
        schedule_notifications(request, background_tasks)
    return schemas.Order.from_model(db_order)


@router.put("/{order_id}/status", response_model=schemas.Order)
def update_order_status(
    order_id: str,
    update: schemas.StatusUpdate,
    request: Request,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    settings: Settings = Depends(auth.get_settings),
    current_user: auth.CurrentUser = Depends(auth.require_admin),
):
    """
    Move an order along its lifecycle (admin).

    Raises:
        IllegalTransition: 400 if the state machine forbids the change
        ValidationError: 400 if shipping without tracking details
    """
    if update.status == "cancelled":
        db_order = lifecycle.cancel_order(db, order_id, current_user, max_attempts=settings.max_update_retries)
    else:
        db_order = lifecycle.update_status(
            db,
            order_id,
            update.status,
            tracking_number=update.tracking_number,
            shipping_method=update.shipping_method,
            estimated_delivery=update.estimated_delivery,
            actor_id=current_user.id,
            max_attempts=settings.max_update_retries,
        )
        schedule_notifications(request, background_tasks)
    return schemas.Order.from_model(db_order)


@router.put("/{order_id}/cancel", response_model=schemas.Order)
def cancel_order(
    order_id: str,
    db: Session = Depends(get_db),
    settings: Settings = Depends(auth.get_settings),
    current_user: auth.CurrentUser = Depends(auth.get_current_user),
):
    """
    Cancel a pending or processing order (owner or admin).

    Raises:
        Forbidden: 403 if the order belongs to someone else
        IllegalTransition: 400 if the order can no longer be cancelled
    """
    db_order = lifecycle.cancel_order(db, order_id, current_user, max_attempts=settings.max_update_retries)
    return schemas.Order.from_model(db_order)
