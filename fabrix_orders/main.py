"""
FabriX Orders Service API

This module builds the FastAPI application for the order lifecycle: checkout,
payment intents, payment provider webhooks, fulfilment status changes and
customer notifications.

Endpoints:
    /api/users: Registration, login and the current user
    /api/orders: Order creation, lookup, timeline and status changes
    /api/payments: Payment intents and the provider webhook
    /api/admin: Notification dispatch
    GET /healthz: Health check endpoint for orchestration systems

Run with ``uvicorn --factory fabrix_orders.main:create_app``.
"""
import logging
from typing import Callable, Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from . import models
from .clients.stripe_client import StripeGateway
from .config import Settings
from .database import build_engine, build_session_factory
from .errors import register_error_handlers
from .notifications import NotificationDispatcher, Notifier, build_notifier
from .order_numbers import generate_order_number
from .payments import PaymentGateway, PaymentIntentCoordinator
from .reconciler import WebhookReconciler
from .routes import admin, orders, payments, users
from .schemas import ErrorResponse

ERROR_RESPONSES = {code: {"model": ErrorResponse} for code in (400, 401, 403, 404, 409, 500)}

logger = logging.getLogger(__name__)


def create_app(
    settings: Optional[Settings] = None,
    gateway: Optional[PaymentGateway] = None,
    notifier: Optional[Notifier] = None,
    order_number_factory: Optional[Callable[[], str]] = None,
) -> FastAPI:
    """
    Create the orders service application.

    Args:
        settings: Configuration, read from the environment when omitted
        gateway: Payment provider boundary, Stripe when omitted
        notifier: Notification channel, email plus webhooks when omitted
        order_number_factory: Order number generator

    Returns:
        Configured FastAPI application with its tables created
    """
    settings = settings or Settings.from_env()
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    engine = build_engine(settings.database_url)
    # Create database tables
    models.Base.metadata.create_all(bind=engine)
    session_factory = build_session_factory(engine)

    app = FastAPI(title="fabrix-orders-service")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    register_error_handlers(app, debug=settings.is_development)

    gateway = gateway or StripeGateway(settings)
    app.state.settings = settings
    app.state.engine = engine
    app.state.session_factory = session_factory
    app.state.gateway = gateway
    app.state.coordinator = PaymentIntentCoordinator(gateway, settings)
    app.state.reconciler = WebhookReconciler(gateway, settings)
    app.state.dispatcher = NotificationDispatcher(notifier or build_notifier(settings), session_factory)
    app.state.order_number_factory = order_number_factory or generate_order_number

    @app.get("/healthz", response_model=dict)
    def health():
        """
        Health check endpoint for the orders service.

        Returns:
            dict: {"status": "healthy"} when the service is operational
        """
        return {"status": "healthy"}

    for router in (users.router, orders.router, payments.router, admin.router):
        app.include_router(router, responses=ERROR_RESPONSES)

    logger.info(f"Orders service configured ({settings.environment})")
    return app

