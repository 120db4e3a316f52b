"""
Payment intent coordination.

Turns an order total into a provider payment intent. Money never moves here:
the client completes the payment with the returned secret and the provider
reports the outcome through the webhook.
"""
import logging
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Dict, NamedTuple, Optional, Protocol

from .clients.stripe_client import PaymentIntentResult
from .config import Settings
from .errors import InvalidAmount, PaymentProviderError, ValidationError

logger = logging.getLogger(__name__)


class PaymentGateway(Protocol):
    def create_intent(self, amount_minor: int, currency: str, metadata: Dict[str, str],
                      idempotency_key: Optional[str] = None) -> PaymentIntentResult:
        ...

    def verify(self, raw_body: bytes, signature_header: Optional[str]) -> dict:
        ...


class CreatedIntent(NamedTuple):
    intent_id: str
    client_secret: str
    amount_minor: int
    currency: str


def to_minor_units(amount) -> int:
    """
    Convert an amount in major units to minor units, rounding half up.

    ``19.995`` becomes ``2000``.

    Raises:
        InvalidAmount: If the amount is not a positive number
    """
    try:
        value = Decimal(str(amount))
    except (InvalidOperation, ValueError, TypeError):
        raise InvalidAmount("Invalid amount", [{"field": "amount", "message": "must be a number"}])

    if not value.is_finite() or value <= 0:
        raise InvalidAmount("Invalid amount", [{"field": "amount", "message": "must be positive"}])

    minor = int((value * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    if minor <= 0:
        raise InvalidAmount("Invalid amount", [{"field": "amount", "message": "rounds to zero"}])
    return minor


class PaymentIntentCoordinator:
    """
    Requests payment intents from the provider for orders.

    Args:
        gateway: Payment provider boundary
        settings: Application settings (currencies)
    """

    def __init__(self, gateway: PaymentGateway, settings: Settings):
        self.gateway = gateway
        self.settings = settings

    def create_intent(self, amount, currency: Optional[str] = None,
                      metadata: Optional[Dict[str, str]] = None) -> CreatedIntent:
        """
        Create a payment intent for an amount in major currency units.

        Args:
            amount: Positive amount in major units
            currency: ISO currency code, defaults to the configured currency
            metadata: Must contain ``order_id`` so the webhook can find the order

        Returns:
            The intent id, client secret and the amount actually requested

        Raises:
            InvalidAmount: Before any provider call, for non-positive amounts
            ValidationError: For unsupported currencies or missing order id
            PaymentProviderError: If the provider call fails (not retried)
        """
        amount_minor = to_minor_units(amount)

        currency = (currency or self.settings.default_currency).lower()
        if currency not in self.settings.allowed_currencies:
            raise ValidationError("Invalid currency", [{"field": "currency", "message": f"unsupported: {currency}"}])

        metadata = {str(k): str(v) for k, v in (metadata or {}).items()}
        order_id = metadata.get("order_id")
        if not order_id:
            raise ValidationError("Payment metadata must include the order id")

        idempotency_key = f"intent-{order_id}-{amount_minor}-{currency}"
        logger.info(f"Requesting payment intent for order {order_id}: {amount_minor} {currency}")
        try:
            result = self.gateway.create_intent(amount_minor, currency, metadata, idempotency_key=idempotency_key)
        except PaymentProviderError:
            logger.error(f"Payment intent request for order {order_id} failed")
            raise

        logger.info(f"Payment intent {result.intent_id} created for order {order_id}")
        return CreatedIntent(result.intent_id, result.client_secret, amount_minor, currency)
