"""
Client for the Stripe payment provider.

Creates payment intents and verifies webhook signatures. Stripe failures
surface as ``PaymentProviderError`` or ``InvalidSignature``.
"""
import json
import logging
from typing import Any, Dict, NamedTuple, Optional

import stripe

from ..config import Settings
from ..errors import InvalidSignature, PaymentProviderError, ValidationError

logger = logging.getLogger(__name__)


class PaymentIntentResult(NamedTuple):
    intent_id: str
    client_secret: str


class StripeGateway:
    """
    Payment provider boundary backed by the Stripe API.

    Args:
        settings: Application settings (API key, webhook secret, timeout)
    """

    def __init__(self, settings: Settings):
        self._api_key = settings.stripe_secret_key
        self._webhook_secret = settings.stripe_webhook_secret
        self._timeout = settings.stripe_timeout
        self._client: Optional[stripe.StripeClient] = None

    @property
    def client(self) -> stripe.StripeClient:
        if self._client is None:
            self._client = stripe.StripeClient(
                self._api_key,
                http_client=stripe.RequestsClient(timeout=self._timeout),
                max_network_retries=0,
            )
        return self._client

    def create_intent(
        self,
        amount_minor: int,
        currency: str,
        metadata: Dict[str, str],
        idempotency_key: Optional[str] = None,
    ) -> PaymentIntentResult:
        """
        Create a payment intent.

        Args:
            amount_minor: Amount in minor currency units (e.g. cents)
            currency: Lowercase ISO currency code
            metadata: Metadata stored on the intent (must carry the order id)
            idempotency_key: Key making retries of the same request safe

        Returns:
            Intent id and client secret

        Raises:
            PaymentProviderError: If Stripe rejects the request or is unreachable
        """
        options = {"idempotency_key": idempotency_key} if idempotency_key else {}
        try:
            intent = self.client.payment_intents.create(
                params={
                    "amount": amount_minor,
                    "currency": currency,
                    "metadata": metadata,
                    "automatic_payment_methods": {"enabled": True},
                },
                options=options,
            )
        except stripe.StripeError as e:
            logger.error(f"Stripe payment intent creation error: {e}")
            raise PaymentProviderError(f"Failed to create payment intent: {e.user_message or type(e).__name__}") from e

        return PaymentIntentResult(intent_id=intent.id, client_secret=intent.client_secret)

    def verify(self, raw_body: bytes, signature_header: Optional[str]) -> Dict[str, Any]:
        """
        Verify a webhook payload against its ``Stripe-Signature`` header.

        The signature covers the exact request bytes, so ``raw_body`` must be
        the unparsed body.

        Returns:
            The decoded event

        Raises:
            InvalidSignature: If the header is missing or does not match the payload
        """
        if not self._webhook_secret:
            raise InvalidSignature("Webhook secret is not configured")
        if not signature_header:
            raise InvalidSignature("Missing Stripe-Signature header")

        try:
            payload = raw_body.decode("utf-8")
            stripe.WebhookSignature.verify_header(
                payload, signature_header, self._webhook_secret, stripe.Webhook.DEFAULT_TOLERANCE
            )
        except (stripe.SignatureVerificationError, UnicodeDecodeError) as e:
            raise InvalidSignature(f"Webhook Error: {e}") from e

        try:
            return json.loads(payload)
        except json.JSONDecodeError as e:
            raise ValidationError("Invalid JSON payload") from e
