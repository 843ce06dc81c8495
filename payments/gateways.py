"""
Payment gateway adapters.

Each adapter turns a gateway's callback into a verified payload or raises
InvalidSignature. Nothing here touches orders; see payments.services.

- StripeGateway: intent-based, signed webhook events
- RazorpayGateway: gateway order + payment id, HMAC-signed by the client flow
"""
import hashlib
import hmac
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, Optional

import httpx
import stripe
from django.conf import settings

from core.exceptions import InvalidSignature, OrderValidationError, PaymentGatewayError

logger = logging.getLogger(__name__)


def minor_units(amount: Decimal) -> int:
    """Convert a currency amount to cents / paise."""
    return int((amount * 100).to_integral_value())


@dataclass(frozen=True)
class PaymentEvent:
    """A verified gateway callback reduced to what the order core needs."""
    gateway: str
    event_type: str
    reference: str
    payment_id: Optional[str] = None
    failure_reason: Optional[str] = None


class PaymentGateway(ABC):
    """Abstract payment gateway interface."""
    name = ''

    @abstractmethod
    def is_configured(self) -> bool:
        ...


class StripeGateway(PaymentGateway):
    """
    Intent-based gateway.

    The server creates a PaymentIntent keyed to an order; the gateway later
    posts signed ``payment_intent.*`` events to the webhook.
    """
    name = 'stripe'
    SUCCEEDED = 'payment_intent.succeeded'
    FAILED = 'payment_intent.payment_failed'

    def __init__(self, api_key: str, webhook_secret: str, tolerance: int = 300):
        self.api_key = api_key
        self.webhook_secret = webhook_secret
        self.tolerance = tolerance

    def is_configured(self) -> bool:
        return bool(self.api_key and self.webhook_secret)

    def create_intent(self, amount: Decimal, currency: str, metadata: Dict,
                      idempotency_key: Optional[str] = None):
        """Create a PaymentIntent; amount is converted to minor units."""
        if not self.is_configured():
            raise PaymentGatewayError('Stripe is not configured', gateway=self.name)
        return stripe.PaymentIntent.create(
            amount=minor_units(amount),
            currency=currency,
            metadata=metadata,
            automatic_payment_methods={'enabled': True},
            api_key=self.api_key,
            idempotency_key=idempotency_key,
        )

    def parse_webhook(self, payload: bytes, sig_header: str) -> PaymentEvent:
        """
        Verify a webhook delivery and extract the intent it refers to.

        Raises:
            InvalidSignature: Missing or bad signature, or unparsable payload
        """
        if not self.webhook_secret:
            raise InvalidSignature('Webhook secret is not configured', gateway=self.name)
        if not sig_header:
            raise InvalidSignature('Missing Stripe-Signature header', gateway=self.name)

        if isinstance(payload, bytes):
            payload = payload.decode('utf-8')

        try:
            stripe.WebhookSignature.verify_header(
                payload, sig_header, self.webhook_secret, tolerance=self.tolerance
            )
        except stripe.SignatureVerificationError as e:
            raise InvalidSignature(f'Webhook signature verification failed: {e}',
                                   gateway=self.name) from e

        try:
            event = json.loads(payload)
        except ValueError as e:
            raise InvalidSignature(f'Invalid webhook payload: {e}', gateway=self.name) from e

        try:
            intent = event['data']['object']
            last_error = intent.get('last_payment_error') or {}
            return PaymentEvent(
                gateway=self.name,
                event_type=event['type'],
                reference=intent['id'],
                payment_id=intent.get('latest_charge'),
                failure_reason=last_error.get('message'),
            )
        except (KeyError, TypeError, AttributeError) as e:
            raise OrderValidationError(f'Malformed webhook event: {e}') from e


class RazorpayGateway(PaymentGateway):
    """
    Order-and-signature gateway.

    The server first creates a gateway order for the exact amount due; the
    checkout client pays against it and returns ``{order_id, payment_id, signature}``; the
    signature is HMAC-SHA256 over ``"<order_id>|<payment_id>"`` keyed with
    the account secret.
    """
    name = 'razorpay'

    def __init__(self, key_id: str, key_secret: str,
                 api_url: str = 'https://api.razorpay.com/v1', timeout: float = 10.0):
        self.key_id = key_id
        self.key_secret = key_secret
        self.api_url = api_url.rstrip('/')
        self.timeout = timeout

    def is_configured(self) -> bool:
        return bool(self.key_id and self.key_secret)

    def create_order(self, amount: Decimal, currency: str, receipt: str,
                     notes: Optional[Dict] = None) -> Dict:
        """
        Create a gateway-side order the checkout client will pay against.

        Returns:
            The gateway response; ``id`` and ``amount`` (minor units) are
            what the caller binds to its order

        Raises:
            PaymentGatewayError: Not configured, unreachable, or request refused
        """
        if not self.is_configured():
            raise PaymentGatewayError('Razorpay is not configured', gateway=self.name)

        try:
            response = httpx.post(
                f"{self.api_url}/orders",
                json={
                    'amount': minor_units(amount),
                    'currency': currency,
                    'receipt': receipt,
                    'notes': notes or {},
                },
                auth=(self.key_id, self.key_secret),
                timeout=self.timeout,
            )
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPStatusError as e:
            logger.error(
                f"Razorpay refused order {receipt}: {e.response.status_code} {e.response.text}"
            )
            raise PaymentGatewayError('Payment gateway refused the order', gateway=self.name) from e
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"Razorpay order creation failed for {receipt}: {e}")
            raise PaymentGatewayError('Payment gateway unavailable', gateway=self.name) from e

        if not data.get('id') or data.get('amount') is None:
            raise PaymentGatewayError('Malformed gateway order response', gateway=self.name)
        return data

    def expected_signature(self, gateway_order_id: str, gateway_payment_id: str) -> str:
        body = f"{gateway_order_id}|{gateway_payment_id}"
        return hmac.new(
            self.key_secret.encode('utf-8'),
            body.encode('utf-8'),
            hashlib.sha256,
        ).hexdigest()

    def verify_payment(self, gateway_order_id: str, gateway_payment_id: str,
                       signature: str) -> PaymentEvent:
        """
        Raises:
            InvalidSignature: Signature does not match
        """
        if not self.key_secret:
            raise InvalidSignature('Gateway secret is not configured', gateway=self.name)

        expected = self.expected_signature(gateway_order_id, gateway_payment_id)
        if not hmac.compare_digest(expected.encode('utf-8'), (signature or '').encode('utf-8')):
            raise InvalidSignature('Invalid payment signature', gateway=self.name)

        return PaymentEvent(
            gateway=self.name,
            event_type='payment.captured',
            reference=gateway_order_id,
            payment_id=gateway_payment_id,
        )


def get_stripe_gateway() -> StripeGateway:
    return StripeGateway(
        api_key=settings.STRIPE_SECRET_KEY,
        webhook_secret=settings.STRIPE_WEBHOOK_SECRET,
        tolerance=settings.STRIPE_WEBHOOK_TOLERANCE,
    )


def get_razorpay_gateway() -> RazorpayGateway:
    return RazorpayGateway(
        key_id=settings.RAZORPAY_KEY_ID,
        key_secret=settings.RAZORPAY_KEY_SECRET,
        api_url=settings.RAZORPAY_API_URL,
        timeout=settings.RAZORPAY_TIMEOUT,
    )
