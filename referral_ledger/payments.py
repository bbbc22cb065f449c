"""
Stripe adapter.

Every outbound call goes through here so the ledger only ever sees
UpstreamProviderError, never a raw stripe exception. Refunds and transfers
carry idempotency keys: a retry after a lost local write is answered by
Stripe with the original object instead of moving money twice.
"""

import json
import logging
from decimal import Decimal
from typing import Optional

import stripe

from .config import Settings
from .exceptions import UpstreamProviderError

logger = logging.getLogger(__name__)


def to_minor_units(amount: Decimal) -> int:
    return int((Decimal(str(amount)) * 100).to_integral_value())


def from_minor_units(amount: int) -> Decimal:
    return (Decimal(amount) / 100).quantize(Decimal("0.01"))


class StripePaymentProvider:
    def __init__(self, settings: Settings):
        self.api_key = settings.stripe_secret_key.get_secret_value() if settings.stripe_secret_key else None
        self.webhook_secret = (
            settings.stripe_webhook_secret.get_secret_value() if settings.stripe_webhook_secret else None
        )
        self.api_version = settings.stripe_api_version

    def _request_options(self, idempotency_key: Optional[str] = None) -> dict:
        options = {"api_key": self.api_key, "stripe_version": self.api_version}
        if idempotency_key:
            options["idempotency_key"] = idempotency_key
        return options

    def _upstream_error(self, action: str, error: "stripe.StripeError") -> UpstreamProviderError:
        logger.error("Stripe %s failed: %s", action, error.user_message or str(error))
        return UpstreamProviderError(
            f"Stripe {action} failed: {error.user_message or str(error)}",
            status=getattr(error, "http_status", None),
            code=getattr(error, "code", None),
        )

    def construct_event(self, payload: bytes, signature: Optional[str]) -> dict:
        """
        Verify the Stripe-Signature header and parse the event.

        Raises ValueError for an unparseable payload and
        stripe.SignatureVerificationError for a bad signature.
        """
        stripe.Webhook.construct_event(payload, signature, self.webhook_secret)
        return json.loads(payload)

    def create_refund(self, payment_intent_id: str) -> dict:
        try:
            refund = stripe.Refund.create(
                payment_intent=payment_intent_id,
                **self._request_options(idempotency_key=f"refund:{payment_intent_id}"),
            )
        except stripe.StripeError as e:
            raise self._upstream_error("refund", e) from e
        logger.info("Created refund %s for payment intent %s", refund["id"], payment_intent_id)
        return {"id": refund["id"], "status": refund["status"]}

    def create_transfer(
        self,
        amount: Decimal,
        destination: str,
        currency: str = "usd",
        metadata: Optional[dict] = None,
        idempotency_key: Optional[str] = None,
    ) -> dict:
        try:
            transfer = stripe.Transfer.create(
                amount=to_minor_units(amount),
                currency=currency,
                destination=destination,
                description="Referral commission payout",
                metadata=metadata or {},
                **self._request_options(idempotency_key=idempotency_key),
            )
        except stripe.StripeError as e:
            raise self._upstream_error("transfer", e) from e
        logger.info("Created transfer %s to %s", transfer["id"], destination)
        return {"id": transfer["id"]}

    def retrieve_subscription(self, subscription_id: str) -> dict:
        try:
            subscription = stripe.Subscription.retrieve(subscription_id, **self._request_options())
        except stripe.StripeError as e:
            raise self._upstream_error("subscription retrieval", e) from e
        return {
            "id": subscription["id"],
            "status": subscription["status"],
            "metadata": dict(subscription["metadata"] or {}),
        }
