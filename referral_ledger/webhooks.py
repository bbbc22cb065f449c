"""
Webhook event router.

Delivery is at-least-once and unordered, so the router keeps no memory of
what it has seen: replays are absorbed by the ledger's idempotency checks
and reported here as duplicates. Only provider failures propagate, so the
provider retries the delivery.
"""

import logging
from enum import Enum
from typing import Optional
from uuid import UUID

from pydantic import BaseModel

from .accounts import AccountService
from .events import (
    ChargeRefunded,
    CheckoutCompleted,
    InvoicePaid,
    InvoicePaymentFailed,
    ProviderEvent,
    ReferralMetadata,
    SubscriptionChanged,
    UnhandledEvent,
    parse_event,
)
from .exceptions import (
    AlreadyProcessedError,
    AlreadyReferredError,
    AlreadyRefundedError,
    InvalidStateTransitionError,
    NotFoundError,
    SelfReferralError,
)
from .models import ReferralStatus
from .service import LedgerService

logger = logging.getLogger(__name__)


class WebhookOutcome(str, Enum):
    PROCESSED = "processed"
    DUPLICATE = "duplicate"
    SKIPPED = "skipped"
    IGNORED = "ignored"


class WebhookResult(BaseModel):
    event_id: str
    kind: str
    outcome: WebhookOutcome
    referral_id: Optional[UUID] = None
    detail: Optional[str] = None


class WebhookRouter:
    def __init__(self, ledger: LedgerService, accounts: AccountService, payment_provider=None):
        self.ledger = ledger
        self.accounts = accounts
        self.payment_provider = payment_provider

    def handle(self, payload: dict) -> WebhookResult:
        return self.dispatch(parse_event(payload))

    def dispatch(self, event: ProviderEvent) -> WebhookResult:
        logger.info("Processing webhook event %s (%s)", event.event_id, event.kind)
        match event:
            case CheckoutCompleted():
                return self._on_checkout_completed(event)
            case InvoicePaid():
                return self._on_invoice_paid(event)
            case InvoicePaymentFailed():
                return self._on_invoice_payment_failed(event)
            case SubscriptionChanged():
                return self._on_subscription_changed(event)
            case ChargeRefunded():
                return self._on_charge_refunded(event)
            case UnhandledEvent():
                logger.info("Unhandled event type: %s", event.kind)
                return self._result(event, WebhookOutcome.IGNORED)
            case _:
                raise TypeError(f"No handler for event model {type(event).__name__}")

    def _result(self, event: ProviderEvent, outcome: WebhookOutcome, referral_id=None, detail=None) -> WebhookResult:
        return WebhookResult(
            event_id=event.event_id, kind=event.kind, outcome=outcome, referral_id=referral_id, detail=detail
        )

    def _on_checkout_completed(self, event: CheckoutCompleted) -> WebhookResult:
        metadata = event.metadata
        if not metadata.user_id or not metadata.tier_id:
            logger.warning("Checkout session %s missing metadata: %s", event.session_id, metadata)
            return self._result(event, WebhookOutcome.SKIPPED, detail="missing metadata")
        try:
            self.accounts.attach_subscription(
                metadata.user_id, metadata.tier_id, event.subscription_id, event.current_period_end
            )
        except NotFoundError as e:
            logger.warning("Checkout session %s for unknown account: %s", event.session_id, e)
            return self._result(event, WebhookOutcome.SKIPPED, detail=str(e))
        return self._result(event, WebhookOutcome.PROCESSED)

    def _subscription_metadata(self, subscription_id: Optional[str]) -> ReferralMetadata:
        if not subscription_id or self.payment_provider is None:
            return ReferralMetadata()
        subscription = self.payment_provider.retrieve_subscription(subscription_id)
        return ReferralMetadata.from_dict(subscription.get("metadata"))

    def _on_invoice_paid(self, event: InvoicePaid) -> WebhookResult:
        if not event.is_initial:
            logger.info("Skipping recurring payment for invoice %s (%s)", event.invoice_id, event.billing_reason)
            return self._result(event, WebhookOutcome.SKIPPED, detail="not an initial subscription invoice")

        metadata = event.metadata if event.metadata and event.metadata.referral_code else None
        if metadata is None:
            metadata = self._subscription_metadata(event.subscription_id)
        if not metadata.referral_code:
            logger.info("No referral code on invoice %s, skipping commission", event.invoice_id)
            return self._result(event, WebhookOutcome.SKIPPED, detail="no referral code")
        if not metadata.user_id or not metadata.tier_id or not event.payment_intent_id:
            logger.warning("Invoice %s missing user, tier or payment intent", event.invoice_id)
            return self._result(event, WebhookOutcome.SKIPPED, detail="incomplete metadata")

        try:
            response = self.ledger.record_initial_payment(
                referral_code=metadata.referral_code,
                referred_user_id=metadata.user_id,
                subscription_tier=metadata.tier_id,
                subscription_amount=event.amount_paid,
                payment_intent_id=event.payment_intent_id,
            )
        except AlreadyProcessedError as e:
            logger.warning("Referral already processed for payment %s: %s", event.payment_intent_id, e)
            return self._result(event, WebhookOutcome.DUPLICATE, detail=str(e))
        except (NotFoundError, SelfReferralError, AlreadyReferredError, InvalidStateTransitionError) as e:
            logger.warning("No commission for invoice %s: %s", event.invoice_id, e)
            return self._result(event, WebhookOutcome.SKIPPED, detail=str(e))

        return self._result(event, WebhookOutcome.PROCESSED, referral_id=response.referral.id)

    def _on_invoice_payment_failed(self, event: InvoicePaymentFailed) -> WebhookResult:
        if not event.is_initial:
            return self._result(event, WebhookOutcome.SKIPPED, detail="not an initial subscription invoice")

        metadata = event.metadata or self._subscription_metadata(event.subscription_id)
        referral = None
        if metadata.user_id:
            referral = self.ledger.storage.find_referral_by_referred_user(metadata.user_id)
        if not referral or referral["status"] != ReferralStatus.PENDING.value:
            return self._result(event, WebhookOutcome.SKIPPED, detail="no pending referral")

        try:
            response = self.ledger.fail_referral(referral["id"], event.failure_reason or "Invoice payment failed")
        except (AlreadyProcessedError, InvalidStateTransitionError) as e:
            return self._result(event, WebhookOutcome.DUPLICATE, detail=str(e))
        return self._result(event, WebhookOutcome.PROCESSED, referral_id=response.referral.id)

    def _on_subscription_changed(self, event: SubscriptionChanged) -> WebhookResult:
        account = self.accounts.mirror_subscription(
            event.subscription_id,
            event.status,
            current_period_end=event.current_period_end,
            cancel_at_period_end=event.cancel_at_period_end,
            canceled_at=event.canceled_at,
        )
        if account is None:
            return self._result(event, WebhookOutcome.SKIPPED, detail="unknown subscription")
        return self._result(event, WebhookOutcome.PROCESSED)

    def _on_charge_refunded(self, event: ChargeRefunded) -> WebhookResult:
        if not event.payment_intent_id:
            return self._result(event, WebhookOutcome.SKIPPED, detail="no payment intent")
        try:
            response = self.ledger.refund_referral(event.payment_intent_id)
        except AlreadyRefundedError as e:
            logger.warning("Duplicate refund event for payment %s", event.payment_intent_id)
            return self._result(event, WebhookOutcome.DUPLICATE, detail=str(e))
        except (NotFoundError, InvalidStateTransitionError) as e:
            logger.info("Refund for payment %s has no ledger effect: %s", event.payment_intent_id, e)
            return self._result(event, WebhookOutcome.SKIPPED, detail=str(e))
        return self._result(event, WebhookOutcome.PROCESSED, referral_id=response.referral.id)
