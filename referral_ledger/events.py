"""
Payment provider webhook events.

parse_event turns a raw Stripe event body into one member of the
ProviderEvent union, keyed by `kind`. Kinds we do not act on become
UnhandledEvent so the router can acknowledge them without guessing at their
shape.
"""

import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Literal, Optional, Union
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from .models import SubscriptionStatus
from .payments import from_minor_units

logger = logging.getLogger(__name__)

INITIAL_INVOICE_REASON = "subscription_create"


def _subscription_status(value: Optional[str]) -> Optional[SubscriptionStatus]:
    if value is None:
        return None
    try:
        return SubscriptionStatus(value)
    except ValueError:
        logger.warning("Unrecognised subscription status %r, keeping stored status", value)
        return None


def _timestamp(value) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


class ReferralMetadata(BaseModel):
    """Metadata attached to checkout sessions and subscriptions at checkout time."""

    user_id: Optional[UUID] = Field(default=None, alias="userId")
    tier_id: Optional[str] = Field(default=None, alias="tierId")
    referral_code: Optional[str] = Field(default=None, alias="referralCode")

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> "ReferralMetadata":
        cleaned = {k: v for k, v in (data or {}).items() if v not in ("", None)}
        return cls.model_validate(cleaned)


class CheckoutCompleted(BaseModel):
    kind: Literal["checkout.session.completed"] = "checkout.session.completed"
    event_id: str
    session_id: str
    subscription_id: Optional[str] = None
    current_period_end: Optional[datetime] = None
    metadata: ReferralMetadata

    @classmethod
    def from_object(cls, event_id: str, obj: dict) -> "CheckoutCompleted":
        return cls(
            event_id=event_id,
            session_id=obj["id"],
            subscription_id=obj.get("subscription"),
            current_period_end=_timestamp(obj.get("current_period_end")),
            metadata=ReferralMetadata.from_dict(obj.get("metadata")),
        )


def _invoice_metadata(obj: dict) -> Optional[ReferralMetadata]:
    details = obj.get("subscription_details") or (obj.get("parent") or {}).get("subscription_details") or {}
    metadata = details.get("metadata")
    return ReferralMetadata.from_dict(metadata) if metadata else None


class InvoicePaid(BaseModel):
    kind: Literal["invoice.paid"] = "invoice.paid"
    event_id: str
    invoice_id: str
    billing_reason: Optional[str] = None
    payment_intent_id: Optional[str] = None
    subscription_id: Optional[str] = None
    amount_paid: Decimal
    metadata: Optional[ReferralMetadata] = None

    @property
    def is_initial(self) -> bool:
        return self.billing_reason == INITIAL_INVOICE_REASON

    @classmethod
    def from_object(cls, event_id: str, obj: dict) -> "InvoicePaid":
        return cls(
            event_id=event_id,
            invoice_id=obj["id"],
            billing_reason=obj.get("billing_reason"),
            payment_intent_id=obj.get("payment_intent"),
            subscription_id=obj.get("subscription"),
            amount_paid=from_minor_units(obj.get("amount_paid") or 0),
            metadata=_invoice_metadata(obj),
        )


class InvoicePaymentFailed(BaseModel):
    kind: Literal["invoice.payment_failed"] = "invoice.payment_failed"
    event_id: str
    invoice_id: str
    billing_reason: Optional[str] = None
    subscription_id: Optional[str] = None
    failure_reason: Optional[str] = None
    metadata: Optional[ReferralMetadata] = None

    @property
    def is_initial(self) -> bool:
        return self.billing_reason == INITIAL_INVOICE_REASON

    @classmethod
    def from_object(cls, event_id: str, obj: dict) -> "InvoicePaymentFailed":
        last_error = (obj.get("last_finalization_error") or {}).get("message")
        return cls(
            event_id=event_id,
            invoice_id=obj["id"],
            billing_reason=obj.get("billing_reason"),
            subscription_id=obj.get("subscription"),
            failure_reason=last_error or "Invoice payment failed",
            metadata=_invoice_metadata(obj),
        )


class SubscriptionChanged(BaseModel):
    kind: Literal["customer.subscription.updated", "customer.subscription.deleted"]
    event_id: str
    subscription_id: str
    status: Optional[SubscriptionStatus] = None
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: bool = False
    canceled_at: Optional[datetime] = None

    @classmethod
    def from_object(cls, event_id: str, obj: dict, kind: str) -> "SubscriptionChanged":
        period_end = obj.get("current_period_end")
        if period_end is None:
            items = (obj.get("items") or {}).get("data") or []
            period_end = items[0].get("current_period_end") if items else None
        return cls(
            kind=kind,
            event_id=event_id,
            subscription_id=obj["id"],
            status=_subscription_status(obj.get("status")),
            current_period_end=_timestamp(period_end),
            cancel_at_period_end=bool(obj.get("cancel_at_period_end")),
            canceled_at=_timestamp(obj.get("canceled_at")),
        )


class ChargeRefunded(BaseModel):
    kind: Literal["charge.refunded"] = "charge.refunded"
    event_id: str
    charge_id: str
    payment_intent_id: Optional[str] = None
    amount_refunded: Decimal = Decimal("0.00")

    @classmethod
    def from_object(cls, event_id: str, obj: dict) -> "ChargeRefunded":
        return cls(
            event_id=event_id,
            charge_id=obj["id"],
            payment_intent_id=obj.get("payment_intent"),
            amount_refunded=from_minor_units(obj.get("amount_refunded") or 0),
        )


class UnhandledEvent(BaseModel):
    kind: str
    event_id: str


ProviderEvent = Union[
    CheckoutCompleted,
    InvoicePaid,
    InvoicePaymentFailed,
    SubscriptionChanged,
    ChargeRefunded,
    UnhandledEvent,
]


def parse_event(payload: dict) -> ProviderEvent:
    """
    Build the typed event for a raw provider payload.

    Raises KeyError or pydantic.ValidationError when a handled kind is
    missing required fields.
    """
    kind = payload["type"]
    event_id = payload.get("id", "")
    obj = (payload.get("data") or {}).get("object") or {}

    match kind:
        case "checkout.session.completed":
            return CheckoutCompleted.from_object(event_id, obj)
        case "invoice.paid":
            return InvoicePaid.from_object(event_id, obj)
        case "invoice.payment_failed":
            return InvoicePaymentFailed.from_object(event_id, obj)
        case "customer.subscription.updated" | "customer.subscription.deleted":
            return SubscriptionChanged.from_object(event_id, obj, kind)
        case "charge.refunded":
            return ChargeRefunded.from_object(event_id, obj)
        case _:
            return UnhandledEvent(kind=kind, event_id=event_id)
