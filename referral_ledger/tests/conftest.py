"""Shared fixtures: an opened store, the services over it and a fake payment provider."""

import json
from decimal import Decimal
from typing import Optional
from uuid import UUID

import pytest
import stripe

from referral_ledger.accounts import AccountService
from referral_ledger.codes import ReferralCodeGenerator
from referral_ledger.config import Settings
from referral_ledger.exceptions import UpstreamProviderError
from referral_ledger.service import LedgerService
from referral_ledger.stats import StatsAggregator
from referral_ledger.storage import InMemoryStorage
from referral_ledger.webhooks import WebhookRouter


REFERRER_ID = UUID("550e8400-e29b-41d4-a716-446655440000")
REFERRED_ID = UUID("660e8400-e29b-41d4-a716-446655440001")
VALID_SIGNATURE = "valid-signature"


class FakePaymentProvider:
    """Records every outbound call; set fail_with to make refunds and transfers fail."""

    def __init__(self):
        self.refunds: list[str] = []
        self.transfers: list[dict] = []
        self.subscriptions: dict[str, dict] = {}
        self.fail_with: Optional[UpstreamProviderError] = None

    def construct_event(self, payload: bytes, signature: Optional[str]) -> dict:
        if signature != VALID_SIGNATURE:
            raise stripe.SignatureVerificationError("No signatures found matching the expected signature", signature)
        return json.loads(payload)

    def create_refund(self, payment_intent_id: str) -> dict:
        if self.fail_with:
            raise self.fail_with
        self.refunds.append(payment_intent_id)
        return {"id": f"re_{len(self.refunds)}", "status": "succeeded"}

    def create_transfer(self, amount, destination, currency="usd", metadata=None, idempotency_key=None) -> dict:
        if self.fail_with:
            raise self.fail_with
        self.transfers.append({
            "amount": amount,
            "destination": destination,
            "currency": currency,
            "metadata": metadata,
            "idempotency_key": idempotency_key,
        })
        return {"id": f"tr_{len(self.transfers)}"}

    def retrieve_subscription(self, subscription_id: str) -> dict:
        return self.subscriptions.get(subscription_id, {"id": subscription_id, "status": "active", "metadata": {}})


@pytest.fixture
def settings():
    return Settings(_env_file=None)


@pytest.fixture
def storage():
    with InMemoryStorage() as store:
        yield store


@pytest.fixture
def provider():
    return FakePaymentProvider()


@pytest.fixture
def code_generator(storage):
    return ReferralCodeGenerator(storage)


@pytest.fixture
def accounts(storage, code_generator):
    return AccountService(storage, code_generator)


@pytest.fixture
def ledger(storage, provider, settings, code_generator):
    return LedgerService(storage, provider, settings, code_generator)


@pytest.fixture
def stats(storage, settings):
    return StatsAggregator(storage, settings)


@pytest.fixture
def router(ledger, accounts, provider):
    return WebhookRouter(ledger, accounts, provider)


@pytest.fixture
def referrer(accounts):
    return accounts.create_account("referrer@example.com", REFERRER_ID)


@pytest.fixture
def referred(accounts):
    return accounts.create_account("referred@example.com", REFERRED_ID)


@pytest.fixture
def connected_referrer(accounts, referrer):
    return accounts.connect_payout_account(referrer.id, "acct_123")


@pytest.fixture
def credit(storage):
    """Give a user spendable balance without going through a referral."""
    def _credit(user_id, amount) -> None:
        amount = Decimal(str(amount))
        storage.increment_user(user_id, {"available_balance": amount, "total_earnings": amount})
    return _credit
