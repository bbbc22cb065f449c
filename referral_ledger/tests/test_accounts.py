from datetime import datetime, timezone
from uuid import uuid4

import pytest

from referral_ledger.exceptions import (
    AccountNotFoundError,
    CustomCodeTakenError,
    DuplicateAccountError,
    InvalidReferralCodeError,
    ReferrerNotFoundError,
    ValidationError,
)
from referral_ledger.models import SubscriptionStatus


class TestAccounts:
    """Tests for account creation and lookup."""

    def test_create_account(self, accounts):
        """New accounts start with a code and empty balances."""
        account = accounts.create_account("new@example.com")

        assert len(account.referral_code) == 8
        assert account.referral_stats.total_referrals == 0
        assert account.subscription.status == SubscriptionStatus.INACTIVE
        assert not account.can_receive_payouts()

    def test_duplicate_email(self, accounts, referrer):
        """A second account with the same email is a conflict."""
        with pytest.raises(DuplicateAccountError):
            accounts.create_account("referrer@example.com")

    def test_duplicate_id(self, accounts, referrer):
        """A second account with the same id is a conflict."""
        with pytest.raises(DuplicateAccountError):
            accounts.create_account("someone@example.com", referrer.id)

    def test_missing_account(self, accounts):
        with pytest.raises(AccountNotFoundError):
            accounts.get_account(uuid4())

    def test_resolve_code(self, accounts, referrer):
        """Codes resolve case-insensitively."""
        assert accounts.resolve_referral_code(referrer.referral_code.lower()).id == referrer.id

        with pytest.raises(ReferrerNotFoundError):
            accounts.resolve_referral_code("UNKNOWN1")


class TestCustomCodes:
    """Tests for user-chosen referral codes."""

    def test_set_custom_code(self, accounts, referrer):
        """Custom codes are stored uppercased and resolve to their owner."""
        account = accounts.set_custom_referral_code(referrer.id, "my_code-1")

        assert account.custom_referral_code == "MY_CODE-1"
        assert account.referral_code == referrer.referral_code
        assert accounts.resolve_referral_code("my_code-1").id == referrer.id

    @pytest.mark.parametrize("code", ["abc", "a" * 21, "has space", "emoji!", ""])
    def test_invalid_format(self, accounts, referrer, code):
        """Codes must be 4-20 letters, digits, hyphens or underscores."""
        with pytest.raises(InvalidReferralCodeError) as exc_info:
            accounts.set_custom_referral_code(referrer.id, code)

        assert isinstance(exc_info.value, ValidationError)

    def test_code_taken(self, accounts, referrer, referred):
        """A code owned by another user is rejected."""
        accounts.set_custom_referral_code(referrer.id, "TAKEN")

        with pytest.raises(CustomCodeTakenError):
            accounts.set_custom_referral_code(referred.id, "taken")

    def test_cannot_claim_generated_code(self, accounts, referrer, referred):
        """Custom codes share a namespace with generated codes."""
        with pytest.raises(CustomCodeTakenError):
            accounts.set_custom_referral_code(referred.id, referrer.referral_code)

    def test_unknown_account(self, accounts):
        with pytest.raises(AccountNotFoundError):
            accounts.set_custom_referral_code(uuid4(), "VALID")


class TestSubscriptionMirror:
    """Tests for the mirrored subscription record."""

    def test_attach_and_mirror(self, accounts, referred):
        """Provider updates are copied onto the subscription owner."""
        accounts.attach_subscription(referred.id, "tier-monthly", "sub_1")
        period_end = datetime(2026, 11, 1, tzinfo=timezone.utc)

        account = accounts.mirror_subscription("sub_1", "past_due", period_end, cancel_at_period_end=True)

        assert account.subscription.status == SubscriptionStatus.PAST_DUE
        assert account.subscription.tier == "tier-monthly"
        assert account.subscription.current_period_end == period_end
        assert account.subscription.cancel_at_period_end is True

    def test_mirror_rejects_unrecognised_status(self, accounts, referred):
        """An invalid status is refused before anything is written."""
        accounts.attach_subscription(referred.id, "tier-monthly", "sub_1")

        with pytest.raises(ValueError):
            accounts.mirror_subscription("sub_1", "bogus", cancel_at_period_end=True)

        account = accounts.get_account(referred.id)
        assert account.subscription.status == SubscriptionStatus.ACTIVE
        assert account.subscription.cancel_at_period_end is False

    def test_mirror_without_status_keeps_it(self, accounts, referred):
        accounts.attach_subscription(referred.id, "tier-monthly", "sub_1")

        account = accounts.mirror_subscription("sub_1", None, cancel_at_period_end=True)

        assert account.subscription.status == SubscriptionStatus.ACTIVE
        assert account.subscription.cancel_at_period_end is True

    def test_unknown_subscription_ignored(self, accounts):
        assert accounts.mirror_subscription("sub_missing", "canceled") is None

    def test_connect_payout_account(self, accounts, referrer):
        account = accounts.connect_payout_account(referrer.id, "acct_9")

        assert account.connect_account_id == "acct_9"
        assert account.can_receive_payouts()
