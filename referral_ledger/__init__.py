"""
Referral Commission Ledger

This package provides:
- User accounts with unique referral codes
- Commission crediting on first subscription payment
- Refund reversal and payout withdrawal flows
- Idempotent processing of Stripe webhook events
- Per-user statistics, refund metrics and a leaderboard
"""

from .accounts import AccountService
from .config import Settings, get_settings
from .models import (
    Payout,
    PayoutStatus,
    Referral,
    ReferralStats,
    ReferralStatus,
    UserAccount,
)
from .service import LedgerService
from .stats import StatsAggregator
from .storage import InMemoryStorage
from .webhooks import WebhookRouter

__all__ = [
    "AccountService",
    "InMemoryStorage",
    "LedgerService",
    "Payout",
    "PayoutStatus",
    "Referral",
    "ReferralStats",
    "ReferralStatus",
    "Settings",
    "StatsAggregator",
    "UserAccount",
    "WebhookRouter",
    "get_settings",
]
