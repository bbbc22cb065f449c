from collections import defaultdict
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Optional
from uuid import UUID

from .config import Settings, get_settings
from .exceptions import AccountNotFoundError, ReferralNotFoundError
from .models import (
    LeaderboardEntry,
    MonthlyRefunds,
    Payout,
    PayoutMetrics,
    PayoutStatus,
    Referral,
    RefundEligibility,
    RefundMetrics,
    ReferralStatus,
    UserAccount,
    UserStatsResponse,
    round2,
)
from .storage import InMemoryStorage

ZERO = Decimal("0.00")


class StatsAggregator:
    """
    Read-only projections over the ledger.

    Nothing here is cached; every call filters the stored referrals and
    payouts again, so the views can never drift from the records.
    """

    def __init__(self, storage: InMemoryStorage, settings: Optional[Settings] = None):
        self.storage = storage
        self.settings = settings or get_settings()

    def _account(self, user_id: UUID) -> UserAccount:
        record = self.storage.get_user(user_id)
        if not record:
            raise AccountNotFoundError(f"Account {user_id} not found")
        return UserAccount(**record)

    def get_stats(self, user_id: UUID) -> UserStatsResponse:
        account = self._account(user_id)
        referrals = [Referral(**r) for r in self.storage.list_referrals(referrer_id=user_id)]
        referrals.sort(key=lambda r: r.created_at, reverse=True)
        pending = sum(
            (r.commission_amount for r in referrals if r.status == ReferralStatus.PENDING), ZERO
        )
        return UserStatsResponse(
            user_id=user_id,
            referrals=referrals,
            stats=account.referral_stats,
            pending_commissions=round2(pending),
            available_balance=account.available_balance,
            total_earnings=account.total_earnings,
        )

    def get_leaderboard(self, limit: Optional[int] = None) -> list[LeaderboardEntry]:
        limit = limit or self.settings.leaderboard_size
        accounts = [UserAccount(**u) for u in self.storage.list_users()]
        ranked = sorted(
            (a for a in accounts if a.referral_stats.total_referrals > 0),
            key=lambda a: (a.referral_stats.successful_referrals, a.referral_stats.conversion_rate),
            reverse=True,
        )
        return [
            LeaderboardEntry(
                user_id=a.id,
                email=a.email,
                referral_stats=a.referral_stats,
                total_earnings=a.total_earnings,
            )
            for a in ranked[:limit]
        ]

    def get_refund_history(self, user_id: UUID) -> list[Referral]:
        refunds = [
            Referral(**r) for r in self.storage.list_referrals(referrer_id=user_id, status=ReferralStatus.REFUNDED)
        ]
        refunds.sort(key=lambda r: r.refunded_at or r.created_at, reverse=True)
        return refunds

    def get_refund_metrics(self, user_id: UUID) -> RefundMetrics:
        total_referrals = len(self.storage.list_referrals(referrer_id=user_id))
        refunds = self.get_refund_history(user_id)
        total_amount = sum((r.commission_amount for r in refunds), ZERO)

        monthly: dict[tuple[int, int], list[Referral]] = defaultdict(list)
        for referral in refunds:
            refunded_at = referral.refunded_at or referral.created_at
            monthly[(refunded_at.year, refunded_at.month)].append(referral)
        monthly_refunds = [
            MonthlyRefunds(
                year=year,
                month=month,
                count=len(items),
                amount=round2(sum((r.commission_amount for r in items), ZERO)),
            )
            for (year, month), items in sorted(monthly.items(), reverse=True)
        ]

        refund_rate = round2(Decimal(len(refunds)) / Decimal(total_referrals) * 100) if total_referrals else ZERO
        average = round2(total_amount / len(refunds)) if refunds else ZERO
        return RefundMetrics(
            user_id=user_id,
            total_refunds=len(refunds),
            total_refund_amount=round2(total_amount),
            refund_rate=refund_rate,
            monthly_refunds=monthly_refunds,
            average_refund_amount=average,
        )

    def check_refund_eligibility(self, referral_id: UUID, now: Optional[datetime] = None) -> RefundEligibility:
        record = self.storage.get_referral(referral_id)
        if not record:
            raise ReferralNotFoundError(f"Referral {referral_id} not found")
        referral = Referral(**record)
        now = now or datetime.now(timezone.utc)
        window = timedelta(days=self.settings.refund_window_days)

        if referral.status != ReferralStatus.COMPLETED or referral.completed_at is None:
            return RefundEligibility(
                referral_id=referral_id, eligible=False, reason=f"Referral is {referral.status.value}, not completed"
            )
        if now - referral.completed_at > window:
            return RefundEligibility(
                referral_id=referral_id,
                eligible=False,
                reason=f"Refund window of {self.settings.refund_window_days} days has expired",
            )
        return RefundEligibility(referral_id=referral_id, eligible=True)

    def get_payout_history(self, user_id: UUID, limit: int = 10) -> list[Payout]:
        self._account(user_id)
        payouts = [Payout(**p) for p in self.storage.list_payouts(user_id)]
        payouts.sort(key=lambda p: p.created_at, reverse=True)
        return payouts[:limit]

    def get_payout_metrics(self, user_id: UUID) -> PayoutMetrics:
        account = self._account(user_id)
        payouts = [Payout(**p) for p in self.storage.list_payouts(user_id)]
        return PayoutMetrics(
            user_id=user_id,
            available_balance=account.available_balance,
            pending_payouts=round2(sum((p.amount for p in payouts if p.status == PayoutStatus.PENDING), ZERO)),
            total_payouts=round2(sum((p.amount for p in payouts if p.status == PayoutStatus.COMPLETED), ZERO)),
            total_earnings=account.total_earnings,
            last_payout_at=account.last_payout_at,
        )
