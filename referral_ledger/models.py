from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Optional
from uuid import UUID
from pydantic import BaseModel, Field, ConfigDict


CENT = Decimal("0.01")


def round2(value) -> Decimal:
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)


def calculate_commission(amount: Decimal, rate: Decimal) -> Decimal:
    return round2(Decimal(str(amount)) * rate)


def conversion_rate(successful: int, total: int) -> Decimal:
    if total <= 0:
        return Decimal("0.00")
    return round2(Decimal(successful) / Decimal(total) * 100)


class ReferralStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"


class PayoutStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class SubscriptionStatus(str, Enum):
    INACTIVE = "inactive"
    ACTIVE = "active"
    TRIALING = "trialing"
    PAST_DUE = "past_due"
    UNPAID = "unpaid"
    CANCELED = "canceled"
    INCOMPLETE = "incomplete"
    INCOMPLETE_EXPIRED = "incomplete_expired"
    PAUSED = "paused"


class ReferralStats(BaseModel):
    total_referrals: int = 0
    successful_referrals: int = 0
    conversion_rate: Decimal = Decimal("0.00")

    model_config = ConfigDict(from_attributes=True)


class Subscription(BaseModel):
    status: SubscriptionStatus = SubscriptionStatus.INACTIVE
    tier: Optional[str] = None
    subscription_id: Optional[str] = None
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: bool = False
    canceled_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class UserAccount(BaseModel):
    id: UUID
    email: str
    referral_code: str
    custom_referral_code: Optional[str] = None
    available_balance: Decimal = Decimal("0.00")
    total_earnings: Decimal = Decimal("0.00")
    referral_stats: ReferralStats = Field(default_factory=ReferralStats)
    subscription: Subscription = Field(default_factory=Subscription)
    connect_account_id: Optional[str] = None
    payout_enabled: bool = False
    last_payout_at: Optional[datetime] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)

    def can_receive_payouts(self) -> bool:
        return bool(self.connect_account_id) and self.payout_enabled


class Referral(BaseModel):
    id: UUID
    referrer_id: UUID
    referred_user_id: UUID
    referral_code: str
    subscription_tier: str
    subscription_amount: Decimal
    commission_amount: Decimal
    status: ReferralStatus
    payment_intent_id: Optional[str] = None
    created_at: datetime
    completed_at: Optional[datetime] = None
    refunded_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None
    failure_reason: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)

    def can_complete(self) -> bool:
        return self.status == ReferralStatus.PENDING

    def can_refund(self) -> bool:
        return self.status == ReferralStatus.COMPLETED

    def can_fail(self) -> bool:
        return self.status == ReferralStatus.PENDING


class Payout(BaseModel):
    id: UUID
    user_id: UUID
    amount: Decimal
    currency: str = "usd"
    status: PayoutStatus
    transfer_id: Optional[str] = None
    error: Optional[str] = None
    created_at: datetime
    completed_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class CreateAccountRequest(BaseModel):
    email: str = Field(..., min_length=3)
    user_id: Optional[UUID] = None


class CustomCodeRequest(BaseModel):
    custom_code: str


class ConnectAccountRequest(BaseModel):
    account_id: str = Field(..., min_length=1)
    payout_enabled: bool = True


class CreateReferralRequest(BaseModel):
    referral_code: str = Field(..., min_length=1)
    referred_user_id: UUID
    subscription_tier: str
    subscription_amount: Decimal = Field(..., ge=0)
    payment_intent_id: Optional[str] = Field(
        default=None, description="Set on the payment-confirmed path; the referral is created completed"
    )

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "referral_code": "AB12CD34",
            "referred_user_id": "660e8400-e29b-41d4-a716-446655440001",
            "subscription_tier": "tier-monthly",
            "subscription_amount": 20.00,
        }
    })


class ReferralSignupRequest(BaseModel):
    referral_code: str = Field(..., min_length=1)
    subscription_tier: str
    subscription_amount: Decimal = Field(..., ge=0)


class FailReferralRequest(BaseModel):
    reason: str = Field(..., description="Reason the payment failed")


class RefundRequest(BaseModel):
    payment_intent_id: str = Field(..., min_length=1)


class PayoutRequest(BaseModel):
    amount: Decimal = Field(..., gt=0)


class ReferralResponse(BaseModel):
    referral: Referral
    message: str


class PayoutResponse(BaseModel):
    payout: Payout
    remaining_balance: Decimal
    message: str


class UserStatsResponse(BaseModel):
    user_id: UUID
    referrals: list[Referral]
    stats: ReferralStats
    pending_commissions: Decimal
    available_balance: Decimal
    total_earnings: Decimal


class LeaderboardEntry(BaseModel):
    user_id: UUID
    email: str
    referral_stats: ReferralStats
    total_earnings: Decimal


class MonthlyRefunds(BaseModel):
    year: int
    month: int
    count: int
    amount: Decimal


class RefundMetrics(BaseModel):
    user_id: UUID
    total_refunds: int
    total_refund_amount: Decimal
    refund_rate: Decimal
    monthly_refunds: list[MonthlyRefunds]
    average_refund_amount: Decimal


class RefundEligibility(BaseModel):
    referral_id: UUID
    eligible: bool
    reason: Optional[str] = None


class PayoutMetrics(BaseModel):
    user_id: UUID
    available_balance: Decimal
    pending_payouts: Decimal
    total_payouts: Decimal
    total_earnings: Decimal
    last_payout_at: Optional[datetime] = None
