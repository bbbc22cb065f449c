"""
Referral commission ledger.

LedgerService is the only writer of Referral and Payout records and of the
balance and statistics fields on user accounts. Every state change other
than creation is idempotent against the payment intent id: the store's
unique index on referral.payment_intent_id plus conditional status
transitions guarantee that a replayed provider event credits or debits a
referrer at most once.

State machine:

    pending --(payment confirmed)--> completed --(refund)--> refunded
    pending --(payment failed)--> failed
"""

import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional
from uuid import UUID, uuid4

from .codes import ReferralCodeGenerator
from .config import Settings, get_settings
from .exceptions import (
    AccountNotConnectedError,
    AccountNotFoundError,
    AlreadyProcessedError,
    AlreadyReferredError,
    AlreadyRefundedError,
    AmountOutOfRangeError,
    DuplicateKeyError,
    InsufficientBalanceError,
    InvalidStateTransitionError,
    ReferralNotFoundError,
    ReferrerNotFoundError,
    SelfReferralError,
    UpstreamProviderError,
)
from .models import (
    CreateReferralRequest,
    Payout,
    PayoutResponse,
    PayoutStatus,
    Referral,
    ReferralResponse,
    ReferralStatus,
    UserAccount,
    calculate_commission,
    conversion_rate,
    round2,
)
from .storage import InMemoryStorage

logger = logging.getLogger(__name__)


def _with_conversion_rate(record: dict) -> dict:
    stats = record["referral_stats"]
    return {
        "referral_stats.conversion_rate": conversion_rate(
            stats["successful_referrals"], stats["total_referrals"]
        )
    }


class LedgerService:
    def __init__(
        self,
        storage: InMemoryStorage,
        payment_provider=None,
        settings: Optional[Settings] = None,
        code_generator: Optional[ReferralCodeGenerator] = None,
    ):
        self.storage = storage
        self.payment_provider = payment_provider
        self.settings = settings or get_settings()
        self.code_generator = code_generator or ReferralCodeGenerator(storage)

    def generate_referral_code(self) -> str:
        return self.code_generator.generate()

    def commission_for(self, tier: str, amount: Decimal) -> Decimal:
        return calculate_commission(amount, self.settings.rate_for_tier(tier))

    def get_referral(self, referral_id: UUID) -> Referral:
        referral_data = self.storage.get_referral(referral_id)
        if not referral_data:
            raise ReferralNotFoundError(f"Referral {referral_id} not found")
        return Referral(**referral_data)

    def get_referral_by_payment_intent(self, payment_intent_id: str) -> Referral:
        referral_data = self.storage.find_referral_by_payment_intent(payment_intent_id)
        if not referral_data:
            raise ReferralNotFoundError(f"No referral for payment {payment_intent_id}")
        return Referral(**referral_data)

    def create_referral(self, request: CreateReferralRequest) -> ReferralResponse:
        """
        Record that request.referred_user_id subscribed with request.referral_code.

        Without a payment intent the referral starts pending. With one, the
        payment is already confirmed: the referral is inserted completed and
        the referrer is credited in the same atomic step.
        """
        referrer_data = self.storage.find_user_by_code(request.referral_code)
        if not referrer_data:
            raise ReferrerNotFoundError(f"Invalid referral code: {request.referral_code}")
        referrer_id = referrer_data["id"]

        if referrer_id == request.referred_user_id:
            raise SelfReferralError("Cannot refer yourself")
        if self.storage.find_referral_by_referred_user(request.referred_user_id):
            raise AlreadyReferredError(f"User {request.referred_user_id} has already been referred")

        payment_intent_id = request.payment_intent_id
        if payment_intent_id and self.storage.find_referral_by_payment_intent(payment_intent_id):
            raise AlreadyProcessedError(f"Payment {payment_intent_id} already recorded")

        commission = self.commission_for(request.subscription_tier, request.subscription_amount)
        now = datetime.now(timezone.utc)
        completed = payment_intent_id is not None

        referral_data = {
            "id": uuid4(),
            "referrer_id": referrer_id,
            "referred_user_id": request.referred_user_id,
            "referral_code": request.referral_code,
            "subscription_tier": request.subscription_tier,
            "subscription_amount": round2(request.subscription_amount),
            "commission_amount": commission,
            "status": (ReferralStatus.COMPLETED if completed else ReferralStatus.PENDING).value,
            "payment_intent_id": payment_intent_id,
            "created_at": now,
            "completed_at": now if completed else None,
            "refunded_at": None,
            "failed_at": None,
            "failure_reason": None,
        }

        deltas = {"referral_stats.total_referrals": 1}
        if completed:
            deltas.update({
                "referral_stats.successful_referrals": 1,
                "available_balance": commission,
                "total_earnings": commission,
            })

        with self.storage.atomic():
            try:
                record = self.storage.insert_referral(referral_data)
            except DuplicateKeyError as e:
                if e.field == "payment_intent_id":
                    raise AlreadyProcessedError(f"Payment {payment_intent_id} already recorded") from e
                raise AlreadyReferredError(f"User {request.referred_user_id} has already been referred") from e
            self.storage.increment_user(referrer_id, deltas, derive=_with_conversion_rate)

        logger.info(
            "Created %s referral %s: referrer=%s referred=%s commission=%s",
            record["status"], record["id"], referrer_id, request.referred_user_id, commission,
        )
        return ReferralResponse(referral=Referral(**record), message="Referral created successfully")

    def complete_referral(self, referral_id: UUID, payment_intent_id: str) -> ReferralResponse:
        referral = self.get_referral(referral_id)
        if self.storage.find_referral_by_payment_intent(payment_intent_id):
            raise AlreadyProcessedError(f"Payment {payment_intent_id} already recorded")
        if referral.status == ReferralStatus.COMPLETED:
            raise AlreadyProcessedError(f"Referral {referral_id} already completed")
        if not referral.can_complete():
            raise InvalidStateTransitionError(f"Cannot complete referral in {referral.status.value} state")

        with self.storage.atomic():
            if not self.storage.get_user(referral.referrer_id):
                raise ReferrerNotFoundError(f"Referrer {referral.referrer_id} not found")
            try:
                record = self.storage.transition_referral(
                    referral_id,
                    [ReferralStatus.PENDING],
                    ReferralStatus.COMPLETED,
                    {"payment_intent_id": payment_intent_id, "completed_at": datetime.now(timezone.utc)},
                )
            except DuplicateKeyError as e:
                raise AlreadyProcessedError(f"Payment {payment_intent_id} already recorded") from e
            if record is None:
                raise AlreadyProcessedError(f"Referral {referral_id} is no longer pending")

            commission = referral.commission_amount
            self.storage.increment_user(
                referral.referrer_id,
                {
                    "referral_stats.successful_referrals": 1,
                    "available_balance": commission,
                    "total_earnings": commission,
                },
                derive=_with_conversion_rate,
            )

        logger.info("Completed referral %s with payment %s, credited %s", referral_id, payment_intent_id, commission)
        return ReferralResponse(referral=Referral(**record), message="Referral completed successfully")

    def complete_referral_by_payment_intent(self, payment_intent_id: str, referred_user_id: UUID) -> ReferralResponse:
        """Complete the referred user's referral with a confirmed payment."""
        if self.storage.find_referral_by_payment_intent(payment_intent_id):
            raise AlreadyProcessedError(f"Payment {payment_intent_id} already recorded")
        referral_data = self.storage.find_referral_by_referred_user(referred_user_id)
        if not referral_data:
            raise ReferralNotFoundError(f"No referral for user {referred_user_id}")
        return self.complete_referral(referral_data["id"], payment_intent_id)

    def record_initial_payment(
        self,
        referral_code: str,
        referred_user_id: UUID,
        subscription_tier: str,
        subscription_amount: Decimal,
        payment_intent_id: str,
    ) -> ReferralResponse:
        """
        Apply the first paid invoice of a subscription. Completes a pending
        referral when the user already has one, otherwise creates the
        referral directly as completed.
        """
        try:
            return self.complete_referral_by_payment_intent(payment_intent_id, referred_user_id)
        except ReferralNotFoundError:
            pass
        return self.create_referral(CreateReferralRequest(
            referral_code=referral_code,
            referred_user_id=referred_user_id,
            subscription_tier=subscription_tier,
            subscription_amount=subscription_amount,
            payment_intent_id=payment_intent_id,
        ))

    def fail_referral(self, referral_id: UUID, reason: str) -> ReferralResponse:
        referral = self.get_referral(referral_id)
        if referral.status == ReferralStatus.FAILED:
            raise AlreadyProcessedError(f"Referral {referral_id} already failed")
        if not referral.can_fail():
            raise InvalidStateTransitionError(f"Cannot fail referral in {referral.status.value} state")

        record = self.storage.transition_referral(
            referral_id,
            [ReferralStatus.PENDING],
            ReferralStatus.FAILED,
            {"failed_at": datetime.now(timezone.utc), "failure_reason": reason},
        )
        if record is None:
            raise AlreadyProcessedError(f"Referral {referral_id} is no longer pending")

        logger.info("Referral %s failed: %s", referral_id, reason)
        return ReferralResponse(referral=Referral(**record), message="Referral marked as failed")

    def refund_referral(self, payment_intent_id: str) -> ReferralResponse:
        """
        Reverse a completed referral. The exact inverse of completion on the
        referrer's balances and successful count; total_referrals is kept.
        """
        referral = self.get_referral_by_payment_intent(payment_intent_id)
        if referral.status == ReferralStatus.REFUNDED:
            raise AlreadyRefundedError(f"Referral {referral.id} already refunded")
        if not referral.can_refund():
            raise InvalidStateTransitionError(f"Cannot refund referral in {referral.status.value} state")

        with self.storage.atomic():
            if not self.storage.get_user(referral.referrer_id):
                raise ReferrerNotFoundError(f"Referrer {referral.referrer_id} not found")
            record = self.storage.transition_referral(
                referral.id,
                [ReferralStatus.COMPLETED],
                ReferralStatus.REFUNDED,
                {"refunded_at": datetime.now(timezone.utc)},
            )
            if record is None:
                raise AlreadyRefundedError(f"Referral {referral.id} already refunded")

            commission = referral.commission_amount
            self.storage.increment_user(
                referral.referrer_id,
                {
                    "referral_stats.successful_referrals": -1,
                    "available_balance": -commission,
                    "total_earnings": -commission,
                },
                derive=_with_conversion_rate,
            )

        logger.info("Refunded referral %s (payment %s), debited %s", referral.id, payment_intent_id, commission)
        return ReferralResponse(referral=Referral(**record), message="Referral refunded successfully")

    def request_refund(self, payment_intent_id: str) -> ReferralResponse:
        """
        Refund the customer through the provider, then reverse the commission.

        Local state is checked first and written only after the provider
        accepted the refund. If the provider's refund webhook was applied in
        between, the already-refunded referral is returned.
        """
        if self.payment_provider is None:
            raise UpstreamProviderError("No payment provider configured")

        referral = self.get_referral_by_payment_intent(payment_intent_id)
        if referral.status == ReferralStatus.REFUNDED:
            raise AlreadyRefundedError(f"Referral {referral.id} already refunded")
        if not referral.can_refund():
            raise InvalidStateTransitionError(f"Cannot refund referral in {referral.status.value} state")

        self.payment_provider.create_refund(payment_intent_id)

        try:
            return self.refund_referral(payment_intent_id)
        except AlreadyRefundedError:
            logger.info("Referral %s was refunded by a provider event first", referral.id)
            return ReferralResponse(
                referral=self.get_referral(referral.id), message="Referral already refunded"
            )

    def request_payout(self, user_id: UUID, amount: Decimal) -> PayoutResponse:
        """
        Withdraw amount from the available balance to the user's connected account.

        The balance is debited before the transfer and credited back if the
        provider rejects it, so a failed payout leaves the balance unchanged.
        """
        amount = round2(amount)
        user_data = self.storage.get_user(user_id)
        if not user_data:
            raise AccountNotFoundError(f"Account {user_id} not found")
        account = UserAccount(**user_data)

        if not account.can_receive_payouts():
            raise AccountNotConnectedError("Payout account not connected")
        if amount < self.settings.min_payout_amount or amount > self.settings.max_payout_amount:
            raise AmountOutOfRangeError(
                f"Payout amount must be between ${self.settings.min_payout_amount} "
                f"and ${self.settings.max_payout_amount}"
            )
        if amount > account.available_balance:
            raise InsufficientBalanceError("Insufficient balance")
        if self.payment_provider is None:
            raise UpstreamProviderError("No payment provider configured")

        now = datetime.now(timezone.utc)
        payout_id = uuid4()
        with self.storage.atomic():
            debited = self.storage.increment_user(
                user_id,
                {"available_balance": -amount},
                guard=lambda record: record["available_balance"] >= amount,
            )
            if debited is None:
                raise InsufficientBalanceError("Insufficient balance")
            self.storage.insert_payout({
                "id": payout_id,
                "user_id": user_id,
                "amount": amount,
                "currency": self.settings.currency,
                "status": PayoutStatus.PENDING.value,
                "transfer_id": None,
                "error": None,
                "created_at": now,
                "completed_at": None,
                "failed_at": None,
            })

        try:
            transfer = self.payment_provider.create_transfer(
                amount,
                account.connect_account_id,
                currency=self.settings.currency,
                metadata={"user_id": str(user_id), "payout_id": str(payout_id)},
                idempotency_key=f"payout:{payout_id}",
            )
        except UpstreamProviderError as e:
            with self.storage.atomic():
                failed = self.storage.transition_payout(
                    payout_id,
                    [PayoutStatus.PENDING],
                    PayoutStatus.FAILED,
                    {"error": str(e), "failed_at": datetime.now(timezone.utc)},
                )
                if failed is not None:
                    self.storage.increment_user(user_id, {"available_balance": amount})
            logger.error("Payout %s for user %s failed, balance restored: %s", payout_id, user_id, e)
            raise

        completed_at = datetime.now(timezone.utc)
        with self.storage.atomic():
            payout_record = self.storage.transition_payout(
                payout_id,
                [PayoutStatus.PENDING],
                PayoutStatus.COMPLETED,
                {"transfer_id": transfer["id"], "completed_at": completed_at},
            )
            user_record = self.storage.update_user(user_id, {"last_payout_at": completed_at})

        logger.info("Payout %s of %s to user %s completed (transfer %s)", payout_id, amount, user_id, transfer["id"])
        return PayoutResponse(
            payout=Payout(**payout_record),
            remaining_balance=user_record["available_balance"],
            message="Payout completed successfully",
        )
