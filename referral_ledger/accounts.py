import logging
import re
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional
from uuid import UUID, uuid4

from .codes import ReferralCodeGenerator
from .exceptions import (
    AccountNotFoundError,
    CustomCodeTakenError,
    DuplicateAccountError,
    DuplicateKeyError,
    InvalidReferralCodeError,
    ReferrerNotFoundError,
)
from .models import SubscriptionStatus, UserAccount
from .storage import InMemoryStorage

logger = logging.getLogger(__name__)

CUSTOM_CODE_PATTERN = re.compile(r"^[A-Za-z0-9_-]{4,20}$")


class AccountService:
    """User account records: codes, payout destination and the mirrored subscription."""

    def __init__(self, storage: InMemoryStorage, code_generator: Optional[ReferralCodeGenerator] = None):
        self.storage = storage
        self.code_generator = code_generator or ReferralCodeGenerator(storage)

    def create_account(self, email: str, user_id: Optional[UUID] = None) -> UserAccount:
        data = {
            "id": user_id or uuid4(),
            "email": email,
            "referral_code": self.code_generator.generate(),
            "custom_referral_code": None,
            "available_balance": Decimal("0.00"),
            "total_earnings": Decimal("0.00"),
            "referral_stats": {
                "total_referrals": 0,
                "successful_referrals": 0,
                "conversion_rate": Decimal("0.00"),
            },
            "subscription": {"status": SubscriptionStatus.INACTIVE.value, "cancel_at_period_end": False},
            "connect_account_id": None,
            "payout_enabled": False,
            "last_payout_at": None,
            "created_at": datetime.now(timezone.utc),
        }
        try:
            record = self.storage.insert_user(data)
        except DuplicateKeyError as e:
            raise DuplicateAccountError(f"An account with this {e.field} already exists: {e.value}") from e

        logger.info("Created account %s with referral code %s", record["id"], record["referral_code"])
        return UserAccount(**record)

    def get_account(self, user_id: UUID) -> UserAccount:
        record = self.storage.get_user(user_id)
        if not record:
            raise AccountNotFoundError(f"Account {user_id} not found")
        return UserAccount(**record)

    def resolve_referral_code(self, code: str) -> UserAccount:
        record = self.storage.find_user_by_code(code) if code else None
        if not record:
            raise ReferrerNotFoundError(f"Invalid referral code: {code}")
        return UserAccount(**record)

    def set_custom_referral_code(self, user_id: UUID, custom_code: str) -> UserAccount:
        if not CUSTOM_CODE_PATTERN.match(custom_code or ""):
            raise InvalidReferralCodeError(
                "Invalid custom code format. Use 4-20 alphanumeric characters, hyphens, or underscores."
            )
        code = custom_code.upper()
        try:
            record = self.storage.update_user(user_id, {"custom_referral_code": code})
        except DuplicateKeyError as e:
            raise CustomCodeTakenError(f"Custom code {code} is already taken") from e
        if record is None:
            raise AccountNotFoundError(f"Account {user_id} not found")

        logger.info("Account %s set custom referral code %s", user_id, code)
        return UserAccount(**record)

    def connect_payout_account(self, user_id: UUID, account_id: str, payout_enabled: bool = True) -> UserAccount:
        record = self.storage.update_user(
            user_id, {"connect_account_id": account_id, "payout_enabled": payout_enabled}
        )
        if record is None:
            raise AccountNotFoundError(f"Account {user_id} not found")
        return UserAccount(**record)

    def attach_subscription(
        self,
        user_id: UUID,
        tier: str,
        subscription_id: Optional[str],
        current_period_end: Optional[datetime] = None,
    ) -> UserAccount:
        record = self.storage.update_user(user_id, {
            "subscription.status": SubscriptionStatus.ACTIVE.value,
            "subscription.tier": tier,
            "subscription.subscription_id": subscription_id,
            "subscription.current_period_end": current_period_end,
        })
        if record is None:
            raise AccountNotFoundError(f"Account {user_id} not found")

        logger.info("Attached subscription %s (%s) to account %s", subscription_id, tier, user_id)
        return UserAccount(**record)

    def mirror_subscription(
        self,
        subscription_id: str,
        status: Optional[SubscriptionStatus],
        current_period_end: Optional[datetime] = None,
        cancel_at_period_end: bool = False,
        canceled_at: Optional[datetime] = None,
    ) -> Optional[UserAccount]:
        """
        Copy provider subscription state onto its owner. Unknown subscriptions
        are ignored; a status of None leaves the stored status unchanged.
        Raises ValueError for a status outside SubscriptionStatus, before
        anything is written.
        """
        if status is not None:
            status = SubscriptionStatus(status)
        record = self.storage.find_user_by_subscription(subscription_id)
        if not record:
            return None

        fields = {
            "subscription.current_period_end": current_period_end,
            "subscription.cancel_at_period_end": cancel_at_period_end,
        }
        if status is not None:
            fields["subscription.status"] = status.value
        if canceled_at:
            fields["subscription.canceled_at"] = canceled_at
        updated = self.storage.update_user(record["id"], fields)
        return UserAccount(**updated)
