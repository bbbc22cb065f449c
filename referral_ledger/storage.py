"""
In-memory document store backing the ledger.

The store is constructed explicitly and handed to the services; nothing in
the package opens a connection lazily. Its contract is what the ledger's
idempotency relies on:

- unique indexes on user email, referral codes (referral and custom codes
  share one namespace), referral.referred_user_id and
  referral.payment_intent_id; a violating write raises DuplicateKeyError
  and changes nothing
- increment_user applies numeric deltas atomically, optionally guarded
- transition_referral / transition_payout only write when the record is
  currently in one of the expected statuses (compare-and-swap)

Records are plain dicts; callers always receive copies.
"""

import copy
import logging
import threading
from contextlib import contextmanager
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Iterable, Iterator, Optional
from uuid import UUID

from .exceptions import DuplicateKeyError

logger = logging.getLogger(__name__)


def _get_path(doc: dict, path: str) -> Any:
    value = doc
    for part in path.split("."):
        value = value[part]
    return value


def _status_value(status) -> str:
    return status.value if isinstance(status, Enum) else status


def _set_path(doc: dict, path: str, value: Any) -> None:
    parts = path.split(".")
    target = doc
    for part in parts[:-1]:
        target = target.setdefault(part, {})
    target[parts[-1]] = value


class InMemoryStorage:
    def __init__(self):
        self._lock = threading.RLock()
        self._is_open = False
        self.users: dict[UUID, dict] = {}
        self.referrals: dict[UUID, dict] = {}
        self.payouts: dict[UUID, dict] = {}
        self._email_index: dict[str, UUID] = {}
        self._code_index: dict[str, UUID] = {}
        self._referred_user_index: dict[UUID, UUID] = {}
        self._payment_intent_index: dict[str, UUID] = {}

    def open(self) -> "InMemoryStorage":
        with self._lock:
            self._is_open = True
        logger.debug("Storage opened")
        return self

    def close(self) -> None:
        with self._lock:
            self._is_open = False
        logger.debug("Storage closed")

    @property
    def is_open(self) -> bool:
        return self._is_open

    def __enter__(self) -> "InMemoryStorage":
        return self.open()

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    @contextmanager
    def atomic(self) -> Iterator[None]:
        """Hold the store lock across several operations."""
        self._ensure_open()
        with self._lock:
            yield

    def _ensure_open(self) -> None:
        if not self._is_open:
            raise RuntimeError("Storage is not open")

    # Users

    def insert_user(self, data: dict) -> dict:
        with self.atomic():
            if data["id"] in self.users:
                raise DuplicateKeyError("id", data["id"])
            email = data["email"].lower()
            if email in self._email_index:
                raise DuplicateKeyError("email", data["email"])
            codes = [c for c in (data.get("referral_code"), data.get("custom_referral_code")) if c]
            for code in codes:
                if code.upper() in self._code_index:
                    raise DuplicateKeyError("referral_code", code)

            record = copy.deepcopy(data)
            self.users[record["id"]] = record
            self._email_index[email] = record["id"]
            for code in codes:
                self._code_index[code.upper()] = record["id"]
            return copy.deepcopy(record)

    def get_user(self, user_id: UUID) -> Optional[dict]:
        with self.atomic():
            record = self.users.get(user_id)
            return copy.deepcopy(record) if record else None

    def find_user_by_code(self, code: str) -> Optional[dict]:
        with self.atomic():
            user_id = self._code_index.get(code.upper())
            return copy.deepcopy(self.users[user_id]) if user_id else None

    def code_exists(self, code: str) -> bool:
        with self.atomic():
            return code.upper() in self._code_index

    def find_user_by_subscription(self, subscription_id: str) -> Optional[dict]:
        with self.atomic():
            for record in self.users.values():
                if record.get("subscription", {}).get("subscription_id") == subscription_id:
                    return copy.deepcopy(record)
            return None

    def list_users(self) -> list[dict]:
        with self.atomic():
            return [copy.deepcopy(u) for u in self.users.values()]

    def update_user(self, user_id: UUID, fields: dict) -> Optional[dict]:
        """Set fields (dotted paths allowed) on a user. Returns the updated record."""
        with self.atomic():
            record = self.users.get(user_id)
            if record is None:
                return None

            if "custom_referral_code" in fields:
                new_code = fields["custom_referral_code"]
                old_code = record.get("custom_referral_code")
                if new_code:
                    owner = self._code_index.get(new_code.upper())
                    if owner is not None and owner != user_id:
                        raise DuplicateKeyError("custom_referral_code", new_code)
                    if owner == user_id and new_code.upper() == (record.get("referral_code") or "").upper():
                        raise DuplicateKeyError("custom_referral_code", new_code)
                if old_code:
                    self._code_index.pop(old_code.upper(), None)
                if new_code:
                    self._code_index[new_code.upper()] = user_id

            for path, value in fields.items():
                _set_path(record, path, copy.deepcopy(value))
            return copy.deepcopy(record)

    def increment_user(
        self,
        user_id: UUID,
        deltas: dict,
        guard: Optional[Callable[[dict], bool]] = None,
        derive: Optional[Callable[[dict], dict]] = None,
    ) -> Optional[dict]:
        """
        Atomically add numeric deltas to a user's fields.

        guard sees the current record and can veto the write. derive sees the
        incremented record and returns extra fields to set in the same step.
        Returns None if the user is missing or the guard rejected the write.
        """
        with self.atomic():
            record = self.users.get(user_id)
            if record is None:
                return None
            if guard is not None and not guard(copy.deepcopy(record)):
                return None

            for path, delta in deltas.items():
                current = _get_path(record, path)
                if isinstance(current, Decimal) or isinstance(delta, Decimal):
                    _set_path(record, path, Decimal(str(current)) + Decimal(str(delta)))
                else:
                    _set_path(record, path, current + delta)
            if derive is not None:
                for path, value in derive(copy.deepcopy(record)).items():
                    _set_path(record, path, value)
            return copy.deepcopy(record)

    # Referrals

    def insert_referral(self, data: dict) -> dict:
        with self.atomic():
            if data["referred_user_id"] in self._referred_user_index:
                raise DuplicateKeyError("referred_user_id", data["referred_user_id"])
            payment_intent_id = data.get("payment_intent_id")
            if payment_intent_id and payment_intent_id in self._payment_intent_index:
                raise DuplicateKeyError("payment_intent_id", payment_intent_id)

            record = copy.deepcopy(data)
            self.referrals[record["id"]] = record
            self._referred_user_index[record["referred_user_id"]] = record["id"]
            if payment_intent_id:
                self._payment_intent_index[payment_intent_id] = record["id"]
            return copy.deepcopy(record)

    def get_referral(self, referral_id: UUID) -> Optional[dict]:
        with self.atomic():
            record = self.referrals.get(referral_id)
            return copy.deepcopy(record) if record else None

    def find_referral_by_payment_intent(self, payment_intent_id: str) -> Optional[dict]:
        with self.atomic():
            referral_id = self._payment_intent_index.get(payment_intent_id)
            return copy.deepcopy(self.referrals[referral_id]) if referral_id else None

    def find_referral_by_referred_user(self, referred_user_id: UUID) -> Optional[dict]:
        with self.atomic():
            referral_id = self._referred_user_index.get(referred_user_id)
            return copy.deepcopy(self.referrals[referral_id]) if referral_id else None

    def list_referrals(self, referrer_id: Optional[UUID] = None, status: Optional[str] = None) -> list[dict]:
        with self.atomic():
            return [
                copy.deepcopy(r) for r in self.referrals.values()
                if (referrer_id is None or r["referrer_id"] == referrer_id)
                and (status is None or r["status"] == _status_value(status))
            ]

    def transition_referral(
        self,
        referral_id: UUID,
        from_statuses: Iterable[str],
        to_status: str,
        fields: Optional[dict] = None,
    ) -> Optional[dict]:
        """
        Move a referral to to_status only if its status is in from_statuses.
        Returns the updated record, or None if the referral is missing or in
        another state.
        """
        fields = fields or {}
        with self.atomic():
            record = self.referrals.get(referral_id)
            if record is None or record["status"] not in {_status_value(s) for s in from_statuses}:
                return None

            payment_intent_id = fields.get("payment_intent_id")
            if payment_intent_id:
                owner = self._payment_intent_index.get(payment_intent_id)
                if owner is not None and owner != referral_id:
                    raise DuplicateKeyError("payment_intent_id", payment_intent_id)
                old = record.get("payment_intent_id")
                if old and old != payment_intent_id:
                    self._payment_intent_index.pop(old, None)
                self._payment_intent_index[payment_intent_id] = referral_id

            record.update(copy.deepcopy(fields))
            record["status"] = _status_value(to_status)
            return copy.deepcopy(record)

    # Payouts

    def insert_payout(self, data: dict) -> dict:
        with self.atomic():
            record = copy.deepcopy(data)
            self.payouts[record["id"]] = record
            return copy.deepcopy(record)

    def get_payout(self, payout_id: UUID) -> Optional[dict]:
        with self.atomic():
            record = self.payouts.get(payout_id)
            return copy.deepcopy(record) if record else None

    def list_payouts(self, user_id: UUID) -> list[dict]:
        with self.atomic():
            return [copy.deepcopy(p) for p in self.payouts.values() if p["user_id"] == user_id]

    def transition_payout(
        self,
        payout_id: UUID,
        from_statuses: Iterable[str],
        to_status: str,
        fields: Optional[dict] = None,
    ) -> Optional[dict]:
        with self.atomic():
            record = self.payouts.get(payout_id)
            if record is None or record["status"] not in {_status_value(s) for s in from_statuses}:
                return None
            record.update(copy.deepcopy(fields or {}))
            record["status"] = _status_value(to_status)
            return copy.deepcopy(record)
