"""
Subscription data model.

A Subscription is a standing authorization from a payer to a registered
merchant: a fixed amount, billed on a fixed interval, until it is
canceled, runs out of payments, or passes its end date.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from enum import Enum
from typing import Optional


class Frequency(str, Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    YEARLY = "yearly"

    @property
    def interval_seconds(self) -> int:
        return FREQUENCY_INTERVALS[self]


# Fixed-length intervals; months are 30 days and years 365.
FREQUENCY_INTERVALS = {
    Frequency.DAILY: 86_400,
    Frequency.WEEKLY: 604_800,
    Frequency.MONTHLY: 2_592_000,
    Frequency.QUARTERLY: 7_776_000,
    Frequency.YEARLY: 31_536_000,
}


class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    CANCELED = "canceled"
    # Reserved: no operation transitions into FAILED.
    FAILED = "failed"


@dataclass(frozen=True)
class PaymentMethod:
    """Native currency when token_id is None, otherwise a fungible token."""

    token_id: Optional[str] = None

    @classmethod
    def native(cls) -> PaymentMethod:
        return cls()

    @classmethod
    def token(cls, token_id: str) -> PaymentMethod:
        if not token_id:
            raise ValueError("token_id is required for token payments")
        return cls(token_id=token_id)

    @property
    def is_native(self) -> bool:
        return self.token_id is None

    def describe(self) -> str:
        return "native" if self.is_native else f"token:{self.token_id}"

    def to_dict(self) -> dict:
        if self.is_native:
            return {"type": "native"}
        return {"type": "token", "token_id": self.token_id}

    @classmethod
    def from_dict(cls, d: dict) -> PaymentMethod:
        if d.get("type") == "token":
            return cls.token(d["token_id"])
        return cls.native()


@dataclass
class Worker:
    """An admitted agent; keyed by principal in the registry."""

    checksum: str
    codehash: str

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, d: dict) -> Worker:
        return cls(checksum=d["checksum"], codehash=d["codehash"])


@dataclass
class Subscription:
    id: str
    user_id: str
    merchant_id: str
    amount: int
    frequency: Frequency
    payment_method: PaymentMethod
    next_payment_date: int
    created_at: int
    updated_at: int
    status: SubscriptionStatus = SubscriptionStatus.ACTIVE
    payments_made: int = 0
    max_payments: Optional[int] = None
    end_date: Optional[int] = None

    @property
    def is_active(self) -> bool:
        return self.status == SubscriptionStatus.ACTIVE

    @property
    def is_terminal(self) -> bool:
        return self.status == SubscriptionStatus.CANCELED

    def is_due(self, now: int) -> bool:
        return self.is_active and self.next_payment_date <= now

    @property
    def payments_exhausted(self) -> bool:
        return self.max_payments is not None and self.payments_made >= self.max_payments

    def has_ended(self, now: int) -> bool:
        return self.end_date is not None and now >= self.end_date

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "merchant_id": self.merchant_id,
            "amount": str(self.amount),
            "frequency": self.frequency.value,
            "payment_method": self.payment_method.to_dict(),
            "next_payment_date": self.next_payment_date,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "status": self.status.value,
            "payments_made": self.payments_made,
            "max_payments": self.max_payments,
            "end_date": self.end_date,
        }

    @classmethod
    def from_dict(cls, d: dict) -> Subscription:
        return cls(
            id=d["id"],
            user_id=d["user_id"],
            merchant_id=d["merchant_id"],
            amount=int(d["amount"]),
            frequency=Frequency(d["frequency"]),
            payment_method=PaymentMethod.from_dict(d["payment_method"]),
            next_payment_date=int(d["next_payment_date"]),
            created_at=int(d["created_at"]),
            updated_at=int(d["updated_at"]),
            status=SubscriptionStatus(d["status"]),
            payments_made=int(d.get("payments_made", 0)),
            max_payments=d.get("max_payments"),
            end_date=d.get("end_date"),
        )


def next_payment_after(reference: int, frequency: Frequency) -> int:
    """Due date one billing interval after reference."""
    return reference + frequency.interval_seconds
