"""
Payment processing for due subscriptions.

Flow:
1. Require the caller to be an approved worker (fatal)
2. Require the presented key to be bound to this subscription
3. Load the subscription (missing is fatal)
4. Require active status and a due date that has passed
5. Cancel instead of paying once the payment cap or end date is reached
6. Dispatch the transfer, then advance the billing cycle

Steps 2-6 never raise for routine rejections; they return an unsuccessful
PaymentResult so a worker can keep going through a batch.

Dispatch is fire-and-forget: the ledger advances once the transfer
executor accepts the instruction, not once it settles. The processor
never retries a dispatch.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Protocol

from .audit import AuditTrail, EventType, record
from .clock import Clock
from .errors import TransferError
from .keys import KeyAuthorizationMap
from .ledger import SubscriptionLedger
from .subscription import Subscription, SubscriptionStatus, next_payment_after
from .workers import WorkerRegistry


logger = logging.getLogger(__name__)


class TransferExecutor(Protocol):
    def transfer(self, payee: str, amount: int) -> Optional[str]: ...

    def token_transfer(self, token_id: str, payee: str, amount: int, memo: str) -> Optional[str]: ...


class RejectionCode(str, Enum):
    UNAUTHORIZED_KEY = "unauthorized_key"
    NOT_ACTIVE = "not_active"
    NOT_DUE = "not_due"
    LIMIT_EXCEEDED = "limit_exceeded"
    EXPIRED = "expired"
    DISPATCH_FAILED = "dispatch_failed"


@dataclass
class PaymentResult:
    """Outcome of one process() call. Never persisted."""

    success: bool
    subscription_id: str
    amount: int
    timestamp: int
    error: Optional[str] = None
    code: Optional[RejectionCode] = None
    transfer_id: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "subscription_id": self.subscription_id,
            "amount": str(self.amount),
            "timestamp": self.timestamp,
            "error": self.error,
            "code": self.code.value if self.code else None,
            "transfer_id": self.transfer_id,
        }


class PaymentProcessor:
    def __init__(
        self,
        workers: WorkerRegistry,
        keys: KeyAuthorizationMap,
        ledger: SubscriptionLedger,
        transfers: TransferExecutor,
        clock: Clock,
        audit: Optional[AuditTrail] = None,
        anchor_to_due_date: bool = False,
    ):
        self.workers = workers
        self.keys = keys
        self.ledger = ledger
        self.transfers = transfers
        self.clock = clock
        self.audit = audit
        # False: next due date counts from processing time, so late runs drift.
        # True: counts from the previous due date.
        self.anchor_to_due_date = anchor_to_due_date

    def process(self, caller: str, public_key: Optional[str], subscription_id: str) -> PaymentResult:
        self.workers.require_approved(caller)
        now = self.clock.now()

        if self.keys.resolve(public_key) != subscription_id:
            return self._reject(
                subscription_id,
                amount=0,
                now=now,
                code=RejectionCode.UNAUTHORIZED_KEY,
                error="Key is not authorized for this subscription",
                caller=caller,
            )

        subscription = self.ledger.require(subscription_id)

        if subscription.status != SubscriptionStatus.ACTIVE:
            return self._reject(
                subscription_id,
                amount=subscription.amount,
                now=now,
                code=RejectionCode.NOT_ACTIVE,
                error=f"Subscription is not active: {subscription.status.value}",
                caller=caller,
            )

        if subscription.next_payment_date > now:
            return self._reject(
                subscription_id,
                amount=subscription.amount,
                now=now,
                code=RejectionCode.NOT_DUE,
                error="Payment is not due yet",
                caller=caller,
            )

        if subscription.payments_exhausted:
            self._auto_cancel(subscription, now)
            return self._reject(
                subscription_id,
                amount=subscription.amount,
                now=now,
                code=RejectionCode.LIMIT_EXCEEDED,
                error="Maximum number of payments reached",
                caller=caller,
            )

        if subscription.has_ended(now):
            self._auto_cancel(subscription, now)
            return self._reject(
                subscription_id,
                amount=subscription.amount,
                now=now,
                code=RejectionCode.EXPIRED,
                error="Subscription end date reached",
                caller=caller,
            )

        record(
            self.audit,
            EventType.PAYMENT_INITIATED,
            subscription_id=subscription_id,
            principal=caller,
            merchant=subscription.merchant_id,
            amount=subscription.amount,
            details={"payment_method": subscription.payment_method.describe()},
        )
        try:
            transfer_id = self._dispatch(subscription)
        except TransferError as exc:
            return self._reject(
                subscription_id,
                amount=subscription.amount,
                now=now,
                code=RejectionCode.DISPATCH_FAILED,
                error=f"Transfer dispatch failed: {exc}",
                caller=caller,
            )

        reference = subscription.next_payment_date if self.anchor_to_due_date else now
        subscription.payments_made += 1
        subscription.next_payment_date = next_payment_after(reference, subscription.frequency)
        subscription.updated_at = now
        if subscription.payments_exhausted:
            subscription.status = SubscriptionStatus.CANCELED
        self.ledger.update(subscription)

        logger.info(
            "Payment dispatched: %s (%d of %s, amount %d to %s, next due %d)",
            subscription_id,
            subscription.payments_made,
            subscription.max_payments if subscription.max_payments is not None else "unbounded",
            subscription.amount,
            subscription.merchant_id,
            subscription.next_payment_date,
        )
        record(
            self.audit,
            EventType.PAYMENT_COMPLETED,
            subscription_id=subscription_id,
            principal=caller,
            merchant=subscription.merchant_id,
            amount=subscription.amount,
            details={
                "transfer_id": transfer_id,
                "payments_made": subscription.payments_made,
                "next_payment_date": subscription.next_payment_date,
                "status": subscription.status.value,
            },
        )
        return PaymentResult(
            success=True,
            subscription_id=subscription_id,
            amount=subscription.amount,
            timestamp=now,
            transfer_id=transfer_id,
        )

    def _dispatch(self, subscription: Subscription) -> Optional[str]:
        method = subscription.payment_method
        if method.is_native:
            return self.transfers.transfer(subscription.merchant_id, subscription.amount)
        return self.transfers.token_transfer(
            method.token_id,
            subscription.merchant_id,
            subscription.amount,
            f"subscription:{subscription.id}",
        )

    def _auto_cancel(self, subscription: Subscription, now: int) -> None:
        subscription.status = SubscriptionStatus.CANCELED
        subscription.updated_at = now
        self.ledger.update(subscription)
        logger.info("Subscription canceled during payment: %s", subscription.id)

    def _reject(
        self,
        subscription_id: str,
        amount: int,
        now: int,
        code: RejectionCode,
        error: str,
        caller: str,
    ) -> PaymentResult:
        logger.warning("Payment rejected for %s: %s", subscription_id, error)
        record(
            self.audit,
            EventType.PAYMENT_REJECTED,
            subscription_id=subscription_id,
            principal=caller,
            amount=amount,
            success=False,
            reason=error,
            details={"code": code.value},
        )
        return PaymentResult(
            success=False,
            subscription_id=subscription_id,
            amount=amount,
            timestamp=now,
            error=error,
            code=code,
        )
