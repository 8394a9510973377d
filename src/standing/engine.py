"""
Subscription engine: the operations exposed to a host.

The engine wires the worker registry, key map, ledger, scheduler and
payment processor over one EngineState. Every public method runs under a
single re-entrant lock, so a multi-threaded host gets the same
one-operation-at-a-time behavior as a single-writer host, and two
payments for the same subscription can never interleave.

Caller identity comes from the host. The engine trusts `Caller` as
already authenticated.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from functools import wraps
from typing import Optional

from .attestation import AttestationVerifier
from .audit import AuditTrail
from .clock import Clock, SystemClock
from .keys import KeyAuthorizationMap, recover_request_key
from .ledger import SubscriptionLedger
from .payment import PaymentProcessor, PaymentResult, TransferExecutor
from .scheduler import PaymentScheduler
from .state import EngineState
from .subscription import Frequency, PaymentMethod, Subscription, Worker
from .workers import WorkerRegistry


@dataclass(frozen=True)
class Caller:
    """Authenticated principal, plus the public key used for delegated calls."""

    principal: str
    public_key: Optional[str] = None


def _serialized(method):
    @wraps(method)
    def wrapper(self, *args, **kwargs):
        with self._lock:
            return method(self, *args, **kwargs)
    return wrapper


class SubscriptionEngine:
    def __init__(
        self,
        state: EngineState,
        verifier: AttestationVerifier,
        transfers: TransferExecutor,
        clock: Optional[Clock] = None,
        audit: Optional[AuditTrail] = None,
        anchor_to_due_date: bool = False,
    ):
        self.state = state
        self.clock = clock or SystemClock()
        self.audit = audit
        self._lock = threading.RLock()

        self.workers = WorkerRegistry(state, verifier, self.clock, audit)
        self.ledger = SubscriptionLedger(state, self.clock, audit)
        self.keys = KeyAuthorizationMap(state, self.ledger, audit)
        self.scheduler = PaymentScheduler(state, self.workers, self.clock)
        self.processor = PaymentProcessor(
            self.workers,
            self.keys,
            self.ledger,
            transfers,
            self.clock,
            audit=audit,
            anchor_to_due_date=anchor_to_due_date,
        )

    # Workers

    @_serialized
    def register_worker(
        self,
        caller: Caller,
        quote: bytes,
        trust_anchor: bytes,
        checksum: str,
        codehash: str,
    ) -> bool:
        return self.workers.register(caller.principal, quote, trust_anchor, checksum, codehash)

    @_serialized
    def get_worker(self, principal: str) -> Worker:
        return self.workers.get(principal)

    @_serialized
    def is_approved_worker(self, principal: str) -> bool:
        return self.workers.is_approved_caller(principal)

    @_serialized
    def require_worker_codehash(self, caller: Caller, codehash: str) -> None:
        self.workers.require_codehash(caller.principal, codehash)

    # Owner administration

    @_serialized
    def approve_codehash(self, caller: Caller, codehash: str) -> None:
        self.workers.approve_codehash(caller.principal, codehash)

    @_serialized
    def register_merchant(self, caller: Caller, merchant_id: str) -> None:
        self.ledger.register_merchant(caller.principal, merchant_id)

    @_serialized
    def list_merchants(self) -> list[str]:
        return self.ledger.merchants()

    # Subscriptions

    @_serialized
    def create_subscription(
        self,
        caller: Caller,
        merchant_id: str,
        amount: int,
        frequency: Frequency,
        payment_method: Optional[PaymentMethod] = None,
        max_payments: Optional[int] = None,
        end_date: Optional[int] = None,
    ) -> str:
        return self.ledger.create(
            caller.principal,
            merchant_id,
            amount,
            frequency,
            payment_method or PaymentMethod.native(),
            max_payments=max_payments,
            end_date=end_date,
        )

    @_serialized
    def register_subscription_key(self, caller: Caller, public_key: str, subscription_id: str) -> None:
        self.keys.register(caller.principal, public_key, subscription_id)

    @_serialized
    def cancel_subscription(self, caller: Caller, subscription_id: str) -> Subscription:
        return self.ledger.cancel(subscription_id, caller.principal)

    @_serialized
    def pause_subscription(self, caller: Caller, subscription_id: str) -> Subscription:
        return self.ledger.pause(subscription_id, caller.principal)

    @_serialized
    def resume_subscription(self, caller: Caller, subscription_id: str) -> Subscription:
        return self.ledger.resume(subscription_id, caller.principal)

    @_serialized
    def get_subscription(self, subscription_id: str) -> Optional[Subscription]:
        return self.ledger.get(subscription_id)

    @_serialized
    def get_user_subscriptions(self, user_id: str) -> list[Subscription]:
        return self.ledger.list_by_user(user_id)

    @_serialized
    def get_merchant_subscriptions(self, merchant_id: str) -> list[Subscription]:
        return self.ledger.list_by_merchant(merchant_id)

    # Billing

    @_serialized
    def get_due_subscriptions(self, caller: Caller, limit: int) -> list[Subscription]:
        return self.scheduler.due_subscriptions(caller.principal, limit)

    @_serialized
    def process_payment(self, caller: Caller, subscription_id: str) -> PaymentResult:
        return self.processor.process(caller.principal, caller.public_key, subscription_id)

    @_serialized
    def process_signed_payment(
        self,
        principal: str,
        subscription_id: str,
        timestamp: int,
        signature: str,
    ) -> PaymentResult:
        """Process a payment whose delegated key is proven by a request signature.

        A stale timestamp raises UnauthorizedError. A signature over another
        subscription recovers a key that is not bound to this one, so it is
        rejected in-band like any unauthorized key.
        """
        public_key = recover_request_key(subscription_id, timestamp, signature, now=self.clock.now())
        return self.processor.process(principal, public_key, subscription_id)
