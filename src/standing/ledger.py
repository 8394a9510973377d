"""
Subscription ledger.

Owns every Subscription record and its lifecycle:

    active --pause--> paused --resume--> active
    active|paused --cancel--> canceled (terminal)

Payment-driven cancellation (payment cap or end date) goes through
update(); nothing else writes subscription records.
"""

from __future__ import annotations

import dataclasses
import logging
from typing import Optional

from .audit import AuditTrail, EventType, record
from .clock import Clock
from .errors import InvalidMerchantError, InvalidStateError, NotFoundError, UnauthorizedError
from .money import ensure_u128
from .state import EngineState
from .subscription import (
    Frequency,
    PaymentMethod,
    Subscription,
    SubscriptionStatus,
    next_payment_after,
)


logger = logging.getLogger(__name__)

_CANCELABLE = {SubscriptionStatus.ACTIVE, SubscriptionStatus.PAUSED}


class SubscriptionLedger:
    def __init__(self, state: EngineState, clock: Clock, audit: Optional[AuditTrail] = None):
        self.state = state
        self.clock = clock
        self.audit = audit

    # Merchants

    def register_merchant(self, caller: str, merchant_id: str) -> None:
        self.state.require_owner(caller)
        if not merchant_id:
            raise ValueError("merchant_id is required")
        self.state.merchants.add(merchant_id)
        logger.info("Merchant registered: %s", merchant_id)
        record(self.audit, EventType.MERCHANT_REGISTERED, principal=caller, merchant=merchant_id)

    def merchants(self) -> list[str]:
        return sorted(self.state.merchants)

    # Subscriptions

    def create(
        self,
        payer: str,
        merchant_id: str,
        amount: int,
        frequency: Frequency,
        payment_method: PaymentMethod,
        max_payments: Optional[int] = None,
        end_date: Optional[int] = None,
    ) -> str:
        if merchant_id not in self.state.merchants:
            raise InvalidMerchantError(merchant_id)
        ensure_u128(amount)
        if amount == 0:
            raise ValueError("amount must be positive")
        if max_payments is not None and max_payments < 1:
            raise ValueError("max_payments must be at least 1")
        frequency = Frequency(frequency)

        now = self.clock.now()
        subscription_id = f"sub-{payer}-{now}-{self.state.next_sequence()}"
        subscription = Subscription(
            id=subscription_id,
            user_id=payer,
            merchant_id=merchant_id,
            amount=amount,
            frequency=frequency,
            payment_method=payment_method,
            next_payment_date=next_payment_after(now, frequency),
            created_at=now,
            updated_at=now,
            max_payments=max_payments,
            end_date=end_date,
        )
        self.state.subscriptions[subscription_id] = subscription

        logger.info("Subscription created: %s", subscription_id)
        record(
            self.audit,
            EventType.SUBSCRIPTION_CREATED,
            subscription_id=subscription_id,
            principal=payer,
            merchant=merchant_id,
            amount=amount,
            details={
                "frequency": frequency.value,
                "payment_method": payment_method.describe(),
                "max_payments": max_payments,
                "end_date": end_date,
            },
        )
        return subscription_id

    def get(self, subscription_id: str) -> Optional[Subscription]:
        """A copy of the stored record; persist changes with update()."""
        subscription = self.state.subscriptions.get(subscription_id)
        return dataclasses.replace(subscription) if subscription else None

    def require(self, subscription_id: str) -> Subscription:
        subscription = self.get(subscription_id)
        if subscription is None:
            raise NotFoundError(f"Subscription not found: {subscription_id}")
        return subscription

    def update(self, subscription: Subscription) -> None:
        if subscription.id not in self.state.subscriptions:
            raise NotFoundError(f"Subscription not found: {subscription.id}")
        stored = self.state.subscriptions[subscription.id]
        if stored.is_terminal and not subscription.is_terminal:
            raise InvalidStateError("Canceled subscriptions cannot be reopened", stored.status.value)
        # Replacing the value keeps the key's storage position.
        self.state.subscriptions[subscription.id] = dataclasses.replace(subscription)

    def list_by_user(self, user_id: str) -> list[Subscription]:
        return [dataclasses.replace(s) for s in self.state.subscriptions.values() if s.user_id == user_id]

    def list_by_merchant(self, merchant_id: str) -> list[Subscription]:
        return [dataclasses.replace(s) for s in self.state.subscriptions.values() if s.merchant_id == merchant_id]

    # Lifecycle

    def cancel(self, subscription_id: str, caller: str) -> Subscription:
        return self._transition(
            subscription_id,
            caller,
            action="cancel",
            allowed_from=_CANCELABLE,
            target=SubscriptionStatus.CANCELED,
            event_type=EventType.SUBSCRIPTION_CANCELED,
        )

    def pause(self, subscription_id: str, caller: str) -> Subscription:
        return self._transition(
            subscription_id,
            caller,
            action="pause",
            allowed_from={SubscriptionStatus.ACTIVE},
            target=SubscriptionStatus.PAUSED,
            event_type=EventType.SUBSCRIPTION_PAUSED,
        )

    def resume(self, subscription_id: str, caller: str) -> Subscription:
        return self._transition(
            subscription_id,
            caller,
            action="resume",
            allowed_from={SubscriptionStatus.PAUSED},
            target=SubscriptionStatus.ACTIVE,
            event_type=EventType.SUBSCRIPTION_RESUMED,
        )

    def _transition(
        self,
        subscription_id: str,
        caller: str,
        action: str,
        allowed_from: set[SubscriptionStatus],
        target: SubscriptionStatus,
        event_type: EventType,
    ) -> Subscription:
        subscription = self.require(subscription_id)
        if subscription.user_id != caller:
            raise UnauthorizedError(f"Not authorized to {action} this subscription")
        if subscription.status not in allowed_from:
            raise InvalidStateError(
                f"Cannot {action} subscription in status {subscription.status.value}",
                subscription.status.value,
            )

        subscription.status = target
        subscription.updated_at = self.clock.now()
        self.update(subscription)

        logger.info("Subscription %s: %s", target.value, subscription_id)
        record(
            self.audit,
            event_type,
            subscription_id=subscription_id,
            principal=caller,
            merchant=subscription.merchant_id,
        )
        return subscription
