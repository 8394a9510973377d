"""Selection of subscriptions that are due for billing."""

from __future__ import annotations

import dataclasses
import logging

from .clock import Clock
from .state import EngineState
from .subscription import Subscription
from .workers import WorkerRegistry


logger = logging.getLogger(__name__)


class PaymentScheduler:
    """Read-only filter over the ledger for approved workers.

    Scans in storage (insertion) order and returns the first `limit`
    active subscriptions whose due date has passed. This is not
    earliest-due-first, and each call is O(total subscriptions).
    """

    def __init__(self, state: EngineState, workers: WorkerRegistry, clock: Clock):
        self.state = state
        self.workers = workers
        self.clock = clock

    def due_subscriptions(self, caller: str, limit: int) -> list[Subscription]:
        self.workers.require_approved(caller)
        if limit < 0:
            raise ValueError("limit must be >= 0")

        now = self.clock.now()
        due: list[Subscription] = []
        for subscription in self.state.subscriptions.values():
            if len(due) >= limit:
                break
            if subscription.is_due(now):
                due.append(dataclasses.replace(subscription))

        logger.debug("Due scan by %s: %d of limit %d", caller, len(due), limit)
        return due
