"""
Polling payment agent.

Runs outside the engine: asks what is due, then presents the matching
delegated key for each subscription. The agent never retries a rejected
payment; the next poll picks up whatever is still due.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Optional

from .engine import Caller, SubscriptionEngine
from .errors import StandingError
from .keys import DelegatedKey, sign_payment_request
from .payment import PaymentResult


logger = logging.getLogger(__name__)

DEFAULT_BATCH_LIMIT = 10
DEFAULT_POLL_INTERVAL = 60.0


@dataclass
class AgentRunReport:
    processed: int = 0
    succeeded: int = 0
    rejected: int = 0
    skipped: int = 0
    errors: int = 0
    results: list[PaymentResult] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "processed": self.processed,
            "succeeded": self.succeeded,
            "rejected": self.rejected,
            "skipped": self.skipped,
            "errors": self.errors,
        }


class PaymentAgent:
    def __init__(
        self,
        engine: SubscriptionEngine,
        principal: str,
        keyring: Optional[dict[str, DelegatedKey]] = None,
    ):
        self.engine = engine
        self.principal = principal
        self.keyring: dict[str, DelegatedKey] = dict(keyring or {})
        self._in_flight: set[str] = set()
        self._in_flight_lock = threading.Lock()

    def add_key(self, subscription_id: str, key: DelegatedKey) -> None:
        self.keyring[subscription_id] = key

    def run_once(self, limit: int = DEFAULT_BATCH_LIMIT) -> AgentRunReport:
        """One poll: pay whatever is due and return a tally.

        A failed due scan is counted as an error rather than raised, so a
        polling loop survives the worker losing approval. Several threads may
        share one agent; a subscription already claimed by another thread is
        skipped.
        """
        report = AgentRunReport()
        try:
            due = self.engine.get_due_subscriptions(Caller(self.principal), limit)
        except StandingError as exc:
            logger.error("Due scan failed for %s: %s", self.principal, exc)
            report.errors += 1
            return report
        logger.info("Found %d due subscriptions", len(due))

        for subscription in due:
            key = self.keyring.get(subscription.id)
            if key is None:
                logger.warning("No delegated key held for %s, skipping", subscription.id)
                report.skipped += 1
                continue
            if not self._claim(subscription.id):
                logger.info("Subscription %s is already being processed", subscription.id)
                report.skipped += 1
                continue

            try:
                timestamp = self.engine.clock.now()
                result = self.engine.process_signed_payment(
                    self.principal,
                    subscription.id,
                    timestamp,
                    sign_payment_request(key, subscription.id, timestamp),
                )
            except StandingError as exc:
                logger.error("Error processing payment for %s: %s", subscription.id, exc)
                report.errors += 1
                continue
            finally:
                self._release(subscription.id)

            report.processed += 1
            report.results.append(result)
            if result.success:
                report.succeeded += 1
            else:
                report.rejected += 1
                logger.info("Payment for %s not made: %s", subscription.id, result.error)

        return report

    def run(
        self,
        interval: float = DEFAULT_POLL_INTERVAL,
        stop_event: Optional[threading.Event] = None,
        limit: int = DEFAULT_BATCH_LIMIT,
        max_iterations: Optional[int] = None,
    ) -> list[AgentRunReport]:
        """Poll until stop_event is set or max_iterations runs complete."""
        stop_event = stop_event or threading.Event()
        reports: list[AgentRunReport] = []
        while not stop_event.is_set():
            reports.append(self.run_once(limit))
            if max_iterations is not None and len(reports) >= max_iterations:
                break
            stop_event.wait(interval)
        return reports

    def _claim(self, subscription_id: str) -> bool:
        with self._in_flight_lock:
            if subscription_id in self._in_flight:
                return False
            self._in_flight.add(subscription_id)
            return True

    def _release(self, subscription_id: str) -> None:
        with self._in_flight_lock:
            self._in_flight.discard(subscription_id)
