"""
Standing — Recurring payment authorization for attested agents.

Payer subscribes → delegates a key → approved worker bills on schedule.
"""

__version__ = "0.1.0"

from .subscription import Frequency, PaymentMethod, Subscription, SubscriptionStatus, Worker
from .state import EngineState, StateStore
from .engine import Caller, SubscriptionEngine
from .payment import PaymentResult, RejectionCode, TransferExecutor
from .attestation import AttestationVerifier, SignedQuoteVerifier, issue_quote
from .keys import DelegatedKey, generate_delegated_key
from .transfers import HttpTransferExecutor, RecordingTransferExecutor
from .agent import PaymentAgent
from .audit import AuditTrail, EventType

__all__ = [
    "Frequency", "PaymentMethod", "Subscription", "SubscriptionStatus", "Worker",
    "EngineState", "StateStore", "Caller", "SubscriptionEngine",
    "PaymentResult", "RejectionCode", "TransferExecutor",
    "AttestationVerifier", "SignedQuoteVerifier", "issue_quote",
    "DelegatedKey", "generate_delegated_key",
    "HttpTransferExecutor", "RecordingTransferExecutor",
    "PaymentAgent", "AuditTrail", "EventType",
]
