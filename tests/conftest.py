"""Shared fixtures: an engine with an approved worker and a registered merchant."""

import pytest

from standing.attestation import SignedQuoteVerifier, generate_quoting_key, issue_quote
from standing.audit import AuditTrail
from standing.clock import FixedClock
from standing.engine import Caller, SubscriptionEngine
from standing.keys import generate_delegated_key
from standing.state import EngineState
from standing.subscription import Frequency
from standing.transfers import RecordingTransferExecutor


OWNER = "owner.near"
WORKER = "worker.near"
PAYER = "alice.near"
MERCHANT = "merchant.near"
CODEHASH = "codehash-v1"

START = 1_700_000_000
DAY = 86_400


@pytest.fixture
def clock():
    return FixedClock(START)


@pytest.fixture
def transfers():
    return RecordingTransferExecutor()


@pytest.fixture
def audit(tmp_path):
    return AuditTrail(
        path=tmp_path / "audit.jsonl",
        key_path=tmp_path / "secret" / "audit_hmac.key",
    )


@pytest.fixture
def quoting_key():
    return generate_quoting_key()


@pytest.fixture
def engine(clock, transfers, audit):
    return SubscriptionEngine(
        EngineState(owner=OWNER),
        verifier=SignedQuoteVerifier(),
        transfers=transfers,
        clock=clock,
        audit=audit,
    )


@pytest.fixture
def world(engine, clock, quoting_key):
    """Engine with an approved worker and one registered merchant."""
    private_key, anchor = quoting_key
    engine.approve_codehash(Caller(OWNER), CODEHASH)
    engine.register_merchant(Caller(OWNER), MERCHANT)
    quote = issue_quote(private_key, CODEHASH, issued_at=clock.now())
    assert engine.register_worker(Caller(WORKER), quote, anchor, "checksum-1", CODEHASH)
    return engine


@pytest.fixture
def daily_sub(world):
    """A daily native subscription with a registered delegated key."""
    subscription_id = world.create_subscription(Caller(PAYER), MERCHANT, 100, Frequency.DAILY)
    key = generate_delegated_key()
    world.register_subscription_key(Caller(PAYER), key.public_key, subscription_id)
    return subscription_id, key
