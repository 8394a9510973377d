"""Tests for the payment processing flow."""

import pytest

from standing.attestation import SignedQuoteVerifier, issue_quote
from standing.audit import EventType
from standing.clock import FixedClock
from standing.engine import Caller, SubscriptionEngine
from standing.errors import NotFoundError, TransferError, UnauthorizedError
from standing.keys import generate_delegated_key, sign_payment_request
from standing.payment import RejectionCode
from standing.state import EngineState
from standing.subscription import Frequency, PaymentMethod, SubscriptionStatus

from conftest import CODEHASH, DAY, MERCHANT, OWNER, PAYER, START, WORKER


def _pay(engine, key, subscription_id):
    return engine.process_payment(Caller(WORKER, public_key=key.public_key), subscription_id)


def _subscribe(engine, **kwargs):
    kwargs.setdefault("frequency", Frequency.DAILY)
    subscription_id = engine.create_subscription(Caller(PAYER), MERCHANT, 100, **kwargs)
    key = generate_delegated_key()
    engine.register_subscription_key(Caller(PAYER), key.public_key, subscription_id)
    return subscription_id, key


class FailingTransfers:
    def transfer(self, payee, amount):
        raise TransferError("node unavailable")

    def token_transfer(self, token_id, payee, amount, memo):
        raise TransferError("node unavailable")


class TestPaymentFlow:
    def test_successful_payment(self, world, clock, transfers, daily_sub):
        subscription_id, key = daily_sub
        clock.advance(DAY)

        result = _pay(world, key, subscription_id)

        assert result.success
        assert result.amount == 100
        assert result.timestamp == START + DAY
        assert result.transfer_id.startswith("dry-run-")
        sub = world.get_subscription(subscription_id)
        assert sub.payments_made == 1
        assert sub.next_payment_date == START + 2 * DAY
        assert sub.updated_at == START + DAY
        assert [(i.payee, i.amount, i.token_id) for i in transfers.instructions] == [(MERCHANT, 100, None)]

    def test_not_due(self, world, transfers, daily_sub):
        subscription_id, key = daily_sub
        result = _pay(world, key, subscription_id)

        assert not result.success
        assert result.code == RejectionCode.NOT_DUE
        assert world.get_subscription(subscription_id).payments_made == 0
        assert transfers.instructions == []

    def test_due_boundary_is_inclusive(self, world, clock, daily_sub):
        subscription_id, key = daily_sub
        clock.advance(DAY - 1)
        assert _pay(world, key, subscription_id).code == RejectionCode.NOT_DUE
        clock.advance(1)
        assert _pay(world, key, subscription_id).success

    def test_second_call_same_cycle_rejected(self, world, clock, transfers, daily_sub):
        subscription_id, key = daily_sub
        clock.advance(DAY)
        assert _pay(world, key, subscription_id).success
        again = _pay(world, key, subscription_id)
        assert again.code == RejectionCode.NOT_DUE
        assert len(transfers.instructions) == 1

    def test_late_payment_counts_from_processing_time(self, world, clock, daily_sub):
        subscription_id, key = daily_sub
        clock.advance(3 * DAY)
        assert _pay(world, key, subscription_id).success
        # One payment, not three; the next cycle starts now.
        sub = world.get_subscription(subscription_id)
        assert sub.payments_made == 1
        assert sub.next_payment_date == START + 4 * DAY

    def test_anchor_to_due_date(self, transfers, quoting_key):
        clock = FixedClock(START)
        engine = SubscriptionEngine(
            EngineState(owner=OWNER),
            verifier=SignedQuoteVerifier(),
            transfers=transfers,
            clock=clock,
            anchor_to_due_date=True,
        )
        private_key, anchor = quoting_key
        engine.approve_codehash(Caller(OWNER), CODEHASH)
        engine.register_merchant(Caller(OWNER), MERCHANT)
        engine.register_worker(Caller(WORKER), issue_quote(private_key, CODEHASH, START), anchor, "s", CODEHASH)
        subscription_id, key = _subscribe(engine)

        clock.advance(3 * DAY)
        assert _pay(engine, key, subscription_id).success
        assert engine.get_subscription(subscription_id).next_payment_date == START + 2 * DAY


class TestKeyAuthorization:
    def test_unregistered_key(self, world, clock, transfers, daily_sub):
        subscription_id, _ = daily_sub
        clock.advance(DAY)
        result = _pay(world, generate_delegated_key(), subscription_id)

        assert not result.success
        assert result.code == RejectionCode.UNAUTHORIZED_KEY
        assert result.amount == 0
        assert transfers.instructions == []

    def test_key_for_other_subscription(self, world, clock, transfers, daily_sub):
        subscription_id, _ = daily_sub
        _, other_key = _subscribe(world)
        clock.advance(DAY)

        result = _pay(world, other_key, subscription_id)
        assert result.code == RejectionCode.UNAUTHORIZED_KEY
        assert world.get_subscription(subscription_id).payments_made == 0

    def test_no_key_presented(self, world, clock, daily_sub):
        subscription_id, _ = daily_sub
        clock.advance(DAY)
        result = world.process_payment(Caller(WORKER), subscription_id)
        assert result.code == RejectionCode.UNAUTHORIZED_KEY

    def test_rebound_key_loses_old_subscription(self, world, clock, daily_sub):
        subscription_id, key = daily_sub
        other_id, _ = _subscribe(world)
        world.register_subscription_key(Caller(PAYER), key.public_key, other_id)
        clock.advance(DAY)

        assert _pay(world, key, subscription_id).code == RejectionCode.UNAUTHORIZED_KEY
        assert _pay(world, key, other_id).success


class TestSignedPayment:
    def test_signature_proves_key(self, world, clock, transfers, daily_sub):
        subscription_id, key = daily_sub
        clock.advance(DAY)
        signature = sign_payment_request(key, subscription_id, clock.now())

        result = world.process_signed_payment(WORKER, subscription_id, clock.now(), signature)
        assert result.success
        assert len(transfers.instructions) == 1

    def test_signature_for_other_subscription_rejected(self, world, clock, transfers, daily_sub):
        subscription_id, key = daily_sub
        clock.advance(DAY)
        signature = sign_payment_request(key, "sub-other", clock.now())

        result = world.process_signed_payment(WORKER, subscription_id, clock.now(), signature)
        assert result.code == RejectionCode.UNAUTHORIZED_KEY
        assert transfers.instructions == []

    def test_stale_signature_raises(self, world, clock, daily_sub):
        subscription_id, key = daily_sub
        signed_at = clock.now()
        signature = sign_payment_request(key, subscription_id, signed_at)
        clock.advance(DAY)

        with pytest.raises(UnauthorizedError, match="timestamp"):
            world.process_signed_payment(WORKER, subscription_id, signed_at, signature)
        assert world.get_subscription(subscription_id).payments_made == 0


class TestFatalErrors:
    def test_unapproved_worker_raises(self, world, clock, daily_sub):
        subscription_id, key = daily_sub
        world.state.approved_codehashes.clear()
        clock.advance(DAY)
        with pytest.raises(UnauthorizedError, match="Not an approved worker"):
            _pay(world, key, subscription_id)

    def test_unknown_worker_raises(self, world, clock, daily_sub):
        subscription_id, key = daily_sub
        clock.advance(DAY)
        with pytest.raises(NotFoundError):
            world.process_payment(Caller(PAYER, public_key=key.public_key), subscription_id)

    def test_key_bound_to_deleted_subscription_raises(self, world, daily_sub):
        subscription_id, key = daily_sub
        del world.state.subscriptions[subscription_id]
        with pytest.raises(NotFoundError):
            _pay(world, key, subscription_id)


class TestLifecycleRejections:
    def test_paused(self, world, clock, daily_sub):
        subscription_id, key = daily_sub
        world.pause_subscription(Caller(PAYER), subscription_id)
        clock.advance(DAY)
        result = _pay(world, key, subscription_id)
        assert result.code == RejectionCode.NOT_ACTIVE
        assert "paused" in result.error

    def test_resume_pays_immediately_when_overdue(self, world, clock, daily_sub):
        subscription_id, key = daily_sub
        world.pause_subscription(Caller(PAYER), subscription_id)
        clock.advance(5 * DAY)
        world.resume_subscription(Caller(PAYER), subscription_id)
        assert _pay(world, key, subscription_id).success

    def test_canceled(self, world, clock, transfers, daily_sub):
        subscription_id, key = daily_sub
        world.cancel_subscription(Caller(PAYER), subscription_id)
        clock.advance(DAY)
        assert _pay(world, key, subscription_id).code == RejectionCode.NOT_ACTIVE
        assert transfers.instructions == []

    def test_max_payments_cancels_after_last_payment(self, world, clock, transfers):
        subscription_id, key = _subscribe(world, max_payments=2)

        clock.advance(DAY)
        assert _pay(world, key, subscription_id).success
        clock.advance(DAY)
        assert _pay(world, key, subscription_id).success

        sub = world.get_subscription(subscription_id)
        assert sub.payments_made == 2
        assert sub.status == SubscriptionStatus.CANCELED

        clock.advance(DAY)
        result = _pay(world, key, subscription_id)
        assert result.code == RejectionCode.NOT_ACTIVE
        assert len(transfers.instructions) == 2

    def test_exhausted_active_record_is_canceled(self, world, clock, transfers, daily_sub):
        subscription_id, key = daily_sub
        stored = world.state.subscriptions[subscription_id]
        stored.max_payments = 1
        stored.payments_made = 1
        clock.advance(DAY)

        result = _pay(world, key, subscription_id)
        assert result.code == RejectionCode.LIMIT_EXCEEDED
        assert world.get_subscription(subscription_id).status == SubscriptionStatus.CANCELED
        assert transfers.instructions == []

    def test_end_date_cancels_without_paying(self, world, clock, transfers):
        subscription_id, key = _subscribe(world, end_date=START + DAY + 10)

        clock.advance(DAY)
        assert _pay(world, key, subscription_id).success

        clock.advance(DAY)
        result = _pay(world, key, subscription_id)
        assert not result.success
        assert result.code == RejectionCode.EXPIRED
        assert world.get_subscription(subscription_id).status == SubscriptionStatus.CANCELED
        assert len(transfers.instructions) == 1


class TestDispatch:
    def test_token_payment(self, world, clock, transfers):
        subscription_id, key = _subscribe(world, payment_method=PaymentMethod.token("usdc.near"))
        clock.advance(DAY)

        assert _pay(world, key, subscription_id).success
        instruction = transfers.instructions[0]
        assert instruction.token_id == "usdc.near"
        assert instruction.payee == MERCHANT
        assert instruction.memo == f"subscription:{subscription_id}"
        assert world.get_subscription(subscription_id).payments_made == 1

    def test_dispatch_failure_leaves_state(self, world, clock, daily_sub):
        subscription_id, key = daily_sub
        world.processor.transfers = FailingTransfers()
        clock.advance(DAY)

        result = _pay(world, key, subscription_id)
        assert result.code == RejectionCode.DISPATCH_FAILED
        assert "node unavailable" in result.error
        sub = world.get_subscription(subscription_id)
        assert sub.payments_made == 0
        assert sub.next_payment_date == START + DAY

    def test_payment_audit_trail(self, world, clock, audit, daily_sub):
        subscription_id, key = daily_sub
        _pay(world, key, subscription_id)
        clock.advance(DAY)
        _pay(world, key, subscription_id)

        types = [e.event_type for e in audit.read_events(subscription_id=subscription_id)]
        assert types[-3:] == [
            EventType.PAYMENT_REJECTED.value,
            EventType.PAYMENT_INITIATED.value,
            EventType.PAYMENT_COMPLETED.value,
        ]

    def test_result_to_dict(self, world, clock, daily_sub):
        subscription_id, key = daily_sub
        clock.advance(DAY)
        payload = _pay(world, key, subscription_id).to_dict()
        assert payload["amount"] == "100"
        assert payload["code"] is None
        assert payload["success"] is True
