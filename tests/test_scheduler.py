"""Tests for due-subscription selection."""

import pytest

from standing.engine import Caller
from standing.errors import NotFoundError, UnauthorizedError
from standing.subscription import Frequency

from conftest import DAY, MERCHANT, PAYER, WORKER


def _create(engine, frequency=Frequency.DAILY):
    return engine.create_subscription(Caller(PAYER), MERCHANT, 10, frequency)


class TestDueSubscriptions:
    def test_nothing_due_before_first_interval(self, world):
        _create(world)
        assert world.get_due_subscriptions(Caller(WORKER), 10) == []

    def test_due_after_interval(self, world, clock):
        subscription_id = _create(world)
        clock.advance(DAY)
        due = world.get_due_subscriptions(Caller(WORKER), 10)
        assert [s.id for s in due] == [subscription_id]

    def test_storage_order_and_limit(self, world, clock):
        ids = [_create(world) for _ in range(5)]
        clock.advance(DAY)
        assert [s.id for s in world.get_due_subscriptions(Caller(WORKER), 3)] == ids[:3]
        assert world.get_due_subscriptions(Caller(WORKER), 0) == []

    def test_storage_order_not_due_order(self, world, clock):
        weekly = _create(world, Frequency.WEEKLY)
        clock.advance(DAY)
        daily = _create(world, Frequency.DAILY)
        clock.advance(7 * DAY)
        # daily fell due before weekly, but weekly was stored first.
        due = world.get_due_subscriptions(Caller(WORKER), 1)
        assert [s.id for s in due] == [weekly]
        assert [s.id for s in world.get_due_subscriptions(Caller(WORKER), 2)] == [weekly, daily]

    def test_skips_paused_and_canceled(self, world, clock):
        paused = _create(world)
        canceled = _create(world)
        active = _create(world)
        world.pause_subscription(Caller(PAYER), paused)
        world.cancel_subscription(Caller(PAYER), canceled)
        clock.advance(DAY)
        assert [s.id for s in world.get_due_subscriptions(Caller(WORKER), 10)] == [active]

    def test_negative_limit(self, world):
        with pytest.raises(ValueError):
            world.get_due_subscriptions(Caller(WORKER), -1)

    def test_unapproved_worker(self, world):
        world.state.approved_codehashes.clear()
        with pytest.raises(UnauthorizedError):
            world.get_due_subscriptions(Caller(WORKER), 10)

    def test_unknown_caller(self, world):
        with pytest.raises(NotFoundError):
            world.get_due_subscriptions(Caller(PAYER), 10)

    def test_does_not_mutate(self, world, clock):
        _create(world)
        clock.advance(DAY)
        before = world.state.to_dict()
        world.get_due_subscriptions(Caller(WORKER), 10)
        assert world.state.to_dict() == before
