"""
Unit tests for ride status state machine validations.
"""
import itertools

import pytest

from app.errors import ErrorCode
from app.schemas.domain import RideStatus
from app.services.lifecycle import CANCELLABLE_STATUSES, VALID_TRANSITIONS, can_transition
from tests.factories import make_ride

ALL_PAIRS = list(itertools.product(RideStatus, RideStatus))
ILLEGAL_PAIRS = [(a, b) for a, b in ALL_PAIRS if b not in VALID_TRANSITIONS[a]]


class TestRideStateMachine:
    def test_happy_path(self):
        path = [
            RideStatus.pending, RideStatus.accepted, RideStatus.confirmed, RideStatus.arriving,
            RideStatus.arrived, RideStatus.in_progress, RideStatus.completed,
        ]
        for current, nxt in zip(path, path[1:]):
            assert can_transition(current, nxt)

    def test_pending_can_auto_confirm(self):
        assert can_transition(RideStatus.pending, RideStatus.confirmed)

    def test_completed_is_terminal(self):
        assert VALID_TRANSITIONS[RideStatus.completed] == set()

    def test_cancelled_is_terminal(self):
        assert VALID_TRANSITIONS[RideStatus.cancelled] == set()

    def test_cannot_cancel_once_in_progress(self):
        assert not can_transition(RideStatus.in_progress, RideStatus.cancelled)
        assert RideStatus.in_progress not in CANCELLABLE_STATUSES

    def test_cancellable_statuses(self):
        assert CANCELLABLE_STATUSES == {
            RideStatus.pending, RideStatus.accepted, RideStatus.confirmed,
            RideStatus.arriving, RideStatus.arrived,
        }

    def test_invalid_backward_skip(self):
        assert not can_transition(RideStatus.in_progress, RideStatus.pending)

    def test_invalid_forward_skip(self):
        assert not can_transition(RideStatus.confirmed, RideStatus.in_progress)
        assert not can_transition(RideStatus.pending, RideStatus.in_progress)


@pytest.mark.asyncio
class TestIllegalTransitions:
    @pytest.mark.parametrize("current,target", ILLEGAL_PAIRS, ids=lambda s: s.value)
    async def test_rejected_and_status_unchanged(self, services, clock, current, target):
        ride = await services.repository.put(make_ride(current, clock))

        result = await services.lifecycle.transition(ride.id, target)

        assert not result.success
        assert result.error.code == ErrorCode.INVALID_TRANSITION
        stored = await services.repository.get(ride.id)
        assert stored.status == current
        assert stored.version == ride.version
