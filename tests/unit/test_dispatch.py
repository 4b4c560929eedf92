"""
Unit tests for DispatchOrchestrator: booking, estimates, re-dispatch and
complete-then-capture, against in-memory adapters.
"""
import asyncio
from datetime import timedelta
from decimal import Decimal

import pytest

from app.config import Settings
from app.dependencies import build_services
from app.errors import DispatchError, ErrorCode
from app.repositories.memory import InMemoryRideRepository
from app.schemas.domain import CancellationOrigin, DriverStatus, Location, RideStatus, VehicleType
from app.services import geo
from app.services.driver_pool import InMemoryDriverPool
from app.services.pricing import RIDE_OPTIONS
from tests.factories import NYC_DESTINATION, NYC_PICKUP, make_driver, make_request

CARD = "pm_card_visa"


class FlakyDriverPool(InMemoryDriverPool):
    """Fails the first `failures` lookups with a connection error."""

    def __init__(self, drivers, failures: int, exc: Exception = None):
        super().__init__(drivers)
        self.failures = failures
        self.exc = exc or ConnectionError("redis connection reset")
        self.lookups = 0

    async def get_available_drivers(self, center, radius_m, vehicle_types=None):
        self.lookups += 1
        if self.lookups <= self.failures:
            raise self.exc
        return await super().get_available_drivers(center, radius_m, vehicle_types)


class SlowDriverPool(InMemoryDriverPool):
    async def get_available_drivers(self, center, radius_m, vehicle_types=None):
        await asyncio.sleep(0.5)
        return await super().get_available_drivers(center, radius_m, vehicle_types)


class ContestedDriverPool(InMemoryDriverPool):
    """Drivers in `taken` are claimed by another dispatcher just before us."""

    def __init__(self, drivers, taken):
        super().__init__(drivers)
        self.taken = set(taken)

    async def claim_driver(self, driver_id):
        if driver_id in self.taken:
            return False
        return await super().claim_driver(driver_id)


class SlowClaimPool(InMemoryDriverPool):
    """The swap lands for drivers in `slow`, but the reply arrives too late."""

    def __init__(self, drivers, slow):
        super().__init__(drivers)
        self.slow = set(slow)
        self.claims = 0

    async def claim_driver(self, driver_id):
        self.claims += 1
        claimed = await super().claim_driver(driver_id)
        if driver_id in self.slow:
            await asyncio.sleep(0.5)
        return claimed


class RebookingDriverPool(InMemoryDriverPool):
    """Runs `on_rejection` right after a driver backs out, before re-dispatch starts."""

    on_rejection = None

    async def record_rejection(self, driver_id):
        count = await super().record_rejection(driver_id)
        if self.on_rejection is not None:
            await self.on_rejection()
        return count


class RejectingRepository(InMemoryRideRepository):
    async def put(self, ride):
        raise DispatchError(ErrorCode.VERSION_CONFLICT, "storage rejected write")


def _services(settings, pool, provider, events, clock, repository=None):
    return build_services(settings, repository or InMemoryRideRepository(), pool, provider, events, clock=clock)


async def _book_and_drive(services, *steps):
    booked = await services.dispatch.book("rider_1", make_request())
    assert booked.success, booked.error
    ride_id = booked.ride.id
    for step in steps:
        result = await getattr(services.dispatch, step)(ride_id)
        assert result.success, result.error
    return ride_id


@pytest.mark.asyncio
class TestBook:
    async def test_books_nearby_driver(self, services, driver_pool, events):
        result = await services.dispatch.book("rider_1", make_request())

        assert result.success
        ride = result.ride
        assert ride.status == RideStatus.confirmed
        assert ride.driver_id == "drv_1"
        assert ride.rider_id == "rider_1"
        assert result.match.score == 155
        assert result.match.estimated_arrival_seconds == pytest.approx(216, rel=0.02)
        assert (await driver_pool.get_driver("drv_1")).status == DriverStatus.en_route
        assert len(events.events) == 1

    async def test_pricing_matches_trip(self, services):
        result = await services.dispatch.book("rider_1", make_request(), surge_multiplier=1.5, tolls="2.25")

        distance_km = geo.distance(NYC_PICKUP, NYC_DESTINATION) / 1000
        expected = services.fares.estimate(
            distance_km, geo.trip_duration_minutes(distance_km), surge_multiplier=1.5, tolls="2.25"
        )
        assert result.ride.pricing == expected
        assert result.ride.surge_multiplier == 1.5
        assert result.ride.estimated_duration_sec == 11 * 60

    async def test_option_multiplier_applied(self, settings, provider, events, clock):
        pool = InMemoryDriverPool([make_driver(vehicle_type=VehicleType.luxury)])
        services = _services(settings, pool, provider, events, clock)
        standard = await services.dispatch.estimate(make_request())
        result = await services.dispatch.book("rider_1", make_request(ride_option_id="lux"))

        assert result.success
        lux_quote = next(o for o in standard.options if o.ride_option_id == "lux")
        assert result.ride.pricing.total == lux_quote.pricing.total

    async def test_no_drivers(self, settings, provider, events, clock):
        services = _services(settings, InMemoryDriverPool(), provider, events, clock)
        result = await services.dispatch.book("rider_1", make_request())

        assert not result.success
        assert result.error.code == ErrorCode.NO_DRIVERS_AVAILABLE
        assert result.error.retryable
        assert result.alternative_tiers
        assert events.events == []

    async def test_driver_out_of_radius(self, settings, provider, events, clock):
        pool = InMemoryDriverPool([make_driver(meters_away=15_000)])
        services = _services(settings, pool, provider, events, clock)
        result = await services.dispatch.book("rider_1", make_request())
        assert result.error.code == ErrorCode.NO_DRIVERS_AVAILABLE

    async def test_rider_with_active_ride(self, settings, provider, events, clock):
        pool = InMemoryDriverPool([make_driver("drv_1"), make_driver("drv_2", meters_away=2500)])
        services = _services(settings, pool, provider, events, clock)
        first = await services.dispatch.book("rider_1", make_request())
        second = await services.dispatch.book("rider_1", make_request())

        assert first.success
        assert second.error.code == ErrorCode.ACTIVE_RIDE_EXISTS
        assert second.error.details["ride_id"] == first.ride.id
        assert (await pool.get_driver("drv_2")).status == DriverStatus.online

    async def test_concurrent_bookings_for_one_rider(self, settings, provider, events, clock):
        pool = InMemoryDriverPool([make_driver("drv_1"), make_driver("drv_2", meters_away=2500)])
        services = _services(settings, pool, provider, events, clock)

        results = await asyncio.gather(
            services.dispatch.book("rider_1", make_request()),
            services.dispatch.book("rider_1", make_request()),
        )

        assert [r.success for r in results].count(True) == 1

    async def test_two_riders_never_share_a_driver(self, services):
        results = await asyncio.gather(
            services.dispatch.book("rider_1", make_request()),
            services.dispatch.book("rider_2", make_request()),
        )
        winners = [r for r in results if r.success]
        assert len(winners) == 1
        loser = next(r for r in results if not r.success)
        assert loser.error.code == ErrorCode.NO_DRIVERS_AVAILABLE

    async def test_new_ride_after_previous_completed(self, services):
        ride_id = await _book_and_drive(
            services, "mark_arriving", "mark_arrived", "mark_in_progress"
        )
        await services.dispatch.complete_ride(ride_id)
        again = await services.dispatch.book("rider_1", make_request())
        assert again.success


@pytest.mark.asyncio
class TestValidation:
    @pytest.mark.parametrize(
        "overrides,code",
        [
            ({"pickup": Location(lat=91, lon=0, address="nowhere")}, ErrorCode.INVALID_LOCATION),
            ({"destination": Location(lat=40.7, lon=-181, address="nowhere")}, ErrorCode.INVALID_LOCATION),
            ({"pickup": Location(lat=40.7128, lon=-74.0060, address="  ")}, ErrorCode.INVALID_LOCATION),
            ({"ride_option_id": "rocket"}, ErrorCode.INVALID_RIDE_OPTION),
            ({"ride_option_id": ""}, ErrorCode.MISSING_REQUIRED_FIELDS),
            ({"passenger_count": 0}, ErrorCode.INVALID_PASSENGER_COUNT),
            ({"passenger_count": 9}, ErrorCode.INVALID_PASSENGER_COUNT),
        ],
    )
    async def test_rejected_before_dispatch(self, services, driver_pool, overrides, code):
        result = await services.dispatch.book("rider_1", make_request(**overrides))

        assert not result.success
        assert result.error.code == code
        assert (await driver_pool.get_driver("drv_1")).status == DriverStatus.online

    async def test_scheduled_in_past(self, services, clock):
        past = clock() - timedelta(minutes=5)
        result = await services.dispatch.book("rider_1", make_request(scheduled_time=past))
        assert result.error.code == ErrorCode.INVALID_SCHEDULE

    async def test_naive_schedule_treated_as_utc(self, services, clock):
        future = (clock() + timedelta(hours=1)).replace(tzinfo=None)
        services.dispatch.validate_request(make_request(scheduled_time=future))

        past = (clock() - timedelta(hours=1)).replace(tzinfo=None)
        with pytest.raises(DispatchError) as exc:
            services.dispatch.validate_request(make_request(scheduled_time=past))
        assert exc.value.code == ErrorCode.INVALID_SCHEDULE

    async def test_missing_rider(self, services):
        result = await services.dispatch.book("", make_request())
        assert result.error.code == ErrorCode.MISSING_REQUIRED_FIELDS

    async def test_surge_below_one(self, services):
        result = await services.dispatch.book("rider_1", make_request(), surge_multiplier=0.8)
        assert result.error.code == ErrorCode.INVALID_SURGE


@pytest.mark.asyncio
class TestEstimate:
    async def test_all_options_quoted(self, services):
        result = await services.dispatch.estimate(make_request())

        assert result.success
        assert result.distance_meters == pytest.approx(5_420, rel=0.02)
        assert result.duration_minutes == 11
        assert {o.ride_option_id for o in result.options} == set(RIDE_OPTIONS)
        by_id = {o.ride_option_id: o.pricing.total for o in result.options}
        assert by_id["share"] < by_id["standard"] < by_id["comfort"] < by_id["xl"] < by_id["lux"]

    async def test_only_options_that_fit_the_party(self, services):
        result = await services.dispatch.estimate(make_request(passenger_count=5))
        assert [o.ride_option_id for o in result.options] == ["xl"]

    async def test_surge_applied(self, services):
        plain = await services.dispatch.estimate(make_request())
        surged = await services.dispatch.estimate(make_request(), surge_multiplier=2.0)
        for a, b in zip(plain.options, surged.options):
            assert b.pricing.total > a.pricing.total
        assert surged.surge_multiplier == 2.0

    async def test_invalid_request(self, services):
        result = await services.dispatch.estimate(make_request(ride_option_id="rocket"))
        assert not result.success
        assert result.error.code == ErrorCode.INVALID_RIDE_OPTION


@pytest.mark.asyncio
class TestExternalFailures:
    async def test_transient_pool_error_is_retried(self, settings, provider, events, clock):
        pool = FlakyDriverPool([make_driver()], failures=2)
        services = _services(settings, pool, provider, events, clock)

        result = await services.dispatch.book("rider_1", make_request())

        assert result.success
        assert pool.lookups == 3

    async def test_pool_down(self, settings, provider, events, clock):
        pool = FlakyDriverPool([make_driver()], failures=10)
        services = _services(settings, pool, provider, events, clock)

        result = await services.dispatch.book("rider_1", make_request())

        assert result.error.code == ErrorCode.PROVIDER_UNAVAILABLE
        assert result.error.retryable
        assert result.error.details["attempts"] == settings.external_call_max_retries + 1

    async def test_pool_timeout(self, provider, events, clock):
        settings = Settings(
            _env_file=None,
            external_call_timeout_seconds=0.05,
            external_call_max_retries=1,
            external_call_backoff_seconds=0.0,
        )
        services = _services(settings, SlowDriverPool([make_driver()]), provider, events, clock)

        result = await services.dispatch.book("rider_1", make_request())

        assert result.error.code == ErrorCode.PROVIDER_TIMEOUT

    async def test_validation_errors_are_not_retried(self, settings, provider, events, clock):
        pool = FlakyDriverPool([make_driver()], failures=1, exc=ValueError("bad data"))
        services = _services(settings, pool, provider, events, clock)
        with pytest.raises(ValueError):
            await services.dispatch.book("rider_1", make_request())
        assert pool.lookups == 1

    async def test_lost_claim_falls_through_to_next_driver(self, settings, provider, events, clock):
        pool = ContestedDriverPool(
            [make_driver("drv_near", meters_away=500), make_driver("drv_far", meters_away=3000)],
            taken={"drv_near"},
        )
        services = _services(settings, pool, provider, events, clock)

        result = await services.dispatch.book("rider_1", make_request())

        assert result.success
        assert result.ride.driver_id == "drv_far"

    async def test_every_claim_lost(self, settings, provider, events, clock):
        pool = ContestedDriverPool([make_driver("drv_1")], taken={"drv_1"})
        services = _services(settings, pool, provider, events, clock)

        result = await services.dispatch.book("rider_1", make_request())

        assert result.error.code == ErrorCode.NO_DRIVERS_AVAILABLE

    async def test_timed_out_claim_is_handed_back(self, provider, events, clock):
        settings = Settings(_env_file=None, external_call_timeout_seconds=0.05, external_call_backoff_seconds=0.0)
        pool = SlowClaimPool(
            [make_driver("drv_near", meters_away=500), make_driver("drv_far", meters_away=3000)],
            slow={"drv_near"},
        )
        services = _services(settings, pool, provider, events, clock)

        result = await services.dispatch.book("rider_1", make_request())

        assert result.success
        assert result.ride.driver_id == "drv_far"
        assert pool.claims == 2
        assert (await pool.get_driver("drv_near")).status == DriverStatus.online
        assert (await pool.get_driver("drv_far")).status == DriverStatus.en_route

    async def test_only_driver_claim_times_out(self, provider, events, clock):
        settings = Settings(_env_file=None, external_call_timeout_seconds=0.05, external_call_backoff_seconds=0.0)
        pool = SlowClaimPool([make_driver("drv_1")], slow={"drv_1"})
        services = _services(settings, pool, provider, events, clock)

        result = await services.dispatch.book("rider_1", make_request())

        assert result.error.code == ErrorCode.NO_DRIVERS_AVAILABLE
        assert pool.claims == 1
        assert (await pool.get_driver("drv_1")).status == DriverStatus.online

    async def test_driver_released_when_ride_cannot_be_saved(self, settings, provider, events, clock, driver_pool):
        services = _services(settings, driver_pool, provider, events, clock, repository=RejectingRepository())

        result = await services.dispatch.book("rider_1", make_request())

        assert result.error.code == ErrorCode.VERSION_CONFLICT
        assert (await driver_pool.get_driver("drv_1")).status == DriverStatus.online


@pytest.mark.asyncio
class TestCancelRide:
    async def test_driver_cancel_redispatches(self, settings, provider, events, clock):
        pool = InMemoryDriverPool([make_driver("drv_1"), make_driver("drv_2", meters_away=3000)])
        services = _services(settings, pool, provider, events, clock)
        booked = await services.dispatch.book("rider_1", make_request())
        assert booked.ride.driver_id == "drv_1"

        result = await services.dispatch.cancel_ride(
            booked.ride.id, "vehicle issue", CancellationOrigin.driver_cancelled, driver_id="drv_1"
        )

        assert result.success
        assert result.cancellation_fee == Decimal("0.00")
        assert result.ride.status == RideStatus.cancelled
        replacement = result.replacement
        assert replacement.success
        assert replacement.ride.driver_id == "drv_2"
        assert replacement.ride.replaces_ride_id == booked.ride.id
        assert replacement.ride.pricing == booked.ride.pricing
        assert (await pool.get_driver("drv_1")).rejection_count == 1
        assert (await pool.get_driver("drv_1")).status == DriverStatus.online

    async def test_redispatch_never_reassigns_cancelling_driver(self, services, driver_pool):
        booked = await services.dispatch.book("rider_1", make_request())

        result = await services.dispatch.cancel_ride(
            booked.ride.id, "", CancellationOrigin.driver_cancelled, driver_id="drv_1"
        )

        assert result.success
        assert not result.replacement.success
        assert result.replacement.error.code == ErrorCode.NO_DRIVERS_AVAILABLE
        assert (await driver_pool.get_driver("drv_1")).status == DriverStatus.online

    async def test_rider_rebooked_before_redispatch(self, settings, provider, events, clock, repository):
        pool = RebookingDriverPool(
            [make_driver("drv_1"), make_driver("drv_2", meters_away=2000), make_driver("drv_3", meters_away=3000)]
        )
        services = _services(settings, pool, provider, events, clock, repository=repository)
        booked = await services.dispatch.book("rider_1", make_request())
        rebooked = []

        async def rider_books_again():
            rebooked.append(await services.dispatch.book("rider_1", make_request()))

        pool.on_rejection = rider_books_again
        result = await services.dispatch.cancel_ride(
            booked.ride.id, "", CancellationOrigin.driver_cancelled, driver_id="drv_1"
        )

        assert result.success
        assert rebooked[0].success
        assert not result.replacement.success
        assert result.replacement.error.code == ErrorCode.ACTIVE_RIDE_EXISTS
        assert result.replacement.error.details["ride_id"] == rebooked[0].ride.id
        active = [r for r in await repository.list_rides("rider_1") if r.status != RideStatus.cancelled]
        assert [r.id for r in active] == [rebooked[0].ride.id]
        assert (await pool.get_driver("drv_3")).status == DriverStatus.online

    async def test_cancel_racing_rebook_leaves_one_active_ride(self, settings, provider, events, clock, repository):
        pool = InMemoryDriverPool(
            [make_driver("drv_1"), make_driver("drv_2", meters_away=2000), make_driver("drv_3", meters_away=3000)]
        )
        services = _services(settings, pool, provider, events, clock, repository=repository)
        booked = await services.dispatch.book("rider_1", make_request())

        cancelled, rebook = await asyncio.gather(
            services.dispatch.cancel_ride(booked.ride.id, "", CancellationOrigin.driver_cancelled, driver_id="drv_1"),
            services.dispatch.book("rider_1", make_request()),
        )

        assert cancelled.success
        assert cancelled.replacement.success != rebook.success
        active = [r for r in await repository.list_rides("rider_1") if r.status != RideStatus.cancelled]
        assert len(active) == 1

    async def test_rider_cancel_has_no_replacement(self, services):
        booked = await services.dispatch.book("rider_1", make_request())
        result = await services.dispatch.cancel_ride(booked.ride.id, "plans changed")

        assert result.success
        assert result.replacement is None
        assert result.cancellation_fee == Decimal("2.50")

    async def test_cancel_in_progress(self, services):
        ride_id = await _book_and_drive(services, "mark_arriving", "mark_arrived", "mark_in_progress")
        result = await services.dispatch.cancel_ride(ride_id)
        assert not result.success
        assert result.error.code == ErrorCode.INVALID_RIDE_STATUS


@pytest.mark.asyncio
class TestCompleteRide:
    async def test_complete_and_capture(self, services, repository, driver_pool):
        ride_id = await _book_and_drive(services, "mark_arriving", "mark_arrived", "mark_in_progress")

        result = await services.dispatch.complete_ride(ride_id, CARD)

        assert result.success
        assert result.ride.status == RideStatus.completed
        assert result.payment.success
        assert result.payment.amount == result.ride.pricing.total
        assert result.receipt.transaction_id == result.payment.transaction_id
        assert await repository.find_transaction(ride_id, f"capture:{ride_id}") is not None
        assert (await driver_pool.get_driver("drv_1")).status == DriverStatus.online

    async def test_repeat_completion_does_not_charge_twice(self, services, provider):
        ride_id = await _book_and_drive(services, "mark_arriving", "mark_arrived", "mark_in_progress")
        await services.dispatch.complete_ride(ride_id, CARD, idempotency_key="done-1")

        again = await services.dispatch.complete_ride(ride_id, CARD, idempotency_key="done-1")

        assert not again.success
        assert again.error.code == ErrorCode.INVALID_TRANSITION
        assert provider.charge_calls == 1

    async def test_declined_capture_still_completes(self, services):
        ride_id = await _book_and_drive(services, "mark_arriving", "mark_arrived", "mark_in_progress")

        result = await services.dispatch.complete_ride(ride_id, "pm_card_declined")

        assert result.success
        assert result.ride.status == RideStatus.completed
        assert not result.payment.success
        assert result.payment.error.code == ErrorCode.PAYMENT_DECLINED
        assert result.receipt is None

        retry = await services.payments.capture(ride_id, CARD, "capture-retry")
        assert retry.success

    async def test_without_payment_method(self, services):
        ride_id = await _book_and_drive(services, "mark_arriving", "mark_arrived", "mark_in_progress")
        result = await services.dispatch.complete_ride(ride_id)
        assert result.success
        assert result.payment is None

    async def test_actual_trip_reprices(self, services):
        ride_id = await _book_and_drive(services, "mark_arriving", "mark_arrived", "mark_in_progress")
        result = await services.dispatch.complete_ride(
            ride_id, CARD, actual_distance_km=10, actual_duration_minutes=20
        )
        assert result.ride.pricing.total == Decimal("29.16")
        assert result.payment.amount == Decimal("29.16")

    async def test_cannot_complete_before_pickup(self, services):
        ride_id = await _book_and_drive(services, "mark_arriving")
        result = await services.dispatch.complete_ride(ride_id, CARD)
        assert result.error.code == ErrorCode.INVALID_TRANSITION

    async def test_wrong_driver(self, services):
        ride_id = await _book_and_drive(services, "mark_arriving", "mark_arrived", "mark_in_progress")
        result = await services.dispatch.complete_ride(ride_id, CARD, driver_id="drv_9")
        assert result.error.code == ErrorCode.DRIVER_NOT_ASSIGNED
