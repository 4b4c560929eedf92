"""
Dispatch orchestration: validate → price → match → claim driver → create ride.

Also owns the cross-component flows: driver-cancelled re-dispatch and
complete-then-capture.
"""
import asyncio
import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Awaitable, Callable, Iterable, Optional

from redis.exceptions import RedisError

from app.errors import DispatchError, ErrorCode
from app.repositories.base import RideRepository
from app.schemas.domain import (
    BookingResult,
    CancellationOrigin,
    CancellationResult,
    CompletionResult,
    DriverStatus,
    EstimateResult,
    OptionEstimate,
    RideOption,
    RideRequest,
    RideResult,
)
from app.services import geo
from app.services.clock import utcnow
from app.services.driver_pool import DriverPool
from app.services.lifecycle import RideLifecycle
from app.services.locks import KeyedLock
from app.services.matching import DriverMatcher
from app.services.payment import PaymentSettlement
from app.services.pricing import RIDE_OPTIONS, FareCalculator

logger = logging.getLogger(__name__)

MIN_PASSENGERS = 1
MAX_PASSENGERS = 8

_TRANSIENT_ERRORS = (asyncio.TimeoutError, ConnectionError, RedisError)


class DispatchOrchestrator:
    def __init__(
        self,
        lifecycle: RideLifecycle,
        payments: PaymentSettlement,
        matcher: DriverMatcher,
        fares: FareCalculator,
        driver_pool: DriverPool,
        repository: RideRepository,
        locks: Optional[KeyedLock] = None,
        clock: Callable[[], datetime] = utcnow,
        ride_options: Optional[dict[str, RideOption]] = None,
        matching_radius_km: float = 10.0,
        trip_speed_kmh: float = 30.0,
        call_timeout_seconds: float = 5.0,
        max_retries: int = 2,
        backoff_seconds: float = 0.5,
    ):
        self.lifecycle = lifecycle
        self.payments = payments
        self.matcher = matcher
        self.fares = fares
        self.driver_pool = driver_pool
        self.repository = repository
        self.locks = locks or KeyedLock()
        self.clock = clock
        self.ride_options = ride_options or RIDE_OPTIONS
        self.matching_radius_km = matching_radius_km
        self.trip_speed_kmh = trip_speed_kmh
        self.call_timeout_seconds = call_timeout_seconds
        self.max_retries = max_retries
        self.backoff_seconds = backoff_seconds

    # -----------------------------------------------------------------------
    # Validation and quotes
    # -----------------------------------------------------------------------

    def validate_request(self, request: RideRequest) -> None:
        if not request.id or not request.ride_option_id:
            raise DispatchError(ErrorCode.MISSING_REQUIRED_FIELDS, "Request id and ride option are required")
        for name, location in (("pickup", request.pickup), ("destination", request.destination)):
            if not location.is_valid():
                raise DispatchError(
                    ErrorCode.INVALID_LOCATION,
                    f"Invalid {name} location",
                    {"field": name, "lat": location.lat, "lon": location.lon},
                )
        if request.ride_option_id not in self.ride_options:
            raise DispatchError(
                ErrorCode.INVALID_RIDE_OPTION,
                f"Unknown ride option {request.ride_option_id!r}",
                {"ride_option_id": request.ride_option_id},
            )
        if not MIN_PASSENGERS <= request.passenger_count <= MAX_PASSENGERS:
            raise DispatchError(
                ErrorCode.INVALID_PASSENGER_COUNT,
                f"Passenger count must be between {MIN_PASSENGERS} and {MAX_PASSENGERS}",
                {"passenger_count": request.passenger_count},
            )
        if request.scheduled_time is not None:
            scheduled = request.scheduled_time
            if scheduled.tzinfo is None:
                scheduled = scheduled.replace(tzinfo=timezone.utc)
            if scheduled <= self.clock():
                raise DispatchError(
                    ErrorCode.INVALID_SCHEDULE,
                    "Scheduled time is in the past",
                    {"scheduled_time": scheduled.isoformat()},
                )

    def _trip(self, request: RideRequest) -> tuple[float, float, int]:
        distance_m = geo.distance(request.pickup, request.destination)
        distance_km = distance_m / 1000
        return distance_m, distance_km, geo.trip_duration_minutes(distance_km, self.trip_speed_kmh)

    async def estimate(self, request: RideRequest, surge_multiplier: float = 1.0) -> EstimateResult:
        """Fare quote for every option that can seat the party."""
        try:
            self.validate_request(request)
            distance_m, distance_km, minutes = self._trip(request)
            options = [
                OptionEstimate(
                    ride_option_id=option.id,
                    name=option.name,
                    capacity=option.capacity,
                    pricing=self.fares.for_option(option).estimate(distance_km, minutes, surge_multiplier),
                )
                for option in self.ride_options.values()
                if option.capacity >= request.passenger_count
            ]
        except DispatchError as exc:
            return EstimateResult(success=False, error=exc.to_detail())
        return EstimateResult(
            success=True,
            distance_meters=round(distance_m, 1),
            duration_minutes=minutes,
            surge_multiplier=surge_multiplier,
            options=options,
        )

    # -----------------------------------------------------------------------
    # Booking
    # -----------------------------------------------------------------------

    async def book(
        self,
        rider_id: str,
        request: RideRequest,
        surge_multiplier: float = 1.0,
        tolls: Any = 0,
        tip: Any = 0,
    ) -> BookingResult:
        try:
            if not rider_id:
                raise DispatchError(ErrorCode.MISSING_REQUIRED_FIELDS, "rider_id is required")
            self.validate_request(request)
            async with self.locks.hold(f"rider:{rider_id}"):
                await self._ensure_no_active_ride(rider_id)
                return await self._dispatch(rider_id, request, surge_multiplier, tolls=tolls, tip=tip)
        except DispatchError as exc:
            return BookingResult(success=False, error=exc.to_detail())

    async def _ensure_no_active_ride(self, rider_id: str) -> None:
        """Caller holds the rider lock."""
        active = await self.repository.find_active_ride(rider_id)
        if active is not None:
            raise DispatchError(
                ErrorCode.ACTIVE_RIDE_EXISTS,
                f"Rider {rider_id} already has ride {active.id} ({active.status.value})",
                {"ride_id": active.id},
            )

    async def _dispatch(
        self,
        rider_id: str,
        request: RideRequest,
        surge_multiplier: float,
        exclude_driver_ids: Iterable[str] = (),
        replaces_ride_id: Optional[str] = None,
        tolls: Any = 0,
        tip: Any = 0,
    ) -> BookingResult:
        option = self.ride_options[request.ride_option_id]
        distance_m, distance_km, minutes = self._trip(request)
        pricing = self.fares.for_option(option).estimate(
            distance_km, minutes, surge_multiplier, tolls=tolls, tip=tip
        )

        pool = await self._call(
            "driver pool lookup",
            lambda: self.driver_pool.get_available_drivers(
                request.pickup, self.matching_radius_km * 1000, option.vehicle_types
            ),
        )
        exclude_driver_ids = list(exclude_driver_ids)
        result = self.matcher.match(request, pool, exclude_driver_ids)
        if not result.success:
            return BookingResult(success=False, alternative_tiers=result.alternative_tiers, error=result.error)

        # Another dispatcher may claim the best driver first; fall through the ranking.
        claimed = None
        for candidate in self.matcher.rank(request, pool, exclude_driver_ids):
            driver_id = candidate.driver.id
            if await self._claim(driver_id):
                claimed = candidate
                break
            logger.info("Lost claim on driver=%s for request=%s", driver_id, request.id)

        if claimed is None:
            return BookingResult(
                success=False,
                alternative_tiers=self.matcher.alternative_tiers(request, pool, exclude_driver_ids),
                error=DispatchError(
                    ErrorCode.NO_DRIVERS_AVAILABLE,
                    "Every matching driver was claimed by another request",
                    {"ride_option_id": request.ride_option_id},
                ).to_detail(),
            )

        created = await self.lifecycle.create(
            rider_id,
            request,
            claimed,
            pricing,
            surge_multiplier=surge_multiplier,
            estimated_duration_sec=minutes * 60,
            estimated_distance_meters=distance_m,
            replaces_ride_id=replaces_ride_id,
        )
        if not created.success:
            await self._release(claimed.driver.id)
            return BookingResult(success=False, error=created.error)
        return BookingResult(success=True, ride=created.ride, match=claimed)

    async def _claim(self, driver_id: str) -> bool:
        """
        One bounded online -> en_route swap, never retried. A swap that timed
        out may still have landed, so a driver left en_route is handed back.
        """
        try:
            return await asyncio.wait_for(
                self.driver_pool.claim_driver(driver_id), timeout=self.call_timeout_seconds
            )
        except _TRANSIENT_ERRORS as exc:
            logger.warning("Claim on driver=%s did not complete: %r", driver_id, exc)
        try:
            driver = await asyncio.wait_for(
                self.driver_pool.get_driver(driver_id), timeout=self.call_timeout_seconds
            )
        except _TRANSIENT_ERRORS as exc:
            logger.error("Could not read back driver=%s after failed claim: %r", driver_id, exc)
            return False
        if driver is not None and driver.status == DriverStatus.en_route:
            await self._release(driver_id)
        return False

    async def _release(self, driver_id: str) -> None:
        try:
            await self.driver_pool.update_driver_status(driver_id, DriverStatus.online)
        except Exception as exc:
            logger.error("Could not release driver=%s: %s", driver_id, exc)

    async def _call(self, what: str, call: Callable[[], Awaitable[Any]]) -> Any:
        """Bounded external call, retried with exponential backoff on transient failures."""
        for attempt in range(self.max_retries + 1):
            try:
                return await asyncio.wait_for(call(), timeout=self.call_timeout_seconds)
            except _TRANSIENT_ERRORS as exc:
                if attempt == self.max_retries:
                    logger.error("%s failed after %d attempts: %r", what, attempt + 1, exc)
                    code = (
                        ErrorCode.PROVIDER_TIMEOUT
                        if isinstance(exc, asyncio.TimeoutError)
                        else ErrorCode.PROVIDER_UNAVAILABLE
                    )
                    raise DispatchError(code, f"{what} failed", {"attempts": attempt + 1})
                wait = self.backoff_seconds * 2 ** attempt
                logger.warning("%s failed (attempt %d), retrying in %.2fs: %r", what, attempt + 1, wait, exc)
                await asyncio.sleep(wait)

    # -----------------------------------------------------------------------
    # Ride lifecycle passthroughs
    # -----------------------------------------------------------------------

    async def get_ride(self, ride_id: str) -> RideResult:
        return await self.lifecycle.get(ride_id)

    async def mark_arriving(self, ride_id: str, driver_id: Optional[str] = None) -> RideResult:
        return await self.lifecycle.mark_arriving(ride_id, driver_id)

    async def mark_arrived(self, ride_id: str, driver_id: Optional[str] = None) -> RideResult:
        return await self.lifecycle.mark_arrived(ride_id, driver_id)

    async def mark_in_progress(self, ride_id: str, driver_id: Optional[str] = None) -> RideResult:
        return await self.lifecycle.mark_in_progress(ride_id, driver_id)

    async def cancel_ride(
        self,
        ride_id: str,
        reason: str = "",
        actor: CancellationOrigin = CancellationOrigin.rider,
        explicit_fee: Optional[Decimal] = None,
        driver_id: Optional[str] = None,
    ) -> CancellationResult:
        """
        Cancel a ride. When the driver backs out, the rider is re-dispatched
        to someone else and the replacement booking is returned alongside.
        """
        cancelled = await self.lifecycle.cancel(ride_id, reason, actor, explicit_fee, driver_id)
        if not cancelled.success:
            return CancellationResult(success=False, error=cancelled.error)

        ride = cancelled.ride
        replacement = None
        if actor == CancellationOrigin.driver_cancelled:
            request = RideRequest(
                pickup=ride.pickup,
                destination=ride.destination,
                ride_option_id=ride.ride_option_id,
                passenger_count=ride.passenger_count,
            )
            exclude = [ride.driver_id] if ride.driver_id else []
            try:
                async with self.locks.hold(f"rider:{ride.rider_id}"):
                    # The rider may have booked again since the cancellation landed.
                    await self._ensure_no_active_ride(ride.rider_id)
                    replacement = await self._dispatch(
                        ride.rider_id,
                        request,
                        ride.surge_multiplier,
                        exclude_driver_ids=exclude,
                        replaces_ride_id=ride.id,
                    )
            except DispatchError as exc:
                replacement = BookingResult(success=False, error=exc.to_detail())
            if replacement.success:
                logger.info("Re-dispatched ride=%s as ride=%s", ride.id, replacement.ride.id)
            else:
                logger.warning("Re-dispatch failed for ride=%s: %s", ride.id, replacement.error.code.value)

        return CancellationResult(
            success=True,
            ride=ride,
            cancellation_fee=cancelled.cancellation_fee,
            replacement=replacement,
        )

    async def complete_ride(
        self,
        ride_id: str,
        payment_method_id: Optional[str] = None,
        idempotency_key: Optional[str] = None,
        driver_id: Optional[str] = None,
        actual_distance_km: Optional[float] = None,
        actual_duration_minutes: Optional[float] = None,
    ) -> CompletionResult:
        """
        Complete the ride, then capture payment when a payment method is
        supplied. A failed capture does not undo the completion; the payment
        result carries its own error and can be retried via capture.
        """
        completed = await self.lifecycle.mark_completed(
            ride_id, driver_id, actual_distance_km, actual_duration_minutes
        )
        if not completed.success:
            return CompletionResult(success=False, error=completed.error)
        if not payment_method_id:
            return CompletionResult(success=True, ride=completed.ride)

        payment = await self.payments.capture(ride_id, payment_method_id, idempotency_key or f"capture:{ride_id}")
        receipt = None
        if payment.success:
            try:
                receipt = await self.payments.build_receipt(ride_id)
            except DispatchError as exc:
                logger.error("Receipt failed for ride=%s: %s", ride_id, exc.message)
        return CompletionResult(success=True, ride=completed.ride, payment=payment, receipt=receipt)
