"""
Ride state machine.

  pending → accepted → confirmed → arriving → arrived → in_progress → completed
  cancelled is reachable from every non-terminal state except in_progress.

Every mutation runs under the per-ride lock and is persisted with a versioned
write, so two concurrent calls on one ride can never both succeed. Driver
status follows the ride, and each transition emits a ride.status_changed
event on a best-effort basis.
"""
import logging
from datetime import datetime
from decimal import Decimal
from typing import Callable, Optional

from app.errors import DispatchError, ErrorCode
from app.repositories.base import RideRepository
from app.schemas.domain import (
    CancellationOrigin,
    DriverMatch,
    DriverStatus,
    FareBreakdown,
    Ride,
    RideEvent,
    RideRequest,
    RideResult,
    RideStatus,
)
from app.services.clock import utcnow
from app.services.driver_pool import DriverPool
from app.services.events import EventSink, LoggingEventSink, emit_safely
from app.services.locks import KeyedLock
from app.services.pricing import RIDE_OPTIONS, ZERO, FareCalculator

logger = logging.getLogger(__name__)

VALID_TRANSITIONS: dict[RideStatus, set[RideStatus]] = {
    RideStatus.pending: {RideStatus.accepted, RideStatus.confirmed, RideStatus.cancelled},
    RideStatus.accepted: {RideStatus.confirmed, RideStatus.cancelled},
    RideStatus.confirmed: {RideStatus.arriving, RideStatus.cancelled},
    RideStatus.arriving: {RideStatus.arrived, RideStatus.cancelled},
    RideStatus.arrived: {RideStatus.in_progress, RideStatus.cancelled},
    RideStatus.in_progress: {RideStatus.completed},
    RideStatus.completed: set(),
    RideStatus.cancelled: set(),
}

CANCELLABLE_STATUSES = frozenset(
    status for status, targets in VALID_TRANSITIONS.items() if RideStatus.cancelled in targets
)

# Driver status that follows each ride status.
DRIVER_STATUS_FOR: dict[RideStatus, DriverStatus] = {
    RideStatus.arriving: DriverStatus.en_route,
    RideStatus.arrived: DriverStatus.en_route,
    RideStatus.in_progress: DriverStatus.in_ride,
    RideStatus.completed: DriverStatus.online,
    RideStatus.cancelled: DriverStatus.online,
}

# Which timestamp a transition stamps.
_STAMPS: dict[RideStatus, str] = {
    RideStatus.confirmed: "confirmed_at",
    RideStatus.arriving: "arriving_at",
    RideStatus.arrived: "arrived_at",
    RideStatus.in_progress: "started_at",
    RideStatus.completed: "completed_at",
    RideStatus.cancelled: "cancelled_at",
}


def can_transition(current: RideStatus, target: RideStatus) -> bool:
    return target in VALID_TRANSITIONS.get(current, set())


class RideLifecycle:
    def __init__(
        self,
        repository: RideRepository,
        driver_pool: DriverPool,
        fares: FareCalculator,
        events: Optional[EventSink] = None,
        locks: Optional[KeyedLock] = None,
        clock: Callable[[], datetime] = utcnow,
        event_timeout_seconds: float = 2.0,
    ):
        self.repository = repository
        self.driver_pool = driver_pool
        self.fares = fares
        self.events = events or LoggingEventSink()
        self.locks = locks or KeyedLock()
        self.clock = clock
        self.event_timeout_seconds = event_timeout_seconds

    # -----------------------------------------------------------------------
    # Creation
    # -----------------------------------------------------------------------

    async def create(
        self,
        rider_id: str,
        request: RideRequest,
        match: DriverMatch,
        pricing: FareBreakdown,
        surge_multiplier: float = 1.0,
        estimated_duration_sec: float = 0.0,
        estimated_distance_meters: float = 0.0,
        replaces_ride_id: Optional[str] = None,
    ) -> RideResult:
        """
        Persist a new ride for a driver that has already been claimed.
        Dispatch is auto-confirm, so the ride goes straight from pending to
        confirmed.
        """
        now = self.clock()
        ride = Ride(
            rider_id=rider_id,
            driver_id=match.driver.id,
            pickup=request.pickup,
            destination=request.destination,
            ride_option_id=request.ride_option_id,
            passenger_count=request.passenger_count,
            status=RideStatus.confirmed,
            pricing=pricing,
            surge_multiplier=surge_multiplier,
            estimated_duration_sec=estimated_duration_sec,
            estimated_distance_meters=estimated_distance_meters,
            created_at=now,
            confirmed_at=now,
            replaces_ride_id=replaces_ride_id,
        )
        try:
            async with self.locks.hold(ride.id):
                saved = await self.repository.put(ride)
        except DispatchError as exc:
            return RideResult(success=False, error=exc.to_detail())

        logger.info(
            "Ride created ride=%s rider=%s driver=%s total=%s",
            saved.id, rider_id, saved.driver_id, pricing.total,
        )
        await self._emit(saved.id, RideStatus.pending, RideStatus.confirmed, now)
        return RideResult(success=True, ride=saved)

    async def get(self, ride_id: str) -> RideResult:
        ride = await self.repository.get(ride_id)
        if ride is None:
            return RideResult(
                success=False,
                error=DispatchError(ErrorCode.RIDE_NOT_FOUND, f"Ride {ride_id} not found").to_detail(),
            )
        return RideResult(success=True, ride=ride)

    # -----------------------------------------------------------------------
    # Cancellation
    # -----------------------------------------------------------------------

    async def cancel(
        self,
        ride_id: str,
        reason: str = "",
        actor: CancellationOrigin = CancellationOrigin.rider,
        explicit_fee: Optional[Decimal] = None,
        driver_id: Optional[str] = None,
    ) -> RideResult:
        """
        Only riders pay cancellation fees. A driver backing out is free for
        the rider and counts against the driver.
        """
        try:
            async with self.locks.hold(ride_id):
                ride = await self._load(ride_id)
                if actor == CancellationOrigin.driver_cancelled:
                    self._check_driver(ride, driver_id)
                if ride.status not in CANCELLABLE_STATUSES:
                    raise DispatchError(
                        ErrorCode.INVALID_RIDE_STATUS,
                        f"Ride {ride_id} cannot be cancelled from {ride.status.value}",
                        {"status": ride.status.value},
                    )

                now = self.clock()
                if actor == CancellationOrigin.rider:
                    since_confirmed = (
                        (now - ride.confirmed_at).total_seconds() if ride.confirmed_at else None
                    )
                    fee = self.fares.cancellation_fee(
                        ride.status, ride.pricing.total, explicit_fee, since_confirmed
                    )
                else:
                    fee = ZERO

                previous = ride.status
                ride.status = RideStatus.cancelled
                ride.cancelled_at = now
                ride.cancellation_reason = reason or None
                ride.cancelled_by = actor
                ride.cancellation_fee = fee
                saved = await self.repository.put(ride)
        except DispatchError as exc:
            return RideResult(success=False, error=exc.to_detail())

        logger.info(
            "Ride cancelled ride=%s from=%s by=%s fee=%s",
            ride_id, previous.value, actor.value, fee,
        )
        if saved.driver_id:
            if actor == CancellationOrigin.driver_cancelled:
                await self._record_rejection(saved.driver_id)
            await self._sync_driver(saved.driver_id, RideStatus.cancelled)
        await self._emit(ride_id, previous, RideStatus.cancelled, now)
        return RideResult(success=True, ride=saved, cancellation_fee=fee)

    # -----------------------------------------------------------------------
    # Driver-driven progress
    # -----------------------------------------------------------------------

    async def mark_arriving(self, ride_id: str, driver_id: Optional[str] = None) -> RideResult:
        return await self.transition(ride_id, RideStatus.arriving, driver_id)

    async def mark_arrived(self, ride_id: str, driver_id: Optional[str] = None) -> RideResult:
        return await self.transition(ride_id, RideStatus.arrived, driver_id)

    async def mark_in_progress(self, ride_id: str, driver_id: Optional[str] = None) -> RideResult:
        return await self.transition(ride_id, RideStatus.in_progress, driver_id)

    async def mark_completed(
        self,
        ride_id: str,
        driver_id: Optional[str] = None,
        actual_distance_km: Optional[float] = None,
        actual_duration_minutes: Optional[float] = None,
    ) -> RideResult:
        """Complete the ride, re-pricing it when the actual trip is reported."""

        def reprice(ride: Ride) -> None:
            if actual_distance_km is None and actual_duration_minutes is None:
                return
            distance_km = (
                actual_distance_km if actual_distance_km is not None
                else ride.estimated_distance_meters / 1000
            )
            minutes = (
                actual_duration_minutes if actual_duration_minutes is not None
                else ride.estimated_duration_sec / 60
            )
            fares = self.fares
            option = RIDE_OPTIONS.get(ride.ride_option_id)
            if option is not None:
                fares = fares.for_option(option)
            ride.pricing = fares.estimate(
                distance_km,
                minutes,
                surge_multiplier=ride.surge_multiplier,
                tolls=ride.pricing.tolls,
                tip=ride.pricing.tip,
            )
            ride.estimated_distance_meters = distance_km * 1000
            ride.estimated_duration_sec = minutes * 60

        return await self.transition(ride_id, RideStatus.completed, driver_id, reprice)

    async def transition(
        self,
        ride_id: str,
        target: RideStatus,
        driver_id: Optional[str] = None,
        mutate: Optional[Callable[[Ride], None]] = None,
    ) -> RideResult:
        """Move a ride one step forward. Anything outside the table is INVALID_TRANSITION."""
        try:
            async with self.locks.hold(ride_id):
                ride = await self._load(ride_id)
                self._check_driver(ride, driver_id)
                previous = ride.status
                if target == RideStatus.cancelled or not can_transition(previous, target):
                    raise DispatchError(
                        ErrorCode.INVALID_TRANSITION,
                        f"Cannot move ride {ride_id} from {previous.value} to {target.value}",
                        {"from_status": previous.value, "to_status": target.value},
                    )
                if mutate is not None:
                    mutate(ride)
                now = self.clock()
                ride.status = target
                stamp = _STAMPS.get(target)
                if stamp:
                    setattr(ride, stamp, now)
                saved = await self.repository.put(ride)
        except DispatchError as exc:
            logger.info("Transition rejected ride=%s -> %s: %s", ride_id, target.value, exc.message)
            return RideResult(success=False, error=exc.to_detail())

        logger.info("Ride %s: %s -> %s", ride_id, previous.value, target.value)
        if saved.driver_id and target in DRIVER_STATUS_FOR:
            await self._sync_driver(saved.driver_id, target)
        await self._emit(ride_id, previous, target, now)
        return RideResult(success=True, ride=saved)

    # -----------------------------------------------------------------------
    # Helpers
    # -----------------------------------------------------------------------

    async def _load(self, ride_id: str) -> Ride:
        ride = await self.repository.get(ride_id)
        if ride is None:
            raise DispatchError(ErrorCode.RIDE_NOT_FOUND, f"Ride {ride_id} not found")
        return ride

    @staticmethod
    def _check_driver(ride: Ride, driver_id: Optional[str]) -> None:
        if driver_id is not None and ride.driver_id != driver_id:
            raise DispatchError(
                ErrorCode.DRIVER_NOT_ASSIGNED,
                f"Driver {driver_id} is not assigned to ride {ride.id}",
                {"driver_id": driver_id},
            )

    async def _sync_driver(self, driver_id: str, ride_status: RideStatus) -> None:
        status = DRIVER_STATUS_FOR[ride_status]
        try:
            await self.driver_pool.update_driver_status(driver_id, status)
        except Exception as exc:
            # The ride transition is already committed; the pool catches up on
            # the driver's next status update.
            logger.error("Failed to set driver=%s to %s: %s", driver_id, status.value, exc)

    async def _record_rejection(self, driver_id: str) -> None:
        try:
            count = await self.driver_pool.record_rejection(driver_id)
            logger.info("Driver %s cancelled an assigned ride (rejections=%d)", driver_id, count)
        except Exception as exc:
            logger.error("Failed to record rejection for driver=%s: %s", driver_id, exc)

    async def _emit(
        self, ride_id: str, from_status: Optional[RideStatus], to_status: RideStatus, at: datetime
    ) -> None:
        event = RideEvent(ride_id=ride_id, from_status=from_status, to_status=to_status, timestamp=at)
        await emit_safely(self.events, event, timeout=self.event_timeout_seconds)
