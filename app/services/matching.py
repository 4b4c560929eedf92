"""
Driver–rider matching engine.

Flow:
  1. Drop drivers that fail hard requirements (status, verification,
     vehicle/tier, capacity, special requirements, rider preferences)
  2. Score the rest from 100 using the declarative ScoringTable
  3. Rank by score, then distance, then rating
  4. Return the best match plus the next N, or NO_DRIVERS_AVAILABLE with
     alternative tiers the rider could switch to

This is a greedy per-request ranker; it does not solve assignment across
simultaneous requests.
"""
import logging
import operator
from typing import Callable, Iterable, Literal, Optional

from pydantic import BaseModel

from app.errors import ErrorCode, error_detail
from app.schemas.domain import (
    AlternativeTier,
    Driver,
    DriverMatch,
    MatchResult,
    RideOption,
    RideRequest,
)
from app.services import geo
from app.services.pricing import RIDE_OPTIONS

logger = logging.getLogger(__name__)

HIGH_RATED_THRESHOLD = 4.5

_OPS: dict[str, Callable[[float, float], bool]] = {
    ">": operator.gt,
    ">=": operator.ge,
    "<": operator.lt,
    "<=": operator.le,
}


# ---------------------------------------------------------------------------
# Scoring table
# ---------------------------------------------------------------------------

class ScoreBand(BaseModel):
    op: Literal[">", ">=", "<", "<="]
    threshold: float
    delta: float
    note: str

    def applies(self, value: float) -> bool:
        return _OPS[self.op](value, self.threshold)


class ScoringTable(BaseModel):
    """First matching band per factor wins; a factor with no match adds nothing."""

    base_score: float = 100
    distance_meters: list[ScoreBand]
    rating: list[ScoreBand]
    acceptance_rate: list[ScoreBand]
    completed_rides: list[ScoreBand]
    vehicle_match_bonus: float = 10


DEFAULT_SCORING_TABLE = ScoringTable(
    distance_meters=[
        ScoreBand(op=">", threshold=10_000, delta=-50, note="Very far (>10km)"),
        ScoreBand(op=">", threshold=5_000, delta=-30, note="Far (>5km)"),
        ScoreBand(op=">", threshold=2_000, delta=-15, note="Moderate distance (>2km)"),
        ScoreBand(op="<=", threshold=2_000, delta=0, note="Very close (<2km)"),
    ],
    rating=[
        ScoreBand(op=">=", threshold=4.8, delta=20, note="Excellent rating"),
        ScoreBand(op=">=", threshold=4.5, delta=10, note="Good rating"),
        ScoreBand(op="<", threshold=4.0, delta=-20, note="Low rating"),
    ],
    acceptance_rate=[
        ScoreBand(op=">=", threshold=0.9, delta=15, note="High acceptance rate"),
        ScoreBand(op="<", threshold=0.7, delta=-15, note="Low acceptance rate"),
    ],
    completed_rides=[
        ScoreBand(op=">=", threshold=1000, delta=10, note="Very experienced"),
        ScoreBand(op=">=", threshold=500, delta=5, note="Experienced"),
        ScoreBand(op="<", threshold=50, delta=-5, note="New driver"),
    ],
)


# ---------------------------------------------------------------------------
# Matcher
# ---------------------------------------------------------------------------

class DriverMatcher:
    def __init__(
        self,
        table: ScoringTable = DEFAULT_SCORING_TABLE,
        ride_options: Optional[dict[str, RideOption]] = None,
        max_alternatives: int = 2,
        pickup_speed_kmh: float = 25.0,
    ):
        self.table = table
        self.ride_options = ride_options or RIDE_OPTIONS
        self.max_alternatives = max_alternatives
        self.pickup_speed_kmh = pickup_speed_kmh

    def is_eligible(self, driver: Driver, request: RideRequest, option: RideOption) -> bool:
        if not driver.is_dispatchable:
            return False
        vehicle = driver.vehicle
        if vehicle.type not in option.vehicle_types:
            return False
        if min(vehicle.capacity, option.capacity) < request.passenger_count:
            return False

        needs = request.special_requirements
        if needs:
            if needs.wheelchair_accessible and not vehicle.wheelchair_accessible:
                return False
            if needs.child_seat and not vehicle.child_seat:
                return False
            if needs.pet_friendly and not vehicle.pet_friendly:
                return False
            if needs.extra_luggage and not vehicle.extra_luggage:
                return False

        prefs = request.preferences
        if prefs:
            if prefs.avoid_driver and prefs.avoid_driver == driver.id:
                return False
            if prefs.female_driver_only and (driver.gender or "").lower() != "female":
                return False
            if prefs.high_rated_only and driver.rating < HIGH_RATED_THRESHOLD:
                return False
        return True

    def score(self, driver: Driver, request: RideRequest, option: RideOption) -> DriverMatch:
        distance_m = geo.distance(driver.current_location, request.pickup)
        score = self.table.base_score
        reasons: list[str] = []
        drawbacks: list[str] = []

        factors = (
            (self.table.distance_meters, distance_m),
            (self.table.rating, driver.rating),
            (self.table.acceptance_rate, driver.acceptance_rate),
            (self.table.completed_rides, driver.completed_rides),
        )
        for bands, value in factors:
            band = next((b for b in bands if b.applies(value)), None)
            if band is None:
                continue
            score += band.delta
            (drawbacks if band.delta < 0 else reasons).append(band.note)

        if driver.vehicle.type == option.preferred_vehicle:
            score += self.table.vehicle_match_bonus
            reasons.append("Perfect vehicle match")

        return DriverMatch(
            driver=driver,
            score=score,
            distance_meters=distance_m,
            estimated_arrival_seconds=geo.eta_seconds(distance_m, self.pickup_speed_kmh),
            reasons=reasons,
            drawbacks=drawbacks,
            confidence=max(0.0, min(1.0, score / 100)),
        )

    def rank(
        self,
        request: RideRequest,
        pool: Iterable[Driver],
        exclude_driver_ids: Iterable[str] = (),
    ) -> list[DriverMatch]:
        option = self.ride_options[request.ride_option_id]
        excluded = set(exclude_driver_ids)
        matches = [
            self.score(driver, request, option)
            for driver in pool
            if driver.id not in excluded and self.is_eligible(driver, request, option)
        ]
        matches.sort(key=lambda m: (-m.score, m.distance_meters, -m.driver.rating))
        return matches

    def match(
        self,
        request: RideRequest,
        pool: list[Driver],
        exclude_driver_ids: Iterable[str] = (),
    ) -> MatchResult:
        if request.ride_option_id not in self.ride_options:
            return MatchResult(
                success=False,
                drivers_considered=len(pool),
                error=error_detail(
                    ErrorCode.INVALID_RIDE_OPTION,
                    f"Unknown ride option {request.ride_option_id!r}",
                ),
            )

        exclude_driver_ids = list(exclude_driver_ids)
        ranked = self.rank(request, pool, exclude_driver_ids)
        if not ranked:
            logger.info(
                "No eligible drivers for request=%s option=%s (pool=%d)",
                request.id, request.ride_option_id, len(pool),
            )
            return MatchResult(
                success=False,
                drivers_considered=len(pool),
                alternative_tiers=self.alternative_tiers(request, pool, exclude_driver_ids),
                error=error_detail(
                    ErrorCode.NO_DRIVERS_AVAILABLE,
                    "No drivers available in the area",
                    ride_option_id=request.ride_option_id,
                ),
            )

        best = ranked[0]
        logger.info(
            "Best match request=%s driver=%s score=%.1f distance=%.0fm",
            request.id, best.driver.id, best.score, best.distance_meters,
        )
        return MatchResult(
            success=True,
            best=best,
            alternatives=ranked[1:1 + self.max_alternatives],
            drivers_considered=len(pool),
        )

    def alternative_tiers(
        self,
        request: RideRequest,
        pool: list[Driver],
        exclude_driver_ids: Iterable[str] = (),
    ) -> list[AlternativeTier]:
        """Other tiers the rider could switch to, quickest wait first."""
        requested = self.ride_options[request.ride_option_id]
        tiers: list[AlternativeTier] = []
        for option in self.ride_options.values():
            if option.id == requested.id or option.capacity < request.passenger_count:
                continue
            ranked = self.rank(request.model_copy(update={"ride_option_id": option.id}), pool, exclude_driver_ids)
            if ranked:
                wait = min(m.estimated_arrival_seconds for m in ranked)
            else:
                wait = option.default_wait_minutes * 60.0
            tiers.append(
                AlternativeTier(
                    ride_option_id=option.id,
                    estimated_wait_seconds=round(wait, 1),
                    price_multiplier=round(option.price_multiplier / requested.price_multiplier, 2),
                    drivers_available=len(ranked),
                )
            )
        tiers.sort(key=lambda t: (t.drivers_available == 0, t.estimated_wait_seconds))
        return tiers
