"""
Fare calculation and cancellation-fee policy.

All money is Decimal, rounded half-up to the cent before it is summed, so the
same inputs always produce the same breakdown.
"""
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional, Union

from pydantic import BaseModel

from app.config import Settings
from app.errors import DispatchError, ErrorCode
from app.schemas.domain import FareBreakdown, RideOption, RideStatus, VehicleType

Number = Union[int, float, str, Decimal]

CENT = Decimal("0.01")
ZERO = Decimal("0.00")


def to_decimal(value: Number) -> Decimal:
    return value if isinstance(value, Decimal) else Decimal(str(value))


def round2(value: Number) -> Decimal:
    return to_decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


# ---------------------------------------------------------------------------
# Ride options (tiers)
# ---------------------------------------------------------------------------

RIDE_OPTIONS: dict[str, RideOption] = {
    option.id: option
    for option in (
        RideOption(
            id="standard", name="Standard", capacity=4, price_multiplier=1.0, default_wait_minutes=8,
            vehicle_types=[VehicleType.sedan, VehicleType.electric, VehicleType.suv],
            preferred_vehicle=VehicleType.sedan,
        ),
        RideOption(
            id="comfort", name="Comfort", capacity=4, price_multiplier=1.3, default_wait_minutes=10,
            vehicle_types=[VehicleType.sedan, VehicleType.suv, VehicleType.luxury, VehicleType.electric],
            preferred_vehicle=VehicleType.suv,
        ),
        RideOption(
            id="xl", name="XL", capacity=6, price_multiplier=1.5, default_wait_minutes=12,
            vehicle_types=[VehicleType.suv],
            preferred_vehicle=VehicleType.suv,
        ),
        RideOption(
            id="lux", name="Lux", capacity=4, price_multiplier=2.0, default_wait_minutes=25,
            vehicle_types=[VehicleType.luxury],
            preferred_vehicle=VehicleType.luxury,
        ),
        RideOption(
            id="pulse", name="Pulse", capacity=4, price_multiplier=1.2, default_wait_minutes=15,
            vehicle_types=[VehicleType.electric],
            preferred_vehicle=VehicleType.electric,
        ),
        RideOption(
            id="share", name="Share", capacity=4, price_multiplier=0.9, default_wait_minutes=8,
            vehicle_types=[VehicleType.sedan, VehicleType.electric],
            preferred_vehicle=VehicleType.sedan,
        ),
        RideOption(
            id="moto", name="Moto", capacity=1, price_multiplier=0.8, default_wait_minutes=6,
            vehicle_types=[VehicleType.motorcycle],
            preferred_vehicle=VehicleType.motorcycle,
        ),
    )
}


class RateCard(BaseModel):
    base_fare: Decimal
    per_km_rate: Decimal
    per_minute_rate: Decimal
    currency: str = "USD"

    def scaled(self, multiplier: float) -> "RateCard":
        m = to_decimal(multiplier)
        return RateCard(
            base_fare=self.base_fare * m,
            per_km_rate=self.per_km_rate * m,
            per_minute_rate=self.per_minute_rate * m,
            currency=self.currency,
        )


# ---------------------------------------------------------------------------
# Fare calculation
# ---------------------------------------------------------------------------

class FareCalculator:
    def __init__(
        self,
        rate_card: RateCard,
        tax_rate: Number = Decimal("0.08"),
        cancellation_fees: Optional[dict[str, float]] = None,
        full_fare_statuses: Optional[list[str]] = None,
        free_cancellation_window_seconds: int = 0,
    ):
        self.rate_card = rate_card
        self.tax_rate = to_decimal(tax_rate)
        self.cancellation_fees = {
            status: round2(fee) for status, fee in (cancellation_fees or {}).items()
        }
        self.full_fare_statuses = set(full_fare_statuses or [RideStatus.in_progress.value])
        self.free_cancellation_window_seconds = free_cancellation_window_seconds

    @classmethod
    def from_settings(cls, settings: Settings) -> "FareCalculator":
        return cls(
            RateCard(
                base_fare=to_decimal(settings.base_fare),
                per_km_rate=to_decimal(settings.per_km_rate),
                per_minute_rate=to_decimal(settings.per_minute_rate),
                currency=settings.currency,
            ),
            tax_rate=settings.tax_rate,
            cancellation_fees=settings.cancellation_fees,
            full_fare_statuses=settings.cancellation_full_fare_statuses,
            free_cancellation_window_seconds=settings.free_cancellation_window_seconds,
        )

    def for_option(self, option: RideOption) -> "FareCalculator":
        """Calculator whose rates are scaled by the option's price multiplier."""
        return FareCalculator(
            self.rate_card.scaled(option.price_multiplier),
            tax_rate=self.tax_rate,
            cancellation_fees=self.cancellation_fees,
            full_fare_statuses=list(self.full_fare_statuses),
            free_cancellation_window_seconds=self.free_cancellation_window_seconds,
        )

    def estimate(
        self,
        distance_km: Number,
        duration_minutes: Number,
        surge_multiplier: Number = 1.0,
        tolls: Number = 0,
        tip: Number = 0,
        tax_rate: Optional[Number] = None,
    ) -> FareBreakdown:
        """
        base + distance + time, surge on top of that subtotal, then tolls and
        tip, then tax on everything. Surge below 1.0 is rejected.
        """
        surge = to_decimal(surge_multiplier)
        if surge < 1:
            raise DispatchError(
                ErrorCode.INVALID_SURGE,
                f"Surge multiplier must be >= 1.0, got {surge_multiplier}",
                {"surge_multiplier": str(surge_multiplier)},
            )
        rate = self.tax_rate if tax_rate is None else to_decimal(tax_rate)
        inputs = {
            "distance_km": distance_km,
            "duration_minutes": duration_minutes,
            "tolls": tolls,
            "tip": tip,
            "tax_rate": rate,
        }
        for name, value in inputs.items():
            if to_decimal(value) < 0:
                raise DispatchError(ErrorCode.INVALID_AMOUNT, f"{name} must not be negative", {name: str(value)})

        card = self.rate_card
        base = round2(card.base_fare)
        distance_fare = round2(to_decimal(distance_km) * card.per_km_rate)
        time_fare = round2(to_decimal(duration_minutes) * card.per_minute_rate)
        subtotal = base + distance_fare + time_fare

        surge_fare = round2(subtotal * (surge - 1)) if surge > 1 else ZERO
        tolls_d = round2(tolls)
        tip_d = round2(tip)

        pre_tax = round2(subtotal + surge_fare + tolls_d + tip_d)
        tax = round2(pre_tax * rate)

        return FareBreakdown(
            base=base,
            distance_fare=distance_fare,
            time_fare=time_fare,
            surge_fare=surge_fare,
            tolls=tolls_d,
            tip=tip_d,
            tax=tax,
            total=pre_tax + tax,
            currency=card.currency,
        )

    # -----------------------------------------------------------------------
    # Cancellation fees
    # -----------------------------------------------------------------------

    def cancellation_fee(
        self,
        ride_status: Union[RideStatus, str],
        ride_price: Number,
        explicit_fee: Optional[Number] = None,
        seconds_since_confirmed: Optional[float] = None,
    ) -> Decimal:
        status = RideStatus(ride_status).value
        if status == RideStatus.pending.value:
            return ZERO
        if explicit_fee is not None and to_decimal(explicit_fee) != 0:
            return round2(explicit_fee)
        if (
            self.free_cancellation_window_seconds > 0
            and status in (RideStatus.accepted.value, RideStatus.confirmed.value)
            and seconds_since_confirmed is not None
            and seconds_since_confirmed < self.free_cancellation_window_seconds
        ):
            return ZERO
        if status in self.full_fare_statuses:
            return round2(ride_price)
        return self.cancellation_fees.get(status, ZERO)
