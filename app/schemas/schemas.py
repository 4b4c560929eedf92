from datetime import datetime
from decimal import Decimal
from typing import Optional
from pydantic import BaseModel, Field

from app.errors import ErrorDetail
from app.schemas.domain import (
    DriverStatus,
    Location,
    RideRequest,
    RiderPreferences,
    SpecialRequirements,
    Vehicle,
)


# ---------------------------------------------------------------------------
# Ride schemas
# ---------------------------------------------------------------------------

class LocationIn(BaseModel):
    # Ranges are checked by the dispatch core so bad coordinates come back as INVALID_LOCATION.
    lat: float
    lng: float
    address: str = ""

    def to_domain(self) -> Location:
        return Location(lat=self.lat, lon=self.lng, address=self.address)


class RideEstimateRequest(BaseModel):
    pickup: LocationIn
    destination: LocationIn
    ride_option_id: str = "standard"
    passenger_count: int = 1
    surge_multiplier: float = 1.0
    special_requirements: Optional[SpecialRequirements] = None
    preferences: Optional[RiderPreferences] = None
    scheduled_time: Optional[datetime] = None

    def to_request(self) -> RideRequest:
        return RideRequest(
            pickup=self.pickup.to_domain(),
            destination=self.destination.to_domain(),
            ride_option_id=self.ride_option_id,
            passenger_count=self.passenger_count,
            special_requirements=self.special_requirements,
            preferences=self.preferences,
            scheduled_time=self.scheduled_time,
        )


class RideBookRequest(RideEstimateRequest):
    tolls: Decimal = Field(Decimal("0"), ge=0)
    tip: Decimal = Field(Decimal("0"), ge=0)


class CancelRideRequest(BaseModel):
    reason: str = Field("", max_length=500)


class CompleteRideRequest(BaseModel):
    actual_distance_km: Optional[float] = Field(None, ge=0)
    actual_duration_minutes: Optional[float] = Field(None, ge=0)
    payment_method_id: Optional[str] = None


# ---------------------------------------------------------------------------
# Driver schemas
# ---------------------------------------------------------------------------

class DriverStatusUpdateRequest(BaseModel):
    status: DriverStatus


class LocationUpdateRequest(BaseModel):
    lat: float = Field(..., ge=-90, le=90)
    lng: float = Field(..., ge=-180, le=180)
    address: str = ""
    timestamp: Optional[datetime] = None


class DriverOnboardRequest(BaseModel):
    # Verification flags, rating and status are not accepted from the driver.
    id: str
    name: str = ""
    current_location: LocationUpdateRequest
    vehicle: Vehicle
    gender: Optional[str] = None


class DriverStatusResponse(BaseModel):
    id: str
    status: DriverStatus
    lat: float
    lng: float


# ---------------------------------------------------------------------------
# Payment schemas
# ---------------------------------------------------------------------------

class CaptureRequest(BaseModel):
    ride_id: str
    payment_method_id: str


class TipRequest(BaseModel):
    ride_id: str
    amount: Decimal = Field(..., gt=0)
    payment_method_id: str


class RefundRequest(BaseModel):
    payment_id: str
    amount: Optional[Decimal] = Field(None, gt=0)
    reason: str = Field("", max_length=500)


class ErrorResponse(BaseModel):
    success: bool = False
    error: ErrorDetail
