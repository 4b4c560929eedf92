"""
Core entities and service results.

These are the in-process types the dispatch core passes around; the HTTP
request/response bodies in schemas.py map onto them.
"""
import uuid
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

from app.errors import ErrorDetail


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:16]}"


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class RideStatus(str, Enum):
    pending = "pending"
    accepted = "accepted"
    confirmed = "confirmed"
    arriving = "arriving"
    arrived = "arrived"
    in_progress = "in_progress"
    completed = "completed"
    cancelled = "cancelled"


TERMINAL_STATUSES = frozenset({RideStatus.completed, RideStatus.cancelled})


class DriverStatus(str, Enum):
    offline = "offline"
    online = "online"
    en_route = "en_route"
    in_ride = "in_ride"
    on_break = "break"


class VehicleType(str, Enum):
    sedan = "sedan"
    suv = "suv"
    luxury = "luxury"
    electric = "electric"
    motorcycle = "motorcycle"


class CancellationOrigin(str, Enum):
    rider = "rider"
    driver_cancelled = "driver_cancelled"
    system = "system"


class TransactionKind(str, Enum):
    capture = "capture"
    tip = "tip"
    refund = "refund"


class TransactionStatus(str, Enum):
    pending = "pending"
    succeeded = "succeeded"
    failed = "failed"


# ---------------------------------------------------------------------------
# Entities
# ---------------------------------------------------------------------------

class Location(BaseModel):
    lat: float
    lon: float
    address: str = ""

    def is_valid(self) -> bool:
        return -90 <= self.lat <= 90 and -180 <= self.lon <= 180 and bool(self.address.strip())


class Vehicle(BaseModel):
    type: VehicleType
    capacity: int = 4
    make: str = ""
    model: str = ""
    license_plate: str = ""
    wheelchair_accessible: bool = False
    child_seat: bool = False
    pet_friendly: bool = False
    extra_luggage: bool = False


class Driver(BaseModel):
    id: str
    name: str = ""
    rating: float = Field(5.0, ge=0, le=5)
    completed_rides: int = Field(0, ge=0)
    acceptance_rate: float = Field(1.0, ge=0, le=1)
    current_location: Location
    vehicle: Vehicle
    status: DriverStatus = DriverStatus.offline
    is_verified: bool = False
    background_check_passed: bool = False
    insurance_verified: bool = False
    gender: Optional[str] = None
    rejection_count: int = 0

    @property
    def fully_verified(self) -> bool:
        return self.is_verified and self.background_check_passed and self.insurance_verified

    @property
    def is_dispatchable(self) -> bool:
        return self.status == DriverStatus.online and self.fully_verified


class SpecialRequirements(BaseModel):
    wheelchair_accessible: bool = False
    child_seat: bool = False
    pet_friendly: bool = False
    extra_luggage: bool = False


class RiderPreferences(BaseModel):
    avoid_driver: Optional[str] = None
    female_driver_only: bool = False
    high_rated_only: bool = False


class RideRequest(BaseModel):
    model_config = {"frozen": True}

    id: str = Field(default_factory=lambda: new_id("req"))
    pickup: Location
    destination: Location
    ride_option_id: str
    passenger_count: int = 1
    special_requirements: Optional[SpecialRequirements] = None
    preferences: Optional[RiderPreferences] = None
    scheduled_time: Optional[datetime] = None


class RideOption(BaseModel):
    id: str
    name: str
    vehicle_types: list[VehicleType]
    preferred_vehicle: VehicleType
    capacity: int
    price_multiplier: float = 1.0
    default_wait_minutes: int = 10


class FareBreakdown(BaseModel):
    base: Decimal
    distance_fare: Decimal
    time_fare: Decimal
    surge_fare: Decimal
    tolls: Decimal
    tip: Decimal
    tax: Decimal
    total: Decimal
    currency: str = "USD"


class DriverMatch(BaseModel):
    driver: Driver
    score: float
    distance_meters: float
    estimated_arrival_seconds: float
    reasons: list[str] = []
    drawbacks: list[str] = []
    confidence: float


class AlternativeTier(BaseModel):
    ride_option_id: str
    estimated_wait_seconds: float
    price_multiplier: float
    drivers_available: int = 0


class Ride(BaseModel):
    id: str = Field(default_factory=lambda: new_id("ride"))
    rider_id: str
    driver_id: Optional[str] = None
    pickup: Location
    destination: Location
    ride_option_id: str
    passenger_count: int = 1
    status: RideStatus = RideStatus.pending
    pricing: FareBreakdown
    surge_multiplier: float = 1.0
    estimated_duration_sec: float
    estimated_distance_meters: float
    created_at: datetime
    confirmed_at: Optional[datetime] = None
    arriving_at: Optional[datetime] = None
    arrived_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    cancellation_reason: Optional[str] = None
    cancelled_by: Optional[CancellationOrigin] = None
    cancellation_fee: Optional[Decimal] = None
    replaces_ride_id: Optional[str] = None
    version: int = 0

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class FailureReason(BaseModel):
    type: str
    code: str
    message: str = ""
    user_friendly_message: str
    is_retryable: bool
    requires_user_action: bool = True


class SuggestedAction(BaseModel):
    type: str
    label: str
    priority: str = "high"


class PaymentTransaction(BaseModel):
    id: str = Field(default_factory=lambda: new_id("txn"))
    ride_id: str
    rider_id: str
    idempotency_key: str
    kind: TransactionKind = TransactionKind.capture
    amount: Decimal
    currency: str = "USD"
    status: TransactionStatus = TransactionStatus.pending
    failure_reason: Optional[FailureReason] = None
    provider_transaction_id: Optional[str] = None
    parent_transaction_id: Optional[str] = None
    created_at: datetime
    updated_at: Optional[datetime] = None


class RideEvent(BaseModel):
    type: str = "ride.status_changed"
    ride_id: str
    from_status: Optional[RideStatus] = None
    to_status: RideStatus
    timestamp: datetime


class Receipt(BaseModel):
    ride_id: str
    rider_id: str
    driver_id: Optional[str] = None
    transaction_id: str
    pricing: FareBreakdown
    pickup_address: str
    destination_address: str
    distance_meters: float
    duration_seconds: float
    issued_at: datetime


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------

class MatchResult(BaseModel):
    success: bool
    best: Optional[DriverMatch] = None
    alternatives: list[DriverMatch] = []
    alternative_tiers: list[AlternativeTier] = []
    drivers_considered: int = 0
    error: Optional[ErrorDetail] = None


class RideResult(BaseModel):
    success: bool
    ride: Optional[Ride] = None
    cancellation_fee: Optional[Decimal] = None
    error: Optional[ErrorDetail] = None


class BookingResult(BaseModel):
    success: bool
    ride: Optional[Ride] = None
    match: Optional[DriverMatch] = None
    alternative_tiers: list[AlternativeTier] = []
    error: Optional[ErrorDetail] = None


class CancellationResult(BaseModel):
    success: bool
    ride: Optional[Ride] = None
    cancellation_fee: Optional[Decimal] = None
    replacement: Optional[BookingResult] = None
    error: Optional[ErrorDetail] = None


class PaymentResult(BaseModel):
    success: bool
    transaction_id: Optional[str] = None
    status: Optional[TransactionStatus] = None
    amount: Optional[Decimal] = None
    currency: Optional[str] = None
    replayed: bool = False
    retry_available: bool = False
    failure_reason: Optional[FailureReason] = None
    suggested_actions: list[SuggestedAction] = []
    reset_at: Optional[datetime] = None
    error: Optional[ErrorDetail] = None


class OptionEstimate(BaseModel):
    ride_option_id: str
    name: str
    capacity: int
    pricing: FareBreakdown


class EstimateResult(BaseModel):
    success: bool
    distance_meters: Optional[float] = None
    duration_minutes: Optional[int] = None
    surge_multiplier: float = 1.0
    options: list[OptionEstimate] = []
    error: Optional[ErrorDetail] = None


class CompletionResult(BaseModel):
    success: bool
    ride: Optional[Ride] = None
    payment: Optional[PaymentResult] = None
    receipt: Optional[Receipt] = None
    error: Optional[ErrorDetail] = None
