import uuid
from datetime import datetime
from decimal import Decimal
from sqlalchemy import String, Float, Integer, Numeric, DateTime, func
from sqlalchemy.orm import Mapped, mapped_column
from app.database import Base


class Ride(Base):
    __tablename__ = "rides"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    rider_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    driver_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)

    pickup_lat: Mapped[float] = mapped_column(Float, nullable=False)
    pickup_lng: Mapped[float] = mapped_column(Float, nullable=False)
    pickup_address: Mapped[str] = mapped_column(String(500), nullable=False)
    dest_lat: Mapped[float] = mapped_column(Float, nullable=False)
    dest_lng: Mapped[float] = mapped_column(Float, nullable=False)
    dest_address: Mapped[str] = mapped_column(String(500), nullable=False)

    ride_option_id: Mapped[str] = mapped_column(String(20), nullable=False, default="standard")
    passenger_count: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    # pending | accepted | confirmed | arriving | arrived | in_progress | completed | cancelled
    status: Mapped[str] = mapped_column(String(30), nullable=False, default="pending", index=True)
    surge_multiplier: Mapped[Decimal] = mapped_column(Numeric(4, 2), default=Decimal("1.0"))

    base_fare: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    distance_fare: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    time_fare: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    surge_fare: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    tolls: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    tip: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    tax: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    total_fare: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(5), default="USD")

    estimated_duration_sec: Mapped[float] = mapped_column(Float, nullable=False)
    estimated_distance_meters: Mapped[float] = mapped_column(Float, nullable=False)

    cancellation_reason: Mapped[str | None] = mapped_column(String(500), nullable=True)
    # rider | driver_cancelled | system
    cancelled_by: Mapped[str | None] = mapped_column(String(30), nullable=True)
    cancellation_fee: Mapped[Decimal | None] = mapped_column(Numeric(10, 2), nullable=True)
    replaces_ride_id: Mapped[str | None] = mapped_column(String, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), index=True
    )
    confirmed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    arriving_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    arrived_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    # Optimistic concurrency: every write must name the version it read.
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
