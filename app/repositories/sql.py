"""
SQLAlchemy (async) implementation of RideRepository.

Versioned writes use `UPDATE ... WHERE id = :id AND version = :read_version`;
zero affected rows means another writer got there first. The
(ride_id, idempotency_key) unique constraint makes transaction inserts a
create-if-absent.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import async_sessionmaker

from app.errors import DispatchError, ErrorCode
from app.models.payment import PaymentTransaction as TransactionRow
from app.models.ride import Ride as RideRow
from app.repositories.base import RideRepository
from app.schemas.domain import (
    TERMINAL_STATUSES,
    FailureReason,
    FareBreakdown,
    Location,
    PaymentTransaction,
    Ride,
)

logger = logging.getLogger(__name__)


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite drops tzinfo; everything we store is UTC.
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _ride_columns(ride: Ride) -> dict[str, Any]:
    p = ride.pricing
    return {
        "rider_id": ride.rider_id,
        "driver_id": ride.driver_id,
        "pickup_lat": ride.pickup.lat,
        "pickup_lng": ride.pickup.lon,
        "pickup_address": ride.pickup.address,
        "dest_lat": ride.destination.lat,
        "dest_lng": ride.destination.lon,
        "dest_address": ride.destination.address,
        "ride_option_id": ride.ride_option_id,
        "passenger_count": ride.passenger_count,
        "status": ride.status.value,
        "surge_multiplier": ride.surge_multiplier,
        "base_fare": p.base,
        "distance_fare": p.distance_fare,
        "time_fare": p.time_fare,
        "surge_fare": p.surge_fare,
        "tolls": p.tolls,
        "tip": p.tip,
        "tax": p.tax,
        "total_fare": p.total,
        "currency": p.currency,
        "estimated_duration_sec": ride.estimated_duration_sec,
        "estimated_distance_meters": ride.estimated_distance_meters,
        "cancellation_reason": ride.cancellation_reason,
        "cancelled_by": ride.cancelled_by.value if ride.cancelled_by else None,
        "cancellation_fee": ride.cancellation_fee,
        "replaces_ride_id": ride.replaces_ride_id,
        "created_at": ride.created_at,
        "confirmed_at": ride.confirmed_at,
        "arriving_at": ride.arriving_at,
        "arrived_at": ride.arrived_at,
        "started_at": ride.started_at,
        "completed_at": ride.completed_at,
        "cancelled_at": ride.cancelled_at,
    }


def _row_to_ride(row: RideRow) -> Ride:
    return Ride(
        id=row.id,
        rider_id=row.rider_id,
        driver_id=row.driver_id,
        pickup=Location(lat=row.pickup_lat, lon=row.pickup_lng, address=row.pickup_address),
        destination=Location(lat=row.dest_lat, lon=row.dest_lng, address=row.dest_address),
        ride_option_id=row.ride_option_id,
        passenger_count=row.passenger_count,
        status=row.status,
        surge_multiplier=float(row.surge_multiplier),
        pricing=FareBreakdown(
            base=row.base_fare,
            distance_fare=row.distance_fare,
            time_fare=row.time_fare,
            surge_fare=row.surge_fare,
            tolls=row.tolls,
            tip=row.tip,
            tax=row.tax,
            total=row.total_fare,
            currency=row.currency,
        ),
        estimated_duration_sec=row.estimated_duration_sec,
        estimated_distance_meters=row.estimated_distance_meters,
        cancellation_reason=row.cancellation_reason,
        cancelled_by=row.cancelled_by,
        cancellation_fee=row.cancellation_fee,
        replaces_ride_id=row.replaces_ride_id,
        created_at=_aware(row.created_at),
        confirmed_at=_aware(row.confirmed_at),
        arriving_at=_aware(row.arriving_at),
        arrived_at=_aware(row.arrived_at),
        started_at=_aware(row.started_at),
        completed_at=_aware(row.completed_at),
        cancelled_at=_aware(row.cancelled_at),
        version=row.version,
    )


def _tx_columns(tx: PaymentTransaction) -> dict[str, Any]:
    return {
        "ride_id": tx.ride_id,
        "rider_id": tx.rider_id,
        "idempotency_key": tx.idempotency_key,
        "kind": tx.kind.value,
        "amount": tx.amount,
        "currency": tx.currency,
        "status": tx.status.value,
        "failure_reason": tx.failure_reason.model_dump() if tx.failure_reason else None,
        "provider_transaction_id": tx.provider_transaction_id,
        "parent_transaction_id": tx.parent_transaction_id,
        "created_at": tx.created_at,
        "updated_at": tx.updated_at,
    }


def _row_to_tx(row: TransactionRow) -> PaymentTransaction:
    return PaymentTransaction(
        id=row.id,
        ride_id=row.ride_id,
        rider_id=row.rider_id,
        idempotency_key=row.idempotency_key,
        kind=row.kind,
        amount=row.amount,
        currency=row.currency,
        status=row.status,
        failure_reason=FailureReason(**row.failure_reason) if row.failure_reason else None,
        provider_transaction_id=row.provider_transaction_id,
        parent_transaction_id=row.parent_transaction_id,
        created_at=_aware(row.created_at),
        updated_at=_aware(row.updated_at),
    )


class SqlAlchemyRideRepository(RideRepository):
    def __init__(self, session_factory: async_sessionmaker):
        self.session_factory = session_factory

    async def get(self, ride_id: str) -> Optional[Ride]:
        async with self.session_factory() as db:
            row = await db.get(RideRow, ride_id)
            return _row_to_ride(row) if row else None

    async def put(self, ride: Ride) -> Ride:
        columns = _ride_columns(ride)
        async with self.session_factory() as db:
            if ride.version == 0:
                db.add(RideRow(id=ride.id, version=1, **columns))
                try:
                    await db.commit()
                except IntegrityError:
                    await db.rollback()
                    raise DispatchError(ErrorCode.VERSION_CONFLICT, f"Ride {ride.id} already exists")
            else:
                result = await db.execute(
                    update(RideRow)
                    .where(RideRow.id == ride.id, RideRow.version == ride.version)
                    .values(version=ride.version + 1, **columns)
                )
                if result.rowcount == 0:
                    await db.rollback()
                    raise DispatchError(
                        ErrorCode.VERSION_CONFLICT,
                        f"Ride {ride.id} changed since version {ride.version}",
                    )
                await db.commit()
        return ride.model_copy(update={"version": ride.version + 1})

    async def find_active_ride(self, rider_id: str) -> Optional[Ride]:
        terminal = [s.value for s in TERMINAL_STATUSES]
        async with self.session_factory() as db:
            result = await db.execute(
                select(RideRow)
                .where(RideRow.rider_id == rider_id, RideRow.status.not_in(terminal))
                .limit(1)
            )
            row = result.scalar_one_or_none()
            return _row_to_ride(row) if row else None

    async def list_rides(self, rider_id: str) -> list[Ride]:
        async with self.session_factory() as db:
            result = await db.execute(
                select(RideRow).where(RideRow.rider_id == rider_id).order_by(RideRow.created_at.desc())
            )
            return [_row_to_ride(row) for row in result.scalars()]

    async def insert_transaction(self, tx: PaymentTransaction) -> bool:
        async with self.session_factory() as db:
            db.add(TransactionRow(id=tx.id, **_tx_columns(tx)))
            try:
                await db.commit()
            except IntegrityError:
                await db.rollback()
                logger.info("Duplicate transaction ride=%s key=%s", tx.ride_id, tx.idempotency_key)
                return False
        return True

    async def update_transaction(self, tx: PaymentTransaction) -> None:
        async with self.session_factory() as db:
            result = await db.execute(
                update(TransactionRow).where(TransactionRow.id == tx.id).values(**_tx_columns(tx))
            )
            if result.rowcount == 0:
                await db.rollback()
                raise DispatchError(ErrorCode.PAYMENT_NOT_FOUND, f"Transaction {tx.id} not found")
            await db.commit()

    async def find_transaction(self, ride_id: str, idempotency_key: str) -> Optional[PaymentTransaction]:
        async with self.session_factory() as db:
            result = await db.execute(
                select(TransactionRow).where(
                    TransactionRow.ride_id == ride_id,
                    TransactionRow.idempotency_key == idempotency_key,
                )
            )
            row = result.scalar_one_or_none()
            return _row_to_tx(row) if row else None

    async def get_transaction(self, transaction_id: str) -> Optional[PaymentTransaction]:
        async with self.session_factory() as db:
            row = await db.get(TransactionRow, transaction_id)
            return _row_to_tx(row) if row else None

    async def list_transactions(self, ride_id: str) -> list[PaymentTransaction]:
        async with self.session_factory() as db:
            result = await db.execute(
                select(TransactionRow)
                .where(TransactionRow.ride_id == ride_id)
                .order_by(TransactionRow.created_at)
            )
            return [_row_to_tx(row) for row in result.scalars()]
