import asyncio
from typing import Optional

from app.errors import DispatchError, ErrorCode
from app.repositories.base import RideRepository
from app.schemas.domain import PaymentTransaction, Ride


class InMemoryRideRepository(RideRepository):
    """Dict-backed store for development and tests. Returns copies, never shared objects."""

    def __init__(self) -> None:
        self._rides: dict[str, Ride] = {}
        self._transactions: dict[str, PaymentTransaction] = {}
        self._lock = asyncio.Lock()

    async def get(self, ride_id: str) -> Optional[Ride]:
        ride = self._rides.get(ride_id)
        return ride.model_copy(deep=True) if ride else None

    async def put(self, ride: Ride) -> Ride:
        async with self._lock:
            stored = self._rides.get(ride.id)
            current = stored.version if stored else 0
            if ride.version != current:
                raise DispatchError(
                    ErrorCode.VERSION_CONFLICT,
                    f"Ride {ride.id} is at version {current}, write was based on {ride.version}",
                )
            saved = ride.model_copy(deep=True, update={"version": current + 1})
            self._rides[ride.id] = saved
            return saved.model_copy(deep=True)

    async def find_active_ride(self, rider_id: str) -> Optional[Ride]:
        for ride in self._rides.values():
            if ride.rider_id == rider_id and not ride.is_terminal:
                return ride.model_copy(deep=True)
        return None

    async def list_rides(self, rider_id: str) -> list[Ride]:
        rides = [r.model_copy(deep=True) for r in self._rides.values() if r.rider_id == rider_id]
        return sorted(rides, key=lambda r: r.created_at, reverse=True)

    async def insert_transaction(self, tx: PaymentTransaction) -> bool:
        async with self._lock:
            if any(
                t.ride_id == tx.ride_id and t.idempotency_key == tx.idempotency_key
                for t in self._transactions.values()
            ):
                return False
            self._transactions[tx.id] = tx.model_copy(deep=True)
            return True

    async def update_transaction(self, tx: PaymentTransaction) -> None:
        async with self._lock:
            if tx.id not in self._transactions:
                raise DispatchError(ErrorCode.PAYMENT_NOT_FOUND, f"Transaction {tx.id} not found")
            self._transactions[tx.id] = tx.model_copy(deep=True)

    async def find_transaction(self, ride_id: str, idempotency_key: str) -> Optional[PaymentTransaction]:
        for tx in self._transactions.values():
            if tx.ride_id == ride_id and tx.idempotency_key == idempotency_key:
                return tx.model_copy(deep=True)
        return None

    async def get_transaction(self, transaction_id: str) -> Optional[PaymentTransaction]:
        tx = self._transactions.get(transaction_id)
        return tx.model_copy(deep=True) if tx else None

    async def list_transactions(self, ride_id: str) -> list[PaymentTransaction]:
        txs = [t.model_copy(deep=True) for t in self._transactions.values() if t.ride_id == ride_id]
        return sorted(txs, key=lambda t: t.created_at)
