"""
Persistence contract for rides and payment transactions.

`put` is versioned: the ride must carry the version that was read, otherwise
VERSION_CONFLICT is raised and nothing is written. `insert_transaction` is a
create-if-absent on (ride_id, idempotency_key).
"""
from typing import Optional

from app.schemas.domain import PaymentTransaction, Ride


class RideRepository:
    async def get(self, ride_id: str) -> Optional[Ride]:
        raise NotImplementedError

    async def put(self, ride: Ride) -> Ride:
        """Persist and return the ride with its new version."""
        raise NotImplementedError

    async def find_active_ride(self, rider_id: str) -> Optional[Ride]:
        raise NotImplementedError

    async def list_rides(self, rider_id: str) -> list[Ride]:
        raise NotImplementedError

    async def insert_transaction(self, tx: PaymentTransaction) -> bool:
        """False if a transaction with the same (ride_id, idempotency_key) exists."""
        raise NotImplementedError

    async def update_transaction(self, tx: PaymentTransaction) -> None:
        raise NotImplementedError

    async def find_transaction(self, ride_id: str, idempotency_key: str) -> Optional[PaymentTransaction]:
        raise NotImplementedError

    async def get_transaction(self, transaction_id: str) -> Optional[PaymentTransaction]:
        raise NotImplementedError

    async def list_transactions(self, ride_id: str) -> list[PaymentTransaction]:
        raise NotImplementedError
