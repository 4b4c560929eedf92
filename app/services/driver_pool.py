"""
Driver pool adapters.

The pool is owned by the driver-side services; the dispatch core only reads
snapshots and flips status on assignment / release.
"""
import asyncio
import logging
from typing import Iterable, Optional

import redis.asyncio as aioredis

from app.redis_client import geo_add_driver, geo_nearby_drivers, geo_remove_driver
from app.schemas.domain import Driver, DriverStatus, Location, VehicleType
from app.services import geo

logger = logging.getLogger(__name__)


class DriverPool:
    async def get_available_drivers(
        self,
        center: Location,
        radius_m: float,
        vehicle_types: Optional[Iterable[VehicleType]] = None,
    ) -> list[Driver]:
        raise NotImplementedError

    async def get_driver(self, driver_id: str) -> Optional[Driver]:
        raise NotImplementedError

    async def upsert_driver(self, driver: Driver) -> None:
        raise NotImplementedError

    async def update_driver_status(self, driver_id: str, status: DriverStatus) -> None:
        raise NotImplementedError

    async def update_location(self, driver_id: str, location: Location) -> None:
        raise NotImplementedError

    async def claim_driver(self, driver_id: str) -> bool:
        """Compare-and-swap online -> en_route. False if someone else got there first."""
        raise NotImplementedError

    async def record_rejection(self, driver_id: str) -> int:
        raise NotImplementedError


class InMemoryDriverPool(DriverPool):
    def __init__(self, drivers: Iterable[Driver] = ()):
        self._drivers: dict[str, Driver] = {d.id: d.model_copy(deep=True) for d in drivers}
        self._lock = asyncio.Lock()

    async def get_available_drivers(self, center, radius_m, vehicle_types=None):
        types = set(vehicle_types) if vehicle_types else None
        async with self._lock:
            return [
                d.model_copy(deep=True)
                for d in self._drivers.values()
                if d.status == DriverStatus.online
                and (types is None or d.vehicle.type in types)
                and geo.distance(center, d.current_location) <= radius_m
            ]

    async def get_driver(self, driver_id):
        async with self._lock:
            driver = self._drivers.get(driver_id)
            return driver.model_copy(deep=True) if driver else None

    async def upsert_driver(self, driver):
        async with self._lock:
            self._drivers[driver.id] = driver.model_copy(deep=True)

    async def update_driver_status(self, driver_id, status):
        async with self._lock:
            driver = self._drivers.get(driver_id)
            if driver is None:
                raise KeyError(driver_id)
            driver.status = status

    async def update_location(self, driver_id, location):
        async with self._lock:
            driver = self._drivers.get(driver_id)
            if driver is None:
                raise KeyError(driver_id)
            driver.current_location = location

    async def claim_driver(self, driver_id):
        async with self._lock:
            driver = self._drivers.get(driver_id)
            if driver is None or driver.status != DriverStatus.online:
                return False
            driver.status = DriverStatus.en_route
            return True

    async def record_rejection(self, driver_id):
        async with self._lock:
            driver = self._drivers.get(driver_id)
            if driver is None:
                raise KeyError(driver_id)
            driver.rejection_count += 1
            return driver.rejection_count


class RedisDriverPool(DriverPool):
    """
    Driver records live as JSON under `driver:{id}`; online drivers are also
    in a GEO index per vehicle type. Status flips take a short NX lock on the
    driver so two dispatchers cannot both claim the same driver.
    """

    LOCK_TTL_MS = 5000

    def __init__(self, redis: aioredis.Redis, max_candidates: int = 50):
        self.redis = redis
        self.max_candidates = max_candidates

    @staticmethod
    def _record_key(driver_id: str) -> str:
        return f"driver:{driver_id}"

    @staticmethod
    def _lock_key(driver_id: str) -> str:
        return f"driver:{driver_id}:lock"

    async def _save(self, driver: Driver) -> None:
        await self.redis.set(self._record_key(driver.id), driver.model_dump_json())
        loc = driver.current_location
        if driver.status == DriverStatus.online:
            await geo_add_driver(self.redis, driver.vehicle.type.value, driver.id, loc.lat, loc.lon)
        else:
            await geo_remove_driver(self.redis, driver.vehicle.type.value, driver.id)

    async def get_driver(self, driver_id):
        raw = await self.redis.get(self._record_key(driver_id))
        return Driver.model_validate_json(raw) if raw else None

    async def get_available_drivers(self, center, radius_m, vehicle_types=None):
        types = list(vehicle_types) if vehicle_types else list(VehicleType)
        ids: list[str] = []
        for vehicle_type in types:
            ids.extend(
                await geo_nearby_drivers(
                    self.redis, vehicle_type.value, center.lat, center.lon,
                    radius_km=radius_m / 1000, count=self.max_candidates,
                )
            )
        if not ids:
            return []
        raws = await self.redis.mget([self._record_key(i) for i in ids])
        drivers = [Driver.model_validate_json(raw) for raw in raws if raw]
        return [d for d in drivers if d.status == DriverStatus.online]

    async def upsert_driver(self, driver):
        await self._save(driver)

    async def _mutate(self, driver_id: str, apply) -> Optional[Driver]:
        acquired = await self.redis.set(self._lock_key(driver_id), "1", nx=True, px=self.LOCK_TTL_MS)
        if not acquired:
            return None
        try:
            driver = await self.get_driver(driver_id)
            if driver is None:
                raise KeyError(driver_id)
            if not apply(driver):
                return None
            await self._save(driver)
            return driver
        finally:
            await self.redis.delete(self._lock_key(driver_id))

    async def update_driver_status(self, driver_id, status):
        def apply(driver: Driver) -> bool:
            driver.status = status
            return True

        for _ in range(3):
            if await self._mutate(driver_id, apply):
                return
            await asyncio.sleep(0.05)
        raise TimeoutError(f"driver {driver_id} is locked")

    async def update_location(self, driver_id, location):
        def apply(driver: Driver) -> bool:
            driver.current_location = location
            return True

        await self._mutate(driver_id, apply)

    async def claim_driver(self, driver_id):
        def apply(driver: Driver) -> bool:
            if driver.status != DriverStatus.online:
                return False
            driver.status = DriverStatus.en_route
            return True

        claimed = await self._mutate(driver_id, apply)
        if claimed is None:
            logger.info("Driver %s already claimed or locked", driver_id)
        return claimed is not None

    async def record_rejection(self, driver_id):
        def apply(driver: Driver) -> bool:
            driver.rejection_count += 1
            return True

        driver = await self._mutate(driver_id, apply)
        return driver.rejection_count if driver else 0
