import redis.asyncio as aioredis
from app.config import get_settings

settings = get_settings()

_redis_pool: aioredis.Redis | None = None


async def get_redis() -> aioredis.Redis:
    global _redis_pool
    if _redis_pool is None:
        _redis_pool = aioredis.from_url(
            settings.redis_url,
            encoding="utf-8",
            decode_responses=True,
            max_connections=100,
        )
    return _redis_pool


async def close_redis() -> None:
    global _redis_pool
    if _redis_pool:
        await _redis_pool.aclose()
        _redis_pool = None


# ---------------------------------------------------------------------------
# GEO helpers (one index per vehicle type)
# ---------------------------------------------------------------------------

def geo_key(vehicle_type: str) -> str:
    return f"drivers:geo:{vehicle_type}"


async def geo_add_driver(redis: aioredis.Redis, vehicle_type: str, driver_id: str, lat: float, lng: float) -> None:
    """Add / update driver position in the geospatial index."""
    await redis.geoadd(geo_key(vehicle_type), [lng, lat, driver_id])


async def geo_remove_driver(redis: aioredis.Redis, vehicle_type: str, driver_id: str) -> None:
    """Take a driver out of the index (GEO sets are sorted sets underneath)."""
    await redis.zrem(geo_key(vehicle_type), driver_id)


async def geo_nearby_drivers(
    redis: aioredis.Redis,
    vehicle_type: str,
    lat: float,
    lng: float,
    radius_km: float,
    count: int = 50,
) -> list[str]:
    """Return up to `count` driver IDs nearest to the given coordinates."""
    results = await redis.geosearch(
        geo_key(vehicle_type),
        longitude=lng,
        latitude=lat,
        radius=radius_km,
        unit="km",
        sort="ASC",
        count=count,
    )
    return results  # type: ignore[return-value]
