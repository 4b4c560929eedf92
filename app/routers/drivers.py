"""
Drivers router: POST /v1/drivers (onboard), PATCH /v1/drivers/{id}/status,
                 POST /v1/drivers/{id}/location
"""
import logging

from fastapi import APIRouter, Depends, HTTPException, status

from app.dependencies import ServiceContainer, get_container
from app.middleware.auth import get_current_driver
from app.schemas.domain import Driver, DriverStatus, Location
from app.schemas.schemas import (
    DriverOnboardRequest,
    DriverStatusResponse,
    DriverStatusUpdateRequest,
    LocationUpdateRequest,
)

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/v1/drivers", tags=["Drivers"])

# Statuses a driver may pick for themselves; en_route / in_ride follow their rides.
SELF_SERVICE_STATUSES = {DriverStatus.online, DriverStatus.offline, DriverStatus.on_break}
BUSY_STATUSES = {DriverStatus.en_route, DriverStatus.in_ride}


def _require_self(driver_id: str, current_driver: str) -> None:
    if driver_id != current_driver:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Cannot act for another driver")


@router.post("", status_code=status.HTTP_201_CREATED, response_model=DriverStatusResponse)
async def onboard_driver(
    payload: DriverOnboardRequest,
    services: ServiceContainer = Depends(get_container),
    current_driver: str = Depends(get_current_driver),
):
    """
    Register (or re-register) the calling driver in the dispatch pool.
    New drivers start offline and unverified; re-registering keeps the
    verification, rating and status already on record.
    """
    _require_self(payload.id, current_driver)
    profile = {
        "name": payload.name,
        "current_location": Location(
            lat=payload.current_location.lat,
            lon=payload.current_location.lng,
            address=payload.current_location.address,
        ),
        "vehicle": payload.vehicle,
        "gender": payload.gender,
    }
    existing = await services.driver_pool.get_driver(payload.id)
    if existing is None:
        driver = Driver(id=payload.id, status=DriverStatus.offline, **profile)
    else:
        if existing.status in BUSY_STATUSES:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Driver is on an active ride")
        driver = existing.model_copy(update=profile)
    await services.driver_pool.upsert_driver(driver)
    logger.info(
        "Driver %s onboarded (%s, %s, verified=%s)",
        driver.id, driver.vehicle.type.value, driver.status.value, driver.fully_verified,
    )
    return DriverStatusResponse(
        id=driver.id,
        status=driver.status,
        lat=driver.current_location.lat,
        lng=driver.current_location.lon,
    )


@router.patch("/{driver_id}/status", response_model=DriverStatusResponse)
async def update_driver_status(
    driver_id: str,
    payload: DriverStatusUpdateRequest,
    services: ServiceContainer = Depends(get_container),
    current_driver: str = Depends(get_current_driver),
):
    """Go online / offline / on break. Not allowed while assigned to a ride."""
    _require_self(driver_id, current_driver)
    if payload.status not in SELF_SERVICE_STATUSES:
        valid = sorted(s.value for s in SELF_SERVICE_STATUSES)
        raise HTTPException(status_code=400, detail=f"status must be one of {valid}")

    driver = await services.driver_pool.get_driver(driver_id)
    if not driver:
        raise HTTPException(status_code=404, detail="Driver not found")
    if driver.status in BUSY_STATUSES:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Driver is on an active ride")

    await services.driver_pool.update_driver_status(driver_id, payload.status)
    return DriverStatusResponse(
        id=driver_id,
        status=payload.status,
        lat=driver.current_location.lat,
        lng=driver.current_location.lon,
    )


@router.post("/{driver_id}/location", status_code=status.HTTP_204_NO_CONTENT)
async def update_location(
    driver_id: str,
    payload: LocationUpdateRequest,
    services: ServiceContainer = Depends(get_container),
    current_driver: str = Depends(get_current_driver),
):
    """
    High-frequency endpoint. Writes straight to the pool; with the Redis pool
    an online driver's GEO entry is refreshed in the same call.
    """
    _require_self(driver_id, current_driver)
    try:
        await services.driver_pool.update_location(
            driver_id, Location(lat=payload.lat, lon=payload.lng, address=payload.address)
        )
    except KeyError:
        raise HTTPException(status_code=404, detail="Driver not found")
