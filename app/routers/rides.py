"""
Rides router: POST /v1/rides/estimate, POST /v1/rides/book, GET /v1/rides/{id},
               POST /v1/rides/{id}/cancel,
               POST /v1/rides/{id}/{arriving|arrived|start|complete} (driver)
"""
import logging

from fastapi import APIRouter, Depends, Header, status

from app.dependencies import ServiceContainer, get_container, result_response
from app.errors import ErrorCode, error_detail
from app.middleware.auth import DRIVER_ROLE, get_current_driver, get_current_principal, get_current_rider
from app.schemas.domain import CancellationOrigin, RideResult
from app.schemas.schemas import (
    CancelRideRequest, CompleteRideRequest, RideBookRequest, RideEstimateRequest,
)

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/v1/rides", tags=["Rides"])


def _not_found(ride_id: str) -> RideResult:
    return RideResult(success=False, error=error_detail(ErrorCode.RIDE_NOT_FOUND, f"Ride {ride_id} not found"))


@router.post("/estimate")
async def estimate_ride(
    payload: RideEstimateRequest,
    services: ServiceContainer = Depends(get_container),
    rider_id: str = Depends(get_current_rider),
):
    """Fare quote for every ride option that fits the party."""
    result = await services.dispatch.estimate(payload.to_request(), payload.surge_multiplier)
    return result_response(result)


@router.post("/book", status_code=status.HTTP_201_CREATED)
async def book_ride(
    payload: RideBookRequest,
    services: ServiceContainer = Depends(get_container),
    rider_id: str = Depends(get_current_rider),
):
    """
    Match, claim a driver and create the ride (auto-confirmed).
    - One active ride per rider: a second booking is rejected with ACTIVE_RIDE_EXISTS.
    - No drivers: 503 with alternative ride options.
    """
    result = await services.dispatch.book(
        rider_id,
        payload.to_request(),
        surge_multiplier=payload.surge_multiplier,
        tolls=payload.tolls,
        tip=payload.tip,
    )
    return result_response(result, status.HTTP_201_CREATED)


@router.get("/{ride_id}")
async def get_ride(
    ride_id: str,
    services: ServiceContainer = Depends(get_container),
    principal: tuple[str, str] = Depends(get_current_principal),
):
    subject, role = principal
    result = await services.dispatch.get_ride(ride_id)
    if result.success:
        owner = result.ride.driver_id if role == DRIVER_ROLE else result.ride.rider_id
        if subject != owner:
            # Other people's rides look exactly like missing ones.
            result = _not_found(ride_id)
    return result_response(result)


@router.post("/{ride_id}/cancel")
async def cancel_ride(
    ride_id: str,
    payload: CancelRideRequest,
    services: ServiceContainer = Depends(get_container),
    principal: tuple[str, str] = Depends(get_current_principal),
):
    """
    Riders pay the cancellation fee for the ride's current status.
    A driver cancelling is free for the rider and triggers re-dispatch.
    """
    subject, role = principal
    if role == DRIVER_ROLE:
        result = await services.dispatch.cancel_ride(
            ride_id, payload.reason, CancellationOrigin.driver_cancelled, driver_id=subject
        )
        return result_response(result)

    current = await services.dispatch.get_ride(ride_id)
    if not current.success or current.ride.rider_id != subject:
        return result_response(_not_found(ride_id))
    result = await services.dispatch.cancel_ride(ride_id, payload.reason, CancellationOrigin.rider)
    return result_response(result)


# ---------------------------------------------------------------------------
# Driver-reported progress
# ---------------------------------------------------------------------------

@router.post("/{ride_id}/arriving")
async def mark_arriving(
    ride_id: str,
    services: ServiceContainer = Depends(get_container),
    driver_id: str = Depends(get_current_driver),
):
    return result_response(await services.dispatch.mark_arriving(ride_id, driver_id))


@router.post("/{ride_id}/arrived")
async def mark_arrived(
    ride_id: str,
    services: ServiceContainer = Depends(get_container),
    driver_id: str = Depends(get_current_driver),
):
    return result_response(await services.dispatch.mark_arrived(ride_id, driver_id))


@router.post("/{ride_id}/start")
async def start_ride(
    ride_id: str,
    services: ServiceContainer = Depends(get_container),
    driver_id: str = Depends(get_current_driver),
):
    return result_response(await services.dispatch.mark_in_progress(ride_id, driver_id))


@router.post("/{ride_id}/complete")
async def complete_ride(
    ride_id: str,
    payload: CompleteRideRequest,
    services: ServiceContainer = Depends(get_container),
    driver_id: str = Depends(get_current_driver),
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
):
    """
    End the trip. With a payment method the fare is captured immediately and a
    receipt returned; a declined capture leaves the ride completed and
    retryable through /v1/payments/capture.
    """
    result = await services.dispatch.complete_ride(
        ride_id,
        payment_method_id=payload.payment_method_id,
        idempotency_key=idempotency_key,
        driver_id=driver_id,
        actual_distance_km=payload.actual_distance_km,
        actual_duration_minutes=payload.actual_duration_minutes,
    )
    return result_response(result)
