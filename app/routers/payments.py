"""
Payments router: POST /v1/payments/capture, POST /v1/payments/tips,
                  POST /v1/payments/refunds, POST /v1/payments/{id}/reconcile,
                  GET /v1/payments/rides/{ride_id}/receipt
"""
import logging

from fastapi import APIRouter, Depends, Header

from app.dependencies import ServiceContainer, get_container, result_response
from app.errors import DispatchError, ErrorCode, error_detail
from app.middleware.auth import get_current_rider
from app.schemas.domain import PaymentResult
from app.schemas.schemas import CaptureRequest, ErrorResponse, RefundRequest, TipRequest

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/v1/payments", tags=["Payments"])


async def _owns_ride(services: ServiceContainer, ride_id: str, rider_id: str) -> bool:
    ride = await services.repository.get(ride_id)
    return ride is not None and ride.rider_id == rider_id


def _ride_not_found(ride_id: str) -> PaymentResult:
    return PaymentResult(success=False, error=error_detail(ErrorCode.RIDE_NOT_FOUND, f"Ride {ride_id} not found"))


def _payment_not_found(payment_id: str) -> PaymentResult:
    return PaymentResult(
        success=False, error=error_detail(ErrorCode.PAYMENT_NOT_FOUND, f"Payment {payment_id} not found")
    )


@router.post("/capture")
async def capture_payment(
    payload: CaptureRequest,
    services: ServiceContainer = Depends(get_container),
    rider_id: str = Depends(get_current_rider),
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
):
    """
    Charge the final fare of a completed ride.
    - Idempotent: repeated calls with the same key return the original result.
    - Amount always comes from the ride's server-side pricing.
    - Declines carry retry_available and suggested_actions.
    """
    if not await _owns_ride(services, payload.ride_id, rider_id):
        return result_response(_ride_not_found(payload.ride_id))
    result = await services.payments.capture(payload.ride_id, payload.payment_method_id, idempotency_key or "")
    return result_response(result)


@router.post("/tips")
async def add_tip(
    payload: TipRequest,
    services: ServiceContainer = Depends(get_container),
    rider_id: str = Depends(get_current_rider),
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
):
    if not await _owns_ride(services, payload.ride_id, rider_id):
        return result_response(_ride_not_found(payload.ride_id))
    result = await services.payments.add_tip(
        payload.ride_id, payload.amount, payload.payment_method_id, idempotency_key or ""
    )
    return result_response(result)


@router.post("/refunds")
async def refund_payment(
    payload: RefundRequest,
    services: ServiceContainer = Depends(get_container),
    rider_id: str = Depends(get_current_rider),
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
):
    """Refund all or part of a settled payment (never more than what is left)."""
    tx = await services.repository.get_transaction(payload.payment_id)
    if tx is None or tx.rider_id != rider_id:
        return result_response(_payment_not_found(payload.payment_id))
    result = await services.payments.process_refund(
        payload.payment_id, payload.amount, payload.reason, idempotency_key or ""
    )
    return result_response(result)


@router.post("/{payment_id}/reconcile")
async def reconcile_payment(
    payment_id: str,
    services: ServiceContainer = Depends(get_container),
    rider_id: str = Depends(get_current_rider),
):
    """Resolve a payment left pending by a PSP timeout."""
    tx = await services.repository.get_transaction(payment_id)
    if tx is None or tx.rider_id != rider_id:
        return result_response(_payment_not_found(payment_id))
    return result_response(await services.payments.reconcile(payment_id))


@router.get("/rides/{ride_id}/receipt")
async def get_receipt(
    ride_id: str,
    services: ServiceContainer = Depends(get_container),
    rider_id: str = Depends(get_current_rider),
):
    if not await _owns_ride(services, ride_id, rider_id):
        return result_response(_ride_not_found(ride_id))
    try:
        receipt = await services.payments.build_receipt(ride_id)
    except DispatchError as exc:
        return result_response(ErrorResponse(error=exc.to_detail()))
    return receipt
