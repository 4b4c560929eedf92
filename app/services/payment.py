"""
Payment settlement: capture, tips, refunds and receipts.

Every money movement is keyed by (ride_id, idempotency_key). The pending
transaction is inserted *before* the PSP is called, so a retried request with
the same key replays the stored result instead of charging twice. A PSP
timeout leaves the transaction pending; it is reconciled against the PSP
(lookup by key) before anything is charged again.
"""
import asyncio
import logging
from datetime import datetime
from decimal import Decimal
from typing import Callable, Optional

from app.errors import DispatchError, ErrorCode
from app.repositories.base import RideRepository
from app.schemas.domain import (
    FailureReason,
    PaymentResult,
    PaymentTransaction,
    Receipt,
    Ride,
    RideStatus,
    SuggestedAction,
    TransactionKind,
    TransactionStatus,
)
from app.services.clock import utcnow
from app.services.locks import KeyedLock
from app.services.payment_provider import ChargeOutcome, PaymentProvider, ProviderTimeout, PSPError
from app.services.pricing import ZERO, round2, to_decimal
from app.services.rate_limiter import SlidingWindowRateLimiter

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Decline classification
# ---------------------------------------------------------------------------

_RETRY = SuggestedAction(type="retry", label="Try Again", priority="high")
_CHANGE_METHOD = SuggestedAction(type="change_payment_method", label="Use a different payment method", priority="high")
_UPDATE_CARD = SuggestedAction(type="update_card", label="Update card details", priority="high")
_CONTACT_SUPPORT = SuggestedAction(type="contact_support", label="Contact support", priority="medium")

# decline code -> (type, retryable, requires_user_action, user message, actions)
DECLINE_TABLE: dict[str, tuple[str, bool, bool, str, list[SuggestedAction]]] = {
    "card_declined": (
        "card_declined", True, True,
        "Your card was declined. Please try a different payment method.",
        [_CHANGE_METHOD, _RETRY],
    ),
    "insufficient_funds": (
        "insufficient_funds", True, True,
        "Your card has insufficient funds. Please use a different payment method.",
        [_CHANGE_METHOD],
    ),
    "expired_card": (
        "expired_card", True, True,
        "Your card has expired. Please update your card or use a different one.",
        [_UPDATE_CARD, _CHANGE_METHOD],
    ),
    "invalid_cvv": (
        "invalid_cvv", True, True,
        "The security code is incorrect. Please check it and try again.",
        [_UPDATE_CARD, _RETRY],
    ),
    "fraudulent": (
        "fraud_suspected", False, True,
        "This payment was blocked for your protection. Please contact support.",
        [_CONTACT_SUPPORT],
    ),
    "velocity_exceeded": (
        "velocity_exceeded", False, True,
        "Too many payments in a short time. Please contact support.",
        [_CONTACT_SUPPORT],
    ),
    "processing_error": (
        "processing_error", True, False,
        "We couldn't process your payment. Please try again.",
        [_RETRY],
    ),
}


def classify_decline(code: Optional[str], message: str = "") -> tuple[FailureReason, list[SuggestedAction]]:
    """Map a PSP decline code to a failure reason. Unknown codes are treated as processing errors."""
    key = code if code in DECLINE_TABLE else "processing_error"
    type_, retryable, user_action, user_message, actions = DECLINE_TABLE[key]
    reason = FailureReason(
        type=type_,
        code=code or key,
        message=message,
        user_friendly_message=user_message,
        is_retryable=retryable,
        requires_user_action=user_action,
    )
    return reason, list(actions)


def _capturable_statuses(preauth_enabled: bool) -> set[RideStatus]:
    statuses = {RideStatus.completed}
    if preauth_enabled:
        statuses.add(RideStatus.confirmed)
    return statuses


class PaymentSettlement:
    def __init__(
        self,
        repository: RideRepository,
        provider: PaymentProvider,
        rate_limiter: Optional[SlidingWindowRateLimiter] = None,
        locks: Optional[KeyedLock] = None,
        clock: Callable[[], datetime] = utcnow,
        timeout_seconds: float = 10.0,
        preauth_enabled: bool = False,
    ):
        self.repository = repository
        self.provider = provider
        self.rate_limiter = rate_limiter or SlidingWindowRateLimiter()
        self.locks = locks or KeyedLock()
        self.clock = clock
        self.timeout_seconds = timeout_seconds
        self.preauth_enabled = preauth_enabled

    # -----------------------------------------------------------------------
    # Capture
    # -----------------------------------------------------------------------

    async def capture(self, ride_id: str, payment_method_id: str, idempotency_key: str) -> PaymentResult:
        try:
            _require(ride_id=ride_id, payment_method_id=payment_method_id, idempotency_key=idempotency_key)
            async with self.locks.hold(ride_id):
                existing = await self.repository.find_transaction(ride_id, idempotency_key)
                if existing is not None:
                    _ensure_same_request(existing, TransactionKind.capture)
                    return await self._replay(existing, payment_method_id)

                ride = await self._load_ride(ride_id)
                decision = self.rate_limiter.check(ride.rider_id)
                if not decision.allowed:
                    logger.warning("Capture rate limited rider=%s ride=%s", ride.rider_id, ride_id)
                    return PaymentResult(
                        success=False,
                        retry_available=True,
                        reset_at=decision.reset_at,
                        error=DispatchError(
                            ErrorCode.RATE_LIMITED,
                            f"Too many payment attempts for rider {ride.rider_id}",
                            {"reset_at": decision.reset_at.isoformat() if decision.reset_at else None},
                        ).to_detail(),
                    )

                if ride.status not in _capturable_statuses(self.preauth_enabled):
                    raise DispatchError(
                        ErrorCode.RIDE_NOT_CAPTURABLE,
                        f"Ride {ride_id} is {ride.status.value}",
                        {"status": ride.status.value},
                    )
                await self._ensure_not_captured(ride_id)

                tx = self._new_transaction(ride, idempotency_key, TransactionKind.capture, ride.pricing.total)
                return await self._insert_and_charge(tx, payment_method_id)
        except DispatchError as exc:
            return PaymentResult(success=False, error=exc.to_detail())

    # -----------------------------------------------------------------------
    # Tips
    # -----------------------------------------------------------------------

    async def add_tip(
        self, ride_id: str, amount, payment_method_id: str, idempotency_key: str
    ) -> PaymentResult:
        try:
            _require(ride_id=ride_id, payment_method_id=payment_method_id, idempotency_key=idempotency_key)
            tip = round2(amount)
            if tip <= 0:
                raise DispatchError(ErrorCode.INVALID_AMOUNT, "Tip must be positive", {"amount": str(amount)})

            async with self.locks.hold(ride_id):
                existing = await self.repository.find_transaction(ride_id, idempotency_key)
                if existing is not None:
                    _ensure_same_request(existing, TransactionKind.tip, amount=tip)
                    return await self._replay(existing, payment_method_id)

                ride = await self._load_ride(ride_id)
                if ride.status != RideStatus.completed:
                    raise DispatchError(
                        ErrorCode.RIDE_NOT_CAPTURABLE,
                        f"Tips can only be added to completed rides (ride {ride_id} is {ride.status.value})",
                    )
                capture = await self._captured(ride_id)
                tx = self._new_transaction(ride, idempotency_key, TransactionKind.tip, tip)
                if capture is not None:
                    tx.parent_transaction_id = capture.id
                return await self._insert_and_charge(tx, payment_method_id)
        except DispatchError as exc:
            return PaymentResult(success=False, error=exc.to_detail())

    # -----------------------------------------------------------------------
    # Refunds
    # -----------------------------------------------------------------------

    async def process_refund(
        self,
        payment_id: str,
        amount=None,
        reason: str = "",
        idempotency_key: str = "",
    ) -> PaymentResult:
        """Refund all or part of a settled capture or tip. Never more than is left."""
        try:
            _require(payment_id=payment_id, idempotency_key=idempotency_key)
            original = await self.repository.get_transaction(payment_id)
            if original is None:
                raise DispatchError(ErrorCode.PAYMENT_NOT_FOUND, f"Payment {payment_id} not found")

            async with self.locks.hold(original.ride_id):
                existing = await self.repository.find_transaction(original.ride_id, idempotency_key)
                if existing is not None:
                    _ensure_same_request(
                        existing,
                        TransactionKind.refund,
                        amount=None if amount is None else round2(amount),
                        parent_id=original.id,
                    )
                    return self._result(existing, replayed=True)

                if original.kind == TransactionKind.refund or original.status != TransactionStatus.succeeded:
                    raise DispatchError(
                        ErrorCode.PAYMENT_NOT_FOUND, f"Payment {payment_id} has no settled charge to refund"
                    )
                refunded = sum(
                    (
                        t.amount
                        for t in await self.repository.list_transactions(original.ride_id)
                        if t.kind == TransactionKind.refund
                        and t.parent_transaction_id == original.id
                        and t.status != TransactionStatus.failed
                    ),
                    ZERO,
                )
                remaining = original.amount - refunded
                refund_amount = remaining if amount is None else round2(amount)
                if refund_amount <= 0 or refund_amount > remaining:
                    raise DispatchError(
                        ErrorCode.INVALID_AMOUNT,
                        f"Refund of {refund_amount} exceeds refundable {remaining}",
                        {"requested": str(refund_amount), "refundable": str(remaining)},
                    )

                tx = PaymentTransaction(
                    ride_id=original.ride_id,
                    rider_id=original.rider_id,
                    idempotency_key=idempotency_key,
                    kind=TransactionKind.refund,
                    amount=refund_amount,
                    currency=original.currency,
                    parent_transaction_id=original.id,
                    created_at=self.clock(),
                )
                if not await self.repository.insert_transaction(tx):
                    raced = await self.repository.find_transaction(tx.ride_id, idempotency_key)
                    return self._result(raced, replayed=True)

                try:
                    outcome = await asyncio.wait_for(
                        self.provider.refund(original.provider_transaction_id, refund_amount),
                        timeout=self.timeout_seconds,
                    )
                except (asyncio.TimeoutError, ProviderTimeout):
                    logger.warning("Refund timed out payment=%s refund=%s", payment_id, tx.id)
                    return self._pending_result(tx, ErrorCode.PROVIDER_TIMEOUT)
                except PSPError as exc:
                    logger.error("Refund failed payment=%s: %s", payment_id, exc)
                    return self._pending_result(tx, ErrorCode.PROVIDER_UNAVAILABLE)

                if outcome.success:
                    tx.status = TransactionStatus.succeeded
                    tx.provider_transaction_id = outcome.provider_refund_id
                    logger.info("Refunded %s on payment=%s (%s)", refund_amount, payment_id, reason or "no reason")
                else:
                    tx.status = TransactionStatus.failed
                    tx.failure_reason, _ = classify_decline("processing_error", outcome.message)
                    logger.error("PSP rejected refund payment=%s: %s", payment_id, outcome.message)
                tx.updated_at = self.clock()
                await self.repository.update_transaction(tx)
                return self._result(tx)
        except DispatchError as exc:
            return PaymentResult(success=False, error=exc.to_detail())

    # -----------------------------------------------------------------------
    # Reconciliation and receipts
    # -----------------------------------------------------------------------

    async def reconcile(self, transaction_id: str) -> PaymentResult:
        """Settle a pending charge from the PSP's record of it. Never re-charges."""
        try:
            tx = await self.repository.get_transaction(transaction_id)
            if tx is None:
                raise DispatchError(ErrorCode.PAYMENT_NOT_FOUND, f"Payment {transaction_id} not found")
            async with self.locks.hold(tx.ride_id):
                tx = await self.repository.get_transaction(transaction_id)
                if tx.status != TransactionStatus.pending:
                    return self._result(tx, replayed=True)
                return await self._reconcile(tx, payment_method_id=None)
        except DispatchError as exc:
            return PaymentResult(success=False, error=exc.to_detail())

    async def build_receipt(self, ride_id: str) -> Receipt:
        ride = await self._load_ride(ride_id)
        capture = await self._captured(ride_id)
        if capture is None:
            raise DispatchError(ErrorCode.PAYMENT_NOT_FOUND, f"Ride {ride_id} has not been paid")

        tips = sum(
            (
                t.amount
                for t in await self.repository.list_transactions(ride_id)
                if t.kind == TransactionKind.tip and t.status == TransactionStatus.succeeded
            ),
            ZERO,
        )
        pricing = ride.pricing.model_copy(
            update={"tip": ride.pricing.tip + tips, "total": ride.pricing.total + tips}
        )
        started = ride.started_at or ride.confirmed_at or ride.created_at
        ended = ride.completed_at or self.clock()
        return Receipt(
            ride_id=ride.id,
            rider_id=ride.rider_id,
            driver_id=ride.driver_id,
            transaction_id=capture.id,
            pricing=pricing,
            pickup_address=ride.pickup.address,
            destination_address=ride.destination.address,
            distance_meters=ride.estimated_distance_meters,
            duration_seconds=max(0.0, (ended - started).total_seconds()),
            issued_at=self.clock(),
        )

    # -----------------------------------------------------------------------
    # Internals
    # -----------------------------------------------------------------------

    async def _load_ride(self, ride_id: str) -> Ride:
        ride = await self.repository.get(ride_id)
        if ride is None:
            raise DispatchError(ErrorCode.RIDE_NOT_FOUND, f"Ride {ride_id} not found")
        return ride

    async def _captured(self, ride_id: str) -> Optional[PaymentTransaction]:
        for tx in await self.repository.list_transactions(ride_id):
            if tx.kind == TransactionKind.capture and tx.status == TransactionStatus.succeeded:
                return tx
        return None

    async def _ensure_not_captured(self, ride_id: str) -> None:
        """Refuse a new capture key while an earlier capture is paid or still unresolved."""
        for tx in await self.repository.list_transactions(ride_id):
            if tx.kind != TransactionKind.capture:
                continue
            if tx.status == TransactionStatus.pending:
                await self._reconcile(tx, payment_method_id=None)
            if tx.status == TransactionStatus.succeeded:
                raise DispatchError(
                    ErrorCode.RIDE_NOT_CAPTURABLE,
                    f"Ride {ride_id} has already been paid",
                    {"transaction_id": tx.id},
                )
            if tx.status == TransactionStatus.pending:
                raise DispatchError(
                    ErrorCode.RIDE_NOT_CAPTURABLE,
                    f"Ride {ride_id} has a capture pending with the provider ({tx.id})",
                    {"transaction_id": tx.id, "status": tx.status.value},
                )

    def _new_transaction(
        self, ride: Ride, idempotency_key: str, kind: TransactionKind, amount: Decimal
    ) -> PaymentTransaction:
        amount = to_decimal(amount)
        if amount <= 0:
            raise DispatchError(ErrorCode.INVALID_AMOUNT, f"Nothing to charge for ride {ride.id}")
        return PaymentTransaction(
            ride_id=ride.id,
            rider_id=ride.rider_id,
            idempotency_key=idempotency_key,
            kind=kind,
            amount=amount,
            currency=ride.pricing.currency,
            created_at=self.clock(),
        )

    async def _insert_and_charge(self, tx: PaymentTransaction, payment_method_id: str) -> PaymentResult:
        if not await self.repository.insert_transaction(tx):
            # Another process inserted the same key between our lookup and insert.
            raced = await self.repository.find_transaction(tx.ride_id, tx.idempotency_key)
            return self._result(raced, replayed=True)
        return await self._charge(tx, payment_method_id)

    async def _charge(self, tx: PaymentTransaction, payment_method_id: str) -> PaymentResult:
        try:
            outcome = await asyncio.wait_for(
                self.provider.charge(payment_method_id, tx.amount, tx.currency, tx.idempotency_key),
                timeout=self.timeout_seconds,
            )
        except (asyncio.TimeoutError, ProviderTimeout):
            logger.warning("PSP timeout ride=%s tx=%s; left pending", tx.ride_id, tx.id)
            return self._pending_result(tx, ErrorCode.PROVIDER_TIMEOUT)
        except PSPError as exc:
            logger.error("PSP error ride=%s tx=%s: %s", tx.ride_id, tx.id, exc)
            return self._pending_result(tx, ErrorCode.PROVIDER_UNAVAILABLE)
        return await self._settle(tx, outcome)

    async def _settle(self, tx: PaymentTransaction, outcome: ChargeOutcome) -> PaymentResult:
        tx.updated_at = self.clock()
        tx.provider_transaction_id = outcome.provider_transaction_id
        if outcome.success:
            tx.status = TransactionStatus.succeeded
            logger.info("Charged %s %s ride=%s tx=%s", tx.amount, tx.currency, tx.ride_id, tx.id)
        else:
            tx.status = TransactionStatus.failed
            tx.failure_reason, _ = classify_decline(outcome.decline_code, outcome.message)
            logger.warning(
                "Payment declined ride=%s tx=%s code=%s", tx.ride_id, tx.id, outcome.decline_code
            )
        await self.repository.update_transaction(tx)
        return self._result(tx)

    async def _replay(self, tx: PaymentTransaction, payment_method_id: Optional[str]) -> PaymentResult:
        if tx.status == TransactionStatus.pending:
            return await self._reconcile(tx, payment_method_id)
        logger.info("Replaying %s tx=%s for key=%s", tx.kind.value, tx.id, tx.idempotency_key)
        return self._result(tx, replayed=True)

    async def _reconcile(self, tx: PaymentTransaction, payment_method_id: Optional[str]) -> PaymentResult:
        try:
            outcome = await asyncio.wait_for(
                self.provider.lookup(tx.idempotency_key), timeout=self.timeout_seconds
            )
        except (asyncio.TimeoutError, ProviderTimeout):
            return self._pending_result(tx, ErrorCode.PROVIDER_TIMEOUT)
        except PSPError as exc:
            logger.error("PSP lookup failed tx=%s: %s", tx.id, exc)
            return self._pending_result(tx, ErrorCode.PROVIDER_UNAVAILABLE)

        if outcome is not None:
            logger.info("Reconciled pending tx=%s success=%s", tx.id, outcome.success)
            return await self._settle(tx, outcome)
        if payment_method_id and tx.kind != TransactionKind.refund:
            # The PSP never saw the first attempt; sending it again with the same key is safe.
            return await self._charge(tx, payment_method_id)
        return self._pending_result(tx, ErrorCode.PROVIDER_TIMEOUT)

    def _pending_result(self, tx: PaymentTransaction, code: ErrorCode) -> PaymentResult:
        return PaymentResult(
            success=False,
            transaction_id=tx.id,
            status=TransactionStatus.pending,
            amount=tx.amount,
            currency=tx.currency,
            retry_available=True,
            error=DispatchError(
                code,
                f"Payment {tx.id} is pending with the provider",
                {"transaction_id": tx.id},
            ).to_detail(),
        )

    def _result(self, tx: PaymentTransaction, replayed: bool = False) -> PaymentResult:
        if tx.status == TransactionStatus.succeeded:
            return PaymentResult(
                success=True,
                transaction_id=tx.id,
                status=tx.status,
                amount=tx.amount,
                currency=tx.currency,
                replayed=replayed,
            )
        if tx.status == TransactionStatus.pending:
            result = self._pending_result(tx, ErrorCode.PROVIDER_TIMEOUT)
            result.replayed = replayed
            return result

        reason = tx.failure_reason
        if reason is None:
            reason, actions = classify_decline(None)
        else:
            _, actions = classify_decline(reason.code, reason.message)
        return PaymentResult(
            success=False,
            transaction_id=tx.id,
            status=tx.status,
            amount=tx.amount,
            currency=tx.currency,
            replayed=replayed,
            retry_available=reason.is_retryable,
            failure_reason=reason,
            suggested_actions=actions,
            error=DispatchError(
                ErrorCode.PAYMENT_DECLINED,
                reason.message or f"Payment declined ({reason.code})",
                {"decline_code": reason.code},
            ).to_detail(retryable=reason.is_retryable),
        )


def _ensure_same_request(
    tx: PaymentTransaction,
    kind: TransactionKind,
    amount: Optional[Decimal] = None,
    parent_id: Optional[str] = None,
) -> None:
    if (
        tx.kind != kind
        or (amount is not None and tx.amount != amount)
        or (parent_id is not None and tx.parent_transaction_id != parent_id)
    ):
        raise DispatchError(
            ErrorCode.IDEMPOTENCY_KEY_REUSED,
            f"Key {tx.idempotency_key} was already used for {tx.kind.value} {tx.id}",
            {"transaction_id": tx.id, "kind": tx.kind.value},
        )


def _require(**fields: Optional[str]) -> None:
    missing = [name for name, value in fields.items() if not value]
    if missing:
        raise DispatchError(
            ErrorCode.MISSING_REQUIRED_FIELDS,
            f"Missing required fields: {', '.join(missing)}",
            {"missing": missing},
        )
