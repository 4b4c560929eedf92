"""
Unit tests for payment settlement: idempotent capture, declines, PSP timeouts,
rate limiting, tips, refunds and receipts.
"""
import asyncio
from datetime import timedelta
from decimal import Decimal

import pytest

from app.errors import DispatchError, ErrorCode
from app.schemas.domain import RideStatus, TransactionKind, TransactionStatus
from app.services.payment import PaymentSettlement, classify_decline
from app.services.payment_provider import PSPError, SandboxPaymentProvider
from app.services.rate_limiter import SlidingWindowRateLimiter
from tests.factories import make_ride

CARD = "pm_card_visa"


class SlowOnceProvider(SandboxPaymentProvider):
    """The first charge hangs past the client timeout and never reaches the PSP."""

    def __init__(self, delay: float = 1.0):
        super().__init__()
        self.delay = delay

    async def charge(self, payment_method_id, amount, currency, idempotency_key):
        delay, self.delay = self.delay, 0
        await asyncio.sleep(delay)
        return await super().charge(payment_method_id, amount, currency, idempotency_key)


class BrokenProvider(SandboxPaymentProvider):
    async def charge(self, payment_method_id, amount, currency, idempotency_key):
        raise PSPError("503 from PSP")


@pytest.fixture
def payments(repository, provider, clock):
    return PaymentSettlement(repository, provider, clock=clock, timeout_seconds=1)


@pytest.fixture
async def completed_ride(repository, clock):
    ride = make_ride(
        RideStatus.completed,
        clock,
        started_at=clock() - timedelta(minutes=11),
        completed_at=clock(),
    )
    return await repository.put(ride)


@pytest.mark.asyncio
class TestCapture:
    async def test_success(self, payments, completed_ride, provider):
        result = await payments.capture(completed_ride.id, CARD, "key-1")

        assert result.success
        assert result.status == TransactionStatus.succeeded
        assert result.amount == Decimal("17.11")
        assert result.currency == "USD"
        assert not result.replayed
        assert provider.charge_calls == 1

    async def test_same_key_replays_without_charging(self, payments, completed_ride, provider):
        first = await payments.capture(completed_ride.id, CARD, "key-1")
        second = await payments.capture(completed_ride.id, CARD, "key-1")

        assert second.success
        assert second.replayed
        assert second.transaction_id == first.transaction_id
        assert provider.charge_calls == 1

    async def test_concurrent_duplicates_charge_once(self, payments, completed_ride, provider, repository):
        results = await asyncio.gather(
            *(payments.capture(completed_ride.id, CARD, "key-1") for _ in range(5))
        )

        assert all(r.success for r in results)
        assert len({r.transaction_id for r in results}) == 1
        assert provider.charge_calls == 1
        assert len(await repository.list_transactions(completed_ride.id)) == 1

    async def test_second_key_after_success_rejected(self, payments, completed_ride):
        await payments.capture(completed_ride.id, CARD, "key-1")
        result = await payments.capture(completed_ride.id, CARD, "key-2")
        assert not result.success
        assert result.error.code == ErrorCode.RIDE_NOT_CAPTURABLE

    @pytest.mark.parametrize(
        "status", [RideStatus.confirmed, RideStatus.arrived, RideStatus.in_progress, RideStatus.cancelled]
    )
    async def test_unfinished_ride_not_capturable(self, payments, repository, clock, status):
        ride = await repository.put(make_ride(status, clock))
        result = await payments.capture(ride.id, CARD, "key-1")
        assert result.error.code == ErrorCode.RIDE_NOT_CAPTURABLE

    async def test_preauth_allows_confirmed_ride(self, repository, provider, clock):
        payments = PaymentSettlement(repository, provider, clock=clock, preauth_enabled=True)
        ride = await repository.put(make_ride(RideStatus.confirmed, clock))
        result = await payments.capture(ride.id, CARD, "key-1")
        assert result.success

    async def test_unknown_ride(self, payments):
        result = await payments.capture("ride_missing", CARD, "key-1")
        assert result.error.code == ErrorCode.RIDE_NOT_FOUND

    @pytest.mark.parametrize(
        "ride_id,method,key,missing",
        [
            ("ride_1", CARD, "", ["idempotency_key"]),
            ("ride_1", "", "key-1", ["payment_method_id"]),
            ("", "", "", ["ride_id", "payment_method_id", "idempotency_key"]),
        ],
    )
    async def test_missing_fields(self, payments, ride_id, method, key, missing):
        result = await payments.capture(ride_id, method, key)
        assert result.error.code == ErrorCode.MISSING_REQUIRED_FIELDS
        assert result.error.details["missing"] == missing


@pytest.mark.asyncio
class TestDeclines:
    async def test_retryable_decline(self, payments, completed_ride):
        result = await payments.capture(completed_ride.id, "pm_card_declined", "key-1")

        assert not result.success
        assert result.status == TransactionStatus.failed
        assert result.error.code == ErrorCode.PAYMENT_DECLINED
        assert result.error.retryable
        assert result.retry_available
        assert result.failure_reason.type == "card_declined"
        assert result.failure_reason.requires_user_action
        assert [a.type for a in result.suggested_actions] == ["change_payment_method", "retry"]

    async def test_fraud_is_not_retryable(self, payments, completed_ride):
        result = await payments.capture(completed_ride.id, "pm_card_fraud", "key-1")

        assert result.failure_reason.type == "fraud_suspected"
        assert not result.failure_reason.is_retryable
        assert not result.error.retryable
        assert not result.retry_available
        assert [a.type for a in result.suggested_actions] == ["contact_support"]

    async def test_failed_key_replays_failure(self, payments, completed_ride, provider):
        await payments.capture(completed_ride.id, "pm_card_declined", "key-1")
        again = await payments.capture(completed_ride.id, CARD, "key-1")

        assert not again.success
        assert again.replayed
        assert again.failure_reason.type == "card_declined"
        assert provider.charge_calls == 1

    async def test_new_key_after_decline_succeeds(self, payments, completed_ride):
        await payments.capture(completed_ride.id, "pm_card_insufficient_funds", "key-1")
        result = await payments.capture(completed_ride.id, CARD, "key-2")
        assert result.success


class TestDeclineClassification:
    def test_unknown_decline_code(self):
        reason, actions = classify_decline("do_not_honor", "bank said no")
        assert reason.type == "processing_error"
        assert reason.code == "do_not_honor"
        assert reason.message == "bank said no"
        assert reason.is_retryable
        assert [a.type for a in actions] == ["retry"]


@pytest.mark.asyncio
class TestProviderFailures:
    async def test_timeout_after_charge_is_reconciled(self, payments, completed_ride, provider):
        result = await payments.capture(completed_ride.id, "pm_timeout", "key-1")

        assert not result.success
        assert result.status == TransactionStatus.pending
        assert result.error.code == ErrorCode.PROVIDER_TIMEOUT
        assert result.retry_available

        reconciled = await payments.reconcile(result.transaction_id)
        assert reconciled.success
        assert reconciled.status == TransactionStatus.succeeded
        assert provider.charge_calls == 1

    async def test_retry_of_pending_key_reconciles_instead_of_charging(self, payments, completed_ride, provider):
        pending = await payments.capture(completed_ride.id, "pm_timeout", "key-1")
        retried = await payments.capture(completed_ride.id, "pm_timeout", "key-1")

        assert retried.success
        assert retried.transaction_id == pending.transaction_id
        assert provider.charge_calls == 1

    async def test_charge_that_never_landed_is_sent_again(self, repository, clock, completed_ride):
        provider = SlowOnceProvider()
        payments = PaymentSettlement(repository, provider, clock=clock, timeout_seconds=0.05)

        pending = await payments.capture(completed_ride.id, CARD, "key-1")
        assert pending.status == TransactionStatus.pending
        assert pending.error.code == ErrorCode.PROVIDER_TIMEOUT

        # Nothing to reconcile against, and no payment method to retry with.
        still_pending = await payments.reconcile(pending.transaction_id)
        assert still_pending.status == TransactionStatus.pending

        retried = await payments.capture(completed_ride.id, CARD, "key-1")
        assert retried.success
        assert retried.transaction_id == pending.transaction_id

    async def test_new_key_while_capture_pending_does_not_charge_twice(
        self, payments, completed_ride, provider, repository
    ):
        pending = await payments.capture(completed_ride.id, "pm_timeout", "key-1")
        assert pending.status == TransactionStatus.pending

        second = await payments.capture(completed_ride.id, CARD, "key-2")

        # The first charge landed, so the lookup settles it and the new key is refused.
        assert not second.success
        assert second.error.code == ErrorCode.RIDE_NOT_CAPTURABLE
        assert second.error.details["transaction_id"] == pending.transaction_id
        assert provider.charge_calls == 1
        settled = await repository.get_transaction(pending.transaction_id)
        assert settled.status == TransactionStatus.succeeded
        assert await repository.find_transaction(completed_ride.id, "key-2") is None

    async def test_new_key_while_capture_unresolved_is_refused(self, repository, clock, completed_ride):
        provider = SlowOnceProvider()
        payments = PaymentSettlement(repository, provider, clock=clock, timeout_seconds=0.05)
        pending = await payments.capture(completed_ride.id, CARD, "key-1")

        second = await payments.capture(completed_ride.id, CARD, "key-2")

        assert second.error.code == ErrorCode.RIDE_NOT_CAPTURABLE
        assert second.error.details == {"transaction_id": pending.transaction_id, "status": "pending"}
        assert provider.charge_calls == 0
        assert (await payments.capture(completed_ride.id, CARD, "key-1")).success

    async def test_provider_error_leaves_pending(self, repository, clock, completed_ride):
        payments = PaymentSettlement(repository, BrokenProvider(), clock=clock)
        result = await payments.capture(completed_ride.id, CARD, "key-1")

        assert result.status == TransactionStatus.pending
        assert result.error.code == ErrorCode.PROVIDER_UNAVAILABLE
        assert result.error.retryable
        tx = await repository.get_transaction(result.transaction_id)
        assert tx.status == TransactionStatus.pending

    async def test_reconcile_settled_payment_replays(self, payments, completed_ride):
        captured = await payments.capture(completed_ride.id, CARD, "key-1")
        result = await payments.reconcile(captured.transaction_id)
        assert result.success
        assert result.replayed

    async def test_reconcile_unknown(self, payments):
        result = await payments.reconcile("txn_missing")
        assert result.error.code == ErrorCode.PAYMENT_NOT_FOUND


@pytest.mark.asyncio
class TestRateLimit:
    async def test_capture_attempts_limited_per_rider(self, repository, provider, clock, completed_ride):
        limiter = SlidingWindowRateLimiter(max_attempts=2, window_seconds=60, clock=clock)
        payments = PaymentSettlement(repository, provider, rate_limiter=limiter, clock=clock)

        for key in ("key-1", "key-2"):
            result = await payments.capture(completed_ride.id, "pm_card_declined", key)
            assert result.error.code == ErrorCode.PAYMENT_DECLINED

        limited = await payments.capture(completed_ride.id, CARD, "key-3")
        assert limited.error.code == ErrorCode.RATE_LIMITED
        assert limited.error.retryable
        assert limited.retry_available
        assert limited.reset_at == clock() + timedelta(seconds=60)

        clock.advance(61)
        assert (await payments.capture(completed_ride.id, CARD, "key-3")).success

    async def test_replays_are_not_counted(self, repository, provider, clock, completed_ride):
        limiter = SlidingWindowRateLimiter(max_attempts=1, window_seconds=60, clock=clock)
        payments = PaymentSettlement(repository, provider, rate_limiter=limiter, clock=clock)

        await payments.capture(completed_ride.id, CARD, "key-1")
        replay = await payments.capture(completed_ride.id, CARD, "key-1")
        assert replay.success


@pytest.mark.asyncio
class TestTipsAndRefunds:
    async def test_tip_after_capture(self, payments, completed_ride, repository):
        capture = await payments.capture(completed_ride.id, CARD, "key-1")
        tip = await payments.add_tip(completed_ride.id, "3", CARD, "tip-1")

        assert tip.success
        assert tip.amount == Decimal("3.00")
        stored = await repository.get_transaction(tip.transaction_id)
        assert stored.kind == TransactionKind.tip
        assert stored.parent_transaction_id == capture.transaction_id

    async def test_tip_requires_completed_ride(self, payments, repository, clock):
        ride = await repository.put(make_ride(RideStatus.in_progress, clock))
        result = await payments.add_tip(ride.id, 3, CARD, "tip-1")
        assert result.error.code == ErrorCode.RIDE_NOT_CAPTURABLE

    @pytest.mark.parametrize("amount", [0, -2, "0.001"])
    async def test_tip_must_be_positive(self, payments, completed_ride, amount):
        result = await payments.add_tip(completed_ride.id, amount, CARD, "tip-1")
        assert result.error.code == ErrorCode.INVALID_AMOUNT

    async def test_partial_then_remaining_refund(self, payments, completed_ride, provider):
        capture = await payments.capture(completed_ride.id, CARD, "key-1")

        partial = await payments.process_refund(capture.transaction_id, "5", "late pickup", "refund-1")
        assert partial.success
        assert partial.amount == Decimal("5.00")

        rest = await payments.process_refund(capture.transaction_id, idempotency_key="refund-2")
        assert rest.success
        assert rest.amount == Decimal("12.11")

        nothing_left = await payments.process_refund(capture.transaction_id, "1", idempotency_key="refund-3")
        assert nothing_left.error.code == ErrorCode.INVALID_AMOUNT
        assert len(provider.refunds) == 2

    async def test_refund_more_than_charged(self, payments, completed_ride):
        capture = await payments.capture(completed_ride.id, CARD, "key-1")
        result = await payments.process_refund(capture.transaction_id, "17.12", idempotency_key="refund-1")
        assert result.error.code == ErrorCode.INVALID_AMOUNT
        assert result.error.details["refundable"] == "17.11"

    async def test_refund_replay(self, payments, completed_ride, provider):
        capture = await payments.capture(completed_ride.id, CARD, "key-1")
        first = await payments.process_refund(capture.transaction_id, "5", idempotency_key="refund-1")
        again = await payments.process_refund(capture.transaction_id, "5", idempotency_key="refund-1")

        assert again.replayed
        assert again.transaction_id == first.transaction_id
        assert len(provider.refunds) == 1

    async def test_capture_key_cannot_be_reused_for_tip(self, payments, completed_ride, provider, repository):
        capture = await payments.capture(completed_ride.id, CARD, "key-1")
        tip = await payments.add_tip(completed_ride.id, "3", CARD, "key-1")

        assert not tip.success
        assert tip.error.code == ErrorCode.IDEMPOTENCY_KEY_REUSED
        assert tip.error.details == {"transaction_id": capture.transaction_id, "kind": "capture"}
        assert provider.charge_calls == 1
        assert len(await repository.list_transactions(completed_ride.id)) == 1

    async def test_tip_key_with_different_amount(self, payments, completed_ride):
        await payments.capture(completed_ride.id, CARD, "key-1")
        await payments.add_tip(completed_ride.id, "3", CARD, "tip-1")

        assert (await payments.add_tip(completed_ride.id, "3.00", CARD, "tip-1")).replayed
        changed = await payments.add_tip(completed_ride.id, "4", CARD, "tip-1")
        assert changed.error.code == ErrorCode.IDEMPOTENCY_KEY_REUSED

    async def test_tip_key_cannot_be_reused_for_capture(self, payments, completed_ride):
        await payments.capture(completed_ride.id, "pm_card_declined", "key-1")
        await payments.add_tip(completed_ride.id, "3", CARD, "tip-1")

        result = await payments.capture(completed_ride.id, CARD, "tip-1")
        assert result.error.code == ErrorCode.IDEMPOTENCY_KEY_REUSED

    async def test_refund_key_reused_with_other_amount(self, payments, completed_ride, provider):
        capture = await payments.capture(completed_ride.id, CARD, "key-1")
        await payments.process_refund(capture.transaction_id, "5", idempotency_key="refund-1")

        result = await payments.process_refund(capture.transaction_id, "6", idempotency_key="refund-1")
        assert result.error.code == ErrorCode.IDEMPOTENCY_KEY_REUSED
        assert len(provider.refunds) == 1

    async def test_refund_of_declined_payment(self, payments, completed_ride):
        declined = await payments.capture(completed_ride.id, "pm_card_declined", "key-1")
        result = await payments.process_refund(declined.transaction_id, idempotency_key="refund-1")
        assert result.error.code == ErrorCode.PAYMENT_NOT_FOUND

    async def test_refund_unknown_payment(self, payments):
        result = await payments.process_refund("txn_missing", idempotency_key="refund-1")
        assert result.error.code == ErrorCode.PAYMENT_NOT_FOUND

    async def test_refund_requires_key(self, payments):
        result = await payments.process_refund("txn_1")
        assert result.error.code == ErrorCode.MISSING_REQUIRED_FIELDS


@pytest.mark.asyncio
class TestReceipt:
    async def test_receipt_includes_tips(self, payments, completed_ride):
        capture = await payments.capture(completed_ride.id, CARD, "key-1")
        await payments.add_tip(completed_ride.id, "3", CARD, "tip-1")
        await payments.add_tip(completed_ride.id, "2", "pm_card_declined", "tip-2")

        receipt = await payments.build_receipt(completed_ride.id)

        assert receipt.transaction_id == capture.transaction_id
        assert receipt.pricing.tip == Decimal("3.00")
        assert receipt.pricing.total == Decimal("20.11")
        assert receipt.duration_seconds == 660
        assert receipt.distance_meters == 5420
        assert receipt.pickup_address == "City Hall, New York, NY"

    async def test_unpaid_ride_has_no_receipt(self, payments, completed_ride):
        with pytest.raises(DispatchError) as exc:
            await payments.build_receipt(completed_ride.id)
        assert exc.value.code == ErrorCode.PAYMENT_NOT_FOUND
