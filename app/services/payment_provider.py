"""
PSP adapters.

The sandbox provider is deterministic: special payment-method ids trigger
specific declines so every failure path can be exercised without a real PSP.
"""
import logging
import uuid
from decimal import Decimal
from typing import Optional

import httpx
from pydantic import BaseModel

logger = logging.getLogger(__name__)


class PSPError(Exception):
    pass


class ProviderTimeout(PSPError):
    """The PSP did not answer in time; the charge may or may not have happened."""


class ChargeOutcome(BaseModel):
    success: bool
    provider_transaction_id: Optional[str] = None
    decline_code: Optional[str] = None
    message: str = ""


class RefundOutcome(BaseModel):
    success: bool
    provider_refund_id: Optional[str] = None
    message: str = ""


class PaymentProvider:
    async def charge(
        self, payment_method_id: str, amount: Decimal, currency: str, idempotency_key: str
    ) -> ChargeOutcome:
        raise NotImplementedError

    async def refund(self, provider_transaction_id: str, amount: Optional[Decimal] = None) -> RefundOutcome:
        raise NotImplementedError

    async def lookup(self, idempotency_key: str) -> Optional[ChargeOutcome]:
        """Outcome of an earlier charge sent with this key, or None if the PSP never saw it."""
        raise NotImplementedError


class SandboxPaymentProvider(PaymentProvider):
    DECLINES = {
        "pm_card_declined": "card_declined",
        "pm_card_insufficient_funds": "insufficient_funds",
        "pm_card_expired": "expired_card",
        "pm_card_invalid_cvv": "invalid_cvv",
        "pm_card_fraud": "fraudulent",
        "pm_card_velocity": "velocity_exceeded",
        "pm_processing_error": "processing_error",
    }
    TIMEOUT_METHOD = "pm_timeout"

    def __init__(self) -> None:
        self.charges: dict[str, ChargeOutcome] = {}
        self.refunds: list[tuple[str, Optional[Decimal]]] = []
        self.charge_calls = 0

    async def charge(self, payment_method_id, amount, currency, idempotency_key):
        self.charge_calls += 1
        if amount <= 0:
            raise PSPError("Amount must be positive")
        if idempotency_key in self.charges:
            return self.charges[idempotency_key]

        decline = self.DECLINES.get(payment_method_id)
        if decline:
            outcome = ChargeOutcome(success=False, decline_code=decline, message=f"Sandbox decline: {decline}")
        else:
            outcome = ChargeOutcome(success=True, provider_transaction_id=f"PSP-{uuid.uuid4().hex[:12].upper()}")
        self.charges[idempotency_key] = outcome

        if payment_method_id == self.TIMEOUT_METHOD:
            # The charge lands but the response never makes it back.
            raise ProviderTimeout("Sandbox timeout")
        return outcome

    async def refund(self, provider_transaction_id, amount=None):
        self.refunds.append((provider_transaction_id, amount))
        return RefundOutcome(success=True, provider_refund_id=f"RF-{uuid.uuid4().hex[:12].upper()}")

    async def lookup(self, idempotency_key):
        return self.charges.get(idempotency_key)


class HttpPaymentProvider(PaymentProvider):
    """Stripe-style REST PSP."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        timeout_seconds: float = 10,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.client = client or httpx.AsyncClient(base_url=base_url, timeout=timeout_seconds)
        self.api_key = api_key

    def _headers(self, idempotency_key: Optional[str] = None) -> dict[str, str]:
        headers = {"Authorization": f"Bearer {self.api_key}"}
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key
        return headers

    async def _request(self, method: str, url: str, **kwargs) -> httpx.Response:
        try:
            return await self.client.request(method, url, **kwargs)
        except httpx.TimeoutException as exc:
            raise ProviderTimeout(f"PSP timeout on {url}") from exc
        except httpx.TransportError as exc:
            raise PSPError(f"PSP unreachable: {exc}") from exc

    @staticmethod
    def _decline_code(resp: httpx.Response) -> str:
        error = resp.json().get("error", {})
        return error.get("decline_code") or error.get("code") or "processing_error"

    async def charge(self, payment_method_id, amount, currency, idempotency_key):
        resp = await self._request(
            "POST",
            "/charges",
            headers=self._headers(idempotency_key),
            json={"amount": int(amount * 100), "currency": currency.lower(), "source": payment_method_id},
        )
        if resp.status_code == 402:
            code = self._decline_code(resp)
            return ChargeOutcome(success=False, decline_code=code, message=resp.text)
        if resp.status_code >= 400:
            raise PSPError(f"PSP error {resp.status_code}: {resp.text}")
        return ChargeOutcome(success=True, provider_transaction_id=resp.json()["id"])

    async def refund(self, provider_transaction_id, amount=None):
        body: dict = {"charge": provider_transaction_id}
        if amount is not None:
            body["amount"] = int(amount * 100)
        resp = await self._request("POST", "/refunds", headers=self._headers(), json=body)
        if resp.status_code >= 400:
            logger.error("PSP refund failed for %s: %s", provider_transaction_id, resp.text)
            return RefundOutcome(success=False, message=resp.text)
        return RefundOutcome(success=True, provider_refund_id=resp.json()["id"])

    async def lookup(self, idempotency_key):
        resp = await self._request(
            "GET", "/charges", headers=self._headers(), params={"idempotency_key": idempotency_key}
        )
        if resp.status_code == 404:
            return None
        if resp.status_code >= 400:
            raise PSPError(f"PSP error {resp.status_code}: {resp.text}")
        data = resp.json().get("data", [])
        if not data:
            return None
        charge = data[0]
        if charge.get("status") == "succeeded":
            return ChargeOutcome(success=True, provider_transaction_id=charge["id"])
        return ChargeOutcome(
            success=False,
            provider_transaction_id=charge.get("id"),
            decline_code=charge.get("failure_code") or "processing_error",
        )

    async def aclose(self) -> None:
        await self.client.aclose()
