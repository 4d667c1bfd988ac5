# src/gatherpay/infrastructure/ledger/client.py
"""
Asynchronous client for the external payment ledger.

The ledger exposes three primitives the pipeline relies on: open a payment
intent, refund (part of) a captured intent, and transfer funds to a connected
payout destination. Outcomes of intents and transfers arrive later as signed
webhooks (see interfaces/webhook/ledger.py).

Every mutating call carries an `Idempotency-Key` so a retried request after a
timeout cannot double-charge or double-pay.
"""

import hashlib
import hmac
import logging
from typing import Optional, Dict, Any

import httpx

from gatherpay.domain.errors import LedgerError, LedgerUnavailableError

log = logging.getLogger(__name__)


def sign_payload(secret: str, body: bytes) -> str:
    """Hex HMAC-SHA256 used for webhook signatures."""
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


def verify_signature(secret: str, body: bytes, signature: Optional[str]) -> bool:
    if not signature:
        return False
    return hmac.compare_digest(sign_payload(secret, body), signature)


class HttpPaymentLedger:
    def __init__(self, base_url: str, api_key: str, timeout: float = 10.0,
                 http_client: Optional[httpx.AsyncClient] = None):
        self.base_url = base_url.rstrip("/")
        self.client = http_client or httpx.AsyncClient(
            base_url=self.base_url,
            headers={"Authorization": f"Bearer {api_key}"},
            timeout=timeout,
        )

    async def _post(self, path: str, payload: Dict[str, Any], idempotency_key: Optional[str]) -> Dict[str, Any]:
        headers = {"Idempotency-Key": idempotency_key} if idempotency_key else {}
        try:
            response = await self.client.post(path, json=payload, headers=headers)
        except httpx.HTTPError as e:
            log.error(f"Ledger request {path} failed: {e!r}")
            raise LedgerUnavailableError(f"Payment provider unreachable: {e.__class__.__name__}") from e

        if response.status_code >= 400:
            try:
                detail = response.json().get("error", {}).get("message") or response.text[:200]
            except ValueError:
                detail = response.text[:200]
            log.error(f"Ledger {path} returned HTTP {response.status_code}: {detail}")
            if response.status_code >= 500:
                raise LedgerUnavailableError(f"Payment provider error: {detail}")
            raise LedgerError(f"Payment provider rejected the request: {detail}")

        data = response.json()
        if not data.get("id"):
            raise LedgerError(f"Payment provider response for {path} has no id")
        return data

    async def create_intent(self, amount_minor: int, currency: str, customer_ref: Optional[str],
                            metadata: Optional[Dict[str, Any]] = None,
                            idempotency_key: Optional[str] = None) -> str:
        data = await self._post("/payment_intents", {
            "amount": amount_minor,
            "currency": currency.lower(),
            "customer": customer_ref,
            "metadata": metadata or {},
        }, idempotency_key)
        return data["id"]

    async def refund(self, intent_ref: str, amount_minor: Optional[int] = None,
                     idempotency_key: Optional[str] = None) -> str:
        payload: Dict[str, Any] = {"payment_intent": intent_ref}
        if amount_minor is not None:
            payload["amount"] = amount_minor
        data = await self._post("/refunds", payload, idempotency_key)
        return data["id"]

    async def transfer(self, destination: str, amount_minor: int, currency: str,
                       metadata: Optional[Dict[str, Any]] = None,
                       idempotency_key: Optional[str] = None) -> str:
        data = await self._post("/transfers", {
            "destination": destination,
            "amount": amount_minor,
            "currency": currency.lower(),
            "metadata": metadata or {},
        }, idempotency_key)
        return data["id"]

    async def aclose(self) -> None:
        await self.client.aclose()


class UnconfiguredLedger:
    """Stand-in used when no ledger URL is configured; every call fails loudly."""

    async def create_intent(self, *args, **kwargs) -> str:
        raise LedgerError("Payment provider is not configured")

    async def refund(self, *args, **kwargs) -> str:
        raise LedgerError("Payment provider is not configured")

    async def transfer(self, *args, **kwargs) -> str:
        raise LedgerError("Payment provider is not configured")

    async def aclose(self) -> None:
        return None
