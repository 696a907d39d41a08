"""Downstream payment-provider client used by the settlement worker."""

from __future__ import annotations

import logging
from typing import Any, Protocol

import httpx

from marketplace.config import GatewayConfig
from marketplace.errors import GatewayError
from marketplace.models import Distribution, Payment, RefundRecord

logger = logging.getLogger(__name__)


class PaymentGateway(Protocol):
    async def payout(self, payment: Payment, distribution: Distribution) -> dict[str, Any]: ...

    async def refund(self, payment: Payment, refund: RefundRecord) -> dict[str, Any]: ...


class HttpPaymentGateway:
    """
    JSON-over-HTTP payment provider.

    Every call carries an Idempotency-Key (the distribution or refund id), so
    a retried job never moves money twice.
    """

    def __init__(self, config: GatewayConfig, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self.config = config
        self.transport = transport

    async def payout(self, payment: Payment, distribution: Distribution) -> dict[str, Any]:
        body = {
            "payment_reference": payment.external_reference,
            "currency": payment.currency,
            "provider_id": distribution.provider_id,
            "firm_id": distribution.firm_id,
            "net_payout": str(distribution.net_payout),
            "firm_commission": str(distribution.firm_commission),
            "withholding": str(distribution.withholding),
        }
        return await self._post("/payouts", body, idempotency_key=distribution.id)

    async def refund(self, payment: Payment, refund: RefundRecord) -> dict[str, Any]:
        body = {
            "payment_reference": payment.external_reference,
            "currency": payment.currency,
            "amount": str(refund.net_refund),
            "processing_fee": str(refund.processing_fee),
            "reason": refund.reason,
        }
        return await self._post("/refunds", body, idempotency_key=refund.id)

    async def _post(self, path: str, body: dict[str, Any], idempotency_key: str) -> dict[str, Any]:
        headers = {"Idempotency-Key": idempotency_key}
        if self.config.api_key:
            headers["Authorization"] = f"Bearer {self.config.api_key}"

        try:
            async with httpx.AsyncClient(
                base_url=self.config.base_url,
                timeout=self.config.timeout_seconds,
                transport=self.transport,
            ) as client:
                response = await client.post(path, json=body, headers=headers)
        except httpx.HTTPError as exc:
            raise GatewayError(f"{path} transport error: {exc}", retryable=True) from exc

        if response.status_code >= 500:
            raise GatewayError(
                f"{path} returned {response.status_code}", retryable=True, status_code=response.status_code
            )
        if response.status_code >= 400:
            raise GatewayError(
                f"{path} rejected with {response.status_code}: {response.text[:200]}",
                retryable=False,
                status_code=response.status_code,
            )

        logger.info("gateway %s ok (key=%s)", path, idempotency_key)
        if not response.content:
            return {}
        # the money has moved by now; an unparseable receipt must not trigger a retry
        try:
            return response.json()
        except ValueError:
            logger.warning("gateway %s returned a non-JSON body (key=%s)", path, idempotency_key)
            return {"raw": response.text}
