"""Shared fixtures: a service over a temp data directory and a recording gateway."""

from __future__ import annotations

from collections.abc import Callable
from decimal import Decimal
from pathlib import Path
from typing import Any

import pytest

from marketplace.config import MarketplaceConfig, RetryPolicy
from marketplace.errors import GatewayError
from marketplace.models import Distribution, Payment, Provider, RefundRecord
from marketplace.service import MarketplaceService


class RecordingGateway:
    """In-memory gateway; queue errors in ``failures`` to make calls fail."""

    def __init__(self) -> None:
        self.payouts: list[tuple[str, str]] = []
        self.refunds: list[tuple[str, str]] = []
        self.failures: list[GatewayError] = []

    async def payout(self, payment: Payment, distribution: Distribution) -> dict[str, Any]:
        if self.failures:
            raise self.failures.pop(0)
        self.payouts.append((payment.id, distribution.id))
        return {"status": "paid"}

    async def refund(self, payment: Payment, refund: RefundRecord) -> dict[str, Any]:
        if self.failures:
            raise self.failures.pop(0)
        self.refunds.append((payment.id, refund.id))
        return {"status": "refunded"}


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
def config() -> MarketplaceConfig:
    return MarketplaceConfig(retry=RetryPolicy(max_attempts=3, jitter=0.0))


@pytest.fixture
def gateway() -> RecordingGateway:
    return RecordingGateway()


@pytest.fixture
def service(tmp_path: Path, config: MarketplaceConfig, gateway: RecordingGateway) -> MarketplaceService:
    return MarketplaceService(tmp_path / "market", config=config, gateway=gateway)


@pytest.fixture
def add_provider(service: MarketplaceService) -> Callable[..., Provider]:
    """Register a verified provider with sensible defaults."""

    def _add(provider_id: str, **overrides: Any) -> Provider:
        fields: dict[str, Any] = {
            "name": provider_id.title(),
            "specializations": ["GST"],
            "experience_years": 5,
            "hourly_rate": Decimal("1000"),
            "average_rating": 4.0,
            "rating_count": 10,
            "max_capacity": 5,
        }
        fields.update(overrides)
        return service.directory.add_provider(provider_id=provider_id, **fields)

    return _add
