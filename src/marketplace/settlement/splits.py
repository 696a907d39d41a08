"""Fee, commission and withholding split of a gross amount."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal

from marketplace.config import SettlementConfig
from marketplace.errors import DistributionSumMismatch
from marketplace.models import Firm, Payment, Provider, to_money

logger = logging.getLogger(__name__)

HUNDRED = Decimal("100")
ZERO = Decimal("0")


@dataclass(frozen=True)
class Split:
    """An unsaved distribution breakdown."""

    gross_amount: Decimal
    platform_fee: Decimal
    firm_commission: Decimal
    provider_net: Decimal  # before withholding
    withholding: Decimal
    net_payout: Decimal

    @property
    def total(self) -> Decimal:
        return self.platform_fee + self.firm_commission + self.withholding + self.net_payout


def split_amount(
    gross: Decimal,
    config: SettlementConfig,
    commission_percent: Decimal | None = None,
    withholding_exempt: bool = False,
) -> Split:
    """
    Split ``gross`` into platform fee, firm commission, withholding and payout.

    Args:
        gross: Amount being distributed
        config: Platform fee, withholding rate and money quantum
        commission_percent: Firm commission, or None when no firm is involved
        withholding_exempt: Provider is exempt from withholding

    Returns:
        Split whose four recorded components sum exactly to ``gross``

    Raises:
        DistributionSumMismatch: the components do not add up (never persisted)
    """
    quantum = config.money_quantum
    if gross < 0:
        raise DistributionSumMismatch(f"cannot distribute a negative amount: {gross}")

    platform_fee = to_money(gross * config.platform_fee_percent / HUNDRED, quantum)
    firm_commission = ZERO
    if commission_percent is not None:
        firm_commission = to_money((gross - platform_fee) * commission_percent / HUNDRED, quantum)
    provider_net = to_money(gross - platform_fee - firm_commission, quantum)

    withholding = ZERO
    if not withholding_exempt:
        withholding = to_money(provider_net * config.withholding_rate_percent / HUNDRED, quantum)
    net_payout = provider_net - withholding

    # Sub-quantum remainder from a gross that is not on the money grid.
    remainder = gross - (platform_fee + firm_commission + withholding + net_payout)
    platform_fee += remainder

    split = Split(
        gross_amount=gross,
        platform_fee=platform_fee,
        firm_commission=firm_commission,
        provider_net=provider_net,
        withholding=withholding,
        net_payout=net_payout,
    )
    verify_split(split)
    return split


def verify_split(split: Split) -> None:
    parts = (split.platform_fee, split.firm_commission, split.withholding, split.net_payout)
    if split.total != split.gross_amount or any(part < 0 for part in parts):
        logger.critical(
            "distribution invariant broken: gross=%s fee=%s commission=%s withholding=%s payout=%s",
            split.gross_amount,
            *parts,
        )
        raise DistributionSumMismatch(
            f"components sum to {split.total}, expected {split.gross_amount}"
        )


def compute_distribution(
    payment: Payment,
    provider: Provider,
    firm: Firm | None,
    config: SettlementConfig,
    gross: Decimal | None = None,
) -> Split:
    """Split a payment (or the retained part of one) for a provider and optional firm."""
    return split_amount(
        payment.gross_amount if gross is None else gross,
        config,
        commission_percent=firm.commission_percent if firm is not None else None,
        withholding_exempt=provider.withholding_exempt,
    )
