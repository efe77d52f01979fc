"""
Fee split and transfer leg results.

A settlement has a mandatory principal leg and a best-effort fee leg. The
two result types keep that distinction explicit: only a critical leg can
decide the outcome of a transaction.
"""
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Optional

MINOR_UNIT = Decimal("0.01")


def to_money(amount: Decimal | int | float | str) -> Decimal:
    """Quantize an amount to currency minor units."""
    value = amount if isinstance(amount, Decimal) else Decimal(str(amount))
    return value.quantize(MINOR_UNIT, rounding=ROUND_HALF_UP)


def to_minor_units(amount: Decimal) -> int:
    """Convert a major-unit amount to an integer number of minor units (cents)."""
    return int((to_money(amount) * 100).to_integral_value(rounding=ROUND_HALF_UP))


@dataclass(frozen=True)
class FeeSplit:
    """Split of a settled amount between merchant and platform."""

    amount: Decimal
    platform_fee: Decimal
    merchant_net: Decimal


def split_fee(amount: Decimal, rate: Decimal = Decimal("0.03")) -> FeeSplit:
    """
    Split an amount into platform fee and merchant net.

    The fee is rounded half-up to minor units and the merchant receives the
    remainder, so the two parts always add up to the amount exactly.
    """
    total = to_money(amount)
    fee = to_money(total * rate)
    return FeeSplit(amount=total, platform_fee=fee, merchant_net=total - fee)


def fee_description(rate: Decimal, transaction_id: str, refund: bool = False) -> str:
    """Bank-facing description of a fee transfer."""
    percent = f"{(rate * 100).normalize():f}"
    label = "Platform Fee Refund" if refund else "Platform Fee"
    return f"BioPay {label} ({percent}%) - Transaction: {transaction_id}"


class LegStatus(str, Enum):
    """Outcome of a best-effort leg."""

    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    SKIPPED = "SKIPPED"


@dataclass(frozen=True)
class CriticalLegResult:
    """Result of a leg whose failure fails the operation."""

    leg: str
    succeeded: bool
    reference: Optional[str] = None
    message: Optional[str] = None


@dataclass(frozen=True)
class BestEffortLegResult:
    """Result of a leg whose failure is recorded but never changes the outcome."""

    leg: str
    status: LegStatus
    message: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.status == LegStatus.SUCCEEDED
