"""Withdrawal fee arithmetic.

The shielded pool charges a flat base fee plus a protocol percentage on every
withdrawal. These figures are only a prediction: the gateway reports what it
actually charged.
"""
import math
from dataclasses import dataclass
from decimal import Decimal

from linkpay import config
from linkpay.errors import AmountTooLow


@dataclass(frozen=True)
class FeeSchedule:
    base_fee: int
    protocol_fee_rate: Decimal

    @classmethod
    def from_env(cls) -> "FeeSchedule":
        return cls(base_fee=config.base_fee(), protocol_fee_rate=config.protocol_fee_rate())


@dataclass(frozen=True)
class FeeQuote:
    fee: int
    net_amount: int


@dataclass(frozen=True)
class FeeEstimate:
    gross_amount: int
    base_fee: int
    protocol_fee: int
    total_fee: int
    net_amount: int
    claimable: bool


def _protocol_fee(gross_amount: int, rate: Decimal) -> int:
    # Decimal keeps 1_000_000_000 * 0.0035 at exactly 3_500_000 before rounding up
    return math.ceil(Decimal(gross_amount) * rate)


def estimate_fee(gross_amount: int, schedule: FeeSchedule | None = None) -> FeeEstimate:
    schedule = schedule or FeeSchedule.from_env()
    protocol_fee = _protocol_fee(gross_amount, schedule.protocol_fee_rate)
    total_fee = schedule.base_fee + protocol_fee
    net_amount = max(gross_amount - total_fee, 0)
    return FeeEstimate(
        gross_amount=gross_amount,
        base_fee=schedule.base_fee,
        protocol_fee=protocol_fee,
        total_fee=total_fee,
        net_amount=net_amount,
        claimable=net_amount > 0,
    )


def compute_fee(gross_amount: int, schedule: FeeSchedule | None = None) -> FeeQuote:
    """Return the fee and net amount for a withdrawal of ``gross_amount``.

    Raises AmountTooLow when nothing would be left for the recipient.
    """
    estimate = estimate_fee(gross_amount, schedule)
    if not estimate.claimable:
        raise AmountTooLow(gross_amount, estimate.total_fee)
    return FeeQuote(fee=estimate.total_fee, net_amount=estimate.net_amount)
