# tixpay/services/ledger.py
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Dict, List
from uuid import UUID

from tixpay.models import LedgerEntry, LedgerStatus


@dataclass(frozen=True)
class LedgerSplit:
    gateway_fee: int
    platform_fee: int
    organizer_net: int


def _fee(gross: int, rate: float) -> int:
    # round-half-up on minor units; Decimal(str()) avoids binary float drift (1.5% of 1000 is 15, not 14)
    amount = Decimal(gross) * Decimal(str(rate))
    return int(amount.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def compute_ledger(gross_minor: int, gateway_fee_rate: float, platform_fee_rate: float) -> LedgerSplit:
    """
    Split a gross amount (minor units) into gateway fee, platform fee and organizer net.
    Fees are rounded independently; the organizer net is the remainder, so the three
    parts always sum to ``gross_minor``.
    """
    if gross_minor < 0:
        raise ValueError("gross amount must be >= 0")
    gateway_fee = _fee(gross_minor, gateway_fee_rate)
    platform_fee = _fee(gross_minor, platform_fee_rate)
    return LedgerSplit(
        gateway_fee=gateway_fee,
        platform_fee=platform_fee,
        organizer_net=gross_minor - gateway_fee - platform_fee,
    )


def summarize_entries(organizer_id: UUID, entries: List[LedgerEntry], default_currency: str = "NGN") -> Dict:
    totals = {
        "organizer_id": organizer_id,
        "pending_cents": 0,
        "settled_cents": 0,
        "total_platform_fees": 0,
        "total_gateway_fees": 0,
        "currency": default_currency,
    }
    for entry in entries:
        if entry.status == LedgerStatus.PENDING:
            totals["pending_cents"] += entry.organizer_net_cents
        elif entry.status == LedgerStatus.SETTLED:
            totals["settled_cents"] += entry.organizer_net_cents
        if entry.status != LedgerStatus.REFUNDED:
            totals["total_platform_fees"] += entry.platform_fee_cents
            totals["total_gateway_fees"] += entry.gateway_fee_cents
        totals["currency"] = entry.currency or totals["currency"]
    return totals
