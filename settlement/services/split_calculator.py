from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal

from settlement.core.errors import InvariantViolation

BASE_SERVICE_FEE_CENTS = 50
MAX_SERVICE_FEE_CENTS = 1500
PERCENT_SERVICE_FEE = Decimal("1.5")


def _round_half_up(value: Decimal) -> int:
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


@dataclass(frozen=True)
class SplitResult:
    cash_cents: int
    equity_cents: int
    equity_units: int
    # Percentage actually applied; 0 when the split collapsed to cash.
    equity_percentage: int
    # True when a non-zero election was discarded because it rounded to zero units.
    floored_to_cash: bool = False


def calculate_split(
    gross_cents: int,
    equity_percent: int,
    share_price_cents: int | None = None,
) -> SplitResult:
    """Split a gross payable into cash and equity.

    equity = round_half_up(gross * pct / 100); cash takes the rounding residue so
    cash + equity == gross always holds. A split whose equity component buys
    zero whole units is paid entirely in cash.
    """

    gross = int(gross_cents)
    pct = int(equity_percent)
    if gross < 0:
        raise ValueError("gross_cents must be >= 0")
    if not 0 <= pct <= 100:
        raise ValueError("equity_percent must be between 0 and 100")

    if pct == 0 or not share_price_cents or int(share_price_cents) <= 0:
        return SplitResult(cash_cents=gross, equity_cents=0, equity_units=0, equity_percentage=0)

    equity_cents = _round_half_up(Decimal(gross) * Decimal(pct) / Decimal(100))
    equity_units = _round_half_up(Decimal(equity_cents) / Decimal(int(share_price_cents)))

    if equity_units == 0:
        return SplitResult(
            cash_cents=gross,
            equity_cents=0,
            equity_units=0,
            equity_percentage=0,
            floored_to_cash=True,
        )

    cash_cents = gross - equity_cents
    if cash_cents + equity_cents != gross or cash_cents < 0:
        raise InvariantViolation(
            "Split does not reconcile to gross amount",
            context={"gross_cents": gross, "cash_cents": cash_cents, "equity_cents": equity_cents},
        )

    return SplitResult(
        cash_cents=cash_cents,
        equity_cents=equity_cents,
        equity_units=equity_units,
        equity_percentage=pct,
    )


def calculate_service_fee_cents(gross_cents: int) -> int:
    """Per-obligation platform fee: 50c + 1.5% of gross, capped at $15."""

    fee = Decimal(BASE_SERVICE_FEE_CENTS) + Decimal(int(gross_cents)) * PERCENT_SERVICE_FEE / 100
    return _round_half_up(min(fee, Decimal(MAX_SERVICE_FEE_CENTS)))
