# backend/coinfolio/services/ledger/summary.py
"""
Portfolio summary over a user's holdings.

- total_invested: Σ total_cost (remaining cost basis)
- total_value: Σ current_price × total_quantity (coins without a quote count as 0)
- planned_profit: Σ desired_sell_price × total_quantity (unset targets count as 0)

Pure: reads only the values passed in, never the database or the network.
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Iterable

from coinfolio.services.constants import LEDGER_QUANTUM

ZERO = Decimal("0")


@dataclass(frozen=True)
class SummaryLine:
    """The numbers of one holding that the summary needs."""

    total_quantity: Decimal
    total_cost: Decimal
    current_price: Decimal | None = None
    desired_sell_price: Decimal | None = None


@dataclass(frozen=True)
class PortfolioSummary:
    total_invested: Decimal
    total_value: Decimal
    planned_profit: Decimal
    holdings_count: int
    unpriced_count: int

    @property
    def unrealized_pnl(self) -> Decimal:
        return self.total_value - self.total_invested


def compute_portfolio_summary(lines: Iterable[SummaryLine]) -> PortfolioSummary:
    invested = ZERO
    value = ZERO
    planned = ZERO
    count = 0
    unpriced = 0

    for line in lines:
        count += 1
        invested += line.total_cost

        if line.current_price is None:
            unpriced += 1
        else:
            value += line.current_price * line.total_quantity

        if line.desired_sell_price is not None:
            planned += line.desired_sell_price * line.total_quantity

    return PortfolioSummary(
        total_invested=invested.quantize(LEDGER_QUANTUM),
        total_value=value.quantize(LEDGER_QUANTUM),
        planned_profit=planned.quantize(LEDGER_QUANTUM),
        holdings_count=count,
        unpriced_count=unpriced,
    )
