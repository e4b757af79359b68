"""Portfolio valuation over ledger holdings."""

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, Iterable, List

from coinledger.data.symbols import normalize_coin_id
from coinledger.models import Holding


@dataclass
class HoldingValue:
    """A holding valued at a market price.

    Attributes:
        coin_id: Normalized coin identifier
        coin_symbol: Display symbol
        quantity: Amount held
        current_price: Price used for valuation (0 if unknown)
        current_value: quantity × current_price
        invested_value: quantity × average_buy_price
        profit_loss: current_value - invested_value
        profit_loss_percent: profit_loss relative to invested_value, in percent
    """
    coin_id: str
    coin_symbol: str
    quantity: Decimal
    current_price: Decimal
    current_value: Decimal
    invested_value: Decimal
    profit_loss: Decimal
    profit_loss_percent: Decimal


@dataclass
class PortfolioSummary:
    """Totals across all valued holdings."""
    holdings: List[HoldingValue] = field(default_factory=list)
    total_portfolio_value: Decimal = Decimal("0")
    total_invested: Decimal = Decimal("0")
    total_profit_loss: Decimal = Decimal("0")
    total_profit_loss_percent: Decimal = Decimal("0")

    def to_dict(self) -> dict:
        """Serialize to a JSON-compatible dictionary (decimals as strings)."""
        return {
            "holdings": [
                {k: (str(v) if isinstance(v, Decimal) else v) for k, v in vars(h).items()}
                for h in self.holdings
            ],
            "total_portfolio_value": str(self.total_portfolio_value),
            "total_invested": str(self.total_invested),
            "total_profit_loss": str(self.total_profit_loss),
            "total_profit_loss_percent": str(self.total_profit_loss_percent),
        }


def _percent(part: Decimal, whole: Decimal) -> Decimal:
    if whole > 0:
        return part / whole * Decimal("100")
    return Decimal("0")


class PortfolioCalculator:
    """Values holdings against current prices.

    Uses the weighted average cost stored on each holding as cost basis.
    Holdings without a price are valued at zero.
    """

    def value_holding(self, holding: Holding, current_price: Decimal) -> HoldingValue:
        """Value one holding at the given price."""
        current_value = holding.quantity * current_price
        invested_value = holding.total_cost
        profit_loss = current_value - invested_value
        return HoldingValue(
            coin_id=normalize_coin_id(holding.coin_id),
            coin_symbol=holding.coin_symbol,
            quantity=holding.quantity,
            current_price=current_price,
            current_value=current_value,
            invested_value=invested_value,
            profit_loss=profit_loss,
            profit_loss_percent=_percent(profit_loss, invested_value),
        )

    def summarize(
        self, holdings: Iterable[Holding], prices: Dict[str, Decimal]
    ) -> PortfolioSummary:
        """Value every holding and total the results.

        Args:
            holdings: Holdings to value
            prices: Current prices keyed by coin id (any case/whitespace)

        Returns:
            PortfolioSummary with per-holding values and totals
        """
        by_coin = {normalize_coin_id(k): v for k, v in prices.items()}
        summary = PortfolioSummary()
        for holding in holdings:
            price = by_coin.get(normalize_coin_id(holding.coin_id), Decimal("0"))
            value = self.value_holding(holding, price)
            summary.holdings.append(value)
            summary.total_portfolio_value += value.current_value
            summary.total_invested += value.invested_value

        summary.total_profit_loss = summary.total_portfolio_value - summary.total_invested
        summary.total_profit_loss_percent = _percent(
            summary.total_profit_loss, summary.total_invested
        )
        return summary
