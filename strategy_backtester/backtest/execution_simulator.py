"""
Execution cost model for backtesting.

Models the two costs a closed trade carries:
- Slippage: fills are worsened by a fixed number of basis points
- Transaction costs: a flat charge per order plus a percentage of notional
"""

import logging
from typing import Optional

from pydantic import BaseModel, Field

from strategy_backtester.config.config_schema import TransactionCostConfig
from strategy_backtester.strategy.strategy_types import Side

logger = logging.getLogger(__name__)


class ExecutionResult(BaseModel):
    """Fill prices and costs of one round-trip leg."""
    entry_fill: float = Field(..., description="Entry price after slippage")
    exit_fill: float = Field(..., description="Exit price after slippage")
    slippage: float = Field(..., ge=0, description="Total slippage in money terms")
    transaction_cost: float = Field(..., ge=0, description="Fixed + notional charges")


class TransactionCostModel:
    """
    Applies slippage and transaction costs to closed legs.

    cost = 2 x fixed_cost_per_order + cost_pct_of_notional% x (entry notional + exit notional)
    """

    def __init__(self, config: Optional[TransactionCostConfig] = None):
        """
        Initialize cost model.

        Args:
            config: Transaction cost configuration
        """
        self.config = config or TransactionCostConfig()
        logger.info("TransactionCostModel initialized")
        logger.info(f"  Fixed cost: {self.config.fixed_cost_per_order}/order, "
                    f"notional: {self.config.cost_pct_of_notional}%, slippage: {self.config.slippage_bps} bps")

    def fill_price(self, price: float, side: Side) -> float:
        """Price actually paid (BUY) or received (SELL) for an order at price"""
        adjustment = price * self.config.slippage_bps / 10000
        return price + adjustment if side == Side.BUY else price - adjustment

    def transaction_cost(self, entry_price: float, exit_price: float, quantity: int) -> float:
        notional = (abs(entry_price) + abs(exit_price)) * quantity
        return 2 * self.config.fixed_cost_per_order + notional * self.config.cost_pct_of_notional / 100

    def execute_round_trip(
        self,
        side: Side,
        entry_price: float,
        exit_price: float,
        quantity: int
    ) -> ExecutionResult:
        """
        Price a closed leg.

        Args:
            side: Side of the entry order
            entry_price: Reference entry price
            exit_price: Reference exit price
            quantity: Units traded

        Returns:
            ExecutionResult with fills and costs
        """
        entry_fill = self.fill_price(entry_price, side)
        exit_fill = self.fill_price(exit_price, side.opposite)
        slippage = (abs(entry_fill - entry_price) + abs(exit_fill - exit_price)) * quantity

        return ExecutionResult(
            entry_fill=entry_fill,
            exit_fill=exit_fill,
            slippage=slippage,
            transaction_cost=self.transaction_cost(entry_fill, exit_fill, quantity),
        )
