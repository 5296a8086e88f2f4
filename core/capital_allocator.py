"""
agent-mirror Core: Capital Allocator

Sizes the margin committed to each symbol that needs capital this tick
(ENTER and REPLACE plans). Allocations are rebuilt from scratch every tick;
nothing is reserved across ticks.

Modes (mutually exclusive, fixed for the run):
- proportional: split total_margin across the symbols, equally or weighted
  by the agent's own margin per position
- fixed: every symbol asks for fixed_amount_per_coin; requests are funded
  first-come first-funded against the available balance, never partially
"""

import logging
from typing import Dict, Iterable, List, Optional, Sequence

from core.exceptions import ConfigurationError
from core.models import CapitalAllocation, FollowPlan

logger = logging.getLogger(__name__)

PROPORTIONAL = "proportional"
FIXED = "fixed"

WEIGHTING_EQUAL = "equal"
WEIGHTING_AGENT_MARGIN = "agent_margin"


class CapitalAllocator:
    def __init__(
        self,
        total_margin: Optional[float] = None,
        fixed_amount_per_coin: Optional[float] = None,
        weighting: str = WEIGHTING_EQUAL,
    ):
        if total_margin is not None and fixed_amount_per_coin is not None:
            raise ConfigurationError("total_margin and fixed_amount_per_coin are mutually exclusive")
        if total_margin is None and fixed_amount_per_coin is None:
            raise ConfigurationError("one of total_margin or fixed_amount_per_coin is required")
        if weighting not in (WEIGHTING_EQUAL, WEIGHTING_AGENT_MARGIN):
            raise ConfigurationError(f"unknown weighting: {weighting}")

        self.total_margin = float(total_margin) if total_margin is not None else None
        self.fixed_amount_per_coin = (
            float(fixed_amount_per_coin) if fixed_amount_per_coin is not None else None
        )
        self.weighting = weighting
        self.mode = FIXED if self.fixed_amount_per_coin is not None else PROPORTIONAL

        logger.info(
            f"CapitalAllocator initialized: mode={self.mode}, total_margin={self.total_margin}, "
            f"fixed_amount_per_coin={self.fixed_amount_per_coin}, weighting={self.weighting}"
        )

    @property
    def needs_balance(self) -> bool:
        return self.mode == FIXED

    def allocate(self, plans: Sequence[FollowPlan], available_balance: Optional[float] = None) -> CapitalAllocation:
        """
        Allocate margin for the plans that need capital, in the order given.

        Args:
            plans: Follow plans for this tick (non-capital plans are ignored)
            available_balance: Free balance, required in fixed mode
        """
        symbols = [plan.symbol for plan in plans if plan.needs_capital]
        if not symbols:
            return CapitalAllocation(mode=self.mode, amounts={}, available=available_balance)

        if self.mode == FIXED:
            if available_balance is None:
                raise ValueError("available_balance is required in fixed mode")
            amounts = self.allocate_fixed(symbols, available_balance)
        else:
            weights = {plan.symbol: plan.position.margin if plan.position else 0.0
                       for plan in plans if plan.needs_capital}
            amounts = self.allocate_proportional(symbols, weights)

        return CapitalAllocation(mode=self.mode, amounts=amounts, available=available_balance)

    def allocate_proportional(self, symbols: Sequence[str], weights: Optional[Dict[str, float]] = None) -> Dict[str, float]:
        if not symbols:
            return {}

        use_weights = self.weighting == WEIGHTING_AGENT_MARGIN and weights
        if use_weights:
            clean = {s: max(float(weights.get(s) or 0.0), 0.0) for s in symbols}
            total_weight = sum(clean.values())
            if total_weight <= 0:
                logger.warning("Agent margins missing or zero, falling back to equal weighting")
                use_weights = False

        if not use_weights:
            share = self.total_margin / len(symbols)
            amounts = {symbol: share for symbol in symbols}
        else:
            amounts = {s: self.total_margin * clean[s] / total_weight for s in symbols}

        for symbol in symbols:
            logger.debug(f"Allocated {amounts[symbol]:.4f} margin to {symbol} (proportional)")
        return amounts

    def allocate_fixed(self, symbols: Iterable[str], available_balance: float) -> Dict[str, float]:
        amount = self.fixed_amount_per_coin
        balance = max(float(available_balance), 0.0)
        committed = 0.0
        amounts: Dict[str, float] = {}
        unfunded: List[str] = []

        for symbol in symbols:
            if committed + amount <= balance:
                amounts[symbol] = amount
                committed += amount
            else:
                amounts[symbol] = 0.0
                unfunded.append(symbol)

        if unfunded:
            logger.warning(
                f"Insufficient balance for {unfunded}: need {amount:.2f} each, "
                f"available {balance - committed:.2f} of {balance:.2f}"
            )
        return amounts
