"""
lp-autopilot Core: Cost Model

Yield scoring, rebalance gas cost, profit projection and portfolio utility.
Single source of truth for the numbers the allocation gates compare.
"""

from dataclasses import dataclass
from typing import Iterable, Mapping, Optional, Tuple
import logging

from core.models import Pool
from core.risk_classifier import pool_risk_factor

logger = logging.getLogger(__name__)


def round2(value: float) -> float:
    return round(float(value) + 0.0, 2)


def round4(value: float) -> float:
    return round(float(value) + 0.0, 4)


@dataclass(frozen=True)
class PoolScore:
    """Risk-adjusted yield of a pool (all yields in percent)"""
    risk_factor: float
    real_yield_pct: float  # advertised - risk * 100
    effective_yield_pct: float  # real - λ * risk * 100


@dataclass
class CostConfig:
    """Cost model configuration"""
    # A withdrawal is a remove plus a possible swap, an add is a swap plus a mint
    withdraw_gas_multiplier: float = 1.8
    add_gas_multiplier: float = 1.6
    projection_days: float = 30.0
    days_per_year: float = 365.0


class CostModel:
    """
    Cost and yield math for allocation decisions.

    Used by:
    - AllocationEngine: scoring and ranking candidate pools
    - RebalanceGates: gas coverage, yield improvement and utility gain
    """

    def __init__(self, config: Optional[CostConfig] = None, tier_overrides: Optional[Mapping[str, str]] = None):
        self.config = config or CostConfig()
        self.tier_overrides = dict(tier_overrides or {})

    def score_pool(self, pool: Pool, risk_aversion: float) -> PoolScore:
        """
        Score a pool under the user's risk aversion.

        Args:
            pool: Candidate pool
            risk_aversion: λ in [0, 1]

        Returns:
            PoolScore with real and effective yield
        """
        risk = pool_risk_factor(pool, self.tier_overrides)
        real_yield = pool.apy_pct - risk * 100.0
        effective_yield = real_yield - risk_aversion * risk * 100.0
        return PoolScore(
            risk_factor=risk,
            real_yield_pct=round4(real_yield),
            effective_yield_pct=round4(effective_yield),
        )

    def estimate_gas_usd(self, withdraw_count: int, add_count: int, expected_gas_usd: float) -> float:
        """Total gas cost of a rebalance in USD."""
        units = (
            withdraw_count * self.config.withdraw_gas_multiplier
            + add_count * self.config.add_gas_multiplier
        )
        return round2(units * expected_gas_usd)

    @staticmethod
    def weighted_yield_pct(items: Iterable[Tuple[float, float]], total_capital_usd: float) -> float:
        """
        Capital-weighted yield of a portfolio.

        Args:
            items: (allocation_usd, yield_pct) pairs
            total_capital_usd: Denominator; unallocated capital earns nothing

        Returns:
            Weighted yield in percent
        """
        if total_capital_usd <= 0:
            return 0.0
        weighted = sum(alloc * yld for alloc, yld in items)
        return round4(weighted / total_capital_usd)

    def projected_profit_usd(
        self,
        current_weighted_pct: float,
        ideal_weighted_pct: float,
        total_capital_usd: float,
    ) -> float:
        """Extra profit over the projection window if the ideal portfolio replaces the current one."""
        gap = ideal_weighted_pct - current_weighted_pct
        window = self.config.projection_days / self.config.days_per_year
        return round2((gap / 100.0) * total_capital_usd * window)

    @staticmethod
    def portfolio_utility(
        items: Iterable[Tuple[float, float, float]],
        total_capital_usd: float,
        risk_aversion: float,
        fees_pct: float = 0.0,
    ) -> float:
        """
        Utility = Σ weight_i × (yield_i − λ × risk_i × 100 − fees_i).

        Args:
            items: (allocation_usd, real_yield_pct, risk_factor) triples
            total_capital_usd: Capital the weights are relative to
            risk_aversion: λ
            fees_pct: Per-position fee charge in percent points

        Returns:
            Utility in percent points
        """
        if total_capital_usd <= 0:
            return 0.0
        utility = 0.0
        for alloc, real_yield, risk in items:
            weight = alloc / total_capital_usd
            utility += weight * (real_yield - risk_aversion * risk * 100.0 - fees_pct)
        return round4(utility)

    def fees_pct_of_capital(self, gas_cost_usd: float, total_capital_usd: float) -> float:
        """Express a one-off gas cost as percent points of capital."""
        if total_capital_usd <= 0:
            return 0.0
        return round4(gas_cost_usd / total_capital_usd * 100.0)

    def get_summary(self) -> dict:
        """Get cost model configuration summary for logging"""
        return {
            "withdraw_gas_multiplier": self.config.withdraw_gas_multiplier,
            "add_gas_multiplier": self.config.add_gas_multiplier,
            "projection_days": self.config.projection_days,
            "tier_overrides": len(self.tier_overrides),
        }
