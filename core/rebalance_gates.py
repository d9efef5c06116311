"""
lp-autopilot Core: Rebalance Gates

A rebalance executes only if every gate passes:
- rate_limit: per-user daily and hourly rebalance caps
- gas_coverage: projected net profit must exceed a multiple of gas cost
- yield_improvement: weighted yield gap in percentage points
- utility_gain: risk/fee-adjusted utility must improve by at least θ
- impermanent_loss: withdrawn positions must not crystallize too much IL

Gates never short-circuit; every check is reported so the advisory
metadata explains exactly which ones failed.
"""

from dataclasses import dataclass, field
from typing import List, Optional, Sequence

from core.models import Position, UserStrategy

GATE_NAMES = (
    "rate_limit",
    "gas_coverage",
    "yield_improvement",
    "utility_gain",
    "impermanent_loss",
)


@dataclass(frozen=True)
class GateCheck:
    """Outcome of a single gate"""
    name: str
    passed: bool
    detail: str = ""


@dataclass(frozen=True)
class Withdrawal:
    """A position leaving the portfolio and whether the exit is forced"""
    position: Position
    forced: bool = False


@dataclass
class GateInputs:
    rebalances_today: int
    rebalances_this_hour: int
    gas_cost_usd: float
    net_profit_usd: float
    current_weighted_yield_pct: float
    ideal_weighted_yield_pct: float
    current_utility: float
    ideal_utility: float
    withdrawals: Sequence[Withdrawal] = field(default_factory=list)


@dataclass
class GateResult:
    checks: List[GateCheck]

    @property
    def passed(self) -> bool:
        return all(c.passed for c in self.checks)

    @property
    def failures(self) -> List[GateCheck]:
        return [c for c in self.checks if not c.passed]

    def get(self, name: str) -> Optional[GateCheck]:
        for check in self.checks:
            if check.name == name:
                return check
        return None


class RebalanceGates:
    """Evaluate the rebalance gates for one user's candidate rebalance."""

    def evaluate(self, strategy: UserStrategy, inputs: GateInputs) -> GateResult:
        return GateResult(checks=[
            self._check_rate_limit(strategy, inputs),
            self._check_gas_coverage(strategy, inputs),
            self._check_yield_improvement(strategy, inputs),
            self._check_utility_gain(strategy, inputs),
            self._check_impermanent_loss(strategy, inputs),
        ])

    def _check_rate_limit(self, strategy: UserStrategy, inputs: GateInputs) -> GateCheck:
        if inputs.rebalances_today >= strategy.daily_rebalance_limit:
            return GateCheck(
                "rate_limit", False,
                f"Daily rebalance limit reached ({inputs.rebalances_today}/{strategy.daily_rebalance_limit})",
            )
        if inputs.rebalances_this_hour >= strategy.hourly_rebalance_limit:
            return GateCheck(
                "rate_limit", False,
                f"Hourly rebalance limit reached ({inputs.rebalances_this_hour}/{strategy.hourly_rebalance_limit})",
            )
        return GateCheck(
            "rate_limit", True,
            f"{inputs.rebalances_today}/{strategy.daily_rebalance_limit} today, "
            f"{inputs.rebalances_this_hour}/{strategy.hourly_rebalance_limit} this hour",
        )

    def _check_gas_coverage(self, strategy: UserStrategy, inputs: GateInputs) -> GateCheck:
        required = strategy.gas_cover_multiplier * inputs.gas_cost_usd
        passed = inputs.net_profit_usd > required
        return GateCheck(
            "gas_coverage", passed,
            f"net profit ${inputs.net_profit_usd:.2f} vs required > ${required:.2f}",
        )

    def _check_yield_improvement(self, strategy: UserStrategy, inputs: GateInputs) -> GateCheck:
        gap = inputs.ideal_weighted_yield_pct - inputs.current_weighted_yield_pct
        passed = gap >= strategy.min_yield_improvement_pct
        return GateCheck(
            "yield_improvement", passed,
            f"yield gap {gap:.4f}pp vs minimum {strategy.min_yield_improvement_pct}pp",
        )

    def _check_utility_gain(self, strategy: UserStrategy, inputs: GateInputs) -> GateCheck:
        gain = inputs.ideal_utility - inputs.current_utility
        passed = gain >= strategy.theta_min_benefit
        return GateCheck(
            "utility_gain", passed,
            f"utility gain {gain:.4f} vs θ {strategy.theta_min_benefit}",
        )

    def _check_impermanent_loss(self, strategy: UserStrategy, inputs: GateInputs) -> GateCheck:
        blocking = []
        for withdrawal in inputs.withdrawals:
            il = withdrawal.position.impermanent_loss_pct
            if il is None or il < strategy.max_il_loss_pct:
                continue
            if withdrawal.forced and strategy.il_gate_exempts_forced_exits:
                continue
            blocking.append(f"{withdrawal.position.pool_id} IL {il:.2f}%")

        if blocking:
            return GateCheck(
                "impermanent_loss", False,
                f"IL at or above {strategy.max_il_loss_pct}% on: " + ", ".join(blocking),
            )
        return GateCheck("impermanent_loss", True, f"{len(inputs.withdrawals)} withdrawal(s) within IL limit")
