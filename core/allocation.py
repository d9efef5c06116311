"""
lp-autopilot Core: Allocation Engine

Decides, per user, which pools to hold and whether moving there is worth it.

Pipeline (pure, no I/O):
1. Filter candidates by the user's strategy
2. Score: real = apy - risk*100, effective = real - λ*risk*100 (negative excluded)
3. Rank by effective yield, then TVL, then pool id
4. Greedy allocate into the ideal portfolio
5. Diff ideal vs current positions
6. Gas cost, 30-day projection, utility
7. Gates: actions are returned only if every gate passes

Identical inputs always produce an identical decision.
"""

from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple
import hashlib
import json
import logging

from core.cost_model import CostModel, PoolScore, round2
from core.exceptions import ValidationError
from core.models import Pool, Position, UserStrategy
from core.position_state import PositionStatus
from core.rebalance_gates import GateCheck, GateInputs, RebalanceGates, Withdrawal

logger = logging.getLogger(__name__)

REASON_NO_CAPITAL = "No deposit amount specified"
REASON_NO_ELIGIBLE = "No eligible pools matching strategy"
REASON_NO_CHANGES = "No changes required"


@dataclass(frozen=True)
class ScoredPool:
    pool: Pool
    score: PoolScore

    @property
    def pool_id(self) -> str:
        return self.pool.pool_id


@dataclass(frozen=True)
class PoolAllocation:
    """One line of the ideal portfolio"""
    pool_id: str
    token0_symbol: str
    token1_symbol: str
    dex_name: str
    allocation_usd: float
    effective_yield_pct: float
    real_yield_pct: float
    risk_factor: float
    tvl_usd: float


@dataclass(frozen=True)
class AllocationAdjustment:
    """A pool held on both sides whose size changes enough to re-enter"""
    pool_id: str
    from_allocation_usd: float
    to_allocation_usd: float


@dataclass
class RebalanceActions:
    to_withdraw: List[Position] = field(default_factory=list)
    to_add: List[PoolAllocation] = field(default_factory=list)
    to_adjust: List[AllocationAdjustment] = field(default_factory=list)

    def is_empty(self) -> bool:
        return not (self.to_withdraw or self.to_add or self.to_adjust)

    def summary(self) -> Dict[str, Any]:
        return {
            "withdraw": [p.pool_id for p in self.to_withdraw],
            "add": [(a.pool_id, a.allocation_usd) for a in self.to_add],
            "adjust": [(a.pool_id, a.from_allocation_usd, a.to_allocation_usd) for a in self.to_adjust],
        }


@dataclass(frozen=True)
class DecisionMetrics:
    total_capital_usd: float = 0.0
    current_weighted_yield_pct: float = 0.0
    ideal_weighted_yield_pct: float = 0.0
    gas_cost_usd: float = 0.0
    projected_profit_30d_usd: float = 0.0
    net_profit_30d_usd: float = 0.0
    current_utility: float = 0.0
    ideal_utility: float = 0.0

    @property
    def yield_gap_pct(self) -> float:
        return round(self.ideal_weighted_yield_pct - self.current_weighted_yield_pct, 4)

    @property
    def utility_gain(self) -> float:
        return round(self.ideal_utility - self.current_utility, 4)


@dataclass
class AllocationDecision:
    """
    Result of one evaluation.

    `decisions` is the ideal portfolio and is always populated when there
    is something to allocate. `actions` is non-empty only when every gate
    passed; `proposed_actions` carries the diff regardless, as advice.
    """
    decision_id: str
    user_id: str
    decisions: List[PoolAllocation] = field(default_factory=list)
    actions: RebalanceActions = field(default_factory=RebalanceActions)
    proposed_actions: RebalanceActions = field(default_factory=RebalanceActions)
    metrics: DecisionMetrics = field(default_factory=DecisionMetrics)
    gates: List[GateCheck] = field(default_factory=list)
    eligible: List[ScoredPool] = field(default_factory=list)
    reasons: List[str] = field(default_factory=list)
    unallocated_usd: float = 0.0

    @property
    def should_execute(self) -> bool:
        return not self.actions.is_empty()

    @property
    def reason(self) -> Optional[str]:
        return self.reasons[0] if self.reasons else None

    @property
    def is_empty(self) -> bool:
        return not self.decisions

    @property
    def metadata(self) -> Dict[str, Any]:
        """Advisory view for logs and preview callers"""
        return {
            "decision_id": self.decision_id,
            "should_execute": self.should_execute,
            "reasons": list(self.reasons),
            "metrics": {
                **asdict(self.metrics),
                "yield_gap_pct": self.metrics.yield_gap_pct,
                "utility_gain": self.metrics.utility_gain,
            },
            "gates": {g.name: g.passed for g in self.gates},
            "proposed_actions": self.proposed_actions.summary(),
            "unallocated_usd": self.unallocated_usd,
        }


def _decision_id(
    strategy: UserStrategy,
    current_positions: Sequence[Position],
    candidate_pools: Sequence[Pool],
    wallet_balance_usd: float,
    rebalances_today: int,
    rebalances_this_hour: int,
) -> str:
    strategy_fields = asdict(strategy)
    strategy_fields["allowed_tokens"] = sorted(strategy.allowed_tokens)
    strategy_fields["allowed_dex_names"] = sorted(strategy.allowed_dex_names)
    payload = {
        "strategy": strategy_fields,
        "wallet": round2(wallet_balance_usd),
        "rebalances": [rebalances_today, rebalances_this_hour],
        "pools": sorted(
            (p.pool_id.lower(), p.tvl_usd, p.apy_pct, p.age_days, p.is_active)
            for p in candidate_pools
        ),
        "current": sorted(
            (p.position_id, p.pool_id.lower(), p.amount_usd, p.impermanent_loss_pct or 0.0)
            for p in current_positions
        ),
    }
    digest = hashlib.sha256(json.dumps(payload, sort_keys=True, default=str).encode("utf-8")).hexdigest()
    return f"dec_{digest[:16]}"


class AllocationEngine:
    """
    Portfolio optimizer for one user at a time.

    Stateless apart from configuration; safe to call concurrently and
    speculatively (previews).
    """

    def __init__(self, cost_model: Optional[CostModel] = None, gates: Optional[RebalanceGates] = None):
        self.cost_model = cost_model or CostModel()
        self.gates = gates or RebalanceGates()

    # ---- pipeline steps -------------------------------------------------

    def filter_candidates(self, strategy: UserStrategy, pools: Sequence[Pool]) -> List[Pool]:
        """Keep pools that satisfy every strategy threshold."""
        return [
            p for p in pools
            if p.is_active
            and p.tvl_usd >= strategy.min_tvl_usd
            and p.age_days >= strategy.min_pool_age_days
            and p.apy_pct >= strategy.min_apy_pct
            and strategy.allows_pool_tokens(p)
            and strategy.allows_dex(p)
        ]

    def score_and_rank(self, strategy: UserStrategy, pools: Sequence[Pool]) -> List[ScoredPool]:
        """Score pools, drop negative effective yield, rank best first."""
        scored = []
        for pool in pools:
            score = self.cost_model.score_pool(pool, strategy.risk_aversion)
            if score.effective_yield_pct < 0:
                logger.debug(
                    "Excluding %s (%s): effective yield %.4f%% < 0",
                    pool.pool_id, pool.pair, score.effective_yield_pct,
                )
                continue
            scored.append(ScoredPool(pool, score))

        scored.sort(key=lambda s: (-s.score.effective_yield_pct, -s.pool.tvl_usd, s.pool.pool_id.lower()))
        return scored

    def build_ideal_portfolio(
        self,
        strategy: UserStrategy,
        ranked: Sequence[ScoredPool],
        total_capital_usd: float,
    ) -> Tuple[List[PoolAllocation], float]:
        """
        Greedy allocation over ranked candidates.

        Each pick gets min(cap, remaining, remaining / positions still
        needed), where positions still needed is bounded by both the open
        slots and the candidates left. Picks below the minimum size are
        skipped.

        Returns:
            (ideal portfolio, unallocated capital)
        """
        portfolio: List[PoolAllocation] = []
        remaining = total_capital_usd

        for index, candidate in enumerate(ranked):
            if len(portfolio) >= strategy.max_positions or remaining <= 0:
                break

            candidates_left = len(ranked) - index
            still_needed = max(1, min(strategy.max_positions - len(portfolio), candidates_left))
            allocation = round2(min(
                strategy.max_alloc_per_position_usd,
                remaining,
                remaining / still_needed,
            ))
            if allocation < strategy.min_position_size_usd:
                logger.debug(
                    "Skipping %s: allocation $%.2f below minimum $%.2f",
                    candidate.pool_id, allocation, strategy.min_position_size_usd,
                )
                continue

            pool, score = candidate.pool, candidate.score
            portfolio.append(PoolAllocation(
                pool_id=pool.pool_id,
                token0_symbol=pool.token0_symbol,
                token1_symbol=pool.token1_symbol,
                dex_name=pool.dex_name,
                allocation_usd=allocation,
                effective_yield_pct=score.effective_yield_pct,
                real_yield_pct=score.real_yield_pct,
                risk_factor=score.risk_factor,
                tvl_usd=pool.tvl_usd,
            ))
            remaining = round2(remaining - allocation)

        return portfolio, round2(max(remaining, 0.0))

    def diff_portfolio(
        self,
        strategy: UserStrategy,
        current_positions: Sequence[Position],
        ideal: Sequence[PoolAllocation],
    ) -> RebalanceActions:
        """
        Compare current holdings to the ideal portfolio by pool identity.

        A pool held on both sides whose size moves by more than the
        allocation delta threshold is withdrawn and re-added.
        """
        ideal_by_pool = {a.pool_id.lower(): a for a in ideal}
        current_by_pool: Dict[str, List[Position]] = {}
        for position in current_positions:
            current_by_pool.setdefault(position.pool_id.lower(), []).append(position)

        actions = RebalanceActions()
        for key, positions in current_by_pool.items():
            target = ideal_by_pool.get(key)
            if target is None:
                actions.to_withdraw.extend(positions)
                continue

            held = round2(sum(p.amount_usd for p in positions))
            if _delta_pct(held, target.allocation_usd) > strategy.allocation_delta_threshold_pct:
                actions.to_withdraw.extend(positions)
                actions.to_add.append(target)
                actions.to_adjust.append(AllocationAdjustment(target.pool_id, held, target.allocation_usd))

        for key, target in ideal_by_pool.items():
            if key not in current_by_pool:
                actions.to_add.append(target)

        actions.to_withdraw.sort(key=lambda p: (p.pool_id.lower(), p.position_id))
        actions.to_add.sort(key=lambda a: a.pool_id.lower())
        actions.to_adjust.sort(key=lambda a: a.pool_id.lower())
        return actions

    # ---- entry point ----------------------------------------------------

    def decide(
        self,
        strategy: UserStrategy,
        current_positions: Sequence[Position],
        candidate_pools: Sequence[Pool],
        wallet_balance_usd: float,
        rebalances_today: int = 0,
        rebalances_this_hour: int = 0,
    ) -> AllocationDecision:
        """
        Evaluate a user's portfolio.

        Args:
            strategy: User's allocation parameters
            current_positions: User's positions; only ACTIVE ones are considered
            candidate_pools: Market snapshot for this cycle
            wallet_balance_usd: Idle capital in custody
            rebalances_today: Rebalances already executed for this user today
            rebalances_this_hour: Rebalances already executed this hour

        Returns:
            AllocationDecision; empty with a reason when there is nothing to do

        Raises:
            ValidationError: Malformed strategy, pool or balance
        """
        strategy.validate()
        for pool in candidate_pools:
            pool.validate()
        if wallet_balance_usd is None or wallet_balance_usd < 0:
            raise ValidationError(f"Wallet balance must be non-negative, got {wallet_balance_usd}")

        active = [p for p in current_positions if p.status == PositionStatus.ACTIVE]
        decision_id = _decision_id(
            strategy, active, candidate_pools, wallet_balance_usd, rebalances_today, rebalances_this_hour,
        )
        total_capital = round2(wallet_balance_usd + sum(p.amount_usd for p in active))

        if total_capital <= 0:
            logger.info("User %s: %s", strategy.user_id, REASON_NO_CAPITAL)
            return AllocationDecision(decision_id, strategy.user_id, reasons=[REASON_NO_CAPITAL])

        ranked = self.score_and_rank(strategy, self.filter_candidates(strategy, candidate_pools))
        if not ranked:
            logger.info("User %s: %s (%d candidates)", strategy.user_id, REASON_NO_ELIGIBLE, len(candidate_pools))
            return AllocationDecision(
                decision_id, strategy.user_id,
                reasons=[REASON_NO_ELIGIBLE],
                unallocated_usd=total_capital,
            )

        ideal, unallocated = self.build_ideal_portfolio(strategy, ranked, total_capital)
        if not ideal:
            reason = f"No pool can take the minimum position size (${strategy.min_position_size_usd:,.0f})"
            return AllocationDecision(
                decision_id, strategy.user_id,
                eligible=list(ranked),
                reasons=[reason],
                unallocated_usd=total_capital,
            )

        proposed = self.diff_portfolio(strategy, active, ideal)
        metrics = self._metrics(strategy, active, candidate_pools, ideal, proposed, total_capital)

        if proposed.is_empty():
            decision = AllocationDecision(
                decision_id, strategy.user_id,
                decisions=ideal,
                metrics=metrics,
                eligible=list(ranked),
                reasons=[REASON_NO_CHANGES],
                unallocated_usd=unallocated,
            )
            logger.info("User %s: %s", strategy.user_id, REASON_NO_CHANGES)
            return decision

        eligible_ids = {s.pool_id.lower() for s in ranked}
        withdrawals = [
            Withdrawal(position=p, forced=p.pool_id.lower() not in eligible_ids)
            for p in proposed.to_withdraw
        ]
        gate_result = self.gates.evaluate(strategy, GateInputs(
            rebalances_today=rebalances_today,
            rebalances_this_hour=rebalances_this_hour,
            gas_cost_usd=metrics.gas_cost_usd,
            net_profit_usd=metrics.net_profit_30d_usd,
            current_weighted_yield_pct=metrics.current_weighted_yield_pct,
            ideal_weighted_yield_pct=metrics.ideal_weighted_yield_pct,
            current_utility=metrics.current_utility,
            ideal_utility=metrics.ideal_utility,
            withdrawals=withdrawals,
        ))

        reasons = [c.detail for c in gate_result.failures]
        decision = AllocationDecision(
            decision_id, strategy.user_id,
            decisions=ideal,
            actions=proposed if gate_result.passed else RebalanceActions(),
            proposed_actions=proposed,
            metrics=metrics,
            gates=gate_result.checks,
            eligible=list(ranked),
            reasons=reasons,
            unallocated_usd=unallocated,
        )

        logger.info(
            "User %s decision %s: execute=%s ideal=%d pools gap=%.4fpp net=$%.2f gas=$%.2f%s",
            strategy.user_id, decision_id, decision.should_execute, len(ideal),
            metrics.yield_gap_pct, metrics.net_profit_30d_usd, metrics.gas_cost_usd,
            f" blocked by {[c.name for c in gate_result.failures]}" if reasons else "",
        )
        return decision

    def _metrics(
        self,
        strategy: UserStrategy,
        active: Sequence[Position],
        candidate_pools: Sequence[Pool],
        ideal: Sequence[PoolAllocation],
        actions: RebalanceActions,
        total_capital: float,
    ) -> DecisionMetrics:
        cm = self.cost_model
        snapshot = {p.pool_id.lower(): p for p in candidate_pools}

        current_items = []
        for position in active:
            pool = snapshot.get(position.pool_id.lower())
            if pool is None:
                current_items.append((position.amount_usd, 0.0, 0.0, 0.0))
                continue
            score = cm.score_pool(pool, strategy.risk_aversion)
            current_items.append((position.amount_usd, score.effective_yield_pct, score.real_yield_pct, score.risk_factor))

        current_weighted = cm.weighted_yield_pct([(a, eff) for a, eff, _, _ in current_items], total_capital)
        ideal_weighted = cm.weighted_yield_pct([(a.allocation_usd, a.effective_yield_pct) for a in ideal], total_capital)

        gas_cost = cm.estimate_gas_usd(len(actions.to_withdraw), len(actions.to_add), strategy.expected_gas_usd)
        profit = cm.projected_profit_usd(current_weighted, ideal_weighted, total_capital)

        fees_pct = cm.fees_pct_of_capital(gas_cost, total_capital)
        current_utility = cm.portfolio_utility(
            [(a, real, risk) for a, _, real, risk in current_items],
            total_capital, strategy.risk_aversion,
        )
        ideal_utility = cm.portfolio_utility(
            [(a.allocation_usd, a.real_yield_pct, a.risk_factor) for a in ideal],
            total_capital, strategy.risk_aversion, fees_pct=fees_pct,
        )

        return DecisionMetrics(
            total_capital_usd=total_capital,
            current_weighted_yield_pct=current_weighted,
            ideal_weighted_yield_pct=ideal_weighted,
            gas_cost_usd=gas_cost,
            projected_profit_30d_usd=profit,
            net_profit_30d_usd=round2(profit - gas_cost),
            current_utility=current_utility,
            ideal_utility=ideal_utility,
        )


def _delta_pct(current_usd: float, ideal_usd: float) -> float:
    if current_usd <= 0:
        return 100.0
    return abs(ideal_usd - current_usd) / current_usd * 100.0
