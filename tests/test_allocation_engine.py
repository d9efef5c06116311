"""
Tests for the allocation engine.

Covers:
- Candidate filtering and ranking
- Greedy ideal portfolio construction
- Diff of current vs ideal holdings
- Empty decisions and their reasons
- Determinism of decide()
"""
import pytest

from core.allocation import (
    REASON_NO_CAPITAL,
    REASON_NO_CHANGES,
    REASON_NO_ELIGIBLE,
    AllocationEngine,
)
from core.exceptions import ValidationError
from core.position_state import PositionStatus
from tests.helpers import make_pool, make_position, make_strategy, scenario_pools


@pytest.fixture
def engine():
    return AllocationEngine()


class TestReferenceScenario:
    """$50k into A (high risk), B (blue-chip/stable), C (stable/stable)"""

    def test_ideal_portfolio(self, engine):
        decision = engine.decide(make_strategy(), [], scenario_pools(), wallet_balance_usd=50_000)

        assert [(d.pool_id, d.allocation_usd) for d in decision.decisions] == [
            ("pool-c", 20_000.0),
            ("pool-b", 20_000.0),
        ]
        assert decision.unallocated_usd == 10_000.0

    def test_negative_effective_yield_excluded(self, engine):
        decision = engine.decide(make_strategy(), [], scenario_pools(), wallet_balance_usd=50_000)

        assert "pool-a" not in {s.pool_id for s in decision.eligible}
        assert all(s.score.effective_yield_pct >= 0 for s in decision.eligible)

    def test_fresh_capital_is_executable(self, engine):
        decision = engine.decide(make_strategy(), [], scenario_pools(), wallet_balance_usd=50_000)

        assert decision.should_execute
        assert [a.pool_id for a in decision.actions.to_add] == ["pool-b", "pool-c"]
        assert decision.actions.to_withdraw == []
        assert decision.metrics.total_capital_usd == 50_000.0
        assert decision.metrics.current_weighted_yield_pct == 0.0
        assert decision.metrics.ideal_weighted_yield_pct == pytest.approx(9.2)
        assert decision.metrics.gas_cost_usd == pytest.approx(3.2)
        assert decision.reasons == []

    def test_allocations_respect_cap_and_capital(self, engine):
        decision = engine.decide(make_strategy(), [], scenario_pools(), wallet_balance_usd=50_000)

        total = sum(d.allocation_usd for d in decision.decisions)
        assert total <= decision.metrics.total_capital_usd
        assert all(d.allocation_usd <= 20_000 for d in decision.decisions)
        assert len(decision.decisions) <= 3


class TestDeterminism:

    def test_same_inputs_same_decision(self, engine):
        positions = [make_position(pool_id="pool-c", amount_usd=10_000, position_id="p1")]
        first = engine.decide(make_strategy(), positions, scenario_pools(), 40_000)
        second = engine.decide(make_strategy(), positions, list(reversed(scenario_pools())), 40_000)

        assert first.decision_id == second.decision_id
        assert first.decision_id.startswith("dec_")
        assert first.decisions == second.decisions
        assert first.metadata == second.metadata

    def test_different_balance_changes_id(self, engine):
        a = engine.decide(make_strategy(), [], scenario_pools(), 50_000)
        b = engine.decide(make_strategy(), [], scenario_pools(), 50_001)
        assert a.decision_id != b.decision_id


class TestFilteringAndRanking:

    def test_strategy_thresholds(self, engine):
        strategy = make_strategy(min_tvl_usd=2_000_000, min_pool_age_days=30)
        pools = [
            make_pool("young", age_days=10),
            make_pool("small", tvl_usd=500_000),
            make_pool("low-apy", apy_pct=5.0),
            make_pool("inactive", is_active=False),
            make_pool("ok"),
        ]
        assert [p.pool_id for p in engine.filter_candidates(strategy, pools)] == ["ok"]

    def test_min_apy_is_inclusive(self, engine):
        pools = [make_pool("edge", apy_pct=8.0)]
        assert engine.filter_candidates(make_strategy(min_apy_pct=8.0), pools)

    def test_allowed_tokens_and_dexes(self, engine):
        strategy = make_strategy(allowed_tokens=["usdc", "USDT"], allowed_dex_names=["StellaSwap"])
        pools = [
            make_pool("both-ok", dex_name="stellaswap"),
            make_pool("wrong-dex", dex_name="beamswap"),
            make_pool("wrong-token", token1="DAI", dex_name="stellaswap"),
        ]
        assert [p.pool_id for p in engine.filter_candidates(strategy, pools)] == ["both-ok"]

    def test_ranking_tie_breaks(self, engine):
        pools = [
            make_pool("Zeta", apy_pct=12.0, tvl_usd=2_000_000),
            make_pool("alpha", apy_pct=12.0, tvl_usd=2_000_000),
            make_pool("big", apy_pct=12.0, tvl_usd=9_000_000),
            make_pool("best", apy_pct=14.0, tvl_usd=1_000_000),
        ]
        ranked = engine.score_and_rank(make_strategy(), pools)
        assert [s.pool_id for s in ranked] == ["best", "big", "alpha", "Zeta"]


class TestGreedyAllocation:

    def test_max_positions_one(self, engine):
        strategy = make_strategy(max_positions=1)
        ranked = engine.score_and_rank(strategy, scenario_pools())
        portfolio, unallocated = engine.build_ideal_portfolio(strategy, ranked, 50_000)

        assert [(p.pool_id, p.allocation_usd) for p in portfolio] == [("pool-c", 20_000.0)]
        assert unallocated == 30_000.0

    def test_even_split_below_cap(self, engine):
        strategy = make_strategy(max_alloc_per_position_usd=50_000)
        ranked = engine.score_and_rank(strategy, scenario_pools())
        portfolio, unallocated = engine.build_ideal_portfolio(strategy, ranked, 30_000)

        assert [p.allocation_usd for p in portfolio] == [15_000.0, 15_000.0]
        assert unallocated == 0.0

    def test_below_minimum_share_skipped(self, engine):
        strategy = make_strategy()
        ranked = engine.score_and_rank(strategy, scenario_pools())
        portfolio, unallocated = engine.build_ideal_portfolio(strategy, ranked, 5_000)

        # Splitting $5k two ways is below the $3k minimum; the last candidate takes it all
        assert [(p.pool_id, p.allocation_usd) for p in portfolio] == [("pool-b", 5_000.0)]
        assert unallocated == 0.0


class TestDiff:

    def test_existing_ideal_holdings_need_no_changes(self, engine):
        positions = [
            make_position(pool_id="pool-c", amount_usd=20_000),
            make_position(pool_id="POOL-B", amount_usd=20_000),
        ]
        decision = engine.decide(make_strategy(), positions, scenario_pools(), 10_000)

        assert decision.reason == REASON_NO_CHANGES
        assert not decision.should_execute
        assert not decision.is_empty
        assert decision.proposed_actions.is_empty()

    def test_undersized_holding_is_adjusted(self, engine):
        held = make_position(pool_id="pool-c", amount_usd=10_000)
        decision = engine.decide(make_strategy(), [held], scenario_pools(), 40_000)

        actions = decision.proposed_actions
        assert [p.position_id for p in actions.to_withdraw] == [held.position_id]
        assert [a.pool_id for a in actions.to_add] == ["pool-b", "pool-c"]
        assert [(a.pool_id, a.from_allocation_usd, a.to_allocation_usd) for a in actions.to_adjust] == [
            ("pool-c", 10_000.0, 20_000.0),
        ]

    def test_small_delta_is_left_alone(self, engine):
        strategy = make_strategy()
        ideal = engine.build_ideal_portfolio(strategy, engine.score_and_rank(strategy, scenario_pools()), 50_000)[0]
        held = [make_position(pool_id="pool-c", amount_usd=19_500)]

        actions = engine.diff_portfolio(strategy, held, ideal)
        assert actions.to_withdraw == []
        assert [a.pool_id for a in actions.to_add] == ["pool-b"]

    def test_split_positions_in_one_pool_are_summed(self, engine):
        strategy = make_strategy()
        ideal = engine.build_ideal_portfolio(strategy, engine.score_and_rank(strategy, scenario_pools()), 50_000)[0]
        held = [
            make_position(pool_id="pool-c", amount_usd=10_000),
            make_position(pool_id="pool-c", amount_usd=10_000),
        ]
        actions = engine.diff_portfolio(strategy, held, ideal)
        assert actions.to_withdraw == []
        assert actions.to_adjust == []

    def test_only_active_positions_considered(self, engine):
        pending = make_position(pool_id="pool-a", status=PositionStatus.PENDING_EXECUTION)
        decision = engine.decide(make_strategy(), [pending], scenario_pools(), 50_000)
        assert decision.proposed_actions.to_withdraw == []
        assert decision.metrics.total_capital_usd == 50_000.0


class TestForcedExits:

    def _decide(self, engine, **strategy_overrides):
        stale = make_position(pool_id="pool-a", amount_usd=10_000, impermanent_loss_pct=8.0)
        return stale, engine.decide(make_strategy(**strategy_overrides), [stale], scenario_pools(), 40_000)

    def test_ineligible_pool_is_withdrawn_despite_il(self, engine):
        stale, decision = self._decide(engine)
        assert decision.should_execute
        assert [p.position_id for p in decision.actions.to_withdraw] == [stale.position_id]

    def test_il_blocks_when_forced_exits_not_exempt(self, engine):
        _, decision = self._decide(engine, il_gate_exempts_forced_exits=False)
        assert not decision.should_execute
        assert decision.actions.is_empty()
        assert not decision.proposed_actions.is_empty()
        assert any("IL" in r for r in decision.reasons)

    def test_missing_pool_counts_as_zero_yield(self, engine):
        gone = make_position(pool_id="delisted", amount_usd=10_000)
        decision = engine.decide(make_strategy(), [gone], scenario_pools(), 40_000)
        assert decision.metrics.current_weighted_yield_pct == 0.0
        assert [p.pool_id for p in decision.proposed_actions.to_withdraw] == ["delisted"]


class TestGatesInDecision:

    def test_rate_limit_blocks_but_keeps_advice(self, engine):
        decision = engine.decide(make_strategy(), [], scenario_pools(), 50_000, rebalances_today=8)
        assert not decision.should_execute
        assert decision.reasons == ["Daily rebalance limit reached (8/8)"]
        assert [a.pool_id for a in decision.proposed_actions.to_add] == ["pool-b", "pool-c"]
        assert decision.metadata["gates"]["rate_limit"] is False

    def test_hourly_limit(self, engine):
        decision = engine.decide(make_strategy(), [], scenario_pools(), 50_000, rebalances_this_hour=2)
        assert not decision.should_execute
        assert "Hourly" in decision.reason

    def test_expensive_gas_blocks(self, engine):
        decision = engine.decide(make_strategy(expected_gas_usd=1_000), [], scenario_pools(), 50_000)
        assert not decision.should_execute
        assert [c.name for c in decision.gates if not c.passed] == ["gas_coverage"]

    def test_small_gap_blocks(self, engine):
        held = make_position(pool_id="pool-b", amount_usd=20_000)
        decision = engine.decide(
            make_strategy(min_yield_improvement_pct=10.0), [held], scenario_pools(), 30_000,
        )
        assert not decision.should_execute
        assert [c.name for c in decision.gates if not c.passed] == ["yield_improvement"]

    def test_theta_blocks(self, engine):
        decision = engine.decide(make_strategy(theta_min_benefit=100.0), [], scenario_pools(), 50_000)
        assert [c.name for c in decision.gates if not c.passed] == ["utility_gain"]


class TestEmptyDecisions:

    def test_no_capital(self, engine):
        decision = engine.decide(make_strategy(), [], scenario_pools(), 0)
        assert decision.is_empty
        assert decision.reason == REASON_NO_CAPITAL

    def test_no_eligible_pools(self, engine):
        decision = engine.decide(make_strategy(min_apy_pct=50), [], scenario_pools(), 50_000)
        assert decision.reason == REASON_NO_ELIGIBLE
        assert decision.unallocated_usd == 50_000.0

    def test_minimum_size_unreachable(self, engine):
        decision = engine.decide(make_strategy(min_position_size_usd=30_000), [], scenario_pools(), 50_000)
        assert decision.is_empty
        assert decision.reason.startswith("No pool can take the minimum position size")


class TestValidation:

    def test_negative_balance(self, engine):
        with pytest.raises(ValidationError):
            engine.decide(make_strategy(), [], scenario_pools(), -1)

    def test_bad_max_positions(self, engine):
        with pytest.raises(ValidationError):
            engine.decide(make_strategy(max_positions=0), [], scenario_pools(), 1_000)

    def test_non_numeric_strategy_field(self, engine):
        with pytest.raises(ValidationError, match="max_positions must be a number"):
            engine.decide(make_strategy(max_positions="three"), [], scenario_pools(), 1_000)

    def test_inverted_range(self, engine):
        with pytest.raises(ValidationError):
            engine.decide(make_strategy(lower_range_percent=10, upper_range_percent=5), [], scenario_pools(), 1_000)

    def test_nan_pool_field(self, engine):
        with pytest.raises(ValidationError):
            engine.decide(make_strategy(), [], [make_pool(apy_pct=float("nan"))], 1_000)
