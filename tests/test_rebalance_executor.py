"""
Tests for executing allocation decisions against the simulated chain.
"""
import pytest

from core.allocation import AllocationEngine
from core.chain_sim import SimulatedChain
from core.models import pools_by_id
from core.position_guardian import PositionGuardian
from core.position_state import PositionStatus
from core.rebalance_executor import RebalanceExecutor
from infra.alerting import AlertConfig, AlertService, AlertSeverity
from tests.helpers import make_strategy, scenario_pools, seed_active_position

S = PositionStatus


@pytest.fixture
def alerts():
    return AlertService(AlertConfig(
        enabled=True, webhook_url=None, min_severity=AlertSeverity.WARNING, dry_run=True,
    ))


def decide(store, balance, **strategy_overrides):
    strategy = make_strategy(**strategy_overrides)
    active = store.list_for_user(strategy.user_id, [S.ACTIVE])
    decision = AllocationEngine().decide(strategy, active, scenario_pools(), balance)
    return strategy, decision


def run(store, chain, fast_retry, balance, alerts=None, metrics=None, **overrides):
    strategy, decision = decide(store, balance, **overrides)
    executor = RebalanceExecutor(store, chain, retry_policy=fast_retry, alerts=alerts, metrics=metrics)
    return decision, executor.execute(strategy, decision, pools_by_id(scenario_pools()))


class TestAdds:

    def test_fresh_capital_opens_positions(self, store, fast_retry, metrics):
        chain = SimulatedChain(balances={"alice": 50_000})
        decision, report = run(store, chain, fast_retry, 50_000, metrics=metrics)

        assert decision.should_execute
        assert [(o.action, o.pool_id, o.status) for o in report.outcomes] == [
            ("add", "pool-b", "active"),
            ("add", "pool-c", "active"),
        ]
        opened = store.list_for_user("alice", [S.ACTIVE])
        assert sorted((p.pool_id, p.amount_usd) for p in opened) == [("pool-b", 20_000.0), ("pool-c", 20_000.0)]
        for p in opened:
            assert p.external_ref.startswith("sim-")
            assert p.lower_tick < p.upper_tick
            assert p.executed_at is not None
            assert (p.lower_range_percent, p.upper_range_percent) == (-5.0, 10.0)

        assert chain.get_user_balance("alice") == 10_000.0
        assert store.rebalance_counts("alice") == (1, 1)
        assert metrics.count("action.add.active") == 2

    def test_failed_dispatch_marks_position_failed(self, store, fast_retry, alerts):
        chain = SimulatedChain(balances={"alice": 50_000})
        chain.dispatch_errors.append(RuntimeError("execution reverted"))
        _, report = run(store, chain, fast_retry, 50_000, alerts=alerts)

        assert [o.status for o in report.outcomes] == ["failed", "active"]
        failed = store.list_for_user("alice", [S.FAILED])
        assert [p.pool_id for p in failed] == ["pool-b"]
        assert "reverted" in failed[0].last_error
        assert [a.title for a in alerts.recent_alerts()] == ["Rebalance partially failed"]
        assert store.rebalance_counts("alice") == (1, 1)

    def test_empty_wallet_defers_every_add(self, store, fast_retry):
        chain = SimulatedChain(balances={"alice": 0})
        _, report = run(store, chain, fast_retry, 50_000)

        assert [o.status for o in report.outcomes] == ["deferred", "deferred"]
        assert report.succeeded == []
        assert chain.dispatched == []
        assert sum(store.count_by_status().values()) == 0
        assert store.rebalance_counts("alice") == (0, 0)

    def test_adds_capped_at_custody_balance(self, store, fast_retry, metrics):
        chain = SimulatedChain(balances={"alice": 30_000})
        _, report = run(store, chain, fast_retry, 50_000, metrics=metrics)

        assert [(o.pool_id, o.status) for o in report.outcomes] == [
            ("pool-b", "active"), ("pool-c", "deferred"),
        ]
        assert "10000.00 left" in report.outcomes[1].error
        assert store.list_for_user("alice", [S.FAILED]) == []
        assert chain.get_user_balance("alice") == 10_000.0
        assert metrics.count("action.add.deferred") == 1


class TestWithdrawals:

    def test_withdraw_then_add(self, store, fast_retry):
        stale = seed_active_position(store, pool_id="pool-a", amount_usd=10_000)
        chain = SimulatedChain(balances={"alice": 40_000})
        _, report = run(store, chain, fast_retry, 40_000)

        assert [(o.action, o.status) for o in report.outcomes] == [
            ("withdraw", "settled"), ("add", "active"), ("add", "active"),
        ]
        loaded = store.get(stale.position_id)
        assert loaded.status == S.LIQUIDATED
        assert loaded.returned_amount == 10_000.0
        assert not loaded.liquidation_guard

    def test_pending_settlement_finished_by_guardian(self, store, fast_retry):
        stale = seed_active_position(store, pool_id="pool-a", amount_usd=10_000)
        chain = SimulatedChain(balances={"alice": 40_000}, settle_immediately=False)
        _, report = run(store, chain, fast_retry, 40_000)

        assert [o.status for o in report.outcomes] == ["pending", "deferred", "deferred"]
        assert chain.dispatched == []
        assert store.get(stale.position_id).status == S.LIQUIDATING

        chain.settle(stale.position_id)
        PositionGuardian(store, chain, retry_policy=fast_retry).tick()
        assert store.get(stale.position_id).status == S.LIQUIDATED

    def test_guard_held_elsewhere_is_conflict(self, store, fast_retry):
        stale = seed_active_position(store, pool_id="pool-a", amount_usd=10_000)
        strategy, decision = decide(store, 40_000)
        store.try_acquire_guard(stale.position_id, S.ACTIVE)
        chain = SimulatedChain(balances={"alice": 40_000})

        report = RebalanceExecutor(store, chain, retry_policy=fast_retry).execute(
            strategy, decision, pools_by_id(scenario_pools()),
        )
        assert report.outcomes[0].status == "conflict"
        assert chain.liquidation_calls == []

    def test_liquidation_failure_releases_guard(self, store, fast_retry):
        stale = seed_active_position(store, pool_id="pool-a", amount_usd=10_000)
        chain = SimulatedChain(balances={"alice": 40_000})
        chain.liquidation_errors.extend(RuntimeError("timeout") for _ in range(3))
        _, report = run(store, chain, fast_retry, 40_000)

        assert report.outcomes[0].status == "failed"
        loaded = store.get(stale.position_id)
        assert loaded.status == S.ACTIVE
        assert not loaded.liquidation_guard
        assert loaded.last_error

    def test_failed_withdrawal_defers_adds(self, store, fast_retry, alerts):
        stale = seed_active_position(store, pool_id="pool-a", amount_usd=20_000)
        chain = SimulatedChain(balances={"alice": 30_000})
        chain.liquidation_errors.append(RuntimeError("execution reverted"))
        decision, report = run(store, chain, fast_retry, 30_000, alerts=alerts)

        assert decision.should_execute
        assert [(o.action, o.pool_id, o.status) for o in report.outcomes] == [
            ("withdraw", "pool-a", "failed"),
            ("add", "pool-b", "deferred"),
            ("add", "pool-c", "deferred"),
        ]
        assert all("not settled" in o.error for o in report.deferred)
        assert chain.dispatched == []
        assert chain.get_user_balance("alice") == 30_000.0
        assert store.list_for_user("alice", [S.FAILED]) == []
        assert store.get(stale.position_id).status == S.ACTIVE
        assert store.rebalance_counts("alice") == (0, 0)
        assert [a.title for a in alerts.recent_alerts()] == ["Rebalance partially failed"]


class TestAdvisory:

    def test_blocked_decision_is_not_executed(self, store, fast_retry):
        chain = SimulatedChain(balances={"alice": 50_000})
        decision, report = run(store, chain, fast_retry, 50_000, theta_min_benefit=100.0)

        assert not decision.should_execute
        assert report.outcomes == []
        assert chain.dispatched == []
        assert store.count_by_status()["PENDING_EXECUTION"] == 0
