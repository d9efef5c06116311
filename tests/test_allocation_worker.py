"""
Tests for the allocation worker cycle (YAML repository + simulated chain).
"""
import sqlite3
from dataclasses import asdict
from unittest.mock import patch

import pytest
import yaml

from core.chain_sim import SimulatedChain
from core.exceptions import ValidationError
from core.market_repository import YamlMarketRepository
from core.position_state import PositionStatus
from runner.allocation_worker import AllocationWorker
from tests.helpers import scenario_pools


def write_config(config_dir, users, pools=None):
    config_dir.mkdir(parents=True, exist_ok=True)
    strategies = {
        "defaults": {
            "min_apy_pct": 8,
            "risk_aversion": 0.5,
            "max_positions": 3,
            "max_alloc_per_position_usd": 20000,
            "min_position_size_usd": 3000,
        },
        "users": users,
    }
    (config_dir / "strategies.yaml").write_text(yaml.safe_dump(strategies))
    if pools is None:
        pools = [asdict(p) for p in scenario_pools()]
    if pools is not False:
        (config_dir / "pools.yaml").write_text(yaml.safe_dump({"pools": pools}))


@pytest.fixture
def config_dir(tmp_path):
    path = tmp_path / "config"
    write_config(path, {
        "alice": {},
        "carol": {"auto_invest_enabled": False},
        "dave": {},
        "erin": {"max_positions": 0},
    })
    return path


@pytest.fixture
def chain():
    return SimulatedChain(balances={"alice": 50_000, "dave": 0, "erin": 50_000})


@pytest.fixture
def worker(config_dir, store, chain, fast_retry, metrics):
    return AllocationWorker(
        repository=YamlMarketRepository.from_config_dir(config_dir),
        store=store,
        chain=chain,
        retry_policy=fast_retry,
        metrics=metrics,
        min_wallet_balance_usd=100,
    )


class TestRunCycle:

    def test_statuses_per_user(self, worker, metrics):
        summary = worker.run_cycle()

        assert {r.user_id: r.status for r in summary.results} == {
            "alice": "executed",
            "dave": "skipped",
            "erin": "error",
        }
        assert metrics.count("decision.executed") == 1
        assert metrics.count("decision.error") == 1
        assert metrics.count("decision.skipped") == 0
        assert "allocation" in metrics.duration_snapshot()

    def test_executes_reference_allocation(self, worker, store, chain):
        worker.run_cycle()

        active = store.list_for_user("alice", [PositionStatus.ACTIVE])
        assert sorted((p.pool_id, p.amount_usd) for p in active) == [("pool-b", 20_000.0), ("pool-c", 20_000.0)]
        assert chain.get_user_balance("alice") == 10_000.0

    def test_second_cycle_has_nothing_to_do(self, worker, store):
        worker.run_cycle()
        summary = worker.run_cycle()

        alice = next(r for r in summary.results if r.user_id == "alice")
        assert alice.status == "empty"
        assert len(store.list_for_user("alice")) == 2

    def test_error_does_not_stop_other_users(self, worker):
        summary = worker.run_cycle()
        erin = next(r for r in summary.results if r.user_id == "erin")
        assert "max_positions" in erin.error
        assert summary.count("executed") == 1

    def test_advisory_when_gates_block(self, tmp_path, store, chain, fast_retry):
        config_dir = tmp_path / "advisory"
        write_config(config_dir, {"alice": {"theta_min_benefit": 100}})
        worker = AllocationWorker(YamlMarketRepository.from_config_dir(config_dir), store, chain, retry_policy=fast_retry)

        result = worker.run_cycle().results[0]
        assert result.status == "advisory"
        assert result.report is None
        assert chain.dispatched == []

    def test_missing_pools_file_is_per_user_error(self, tmp_path, store, chain, fast_retry):
        config_dir = tmp_path / "nopools"
        write_config(config_dir, {"alice": {}}, pools=False)
        worker = AllocationWorker(YamlMarketRepository.from_config_dir(config_dir), store, chain, retry_policy=fast_retry)

        assert [r.status for r in worker.run_cycle().results] == ["error"]

    def test_missing_strategies_aborts_cycle(self, tmp_path, store, chain, fast_retry):
        repo = YamlMarketRepository(tmp_path / "pools.yaml", tmp_path / "missing.yaml")
        worker = AllocationWorker(repo, store, chain, retry_policy=fast_retry)
        assert worker.run_cycle().results == []


class TestUserIsolation:

    @pytest.fixture
    def pair_worker(self, tmp_path, store, fast_retry):
        def build(users):
            config_dir = tmp_path / "pair"
            write_config(config_dir, users)
            chain = SimulatedChain(balances={"alice": 50_000, "bob": 50_000})
            repo = YamlMarketRepository.from_config_dir(config_dir)
            return AllocationWorker(repo, store, chain, retry_policy=fast_retry)
        return build

    def test_store_failure_for_one_user_does_not_stop_cycle(self, pair_worker, store):
        worker = pair_worker({"alice": {}, "bob": {}})
        record = store.record_rebalance

        def locked_for_alice(user_id, *args, **kwargs):
            if user_id == "alice":
                raise sqlite3.OperationalError("database is locked")
            return record(user_id, *args, **kwargs)

        with patch.object(store, "record_rebalance", side_effect=locked_for_alice):
            summary = worker.run_cycle()

        assert {r.user_id: r.status for r in summary.results} == {"alice": "error", "bob": "executed"}
        assert "OperationalError" in summary.results[0].error
        assert len(store.list_for_user("bob", [PositionStatus.ACTIVE])) == 2

    def test_mistyped_strategy_is_per_user_error(self, pair_worker, store):
        worker = pair_worker({"alice": {"max_positions": "three"}, "bob": {}})
        summary = worker.run_cycle()

        alice, bob = summary.results
        assert alice.status == "error"
        assert "max_positions" in alice.error
        assert bob.status == "executed"
        assert store.list_for_user("alice") == []


class TestPreview:

    def test_preview_does_not_execute(self, worker, chain, store):
        decision = worker.preview("alice")

        assert decision.should_execute
        assert [d.pool_id for d in decision.decisions] == ["pool-c", "pool-b"]
        assert chain.dispatched == []
        assert store.list_for_user("alice") == []

    def test_preview_unknown_user(self, worker):
        with pytest.raises(ValidationError):
            worker.preview("nobody")
