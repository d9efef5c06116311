"""
Tests for the service loop: periodic scheduling and single-shot runs.
"""
import shutil
import threading
from pathlib import Path

import pytest
import yaml
from unittest.mock import patch

from core.chain_sim import SimulatedChain
from core.position_state import PositionStatus
from runner.main_loop import LiquidityService, PeriodicTask

REPO_CONFIG = Path(__file__).resolve().parent.parent / "config"


@pytest.fixture
def config_dir(tmp_path):
    target = tmp_path / "config"
    shutil.copytree(REPO_CONFIG, target)
    app = yaml.safe_load((target / "app.yaml").read_text())
    app["store"]["path"] = str(tmp_path / "data" / "positions.db")
    app["retry"]["base_delay_seconds"] = 0.0
    app["retry"]["max_delay_seconds"] = 0.0
    (target / "app.yaml").write_text(yaml.safe_dump(app))
    return target


class TestPeriodicTask:

    def test_failures_are_contained(self):
        def boom():
            raise RuntimeError("boom")

        task = PeriodicTask("x", boom, 10, threading.Event())
        task.run_once()
        task.run_once()
        assert task.runs == 2
        assert task.failures == 2

    def test_jitter_added_to_remaining_interval(self):
        task = PeriodicTask("x", lambda: None, 100, threading.Event(), jitter_pct=10)
        with patch("runner.main_loop.random.uniform", return_value=0.05) as uniform:
            assert task.next_delay(elapsed=30) == pytest.approx(75.0)
        uniform.assert_called_once_with(0, 0.1)

    def test_overrun_does_not_go_negative(self):
        task = PeriodicTask("x", lambda: None, 10, threading.Event(), jitter_pct=0)
        assert task.next_delay(elapsed=25) == 0.0

    def test_jitter_clamped(self):
        assert PeriodicTask("x", lambda: None, 1, threading.Event(), jitter_pct=90).jitter_pct == 20.0

    def test_stops_when_event_set(self):
        stop = threading.Event()
        calls = []

        def work():
            calls.append(1)
            if len(calls) == 3:
                stop.set()

        task = PeriodicTask("x", work, 0, stop, jitter_pct=0)
        task.start()
        task.join(timeout=5)
        assert len(calls) == 3


class TestLiquidityService:

    def test_builds_dry_run_service(self, config_dir, caplog):
        with caplog.at_level("INFO", logger="runner.main_loop"):
            service = LiquidityService(str(config_dir), configure_logging=False)
        assert "withdraw_gas_multiplier" in caplog.text
        assert service.mode == "DRY_RUN"
        assert isinstance(service.chain, SimulatedChain)
        assert service.guardian_interval_seconds == 30.0
        assert service.allocation_interval_seconds == 6 * 3600.0
        assert [t.name for t in service.build_tasks("all")] == ["allocation", "guardian"]

    def test_invalid_config_refuses_to_start(self, config_dir):
        app = yaml.safe_load((config_dir / "app.yaml").read_text())
        app["app"]["mode"] = "PAPER"
        (config_dir / "app.yaml").write_text(yaml.safe_dump(app))

        with pytest.raises(ValueError, match="Invalid configuration"):
            LiquidityService(str(config_dir), configure_logging=False)

    def test_run_once_allocates_and_guards(self, config_dir):
        service = LiquidityService(str(config_dir), configure_logging=False)
        service.run_once("allocation")

        alice = service.store.list_for_user("alice", [PositionStatus.ACTIVE])
        bob = service.store.list_for_user("bob", [PositionStatus.ACTIVE])
        assert len(alice) == 3
        assert sorted(p.pool_id for p in bob) == ["moonwell-usdc-usdt", "stellaswap-weth-usdc"]
        assert service.store.list_for_user("carol") == []

        target = alice[0]
        service.chain.set_position_tick(target.position_id, target.upper_tick + 10)
        service.run_once("guardian")
        assert service.store.get(target.position_id).status == PositionStatus.LIQUIDATED

    def test_unknown_task(self, config_dir):
        service = LiquidityService(str(config_dir), configure_logging=False)
        with pytest.raises(ValueError):
            service.run_once("trading")
