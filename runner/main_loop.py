"""
lp-autopilot Runner: Main Loop

Hosts the two scheduled loops:
- Allocation worker: every `scheduler.allocation_interval_hours`
- Position guardian: every `scheduler.guardian_interval_seconds`

Each loop is a PeriodicTask on its own thread. Tasks keep no state between
runs beyond what they read from the position store, so the service is safe
to restart at any point. On SIGINT/SIGTERM no new runs are scheduled and
in-flight runs finish (a chain call is never aborted mid-flight).
"""

import logging
import random
import signal
import threading
import time
from pathlib import Path
from typing import Callable, Dict, List, Optional

import yaml

from core.allocation import AllocationEngine
from core.chain import ChainCapability
from core.chain_http import HttpChainGateway
from core.chain_sim import SimulatedChain
from core.cost_model import CostModel
from core.market_repository import PoolFilters, YamlMarketRepository
from core.position_guardian import GuardianConfig, PositionGuardian
from core.rebalance_executor import RebalanceExecutor
from core.retry import RetryPolicy
from infra.alerting import AlertService
from infra.metrics import MetricsRecorder
from infra.position_store import SqlitePositionStore
from runner.allocation_worker import AllocationWorker

logger = logging.getLogger(__name__)

TASKS = ("allocation", "guardian")


class PeriodicTask:
    """
    Run `fn` every `interval_seconds` until `stop_event` is set.

    Sleep after each run = remaining interval + random jitter of up to
    `jitter_pct` percent of the interval, so several instances drift apart.
    """

    def __init__(
        self,
        name: str,
        fn: Callable[[], object],
        interval_seconds: float,
        stop_event: threading.Event,
        jitter_pct: float = 10.0,
    ):
        self.name = name
        self.fn = fn
        self.interval_seconds = max(float(interval_seconds), 0.0)
        self.stop_event = stop_event
        self.jitter_pct = max(0.0, min(float(jitter_pct), 20.0))
        self.runs = 0
        self.failures = 0
        self._thread: Optional[threading.Thread] = None

    def next_delay(self, elapsed: float) -> float:
        jitter = random.uniform(0, self.jitter_pct / 100.0) * self.interval_seconds
        return max(self.interval_seconds - elapsed, 0.0) + jitter

    def run_once(self) -> None:
        start = time.monotonic()
        try:
            self.fn()
        except Exception:
            self.failures += 1
            logger.exception("Task %s failed; will run again next interval", self.name)
        finally:
            self.runs += 1
        logger.debug("Task %s finished in %.2fs", self.name, time.monotonic() - start)

    def run(self) -> None:
        logger.info(
            "Starting task %s (interval=%.0fs, jitter=%.1f%%)",
            self.name, self.interval_seconds, self.jitter_pct,
        )
        while not self.stop_event.is_set():
            start = time.monotonic()
            self.run_once()
            self.stop_event.wait(self.next_delay(time.monotonic() - start))
        logger.info("Task %s stopped after %d run(s)", self.name, self.runs)

    def start(self) -> threading.Thread:
        self._thread = threading.Thread(target=self.run, name=f"task-{self.name}", daemon=True)
        self._thread.start()
        return self._thread

    def join(self, timeout: Optional[float] = None) -> None:
        if self._thread is not None:
            self._thread.join(timeout)


class LiquidityService:
    """
    Service orchestrator.

    Responsibilities:
    - Validate and load config
    - Build collaborators for the configured mode
    - Run the allocation and guardian loops
    - Stop gracefully on signals
    """

    def __init__(self, config_dir: str = "config", configure_logging: bool = True):
        self.config_dir = Path(config_dir)
        from tools.config_validator import validate_all_configs
        validation_errors = validate_all_configs(config_dir)
        if validation_errors:
            logger.error("=" * 80)
            logger.error("CONFIGURATION VALIDATION FAILED")
            logger.error("=" * 80)
            for idx, error in enumerate(validation_errors, start=1):
                lines = str(error).splitlines()
                if not lines:
                    continue
                logger.error(f"{idx:>2}. {lines[0]}")
            logger.error("=" * 80)
            raise ValueError(f"Invalid configuration: {len(validation_errors)} error(s) found")

        self.app_config = self._load_yaml("app.yaml")
        self.mode = self.app_config["app"]["mode"].upper()

        if configure_logging:
            self._configure_logging(self.app_config.get("logging") or {})
        logger.info(f"Starting lp-autopilot in mode={self.mode}")

        scheduler_cfg = self.app_config["scheduler"]
        self.allocation_interval_seconds = float(scheduler_cfg["allocation_interval_hours"]) * 3600.0
        self.guardian_interval_seconds = float(scheduler_cfg["guardian_interval_seconds"])
        self.jitter_pct = float(scheduler_cfg.get("jitter_pct", 10.0))

        monitoring_cfg = self.app_config.get("monitoring") or {}
        self.metrics = MetricsRecorder(
            enabled=bool(monitoring_cfg.get("metrics_enabled", False)),
            port=int(monitoring_cfg.get("metrics_port", 9100)),
        )
        alerts_cfg = self.app_config.get("alerts") or {}
        self.alerts = AlertService.from_config(bool(alerts_cfg.get("enabled", False)), alerts_cfg)

        store_cfg = self.app_config.get("store") or {}
        self.store = SqlitePositionStore(
            store_cfg.get("path", "data/positions.db"),
            timeout=float(store_cfg.get("timeout_seconds", 10.0)),
        )
        self.chain = self._build_chain(self.app_config.get("chain") or {})
        self.retry_policy = RetryPolicy.from_config(
            self.app_config.get("retry"), on_retry=self.metrics.record_chain_retry,
        )

        allocation_cfg = self.app_config.get("allocation") or {}
        self.repository = YamlMarketRepository.from_config_dir(self.config_dir)
        self.engine = AllocationEngine(CostModel(tier_overrides=allocation_cfg.get("tier_overrides")))
        logger.info("Cost model: %s", self.engine.cost_model.get_summary())
        self.executor = RebalanceExecutor(
            self.store, self.chain, retry_policy=self.retry_policy, alerts=self.alerts, metrics=self.metrics,
        )
        self.worker = AllocationWorker(
            repository=self.repository,
            store=self.store,
            chain=self.chain,
            engine=self.engine,
            executor=self.executor,
            retry_policy=self.retry_policy,
            metrics=self.metrics,
            pool_filters=PoolFilters(chain_id=allocation_cfg.get("chain_id")),
            min_wallet_balance_usd=float(allocation_cfg.get("min_wallet_balance_usd", 0.0)),
        )
        self.guardian = PositionGuardian(
            store=self.store,
            chain=self.chain,
            retry_policy=self.retry_policy,
            alerts=self.alerts,
            metrics=self.metrics,
            config=GuardianConfig.from_config(self.app_config.get("guardian")),
        )

        self._stop_event = threading.Event()
        self._tasks: List[PeriodicTask] = []
        logger.info(f"Initialized LiquidityService in {self.mode} mode")

    def _load_yaml(self, filename: str) -> dict:
        path = self.config_dir / filename
        with open(path) as f:
            return yaml.safe_load(f) or {}

    @staticmethod
    def _configure_logging(log_cfg: Dict) -> None:
        log_file = log_cfg.get("file", "logs/lp-autopilot.log")
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        logging.basicConfig(
            level=getattr(logging, log_cfg.get("level", "INFO").upper()),
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
            handlers=[logging.FileHandler(log_file), logging.StreamHandler()],
        )

    def _build_chain(self, chain_cfg: Dict) -> ChainCapability:
        if self.mode == "DRY_RUN":
            sim_cfg = chain_cfg.get("simulated") or {}
            logger.info("DRY_RUN: using simulated chain")
            return SimulatedChain(
                balances=sim_cfg.get("balances"),
                pool_ticks=sim_cfg.get("pool_ticks"),
                settle_immediately=bool(sim_cfg.get("settle_immediately", True)),
            )
        return HttpChainGateway.from_config(chain_cfg)

    def _task_fn(self, name: str) -> Callable[[], object]:
        if name == "allocation":
            return self.worker.run_cycle
        if name == "guardian":
            return self.guardian.tick
        raise ValueError(f"Unknown task: {name}")

    def _selected(self, task: str) -> List[str]:
        if task == "all":
            return list(TASKS)
        if task not in TASKS:
            raise ValueError(f"Unknown task: {task}")
        return [task]

    def run_once(self, task: str = "all") -> None:
        """Run the selected loop(s) a single time, guardian first."""
        for name in sorted(self._selected(task), key=lambda n: n != "guardian"):
            PeriodicTask(name, self._task_fn(name), 0, self._stop_event).run_once()

    def build_tasks(self, task: str = "all") -> List[PeriodicTask]:
        intervals = {
            "allocation": self.allocation_interval_seconds,
            "guardian": self.guardian_interval_seconds,
        }
        return [
            PeriodicTask(name, self._task_fn(name), intervals[name], self._stop_event, self.jitter_pct)
            for name in self._selected(task)
        ]

    def stop(self) -> None:
        self._stop_event.set()

    def _handle_stop(self, *_):
        logger.warning("=" * 80)
        logger.warning("SHUTDOWN SIGNAL RECEIVED - finishing in-flight work")
        logger.warning("=" * 80)
        self.stop()

    def run_forever(self, task: str = "all") -> None:
        signal.signal(signal.SIGINT, self._handle_stop)
        signal.signal(signal.SIGTERM, self._handle_stop)
        self.metrics.start()

        self._tasks = self.build_tasks(task)
        for periodic in self._tasks:
            periodic.start()

        while not self._stop_event.is_set():
            self._stop_event.wait(1.0)

        for periodic in self._tasks:
            periodic.join()
        logger.info("lp-autopilot stopped cleanly.")


def main():
    """Entry point"""
    import argparse

    parser = argparse.ArgumentParser(description="lp-autopilot liquidity allocation service")
    parser.add_argument("--once", action="store_true", help="Run once and exit")
    parser.add_argument("--config-dir", default="config", help="Config directory")
    parser.add_argument("--task", choices=["all", *TASKS], default="all", help="Which loop(s) to run")

    args = parser.parse_args()

    service = LiquidityService(config_dir=args.config_dir)
    if args.once:
        service.run_once(args.task)
    else:
        service.run_forever(args.task)


if __name__ == "__main__":
    main()
