"""
lp-autopilot Runner: Allocation Worker

Runs the allocation engine for every auto-invest user.

Per user:
1. Load strategy, candidate pools, ACTIVE positions, wallet balance
2. Read that user's rebalance counters from the store
3. decide(); execute the actions only if every gate passed

A failure for one user is logged and the cycle moves on.
"""

from dataclasses import dataclass, field
from typing import List, Optional
import logging
import time

from core.allocation import AllocationDecision, AllocationEngine
from core.chain import ChainCapability
from core.exceptions import CriticalDataUnavailable, LiquidityEngineError, ValidationError
from core.market_repository import MarketRepository, PoolFilters
from core.models import pools_by_id
from core.position_state import PositionStatus
from core.rebalance_executor import ExecutionReport, RebalanceExecutor
from core.retry import RetryPolicy
from infra.metrics import MetricsRecorder
from infra.position_store import SqlitePositionStore

logger = logging.getLogger(__name__)


@dataclass
class UserCycleResult:
    user_id: str
    status: str  # executed, advisory, empty, skipped, error
    decision: Optional[AllocationDecision] = None
    report: Optional[ExecutionReport] = None
    error: Optional[str] = None


@dataclass
class CycleSummary:
    results: List[UserCycleResult] = field(default_factory=list)
    duration_seconds: float = 0.0

    def count(self, status: str) -> int:
        return sum(1 for r in self.results if r.status == status)


class AllocationWorker:

    def __init__(
        self,
        repository: MarketRepository,
        store: SqlitePositionStore,
        chain: ChainCapability,
        engine: Optional[AllocationEngine] = None,
        executor: Optional[RebalanceExecutor] = None,
        retry_policy: Optional[RetryPolicy] = None,
        metrics: Optional[MetricsRecorder] = None,
        pool_filters: Optional[PoolFilters] = None,
        min_wallet_balance_usd: float = 0.0,
    ):
        self.repository = repository
        self.store = store
        self.chain = chain
        self.engine = engine or AllocationEngine()
        self.retry = retry_policy or RetryPolicy()
        self.executor = executor or RebalanceExecutor(store, chain, retry_policy=self.retry, metrics=metrics)
        self.metrics = metrics
        self.pool_filters = pool_filters or PoolFilters()
        self.min_wallet_balance_usd = min_wallet_balance_usd

    def run_cycle(self) -> CycleSummary:
        started = time.monotonic()
        summary = CycleSummary()

        try:
            users = self.repository.list_auto_invest_users()
        except CriticalDataUnavailable as exc:
            logger.error("Allocation cycle aborted, user list unavailable: %s", exc)
            return summary

        for user_id in users:
            result = self.process_user(user_id)
            summary.results.append(result)
            if self.metrics and result.status != "skipped":
                self.metrics.record_decision(result.status)

        summary.duration_seconds = time.monotonic() - started
        if self.metrics:
            self.metrics.record_task_duration("allocation", summary.duration_seconds)
        logger.info(
            "Allocation cycle: %d users, %d executed, %d advisory, %d empty, %d skipped, %d errors in %.2fs",
            len(users), summary.count("executed"), summary.count("advisory"), summary.count("empty"),
            summary.count("skipped"), summary.count("error"), summary.duration_seconds,
        )
        return summary

    def preview(self, user_id: str) -> AllocationDecision:
        """Evaluate without executing. Raises on missing strategy or bad input."""
        decision, _ = self._evaluate(user_id)
        return decision

    def process_user(self, user_id: str) -> UserCycleResult:
        """Evaluate and execute for one user. Never raises."""
        try:
            return self._process_user(user_id)
        except LiquidityEngineError as exc:
            logger.error("Allocation for %s failed: %s", user_id, exc)
            return UserCycleResult(user_id, "error", error=str(exc))
        except Exception as exc:
            logger.exception("Allocation for %s crashed", user_id)
            return UserCycleResult(user_id, "error", error=f"{type(exc).__name__}: {exc}")

    def _process_user(self, user_id: str) -> UserCycleResult:
        strategy = self.repository.fetch_user_strategy(user_id)
        if strategy is None or not strategy.auto_invest_enabled:
            return UserCycleResult(user_id, "skipped")

        active = self.store.list_for_user(user_id, [PositionStatus.ACTIVE])
        balance = self._wallet_balance(user_id)
        if not active and balance < self.min_wallet_balance_usd:
            logger.debug("Skipping %s: balance $%.2f below minimum", user_id, balance)
            return UserCycleResult(user_id, "skipped")

        decision, pools = self._evaluate(user_id, strategy=strategy, active=active, balance=balance)
        if decision.is_empty or decision.proposed_actions.is_empty():
            return UserCycleResult(user_id, "empty", decision=decision)
        if not decision.should_execute:
            return UserCycleResult(user_id, "advisory", decision=decision)

        report = self.executor.execute(strategy, decision, pools)
        return UserCycleResult(user_id, "executed", decision=decision, report=report)

    def _wallet_balance(self, user_id: str) -> float:
        return float(self.retry.call("get_user_balance", lambda: self.chain.get_user_balance(user_id)))

    def _evaluate(self, user_id: str, strategy=None, active=None, balance=None):
        if strategy is None:
            strategy = self.repository.fetch_user_strategy(user_id)
            if strategy is None:
                raise ValidationError(f"No strategy configured for {user_id}")
        if active is None:
            active = self.store.list_for_user(user_id, [PositionStatus.ACTIVE])
        if balance is None:
            balance = self._wallet_balance(user_id)

        pools = self.repository.fetch_candidate_pools(self.pool_filters)
        today, this_hour = self.store.rebalance_counts(user_id)
        decision = self.engine.decide(
            strategy,
            active,
            pools,
            wallet_balance_usd=balance,
            rebalances_today=today,
            rebalances_this_hour=this_hour,
        )
        return decision, pools_by_id(pools)
