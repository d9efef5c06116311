"""
lp-autopilot Core: Rebalance Executor

Carries out the actions of an executable AllocationDecision.

Withdrawals run first:
- take the guard on the ACTIVE position (status unchanged)
- liquidate, move ACTIVE -> LIQUIDATING, poll settlement once
  (a pending settlement is finished by the guardian sweep)

Additions are funded only from settled custody. If any withdrawal failed or
is still settling, every addition is deferred to a later cycle. Otherwise
the wallet balance is read once and each addition must fit what is left of
it; one that does not is deferred instead of dispatched.

Additions:
- create a PENDING_EXECUTION position with the user's range
- dispatch the investment, then PENDING_EXECUTION -> ACTIVE or -> FAILED

Each action is independent: one failing never aborts the rest.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional
import logging

from core.allocation import AllocationDecision, PoolAllocation
from core.chain import ChainCapability
from core.exceptions import PermanentChainError, TransientChainError
from core.models import Pool, Position, UserStrategy
from core.position_state import PositionStatus
from core.retry import RetryPolicy
from infra.alerting import AlertService, AlertSeverity
from infra.metrics import MetricsRecorder
from infra.position_store import SqlitePositionStore

logger = logging.getLogger(__name__)

BALANCE_TOLERANCE_USD = 0.01


@dataclass
class ActionOutcome:
    action: str  # withdraw / add
    pool_id: str
    status: str  # settled, pending, conflict, active, failed, deferred
    position_id: Optional[str] = None
    amount_usd: float = 0.0
    error: Optional[str] = None


@dataclass
class ExecutionReport:
    user_id: str
    decision_id: str
    outcomes: List[ActionOutcome] = field(default_factory=list)

    @property
    def succeeded(self) -> List[ActionOutcome]:
        return [o for o in self.outcomes if o.status in ("settled", "pending", "active")]

    @property
    def failed(self) -> List[ActionOutcome]:
        return [o for o in self.outcomes if o.status in ("failed", "conflict")]

    @property
    def deferred(self) -> List[ActionOutcome]:
        return [o for o in self.outcomes if o.status == "deferred"]


class RebalanceExecutor:

    def __init__(
        self,
        store: SqlitePositionStore,
        chain: ChainCapability,
        retry_policy: Optional[RetryPolicy] = None,
        alerts: Optional[AlertService] = None,
        metrics: Optional[MetricsRecorder] = None,
    ):
        self.store = store
        self.chain = chain
        self.retry = retry_policy or RetryPolicy()
        self.alerts = alerts
        self.metrics = metrics

    def execute(
        self,
        strategy: UserStrategy,
        decision: AllocationDecision,
        pools: Dict[str, Pool],
    ) -> ExecutionReport:
        """
        Execute a decision's actions for one user.

        Args:
            strategy: The user's strategy (range defaults, base asset)
            decision: Decision with should_execute True
            pools: Candidate pools indexed by lower-cased pool id

        Returns:
            ExecutionReport with one outcome per action
        """
        report = ExecutionReport(strategy.user_id, decision.decision_id)
        if not decision.should_execute:
            logger.debug("Decision %s is advisory only; nothing to execute", decision.decision_id)
            return report

        withdrawals = [self._withdraw(position) for position in decision.actions.to_withdraw]
        report.outcomes.extend(withdrawals)

        unsettled = [o for o in withdrawals if o.status != "settled"]
        if unsettled:
            hold_reason = f"{len(unsettled)} withdrawal(s) not settled"
            available = None
        else:
            hold_reason = "custody balance unavailable"
            available = self._custody_balance(strategy.user_id)

        for allocation in decision.actions.to_add:
            if available is None:
                report.outcomes.append(self._deferred(allocation, hold_reason))
                continue
            if allocation.allocation_usd > available + BALANCE_TOLERANCE_USD:
                report.outcomes.append(self._deferred(
                    allocation,
                    f"insufficient custody balance: {available:.2f} left, needs {allocation.allocation_usd:.2f}",
                ))
                continue
            outcome = self._add(strategy, allocation, pools.get(allocation.pool_id.lower()))
            if outcome.status == "active":
                available -= allocation.allocation_usd
            report.outcomes.append(outcome)

        for outcome in report.outcomes:
            if self.metrics:
                self.metrics.record_action(outcome.action, outcome.status)

        if report.succeeded:
            self.store.record_rebalance(strategy.user_id, decision.decision_id)

        logger.info(
            "Rebalance %s for %s: %d ok, %d failed, %d deferred",
            decision.decision_id, strategy.user_id,
            len(report.succeeded), len(report.failed), len(report.deferred),
        )
        if report.failed and self.alerts:
            self.alerts.notify(
                AlertSeverity.WARNING,
                "Rebalance partially failed",
                f"{len(report.failed)} of {len(report.outcomes)} actions failed for {strategy.user_id}",
                context={"decision_id": decision.decision_id,
                         "failed": [(o.action, o.pool_id, o.error) for o in report.failed]},
            )
        return report

    def _custody_balance(self, user_id: str) -> Optional[float]:
        try:
            return float(self.retry.call("get_user_balance", lambda: self.chain.get_user_balance(user_id)))
        except (TransientChainError, PermanentChainError) as exc:
            logger.warning("Balance read for %s failed, deferring additions: %s", user_id, exc)
            return None

    @staticmethod
    def _deferred(allocation: PoolAllocation, reason: str) -> ActionOutcome:
        logger.info("Add into %s deferred: %s", allocation.pool_id, reason)
        return ActionOutcome("add", allocation.pool_id, "deferred",
                             amount_usd=allocation.allocation_usd, error=reason)

    def _withdraw(self, position: Position) -> ActionOutcome:
        outcome = ActionOutcome("withdraw", position.pool_id, "conflict",
                                position_id=position.position_id, amount_usd=position.amount_usd)

        if not self.store.try_acquire_guard(position.position_id, PositionStatus.ACTIVE):
            outcome.error = "position not ACTIVE or guard held"
            logger.info("Withdraw of %s skipped: %s", position.position_id, outcome.error)
            return outcome

        try:
            receipt = self.retry.call(
                "liquidate_and_return", lambda: self.chain.liquidate_and_return(position),
            )
        except (TransientChainError, PermanentChainError) as exc:
            self.store.release_guard(position.position_id, last_error=str(exc))
            outcome.status, outcome.error = "failed", str(exc)
            logger.error("Withdraw of %s failed: %s", position.position_id, exc)
            return outcome

        moved = self.store.transition(
            position.position_id,
            PositionStatus.ACTIVE,
            PositionStatus.LIQUIDATING,
            fields={"expected_proceeds": receipt.proceeds_usd},
            require_guard=True,
        )
        if not moved:
            outcome.error = "status changed while guard held"
            logger.error("Withdraw of %s: %s", position.position_id, outcome.error)
            return outcome

        outcome.status = "pending"
        try:
            settled = self.retry.call("confirm_settlement", lambda: self.chain.confirm_settlement(position))
        except (TransientChainError, PermanentChainError) as exc:
            logger.warning("Settlement check for %s failed: %s", position.position_id, exc)
            settled = False

        if settled and self.store.transition(
            position.position_id,
            PositionStatus.LIQUIDATING,
            PositionStatus.LIQUIDATED,
            fields={"returned_amount": receipt.proceeds_usd, "liquidated_at": datetime.now(timezone.utc)},
            release_guard=True,
        ):
            outcome.status = "settled"
        return outcome

    def _add(self, strategy: UserStrategy, allocation: PoolAllocation, pool: Optional[Pool]) -> ActionOutcome:
        outcome = ActionOutcome("add", allocation.pool_id, "failed", amount_usd=allocation.allocation_usd)
        if pool is None:
            outcome.error = "pool missing from snapshot"
            return outcome

        position = self.store.create(Position(
            user_id=strategy.user_id,
            pool_id=pool.pool_id,
            amount_usd=allocation.allocation_usd,
            lower_range_percent=strategy.lower_range_percent,
            upper_range_percent=strategy.upper_range_percent,
            base_asset=strategy.base_asset,
            chain_id=pool.chain_id,
        ))
        outcome.position_id = position.position_id

        try:
            receipt = self.retry.call(
                "dispatch_investment",
                lambda: self.chain.dispatch_investment(
                    strategy.user_id, pool, allocation.allocation_usd, strategy.range_bounds,
                ),
            )
        except (TransientChainError, PermanentChainError) as exc:
            self.store.transition(
                position.position_id, PositionStatus.PENDING_EXECUTION, PositionStatus.FAILED,
                fields={"last_error": str(exc)},
            )
            outcome.error = str(exc)
            logger.error("Dispatch into %s for %s failed: %s", pool.pool_id, strategy.user_id, exc)
            return outcome

        self.store.transition(
            position.position_id,
            PositionStatus.PENDING_EXECUTION,
            PositionStatus.ACTIVE,
            fields={
                "external_ref": receipt.external_ref,
                "chain_position_id": receipt.chain_position_id,
                "entry_price": receipt.entry_price,
                "lower_tick": receipt.lower_tick,
                "upper_tick": receipt.upper_tick,
                "liquidity": receipt.liquidity,
                "executed_at": datetime.now(timezone.utc),
            },
        )
        outcome.status = "active"
        logger.info(
            "Opened %s: $%.2f in %s for %s (ref %s)",
            position.position_id, allocation.allocation_usd, pool.pool_id, strategy.user_id, receipt.external_ref,
        )
        return outcome
