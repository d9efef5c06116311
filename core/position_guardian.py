"""
lp-autopilot Core: Position Guardian

Supervises open liquidity positions and exits them when price leaves the
configured range (stop-loss below the lower tick, take-profit above the
upper tick).

Per sweep:
1. Poll settlement for positions already LIQUIDATING
2. Check a bounded page of ACTIVE positions on a worker pool
3. Out of range -> take the guard (ACTIVE -> OUT_OF_RANGE), liquidate,
   move to LIQUIDATING, and finish at LIQUIDATED once settlement lands

Liquidation is at-most-once: only the caller whose conditional update wins
the guard may call the chain. A liquidation that fails after retries leaves
the position OUT_OF_RANGE with the guard cleared and raises an operator
alert; it is not retried automatically.
"""

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import List, Optional
import logging
import time

from core.chain import ChainCapability, impermanent_loss_pct, tick_to_price, trigger_label
from core.exceptions import (
    FatalLiquidationError,
    PermanentChainError,
    SettlementPendingError,
    StateConflictError,
    TransientChainError,
)
from core.models import Position
from core.position_state import PositionStatus, can_transition
from core.retry import RetryPolicy
from infra.alerting import AlertService, AlertSeverity
from infra.metrics import MetricsRecorder
from infra.position_store import SqlitePositionStore

logger = logging.getLogger(__name__)


@dataclass
class GuardianConfig:
    batch_size: int = 50
    max_workers: int = 4
    settlement_page_size: int = 100

    @classmethod
    def from_config(cls, raw: Optional[dict]) -> "GuardianConfig":
        raw = raw or {}
        return cls(
            batch_size=int(raw.get("batch_size", 50)),
            max_workers=int(raw.get("max_workers", 4)),
            settlement_page_size=int(raw.get("settlement_page_size", 100)),
        )


@dataclass
class LiquidationResult:
    """What happened to one position during a sweep"""
    position_id: str
    user_id: str
    pool_id: str
    outcome: str  # settled, pending, conflict, failed, error, emergency
    trigger: str = "out_of_range"
    returned_amount: Optional[float] = None
    error: Optional[str] = None

    @classmethod
    def for_position(cls, position: Position, outcome: str, **kwargs) -> "LiquidationResult":
        return cls(position.position_id, position.user_id, position.pool_id, outcome, **kwargs)


class PositionGuardian:

    def __init__(
        self,
        store: SqlitePositionStore,
        chain: ChainCapability,
        retry_policy: Optional[RetryPolicy] = None,
        alerts: Optional[AlertService] = None,
        metrics: Optional[MetricsRecorder] = None,
        config: Optional[GuardianConfig] = None,
    ):
        self.store = store
        self.chain = chain
        self.retry = retry_policy or RetryPolicy()
        self.alerts = alerts
        self.metrics = metrics
        self.config = config or GuardianConfig()

    # ---- sweep ----------------------------------------------------------

    def tick(self) -> List[LiquidationResult]:
        """Run one sweep. In-flight chain calls always finish before returning."""
        started = time.monotonic()
        results: List[LiquidationResult] = list(self.poll_settlements())

        active = self.store.list_by_status(PositionStatus.ACTIVE, limit=self.config.batch_size)
        if active:
            workers = max(1, min(self.config.max_workers, len(active)))
            with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="guardian") as pool:
                futures = [(p, pool.submit(self.check_position, p)) for p in active]
                for position, future in futures:
                    try:
                        result = future.result()
                    except Exception as exc:
                        logger.exception("Guardian check crashed for %s", position.position_id)
                        result = LiquidationResult.for_position(position, "error", error=str(exc))
                    if result is not None:
                        results.append(result)

        duration = time.monotonic() - started
        if self.metrics:
            troubled = any(r.outcome in ("error", "failed") for r in results)
            self.metrics.record_sweep("error" if troubled else "ok")
            self.metrics.record_task_duration("guardian", duration)
            self.metrics.record_position_counts(self.store.count_by_status())

        if results:
            logger.info(
                "Guardian sweep: %d active checked, %d actions (%s) in %.2fs",
                len(active), len(results),
                ", ".join(sorted({r.outcome for r in results})), duration,
            )
        else:
            logger.debug("Guardian sweep: %d active checked, all in range", len(active))
        return results

    def check_position(self, position: Position) -> Optional[LiquidationResult]:
        """Range-check one position and liquidate it if needed. None when in range."""
        try:
            out_of_range = self.retry.call("is_out_of_range", lambda: self.chain.is_out_of_range(position))
        except (TransientChainError, PermanentChainError) as exc:
            logger.warning("Range check failed for %s: %s", position.position_id, exc)
            return LiquidationResult.for_position(position, "error", error=str(exc))

        if not out_of_range:
            self._refresh_impermanent_loss(position)
            return None

        trigger = self._trigger(position)
        logger.warning(
            "Position %s (%s, %s) out of range [%s, %s): %s",
            position.position_id, position.user_id, position.pool_id,
            position.lower_tick, position.upper_tick, trigger,
        )
        try:
            return self.liquidate_position(position, trigger=trigger)
        except StateConflictError as exc:
            logger.info("Skipping %s: %s", position.position_id, exc.detail)
            return LiquidationResult.for_position(position, "conflict", trigger=trigger)
        except SettlementPendingError:
            return LiquidationResult.for_position(position, "pending", trigger=trigger)
        except FatalLiquidationError as exc:
            return LiquidationResult.for_position(position, "failed", trigger=trigger, error=str(exc.original))

    def liquidate_position(self, position: Position, trigger: str = "out_of_range") -> LiquidationResult:
        """
        Acquire the guard and drive the position to LIQUIDATED.

        Raises:
            StateConflictError: Another worker holds the guard or status moved on
            SettlementPendingError: Liquidated, waiting for funds to arrive
            FatalLiquidationError: Liquidation call failed; operator needed
        """
        acquired = self.store.try_acquire_guard(
            position.position_id, PositionStatus.ACTIVE, PositionStatus.OUT_OF_RANGE,
        )
        if not acquired:
            if self.metrics:
                self.metrics.record_liquidation("conflict")
            raise StateConflictError(position.position_id, "liquidation guard already held")
        return self._liquidate_locked(position.position_id, trigger)

    def retry_liquidation(self, position_id: str) -> LiquidationResult:
        """Operator path: re-attempt one position stuck in OUT_OF_RANGE."""
        if not self.store.try_acquire_guard(position_id, PositionStatus.OUT_OF_RANGE):
            raise StateConflictError(position_id, "not OUT_OF_RANGE or guard held")
        logger.info("Operator retry of liquidation for %s", position_id)
        return self._liquidate_locked(position_id, "operator_retry")

    def _liquidate_locked(self, position_id: str, trigger: str) -> LiquidationResult:
        position = self.store.get(position_id)
        if position is None:
            raise StateConflictError(position_id, "position disappeared")

        try:
            receipt = self.retry.call(
                "liquidate_and_return", lambda: self.chain.liquidate_and_return(position),
            )
        except (TransientChainError, PermanentChainError) as exc:
            self.store.release_guard(position_id, last_error=str(exc))
            if self.metrics:
                self.metrics.record_liquidation("failed")
            logger.error("Liquidation failed for %s: %s", position_id, exc)
            if self.alerts:
                self.alerts.notify(
                    AlertSeverity.CRITICAL,
                    "Position requires manual intervention",
                    f"Liquidation of {position_id} failed ({trigger}): {exc}",
                    context=position.to_dict(),
                )
            raise FatalLiquidationError(position_id, exc) from exc

        moved = self.store.transition(
            position_id,
            PositionStatus.OUT_OF_RANGE,
            PositionStatus.LIQUIDATING,
            fields={"expected_proceeds": receipt.proceeds_usd, "last_error": None},
            require_guard=True,
        )
        if not moved:
            logger.error("Position %s changed under a held guard after liquidation", position_id)
            raise StateConflictError(position_id, "status changed while guard held")

        logger.info("Liquidation sent for %s: expected $%.2f (%s)", position_id, receipt.proceeds_usd, trigger)
        return self._settle(
            position.with_updates(status=PositionStatus.LIQUIDATING, expected_proceeds=receipt.proceeds_usd),
            trigger,
        )

    # ---- settlement -----------------------------------------------------

    def poll_settlements(self) -> List[LiquidationResult]:
        """Finish positions whose liquidation was sent in an earlier sweep."""
        results = []
        for position in self.store.list_by_status(
            PositionStatus.LIQUIDATING, limit=self.config.settlement_page_size,
        ):
            try:
                results.append(self._settle(position, "settlement"))
            except SettlementPendingError:
                results.append(LiquidationResult.for_position(position, "pending", trigger="settlement"))
            except StateConflictError:
                results.append(LiquidationResult.for_position(position, "conflict", trigger="settlement"))
        return results

    def _settle(self, position: Position, trigger: str) -> LiquidationResult:
        try:
            confirmed = self.retry.call(
                "confirm_settlement", lambda: self.chain.confirm_settlement(position),
            )
        except (TransientChainError, PermanentChainError) as exc:
            logger.warning("Settlement check failed for %s: %s", position.position_id, exc)
            confirmed = False

        if not confirmed:
            if self.metrics:
                self.metrics.record_liquidation("pending")
            logger.info("Settlement pending for %s", position.position_id)
            raise SettlementPendingError(position.position_id)

        returned = position.expected_proceeds if position.expected_proceeds is not None else 0.0
        done = self.store.transition(
            position.position_id,
            PositionStatus.LIQUIDATING,
            PositionStatus.LIQUIDATED,
            fields={"returned_amount": returned, "liquidated_at": datetime.now(timezone.utc)},
            release_guard=True,
        )
        if not done:
            raise StateConflictError(position.position_id, "settlement already recorded")

        if self.metrics:
            self.metrics.record_liquidation("settled")
        logger.info(
            "Position %s LIQUIDATED: returned $%.2f to %s (%s)",
            position.position_id, returned, position.user_id, trigger,
        )
        return LiquidationResult.for_position(position, "settled", trigger=trigger, returned_amount=returned)

    # ---- operator paths -------------------------------------------------

    def emergency_liquidate(
        self,
        position_id: str,
        returned_amount: Optional[float] = None,
        operator: str = "operator",
    ) -> LiquidationResult:
        """Admin edge: any non-terminal status straight to LIQUIDATED, bypassing the guard."""
        position = self.store.get(position_id)
        if position is None:
            raise StateConflictError(position_id, "unknown position")
        if not can_transition(position.status, PositionStatus.LIQUIDATED, emergency=True):
            raise StateConflictError(position_id, f"already terminal ({position.status.value})")

        if not self.store.force_liquidate(position_id, returned_amount, note=f"emergency by {operator}"):
            raise StateConflictError(position_id, "emergency liquidation lost a race")

        logger.warning("EMERGENCY liquidation of %s by %s (was %s)", position_id, operator, position.status.value)
        if self.alerts:
            self.alerts.notify(
                AlertSeverity.WARNING,
                "Emergency liquidation",
                f"{operator} force-liquidated {position_id} from {position.status.value}",
                context=position.to_dict(),
            )
        return LiquidationResult.for_position(
            position, "emergency", trigger="emergency", returned_amount=returned_amount,
        )

    def positions_needing_attention(self) -> List[Position]:
        """Stuck exits and failed dispatches an operator should look at."""
        return (
            self.store.list_by_status(PositionStatus.OUT_OF_RANGE)
            + self.store.list_by_status(PositionStatus.FAILED)
        )

    def _current_tick(self, position: Position) -> Optional[int]:
        try:
            return self.chain.current_tick(position)
        except Exception as exc:
            logger.debug("No current tick for %s: %s", position.position_id, exc)
            return None

    def _trigger(self, position: Position) -> str:
        return trigger_label(self._current_tick(position), position.lower_tick, position.upper_tick)

    def _refresh_impermanent_loss(self, position: Position) -> None:
        """Store IL for an in-range position; the allocation IL gate reads it."""
        if not position.entry_price or position.entry_price <= 0:
            return
        tick = self._current_tick(position)
        if tick is None:
            return
        il = impermanent_loss_pct(position.entry_price, tick_to_price(tick))
        if il != position.impermanent_loss_pct:
            self.store.update_impermanent_loss(position.position_id, il)
            logger.debug("Position %s impermanent loss now %.4f%%", position.position_id, il)
