"""
lp-autopilot Core: Simulated Chain

In-memory ChainCapability for DRY_RUN mode and tests. Tracks pool ticks,
wallet balances, dispatched positions and liquidation calls, and lets
callers inject failures or hold back settlement.
"""

from collections import defaultdict, deque
from typing import Deque, Dict, List, Mapping, Optional
import itertools
import logging
import threading
import time

from core.chain import (
    ChainCapability,
    DispatchReceipt,
    LiquidationReceipt,
    range_ticks,
    tick_out_of_range,
    tick_to_price,
)
from core.models import Pool, Position, RangeBounds

logger = logging.getLogger(__name__)


class SimulatedChain(ChainCapability):
    """Thread-safe fake chain."""

    def __init__(
        self,
        balances: Optional[Mapping[str, float]] = None,
        pool_ticks: Optional[Mapping[str, int]] = None,
        settle_immediately: bool = True,
        liquidation_delay: float = 0.0,
    ):
        self._lock = threading.Lock()
        self._ids = itertools.count(1)
        self.balances: Dict[str, float] = defaultdict(float, balances or {})
        self.pool_ticks: Dict[str, int] = {k.lower(): v for k, v in (pool_ticks or {}).items()}
        self.position_ticks: Dict[str, int] = {}
        self.settle_immediately = settle_immediately
        self.liquidation_delay = liquidation_delay

        self.dispatched: List[DispatchReceipt] = []
        self.liquidation_calls: List[str] = []
        self.settled: set = set()
        self._liquidated: set = set()

        self.dispatch_errors: Deque[Exception] = deque()
        self.range_errors: Deque[Exception] = deque()
        self.liquidation_errors: Deque[Exception] = deque()
        self.settlement_errors: Deque[Exception] = deque()

    # ---- test controls ---------------------------------------------------

    def set_pool_tick(self, pool_id: str, tick: int) -> None:
        with self._lock:
            self.pool_ticks[pool_id.lower()] = tick

    def set_position_tick(self, position_id: str, tick: int) -> None:
        with self._lock:
            self.position_ticks[position_id] = tick

    def settle(self, position_id: str) -> None:
        """Mark a liquidated position's funds as arrived."""
        with self._lock:
            self.settled.add(position_id)

    @staticmethod
    def _pop(errors: Deque[Exception]) -> None:
        if errors:
            raise errors.popleft()

    # ---- ChainCapability -------------------------------------------------

    def dispatch_investment(
        self,
        user_id: str,
        pool: Pool,
        amount_usd: float,
        range_bounds: RangeBounds,
    ) -> DispatchReceipt:
        with self._lock:
            self._pop(self.dispatch_errors)
            if self.balances[user_id] + 1e-9 < amount_usd:
                raise RuntimeError(
                    f"insufficient balance: {user_id} has {self.balances[user_id]:.2f}, needs {amount_usd:.2f}"
                )
            self.balances[user_id] -= amount_usd

            tick = self.pool_ticks.get(pool.pool_id.lower(), pool.current_tick or 0)
            entry_price = tick_to_price(tick)
            lower_tick, upper_tick = range_ticks(entry_price, range_bounds)
            seq = next(self._ids)
            receipt = DispatchReceipt(
                external_ref=f"sim-{seq:06d}",
                chain_position_id=str(seq),
                entry_price=entry_price,
                lower_tick=lower_tick,
                upper_tick=upper_tick,
                liquidity=amount_usd,
            )
            self.dispatched.append(receipt)

        logger.info(
            "[SIM] Dispatched $%.2f for %s into %s ticks [%d, %d)",
            amount_usd, user_id, pool.pool_id, lower_tick, upper_tick,
        )
        return receipt

    def current_tick(self, position: Position) -> Optional[int]:
        with self._lock:
            if position.position_id in self.position_ticks:
                return self.position_ticks[position.position_id]
            return self.pool_ticks.get(position.pool_id.lower())

    def is_out_of_range(self, position: Position) -> bool:
        with self._lock:
            self._pop(self.range_errors)
        tick = self.current_tick(position)
        if tick is None or position.lower_tick is None or position.upper_tick is None:
            return False
        return tick_out_of_range(tick, position.lower_tick, position.upper_tick)

    def liquidate_and_return(self, position: Position) -> LiquidationReceipt:
        with self._lock:
            self.liquidation_calls.append(position.position_id)
            self._pop(self.liquidation_errors)
        if self.liquidation_delay:
            time.sleep(self.liquidation_delay)

        loss = (position.impermanent_loss_pct or 0.0) / 100.0
        proceeds = round(position.amount_usd * (1.0 - loss), 2)
        with self._lock:
            self._liquidated.add(position.position_id)
            if self.settle_immediately:
                self.settled.add(position.position_id)
            self.balances[position.user_id] += proceeds

        logger.info("[SIM] Liquidated %s for $%.2f", position.position_id, proceeds)
        return LiquidationReceipt(proceeds_usd=proceeds, tx_ref=f"sim-liq-{position.position_id[:8]}")

    def confirm_settlement(self, position: Position) -> bool:
        with self._lock:
            self._pop(self.settlement_errors)
            return position.position_id in self.settled

    def get_user_balance(self, user_id: str) -> float:
        with self._lock:
            return round(self.balances[user_id], 2)
