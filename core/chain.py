"""
lp-autopilot Core: Chain Capability

Boundary between the core loops and whatever moves funds on chain. The
core only ever talks to this interface; adapters live in chain_http
(remote execution gateway) and chain_sim (dry run and tests).
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional
import math

from core.models import Pool, Position, RangeBounds

TICK_BASE = 1.0001


@dataclass(frozen=True)
class DispatchReceipt:
    """Result of submitting an investment"""
    external_ref: str
    chain_position_id: Optional[str] = None
    entry_price: Optional[float] = None
    lower_tick: Optional[int] = None
    upper_tick: Optional[int] = None
    liquidity: Optional[float] = None


@dataclass(frozen=True)
class LiquidationReceipt:
    """Result of a liquidation call; settlement is confirmed separately"""
    proceeds_usd: float
    tx_ref: Optional[str] = None


class ChainCapability(ABC):
    """Operations the core needs from the chain. Implementations may raise any
    exception; callers classify and retry through RetryPolicy."""

    @abstractmethod
    def dispatch_investment(
        self,
        user_id: str,
        pool: Pool,
        amount_usd: float,
        range_bounds: RangeBounds,
    ) -> DispatchReceipt:
        ...

    @abstractmethod
    def is_out_of_range(self, position: Position) -> bool:
        ...

    @abstractmethod
    def liquidate_and_return(self, position: Position) -> LiquidationReceipt:
        ...

    @abstractmethod
    def confirm_settlement(self, position: Position) -> bool:
        """Idempotent; safe to poll."""
        ...

    @abstractmethod
    def get_user_balance(self, user_id: str) -> float:
        ...

    def current_tick(self, position: Position) -> Optional[int]:
        """Current pool tick if the adapter can report it."""
        return None


def price_to_tick(price: float) -> int:
    """Nearest lower tick for a price (tick spacing 1)."""
    if price <= 0:
        raise ValueError(f"price must be positive, got {price}")
    return int(math.floor(math.log(price) / math.log(TICK_BASE)))


def tick_to_price(tick: int) -> float:
    return TICK_BASE ** tick


def range_ticks(entry_price: float, bounds: RangeBounds) -> tuple:
    """Absolute (lower_tick, upper_tick) for percent offsets around entry."""
    lower_price = entry_price * (1 + bounds.lower_percent / 100.0)
    upper_price = entry_price * (1 + bounds.upper_percent / 100.0)
    if lower_price <= 0:
        raise ValueError(f"lower bound {bounds.lower_percent}% gives a non-positive price")
    return price_to_tick(lower_price), price_to_tick(upper_price)


def impermanent_loss_pct(entry_price: float, current_price: float) -> float:
    """Loss versus holding the entry tokens, in percent, after price moves from entry to current."""
    if entry_price <= 0 or current_price <= 0:
        raise ValueError(f"prices must be positive, got {entry_price} and {current_price}")
    ratio = current_price / entry_price
    return round((1.0 - 2.0 * math.sqrt(ratio) / (1.0 + ratio)) * 100.0, 4)


def tick_out_of_range(current_tick: int, lower_tick: int, upper_tick: int) -> bool:
    """A position earns fees only while lower <= tick < upper."""
    return current_tick < lower_tick or current_tick >= upper_tick


def trigger_label(current_tick: Optional[int], lower_tick: Optional[int], upper_tick: Optional[int]) -> str:
    """Why a position left its range; cosmetic only."""
    if current_tick is None or lower_tick is None or upper_tick is None:
        return "out_of_range"
    if current_tick < lower_tick:
        return "stop_loss"
    if current_tick >= upper_tick:
        return "take_profit"
    return "out_of_range"
