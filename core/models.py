"""
lp-autopilot Core: Domain Models

Pools, user strategies and positions shared by the allocation engine,
the position guardian and the position store.
"""

from dataclasses import dataclass, field, fields, replace
from datetime import datetime, timezone
from typing import Any, Dict, FrozenSet, Iterable, Optional
import math
import uuid

from core.exceptions import ValidationError
from core.position_state import PositionStatus, TERMINAL_STATUSES, coerce_status


@dataclass(frozen=True)
class Pool:
    """
    Candidate liquidity pool snapshot.

    Immutable within one decision cycle. `apy_pct` is the advertised
    yield in percent (e.g. 12.5 for 12.5%).
    """
    pool_id: str
    token0_symbol: str
    token1_symbol: str
    tvl_usd: float
    apy_pct: float
    age_days: float
    chain_id: int = 2004
    dex_name: str = ""
    fee_tier: int = 3000
    volume_24h_usd: float = 0.0
    is_active: bool = True
    token0_decimals: int = 18
    token1_decimals: int = 18
    token0_address: Optional[str] = None
    token1_address: Optional[str] = None
    current_tick: Optional[int] = None

    def validate(self) -> None:
        if not self.pool_id:
            raise ValidationError("Pool id is required")
        if not self.token0_symbol or not self.token1_symbol:
            raise ValidationError(f"Pool {self.pool_id}: both token symbols are required")
        for name in ("tvl_usd", "apy_pct", "age_days", "volume_24h_usd"):
            value = getattr(self, name)
            if value is None or math.isnan(float(value)):
                raise ValidationError(f"Pool {self.pool_id}: {name} is not a number")
        if self.tvl_usd < 0 or self.age_days < 0 or self.volume_24h_usd < 0:
            raise ValidationError(f"Pool {self.pool_id}: tvl/age/volume must be non-negative")

    @property
    def pair(self) -> str:
        return f"{self.token0_symbol}/{self.token1_symbol}"

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Pool":
        known = {f for f in cls.__dataclass_fields__}
        return cls(**{k: v for k, v in data.items() if k in known})


@dataclass(frozen=True)
class RangeBounds:
    """Price range for a concentrated-liquidity position, as percent offsets from entry."""
    lower_percent: float
    upper_percent: float

    def __post_init__(self):
        if self.lower_percent >= self.upper_percent:
            raise ValidationError(
                f"Range lower bound ({self.lower_percent}%) must be below upper bound ({self.upper_percent}%)"
            )


@dataclass(frozen=True)
class UserStrategy:
    """
    Per-user allocation parameters.

    Created/updated by the user-facing layer; read-only to the core.
    """
    user_id: str
    min_apy_pct: float
    risk_aversion: float
    max_positions: int
    max_alloc_per_position_usd: float
    min_position_size_usd: float = 3000.0
    min_tvl_usd: float = 1_000_000.0
    min_pool_age_days: float = 14.0
    allowed_tokens: FrozenSet[str] = frozenset()
    allowed_dex_names: FrozenSet[str] = frozenset()
    daily_rebalance_limit: int = 8
    hourly_rebalance_limit: int = 2
    max_il_loss_pct: float = 6.0
    theta_min_benefit: float = 0.0
    lower_range_percent: float = -5.0
    upper_range_percent: float = 10.0
    expected_gas_usd: float = 1.0
    min_yield_improvement_pct: float = 0.7
    gas_cover_multiplier: float = 4.0
    allocation_delta_threshold_pct: float = 5.0
    il_gate_exempts_forced_exits: bool = True
    auto_invest_enabled: bool = True
    base_asset: str = "USDC"

    def __post_init__(self):
        # Normalize token allow-list to upper-case symbols
        tokens = frozenset(str(t).upper() for t in (self.allowed_tokens or ()))
        object.__setattr__(self, "allowed_tokens", tokens)
        dexes = frozenset(str(d).lower() for d in (self.allowed_dex_names or ()))
        object.__setattr__(self, "allowed_dex_names", dexes)

    def validate(self) -> None:
        """Raise ValidationError for malformed strategy input."""
        for f in fields(self):
            value = getattr(self, f.name)
            if f.type in (int, float) and (isinstance(value, bool) or not isinstance(value, (int, float))):
                raise ValidationError(f"Strategy {self.user_id}: {f.name} must be a number, got {value!r}")
        if self.max_positions <= 0:
            raise ValidationError(f"Strategy {self.user_id}: max_positions must be positive")
        if self.lower_range_percent >= self.upper_range_percent:
            raise ValidationError(
                f"Strategy {self.user_id}: range bounds inverted "
                f"({self.lower_range_percent} >= {self.upper_range_percent})"
            )
        if not 0.0 <= self.risk_aversion <= 1.0:
            raise ValidationError(f"Strategy {self.user_id}: risk_aversion must be within [0, 1]")
        if self.max_alloc_per_position_usd <= 0:
            raise ValidationError(f"Strategy {self.user_id}: max_alloc_per_position_usd must be positive")
        for name in ("min_position_size_usd", "min_tvl_usd", "min_pool_age_days",
                     "expected_gas_usd", "max_il_loss_pct", "gas_cover_multiplier",
                     "allocation_delta_threshold_pct"):
            if getattr(self, name) < 0:
                raise ValidationError(f"Strategy {self.user_id}: {name} must be non-negative")
        if self.daily_rebalance_limit < 0 or self.hourly_rebalance_limit < 0:
            raise ValidationError(f"Strategy {self.user_id}: rebalance limits must be non-negative")

    @property
    def range_bounds(self) -> RangeBounds:
        return RangeBounds(self.lower_range_percent, self.upper_range_percent)

    def allows_pool_tokens(self, pool: Pool) -> bool:
        """Both tokens must be allowed; an empty allow-list is unrestricted."""
        if not self.allowed_tokens:
            return True
        return (
            pool.token0_symbol.upper() in self.allowed_tokens
            and pool.token1_symbol.upper() in self.allowed_tokens
        )

    def allows_dex(self, pool: Pool) -> bool:
        if not self.allowed_dex_names:
            return True
        return (pool.dex_name or "").lower() in self.allowed_dex_names

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "UserStrategy":
        known = {f for f in cls.__dataclass_fields__}
        values = {k: v for k, v in data.items() if k in known}
        for name in ("allowed_tokens", "allowed_dex_names"):
            if name in values:
                values[name] = frozenset(values[name] or ())
        return cls(**values)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Position:
    """
    Liquidity position with lifecycle tracking.

    `liquidation_guard` is the mutual-exclusion token for liquidation; it is
    only ever flipped through conditional updates on the position store.
    """
    user_id: str
    pool_id: str
    amount_usd: float
    lower_range_percent: float
    upper_range_percent: float
    position_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    status: PositionStatus = PositionStatus.PENDING_EXECUTION
    base_asset: str = "USDC"
    chain_id: int = 2004

    # On-chain references
    external_ref: Optional[str] = None
    chain_position_id: Optional[str] = None

    # Economics
    entry_price: Optional[float] = None
    lower_tick: Optional[int] = None
    upper_tick: Optional[int] = None
    liquidity: Optional[float] = None
    expected_proceeds: Optional[float] = None
    returned_amount: Optional[float] = None
    impermanent_loss_pct: Optional[float] = None

    # Concurrency guard
    liquidation_guard: bool = False

    # Metadata
    last_error: Optional[str] = None
    created_at: datetime = field(default_factory=_utcnow)
    executed_at: Optional[datetime] = None
    liquidated_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def __post_init__(self):
        """Validate initial state"""
        self.status = coerce_status(self.status)
        if not self.user_id or not self.pool_id:
            raise ValidationError("Position user_id and pool_id are required")
        if self.amount_usd <= 0:
            raise ValidationError("Position amount must be positive")
        if self.lower_range_percent >= self.upper_range_percent:
            raise ValidationError(
                f"Position range inverted ({self.lower_range_percent} >= {self.upper_range_percent})"
            )

    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def is_active(self) -> bool:
        return self.status == PositionStatus.ACTIVE

    def with_updates(self, **changes) -> "Position":
        return replace(self, **changes)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for logging and alert context"""
        return {
            "position_id": self.position_id,
            "user_id": self.user_id,
            "pool_id": self.pool_id,
            "status": self.status.value,
            "amount_usd": self.amount_usd,
            "external_ref": self.external_ref,
            "lower_tick": self.lower_tick,
            "upper_tick": self.upper_tick,
            "liquidation_guard": self.liquidation_guard,
            "returned_amount": self.returned_amount,
            "last_error": self.last_error,
        }


def pools_by_id(pools: Iterable[Pool]) -> Dict[str, Pool]:
    """Index pools by lower-cased identity."""
    return {p.pool_id.lower(): p for p in pools}
