"""
Configuration Validation Module

Validates app.yaml, strategies.yaml, and pools.yaml against Pydantic schemas.
Ensures config files are correct before the service starts.

Usage:
    from tools.config_validator import validate_all_configs

    errors = validate_all_configs("config")
    if errors:
        for error in errors:
            print(f"ERROR: {error}")
        sys.exit(1)
"""
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Type

import yaml
from pydantic import BaseModel, Field, field_validator, ValidationError

from core.risk_classifier import TIER_RISK_FACTORS

logger = logging.getLogger(__name__)


# ===== App Schema =====
class AppSection(BaseModel):
    name: str = Field(default="lp-autopilot", min_length=1)
    mode: str = Field(pattern="^(DRY_RUN|LIVE)$", description="DRY_RUN uses the simulated chain")


class LoggingConfig(BaseModel):
    level: str = Field(default="INFO", pattern="^(DEBUG|INFO|WARNING|ERROR|CRITICAL)$")
    file: str = Field(default="logs/lp-autopilot.log", min_length=1)


class SchedulerConfig(BaseModel):
    """Cadences for the two scheduled loops"""
    allocation_interval_hours: float = Field(gt=0, description="Hours between allocation cycles")
    guardian_interval_seconds: float = Field(gt=0, description="Seconds between guardian sweeps")
    jitter_pct: float = Field(default=10.0, ge=0, le=20, description="Random extra delay, % of interval")


class GuardianSection(BaseModel):
    batch_size: int = Field(default=50, gt=0, description="ACTIVE positions checked per sweep")
    max_workers: int = Field(default=4, gt=0, description="Concurrent range checks")
    settlement_page_size: int = Field(default=100, gt=0)


class RetrySection(BaseModel):
    max_attempts: int = Field(default=3, ge=1)
    base_delay_seconds: float = Field(default=1.0, ge=0)
    max_delay_seconds: float = Field(default=30.0, ge=0)

    @field_validator('max_delay_seconds')
    @classmethod
    def validate_delay_cap(cls, v: float, info) -> float:
        """Ensure the cap is not below the base delay"""
        base = info.data.get('base_delay_seconds', 0)
        if v < base:
            raise ValueError(f"max_delay_seconds ({v}) must be >= base_delay_seconds ({base})")
        return v


class StoreSection(BaseModel):
    path: str = Field(default="data/positions.db", min_length=1)
    timeout_seconds: float = Field(default=10.0, gt=0)


class SimulatedChainSection(BaseModel):
    balances: Dict[str, float] = Field(default_factory=dict)
    pool_ticks: Dict[str, int] = Field(default_factory=dict)
    settle_immediately: bool = True


class ChainSection(BaseModel):
    base_url: Optional[str] = Field(default=None, description="Execution gateway URL (LIVE)")
    api_key_env: str = Field(default="CHAIN_GATEWAY_API_KEY")
    timeout_seconds: float = Field(default=20.0, gt=0)
    simulated: SimulatedChainSection = Field(default_factory=SimulatedChainSection)


class AllocationSection(BaseModel):
    min_wallet_balance_usd: float = Field(default=0.0, ge=0)
    chain_id: Optional[int] = None
    tier_overrides: Dict[str, str] = Field(default_factory=dict)

    @field_validator('tier_overrides')
    @classmethod
    def validate_tiers(cls, v: Dict[str, str]) -> Dict[str, str]:
        for symbol, tier in v.items():
            if tier not in TIER_RISK_FACTORS:
                raise ValueError(f"Token {symbol}: unknown tier '{tier}' (expected one of {sorted(TIER_RISK_FACTORS)})")
        return v


class MonitoringSection(BaseModel):
    metrics_enabled: bool = False
    metrics_port: int = Field(default=9100, gt=0, lt=65536)


class AlertsSection(BaseModel):
    enabled: bool = False
    webhook_url: Optional[str] = None
    webhook_env: str = "ALERT_WEBHOOK_URL"
    min_severity: str = Field(default="warning", pattern="^(info|warning|critical)$")
    dry_run: bool = False
    dedupe_seconds: float = Field(default=60.0, ge=0)
    timeout_seconds: float = Field(default=5.0, gt=0)


class AppSchema(BaseModel):
    """Complete app configuration schema"""
    app: AppSection
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    scheduler: SchedulerConfig
    guardian: GuardianSection = Field(default_factory=GuardianSection)
    retry: RetrySection = Field(default_factory=RetrySection)
    store: StoreSection = Field(default_factory=StoreSection)
    chain: ChainSection = Field(default_factory=ChainSection)
    allocation: AllocationSection = Field(default_factory=AllocationSection)
    monitoring: MonitoringSection = Field(default_factory=MonitoringSection)
    alerts: AlertsSection = Field(default_factory=AlertsSection)


# ===== Strategies Schema =====
class StrategyFields(BaseModel):
    """Per-user strategy; every field optional so defaults and overrides can be partial"""
    min_apy_pct: Optional[float] = Field(default=None, ge=0)
    risk_aversion: Optional[float] = Field(default=None, ge=0, le=1)
    max_positions: Optional[int] = Field(default=None, gt=0)
    max_alloc_per_position_usd: Optional[float] = Field(default=None, gt=0)
    min_position_size_usd: Optional[float] = Field(default=None, ge=0)
    min_tvl_usd: Optional[float] = Field(default=None, ge=0)
    min_pool_age_days: Optional[float] = Field(default=None, ge=0)
    allowed_tokens: Optional[List[str]] = None
    allowed_dex_names: Optional[List[str]] = None
    daily_rebalance_limit: Optional[int] = Field(default=None, ge=0)
    hourly_rebalance_limit: Optional[int] = Field(default=None, ge=0)
    max_il_loss_pct: Optional[float] = Field(default=None, ge=0)
    theta_min_benefit: Optional[float] = None
    lower_range_percent: Optional[float] = Field(default=None, gt=-100)
    upper_range_percent: Optional[float] = None
    expected_gas_usd: Optional[float] = Field(default=None, ge=0)
    min_yield_improvement_pct: Optional[float] = Field(default=None, ge=0)
    gas_cover_multiplier: Optional[float] = Field(default=None, ge=0)
    allocation_delta_threshold_pct: Optional[float] = Field(default=None, ge=0)
    il_gate_exempts_forced_exits: Optional[bool] = None
    auto_invest_enabled: Optional[bool] = None
    base_asset: Optional[str] = None


class ResolvedStrategy(StrategyFields):
    """Defaults merged with one user's overrides; the core thresholds become required"""
    min_apy_pct: float = Field(ge=0)
    risk_aversion: float = Field(ge=0, le=1)
    max_positions: int = Field(gt=0)
    max_alloc_per_position_usd: float = Field(gt=0)
    lower_range_percent: float = Field(default=-5.0, gt=-100)
    upper_range_percent: float = 10.0

    @field_validator('upper_range_percent')
    @classmethod
    def validate_range(cls, v: float, info) -> float:
        """Ensure the range is not inverted"""
        lower = info.data.get('lower_range_percent')
        if lower is not None and lower >= v:
            raise ValueError(f"lower_range_percent ({lower}) must be < upper_range_percent ({v})")
        return v


class StrategiesSchema(BaseModel):
    defaults: StrategyFields = Field(default_factory=StrategyFields)
    users: Dict[str, Optional[StrategyFields]] = Field(default_factory=dict)


# ===== Pools Schema =====
class PoolSchema(BaseModel):
    pool_id: str = Field(min_length=1)
    token0_symbol: str = Field(min_length=1)
    token1_symbol: str = Field(min_length=1)
    tvl_usd: float = Field(ge=0)
    apy_pct: float
    age_days: float = Field(ge=0)
    chain_id: int = 2004
    dex_name: str = ""
    fee_tier: int = Field(default=3000, ge=0)
    volume_24h_usd: float = Field(default=0.0, ge=0)
    is_active: bool = True
    token0_decimals: int = Field(default=18, ge=0)
    token1_decimals: int = Field(default=18, ge=0)
    token0_address: Optional[str] = None
    token1_address: Optional[str] = None
    current_tick: Optional[int] = None


class PoolsSchema(BaseModel):
    pools: List[PoolSchema] = Field(default_factory=list)

    @field_validator('pools')
    @classmethod
    def validate_unique_ids(cls, v: List[PoolSchema]) -> List[PoolSchema]:
        seen = set()
        for pool in v:
            key = pool.pool_id.lower()
            if key in seen:
                raise ValueError(f"Duplicate pool_id {pool.pool_id}")
            seen.add(key)
        return v


# ===== Validation Functions =====
def _format_yaml_error(file_path: Path, error: yaml.YAMLError) -> str:
    """Return message with line/column context for YAML errors."""
    message = f"Malformed YAML in {file_path}: {error}"
    mark = getattr(error, "problem_mark", None)
    if mark is None:
        return message

    line = getattr(mark, "line", None)
    column = getattr(mark, "column", None)
    if line is None or column is None:
        return message

    problem = getattr(error, "problem", str(error))
    raw_lines = file_path.read_text().splitlines()
    start = max(line - 2, 0)
    end = min(line + 3, len(raw_lines))
    snippet = "\n".join(
        f"{'▶' if idx == line else ' '} {idx + 1:04d} | {raw_lines[idx]}"
        for idx in range(start, end)
    )
    return (
        f"Malformed YAML in {file_path}: line {line + 1}, column {column + 1}: {problem}\n"
        f"Context:\n{snippet}"
    )


def load_yaml_file(file_path: Path) -> Dict[str, Any]:
    """
    Load YAML file and return as dict.

    Raises:
        FileNotFoundError: If file doesn't exist
        yaml.YAMLError: If YAML is malformed
    """
    if not file_path.exists():
        raise FileNotFoundError(f"Config file not found: {file_path}")

    with open(file_path, 'r') as f:
        try:
            return yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise yaml.YAMLError(_format_yaml_error(file_path, e))


def _pydantic_errors(filename: str, error: ValidationError, prefix: str = "") -> List[str]:
    messages = []
    for item in error.errors():
        field = " -> ".join(str(loc) for loc in item['loc'])
        messages.append(f"{filename}: {prefix}{field}: {item['msg']}")
    return messages


def _validate_file(config_dir: Path, filename: str, schema: Type[BaseModel]) -> List[str]:
    errors = []
    try:
        schema(**load_yaml_file(config_dir / filename))
        logger.info("✅ %s validation passed", filename)
    except FileNotFoundError as e:
        errors.append(f"{filename}: {e}")
    except yaml.YAMLError as e:
        errors.append(f"{filename}: Invalid YAML - {e}")
    except ValidationError as e:
        errors.extend(_pydantic_errors(filename, e))
    except TypeError as e:
        errors.append(f"{filename}: top level must be a mapping ({e})")
    return errors


def validate_app(config_dir: Path) -> List[str]:
    return _validate_file(config_dir, "app.yaml", AppSchema)


def validate_pools(config_dir: Path) -> List[str]:
    return _validate_file(config_dir, "pools.yaml", PoolsSchema)


def validate_strategies(config_dir: Path) -> List[str]:
    """
    Validate strategies.yaml: the file shape first, then each user's
    resolved strategy (defaults merged with overrides).
    """
    errors = _validate_file(config_dir, "strategies.yaml", StrategiesSchema)
    if errors:
        return errors

    raw = load_yaml_file(config_dir / "strategies.yaml")
    defaults = raw.get("defaults") or {}
    for user_id, overrides in (raw.get("users") or {}).items():
        merged = {**defaults, **(overrides or {})}
        try:
            ResolvedStrategy(**merged)
        except ValidationError as e:
            errors.extend(_pydantic_errors("strategies.yaml", e, prefix=f"users -> {user_id} -> "))
    return errors


def validate_sanity_checks(config_dir: Path) -> List[str]:
    """
    Cross-file consistency checks.

    Detects:
    - LIVE mode without an execution gateway URL
    - Guardian cadence slower than the allocation cadence
    - Users whose per-position minimum exceeds their per-position cap
    """
    errors: List[str] = []
    app = load_yaml_file(config_dir / "app.yaml")
    strategies = load_yaml_file(config_dir / "strategies.yaml")

    mode = (app.get("app") or {}).get("mode")
    chain = app.get("chain") or {}
    if mode == "LIVE" and not chain.get("base_url"):
        errors.append("app.yaml: chain.base_url is required in LIVE mode")

    scheduler = app.get("scheduler") or {}
    guardian_s = float(scheduler.get("guardian_interval_seconds", 0))
    allocation_s = float(scheduler.get("allocation_interval_hours", 0)) * 3600.0
    if guardian_s and allocation_s and guardian_s >= allocation_s:
        errors.append(
            f"app.yaml: guardian_interval_seconds ({guardian_s:.0f}s) should be shorter than "
            f"allocation_interval_hours ({allocation_s:.0f}s)"
        )

    defaults = strategies.get("defaults") or {}
    for user_id, overrides in (strategies.get("users") or {}).items():
        merged = {**defaults, **(overrides or {})}
        min_size = merged.get("min_position_size_usd", 3000.0)
        cap = merged.get("max_alloc_per_position_usd")
        if cap is not None and min_size > cap:
            errors.append(
                f"strategies.yaml: users -> {user_id}: min_position_size_usd ({min_size}) "
                f"exceeds max_alloc_per_position_usd ({cap}); nothing can ever be allocated"
            )

    if not errors:
        logger.info("✅ Configuration sanity checks passed")
    else:
        logger.warning("⚠️  %d sanity check issue(s) found", len(errors))
    return errors


def validate_all_configs(config_dir: str = "config") -> List[str]:
    """
    Validate all configuration files.

    Performs:
    1. Schema validation (Pydantic type checks)
    2. Sanity checks (logical consistency)

    Returns:
        List of all error messages (empty if all valid)
    """
    config_path = Path(config_dir)

    all_errors = []
    all_errors.extend(validate_app(config_path))
    all_errors.extend(validate_strategies(config_path))
    all_errors.extend(validate_pools(config_path))

    # Sanity checks (only if schema validation passed)
    if not all_errors:
        all_errors.extend(validate_sanity_checks(config_path))

    if not all_errors:
        logger.info("✅ All config files validated successfully")
    else:
        logger.error("❌ %d validation error(s) found", len(all_errors))

    return all_errors


if __name__ == "__main__":
    """Run validation from command line"""
    import sys

    logging.basicConfig(level=logging.INFO, format='%(levelname)s: %(message)s')

    config_dir = sys.argv[1] if len(sys.argv) > 1 else "config"
    errors = validate_all_configs(config_dir)

    if errors:
        print("\n❌ Configuration Validation Failed:\n")
        for error in errors:
            print(f"  • {error}")
        print()
        sys.exit(1)
    else:
        print("\n✅ All configuration files are valid!\n")
        sys.exit(0)
