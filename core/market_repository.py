"""
lp-autopilot Core: Market / Preference Repository

Read-only source of candidate pools and per-user strategies.

The YAML implementation re-reads its files on every call so the scheduled
loops stay stateless and pick up edits without a restart.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Union
import logging

import yaml

from core.exceptions import CriticalDataUnavailable, ValidationError
from core.models import Pool, UserStrategy

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PoolFilters:
    """Coarse pre-filter applied by the repository (strategy filters run in the engine)"""
    chain_id: Optional[int] = None
    active_only: bool = True
    min_tvl_usd: float = 0.0


class MarketRepository(ABC):

    @abstractmethod
    def fetch_candidate_pools(self, filters: Optional[PoolFilters] = None) -> List[Pool]:
        ...

    @abstractmethod
    def fetch_user_strategy(self, user_id: str) -> Optional[UserStrategy]:
        ...

    @abstractmethod
    def list_auto_invest_users(self) -> List[str]:
        ...


class YamlMarketRepository(MarketRepository):
    """
    Pools from pools.yaml, strategies from strategies.yaml.

    strategies.yaml:
        defaults: {...UserStrategy fields...}
        users:
          alice: {...overrides...}
    """

    def __init__(self, pools_path: Union[str, Path], strategies_path: Union[str, Path]):
        self.pools_path = Path(pools_path)
        self.strategies_path = Path(strategies_path)

    @classmethod
    def from_config_dir(cls, config_dir: Union[str, Path]) -> "YamlMarketRepository":
        base = Path(config_dir)
        return cls(base / "pools.yaml", base / "strategies.yaml")

    def _load(self, path: Path) -> Dict[str, Any]:
        try:
            with open(path) as f:
                return yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            logger.error("Failed to read %s: %s", path, e)
            raise CriticalDataUnavailable(str(path), e) from e

    def fetch_candidate_pools(self, filters: Optional[PoolFilters] = None) -> List[Pool]:
        filters = filters or PoolFilters()
        raw_pools = self._load(self.pools_path).get("pools") or []

        pools = []
        for raw in raw_pools:
            try:
                pool = Pool.from_dict(raw)
                pool.validate()
            except (TypeError, ValidationError) as e:
                logger.warning("Skipping malformed pool entry %s: %s", raw.get("pool_id", "?"), e)
                continue
            if filters.active_only and not pool.is_active:
                continue
            if filters.chain_id is not None and pool.chain_id != filters.chain_id:
                continue
            if pool.tvl_usd < filters.min_tvl_usd:
                continue
            pools.append(pool)

        logger.debug("Loaded %d candidate pools from %s", len(pools), self.pools_path)
        return pools

    def _strategy_entries(self) -> Dict[str, Dict[str, Any]]:
        data = self._load(self.strategies_path)
        defaults = data.get("defaults") or {}
        users = data.get("users") or {}
        return {
            str(user_id): {**defaults, **(overrides or {}), "user_id": str(user_id)}
            for user_id, overrides in users.items()
        }

    def fetch_user_strategy(self, user_id: str) -> Optional[UserStrategy]:
        entry = self._strategy_entries().get(user_id)
        if entry is None:
            return None
        try:
            return UserStrategy.from_dict(entry)
        except TypeError as e:
            raise ValidationError(f"Strategy {user_id}: {e}") from e

    def list_auto_invest_users(self) -> List[str]:
        return sorted(
            user_id for user_id, entry in self._strategy_entries().items()
            if entry.get("auto_invest_enabled", True)
        )
