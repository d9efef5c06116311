"""Test helpers for lp-autopilot test suite"""

from tests.helpers.builders import (
    make_pool,
    make_strategy,
    make_position,
    scenario_pools,
    seed_active_position,
)

__all__ = [
    "make_pool",
    "make_strategy",
    "make_position",
    "scenario_pools",
    "seed_active_position",
]
