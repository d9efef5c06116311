"""
lp-autopilot Core: Risk Classifier

Maps tokens to volatility tiers and pools to an impermanent-loss risk factor.
Pure and stateless; used by both the allocation engine and the guardian.

Tiers:
- stable:     0.00
- bluechip:   0.08
- midcap:     0.18
- high_risk:  0.30 (default for anything unclassified)
"""

from typing import Dict, Mapping, Optional

from core.models import Pool

TIER_RISK_FACTORS: Dict[str, float] = {
    "stable": 0.00,
    "bluechip": 0.08,
    "midcap": 0.18,
    "high_risk": 0.30,
}

DEFAULT_TIER = "high_risk"

STABLE_TOKENS = frozenset({"USDC", "USDT", "DAI", "FRAX", "USDC.WH", "XCUSDC", "XCUSDT", "LUSD"})
BLUECHIP_TOKENS = frozenset({"ETH", "WETH", "BTC", "WBTC", "DOT", "XCDOT", "WSTETH"})
MIDCAP_TOKENS = frozenset({"GLMR", "WGLMR", "LINK", "UNI", "AAVE", "ARB", "OP", "MATIC", "ASTR"})


def risk_tier(symbol: str, overrides: Optional[Mapping[str, str]] = None) -> str:
    """
    Return the volatility tier name for a token symbol.

    Args:
        symbol: Token symbol (case-insensitive)
        overrides: Optional symbol -> tier mapping taking precedence over defaults

    Returns:
        One of "stable", "bluechip", "midcap", "high_risk"
    """
    key = (symbol or "").strip().upper()
    if overrides:
        tier = {k.upper(): v for k, v in overrides.items()}.get(key)
        if tier in TIER_RISK_FACTORS:
            return tier
    if key in STABLE_TOKENS:
        return "stable"
    if key in BLUECHIP_TOKENS:
        return "bluechip"
    if key in MIDCAP_TOKENS:
        return "midcap"
    return DEFAULT_TIER


def token_risk_factor(symbol: str, overrides: Optional[Mapping[str, str]] = None) -> float:
    """Risk factor for a single token; unclassified tokens get the highest tier."""
    return TIER_RISK_FACTORS[risk_tier(symbol, overrides)]


def pool_risk_factor(pool: Pool, overrides: Optional[Mapping[str, str]] = None) -> float:
    """A pool is as risky as its riskiest token."""
    return max(
        token_risk_factor(pool.token0_symbol, overrides),
        token_risk_factor(pool.token1_symbol, overrides),
    )
