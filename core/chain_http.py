"""
lp-autopilot Core: HTTP Chain Gateway

ChainCapability backed by a remote execution gateway (the service that owns
the vault keys and cross-chain messaging). JSON over HTTPS.

Error mapping:
- 429, 5xx, timeouts, connection errors -> TransientChainError
- other 4xx -> PermanentChainError
Retries are the caller's job (RetryPolicy); this adapter makes one attempt.
"""

from typing import Any, Dict, Optional
import logging
import os

import requests

from core.chain import ChainCapability, DispatchReceipt, LiquidationReceipt
from core.exceptions import PermanentChainError, TransientChainError
from core.models import Pool, Position, RangeBounds

logger = logging.getLogger(__name__)


class HttpChainGateway(ChainCapability):

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        timeout: float = 20.0,
        session: Optional[requests.Session] = None,
    ):
        if not base_url:
            raise ValueError("Chain gateway base_url is required")
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._session = session or requests.Session()
        self._headers = {"Content-Type": "application/json"}
        if api_key:
            self._headers["Authorization"] = f"Bearer {api_key}"

    @classmethod
    def from_config(cls, raw: Dict[str, Any]) -> "HttpChainGateway":
        base_url = raw.get("base_url", "")
        if "${" in base_url:
            base_url = os.path.expandvars(base_url)
        api_key = os.getenv(raw.get("api_key_env", "CHAIN_GATEWAY_API_KEY"), "")
        return cls(
            base_url=base_url,
            api_key=api_key or None,
            timeout=float(raw.get("timeout_seconds", 20.0)),
        )

    def _req(self, operation: str, method: str, path: str, body: Optional[dict] = None) -> dict:
        url = f"{self.base_url}{path}"
        try:
            response = self._session.request(
                method, url, headers=self._headers, json=body, timeout=self.timeout,
            )
            response.raise_for_status()
        except requests.exceptions.HTTPError as e:
            status_code = e.response.status_code if e.response is not None else 0
            text = e.response.text if e.response is not None else str(e)
            if status_code == 429 or status_code >= 500:
                logger.warning("Gateway %s %s returned %s", method, path, status_code)
                raise TransientChainError(operation, f"HTTP {status_code}: {text}", e) from e
            logger.error("Gateway client error on %s: %s - %s", path, status_code, text)
            raise PermanentChainError(operation, f"HTTP {status_code}: {text}", e) from e
        except (requests.exceptions.Timeout, requests.exceptions.ConnectionError) as e:
            logger.warning("Network error on %s: %s", path, e)
            raise TransientChainError(operation, f"network error: {e}", e) from e

        if not response.content:
            return {}
        return response.json()

    def dispatch_investment(
        self,
        user_id: str,
        pool: Pool,
        amount_usd: float,
        range_bounds: RangeBounds,
    ) -> DispatchReceipt:
        data = self._req("dispatch_investment", "POST", "/investments", {
            "user_id": user_id,
            "pool_id": pool.pool_id,
            "chain_id": pool.chain_id,
            "amount_usd": round(amount_usd, 2),
            "lower_range_percent": range_bounds.lower_percent,
            "upper_range_percent": range_bounds.upper_percent,
        })
        if not data.get("external_ref"):
            raise PermanentChainError("dispatch_investment", f"gateway returned no external_ref: {data}")
        return DispatchReceipt(
            external_ref=str(data["external_ref"]),
            chain_position_id=_opt_str(data.get("chain_position_id")),
            entry_price=_opt_float(data.get("entry_price")),
            lower_tick=_opt_int(data.get("lower_tick")),
            upper_tick=_opt_int(data.get("upper_tick")),
            liquidity=_opt_float(data.get("liquidity")),
        )

    def _position_path(self, position: Position, suffix: str) -> str:
        ref = position.external_ref or position.position_id
        return f"/positions/{ref}/{suffix}"

    def is_out_of_range(self, position: Position) -> bool:
        data = self._req("is_out_of_range", "GET", self._position_path(position, "range"))
        return bool(data.get("out_of_range", False))

    def current_tick(self, position: Position) -> Optional[int]:
        data = self._req("current_tick", "GET", self._position_path(position, "range"))
        return _opt_int(data.get("current_tick"))

    def liquidate_and_return(self, position: Position) -> LiquidationReceipt:
        data = self._req("liquidate_and_return", "POST", self._position_path(position, "liquidate"), {
            "position_id": position.position_id,
            "user_id": position.user_id,
        })
        return LiquidationReceipt(
            proceeds_usd=float(data.get("proceeds_usd", 0.0)),
            tx_ref=_opt_str(data.get("tx_ref")),
        )

    def confirm_settlement(self, position: Position) -> bool:
        data = self._req("confirm_settlement", "GET", self._position_path(position, "settlement"))
        return bool(data.get("settled", False))

    def get_user_balance(self, user_id: str) -> float:
        data = self._req("get_user_balance", "GET", f"/users/{user_id}/balance")
        return float(data.get("balance_usd", 0.0))


def _opt_str(value) -> Optional[str]:
    return None if value is None else str(value)


def _opt_int(value) -> Optional[int]:
    return None if value is None else int(value)


def _opt_float(value) -> Optional[float]:
    return None if value is None else float(value)
