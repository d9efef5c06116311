"""
lp-autopilot Core: Retry Policy

Bounded exponential backoff with full jitter for chain-capability calls.
Shared by the allocation executor and the position guardian.

delay(attempt) = random.uniform(0, min(cap, base * 2 ** attempt))

Transient failures are retried up to `max_attempts` and then escalated as
RetryExhaustedError. Permanent failures (revert, paused, insufficient funds)
are raised immediately.
"""

from dataclasses import dataclass
from typing import Callable, Optional, Tuple, TypeVar
import logging
import random
import time

from core.exceptions import (
    PermanentChainError,
    RetryExhaustedError,
    TransientChainError,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

TRANSIENT_PATTERNS: Tuple[str, ...] = (
    "nonce",
    "timeout",
    "timed out",
    "rate limit",
    "too many requests",
    "429",
    "connection",
    "temporarily unavailable",
    "503",
    "502",
)

PERMANENT_PATTERNS: Tuple[str, ...] = (
    "revert",
    "insufficient",
    "paused",
    "not authorized",
    "unauthorized",
    "slippage",
    "invalid pool",
)


def classify_chain_error(operation: str, exc: Exception) -> Exception:
    """
    Map an arbitrary adapter exception onto the chain error taxonomy.

    Already-classified errors pass through. Unknown failures are treated as
    transient so they get a bounded number of retries rather than none.
    """
    if isinstance(exc, (TransientChainError, PermanentChainError)):
        return exc

    text = str(exc).lower()
    if any(p in text for p in PERMANENT_PATTERNS):
        return PermanentChainError(operation, str(exc), exc)
    if not any(p in text for p in TRANSIENT_PATTERNS):
        logger.debug("Unclassified %s failure treated as transient: %s", operation, exc)
    return TransientChainError(operation, str(exc), exc)


@dataclass
class RetryPolicy:
    """Retry configuration for chain calls"""
    max_attempts: int = 3
    base_delay_seconds: float = 1.0
    max_delay_seconds: float = 30.0
    on_retry: Optional[Callable[[str], None]] = None

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.base_delay_seconds < 0 or self.max_delay_seconds < 0:
            raise ValueError("retry delays must be non-negative")

    @classmethod
    def from_config(cls, raw: Optional[dict], on_retry: Optional[Callable[[str], None]] = None) -> "RetryPolicy":
        raw = raw or {}
        return cls(
            max_attempts=int(raw.get("max_attempts", 3)),
            base_delay_seconds=float(raw.get("base_delay_seconds", 1.0)),
            max_delay_seconds=float(raw.get("max_delay_seconds", 30.0)),
            on_retry=on_retry,
        )

    def backoff_delay(self, attempt: int) -> float:
        """Full-jitter delay before retry number `attempt` (0-based)."""
        ceiling = min(self.max_delay_seconds, self.base_delay_seconds * (2 ** attempt))
        return random.uniform(0, ceiling)

    def call(self, operation: str, fn: Callable[[], T]) -> T:
        """
        Run `fn` with retries.

        Args:
            operation: Name used in logs, metrics and raised errors
            fn: Zero-argument callable performing the chain call

        Returns:
            Whatever `fn` returns

        Raises:
            PermanentChainError: Non-retryable failure (first occurrence)
            RetryExhaustedError: Transient failure on every attempt
        """
        last_error: Optional[Exception] = None

        for attempt in range(self.max_attempts):
            try:
                return fn()
            except Exception as exc:
                classified = classify_chain_error(operation, exc)
                if isinstance(classified, PermanentChainError):
                    logger.error("%s failed permanently: %s", operation, exc)
                    raise classified from exc
                last_error = exc

            if attempt < self.max_attempts - 1:
                delay = self.backoff_delay(attempt)
                logger.warning(
                    "%s failed (attempt %d/%d): %s; retrying in %.2fs",
                    operation, attempt + 1, self.max_attempts, last_error, delay,
                )
                if self.on_retry:
                    self.on_retry(operation)
                time.sleep(delay)

        logger.error("%s: all %d attempts exhausted", operation, self.max_attempts)
        original = last_error.original if isinstance(last_error, TransientChainError) and last_error.original else last_error
        raise RetryExhaustedError(operation, self.max_attempts, original)
