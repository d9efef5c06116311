"""Shared exception types for allocation and liquidation logic."""

from typing import Optional


class LiquidityEngineError(RuntimeError):
    """Base class for errors raised by the allocation and guardian loops."""


class ValidationError(LiquidityEngineError, ValueError):
    """Malformed strategy or pool input. Reported to the caller, never retried."""


class NoOpportunityError(LiquidityEngineError):
    """No eligible pools or no profitable rebalance.

    The allocation engine reports this condition as an empty decision with a
    reason string; the exception exists for callers that prefer to raise.
    """

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class TransientChainError(LiquidityEngineError):
    """Network, timeout or nonce failure at the chain boundary. Safe to retry."""

    def __init__(self, operation: str, message: str = "", original: Optional[Exception] = None):
        super().__init__(f"{operation}: {message}" if message else operation)
        self.operation = operation
        self.original = original


class RetryExhaustedError(TransientChainError):
    """A transient chain failure persisted through every allowed attempt."""

    def __init__(self, operation: str, attempts: int, original: Optional[Exception] = None):
        super().__init__(operation, f"gave up after {attempts} attempt(s): {original}", original)
        self.attempts = attempts


class PermanentChainError(LiquidityEngineError):
    """Chain call rejected for a reason retrying cannot fix (revert, paused, funds)."""

    def __init__(self, operation: str, message: str = "", original: Optional[Exception] = None):
        super().__init__(f"{operation}: {message}" if message else operation)
        self.operation = operation
        self.original = original


class StateConflictError(LiquidityEngineError):
    """Guard already held or status precondition failed on a conditional update.

    Expected under concurrency; the position is skipped for this cycle.
    """

    def __init__(self, position_id: str, detail: str = ""):
        super().__init__(f"Position {position_id}: {detail}" if detail else f"Position {position_id}")
        self.position_id = position_id
        self.detail = detail


class SettlementPendingError(LiquidityEngineError):
    """Liquidation succeeded but cross-chain settlement is not yet observed."""

    def __init__(self, position_id: str):
        super().__init__(f"Settlement pending for position {position_id}")
        self.position_id = position_id


class FatalLiquidationError(LiquidityEngineError):
    """Liquidation call failed after retries; operator intervention required."""

    def __init__(self, position_id: str, original: Optional[Exception] = None):
        super().__init__(f"Liquidation failed for position {position_id}: {original}")
        self.position_id = position_id
        self.original = original


class IllegalTransitionError(LiquidityEngineError):
    """Requested status change is not an edge of the position state machine."""

    def __init__(self, from_status: str, to_status: str):
        super().__init__(f"Illegal position transition {from_status} -> {to_status}")
        self.from_status = from_status
        self.to_status = to_status


class CriticalDataUnavailable(LiquidityEngineError):
    """Raised when required market or preference data cannot be fetched safely."""

    def __init__(self, source: str, original: Optional[Exception] = None):
        super().__init__(source)
        self.source = source
        self.original = original
