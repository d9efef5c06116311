"""
lp-autopilot Infra: Position Store

SQLite-backed record of positions and per-user rebalance history.

Concurrency model: every status change and guard flip is a single
conditional UPDATE (compare-and-swap). A write that affects zero rows means
the precondition no longer holds and the caller lost the race. No
in-process lock is relied on, so several guardian processes may share one
database file.
"""

import logging
import sqlite3
from contextlib import closing
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

from core.models import Position
from core.position_state import (
    OPEN_STATUSES,
    PositionStatus,
    coerce_status,
    ensure_transition,
)

logger = logging.getLogger(__name__)

_DATETIME_FIELDS = ("created_at", "executed_at", "liquidated_at", "updated_at")

# Columns a transition may stamp alongside the status change
_MUTABLE_FIELDS = frozenset({
    "external_ref",
    "chain_position_id",
    "entry_price",
    "lower_tick",
    "upper_tick",
    "liquidity",
    "expected_proceeds",
    "returned_amount",
    "impermanent_loss_pct",
    "last_error",
    "executed_at",
    "liquidated_at",
})

_SCHEMA = """
CREATE TABLE IF NOT EXISTS positions (
    position_id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    pool_id TEXT NOT NULL,
    chain_id INTEGER NOT NULL,
    base_asset TEXT NOT NULL,
    amount_usd REAL NOT NULL,
    lower_range_percent REAL NOT NULL,
    upper_range_percent REAL NOT NULL,
    status TEXT NOT NULL,
    external_ref TEXT,
    chain_position_id TEXT,
    entry_price REAL,
    lower_tick INTEGER,
    upper_tick INTEGER,
    liquidity REAL,
    expected_proceeds REAL,
    returned_amount REAL,
    impermanent_loss_pct REAL,
    liquidation_guard INTEGER NOT NULL DEFAULT 0,
    last_error TEXT,
    created_at TEXT NOT NULL,
    executed_at TEXT,
    liquidated_at TEXT,
    updated_at TEXT,
    CHECK (lower_range_percent < upper_range_percent)
);
CREATE INDEX IF NOT EXISTS idx_positions_status ON positions(status, created_at);
CREATE INDEX IF NOT EXISTS idx_positions_user ON positions(user_id, status);
CREATE TABLE IF NOT EXISTS rebalances (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id TEXT NOT NULL,
    decision_id TEXT,
    created_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_rebalances_user ON rebalances(user_id, created_at);
"""


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _parse(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


class SqlitePositionStore:
    """Durable position store. One short-lived connection per operation."""

    def __init__(self, db_path: Union[str, Path], timeout: float = 10.0):
        self.db_path = str(db_path)
        self.timeout = timeout
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        with closing(self._connect()) as conn:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.executescript(_SCHEMA)
        logger.debug("Position store ready at %s", self.db_path)

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, timeout=self.timeout)
        conn.row_factory = sqlite3.Row
        return conn

    def _execute(self, sql: str, params: Iterable[Any] = ()) -> int:
        """Run a write statement in its own transaction; return affected rows."""
        with closing(self._connect()) as conn:
            with conn:
                cursor = conn.execute(sql, tuple(params))
                return cursor.rowcount

    def _query(self, sql: str, params: Iterable[Any] = ()) -> List[sqlite3.Row]:
        with closing(self._connect()) as conn:
            return conn.execute(sql, tuple(params)).fetchall()

    @staticmethod
    def _row_to_position(row: sqlite3.Row) -> Position:
        data = dict(row)
        for name in _DATETIME_FIELDS:
            data[name] = _parse(data[name])
        data["liquidation_guard"] = bool(data["liquidation_guard"])
        data["status"] = coerce_status(data["status"])
        return Position(**data)

    # ---- reads ----------------------------------------------------------

    def get(self, position_id: str) -> Optional[Position]:
        rows = self._query("SELECT * FROM positions WHERE position_id = ?", (position_id,))
        return self._row_to_position(rows[0]) if rows else None

    def list_by_status(self, status, limit: Optional[int] = None) -> List[Position]:
        """Oldest first, so a bounded page always makes progress."""
        sql = "SELECT * FROM positions WHERE status = ? ORDER BY created_at, position_id"
        params: List[Any] = [coerce_status(status).value]
        if limit is not None:
            sql += " LIMIT ?"
            params.append(int(limit))
        return [self._row_to_position(r) for r in self._query(sql, params)]

    def list_for_user(self, user_id: str, statuses: Optional[Iterable] = None) -> List[Position]:
        wanted = [coerce_status(s).value for s in (statuses or OPEN_STATUSES)]
        placeholders = ",".join("?" * len(wanted))
        rows = self._query(
            f"SELECT * FROM positions WHERE user_id = ? AND status IN ({placeholders}) "
            "ORDER BY created_at, position_id",
            [user_id, *wanted],
        )
        return [self._row_to_position(r) for r in rows]

    def count_by_status(self) -> Dict[str, int]:
        rows = self._query("SELECT status, COUNT(*) AS n FROM positions GROUP BY status")
        counts = {s.value: 0 for s in PositionStatus}
        counts.update({r["status"]: r["n"] for r in rows})
        return counts

    # ---- writes ---------------------------------------------------------

    def create(self, position: Position) -> Position:
        """Insert a new position (normally PENDING_EXECUTION)."""
        now = _utcnow()
        position = position.with_updates(updated_at=now)
        data = {
            "position_id": position.position_id,
            "user_id": position.user_id,
            "pool_id": position.pool_id,
            "chain_id": position.chain_id,
            "base_asset": position.base_asset,
            "amount_usd": position.amount_usd,
            "lower_range_percent": position.lower_range_percent,
            "upper_range_percent": position.upper_range_percent,
            "status": position.status.value,
            "external_ref": position.external_ref,
            "chain_position_id": position.chain_position_id,
            "entry_price": position.entry_price,
            "lower_tick": position.lower_tick,
            "upper_tick": position.upper_tick,
            "liquidity": position.liquidity,
            "expected_proceeds": position.expected_proceeds,
            "returned_amount": position.returned_amount,
            "impermanent_loss_pct": position.impermanent_loss_pct,
            "liquidation_guard": int(position.liquidation_guard),
            "last_error": position.last_error,
            "created_at": _iso(position.created_at),
            "executed_at": _iso(position.executed_at),
            "liquidated_at": _iso(position.liquidated_at),
            "updated_at": _iso(position.updated_at),
        }
        columns = ", ".join(data)
        placeholders = ", ".join("?" * len(data))
        self._execute(f"INSERT INTO positions ({columns}) VALUES ({placeholders})", data.values())
        logger.debug("Created position %s (%s, $%.2f in %s)",
                     position.position_id, position.user_id, position.amount_usd, position.pool_id)
        return position

    def try_acquire_guard(self, position_id: str, expected_status, new_status=None) -> bool:
        """
        Take the liquidation guard.

        Sets guard (and optionally moves status) only if the position is in
        `expected_status` with the guard clear. Exactly one concurrent caller
        can win.

        Returns:
            True if this caller now holds the guard
        """
        expected = coerce_status(expected_status)
        target = coerce_status(new_status) if new_status is not None else expected
        if target != expected:
            ensure_transition(expected, target)

        rows = self._execute(
            "UPDATE positions SET liquidation_guard = 1, status = ?, updated_at = ? "
            "WHERE position_id = ? AND status = ? AND liquidation_guard = 0",
            (target.value, _iso(_utcnow()), position_id, expected.value),
        )
        return rows == 1

    def release_guard(self, position_id: str, last_error: Optional[str] = None) -> bool:
        if last_error is not None:
            rows = self._execute(
                "UPDATE positions SET liquidation_guard = 0, last_error = ?, updated_at = ? "
                "WHERE position_id = ? AND liquidation_guard = 1",
                (last_error, _iso(_utcnow()), position_id),
            )
        else:
            rows = self._execute(
                "UPDATE positions SET liquidation_guard = 0, updated_at = ? "
                "WHERE position_id = ? AND liquidation_guard = 1",
                (_iso(_utcnow()), position_id),
            )
        return rows == 1

    def transition(
        self,
        position_id: str,
        from_status,
        to_status,
        fields: Optional[Dict[str, Any]] = None,
        release_guard: bool = False,
        require_guard: Optional[bool] = None,
    ) -> bool:
        """
        Conditionally move a position along a state machine edge.

        Args:
            position_id: Position to update
            from_status: Status the position must currently have
            to_status: Target status (must be a valid edge)
            fields: Extra columns to stamp in the same statement
            release_guard: Clear the liquidation guard in the same statement
            require_guard: If set, the guard must currently equal this value

        Returns:
            False if the precondition did not hold (no row changed)

        Raises:
            IllegalTransitionError: Edge not in the state machine
            ValueError: Unknown field
        """
        current = coerce_status(from_status)
        target = coerce_status(to_status)
        ensure_transition(current, target)

        fields = dict(fields or {})
        unknown = set(fields) - _MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot set fields {sorted(unknown)} via transition")

        assignments = ["status = ?", "updated_at = ?"]
        params: List[Any] = [target.value, _iso(_utcnow())]
        for name, value in sorted(fields.items()):
            assignments.append(f"{name} = ?")
            params.append(_iso(value) if isinstance(value, datetime) else value)
        if release_guard:
            assignments.append("liquidation_guard = 0")

        conditions = ["position_id = ?", "status = ?"]
        params.extend([position_id, current.value])
        if require_guard is not None:
            conditions.append("liquidation_guard = ?")
            params.append(int(require_guard))
        if "returned_amount" in fields:
            conditions.append("returned_amount IS NULL")

        rows = self._execute(
            f"UPDATE positions SET {', '.join(assignments)} WHERE {' AND '.join(conditions)}",
            params,
        )
        if rows != 1:
            logger.debug("Transition %s %s -> %s did not apply", position_id, current.value, target.value)
        return rows == 1

    def force_liquidate(self, position_id: str, returned_amount: Optional[float], note: str = "") -> bool:
        """Emergency edge: any non-terminal status straight to LIQUIDATED, ignoring the guard."""
        open_values = [s.value for s in OPEN_STATUSES]
        placeholders = ",".join("?" * len(open_values))
        now = _iso(_utcnow())
        rows = self._execute(
            "UPDATE positions SET status = ?, liquidation_guard = 0, returned_amount = ?, "
            "liquidated_at = ?, updated_at = ?, last_error = ? "
            f"WHERE position_id = ? AND status IN ({placeholders}) AND returned_amount IS NULL",
            [PositionStatus.LIQUIDATED.value, returned_amount, now, now, note or None,
             position_id, *open_values],
        )
        return rows == 1

    def update_impermanent_loss(self, position_id: str, il_pct: float) -> bool:
        rows = self._execute(
            "UPDATE positions SET impermanent_loss_pct = ?, updated_at = ? WHERE position_id = ?",
            (il_pct, _iso(_utcnow()), position_id),
        )
        return rows == 1

    # ---- rebalance log --------------------------------------------------

    def record_rebalance(self, user_id: str, decision_id: Optional[str] = None,
                         at: Optional[datetime] = None) -> None:
        self._execute(
            "INSERT INTO rebalances (user_id, decision_id, created_at) VALUES (?, ?, ?)",
            (user_id, decision_id, _iso(at or _utcnow())),
        )

    def count_rebalances(self, user_id: str, since: datetime) -> int:
        rows = self._query(
            "SELECT COUNT(*) AS n FROM rebalances WHERE user_id = ? AND created_at >= ?",
            (user_id, _iso(since)),
        )
        return int(rows[0]["n"])

    def rebalance_counts(self, user_id: str, now: Optional[datetime] = None) -> Tuple[int, int]:
        """(rebalances since UTC midnight, rebalances in the last hour) for one user."""
        now = now or _utcnow()
        if now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)
        midnight = now.astimezone(timezone.utc).replace(hour=0, minute=0, second=0, microsecond=0)
        return (
            self.count_rebalances(user_id, midnight),
            self.count_rebalances(user_id, now - timedelta(hours=1)),
        )
