"""SQLite-backed store for users, strategies and the execution-attempt log.

All methods are synchronous and short-lived; every public call opens its own
connection (or joins the enclosing ``transaction()``), so the store holds no
state between calls apart from the database file itself.
"""

from __future__ import annotations

import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterable, Iterator
from uuid import uuid4

import structlog

from velocity.strategy.errors import LimitReachedError, PersistenceError
from velocity.strategy.models import (
    ExecutionAttempt,
    Strategy,
    StrategyCreateRequest,
    StrategyStatus,
    User,
    unix_now,
)

log = structlog.get_logger(__name__)

CREATE_USERS_TABLE = """
CREATE TABLE IF NOT EXISTS users (
    id          TEXT PRIMARY KEY,
    public_key  TEXT UNIQUE NOT NULL,
    created_at  INTEGER NOT NULL,
    last_active INTEGER NOT NULL
)
"""

CREATE_STRATEGIES_TABLE = """
CREATE TABLE IF NOT EXISTS strategies (
    id            TEXT PRIMARY KEY,
    user_id       TEXT NOT NULL REFERENCES users(id),
    token_mint    TEXT NOT NULL,
    token_symbol  TEXT NOT NULL,
    type          TEXT NOT NULL CHECK (type IN ('buy_dip', 'take_profit')),
    trigger_price REAL NOT NULL,
    amount        TEXT NOT NULL,
    slippage_bps  INTEGER NOT NULL,
    status        TEXT NOT NULL DEFAULT 'active'
                  CHECK (status IN ('active', 'paused', 'triggered', 'executed', 'failed')),
    created_at    INTEGER NOT NULL,
    updated_at    INTEGER NOT NULL,
    executed_at   INTEGER,
    tx_signature  TEXT
)
"""

CREATE_EXECUTIONS_TABLE = """
CREATE TABLE IF NOT EXISTS strategy_executions (
    id            TEXT PRIMARY KEY,
    strategy_id   TEXT NOT NULL REFERENCES strategies(id),
    trigger_price REAL NOT NULL,
    actual_price  REAL NOT NULL,
    status        TEXT NOT NULL,
    error_message TEXT,
    tx_signature  TEXT,
    created_at    INTEGER NOT NULL
)
"""

CREATE_INDEXES = (
    "CREATE INDEX IF NOT EXISTS idx_users_public_key ON users(public_key)",
    "CREATE INDEX IF NOT EXISTS idx_strategies_user ON strategies(user_id)",
    "CREATE INDEX IF NOT EXISTS idx_strategies_status ON strategies(status)",
    "CREATE INDEX IF NOT EXISTS idx_strategies_token ON strategies(token_mint)",
    "CREATE INDEX IF NOT EXISTS idx_executions_strategy"
    " ON strategy_executions(strategy_id, created_at)",
)

ATTEMPT_FIELDS = frozenset({"status", "error_message", "tx_signature"})


def create_sqlite_connection(db_path: str) -> sqlite3.Connection:
    conn = sqlite3.connect(db_path, timeout=30.0, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA busy_timeout = 5000")
    if db_path != ":memory:":
        conn.execute("PRAGMA journal_mode = WAL")
    return conn


def _status_values(statuses: StrategyStatus | Iterable[StrategyStatus]) -> list[str]:
    if isinstance(statuses, StrategyStatus):
        return [statuses.value]
    return [s.value for s in statuses]


class StrategyStore:
    """Durable record of strategies and their execution attempts."""

    def __init__(self, db_path: str | Path) -> None:
        self.db_path = str(db_path)
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self._shared_conn: sqlite3.Connection | None = None
        self._transaction_conn: sqlite3.Connection | None = None
        self._init_db()

    # -- connection handling -------------------------------------------------

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        if self._transaction_conn is not None:
            yield self._transaction_conn
            return
        if self.db_path == ":memory:":
            if self._shared_conn is None:
                self._shared_conn = create_sqlite_connection(self.db_path)
            try:
                yield self._shared_conn
                self._shared_conn.commit()
            except sqlite3.Error as exc:
                self._shared_conn.rollback()
                raise PersistenceError(f"store operation failed: {exc}") from exc
            except Exception:
                self._shared_conn.rollback()
                raise
            return
        try:
            conn = create_sqlite_connection(self.db_path)
        except sqlite3.Error as exc:
            raise PersistenceError(f"cannot open store: {exc}") from exc
        try:
            yield conn
            conn.commit()
        except sqlite3.Error as exc:
            conn.rollback()
            raise PersistenceError(f"store operation failed: {exc}") from exc
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Group several writes so they either all land or none do."""
        if self._transaction_conn is not None:
            yield self._transaction_conn
            return
        with self._connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            self._transaction_conn = conn
            try:
                yield conn
            finally:
                self._transaction_conn = None

    def _init_db(self) -> None:
        with self._connect() as conn:
            conn.execute(CREATE_USERS_TABLE)
            conn.execute(CREATE_STRATEGIES_TABLE)
            conn.execute(CREATE_EXECUTIONS_TABLE)
            for statement in CREATE_INDEXES:
                conn.execute(statement)

    def close(self) -> None:
        if self._shared_conn is not None:
            self._shared_conn.close()
            self._shared_conn = None

    # -- users ---------------------------------------------------------------

    def get_or_create_user(self, public_key: str) -> User:
        """Return the user for ``public_key``, creating it on first sight."""
        now = unix_now()
        with self.transaction() as conn:
            row = conn.execute(
                "SELECT * FROM users WHERE public_key = ?", (public_key,)
            ).fetchone()
            if row is None:
                user = User(id=str(uuid4()), public_key=public_key, created_at=now, last_active=now)
                conn.execute(
                    "INSERT INTO users (id, public_key, created_at, last_active) VALUES (?, ?, ?, ?)",
                    (user.id, user.public_key, user.created_at, user.last_active),
                )
                log.info("user_created", user_id=user.id)
                return user
            conn.execute("UPDATE users SET last_active = ? WHERE id = ?", (now, row["id"]))
            return User(
                id=row["id"],
                public_key=row["public_key"],
                created_at=int(row["created_at"]),
                last_active=now,
            )

    # -- strategies ----------------------------------------------------------

    def create_strategy(
        self,
        user_id: str,
        request: StrategyCreateRequest,
        max_active: int,
    ) -> Strategy:
        """Insert a new active strategy unless the user is at the active limit.

        The count and the insert share one write transaction, so two concurrent
        creates cannot both slip under the limit.
        """
        now = unix_now()
        strategy = Strategy(
            id=str(uuid4()),
            user_id=user_id,
            token_mint=request.token_mint,
            token_symbol=request.token_symbol,
            type=request.type,
            trigger_price=request.trigger_price,
            amount=request.amount,
            slippage_bps=request.slippage_bps,
            status=StrategyStatus.ACTIVE,
            created_at=now,
            updated_at=now,
        )
        with self.transaction() as conn:
            active = self.count_active(user_id)
            if active >= max_active:
                raise LimitReachedError(f"Maximum {max_active} active strategies allowed")
            conn.execute(
                """
                INSERT INTO strategies (
                    id, user_id, token_mint, token_symbol, type, trigger_price,
                    amount, slippage_bps, status, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    strategy.id,
                    strategy.user_id,
                    strategy.token_mint,
                    strategy.token_symbol,
                    strategy.type.value,
                    strategy.trigger_price,
                    strategy.amount,
                    strategy.slippage_bps,
                    strategy.status.value,
                    strategy.created_at,
                    strategy.updated_at,
                ),
            )
        return strategy

    def count_active(self, user_id: str) -> int:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS n FROM strategies WHERE user_id = ? AND status = ?",
                (user_id, StrategyStatus.ACTIVE.value),
            ).fetchone()
        return int(row["n"])

    def list_by_user(self, user_id: str) -> list[Strategy]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM strategies WHERE user_id = ? ORDER BY created_at DESC, rowid DESC",
                (user_id,),
            ).fetchall()
        return [Strategy.from_row(row) for row in rows]

    def list_by_status(self, status: StrategyStatus) -> list[Strategy]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM strategies WHERE status = ? ORDER BY created_at, rowid",
                (status.value,),
            ).fetchall()
        return [Strategy.from_row(row) for row in rows]

    def get_by_id(self, strategy_id: str) -> Strategy | None:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM strategies WHERE id = ?", (strategy_id,)).fetchone()
        return Strategy.from_row(row) if row else None

    def get_for_user(self, strategy_id: str, user_id: str) -> Strategy | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM strategies WHERE id = ? AND user_id = ?",
                (strategy_id, user_id),
            ).fetchone()
        return Strategy.from_row(row) if row else None

    def update_status(
        self,
        strategy_id: str,
        new_status: StrategyStatus,
        expected: StrategyStatus | Iterable[StrategyStatus] | None = None,
        user_id: str | None = None,
    ) -> bool:
        """Set the status; when ``expected`` is given, only if the current status matches.

        Returns True if a row changed.
        """
        sql = "UPDATE strategies SET status = ?, updated_at = ? WHERE id = ?"
        params: list[Any] = [new_status.value, unix_now(), strategy_id]
        if user_id is not None:
            sql += " AND user_id = ?"
            params.append(user_id)
        if expected is not None:
            values = _status_values(expected)
            sql += f" AND status IN ({', '.join('?' for _ in values)})"
            params.extend(values)
        with self._connect() as conn:
            cursor = conn.execute(sql, params)
        return cursor.rowcount > 0

    def delete(self, strategy_id: str, user_id: str) -> bool:
        with self.transaction() as conn:
            cursor = conn.execute(
                "DELETE FROM strategies WHERE id = ? AND user_id = ?", (strategy_id, user_id)
            )
            if cursor.rowcount == 0:
                return False
            conn.execute("DELETE FROM strategy_executions WHERE strategy_id = ?", (strategy_id,))
        return True

    # -- execution attempts --------------------------------------------------

    def append_execution_attempt(self, attempt: ExecutionAttempt) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO strategy_executions (
                    id, strategy_id, trigger_price, actual_price, status,
                    error_message, tx_signature, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    attempt.id,
                    attempt.strategy_id,
                    attempt.trigger_price,
                    attempt.actual_price,
                    attempt.status.value,
                    attempt.error_message,
                    attempt.tx_signature,
                    attempt.created_at,
                ),
            )

    def update_latest_attempt(self, strategy_id: str, **fields: Any) -> bool:
        """Update status / error_message / tx_signature on the newest attempt row."""
        unknown = set(fields) - ATTEMPT_FIELDS
        if unknown:
            raise ValueError(f"unsupported attempt fields: {sorted(unknown)}")
        if not fields:
            return False
        values = {
            key: value.value if isinstance(value, StrategyStatus) else value
            for key, value in fields.items()
        }
        assignments = ", ".join(f"{key} = ?" for key in values)
        with self._connect() as conn:
            cursor = conn.execute(
                f"""
                UPDATE strategy_executions SET {assignments}
                WHERE id = (
                    SELECT id FROM strategy_executions
                    WHERE strategy_id = ?
                    ORDER BY created_at DESC, rowid DESC
                    LIMIT 1
                )
                """,
                [*values.values(), strategy_id],
            )
        return cursor.rowcount > 0

    def list_attempts(self, strategy_id: str) -> list[ExecutionAttempt]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM strategy_executions WHERE strategy_id = ?
                ORDER BY created_at, rowid
                """,
                (strategy_id,),
            ).fetchall()
        return [ExecutionAttempt.from_row(row) for row in rows]

    # -- engine transitions --------------------------------------------------

    def mark_triggered(self, strategy: Strategy, observed_price: float) -> ExecutionAttempt | None:
        """Move ``active -> triggered`` and log the attempt in one transaction.

        Returns None when the strategy was no longer active (another sweep or a
        user pause won the race); no attempt row is written in that case.
        """
        with self.transaction():
            changed = self.update_status(
                strategy.id, StrategyStatus.TRIGGERED, expected=StrategyStatus.ACTIVE
            )
            if not changed:
                return None
            attempt = ExecutionAttempt(
                id=str(uuid4()),
                strategy_id=strategy.id,
                trigger_price=strategy.trigger_price,
                actual_price=observed_price,
                status=StrategyStatus.TRIGGERED,
                created_at=unix_now(),
            )
            self.append_execution_attempt(attempt)
        return attempt

    def mark_executed(
        self,
        strategy_id: str,
        tx_signature: str,
        expected: Iterable[StrategyStatus],
    ) -> bool:
        """Record a submitted transaction on the strategy and its latest attempt."""
        now = unix_now()
        values = _status_values(expected)
        with self.transaction() as conn:
            cursor = conn.execute(
                f"""
                UPDATE strategies
                SET status = ?, executed_at = COALESCE(executed_at, ?), tx_signature = ?,
                    updated_at = ?
                WHERE id = ? AND status IN ({', '.join('?' for _ in values)})
                """,
                [StrategyStatus.EXECUTED.value, now, tx_signature, now, strategy_id, *values],
            )
            if cursor.rowcount == 0:
                return False
            self.update_latest_attempt(
                strategy_id, status=StrategyStatus.EXECUTED, tx_signature=tx_signature
            )
        return True

    def mark_failed(
        self,
        strategy_id: str,
        error_message: str,
        expected: Iterable[StrategyStatus],
    ) -> bool:
        with self.transaction():
            if not self.update_status(strategy_id, StrategyStatus.FAILED, expected=expected):
                return False
            self.update_latest_attempt(
                strategy_id, status=StrategyStatus.FAILED, error_message=error_message
            )
        return True
