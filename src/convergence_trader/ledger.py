"""
SQLite ledger for durable trading records.

Stores:
- Order tracking records (one per idempotency key)
- Trade records (position lifecycle)
- Bot runs
- Run snapshots (append-only)

The ledger is the only writer of these tables. Status columns only move
forward; an illegal transition raises LedgerError instead of silently
overwriting.
"""

import logging
import os
import sqlite3
from contextlib import contextmanager
from typing import Callable, Iterable, Iterator, Optional

from .errors import LedgerError
from .types import (
    BotRun, Direction, ExitReason, ORDER_TRANSITIONS, OrderStatus, OrderTrackingRecord,
    OutcomeSide, RunMode, RunSnapshot, RunStatus, TradeOrigin, TradeRecord, TradeStatus,
)
from .util import wall_ms

logger = logging.getLogger(__name__)


TRADE_TRANSITIONS: dict[TradeStatus, frozenset[TradeStatus]] = {
    TradeStatus.PENDING: frozenset({
        TradeStatus.OPEN, TradeStatus.CLOSED, TradeStatus.CANCELLED, TradeStatus.UNKNOWN,
    }),
    TradeStatus.OPEN: frozenset({TradeStatus.CLOSED, TradeStatus.UNKNOWN}),
    # UNKNOWN is resolved by a human, never by the bot
    TradeStatus.UNKNOWN: frozenset(),
    TradeStatus.CLOSED: frozenset(),
    TradeStatus.CANCELLED: frozenset(),
}

SCHEMA = """
CREATE TABLE IF NOT EXISTS order_tracking (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    idempotency_key TEXT NOT NULL UNIQUE,
    external_order_id TEXT,
    market_id TEXT NOT NULL,
    token_id TEXT NOT NULL,
    direction TEXT NOT NULL CHECK (direction IN ('BUY', 'SELL')),
    price REAL NOT NULL,
    size REAL NOT NULL,
    status TEXT NOT NULL CHECK (
        status IN ('created', 'submitted', 'filled', 'failed', 'cancelled')
    ),
    venue_status TEXT,
    error_message TEXT,
    created_at_ms INTEGER NOT NULL,
    updated_at_ms INTEGER NOT NULL,
    filled_at_ms INTEGER
);

CREATE TABLE IF NOT EXISTS trades (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    market_id TEXT NOT NULL,
    token_id TEXT,
    question TEXT,
    side TEXT NOT NULL CHECK (side IN ('YES', 'NO')),
    entry_price REAL,
    exit_price REAL,
    size REAL NOT NULL,
    size_usd REAL NOT NULL,
    status TEXT NOT NULL CHECK (
        status IN ('pending', 'open', 'closed', 'cancelled', 'unknown')
    ),
    pnl REAL,
    exit_reason TEXT,
    order_id TEXT,
    origin TEXT NOT NULL DEFAULT 'executor',
    notes TEXT,
    entry_time_ms INTEGER,
    exit_time_ms INTEGER,
    created_at_ms INTEGER NOT NULL,
    updated_at_ms INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS bot_runs (
    run_id TEXT PRIMARY KEY,
    started_at_ms INTEGER NOT NULL,
    ended_at_ms INTEGER,
    mode TEXT NOT NULL CHECK (mode IN ('live', 'paper')),
    status TEXT NOT NULL CHECK (status IN ('running', 'stopped', 'crashed')),
    trades_placed INTEGER NOT NULL DEFAULT 0,
    trades_closed INTEGER NOT NULL DEFAULT 0,
    total_pnl REAL NOT NULL DEFAULT 0,
    notes TEXT
);

CREATE TABLE IF NOT EXISTS run_snapshots (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    run_id TEXT NOT NULL,
    timestamp_ms INTEGER NOT NULL,
    balance REAL NOT NULL,
    total_exposure REAL NOT NULL,
    open_positions_count INTEGER NOT NULL,
    open_orders_count INTEGER NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_order_tracking_market ON order_tracking(market_id);
CREATE INDEX IF NOT EXISTS idx_trades_status ON trades(status);
CREATE INDEX IF NOT EXISTS idx_trades_market ON trades(market_id);
CREATE INDEX IF NOT EXISTS idx_run_snapshots_run ON run_snapshots(run_id, timestamp_ms);
"""


class LedgerStore:
    """
    Durable ledger backed by SQLite.

    Every write either completes before the call returns or raises.
    Writes inside a transaction() block are committed together.
    """

    def __init__(
        self,
        db_path: str = "data/trader.db",
        clock: Callable[[], int] = wall_ms,
    ):
        """
        Initialize the ledger.

        Args:
            db_path: Path to SQLite database (":memory:" for tests)
            clock: Wall clock in milliseconds
        """
        self.db_path = db_path
        self._clock = clock
        self._conn: Optional[sqlite3.Connection] = None
        self._in_transaction = False

    def init_schema(self) -> None:
        """Open the database and create tables."""
        if self._conn is not None:
            return

        if self.db_path != ":memory:":
            directory = os.path.dirname(self.db_path)
            if directory:
                os.makedirs(directory, exist_ok=True)

        self._conn = sqlite3.connect(self.db_path)
        self._conn.row_factory = sqlite3.Row
        if self.db_path != ":memory:":
            self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA synchronous=NORMAL")
        self._conn.executescript(SCHEMA)
        self._conn.commit()
        logger.info(f"Ledger initialized at {self.db_path}")

    def close(self) -> None:
        """Close the database connection."""
        if self._conn:
            self._conn.close()
            self._conn = None
            logger.info("Ledger closed")

    @property
    def conn(self) -> sqlite3.Connection:
        if self._conn is None:
            raise LedgerError("Ledger not initialized; call init_schema() first")
        return self._conn

    @contextmanager
    def transaction(self) -> Iterator["LedgerStore"]:
        """
        Group several writes into one atomic commit.

        Nested blocks join the outer transaction.
        """
        if self._in_transaction:
            yield self
            return

        conn = self.conn
        self._in_transaction = True
        try:
            yield self
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            self._in_transaction = False

    def _commit(self) -> None:
        if not self._in_transaction:
            self.conn.commit()

    # ========== Order tracking ==========

    def create_order_record(self, record: OrderTrackingRecord) -> OrderTrackingRecord:
        """
        Insert a new order record in CREATED status.

        Raises:
            LedgerError: if the idempotency key already exists
        """
        now = self._clock()
        record.status = OrderStatus.CREATED
        record.created_at_ms = now
        record.updated_at_ms = now
        try:
            cursor = self.conn.execute(
                """
                INSERT INTO order_tracking (
                    idempotency_key, market_id, token_id, direction, price, size,
                    status, created_at_ms, updated_at_ms
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    record.idempotency_key, record.market_id, record.token_id,
                    record.direction.value, record.price, record.size,
                    record.status.value, now, now,
                ),
            )
        except sqlite3.IntegrityError as e:
            raise LedgerError(
                f"Duplicate idempotency key {record.idempotency_key}"
            ) from e
        self._commit()
        record.id = cursor.lastrowid
        return record

    def get_order_record(self, idempotency_key: str) -> Optional[OrderTrackingRecord]:
        row = self.conn.execute(
            "SELECT * FROM order_tracking WHERE idempotency_key = ?",
            (idempotency_key,),
        ).fetchone()
        return _row_to_order(row) if row else None

    def list_order_records(
        self,
        statuses: Optional[Iterable[OrderStatus]] = None,
    ) -> list[OrderTrackingRecord]:
        query = "SELECT * FROM order_tracking"
        params: tuple = ()
        if statuses is not None:
            values = tuple(s.value for s in statuses)
            query += f" WHERE status IN ({', '.join('?' for _ in values)})"
            params = values
        query += " ORDER BY id"
        return [_row_to_order(r) for r in self.conn.execute(query, params).fetchall()]

    def update_order_status(
        self,
        idempotency_key: str,
        status: OrderStatus,
        external_order_id: Optional[str] = None,
        venue_status: Optional[str] = None,
        error_message: Optional[str] = None,
    ) -> OrderTrackingRecord:
        """
        Move an order record forward.

        The update is a compare-and-set on the current status so a
        concurrent writer cannot move the record backwards.

        Raises:
            LedgerError: unknown key or illegal transition
        """
        current = self.get_order_record(idempotency_key)
        if current is None:
            raise LedgerError(f"No order record for key {idempotency_key}")

        if status not in ORDER_TRANSITIONS[current.status]:
            raise LedgerError(
                f"Illegal order transition {current.status.value} -> {status.value} "
                f"for {idempotency_key}"
            )

        now = self._clock()
        filled_at = now if status is OrderStatus.FILLED else current.filled_at_ms
        cursor = self.conn.execute(
            """
            UPDATE order_tracking
            SET status = ?,
                external_order_id = COALESCE(?, external_order_id),
                venue_status = COALESCE(?, venue_status),
                error_message = COALESCE(?, error_message),
                updated_at_ms = ?,
                filled_at_ms = ?
            WHERE idempotency_key = ? AND status = ?
            """,
            (
                status.value, external_order_id, venue_status, error_message,
                now, filled_at, idempotency_key, current.status.value,
            ),
        )
        if cursor.rowcount != 1:
            raise LedgerError(f"Order record {idempotency_key} changed concurrently")
        self._commit()

        current.status = status
        current.external_order_id = external_order_id or current.external_order_id
        current.venue_status = venue_status or current.venue_status
        current.error_message = error_message or current.error_message
        current.updated_at_ms = now
        current.filled_at_ms = filled_at
        return current

    # ========== Trades ==========

    def insert_trade(self, trade: TradeRecord) -> TradeRecord:
        now = self._clock()
        cursor = self.conn.execute(
            """
            INSERT INTO trades (
                market_id, token_id, question, side, entry_price, exit_price,
                size, size_usd, status, pnl, exit_reason, order_id, origin,
                notes, entry_time_ms, exit_time_ms, created_at_ms, updated_at_ms
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                trade.market_id, trade.token_id, trade.question, trade.side.value,
                trade.entry_price, trade.exit_price, trade.size, trade.size_usd,
                trade.status.value, trade.pnl,
                trade.exit_reason.value if trade.exit_reason else None,
                trade.order_id, trade.origin.value, trade.notes,
                trade.entry_time_ms, trade.exit_time_ms, now, now,
            ),
        )
        self._commit()
        trade.id = cursor.lastrowid
        return trade

    def get_trade(self, trade_id: int) -> Optional[TradeRecord]:
        row = self.conn.execute("SELECT * FROM trades WHERE id = ?", (trade_id,)).fetchone()
        return _row_to_trade(row) if row else None

    def list_trades(
        self,
        statuses: Optional[Iterable[TradeStatus]] = None,
        market_id: Optional[str] = None,
    ) -> list[TradeRecord]:
        clauses = []
        params: list = []
        if statuses is not None:
            values = [s.value for s in statuses]
            clauses.append(f"status IN ({', '.join('?' for _ in values)})")
            params.extend(values)
        if market_id is not None:
            clauses.append("market_id = ?")
            params.append(market_id)

        query = "SELECT * FROM trades"
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY id"
        return [_row_to_trade(r) for r in self.conn.execute(query, params).fetchall()]

    def _transition_trade(self, trade_id: int, status: TradeStatus, **columns) -> TradeRecord:
        current = self.get_trade(trade_id)
        if current is None:
            raise LedgerError(f"No trade with id {trade_id}")

        if status not in TRADE_TRANSITIONS[current.status]:
            raise LedgerError(
                f"Illegal trade transition {current.status.value} -> {status.value} "
                f"for trade {trade_id}"
            )

        columns["status"] = status.value
        columns["updated_at_ms"] = self._clock()
        assignments = ", ".join(f"{name} = ?" for name in columns)
        cursor = self.conn.execute(
            f"UPDATE trades SET {assignments} WHERE id = ? AND status = ?",
            (*columns.values(), trade_id, current.status.value),
        )
        if cursor.rowcount != 1:
            raise LedgerError(f"Trade {trade_id} changed concurrently")
        self._commit()
        return self.get_trade(trade_id)

    def mark_trade_open(
        self,
        trade_id: int,
        entry_price: Optional[float] = None,
        size: Optional[float] = None,
    ) -> TradeRecord:
        """Promote a pending trade once its position is confirmed externally."""
        columns = {}
        if entry_price is not None:
            columns["entry_price"] = entry_price
        if size is not None:
            columns["size"] = size
        return self._transition_trade(trade_id, TradeStatus.OPEN, **columns)

    def mark_trade_unknown(self, trade_id: int, note: str) -> TradeRecord:
        """Flag a trade that could not be matched to external truth."""
        return self._transition_trade(trade_id, TradeStatus.UNKNOWN, notes=note)

    def mark_trade_cancelled(self, trade_id: int, note: str) -> TradeRecord:
        return self._transition_trade(trade_id, TradeStatus.CANCELLED, notes=note)

    def close_trade(
        self,
        trade_id: int,
        exit_price: float,
        exit_reason: ExitReason,
        pnl: float,
    ) -> TradeRecord:
        return self._transition_trade(
            trade_id,
            TradeStatus.CLOSED,
            exit_price=exit_price,
            exit_reason=exit_reason.value,
            pnl=pnl,
            exit_time_ms=self._clock(),
        )

    def count_trades_since(self, since_ms: int, origin: TradeOrigin = TradeOrigin.EXECUTOR) -> int:
        row = self.conn.execute(
            "SELECT COUNT(*) FROM trades WHERE created_at_ms >= ? AND origin = ?",
            (since_ms, origin.value),
        ).fetchone()
        return int(row[0])

    def realized_pnl_since(self, since_ms: int) -> float:
        row = self.conn.execute(
            "SELECT COALESCE(SUM(pnl), 0) FROM trades WHERE status = 'closed' AND exit_time_ms >= ?",
            (since_ms,),
        ).fetchone()
        return float(row[0])

    # ========== Runs ==========

    def start_run(self, run: BotRun) -> None:
        self.conn.execute(
            """
            INSERT INTO bot_runs (run_id, started_at_ms, mode, status)
            VALUES (?, ?, ?, ?)
            """,
            (run.run_id, run.started_at_ms, run.mode.value, run.status.value),
        )
        self._commit()

    def end_run(
        self,
        run_id: str,
        status: RunStatus,
        trades_placed: int,
        trades_closed: int,
        total_pnl: float,
        notes: Optional[str] = None,
    ) -> None:
        cursor = self.conn.execute(
            """
            UPDATE bot_runs
            SET ended_at_ms = ?, status = ?, trades_placed = ?, trades_closed = ?,
                total_pnl = ?, notes = ?
            WHERE run_id = ? AND status = 'running'
            """,
            (
                self._clock(), status.value, trades_placed, trades_closed,
                total_pnl, notes, run_id,
            ),
        )
        if cursor.rowcount != 1:
            raise LedgerError(f"Run {run_id} is not running")
        self._commit()

    def get_run(self, run_id: str) -> Optional[BotRun]:
        row = self.conn.execute("SELECT * FROM bot_runs WHERE run_id = ?", (run_id,)).fetchone()
        if row is None:
            return None
        return BotRun(
            run_id=row["run_id"],
            started_at_ms=row["started_at_ms"],
            ended_at_ms=row["ended_at_ms"],
            mode=RunMode(row["mode"]),
            status=RunStatus(row["status"]),
            trades_placed=row["trades_placed"],
            trades_closed=row["trades_closed"],
            total_pnl=row["total_pnl"],
            notes=row["notes"],
        )

    # ========== Snapshots ==========

    def append_snapshot(self, snapshot: RunSnapshot) -> None:
        self.conn.execute(
            """
            INSERT INTO run_snapshots (
                run_id, timestamp_ms, balance, total_exposure,
                open_positions_count, open_orders_count
            ) VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                snapshot.run_id, snapshot.timestamp_ms, snapshot.balance,
                snapshot.total_exposure, snapshot.open_positions_count,
                snapshot.open_orders_count,
            ),
        )
        self._commit()

    def list_snapshots(self, run_id: str) -> list[RunSnapshot]:
        rows = self.conn.execute(
            "SELECT * FROM run_snapshots WHERE run_id = ? ORDER BY timestamp_ms, id",
            (run_id,),
        ).fetchall()
        return [
            RunSnapshot(
                run_id=r["run_id"],
                timestamp_ms=r["timestamp_ms"],
                balance=r["balance"],
                total_exposure=r["total_exposure"],
                open_positions_count=r["open_positions_count"],
                open_orders_count=r["open_orders_count"],
            )
            for r in rows
        ]


def _row_to_order(row: sqlite3.Row) -> OrderTrackingRecord:
    return OrderTrackingRecord(
        id=row["id"],
        idempotency_key=row["idempotency_key"],
        external_order_id=row["external_order_id"],
        market_id=row["market_id"],
        token_id=row["token_id"],
        direction=Direction(row["direction"]),
        price=row["price"],
        size=row["size"],
        status=OrderStatus(row["status"]),
        venue_status=row["venue_status"],
        error_message=row["error_message"],
        created_at_ms=row["created_at_ms"],
        updated_at_ms=row["updated_at_ms"],
        filled_at_ms=row["filled_at_ms"],
    )


def _row_to_trade(row: sqlite3.Row) -> TradeRecord:
    return TradeRecord(
        id=row["id"],
        market_id=row["market_id"],
        token_id=row["token_id"],
        question=row["question"],
        side=OutcomeSide(row["side"]),
        entry_price=row["entry_price"],
        exit_price=row["exit_price"],
        size=row["size"],
        size_usd=row["size_usd"],
        status=TradeStatus(row["status"]),
        pnl=row["pnl"],
        exit_reason=ExitReason(row["exit_reason"]) if row["exit_reason"] else None,
        order_id=row["order_id"],
        origin=TradeOrigin(row["origin"]),
        notes=row["notes"],
        entry_time_ms=row["entry_time_ms"],
        exit_time_ms=row["exit_time_ms"],
    )
