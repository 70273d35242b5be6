"""Database: SQLite persistence layer.

Manages connections, runs migrations, and provides CRUD operations.

Every status change is a conditional write: ``UPDATE ... WHERE id = ? AND
status = ?``. The write is durable only if the row still holds the
expected pre-state, and callers learn the outcome from the returned bool.
Two overlapping batch runs therefore claim a given entity at most once.
"""

from __future__ import annotations

import json
import sqlite3
import time
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator, Literal

from swapdesk.config import StorageConfig
from swapdesk.engine.errors import InvalidTransitionError
from swapdesk.observability.logger import get_logger
from swapdesk.storage.migrations import run_migrations
from swapdesk.storage.models import (
    EXECUTION_TRANSITIONS,
    ORDER_TRANSITIONS,
    POOL_TRANSITIONS,
    ExecutionStatus,
    Order,
    OrderStatus,
    Participant,
    PoolStatus,
    PredictionPool,
    WalletTransaction,
    parse_order,
)

log = get_logger(__name__)

JoinOutcome = Literal["joined", "not_found", "not_active", "closed", "duplicate"]

_ORDER_COLUMNS = frozenset({
    "check_count", "last_checked_at", "last_price", "price_history",
    "stop_armed_at", "transaction_hash", "buy_amount", "gas_used", "error",
    "execution_quote", "executed_at", "cancelled_at",
})

_POOL_COLUMNS = frozenset({
    "end_price", "price_change", "outcome", "total_pot", "gas_fee_pool",
    "winner_count", "loser_count", "resolved_at",
})


def _enum_value(value: Any) -> Any:
    return getattr(value, "value", value)


def _encode_order_field(name: str, value: Any) -> tuple[str, Any]:
    if name == "price_history":
        samples = [s if isinstance(s, dict) else s.model_dump() for s in value]
        return "price_history_json", json.dumps(samples)
    if name == "execution_quote":
        return "execution_quote_json", json.dumps(value) if value is not None else None
    return name, value


class Database:
    """SQLite database for the settlement engine."""

    def __init__(self, config: StorageConfig):
        self._config = config
        self._conn: sqlite3.Connection | None = None

    def connect(self) -> None:
        """Open database connection and run migrations."""
        path = self._config.sqlite_path
        if path != ":memory:":
            Path(path).parent.mkdir(parents=True, exist_ok=True)
        # Autocommit; multi-statement writes open explicit transactions
        self._conn = sqlite3.connect(
            path, timeout=10.0, isolation_level=None, check_same_thread=False,
        )
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA foreign_keys=ON")
        run_migrations(self._conn)
        log.info("database.connected", path=path)

    def close(self) -> None:
        if self._conn:
            self._conn.close()
            self._conn = None

    @property
    def conn(self) -> sqlite3.Connection:
        if self._conn is None:
            raise RuntimeError("Database not connected. Call connect() first.")
        return self._conn

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        """Write transaction holding the database write lock from the start."""
        conn = self.conn
        conn.execute("BEGIN IMMEDIATE")
        try:
            yield conn
        except BaseException:
            conn.execute("ROLLBACK")
            raise
        conn.execute("COMMIT")

    # ── Orders ───────────────────────────────────────────────────────

    def insert_order(self, order: Order) -> str:
        oid = order.id or str(uuid.uuid4())
        self.conn.execute(
            """
            INSERT INTO orders
                (id, wallet_address, order_type, token_in, token_out,
                 token_in_symbol, token_out_symbol, amount_in,
                 target_price, stop_price, limit_price, slippage_bps,
                 status, expires_at, good_till_cancel, check_count,
                 price_history_json, created_at, updated_at, version)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                oid, order.wallet_address, order.order_type,
                order.token_in, order.token_out,
                order.token_in_symbol, order.token_out_symbol, order.amount_in,
                getattr(order, "target_price", None),
                getattr(order, "stop_price", None),
                getattr(order, "limit_price", None),
                order.slippage_bps, _enum_value(order.status), order.expires_at,
                int(order.good_till_cancel), order.check_count, "[]",
                order.created_at, order.updated_at, 0,
            ),
        )
        return oid

    def get_order(self, order_id: str) -> Order | None:
        row = self.conn.execute(
            "SELECT * FROM orders WHERE id = ?", (order_id,)
        ).fetchone()
        return _row_to_order(row) if row else None

    def list_orders(
        self,
        wallet_address: str | None = None,
        status: OrderStatus | None = None,
        limit: int = 100,
    ) -> list[Order]:
        clauses: list[str] = []
        params: list[Any] = []
        if wallet_address:
            clauses.append("wallet_address = ?")
            params.append(wallet_address.lower())
        if status:
            clauses.append("status = ?")
            params.append(_enum_value(status))
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = self.conn.execute(
            f"SELECT * FROM orders {where} ORDER BY created_at DESC LIMIT ?",
            (*params, limit),
        ).fetchall()
        return [_row_to_order(r) for r in rows]

    def fetch_orders_by_status(self, status: OrderStatus, limit: int) -> list[Order]:
        """Oldest first, bounded batch."""
        rows = self.conn.execute(
            "SELECT * FROM orders WHERE status = ? ORDER BY created_at ASC LIMIT ?",
            (_enum_value(status), limit),
        ).fetchall()
        return [_row_to_order(r) for r in rows]

    def transition_order(
        self,
        order_id: str,
        expected: OrderStatus,
        target: OrderStatus,
        **fields: Any,
    ) -> bool:
        """Move an order ``expected -> target``. False means the race was lost."""
        if target not in ORDER_TRANSITIONS.get(expected, frozenset()):
            raise InvalidTransitionError("order", expected.value, target.value)
        sets = ["status = ?", "updated_at = ?", "version = version + 1"]
        params: list[Any] = [target.value, time.time()]
        for name, value in fields.items():
            if name not in _ORDER_COLUMNS:
                raise ValueError(f"unknown order field: {name}")
            column, encoded = _encode_order_field(name, value)
            sets.append(f"{column} = ?")
            params.append(encoded)
        cur = self.conn.execute(
            f"UPDATE orders SET {', '.join(sets)} WHERE id = ? AND status = ?",
            (*params, order_id, expected.value),
        )
        return cur.rowcount == 1

    def update_order_tracking(
        self, order_id: str, expected_version: int, **fields: Any,
    ) -> bool:
        """Bookkeeping write on a PENDING order, conditional on its version."""
        sets = ["updated_at = ?", "version = version + 1"]
        params: list[Any] = [time.time()]
        for name, value in fields.items():
            if name not in _ORDER_COLUMNS:
                raise ValueError(f"unknown order field: {name}")
            column, encoded = _encode_order_field(name, value)
            sets.append(f"{column} = ?")
            params.append(encoded)
        cur = self.conn.execute(
            f"UPDATE orders SET {', '.join(sets)} "
            "WHERE id = ? AND status = ? AND version = ?",
            (*params, order_id, OrderStatus.PENDING.value, expected_version),
        )
        return cur.rowcount == 1

    # ── Prediction pools ─────────────────────────────────────────────

    def insert_pool(self, pool: PredictionPool) -> str:
        pid = pool.id or str(uuid.uuid4())
        self.conn.execute(
            """
            INSERT INTO prediction_pools
                (id, token_address, token_symbol, creator_address, description,
                 prediction_type, threshold, timeframe_minutes, start_time,
                 end_time, start_price, status, execution_status,
                 auto_execute_trades, total_staked, liquidity, max_bet_size,
                 created_at, updated_at, version)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                pid, pool.token_address, pool.token_symbol, pool.creator_address,
                pool.description, pool.prediction_type.value, pool.threshold,
                pool.timeframe_minutes, pool.start_time, pool.end_time,
                pool.start_price, pool.status.value, pool.execution_status.value,
                int(pool.auto_execute_trades), 0.0, pool.liquidity,
                pool.max_bet_size, pool.created_at, pool.updated_at, 0,
            ),
        )
        return pid

    def get_pool(self, pool_id: str) -> PredictionPool | None:
        row = self.conn.execute(
            "SELECT * FROM prediction_pools WHERE id = ?", (pool_id,)
        ).fetchone()
        if not row:
            return None
        return self._row_to_pool(row)

    def list_pools(self, status: PoolStatus | None = None, limit: int = 100) -> list[PredictionPool]:
        if status:
            rows = self.conn.execute(
                "SELECT * FROM prediction_pools WHERE status = ? "
                "ORDER BY created_at DESC LIMIT ?",
                (status.value, limit),
            ).fetchall()
        else:
            rows = self.conn.execute(
                "SELECT * FROM prediction_pools ORDER BY created_at DESC LIMIT ?",
                (limit,),
            ).fetchall()
        return [self._row_to_pool(r) for r in rows]

    def fetch_expired_pools(
        self, now: float, limit: int, stale_before: float | None = None,
    ) -> list[PredictionPool]:
        """ACTIVE pools past their end time, plus RESOLVING claims older than ``stale_before``."""
        sql = "SELECT * FROM prediction_pools WHERE (status = ? AND end_time <= ?)"
        params: list[Any] = [PoolStatus.ACTIVE.value, now]
        if stale_before is not None:
            sql += " OR (status = ? AND (claimed_at IS NULL OR claimed_at <= ?))"
            params += [PoolStatus.RESOLVING.value, stale_before]
        rows = self.conn.execute(
            sql + " ORDER BY end_time ASC LIMIT ?", (*params, limit),
        ).fetchall()
        return [self._row_to_pool(r) for r in rows]

    def fetch_pools_awaiting_trades(
        self, limit: int, stale_before: float | None = None,
    ) -> list[PredictionPool]:
        sql = (
            "SELECT * FROM prediction_pools WHERE status = ? "
            "AND (execution_status = ?"
        )
        params: list[Any] = [PoolStatus.RESOLVED.value, ExecutionStatus.PENDING.value]
        if stale_before is not None:
            sql += " OR (execution_status = ? AND (claimed_at IS NULL OR claimed_at <= ?))"
            params += [ExecutionStatus.EXECUTING.value, stale_before]
        rows = self.conn.execute(
            sql + ") ORDER BY resolved_at ASC LIMIT ?", (*params, limit),
        ).fetchall()
        return [self._row_to_pool(r) for r in rows]

    def add_participant(
        self, pool_id: str, participant: Participant, now: float,
    ) -> JoinOutcome:
        """Insert a participant iff the pool is still joinable at write time."""
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT status, end_time FROM prediction_pools WHERE id = ?",
                (pool_id,),
            ).fetchone()
            if row is None:
                return "not_found"
            if row["status"] != PoolStatus.ACTIVE.value:
                return "not_active"
            if now >= row["end_time"]:
                return "closed"
            try:
                conn.execute(
                    """
                    INSERT INTO pool_participants
                        (pool_id, wallet_address, stake_amount, prediction, joined_at)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    (
                        pool_id, participant.wallet_address.lower(),
                        participant.stake_amount, participant.prediction.value,
                        participant.joined_at,
                    ),
                )
            except sqlite3.IntegrityError:
                return "duplicate"
            conn.execute(
                "UPDATE prediction_pools SET total_staked = total_staked + ?, "
                "updated_at = ?, version = version + 1 WHERE id = ?",
                (participant.stake_amount, now, pool_id),
            )
        return "joined"

    def transition_pool(
        self,
        pool_id: str,
        expected: PoolStatus,
        target: PoolStatus,
        claimed_at: float | None = None,
    ) -> bool:
        """Conditional status write; ``claimed_at`` is stored as given (None clears it)."""
        if target not in POOL_TRANSITIONS.get(expected, frozenset()):
            raise InvalidTransitionError("pool", expected.value, target.value)
        cur = self.conn.execute(
            "UPDATE prediction_pools SET status = ?, claimed_at = ?, updated_at = ?, "
            "version = version + 1 WHERE id = ? AND status = ?",
            (target.value, claimed_at, time.time(), pool_id, expected.value),
        )
        return cur.rowcount == 1

    def reclaim_stale_resolution(self, pool_id: str, stale_before: float, now: float) -> bool:
        """Take over a RESOLVING claim whose holder has not finished since ``stale_before``."""
        cur = self.conn.execute(
            "UPDATE prediction_pools SET claimed_at = ?, updated_at = ?, "
            "version = version + 1 WHERE id = ? AND status = ? "
            "AND (claimed_at IS NULL OR claimed_at <= ?)",
            (now, time.time(), pool_id, PoolStatus.RESOLVING.value, stale_before),
        )
        return cur.rowcount == 1

    def save_resolution(
        self,
        pool_id: str,
        participants: list[Participant],
        execution_status: ExecutionStatus,
        **fields: Any,
    ) -> bool:
        """RESOLVING -> RESOLVED with outcome and per-participant payouts."""
        sets = [
            "status = ?", "execution_status = ?", "claimed_at = NULL",
            "updated_at = ?", "version = version + 1",
        ]
        params: list[Any] = [
            PoolStatus.RESOLVED.value, execution_status.value, time.time(),
        ]
        for name, value in fields.items():
            if name not in _POOL_COLUMNS:
                raise ValueError(f"unknown pool field: {name}")
            sets.append(f"{name} = ?")
            params.append(_enum_value(value))
        with self._transaction() as conn:
            cur = conn.execute(
                f"UPDATE prediction_pools SET {', '.join(sets)} "
                "WHERE id = ? AND status = ?",
                (*params, pool_id, PoolStatus.RESOLVING.value),
            )
            if cur.rowcount != 1:
                return False
            for p in participants:
                conn.execute(
                    "UPDATE pool_participants SET is_winner = ?, payout = ? "
                    "WHERE pool_id = ? AND wallet_address = ? AND payout IS NULL",
                    (int(bool(p.is_winner)), p.payout, pool_id, p.wallet_address),
                )
        return True

    def transition_execution(
        self,
        pool_id: str,
        expected: ExecutionStatus,
        target: ExecutionStatus,
        claimed_at: float | None = None,
    ) -> bool:
        if target not in EXECUTION_TRANSITIONS.get(expected, frozenset()):
            raise InvalidTransitionError("pool execution", expected.value, target.value)
        cur = self.conn.execute(
            "UPDATE prediction_pools SET execution_status = ?, claimed_at = ?, "
            "updated_at = ?, version = version + 1 "
            "WHERE id = ? AND status = ? AND execution_status = ?",
            (target.value, claimed_at, time.time(), pool_id,
             PoolStatus.RESOLVED.value, expected.value),
        )
        return cur.rowcount == 1

    def reclaim_stale_execution(self, pool_id: str, stale_before: float, now: float) -> bool:
        cur = self.conn.execute(
            "UPDATE prediction_pools SET claimed_at = ?, updated_at = ?, "
            "version = version + 1 WHERE id = ? AND status = ? "
            "AND execution_status = ? AND (claimed_at IS NULL OR claimed_at <= ?)",
            (now, time.time(), pool_id, PoolStatus.RESOLVED.value,
             ExecutionStatus.EXECUTING.value, stale_before),
        )
        return cur.rowcount == 1

    def update_participant_trade(
        self, pool_id: str, wallet_address: str,
        trade_status: str, tx_hash: str | None = None,
    ) -> None:
        self.conn.execute(
            "UPDATE pool_participants SET trade_status = ?, trade_tx_hash = ? "
            "WHERE pool_id = ? AND wallet_address = ?",
            (trade_status, tx_hash, pool_id, wallet_address.lower()),
        )

    def _row_to_pool(self, row: sqlite3.Row) -> PredictionPool:
        data = dict(row)
        data["auto_execute_trades"] = bool(data["auto_execute_trades"])
        prows = self.conn.execute(
            "SELECT * FROM pool_participants WHERE pool_id = ? ORDER BY id ASC",
            (data["id"],),
        ).fetchall()
        participants = []
        for p in prows:
            pd = dict(p)
            participants.append(Participant(
                wallet_address=pd["wallet_address"],
                stake_amount=pd["stake_amount"],
                prediction=pd["prediction"],
                joined_at=pd["joined_at"],
                is_winner=None if pd["is_winner"] is None else bool(pd["is_winner"]),
                payout=pd["payout"],
                trade_status=pd["trade_status"] or "",
                trade_tx_hash=pd["trade_tx_hash"],
            ))
        data["participants"] = participants
        return PredictionPool(**data)

    # ── Transaction log ──────────────────────────────────────────────

    def append_transaction(self, tx: WalletTransaction) -> str:
        """Write-once; there is deliberately no update path."""
        tid = tx.id or str(uuid.uuid4())
        self.conn.execute(
            """
            INSERT INTO wallet_transactions
                (id, wallet_address, tx_hash, input_token, output_token,
                 input_amount, output_amount, input_value_usd,
                 output_value_usd, gas_cost_usd, token_symbol, source,
                 order_id, timestamp)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                tid, tx.wallet_address.lower(), tx.tx_hash,
                tx.input_token.lower(), tx.output_token.lower(),
                tx.input_amount, tx.output_amount, tx.input_value_usd,
                tx.output_value_usd, tx.gas_cost_usd, tx.token_symbol,
                tx.source, tx.order_id, tx.timestamp,
            ),
        )
        return tid

    def get_transactions(
        self,
        wallet_address: str,
        start: float | None = None,
        end: float | None = None,
    ) -> list[WalletTransaction]:
        """Ascending by timestamp; FIFO consumers depend on this order."""
        clauses = ["wallet_address = ?"]
        params: list[Any] = [wallet_address.lower()]
        if start is not None:
            clauses.append("timestamp >= ?")
            params.append(start)
        if end is not None:
            clauses.append("timestamp < ?")
            params.append(end)
        rows = self.conn.execute(
            f"SELECT * FROM wallet_transactions WHERE {' AND '.join(clauses)} "
            "ORDER BY timestamp ASC, rowid ASC",
            params,
        ).fetchall()
        return [WalletTransaction(**dict(r)) for r in rows]


def _row_to_order(row: sqlite3.Row) -> Order:
    data = dict(row)
    data["price_history"] = json.loads(data.pop("price_history_json") or "[]")
    quote = data.pop("execution_quote_json", None)
    data["execution_quote"] = json.loads(quote) if quote else None
    data["good_till_cancel"] = bool(data["good_till_cancel"])
    # Only the variant's own price fields survive validation
    for key in ("target_price", "stop_price", "limit_price"):
        if data.get(key) is None:
            data.pop(key, None)
    return parse_order(data)
