"""Database migrations: create and upgrade schema."""

from __future__ import annotations

import sqlite3

from swapdesk.observability.logger import get_logger

log = get_logger(__name__)

SCHEMA_VERSION = 3

_MIGRATIONS: dict[int, list[str]] = {
    1: [
        """
        CREATE TABLE IF NOT EXISTS schema_version (
            version INTEGER PRIMARY KEY
        );
        """,
        """
        CREATE TABLE IF NOT EXISTS orders (
            id TEXT PRIMARY KEY,
            wallet_address TEXT NOT NULL,
            order_type TEXT NOT NULL,
            token_in TEXT NOT NULL,
            token_out TEXT NOT NULL,
            token_in_symbol TEXT DEFAULT '',
            token_out_symbol TEXT DEFAULT '',
            amount_in REAL NOT NULL,
            target_price REAL,
            stop_price REAL,
            limit_price REAL,
            slippage_bps INTEGER NOT NULL,
            status TEXT NOT NULL,
            expires_at REAL,
            good_till_cancel INTEGER DEFAULT 0,
            check_count INTEGER DEFAULT 0,
            last_checked_at REAL,
            last_price REAL,
            price_history_json TEXT DEFAULT '[]',
            transaction_hash TEXT,
            buy_amount REAL,
            gas_used INTEGER,
            error TEXT,
            execution_quote_json TEXT,
            created_at REAL NOT NULL,
            updated_at REAL NOT NULL,
            executed_at REAL,
            cancelled_at REAL,
            version INTEGER NOT NULL DEFAULT 0
        );
        """,
        """
        CREATE INDEX IF NOT EXISTS idx_orders_status ON orders(status, created_at);
        """,
        """
        CREATE INDEX IF NOT EXISTS idx_orders_wallet ON orders(wallet_address);
        """,
        """
        CREATE TABLE IF NOT EXISTS prediction_pools (
            id TEXT PRIMARY KEY,
            token_address TEXT NOT NULL,
            token_symbol TEXT DEFAULT '',
            creator_address TEXT,
            description TEXT,
            prediction_type TEXT NOT NULL,
            threshold REAL NOT NULL,
            timeframe_minutes INTEGER NOT NULL,
            start_time REAL NOT NULL,
            end_time REAL NOT NULL,
            start_price REAL NOT NULL,
            status TEXT NOT NULL,
            execution_status TEXT NOT NULL,
            auto_execute_trades INTEGER DEFAULT 1,
            total_staked REAL DEFAULT 0,
            liquidity REAL DEFAULT 0,
            max_bet_size REAL DEFAULT 0,
            end_price REAL,
            price_change REAL,
            outcome TEXT,
            total_pot REAL DEFAULT 0,
            gas_fee_pool REAL DEFAULT 0,
            winner_count INTEGER DEFAULT 0,
            loser_count INTEGER DEFAULT 0,
            resolved_at REAL,
            created_at REAL NOT NULL,
            updated_at REAL NOT NULL,
            version INTEGER NOT NULL DEFAULT 0,
            CHECK (end_time > start_time)
        );
        """,
        """
        CREATE INDEX IF NOT EXISTS idx_pools_status_end ON prediction_pools(status, end_time);
        """,
        """
        CREATE TABLE IF NOT EXISTS pool_participants (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            pool_id TEXT NOT NULL,
            wallet_address TEXT NOT NULL,
            stake_amount REAL NOT NULL,
            prediction TEXT NOT NULL,
            joined_at REAL NOT NULL,
            is_winner INTEGER,
            payout REAL,
            trade_status TEXT DEFAULT '',
            trade_tx_hash TEXT,
            UNIQUE (pool_id, wallet_address),
            FOREIGN KEY (pool_id) REFERENCES prediction_pools(id)
        );
        """,
        """
        CREATE TABLE IF NOT EXISTS wallet_transactions (
            id TEXT PRIMARY KEY,
            wallet_address TEXT NOT NULL,
            tx_hash TEXT,
            input_token TEXT NOT NULL,
            output_token TEXT NOT NULL,
            input_amount REAL DEFAULT 0,
            output_amount REAL DEFAULT 0,
            input_value_usd REAL DEFAULT 0,
            output_value_usd REAL DEFAULT 0,
            gas_cost_usd REAL DEFAULT 0,
            token_symbol TEXT DEFAULT '',
            source TEXT DEFAULT 'swap',
            order_id TEXT,
            timestamp REAL NOT NULL
        );
        """,
        """
        CREATE INDEX IF NOT EXISTS idx_wallet_tx_wallet_ts
            ON wallet_transactions(wallet_address, timestamp);
        """,
    ],
    2: [
        # STOP_LIMIT arming marker
        """
        ALTER TABLE orders ADD COLUMN stop_armed_at REAL;
        """,
        """
        CREATE UNIQUE INDEX IF NOT EXISTS idx_wallet_tx_hash
            ON wallet_transactions(tx_hash) WHERE tx_hash IS NOT NULL AND tx_hash != '';
        """,
    ],
    3: [
        # Claim time for RESOLVING / EXECUTING leases
        """
        ALTER TABLE prediction_pools ADD COLUMN claimed_at REAL;
        """,
    ],
}


def run_migrations(conn: sqlite3.Connection) -> None:
    """Run all pending migrations."""
    conn.execute("CREATE TABLE IF NOT EXISTS schema_version (version INTEGER PRIMARY KEY)")
    conn.commit()

    current = _get_current_version(conn)

    for version in sorted(_MIGRATIONS.keys()):
        if version <= current:
            continue
        log.info("migrations.running", version=version)
        for sql in _MIGRATIONS[version]:
            conn.execute(sql)
        conn.execute(
            "INSERT OR REPLACE INTO schema_version (version) VALUES (?)",
            (version,),
        )
        conn.commit()
        log.info("migrations.applied", version=version)

    log.debug("migrations.complete", version=_get_current_version(conn))


def _get_current_version(conn: sqlite3.Connection) -> int:
    row = conn.execute("SELECT MAX(version) FROM schema_version").fetchone()
    return row[0] if row and row[0] else 0
