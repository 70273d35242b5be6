"""Position and PnL views over the transaction log.

Nothing here is stored: every call replays the wallet's log through a
fresh FIFO book and prices the open lots.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Sequence

from swapdesk.connectors.price_oracle import PriceOracle
from swapdesk.ledger.fifo import Replay, replay
from swapdesk.ledger.transactions import LedgerEntry, TransactionLog


@dataclass
class Position:
    token_address: str
    token_symbol: str
    remaining_amount: float
    avg_entry_price: float
    current_price: float
    cost_basis: float
    current_value: float
    realized_pnl: float
    unrealized_pnl: float
    status: str  # "open" | "closed"
    buys: int = 0
    sells: int = 0
    first_trade_at: float = 0.0
    last_trade_at: float = 0.0

    @property
    def total_pnl(self) -> float:
        return self.realized_pnl + self.unrealized_pnl

    def to_dict(self) -> dict[str, Any]:
        return {**asdict(self), "total_pnl": self.total_pnl}


@dataclass
class WalletSummary:
    realized_pnl: float = 0.0
    unrealized_pnl: float = 0.0
    total_volume: float = 0.0
    total_trades: int = 0
    bought_usd: float = 0.0
    sold_usd: float = 0.0
    holding_usd: float = 0.0
    gas_costs_usd: float = 0.0
    win_rate: float = 0.0
    positions_open: int = 0
    positions_closed: int = 0
    daily_pnl: list[dict[str, Any]] = field(default_factory=list)

    @property
    def total_pnl(self) -> float:
        return self.realized_pnl + self.unrealized_pnl

    def to_dict(self) -> dict[str, Any]:
        return {**asdict(self), "total_pnl": self.total_pnl}


def utc_date(timestamp: float) -> str:
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).strftime("%Y-%m-%d")


def build_positions(run: Replay, prices: dict[str, float | None]) -> list[Position]:
    """One position per token ever traded, open positions first."""
    symbols: dict[str, str] = {}
    counts: dict[str, list[int]] = {}
    times: dict[str, list[float]] = {}
    for entry, _ in run.steps:
        if entry.tx.token_symbol:
            symbols[entry.token] = entry.tx.token_symbol
        c = counts.setdefault(entry.token, [0, 0])
        c[0 if entry.side == "buy" else 1] += 1
        t = times.setdefault(entry.token, [entry.timestamp, entry.timestamp])
        t[1] = entry.timestamp

    book = run.book
    positions: list[Position] = []
    for token in book.tokens():
        remaining = book.remaining(token)
        avg = book.average_entry(token)
        price = prices.get(token) or 0.0
        is_open = remaining > 0
        # Unpriced open lots carry no unrealized PnL rather than a full loss
        unrealized = (price - avg) * remaining if is_open and price > 0 else 0.0
        positions.append(Position(
            token_address=token,
            token_symbol=symbols.get(token, token[:6] + "..."),
            remaining_amount=remaining,
            avg_entry_price=avg,
            current_price=price,
            cost_basis=avg * remaining,
            current_value=price * remaining,
            realized_pnl=book.realized(token),
            unrealized_pnl=unrealized,
            status="open" if is_open else "closed",
            buys=counts.get(token, [0, 0])[0],
            sells=counts.get(token, [0, 0])[1],
            first_trade_at=times.get(token, [0.0, 0.0])[0],
            last_trade_at=times.get(token, [0.0, 0.0])[1],
        ))
    positions.sort(key=lambda p: (p.status != "open", -p.last_trade_at))
    return positions


def summarize(run: Replay, positions: Sequence[Position]) -> WalletSummary:
    summary = WalletSummary()
    wins = 0
    sells = 0
    daily: dict[str, float] = {}
    for entry, sold in run.steps:
        tx = entry.tx
        summary.total_trades += 1
        summary.gas_costs_usd += tx.gas_cost_usd
        day = utc_date(tx.timestamp)
        daily[day] = daily.get(day, 0.0) - tx.gas_cost_usd
        if sold is None:
            summary.bought_usd += tx.input_value_usd
            summary.total_volume += tx.input_value_usd
        else:
            sells += 1
            wins += 1 if sold.realized_gain > 0 else 0
            summary.sold_usd += tx.output_value_usd
            summary.total_volume += tx.output_value_usd
            daily[day] += sold.realized_gain

    summary.realized_pnl = sum(p.realized_pnl for p in positions)
    summary.unrealized_pnl = sum(p.unrealized_pnl for p in positions)
    summary.holding_usd = sum(p.current_value for p in positions if p.status == "open")
    summary.positions_open = sum(1 for p in positions if p.status == "open")
    summary.positions_closed = len(positions) - summary.positions_open
    summary.win_rate = wins / sells * 100 if sells else 0.0
    summary.daily_pnl = [{"date": d, "pnl": v} for d, v in sorted(daily.items())]
    return summary


async def _replay_and_price(
    tx_log: TransactionLog, oracle: PriceOracle, wallet_address: str,
) -> tuple[Replay, list[Position]]:
    entries: list[LedgerEntry] = tx_log.entries(wallet_address)
    run = replay(entries)
    open_tokens = [t for t in run.book.tokens() if run.book.remaining(t) > 0]
    prices = await oracle.get_prices(open_tokens) if open_tokens else {}
    return run, build_positions(run, prices)


async def get_positions(
    tx_log: TransactionLog, oracle: PriceOracle, wallet_address: str,
) -> list[Position]:
    _, positions = await _replay_and_price(tx_log, oracle, wallet_address)
    return positions


async def wallet_summary(
    tx_log: TransactionLog, oracle: PriceOracle, wallet_address: str,
) -> WalletSummary:
    run, positions = await _replay_and_price(tx_log, oracle, wallet_address)
    return summarize(run, positions)
