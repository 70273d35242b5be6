"""Per-year tax report.

FIFO is re-run over the calendar year's transactions only (UTC), so lots
bought in earlier years do not carry into the year. Buys establish cost
basis with zero realized gain; each sell's realized gain lands in gains
or, when not positive, in losses as an absolute value.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Iterable

from swapdesk.ledger.fifo import replay
from swapdesk.ledger.positions import utc_date
from swapdesk.ledger.transactions import LedgerEntry, TransactionLog


@dataclass
class TaxTransaction:
    date: str
    type: str  # "BUY" | "SELL"
    token_symbol: str
    token_address: str
    amount: float
    cost_basis: float
    sale_price: float
    realized_gain: float
    gas_cost: float
    tx_hash: str


@dataclass
class TaxReport:
    year: int
    total_realized_gains: float = 0.0
    total_realized_losses: float = 0.0
    net_realized_gain: float = 0.0
    total_gas_costs: float = 0.0
    transactions: list[TaxTransaction] = field(default_factory=list)
    summary: dict[str, float] = field(default_factory=lambda: {
        "total_buys": 0, "total_sells": 0, "total_volume": 0.0,
    })

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def year_bounds(year: int) -> tuple[float, float]:
    """[start, end) of the calendar year as UTC epoch seconds."""
    start = datetime(year, 1, 1, tzinfo=timezone.utc).timestamp()
    end = datetime(year + 1, 1, 1, tzinfo=timezone.utc).timestamp()
    return start, end


def build_tax_report(year: int, entries: Iterable[LedgerEntry]) -> TaxReport:
    """Pure derivation from the year's entries, ascending by time."""
    report = TaxReport(year=year)
    run = replay(entries)
    for entry, sold in run.steps:
        tx = entry.tx
        report.total_gas_costs += tx.gas_cost_usd
        symbol = tx.token_symbol or entry.token[:6] + "..."
        if sold is None:
            report.summary["total_buys"] += 1
            report.summary["total_volume"] += tx.input_value_usd
            report.transactions.append(TaxTransaction(
                date=utc_date(tx.timestamp), type="BUY",
                token_symbol=symbol, token_address=entry.token,
                amount=entry.amount, cost_basis=tx.input_value_usd,
                sale_price=0.0, realized_gain=0.0,
                gas_cost=tx.gas_cost_usd, tx_hash=tx.tx_hash or tx.id,
            ))
            continue

        report.summary["total_sells"] += 1
        report.summary["total_volume"] += tx.output_value_usd
        if sold.realized_gain > 0:
            report.total_realized_gains += sold.realized_gain
        else:
            report.total_realized_losses += abs(sold.realized_gain)
        report.transactions.append(TaxTransaction(
            date=utc_date(tx.timestamp), type="SELL",
            token_symbol=symbol, token_address=entry.token,
            amount=entry.amount, cost_basis=sold.cost_basis,
            sale_price=tx.output_value_usd, realized_gain=sold.realized_gain,
            gas_cost=tx.gas_cost_usd, tx_hash=tx.tx_hash or tx.id,
        ))

    report.net_realized_gain = report.total_realized_gains - report.total_realized_losses
    return report


def generate_tax_report(tx_log: TransactionLog, wallet_address: str, year: int) -> TaxReport:
    start, end = year_bounds(year)
    return build_tax_report(year, tx_log.entries(wallet_address, start=start, end=end))
