"""FIFO lot book.

Buys open lots per token; sells consume the oldest lots first. A sell
larger than the open lots consumes what exists and stops, leaving the
unmatched remainder on the result rather than driving the book negative.
"""

from __future__ import annotations

from collections import defaultdict, deque
from dataclasses import dataclass, field
from typing import Iterable

from swapdesk.ledger.transactions import LedgerEntry

_DUST = 1e-12


@dataclass
class Lot:
    token: str
    price: float
    amount: float
    timestamp: float


@dataclass
class SellResult:
    requested: float
    consumed: float = 0.0
    cost_basis: float = 0.0
    proceeds: float = 0.0
    realized_gain: float = 0.0

    @property
    def unmatched(self) -> float:
        return max(self.requested - self.consumed, 0.0)


class LotBook:
    """Open lots and cumulative realized gain, per token."""

    def __init__(self) -> None:
        self._lots: dict[str, deque[Lot]] = defaultdict(deque)
        self._realized: dict[str, float] = defaultdict(float)

    def buy(self, token: str, price: float, amount: float, timestamp: float) -> Lot:
        lot = Lot(token=token, price=price, amount=amount, timestamp=timestamp)
        if amount > 0:
            self._lots[token].append(lot)
        return lot

    def sell(self, token: str, unit_price: float, amount: float) -> SellResult:
        result = SellResult(requested=amount)
        queue = self._lots.get(token)
        remaining = amount
        while queue and remaining > _DUST:
            lot = queue[0]
            take = min(remaining, lot.amount)
            result.consumed += take
            result.cost_basis += lot.price * take
            result.proceeds += unit_price * take
            result.realized_gain += (unit_price - lot.price) * take
            lot.amount -= take
            remaining -= take
            if lot.amount <= _DUST:
                queue.popleft()
        self._realized[token] += result.realized_gain
        return result

    def open_lots(self, token: str) -> list[Lot]:
        return list(self._lots.get(token, ()))

    def remaining(self, token: str) -> float:
        return sum(lot.amount for lot in self.open_lots(token))

    def average_entry(self, token: str) -> float:
        """Size-weighted average price of the open lots."""
        lots = self.open_lots(token)
        total = sum(lot.amount for lot in lots)
        if total <= 0:
            return 0.0
        return sum(lot.price * lot.amount for lot in lots) / total

    def realized(self, token: str) -> float:
        return self._realized.get(token, 0.0)

    def tokens(self) -> list[str]:
        return sorted(set(self._lots) | set(self._realized))


@dataclass
class Replay:
    """A lot book after a full pass, with each entry's sell outcome."""
    book: LotBook
    steps: list[tuple[LedgerEntry, SellResult | None]] = field(default_factory=list)


def replay(entries: Iterable[LedgerEntry]) -> Replay:
    """Run entries (already in ascending time order) through a fresh book."""
    book = LotBook()
    out = Replay(book=book)
    for entry in entries:
        if entry.side == "buy":
            book.buy(entry.token, entry.unit_price, entry.amount, entry.timestamp)
            out.steps.append((entry, None))
        else:
            out.steps.append((entry, book.sell(entry.token, entry.unit_price, entry.amount)))
    return out
