"""Transaction log: append-only record of completed swaps.

Every ledger view (positions, PnL, tax) is re-derived from this log.
A swap is a *buy* of its output token when the input is the native
asset (ETH or WETH), otherwise a *sell* of its input token.
"""

from __future__ import annotations

import sqlite3
import time
from dataclasses import dataclass

from swapdesk.config import BASE_WETH_ADDRESS, LedgerConfig
from swapdesk.engine.errors import ValidationError
from swapdesk.observability.logger import get_logger
from swapdesk.observability.metrics import metrics
from swapdesk.storage.database import Database
from swapdesk.storage.models import WalletTransaction

log = get_logger(__name__)


@dataclass
class LedgerEntry:
    """A log entry seen from the lot book's side."""
    tx: WalletTransaction
    side: str  # "buy" | "sell"
    token: str
    amount: float
    unit_price: float

    @property
    def timestamp(self) -> float:
        return self.tx.timestamp


def classify(tx: WalletTransaction, config: LedgerConfig) -> LedgerEntry:
    if config.is_native(tx.input_token):
        amount = tx.output_amount
        price = tx.input_value_usd / amount if amount > 0 else 0.0
        return LedgerEntry(tx=tx, side="buy", token=tx.output_token.lower(), amount=amount, unit_price=price)
    amount = tx.input_amount
    price = tx.output_value_usd / amount if amount > 0 else 0.0
    return LedgerEntry(tx=tx, side="sell", token=tx.input_token.lower(), amount=amount, unit_price=price)


class TransactionLog:
    def __init__(self, db: Database, config: LedgerConfig):
        self._db = db
        self._config = config

    @property
    def config(self) -> LedgerConfig:
        return self._config

    def append(self, tx: WalletTransaction) -> str:
        """Write once. Addresses are normalised to lower case.

        A second record for the same transaction hash is rejected.
        """
        for name in ("input_amount", "output_amount", "input_value_usd",
                     "output_value_usd", "gas_cost_usd"):
            if getattr(tx, name) < 0:
                raise ValidationError(f"{name} must be non-negative")
        normalised = tx.model_copy(update={
            "wallet_address": tx.wallet_address.lower(),
            "input_token": tx.input_token.lower(),
            "output_token": tx.output_token.lower(),
        })
        try:
            tid = self._db.append_transaction(normalised)
        except sqlite3.IntegrityError as e:
            metrics.incr("ledger.duplicates")
            raise ValidationError(f"transaction {tx.tx_hash} is already recorded") from e
        metrics.incr("ledger.appended", source=tx.source)
        log.info(
            "ledger.appended",
            wallet=normalised.wallet_address, tx_hash=tx.tx_hash,
            source=tx.source, order_id=tx.order_id,
        )
        return tid

    def record_swap(
        self,
        wallet_address: str,
        side: str,
        token_address: str,
        tx_hash: str,
        token_amount: float,
        native_amount: float,
        price_usd: float,
        gas_used: int = 0,
        gas_price_wei: int = 0,
        token_symbol: str = "",
        timestamp: float | None = None,
    ) -> WalletTransaction:
        """Record a swap the wallet submitted itself.

        The native leg is written as WETH. Both legs carry the token amount
        valued at ``price_usd``; the native price implied by the two amounts
        is used only to cost the gas.
        """
        side = side.upper()
        if side not in ("BUY", "SELL"):
            raise ValidationError("side must be BUY or SELL")
        if not wallet_address or not token_address or not tx_hash:
            raise ValidationError("wallet_address, token_address and tx_hash are required")
        if self._config.is_native(token_address):
            raise ValidationError("token_address must be the non-native leg of the swap")
        if token_amount <= 0:
            raise ValidationError("token_amount must be positive")
        if native_amount < 0 or price_usd < 0:
            raise ValidationError("native_amount and price_usd must be non-negative")

        value_usd = token_amount * price_usd
        native_price = value_usd / native_amount if native_amount > 0 else 0.0
        token = token_address.lower()
        if side == "BUY":
            input_token, output_token = BASE_WETH_ADDRESS, token
            input_amount, output_amount = native_amount, token_amount
        else:
            input_token, output_token = token, BASE_WETH_ADDRESS
            input_amount, output_amount = token_amount, native_amount
        tx = WalletTransaction(
            wallet_address=wallet_address,
            tx_hash=tx_hash,
            input_token=input_token,
            output_token=output_token,
            input_amount=input_amount,
            output_amount=output_amount,
            input_value_usd=value_usd,
            output_value_usd=value_usd,
            gas_cost_usd=gas_cost_usd(gas_used, gas_price_wei, native_price),
            token_symbol=token_symbol,
            source="swap",
            timestamp=timestamp if timestamp is not None else time.time(),
        )
        tid = self.append(tx)
        return tx.model_copy(update={
            "id": tid,
            "wallet_address": tx.wallet_address.lower(),
            "input_token": tx.input_token.lower(),
            "output_token": tx.output_token.lower(),
        })

    def entries(
        self,
        wallet_address: str,
        start: float | None = None,
        end: float | None = None,
    ) -> list[LedgerEntry]:
        """Classified entries, ascending by timestamp."""
        txs = self._db.get_transactions(wallet_address, start=start, end=end)
        return [classify(tx, self._config) for tx in txs]


def gas_cost_usd(gas_used: int, gas_price_wei: int, native_price_usd: float) -> float:
    return gas_used * gas_price_wei * native_price_usd / 1e18
