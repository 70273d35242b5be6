"""Order lifecycle: create, cancel, monitor and execute conditional orders.

State machine:

    PENDING ──► EXPIRED
       │  └───► CANCELLED            (owner request only)
       ▼
    EXECUTING ──► EXECUTED | PENDING_EXECUTION | FAILED

Monitor pass: price each distinct traded token once, expire stale orders,
record bookkeeping, and claim triggered orders (PENDING -> EXECUTING).
Execute pass: quote and submit each claimed order independently.

Every transition is a conditional write; a rejected write means another
pass got there first and is counted, not retried.
"""

from __future__ import annotations

import asyncio
import time
import uuid
from dataclasses import dataclass
from typing import Any, Callable

from pydantic import ValidationError as PydanticValidationError

from swapdesk.config import ZERO_ADDRESS, OrderConfig
from swapdesk.connectors.price_oracle import PriceOracle
from swapdesk.connectors.signing import SignerProvider
from swapdesk.connectors.swap_api import SwapClient, SwapQuote, SwapResult, received_amount
from swapdesk.engine.conditions import should_trigger, stop_crossed, traded_token, usable_price
from swapdesk.engine.errors import (
    NotFoundError,
    StaleStateError,
    UnauthorizedError,
    ValidationError,
)
from swapdesk.ledger.transactions import TransactionLog, gas_cost_usd
from swapdesk.observability.logger import get_logger, pass_context
from swapdesk.observability.metrics import metrics
from swapdesk.storage.database import Database
from swapdesk.storage.models import (
    Order,
    OrderStatus,
    PriceSample,
    WalletTransaction,
    parse_order,
)

log = get_logger(__name__)

_DAY_SECS = 86_400


@dataclass
class MonitorReport:
    processed: int = 0
    expired: int = 0
    claimed: int = 0
    claim_lost: int = 0
    no_price: int = 0
    errors: int = 0

    def to_dict(self) -> dict[str, Any]:
        return dict(self.__dict__)


@dataclass
class ExecuteReport:
    processed: int = 0
    executed: int = 0
    pending_execution: int = 0
    failed: int = 0
    lost: int = 0
    errors: int = 0

    def to_dict(self) -> dict[str, Any]:
        return dict(self.__dict__)


class OrderEngine:
    """Owns every order write after creation."""

    def __init__(
        self,
        db: Database,
        oracle: PriceOracle,
        swap: SwapClient,
        signers: SignerProvider,
        tx_log: TransactionLog,
        config: OrderConfig | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self._db = db
        self._oracle = oracle
        self._swap = swap
        self._signers = signers
        self._tx_log = tx_log
        self._config = config or OrderConfig()
        self._clock = clock

    # ── Synchronous paths ────────────────────────────────────────────

    def create_order(
        self,
        wallet_address: str,
        order_type: str,
        token_in: str,
        token_out: str,
        amount_in: float,
        target_price: float | None = None,
        stop_price: float | None = None,
        limit_price: float | None = None,
        slippage_bps: int | None = None,
        expires_at: float | None = None,
        good_till_cancel: bool = False,
        token_in_symbol: str = "",
        token_out_symbol: str = "",
    ) -> Order:
        """Validate and persist a new PENDING order."""
        now = self._clock()
        if good_till_cancel:
            expires_at = None
        elif expires_at is None:
            expires_at = now + self._config.default_expiry_days * _DAY_SECS
        elif expires_at <= now:
            raise ValidationError("expires_at must be in the future")

        if token_in.lower() == token_out.lower():
            raise ValidationError("token_in and token_out must differ")

        data: dict[str, Any] = {
            "id": str(uuid.uuid4()),
            "wallet_address": wallet_address.lower(),
            "order_type": str(getattr(order_type, "value", order_type)).upper(),
            "token_in": token_in.lower(),
            "token_out": token_out.lower(),
            "token_in_symbol": token_in_symbol,
            "token_out_symbol": token_out_symbol,
            "amount_in": amount_in,
            "slippage_bps": (
                self._config.default_slippage_bps if slippage_bps is None else slippage_bps
            ),
            "expires_at": expires_at,
            "good_till_cancel": good_till_cancel,
            "created_at": now,
            "updated_at": now,
        }
        # Only supplied prices are passed so a missing required one fails validation
        for name, value in (("target_price", target_price),
                            ("stop_price", stop_price),
                            ("limit_price", limit_price)):
            if value is not None:
                data[name] = value
        try:
            order = parse_order(data)
        except PydanticValidationError as e:
            raise ValidationError(_first_error(e)) from e

        self._db.insert_order(order)
        metrics.incr("orders.created", order_type=order.order_type)
        log.info(
            "orders.created",
            order_id=order.id, wallet=order.wallet_address,
            order_type=order.order_type, expires_at=order.expires_at,
        )
        return order

    def get_order(self, order_id: str) -> Order:
        order = self._db.get_order(order_id)
        if order is None:
            raise NotFoundError(f"order {order_id} not found")
        return order

    def list_orders(
        self, wallet_address: str, status: OrderStatus | None = None, limit: int = 100,
    ) -> list[Order]:
        return self._db.list_orders(wallet_address=wallet_address, status=status, limit=limit)

    def cancel_order(self, order_id: str, wallet_address: str) -> Order:
        """Owner cancel; only from PENDING, and only if the write lands first."""
        order = self.get_order(order_id)
        if order.wallet_address.lower() != wallet_address.lower():
            raise UnauthorizedError("wallet does not own this order")
        if order.is_terminal:
            raise StaleStateError(f"order already finished as {order.status.value}")
        if order.status != OrderStatus.PENDING:
            raise StaleStateError(f"order is {order.status.value}, not PENDING")

        now = self._clock()
        if not self._db.transition_order(
            order_id, OrderStatus.PENDING, OrderStatus.CANCELLED, cancelled_at=now,
        ):
            metrics.incr("orders.cancel_lost")
            raise StaleStateError("order changed state before it could be cancelled")

        metrics.incr("orders.cancelled")
        log.info("orders.cancelled", order_id=order_id, wallet=order.wallet_address)
        return self.get_order(order_id)

    # ── Monitor pass ─────────────────────────────────────────────────

    async def monitor_orders(self) -> MonitorReport:
        report = MonitorReport()
        with pass_context("orders.monitor"):
            orders = self._db.fetch_orders_by_status(
                OrderStatus.PENDING, self._config.monitor_batch_size,
            )
            if not orders:
                log.debug("orders.monitor_empty")
                return report

            now = self._clock()
            tokens = {traded_token(o, self._oracle.is_native) for o in orders}
            prices = await self._oracle.get_prices(tokens)

            for order in orders:
                report.processed += 1
                try:
                    self._monitor_one(order, prices, now, report)
                except Exception as e:
                    report.errors += 1
                    metrics.incr("orders.monitor_errors")
                    log.error("orders.monitor_failed", order_id=order.id, error=str(e))

            log.info("orders.monitor_complete", **report.to_dict())
            return report

    def _monitor_one(
        self,
        order: Order,
        prices: dict[str, float | None],
        now: float,
        report: MonitorReport,
    ) -> None:
        if order.is_expired(now):
            if self._db.transition_order(order.id, OrderStatus.PENDING, OrderStatus.EXPIRED):
                report.expired += 1
                metrics.incr("orders.expired")
                log.info("orders.expired", order_id=order.id)
            else:
                report.claim_lost += 1
                metrics.incr("orders.claim_lost")
            return

        price = usable_price(prices.get(traded_token(order, self._oracle.is_native)))
        if price is None:
            report.no_price += 1
            self._db.update_order_tracking(
                order.id, order.version,
                check_count=order.check_count + 1, last_checked_at=now,
            )
            return

        history = [*order.price_history, PriceSample(price=price, timestamp=now)]
        history = history[-self._config.price_history_limit:]
        tracking: dict[str, Any] = {
            "check_count": order.check_count + 1,
            "last_checked_at": now,
            "last_price": price,
            "price_history": history,
        }

        armed = False
        if self._config.stop_limit_arming:
            armed = order.stop_armed_at is not None
            if not armed and stop_crossed(order, price):
                tracking["stop_armed_at"] = now
                armed = True
                log.info("orders.stop_armed", order_id=order.id, price=price)

        if not self._db.update_order_tracking(order.id, order.version, **tracking):
            report.claim_lost += 1
            metrics.incr("orders.claim_lost")
            return

        if not should_trigger(order, price, armed=armed):
            return

        if self._db.transition_order(order.id, OrderStatus.PENDING, OrderStatus.EXECUTING):
            report.claimed += 1
            metrics.incr("orders.claimed")
            log.info(
                "orders.claimed",
                order_id=order.id, order_type=order.order_type, price=price,
            )
        else:
            report.claim_lost += 1
            metrics.incr("orders.claim_lost")
            log.info("orders.claim_lost", order_id=order.id)

    # ── Execute pass ─────────────────────────────────────────────────

    async def execute_orders(self) -> ExecuteReport:
        report = ExecuteReport()
        with pass_context("orders.execute"):
            orders = self._db.fetch_orders_by_status(
                OrderStatus.EXECUTING, self._config.execute_batch_size,
            )
            outcomes = await asyncio.gather(
                *(self._execute_one(o) for o in orders), return_exceptions=True,
            )
            for order, outcome in zip(orders, outcomes):
                report.processed += 1
                if isinstance(outcome, BaseException):
                    report.errors += 1
                    log.error("orders.execute_error", order_id=order.id, error=str(outcome))
                    continue
                setattr(report, outcome, getattr(report, outcome) + 1)

            if orders:
                log.info("orders.execute_complete", **report.to_dict())
            return report

    async def _execute_one(self, order: Order) -> str:
        """Returns the report field to count the outcome under."""
        start = time.monotonic()
        try:
            quote = await self._swap.quote(
                order.token_in, order.token_out, order.amount_in,
                order.slippage_bps, taker=order.wallet_address,
            )
        except Exception as e:
            return self._fail(order, f"quote failed: {e}")

        signer = self._signers.signer_for(order.wallet_address)
        if signer is None:
            if not self._db.transition_order(
                order.id, OrderStatus.EXECUTING, OrderStatus.PENDING_EXECUTION,
                execution_quote=_quote_summary(quote),
            ):
                return "lost"
            metrics.incr("orders.pending_execution")
            log.info("orders.pending_execution", order_id=order.id, buy_amount=quote.buy_amount)
            return "pending_execution"

        try:
            result = await self._swap.execute(quote, signer)
        except Exception as e:
            return self._fail(order, f"execution failed: {e}")

        now = self._clock()
        bought = received_amount(quote, result)
        if not self._db.transition_order(
            order.id, OrderStatus.EXECUTING, OrderStatus.EXECUTED,
            transaction_hash=result.transaction_hash,
            buy_amount=bought,
            gas_used=result.gas_used,
            execution_quote=_quote_summary(quote),
            executed_at=now,
        ):
            return "lost"

        metrics.incr("orders.executed")
        metrics.observe("orders.execute_latency_secs", time.monotonic() - start)
        log.info(
            "orders.executed",
            order_id=order.id, tx_hash=result.transaction_hash,
            buy_amount=bought, quoted_buy_amount=quote.buy_amount, gas_used=result.gas_used,
        )
        try:
            await self._record_trade(order, bought, result, now)
        except Exception as e:
            # The swap landed; the order stays EXECUTED
            metrics.incr("ledger.append_errors")
            log.error("orders.ledger_append_failed", order_id=order.id, error=str(e))
        return "executed"

    def _fail(self, order: Order, message: str) -> str:
        if not self._db.transition_order(
            order.id, OrderStatus.EXECUTING, OrderStatus.FAILED, error=message,
        ):
            return "lost"
        metrics.incr("orders.failed")
        log.error("orders.failed", order_id=order.id, error=message)
        return "failed"

    async def _record_trade(
        self, order: Order, bought: float, result: SwapResult, now: float,
    ) -> None:
        native = self._oracle.is_native
        prices = await self._oracle.get_prices({order.token_in, order.token_out})
        native_price = await self._oracle.get_native_price() or 0.0
        price_in = prices.get(order.token_in.lower()) or 0.0
        price_out = prices.get(order.token_out.lower()) or 0.0
        self._tx_log.append(WalletTransaction(
            wallet_address=order.wallet_address,
            tx_hash=result.transaction_hash,
            input_token=_ledger_token(order.token_in, native),
            output_token=_ledger_token(order.token_out, native),
            input_amount=order.amount_in,
            output_amount=bought,
            input_value_usd=order.amount_in * price_in,
            output_value_usd=bought * price_out,
            gas_cost_usd=gas_cost_usd(result.gas_used, result.gas_price, native_price),
            token_symbol=(
                order.token_out_symbol if native(order.token_in) else order.token_in_symbol
            ),
            source="order",
            order_id=order.id,
            timestamp=now,
        ))


def _ledger_token(token: str, is_native: Callable[[str], bool]) -> str:
    """Native aliases collapse to the zero address in the log."""
    return ZERO_ADDRESS if is_native(token) else token.lower()


def _quote_summary(quote: SwapQuote) -> dict[str, Any]:
    return {
        "sell_token": quote.sell_token,
        "buy_token": quote.buy_token,
        "sell_amount": str(quote.sell_amount),
        "buy_amount": quote.buy_amount,
        "fee_estimate_wei": str(quote.fee_estimate_wei),
        "transaction": quote.transaction,
    }


def _first_error(e: PydanticValidationError) -> str:
    err = e.errors()[0]
    loc = ".".join(str(p) for p in err.get("loc", ()) if p)
    return f"{loc}: {err.get('msg', 'invalid')}" if loc else str(err.get("msg", "invalid"))
