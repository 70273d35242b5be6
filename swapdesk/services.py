"""Wiring of storage, connectors and engines for the CLI, API and scheduler."""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

from swapdesk.config import AppConfig
from swapdesk.connectors.price_oracle import PriceOracle
from swapdesk.connectors.rate_limiter import rate_limiter
from swapdesk.connectors.signing import SignerProvider, default_signer_provider
from swapdesk.connectors.swap_api import SwapClient
from swapdesk.engine.orders import OrderEngine
from swapdesk.engine.predictions import PredictionEngine
from swapdesk.ledger.transactions import TransactionLog
from swapdesk.storage.cache import TTLCache
from swapdesk.storage.database import Database

T = TypeVar("T")


@dataclass
class Services:
    config: AppConfig
    db: Database
    oracle: PriceOracle
    swap: SwapClient
    signers: SignerProvider
    tx_log: TransactionLog
    orders: OrderEngine
    predictions: PredictionEngine

    async def aclose(self) -> None:
        await self.oracle.close()
        await self.swap.close()
        close = getattr(self.signers, "close", None)
        if close is not None:
            await close()
        self.db.close()


def build_services(
    config: AppConfig,
    *,
    oracle: PriceOracle | None = None,
    price_cache: TTLCache | None = None,
    swap: SwapClient | None = None,
    signers: SignerProvider | None = None,
    clock: Callable[[], float] = time.time,
) -> Services:
    """Connect the database and build both engines over shared collaborators.

    ``price_cache`` lets a long-lived caller (the API) keep prices warm
    across the short-lived service sets it builds per request.
    """
    rate_limiter.configure(config.rate_limits)
    db = Database(config.storage)
    db.connect()
    oracle = oracle or PriceOracle(
        config.price_feed,
        cache=price_cache if price_cache is not None else TTLCache(),
        native_tokens=config.ledger.native_tokens,
    )
    swap = swap or SwapClient(config.swap)
    signers = signers or default_signer_provider()
    tx_log = TransactionLog(db, config.ledger)
    return Services(
        config=config,
        db=db,
        oracle=oracle,
        swap=swap,
        signers=signers,
        tx_log=tx_log,
        orders=OrderEngine(
            db, oracle, swap, signers, tx_log,
            config=config.orders, clock=clock,
        ),
        predictions=PredictionEngine(
            db, oracle, swap, signers, tx_log,
            config=config.predictions,
            trade_slippage_bps=config.orders.default_slippage_bps,
            clock=clock,
        ),
    )


async def run_with_services(
    factory: Callable[[], Services],
    fn: Callable[[Services], Awaitable[T]],
) -> T:
    """Run ``fn`` against freshly built services, closing them afterwards."""
    services = factory()
    try:
        return await fn(services)
    finally:
        await services.aclose()
