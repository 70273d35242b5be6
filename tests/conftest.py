"""Shared test fixtures."""

from __future__ import annotations

import sys
from pathlib import Path

import pytest

# Ensure swapdesk is importable
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from swapdesk.config import LedgerConfig, OrderConfig, PredictionConfig  # noqa: E402
from swapdesk.connectors.signing import NoSignerProvider  # noqa: E402
from swapdesk.engine.orders import OrderEngine  # noqa: E402
from swapdesk.engine.predictions import PredictionEngine  # noqa: E402
from swapdesk.ledger.transactions import TransactionLog  # noqa: E402
from swapdesk.observability.metrics import metrics  # noqa: E402

from tests.fakes import TOKEN, FakeClock, FakeOracle, FakeSwap, make_db  # noqa: E402


@pytest.fixture(autouse=True)
def _reset_metrics():
    metrics.reset()
    yield
    metrics.reset()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def db(tmp_path):
    database = make_db(tmp_path)
    yield database
    database.close()


@pytest.fixture
def oracle() -> FakeOracle:
    return FakeOracle({TOKEN: 1.0})


@pytest.fixture
def swap() -> FakeSwap:
    return FakeSwap()


@pytest.fixture
def tx_log(db) -> TransactionLog:
    return TransactionLog(db, LedgerConfig())


@pytest.fixture
def order_engine(db, oracle, swap, tx_log, clock) -> OrderEngine:
    return OrderEngine(
        db, oracle, swap, NoSignerProvider(), tx_log,
        config=OrderConfig(), clock=clock,
    )


@pytest.fixture
def prediction_engine(db, oracle, swap, tx_log, clock) -> PredictionEngine:
    return PredictionEngine(
        db, oracle, swap, NoSignerProvider(), tx_log,
        config=PredictionConfig(), clock=clock,
    )
