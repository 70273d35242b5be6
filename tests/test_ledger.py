"""Tests for the transaction log, FIFO lot book, positions and tax report."""

from __future__ import annotations

from datetime import datetime, timezone

import pytest

from swapdesk.config import BASE_WETH_ADDRESS, ZERO_ADDRESS, LedgerConfig
from swapdesk.engine.errors import ValidationError
from swapdesk.ledger.fifo import LotBook, replay
from swapdesk.ledger.positions import get_positions, wallet_summary
from swapdesk.ledger.tax_report import build_tax_report, generate_tax_report, year_bounds
from swapdesk.ledger.transactions import classify, gas_cost_usd
from swapdesk.storage.models import WalletTransaction

from tests.fakes import OTHER_WALLET, TOKEN, WALLET, FakeOracle

OTHER_TOKEN = "0x9999999999999999999999999999999999999999"


def _ts(year: int, month: int, day: int, hour: int = 12) -> float:
    return datetime(year, month, day, hour, tzinfo=timezone.utc).timestamp()


def _buy(amount: float, usd: float, ts: float, token: str = TOKEN, **kw) -> WalletTransaction:
    return WalletTransaction(
        wallet_address=WALLET, input_token=ZERO_ADDRESS, output_token=token,
        input_amount=usd / 2000.0, output_amount=amount,
        input_value_usd=usd, output_value_usd=usd, timestamp=ts, **kw,
    )


def _sell(amount: float, usd: float, ts: float, token: str = TOKEN, **kw) -> WalletTransaction:
    return WalletTransaction(
        wallet_address=WALLET, input_token=token, output_token=ZERO_ADDRESS,
        input_amount=amount, output_amount=usd / 2000.0,
        input_value_usd=usd, output_value_usd=usd, timestamp=ts, **kw,
    )


# ── Classification ───────────────────────────────────────────────────

class TestClassify:

    def test_native_input_is_buy_of_output(self):
        entry = classify(_buy(10, 25, 0), LedgerConfig())
        assert entry.side == "buy"
        assert entry.token == TOKEN
        assert entry.unit_price == pytest.approx(2.5)

    def test_token_input_is_sell_of_input(self):
        entry = classify(_sell(4, 10, 0), LedgerConfig())
        assert entry.side == "sell"
        assert entry.token == TOKEN
        assert entry.unit_price == pytest.approx(2.5)

    def test_zero_amount_has_zero_price(self):
        entry = classify(_buy(0, 25, 0), LedgerConfig())
        assert entry.unit_price == 0.0

    def test_weth_counts_as_native(self):
        weth_buy = _buy(10, 25, 0).model_copy(update={"input_token": BASE_WETH_ADDRESS})
        assert classify(weth_buy, LedgerConfig()).side == "buy"
        symbol_buy = _buy(10, 25, 0).model_copy(update={"input_token": "WETH"})
        assert classify(symbol_buy, LedgerConfig()).side == "buy"
        weth_sell = _sell(4, 10, 0).model_copy(update={"output_token": BASE_WETH_ADDRESS})
        entry = classify(weth_sell, LedgerConfig())
        assert (entry.side, entry.token) == ("sell", TOKEN)

    def test_gas_cost(self):
        assert gas_cost_usd(21_000, 2 * 10 ** 9, 3000.0) == pytest.approx(0.126)


class TestTransactionLog:

    def test_append_normalises_and_orders(self, tx_log):
        tx_log.append(_sell(1, 2, ts=200).model_copy(
            update={"wallet_address": WALLET.upper().replace("0X", "0x")}))
        tx_log.append(_buy(1, 1, ts=100))
        entries = tx_log.entries(WALLET)
        assert [e.timestamp for e in entries] == [100, 200]
        assert all(e.tx.wallet_address == WALLET for e in entries)

    def test_negative_values_rejected(self, tx_log):
        with pytest.raises(ValidationError):
            tx_log.append(_buy(1, 1, ts=0).model_copy(update={"gas_cost_usd": -1}))

    def test_window_is_half_open(self, tx_log):
        tx_log.append(_buy(1, 1, ts=100))
        tx_log.append(_buy(1, 1, ts=200))
        assert len(tx_log.entries(WALLET, start=100, end=200)) == 1
        assert tx_log.entries(OTHER_WALLET) == []

    def test_duplicate_hash_rejected(self, tx_log):
        tx_log.append(_buy(1, 1, ts=100, tx_hash="0xabc"))
        with pytest.raises(ValidationError, match="already recorded"):
            tx_log.append(_buy(2, 2, ts=101, tx_hash="0xabc"))
        assert len(tx_log.entries(WALLET)) == 1

    def test_record_swap_buy(self, tx_log):
        tx = tx_log.record_swap(
            WALLET, "buy", "0x" + TOKEN[2:].upper(), "0xbeef",
            token_amount=500, native_amount=0.25, price_usd=2.0,
            gas_used=100_000, gas_price_wei=10 ** 9, timestamp=100,
        )
        assert tx.id
        assert (tx.input_token, tx.output_token) == (BASE_WETH_ADDRESS, TOKEN)
        assert tx.input_value_usd == tx.output_value_usd == pytest.approx(1000)
        # implied native price 1000 / 0.25 = 4000
        assert tx.gas_cost_usd == pytest.approx(0.4)
        [entry] = tx_log.entries(WALLET)
        assert (entry.side, entry.token, entry.amount) == ("buy", TOKEN, 500)
        assert entry.unit_price == pytest.approx(2.0)

    def test_record_swap_sell(self, tx_log):
        tx = tx_log.record_swap(
            WALLET, "SELL", TOKEN, "0xbeef2",
            token_amount=50, native_amount=0.01, price_usd=0.5, timestamp=100,
        )
        assert (tx.input_token, tx.output_token) == (TOKEN, BASE_WETH_ADDRESS)
        assert (tx.input_amount, tx.output_amount) == (50, 0.01)
        assert tx.source == "swap"
        assert tx.gas_cost_usd == 0

    @pytest.mark.parametrize("kwargs, message", [
        ({"side": "HOLD"}, "side"),
        ({"token_address": ZERO_ADDRESS}, "non-native"),
        ({"token_address": BASE_WETH_ADDRESS}, "non-native"),
        ({"token_amount": 0}, "token_amount"),
        ({"price_usd": -1}, "non-negative"),
        ({"tx_hash": ""}, "required"),
    ])
    def test_record_swap_validation(self, tx_log, kwargs, message):
        args = {
            "wallet_address": WALLET, "side": "BUY", "token_address": TOKEN,
            "tx_hash": "0xbad", "token_amount": 1, "native_amount": 0.001, "price_usd": 1,
        }
        args.update(kwargs)
        with pytest.raises(ValidationError, match=message):
            tx_log.record_swap(**args)
        assert tx_log.entries(WALLET) == []


# ── FIFO ─────────────────────────────────────────────────────────────

class TestLotBook:

    def test_sell_consumes_oldest_lots_first(self):
        book = LotBook()
        book.buy(TOKEN, price=1.0, amount=10, timestamp=1)
        book.buy(TOKEN, price=2.0, amount=10, timestamp=2)

        sold = book.sell(TOKEN, unit_price=3.0, amount=15)

        assert sold.consumed == pytest.approx(15)
        assert sold.cost_basis == pytest.approx(20.0)
        assert sold.proceeds == pytest.approx(45.0)
        assert sold.realized_gain == pytest.approx(25.0)
        assert book.remaining(TOKEN) == pytest.approx(5)
        assert book.average_entry(TOKEN) == pytest.approx(2.0)
        assert [lot.price for lot in book.open_lots(TOKEN)] == [2.0]

    def test_oversell_consumes_what_exists(self):
        book = LotBook()
        book.buy(TOKEN, price=1.0, amount=10, timestamp=1)
        sold = book.sell(TOKEN, unit_price=0.5, amount=30)
        assert sold.consumed == pytest.approx(10)
        assert sold.unmatched == pytest.approx(20)
        assert sold.realized_gain == pytest.approx(-5.0)
        assert book.remaining(TOKEN) == 0

    def test_sell_without_lots(self):
        sold = LotBook().sell(TOKEN, unit_price=2.0, amount=5)
        assert sold.consumed == 0
        assert sold.realized_gain == 0

    def test_tokens_are_independent(self):
        book = LotBook()
        book.buy(TOKEN, 1.0, 10, 1)
        book.buy(OTHER_TOKEN, 5.0, 2, 2)
        book.sell(OTHER_TOKEN, 6.0, 2)
        assert book.remaining(TOKEN) == 10
        assert book.realized(OTHER_TOKEN) == pytest.approx(2.0)
        assert book.realized(TOKEN) == 0
        assert book.tokens() == sorted([TOKEN, OTHER_TOKEN])

    def test_replay_records_sell_outcomes(self):
        cfg = LedgerConfig()
        entries = [classify(tx, cfg) for tx in (_buy(10, 10, 1), _sell(5, 15, 2))]
        run = replay(entries)
        assert run.steps[0][1] is None
        assert run.steps[1][1].realized_gain == pytest.approx(10.0)


# ── Positions & PnL ──────────────────────────────────────────────────

class TestPositions:

    def _seed(self, tx_log):
        day1 = _ts(2024, 3, 1)
        day2 = _ts(2024, 3, 2)
        tx_log.append(_buy(10, 10, day1, token_symbol="ABC", gas_cost_usd=0.5))
        tx_log.append(_buy(10, 20, day1 + 60, token_symbol="ABC", gas_cost_usd=0.5))
        tx_log.append(_sell(15, 45, day2, token_symbol="ABC", gas_cost_usd=0.5))
        tx_log.append(_buy(4, 8, day2 + 60, token=OTHER_TOKEN))
        tx_log.append(_sell(4, 6, day2 + 120, token=OTHER_TOKEN))

    @pytest.mark.asyncio
    async def test_open_and_closed_positions(self, tx_log):
        self._seed(tx_log)
        oracle = FakeOracle({TOKEN: 4.0})

        positions = await get_positions(tx_log, oracle, WALLET)

        assert [p.status for p in positions] == ["open", "closed"]
        open_pos, closed_pos = positions
        assert open_pos.token_address == TOKEN
        assert open_pos.token_symbol == "ABC"
        assert open_pos.remaining_amount == pytest.approx(5)
        assert open_pos.avg_entry_price == pytest.approx(2.0)
        assert open_pos.realized_pnl == pytest.approx(25.0)
        assert open_pos.unrealized_pnl == pytest.approx(10.0)
        assert open_pos.total_pnl == pytest.approx(35.0)
        assert (open_pos.buys, open_pos.sells) == (2, 1)
        assert closed_pos.realized_pnl == pytest.approx(-2.0)
        assert closed_pos.unrealized_pnl == 0.0

    @pytest.mark.asyncio
    async def test_unpriced_open_lot_has_no_unrealized(self, tx_log):
        self._seed(tx_log)
        positions = await get_positions(tx_log, FakeOracle(), WALLET)
        assert positions[0].current_price == 0.0
        assert positions[0].unrealized_pnl == 0.0

    @pytest.mark.asyncio
    async def test_wallet_summary(self, tx_log):
        self._seed(tx_log)
        summary = await wallet_summary(tx_log, FakeOracle({TOKEN: 4.0}), WALLET)

        assert summary.total_trades == 5
        assert summary.realized_pnl == pytest.approx(23.0)
        assert summary.unrealized_pnl == pytest.approx(10.0)
        assert summary.total_pnl == pytest.approx(33.0)
        assert summary.win_rate == pytest.approx(50.0)
        assert summary.gas_costs_usd == pytest.approx(1.5)
        assert summary.holding_usd == pytest.approx(20.0)
        assert (summary.positions_open, summary.positions_closed) == (1, 1)
        assert summary.daily_pnl == [
            {"date": "2024-03-01", "pnl": pytest.approx(-1.0)},
            {"date": "2024-03-02", "pnl": pytest.approx(25.0 - 0.5 - 2.0)},
        ]

    @pytest.mark.asyncio
    async def test_empty_wallet(self, tx_log):
        summary = await wallet_summary(tx_log, FakeOracle(), WALLET)
        assert summary.total_trades == 0
        assert summary.win_rate == 0.0
        assert await get_positions(tx_log, FakeOracle(), WALLET) == []


# ── Tax report ───────────────────────────────────────────────────────

class TestTaxReport:

    def test_year_bounds_are_utc(self):
        start, end = year_bounds(2024)
        assert start == _ts(2024, 1, 1, 0)
        assert end == _ts(2025, 1, 1, 0)

    def test_empty_year(self, tx_log):
        report = generate_tax_report(tx_log, WALLET, 2024)
        assert report.total_realized_gains == 0
        assert report.total_realized_losses == 0
        assert report.net_realized_gain == 0
        assert report.transactions == []
        assert report.summary == {"total_buys": 0, "total_sells": 0, "total_volume": 0.0}

    def test_gains_and_losses(self, tx_log):
        tx_log.append(_buy(10, 10, _ts(2024, 2, 1), tx_hash="0xb1", gas_cost_usd=0.2))
        tx_log.append(_sell(5, 15, _ts(2024, 5, 1), tx_hash="0xs1"))
        tx_log.append(_sell(5, 2, _ts(2024, 6, 1), tx_hash="0xs2"))

        report = generate_tax_report(tx_log, WALLET, 2024)

        assert report.total_realized_gains == pytest.approx(10.0)
        assert report.total_realized_losses == pytest.approx(3.0)
        assert report.net_realized_gain == pytest.approx(7.0)
        assert report.total_gas_costs == pytest.approx(0.2)
        assert [t.type for t in report.transactions] == ["BUY", "SELL", "SELL"]
        first_sell = report.transactions[1]
        assert first_sell.cost_basis == pytest.approx(5.0)
        assert first_sell.sale_price == pytest.approx(15.0)
        assert first_sell.date == "2024-05-01"
        assert first_sell.tx_hash == "0xs1"
        assert report.summary["total_buys"] == 1
        assert report.summary["total_sells"] == 2
        assert report.summary["total_volume"] == pytest.approx(27.0)

    def test_prior_year_lots_do_not_carry(self, tx_log):
        tx_log.append(_buy(10, 10, _ts(2023, 12, 31)))
        tx_log.append(_sell(5, 15, _ts(2024, 1, 2)))

        report = generate_tax_report(tx_log, WALLET, 2024)

        assert report.summary["total_buys"] == 0
        assert report.transactions[0].cost_basis == 0.0
        assert report.total_realized_gains == 0.0

    def test_build_is_pure_over_entries(self):
        cfg = LedgerConfig()
        report = build_tax_report(2024, [classify(_buy(1, 3, _ts(2024, 7, 4)), cfg)])
        assert report.to_dict()["transactions"][0]["token_symbol"] == TOKEN[:6] + "..."
