"""Tests for prediction pools: creation, joins, resolution and winner trades."""

from __future__ import annotations

import pytest

from swapdesk.config import ZERO_ADDRESS, PredictionConfig
from swapdesk.connectors.price_oracle import TokenLiquidity
from swapdesk.connectors.signing import NoSignerProvider
from swapdesk.engine.errors import (
    InvalidTransitionError,
    NotFoundError,
    StaleStateError,
    ValidationError,
)
from swapdesk.engine.predictions import (
    PredictionEngine,
    compute_settlement,
    decide_outcome,
    price_change_pct,
)
from swapdesk.observability.metrics import metrics
from swapdesk.storage.models import (
    ExecutionStatus,
    Participant,
    PoolStatus,
    Prediction,
    PredictionPool,
    PredictionType,
)

from tests.fakes import OTHER_WALLET, START, TOKEN, WALLET, AllWalletsSignerProvider, quote_failure

THIRD_WALLET = "0x3333333333333333333333333333333333333333"
HOUR = 3600


def _pool(participants, prediction_type=PredictionType.PUMP, threshold=10.0) -> PredictionPool:
    return PredictionPool(
        id="pool-1",
        token_address=TOKEN,
        prediction_type=prediction_type,
        threshold=threshold,
        timeframe_minutes=60,
        start_time=START,
        end_time=START + HOUR,
        start_price=1.0,
        participants=participants,
    )


def _p(wallet: str, stake: float, prediction: Prediction) -> Participant:
    return Participant(wallet_address=wallet, stake_amount=stake, prediction=prediction)


def _engine(db, oracle, swap, tx_log, clock, signers=None, **config) -> PredictionEngine:
    return PredictionEngine(
        db, oracle, swap, signers or NoSignerProvider(), tx_log,
        config=PredictionConfig(**config), clock=clock,
    )


async def _create(engine, oracle, liquidity=6_000_000.0, **kwargs):
    oracle.liquidity[TOKEN] = TokenLiquidity(
        token_address=TOKEN, liquidity_usd=liquidity, price_usd=1.0,
    )
    params = dict(
        token_address=TOKEN, prediction_type="PUMP", threshold=10, timeframe_minutes=60,
    )
    params.update(kwargs)
    return await engine.create_pool(**params)


# ── Settlement math ──────────────────────────────────────────────────

class TestSettlementMath:

    def test_price_change_pct(self):
        assert price_change_pct(2.0, 2.5) == pytest.approx(25.0)
        assert price_change_pct(2.0, 1.0) == pytest.approx(-50.0)

    @pytest.mark.parametrize("ptype,change,expected", [
        (PredictionType.PUMP, 10.0, Prediction.YES),
        (PredictionType.PUMP, 9.99, Prediction.NO),
        (PredictionType.DUMP, -10.0, Prediction.YES),
        (PredictionType.DUMP, -9.99, Prediction.NO),
        (PredictionType.DUMP, 15.0, Prediction.NO),
    ])
    def test_outcome_threshold_is_inclusive(self, ptype, change, expected):
        assert decide_outcome(ptype, change, 10.0) == expected

    def test_winners_split_pot_pro_rata(self):
        pool = _pool([
            _p(WALLET, 10, Prediction.YES),
            _p(OTHER_WALLET, 30, Prediction.YES),
            _p(THIRD_WALLET, 60, Prediction.NO),
        ])
        s = compute_settlement(pool, end_price=1.2, gas_per_trade_usd=0.10)

        assert s.outcome == Prediction.YES
        assert s.price_change == pytest.approx(20.0)
        assert s.total_staked == pytest.approx(100.0)
        assert s.gas_fee_pool == pytest.approx(0.20)
        assert s.total_pot == pytest.approx(99.80)
        payouts = {p.wallet_address: p.payout for p in s.participants}
        assert payouts[WALLET] == pytest.approx(24.95)
        assert payouts[OTHER_WALLET] == pytest.approx(74.85)
        assert payouts[THIRD_WALLET] == 0.0
        assert sum(payouts.values()) == pytest.approx(s.total_pot)
        assert (s.winner_count, s.loser_count) == (2, 1)

    def test_gas_fee_pool_capped_by_loser_stakes(self):
        pool = _pool([
            _p(WALLET, 10, Prediction.NO),
            _p(OTHER_WALLET, 10, Prediction.NO),
            _p(THIRD_WALLET, 0.05, Prediction.YES),
        ])
        s = compute_settlement(pool, end_price=1.0, gas_per_trade_usd=0.10)
        assert s.outcome == Prediction.NO
        assert s.gas_fee_pool == pytest.approx(0.05)
        assert s.total_pot == pytest.approx(20.0)

    def test_no_winners_pays_nothing(self):
        pool = _pool([_p(WALLET, 10, Prediction.YES), _p(OTHER_WALLET, 5, Prediction.YES)])
        s = compute_settlement(pool, end_price=1.0, gas_per_trade_usd=0.10)
        assert s.winner_count == 0
        assert s.gas_fee_pool == 0.0
        assert all(p.payout == 0.0 and p.is_winner is False for p in s.participants)

    def test_no_winners_refund_option(self):
        pool = _pool([_p(WALLET, 10, Prediction.YES), _p(OTHER_WALLET, 5, Prediction.YES)])
        s = compute_settlement(pool, 1.0, 0.10, refund_on_no_winners=True)
        assert {p.wallet_address: p.payout for p in s.participants} == {
            WALLET: 10, OTHER_WALLET: 5,
        }

    def test_empty_pool(self):
        s = compute_settlement(_pool([]), end_price=2.0, gas_per_trade_usd=0.10)
        assert s.outcome == Prediction.YES
        assert s.total_pot == 0.0
        assert s.participants == []


# ── Creation ─────────────────────────────────────────────────────────

class TestCreatePool:

    @pytest.mark.asyncio
    async def test_creates_active_pool_with_tiered_max_bet(self, prediction_engine, oracle, clock):
        pool = await _create(prediction_engine, oracle, description="to the moon")
        assert pool.status == PoolStatus.ACTIVE
        assert pool.execution_status == ExecutionStatus.PENDING
        assert pool.start_price == 1.0
        assert pool.end_time == clock.now + 60 * 60
        assert pool.max_bet_size == 200
        stored = prediction_engine.get_pool(pool.id)
        assert stored.description == "to the moon"
        assert stored.participants == []

    @pytest.mark.asyncio
    async def test_falls_back_to_oracle_price(self, prediction_engine, oracle):
        oracle.liquidity[TOKEN] = TokenLiquidity(TOKEN, liquidity_usd=2_000_000, price_usd=0.0)
        oracle.prices[TOKEN] = 1.25
        pool = await prediction_engine.create_pool(TOKEN, "DUMP", 5, 120)
        assert pool.start_price == 1.25
        assert pool.max_bet_size == 50

    @pytest.mark.asyncio
    @pytest.mark.parametrize("kwargs,message", [
        ({"timeframe_minutes": 30}, "timeframe"),
        ({"threshold": 0.5}, "threshold"),
        ({"threshold": 101}, "threshold"),
        ({"prediction_type": "SIDEWAYS"}, "PUMP or DUMP"),
    ])
    async def test_rejects_invalid_parameters(self, prediction_engine, oracle, kwargs, message):
        with pytest.raises(ValidationError, match=message):
            await _create(prediction_engine, oracle, **kwargs)

    @pytest.mark.asyncio
    async def test_rejects_thin_liquidity(self, prediction_engine, oracle):
        with pytest.raises(ValidationError, match="liquidity"):
            await _create(prediction_engine, oracle, liquidity=500_000)

    @pytest.mark.asyncio
    async def test_rejects_unknown_token(self, prediction_engine):
        with pytest.raises(ValidationError, match="unknown"):
            await prediction_engine.create_pool(TOKEN, "PUMP", 10, 60)

    def test_get_unknown_pool(self, prediction_engine):
        with pytest.raises(NotFoundError):
            prediction_engine.get_pool("missing")


# ── Joins ────────────────────────────────────────────────────────────

class TestJoinPool:

    @pytest.mark.asyncio
    async def test_join_adds_participant_and_stake(self, prediction_engine, oracle):
        pool = await _create(prediction_engine, oracle)
        prediction_engine.join_pool(pool.id, WALLET, 10, "yes")
        joined = prediction_engine.join_pool(pool.id, OTHER_WALLET, 30, "NO")
        assert joined.total_staked == pytest.approx(40)
        assert [p.prediction for p in joined.participants] == [Prediction.YES, Prediction.NO]

    @pytest.mark.asyncio
    async def test_duplicate_wallet_rejected(self, prediction_engine, oracle):
        pool = await _create(prediction_engine, oracle)
        prediction_engine.join_pool(pool.id, WALLET, 10, "YES")
        with pytest.raises(ValidationError, match="already joined"):
            prediction_engine.join_pool(pool.id, WALLET.upper().replace("0X", "0x"), 5, "NO")
        assert prediction_engine.get_pool(pool.id).total_staked == pytest.approx(10)

    @pytest.mark.asyncio
    async def test_stake_bounds(self, prediction_engine, oracle):
        pool = await _create(prediction_engine, oracle)
        with pytest.raises(ValidationError, match="minimum"):
            prediction_engine.join_pool(pool.id, WALLET, 0.25, "YES")
        with pytest.raises(ValidationError, match="maximum"):
            prediction_engine.join_pool(pool.id, WALLET, 250, "YES")

    @pytest.mark.asyncio
    async def test_invalid_side_rejected(self, prediction_engine, oracle):
        pool = await _create(prediction_engine, oracle)
        with pytest.raises(ValidationError):
            prediction_engine.join_pool(pool.id, WALLET, 10, "MAYBE")

    @pytest.mark.asyncio
    async def test_join_after_end_rejected(self, prediction_engine, oracle, clock):
        pool = await _create(prediction_engine, oracle)
        clock.advance(HOUR)
        with pytest.raises(ValidationError, match="expired"):
            prediction_engine.join_pool(pool.id, WALLET, 10, "YES")

    @pytest.mark.asyncio
    async def test_join_while_resolving_rejected(self, prediction_engine, oracle, db):
        pool = await _create(prediction_engine, oracle)
        db.transition_pool(pool.id, PoolStatus.ACTIVE, PoolStatus.RESOLVING)
        with pytest.raises(ValidationError, match="not active"):
            prediction_engine.join_pool(pool.id, WALLET, 10, "YES")

    def test_join_unknown_pool(self, prediction_engine):
        with pytest.raises(NotFoundError):
            prediction_engine.join_pool("missing", WALLET, 10, "YES")


# ── Resolution ───────────────────────────────────────────────────────

class TestResolvePools:

    async def _joined_pool(self, engine, oracle):
        pool = await _create(engine, oracle)
        engine.join_pool(pool.id, WALLET, 10, "YES")
        engine.join_pool(pool.id, OTHER_WALLET, 30, "NO")
        return pool

    @pytest.mark.asyncio
    async def test_resolves_expired_pool(self, prediction_engine, oracle, clock):
        pool = await self._joined_pool(prediction_engine, oracle)
        clock.advance(HOUR)
        oracle.prices[TOKEN] = 1.2

        report = await prediction_engine.resolve_expired_pools()

        assert report.resolved == 1
        resolved = prediction_engine.get_pool(pool.id)
        assert resolved.status == PoolStatus.RESOLVED
        assert resolved.outcome == Prediction.YES
        assert resolved.end_price == 1.2
        assert resolved.price_change == pytest.approx(20.0)
        assert resolved.gas_fee_pool == pytest.approx(0.10)
        assert resolved.total_pot == pytest.approx(39.90)
        assert resolved.execution_status == ExecutionStatus.PENDING
        winner = resolved.participant(WALLET)
        assert winner.is_winner is True
        assert winner.payout == pytest.approx(39.90)
        assert resolved.participant(OTHER_WALLET).payout == 0.0

    @pytest.mark.asyncio
    async def test_active_pools_before_end_are_skipped(self, prediction_engine, oracle, clock):
        await self._joined_pool(prediction_engine, oracle)
        clock.advance(HOUR - 1)
        report = await prediction_engine.resolve_expired_pools()
        assert report.processed == 0

    @pytest.mark.asyncio
    async def test_resolution_is_idempotent(self, prediction_engine, oracle, clock):
        pool = await self._joined_pool(prediction_engine, oracle)
        clock.advance(HOUR)
        oracle.prices[TOKEN] = 1.2
        await prediction_engine.resolve_expired_pools()
        first = prediction_engine.get_pool(pool.id)

        oracle.prices[TOKEN] = 0.5
        report = await prediction_engine.resolve_expired_pools()
        again = await prediction_engine.resolve_pool(pool.id)

        assert report.processed == 0
        assert again.outcome == first.outcome
        assert again.end_price == 1.2
        assert again.participant(WALLET).payout == first.participant(WALLET).payout

    @pytest.mark.asyncio
    async def test_missing_end_price_reverts_to_active(self, prediction_engine, oracle, clock):
        pool = await self._joined_pool(prediction_engine, oracle)
        clock.advance(HOUR)
        oracle.prices.pop(TOKEN, None)

        report = await prediction_engine.resolve_expired_pools()

        assert report.errors == 1
        reverted = prediction_engine.get_pool(pool.id)
        assert reverted.status == PoolStatus.ACTIVE
        assert reverted.outcome is None
        assert all(p.payout is None for p in reverted.participants)

        oracle.prices[TOKEN] = 1.2
        report = await prediction_engine.resolve_expired_pools()
        assert report.resolved == 1

    @pytest.mark.asyncio
    async def test_resolve_pool_before_end_is_stale(self, prediction_engine, oracle):
        pool = await self._joined_pool(prediction_engine, oracle)
        with pytest.raises(StaleStateError, match="not expired"):
            await prediction_engine.resolve_pool(pool.id)

    @pytest.mark.asyncio
    async def test_resolve_pool_held_by_other_run(self, prediction_engine, oracle, clock, db):
        pool = await self._joined_pool(prediction_engine, oracle)
        clock.advance(HOUR)
        db.transition_pool(pool.id, PoolStatus.ACTIVE, PoolStatus.RESOLVING, claimed_at=clock.now)
        with pytest.raises(StaleStateError):
            await prediction_engine.resolve_pool(pool.id)
        report = await prediction_engine.resolve_expired_pools()
        assert report.processed == 0

    @pytest.mark.asyncio
    async def test_abandoned_resolving_claim_is_taken_over(self, prediction_engine, oracle, clock, db):
        pool = await self._joined_pool(prediction_engine, oracle)
        clock.advance(HOUR)
        oracle.prices[TOKEN] = 1.2
        # A run claimed the pool and died before saving or reverting
        db.transition_pool(pool.id, PoolStatus.ACTIVE, PoolStatus.RESOLVING, claimed_at=clock.now)

        clock.advance(PredictionConfig().claim_lease_secs - 1)
        assert (await prediction_engine.resolve_expired_pools()).processed == 0

        clock.advance(1)
        report = await prediction_engine.resolve_expired_pools()

        assert report.resolved == 1
        resolved = prediction_engine.get_pool(pool.id)
        assert resolved.status == PoolStatus.RESOLVED
        assert resolved.claimed_at is None
        assert metrics.counter("predictions.claim_reclaimed", claim="resolution") == 1

    @pytest.mark.asyncio
    async def test_resolve_pool_takes_over_abandoned_claim(self, prediction_engine, oracle, clock, db):
        pool = await self._joined_pool(prediction_engine, oracle)
        clock.advance(HOUR)
        db.transition_pool(pool.id, PoolStatus.ACTIVE, PoolStatus.RESOLVING, claimed_at=clock.now)
        clock.advance(PredictionConfig().claim_lease_secs)
        resolved = await prediction_engine.resolve_pool(pool.id)
        assert resolved.status == PoolStatus.RESOLVED

    @pytest.mark.asyncio
    async def test_no_winners_completes_execution(self, prediction_engine, oracle, clock):
        pool = await _create(prediction_engine, oracle)
        prediction_engine.join_pool(pool.id, WALLET, 10, "YES")
        clock.advance(HOUR)
        oracle.prices[TOKEN] = 1.01

        await prediction_engine.resolve_expired_pools()

        resolved = prediction_engine.get_pool(pool.id)
        assert resolved.outcome == Prediction.NO
        assert resolved.winner_count == 0
        assert resolved.execution_status == ExecutionStatus.COMPLETED
        assert resolved.participant(WALLET).payout == 0.0

    @pytest.mark.asyncio
    async def test_no_winners_refund(self, db, oracle, swap, tx_log, clock):
        engine = _engine(db, oracle, swap, tx_log, clock, refund_on_no_winners=True)
        pool = await _create(engine, oracle)
        engine.join_pool(pool.id, WALLET, 10, "YES")
        clock.advance(HOUR)
        oracle.prices[TOKEN] = 1.0
        await engine.resolve_expired_pools()
        resolved = engine.get_pool(pool.id)
        assert resolved.participant(WALLET).payout == pytest.approx(10)
        assert resolved.execution_status == ExecutionStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_auto_execute_off_completes_execution(self, prediction_engine, oracle, clock):
        pool = await _create(prediction_engine, oracle, auto_execute_trades=False)
        prediction_engine.join_pool(pool.id, WALLET, 10, "YES")
        clock.advance(HOUR)
        oracle.prices[TOKEN] = 1.5
        resolved = await prediction_engine.resolve_pool(pool.id)
        assert resolved.winner_count == 1
        assert resolved.execution_status == ExecutionStatus.COMPLETED

    def test_resolved_pool_cannot_reopen(self, db):
        with pytest.raises(InvalidTransitionError):
            db.transition_pool("any", PoolStatus.RESOLVED, PoolStatus.ACTIVE)


# ── Winner trades ────────────────────────────────────────────────────

class TestWinnerTrades:

    async def _resolved_pool(self, engine, oracle, clock):
        pool = await _create(engine, oracle)
        engine.join_pool(pool.id, WALLET, 10, "YES")
        engine.join_pool(pool.id, OTHER_WALLET, 30, "NO")
        clock.advance(HOUR)
        oracle.prices[TOKEN] = 1.2
        await engine.resolve_expired_pools()
        return pool

    @pytest.mark.asyncio
    async def test_without_signer_queues_trades(self, prediction_engine, oracle, clock, swap):
        pool = await self._resolved_pool(prediction_engine, oracle, clock)

        report = await prediction_engine.execute_winner_trades()

        assert report.completed == 1
        assert report.trades["pending_execution"] == 1
        settled = prediction_engine.get_pool(pool.id)
        assert settled.execution_status == ExecutionStatus.COMPLETED
        assert settled.participant(WALLET).trade_status == "pending_execution"
        # Payout converted to native at $2000
        token_in, token_out, amount_in = swap.quotes[0]
        assert (token_in, token_out) == (ZERO_ADDRESS, TOKEN)
        assert amount_in == pytest.approx(39.90 / 2000.0)

    @pytest.mark.asyncio
    async def test_with_signer_executes_and_logs(self, db, oracle, swap, tx_log, clock):
        engine = _engine(db, oracle, swap, tx_log, clock, signers=AllWalletsSignerProvider())
        pool = await self._resolved_pool(engine, oracle, clock)

        report = await engine.execute_winner_trades()

        assert report.trades["executed"] == 1
        winner = engine.get_pool(pool.id).participant(WALLET)
        assert winner.trade_status == "executed"
        assert winner.trade_tx_hash == "0xhash1"
        entries = tx_log.entries(WALLET)
        assert len(entries) == 1
        assert entries[0].tx.source == "prediction"
        assert entries[0].tx.input_value_usd == pytest.approx(39.90)
        assert tx_log.entries(OTHER_WALLET) == []

    @pytest.mark.asyncio
    async def test_all_trades_failing_marks_failed(self, prediction_engine, oracle, clock, swap):
        pool = await self._resolved_pool(prediction_engine, oracle, clock)
        swap.quote_error = quote_failure()

        report = await prediction_engine.execute_winner_trades()

        assert report.failed == 1
        settled = prediction_engine.get_pool(pool.id)
        assert settled.execution_status == ExecutionStatus.FAILED
        assert settled.participant(WALLET).trade_status == "failed"

    @pytest.mark.asyncio
    async def test_trades_run_once(self, prediction_engine, oracle, clock, swap):
        pool = await self._resolved_pool(prediction_engine, oracle, clock)
        await prediction_engine.execute_winner_trades()
        report = await prediction_engine.execute_winner_trades()
        assert report.pools == 0
        single = await prediction_engine.execute_pool_trades(pool.id)
        assert single.trades == {"executed": 0, "pending_execution": 0, "failed": 0}
        assert len(swap.quotes) == 1

    @pytest.mark.asyncio
    async def test_execute_pool_trades_requires_resolution(self, prediction_engine, oracle):
        pool = await _create(prediction_engine, oracle)
        with pytest.raises(StaleStateError):
            await prediction_engine.execute_pool_trades(pool.id)

    @pytest.mark.asyncio
    async def test_native_price_outage_leaves_pool_pending(self, prediction_engine, oracle, clock, swap):
        pool = await self._resolved_pool(prediction_engine, oracle, clock)
        oracle.prices[ZERO_ADDRESS] = None

        report = await prediction_engine.execute_winner_trades()

        assert report.deferred == 1
        assert report.failed == 0
        waiting = prediction_engine.get_pool(pool.id)
        assert waiting.execution_status == ExecutionStatus.PENDING
        assert waiting.participant(WALLET).trade_status == ""
        assert swap.quotes == []

        oracle.prices[ZERO_ADDRESS] = 2000.0
        report = await prediction_engine.execute_winner_trades()
        assert report.completed == 1
        assert prediction_engine.get_pool(pool.id).execution_status == ExecutionStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_abandoned_execution_claim_is_taken_over(self, prediction_engine, oracle, clock, db):
        pool = await self._resolved_pool(prediction_engine, oracle, clock)
        db.transition_execution(
            pool.id, ExecutionStatus.PENDING, ExecutionStatus.EXECUTING, claimed_at=clock.now,
        )

        assert (await prediction_engine.execute_winner_trades()).pools == 0
        with pytest.raises(StaleStateError, match="already being executed"):
            await prediction_engine.execute_pool_trades(pool.id)

        clock.advance(PredictionConfig().claim_lease_secs)
        report = await prediction_engine.execute_winner_trades()

        assert report.completed == 1
        settled = prediction_engine.get_pool(pool.id)
        assert settled.execution_status == ExecutionStatus.COMPLETED
        assert settled.participant(WALLET).trade_status == "pending_execution"
        assert metrics.counter("predictions.claim_reclaimed", claim="execution") == 1

    @pytest.mark.asyncio
    async def test_ledger_records_received_amount(self, db, oracle, swap, tx_log, clock):
        engine = _engine(db, oracle, swap, tx_log, clock, signers=AllWalletsSignerProvider())
        await self._resolved_pool(engine, oracle, clock)
        swap.received_amount = 987.5

        await engine.execute_winner_trades()

        tx = tx_log.entries(WALLET)[0].tx
        assert tx.output_amount == pytest.approx(987.5)
        assert tx.output_value_usd == pytest.approx(987.5 * 1.2)
