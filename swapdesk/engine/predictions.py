"""Prediction pools: create, join, resolve and settle binary PUMP/DUMP pools.

Pool status:       ACTIVE ──► RESOLVING ──► RESOLVED
                      ▲            │
                      └────────────┘  (revert on any resolution error)

Execution status:  PENDING ──► EXECUTING ──► COMPLETED | FAILED
                      └──────────────────► COMPLETED   (no winners)

Settlement is proportional: winners split ``total_staked - gas_fee_pool``
in proportion to their stakes, where the gas fee pool is taken from the
losers' side and capped at one gas estimate per winning trade.
"""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable

from swapdesk.config import ZERO_ADDRESS, PredictionConfig
from swapdesk.connectors.price_oracle import PriceOracle
from swapdesk.connectors.signing import SignerProvider
from swapdesk.connectors.swap_api import SwapClient, received_amount
from swapdesk.engine.conditions import usable_price
from swapdesk.engine.errors import (
    NotFoundError,
    StaleStateError,
    SwapdeskError,
    ValidationError,
)
from swapdesk.ledger.transactions import TransactionLog, gas_cost_usd
from swapdesk.observability.logger import get_logger, pass_context
from swapdesk.observability.metrics import metrics
from swapdesk.storage.database import Database
from swapdesk.storage.models import (
    ExecutionStatus,
    Participant,
    PoolStatus,
    Prediction,
    PredictionPool,
    PredictionType,
    WalletTransaction,
)

log = get_logger(__name__)


# ── Settlement math ──────────────────────────────────────────────────

@dataclass
class Settlement:
    outcome: Prediction
    end_price: float
    price_change: float
    participants: list[Participant]
    total_staked: float
    total_pot: float
    gas_fee_pool: float
    winner_count: int
    loser_count: int


def price_change_pct(start_price: float, end_price: float) -> float:
    return (end_price - start_price) / start_price * 100


def decide_outcome(prediction_type: PredictionType, change_pct: float, threshold: float) -> Prediction:
    if prediction_type == PredictionType.PUMP:
        return Prediction.YES if change_pct >= threshold else Prediction.NO
    return Prediction.YES if change_pct <= -threshold else Prediction.NO


def compute_settlement(
    pool: PredictionPool,
    end_price: float,
    gas_per_trade_usd: float,
    refund_on_no_winners: bool = False,
) -> Settlement:
    """Pure settlement of a pool at ``end_price``."""
    change = price_change_pct(pool.start_price, end_price)
    outcome = decide_outcome(pool.prediction_type, change, pool.threshold)

    winners = [p for p in pool.participants if p.prediction == outcome]
    losers = [p for p in pool.participants if p.prediction != outcome]
    total_staked = sum(p.stake_amount for p in pool.participants)
    winner_stakes = sum(p.stake_amount for p in winners)
    loser_stakes = sum(p.stake_amount for p in losers)

    gas_fee_pool = min(loser_stakes, gas_per_trade_usd * len(winners))
    total_pot = total_staked - gas_fee_pool

    settled: list[Participant] = []
    for p in pool.participants:
        is_winner = p.prediction == outcome
        if is_winner and winner_stakes > 0:
            payout = p.stake_amount / winner_stakes * total_pot
        elif not winners and refund_on_no_winners:
            payout = p.stake_amount
        else:
            payout = 0.0
        settled.append(p.model_copy(update={"is_winner": is_winner, "payout": payout}))

    return Settlement(
        outcome=outcome,
        end_price=end_price,
        price_change=change,
        participants=settled,
        total_staked=total_staked,
        total_pot=total_pot,
        gas_fee_pool=gas_fee_pool,
        winner_count=len(winners),
        loser_count=len(losers),
    )


# ── Pass reports ─────────────────────────────────────────────────────

@dataclass
class ResolveReport:
    processed: int = 0
    resolved: int = 0
    lost: int = 0
    errors: int = 0

    def to_dict(self) -> dict[str, Any]:
        return dict(self.__dict__)


@dataclass
class TradeReport:
    pools: int = 0
    completed: int = 0
    failed: int = 0
    lost: int = 0
    deferred: int = 0
    errors: int = 0
    trades: dict[str, int] = field(default_factory=lambda: {
        "executed": 0, "pending_execution": 0, "failed": 0,
    })

    def to_dict(self) -> dict[str, Any]:
        return {**self.__dict__, "trades": dict(self.trades)}


# ── Engine ───────────────────────────────────────────────────────────

class PredictionEngine:
    """Owns every pool write after creation."""

    def __init__(
        self,
        db: Database,
        oracle: PriceOracle,
        swap: SwapClient,
        signers: SignerProvider,
        tx_log: TransactionLog,
        config: PredictionConfig | None = None,
        trade_slippage_bps: int = 50,
        clock: Callable[[], float] = time.time,
    ):
        self._db = db
        self._oracle = oracle
        self._swap = swap
        self._signers = signers
        self._tx_log = tx_log
        self._config = config or PredictionConfig()
        self._slippage_bps = trade_slippage_bps
        self._clock = clock

    # ── Creation & joins ─────────────────────────────────────────────

    async def create_pool(
        self,
        token_address: str,
        prediction_type: str,
        threshold: float,
        timeframe_minutes: int,
        creator_address: str | None = None,
        token_symbol: str = "",
        description: str | None = None,
        auto_execute_trades: bool = True,
    ) -> PredictionPool:
        cfg = self._config
        try:
            ptype = PredictionType(str(getattr(prediction_type, "value", prediction_type)).upper())
        except ValueError:
            raise ValidationError("prediction_type must be PUMP or DUMP")
        if timeframe_minutes < cfg.min_timeframe_minutes:
            raise ValidationError(
                f"timeframe must be at least {cfg.min_timeframe_minutes} minutes"
            )
        if not cfg.min_threshold_pct <= threshold <= cfg.max_threshold_pct:
            raise ValidationError(
                f"threshold must be between {cfg.min_threshold_pct:g}% "
                f"and {cfg.max_threshold_pct:g}%"
            )

        token = token_address.lower()
        liquidity = await self._oracle.get_liquidity(token)
        if liquidity is None or liquidity.liquidity_usd < cfg.min_liquidity_usd:
            current = f"${liquidity.liquidity_usd:,.0f}" if liquidity else "unknown"
            raise ValidationError(
                f"token needs at least ${cfg.min_liquidity_usd:,.0f} liquidity (current: {current})"
            )
        start_price = usable_price(liquidity.price_usd)
        if start_price is None:
            start_price = usable_price(await self._oracle.get_price(token))
        if start_price is None:
            raise ValidationError("could not fetch token price")

        now = self._clock()
        pool = PredictionPool(
            id=str(uuid.uuid4()),
            token_address=token,
            token_symbol=token_symbol,
            creator_address=creator_address.lower() if creator_address else None,
            description=description,
            prediction_type=ptype,
            threshold=threshold,
            timeframe_minutes=timeframe_minutes,
            start_time=now,
            end_time=now + timeframe_minutes * 60,
            start_price=start_price,
            auto_execute_trades=auto_execute_trades,
            liquidity=liquidity.liquidity_usd,
            max_bet_size=cfg.max_bet_for(liquidity.liquidity_usd),
            created_at=now,
            updated_at=now,
        )
        self._db.insert_pool(pool)
        metrics.incr("predictions.created")
        log.info(
            "predictions.created",
            pool_id=pool.id, token=token, prediction_type=ptype.value,
            threshold=threshold, end_time=pool.end_time, max_bet=pool.max_bet_size,
        )
        return pool

    def get_pool(self, pool_id: str) -> PredictionPool:
        pool = self._db.get_pool(pool_id)
        if pool is None:
            raise NotFoundError(f"pool {pool_id} not found")
        return pool

    def list_pools(self, status: PoolStatus | None = None, limit: int = 100) -> list[PredictionPool]:
        return self._db.list_pools(status=status, limit=limit)

    def join_pool(
        self,
        pool_id: str,
        wallet_address: str,
        stake_amount: float,
        prediction: str,
    ) -> PredictionPool:
        if stake_amount < self._config.min_stake_usd:
            raise ValidationError(f"minimum stake is ${self._config.min_stake_usd:.2f}")
        try:
            side = Prediction(str(getattr(prediction, "value", prediction)).upper())
        except ValueError:
            raise ValidationError("prediction must be YES or NO")

        pool = self.get_pool(pool_id)
        now = self._clock()
        if not pool.accepts_participants(now):
            if pool.status != PoolStatus.ACTIVE:
                raise ValidationError("prediction pool is not active")
            raise ValidationError("prediction pool has expired")
        if pool.max_bet_size > 0 and stake_amount > pool.max_bet_size:
            raise ValidationError(
                f"maximum bet for this token is ${pool.max_bet_size:,.0f} "
                f"(liquidity ${pool.liquidity:,.0f})"
            )

        # The write re-checks status and end time under the lock
        outcome = self._db.add_participant(
            pool_id,
            Participant(
                wallet_address=wallet_address.lower(),
                stake_amount=stake_amount,
                prediction=side,
                joined_at=now,
            ),
            now,
        )
        if outcome == "not_found":
            raise NotFoundError(f"pool {pool_id} not found")
        if outcome == "not_active":
            raise ValidationError("prediction pool is not active")
        if outcome == "closed":
            raise ValidationError("prediction pool has expired")
        if outcome == "duplicate":
            raise ValidationError("wallet has already joined this pool")

        metrics.incr("predictions.joined")
        log.info(
            "predictions.joined",
            pool_id=pool_id, wallet=wallet_address.lower(),
            stake=stake_amount, prediction=side.value,
        )
        return self.get_pool(pool_id)

    # ── Resolution ───────────────────────────────────────────────────

    async def resolve_expired_pools(self) -> ResolveReport:
        report = ResolveReport()
        with pass_context("predictions.resolve"):
            now = self._clock()
            pools = self._db.fetch_expired_pools(
                now, self._config.resolve_batch_size, stale_before=self._stale_before(now),
            )
            for pool in pools:
                report.processed += 1
                try:
                    if await self._resolve_one(pool.id):
                        report.resolved += 1
                    else:
                        report.lost += 1
                except Exception:
                    report.errors += 1
            if pools:
                log.info("predictions.resolve_complete", **report.to_dict())
            return report

    async def resolve_pool(self, pool_id: str) -> PredictionPool:
        """Resolve one pool now. A RESOLVED pool is returned unchanged."""
        pool = self.get_pool(pool_id)
        now = self._clock()
        if pool.status == PoolStatus.RESOLVED:
            return pool
        if pool.status == PoolStatus.RESOLVING and not self._claim_expired(pool, now):
            raise StaleStateError("pool is being resolved by another run")
        if now < pool.end_time:
            raise StaleStateError("pool has not expired yet")

        if not await self._resolve_one(pool_id):
            current = self.get_pool(pool_id)
            if current.status == PoolStatus.RESOLVED:
                return current
            raise StaleStateError("pool was claimed by another run")
        return self.get_pool(pool_id)

    def _stale_before(self, now: float) -> float:
        return now - self._config.claim_lease_secs

    def _claim_expired(self, pool: PredictionPool, now: float) -> bool:
        return pool.claimed_at is None or pool.claimed_at <= self._stale_before(now)

    def _claim_resolution(self, pool_id: str) -> bool:
        """ACTIVE -> RESOLVING, or take over a RESOLVING claim past its lease."""
        now = self._clock()
        if self._db.transition_pool(
            pool_id, PoolStatus.ACTIVE, PoolStatus.RESOLVING, claimed_at=now,
        ):
            return True
        if self._db.reclaim_stale_resolution(pool_id, self._stale_before(now), now):
            metrics.incr("predictions.claim_reclaimed", claim="resolution")
            log.warning("predictions.resolution_reclaimed", pool_id=pool_id)
            return True
        return False

    async def _resolve_one(self, pool_id: str) -> bool:
        """False when another run holds the claim. Errors revert to ACTIVE and re-raise."""
        if not self._claim_resolution(pool_id):
            metrics.incr("predictions.claim_lost")
            log.info("predictions.claim_lost", pool_id=pool_id)
            return False

        try:
            # Joins are closed once RESOLVING, so this participant set is final
            pool = self.get_pool(pool_id)
            end_price = usable_price(await self._oracle.get_price(pool.token_address))
            if end_price is None:
                raise SwapdeskError(f"end price unavailable for {pool.token_address}")

            s = compute_settlement(
                pool, end_price,
                self._config.gas_per_trade_usd,
                self._config.refund_on_no_winners,
            )
            execution = (
                ExecutionStatus.PENDING
                if pool.auto_execute_trades and s.winner_count > 0
                else ExecutionStatus.COMPLETED
            )
            saved = self._db.save_resolution(
                pool_id, s.participants, execution,
                end_price=s.end_price,
                price_change=s.price_change,
                outcome=s.outcome,
                total_pot=s.total_pot,
                gas_fee_pool=s.gas_fee_pool,
                winner_count=s.winner_count,
                loser_count=s.loser_count,
                resolved_at=self._clock(),
            )
            if not saved:
                raise StaleStateError("pool left RESOLVING during resolution")
        except Exception as e:
            reverted = self._db.transition_pool(pool_id, PoolStatus.RESOLVING, PoolStatus.ACTIVE)
            metrics.incr("predictions.resolve_errors")
            log.error(
                "predictions.resolve_failed",
                pool_id=pool_id, error=str(e), reverted=reverted,
            )
            raise

        metrics.incr("predictions.resolved")
        log.info(
            "predictions.resolved",
            pool_id=pool_id, outcome=s.outcome.value,
            price_change=round(s.price_change, 4),
            winners=s.winner_count, losers=s.loser_count,
            total_pot=s.total_pot, gas_fee_pool=s.gas_fee_pool,
            execution_status=execution.value,
        )
        return True

    # ── Winner trades ────────────────────────────────────────────────

    async def execute_winner_trades(self) -> TradeReport:
        report = TradeReport()
        with pass_context("predictions.execute_trades"):
            pools = self._db.fetch_pools_awaiting_trades(
                self._config.resolve_batch_size,
                stale_before=self._stale_before(self._clock()),
            )
            for pool in pools:
                report.pools += 1
                try:
                    await self._execute_pool_trades(pool, report)
                except Exception as e:
                    report.errors += 1
                    metrics.incr("predictions.trade_errors")
                    log.error("predictions.trades_failed", pool_id=pool.id, error=str(e))
            if pools:
                log.info("predictions.trades_complete", **report.to_dict())
            return report

    async def execute_pool_trades(self, pool_id: str) -> TradeReport:
        """Run the winner trades for one resolved pool."""
        pool = self.get_pool(pool_id)
        if pool.status != PoolStatus.RESOLVED:
            raise StaleStateError("pool must be resolved before executing trades")
        if (
            pool.execution_status == ExecutionStatus.EXECUTING
            and not self._claim_expired(pool, self._clock())
        ):
            raise StaleStateError("trades are already being executed")
        report = TradeReport(pools=1)
        if pool.execution_status not in (ExecutionStatus.PENDING, ExecutionStatus.EXECUTING):
            return report
        await self._execute_pool_trades(pool, report)
        return report

    def _claim_execution(self, pool: PredictionPool) -> bool:
        now = self._clock()
        if pool.execution_status == ExecutionStatus.EXECUTING:
            if not self._db.reclaim_stale_execution(pool.id, self._stale_before(now), now):
                return False
            metrics.incr("predictions.claim_reclaimed", claim="execution")
            log.warning("predictions.execution_reclaimed", pool_id=pool.id)
            return True
        return self._db.transition_execution(
            pool.id, ExecutionStatus.PENDING, ExecutionStatus.EXECUTING, claimed_at=now,
        )

    async def _execute_pool_trades(self, pool: PredictionPool, report: TradeReport) -> None:
        if not any(p.is_winner for p in pool.participants):
            if self._db.transition_execution(
                pool.id, ExecutionStatus.PENDING, ExecutionStatus.COMPLETED,
            ):
                report.completed += 1
            else:
                report.lost += 1
            return

        # Without a native price no payout can be sized; leave the pool
        # PENDING for the next pass rather than failing every winner.
        native_price = usable_price(await self._oracle.get_native_price())
        if native_price is None:
            report.deferred += 1
            metrics.incr("predictions.trades_deferred")
            log.warning(
                "predictions.trades_deferred",
                pool_id=pool.id, reason="native price unavailable",
            )
            return

        if not self._claim_execution(pool):
            report.lost += 1
            return

        # Re-read under the claim: a reclaimed pool may have settled some winners
        pool = self.get_pool(pool.id)
        winners = [p for p in pool.participants if p.is_winner]
        token_price = await self._oracle.get_price(pool.token_address) or pool.end_price or 0.0
        done = 0
        for winner in winners:
            if winner.trade_status in ("executed", "pending_execution"):
                done += 1
                continue
            try:
                status, tx_hash = await self._trade_for_winner(
                    pool, winner, native_price, token_price,
                )
            except Exception as e:
                status, tx_hash = "failed", None
                log.error(
                    "predictions.winner_trade_failed",
                    pool_id=pool.id, wallet=winner.wallet_address, error=str(e),
                )
            self._db.update_participant_trade(pool.id, winner.wallet_address, status, tx_hash)
            report.trades[status] += 1
            if status != "failed":
                done += 1

        final = ExecutionStatus.COMPLETED if done > 0 else ExecutionStatus.FAILED
        self._db.transition_execution(pool.id, ExecutionStatus.EXECUTING, final)
        if final == ExecutionStatus.COMPLETED:
            report.completed += 1
        else:
            report.failed += 1
        metrics.incr(f"predictions.trades_{final.value.lower()}")
        log.info("predictions.trades_settled", pool_id=pool.id, execution_status=final.value)

    async def _trade_for_winner(
        self,
        pool: PredictionPool,
        winner: Participant,
        native_price: float,
        token_price: float,
    ) -> tuple[str, str | None]:
        """Buy the pool token with the winner's payout."""
        payout = winner.payout or 0.0
        amount_in = payout / native_price

        quote = await self._swap.quote(
            ZERO_ADDRESS, pool.token_address, amount_in,
            self._slippage_bps, taker=winner.wallet_address,
        )
        signer = self._signers.signer_for(winner.wallet_address)
        if signer is None:
            log.info(
                "predictions.winner_trade_queued",
                pool_id=pool.id, wallet=winner.wallet_address, payout=payout,
            )
            return "pending_execution", None

        result = await self._swap.execute(quote, signer)
        bought = received_amount(quote, result)
        self._tx_log.append(WalletTransaction(
            wallet_address=winner.wallet_address,
            tx_hash=result.transaction_hash,
            input_token=ZERO_ADDRESS,
            output_token=pool.token_address,
            input_amount=amount_in,
            output_amount=bought,
            input_value_usd=payout,
            output_value_usd=bought * token_price,
            gas_cost_usd=gas_cost_usd(result.gas_used, result.gas_price, native_price),
            token_symbol=pool.token_symbol,
            source="prediction",
            timestamp=self._clock(),
        ))
        log.info(
            "predictions.winner_trade_executed",
            pool_id=pool.id, wallet=winner.wallet_address,
            tx_hash=result.transaction_hash, buy_amount=bought,
        )
        return "executed", result.transaction_hash
