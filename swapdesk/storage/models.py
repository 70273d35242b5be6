"""Database models: Pydantic models for orders, pools and the swap log.

Orders are a closed tagged union keyed by ``order_type``: every variant
declares exactly the price fields it needs, so a LIMIT_* order without a
target price (or a STOP_LIMIT without a limit price) cannot be built.
"""

from __future__ import annotations

import time
from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, Field, TypeAdapter, model_validator


class OrderType(str, Enum):
    LIMIT_BUY = "LIMIT_BUY"
    LIMIT_SELL = "LIMIT_SELL"
    STOP_LOSS = "STOP_LOSS"
    STOP_LIMIT = "STOP_LIMIT"


class OrderStatus(str, Enum):
    PENDING = "PENDING"
    EXECUTING = "EXECUTING"
    EXECUTED = "EXECUTED"
    PENDING_EXECUTION = "PENDING_EXECUTION"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"
    EXPIRED = "EXPIRED"


TERMINAL_ORDER_STATUSES = frozenset({
    OrderStatus.EXECUTED,
    OrderStatus.CANCELLED,
    OrderStatus.EXPIRED,
    OrderStatus.FAILED,
    OrderStatus.PENDING_EXECUTION,
})

ORDER_TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    OrderStatus.PENDING: frozenset({
        OrderStatus.EXPIRED, OrderStatus.EXECUTING, OrderStatus.CANCELLED,
    }),
    OrderStatus.EXECUTING: frozenset({
        OrderStatus.EXECUTED, OrderStatus.PENDING_EXECUTION, OrderStatus.FAILED,
    }),
}


class PriceSample(BaseModel):
    price: float
    timestamp: float


class _OrderBase(BaseModel):
    id: str = ""
    wallet_address: str = Field(min_length=1)
    token_in: str = Field(min_length=1)
    token_out: str = Field(min_length=1)
    token_in_symbol: str = ""
    token_out_symbol: str = ""
    amount_in: float = Field(gt=0)
    slippage_bps: int = Field(default=50, ge=0, le=10_000)
    status: OrderStatus = OrderStatus.PENDING
    expires_at: float | None = None
    good_till_cancel: bool = False

    # Monitor bookkeeping
    check_count: int = 0
    last_checked_at: float | None = None
    last_price: float | None = None
    price_history: list[PriceSample] = Field(default_factory=list)
    stop_armed_at: float | None = None

    # Execution outcome
    transaction_hash: str | None = None
    # Received amount read from the receipt, falling back to the quoted one
    buy_amount: float | None = None
    gas_used: int | None = None
    error: str | None = None
    execution_quote: dict[str, Any] | None = None

    created_at: float = Field(default_factory=time.time)
    updated_at: float = Field(default_factory=time.time)
    executed_at: float | None = None
    cancelled_at: float | None = None
    version: int = 0

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_ORDER_STATUSES

    def is_expired(self, now: float) -> bool:
        return self.expires_at is not None and self.expires_at < now


class LimitBuyOrder(_OrderBase):
    order_type: Literal["LIMIT_BUY"] = "LIMIT_BUY"
    target_price: float = Field(gt=0)


class LimitSellOrder(_OrderBase):
    order_type: Literal["LIMIT_SELL"] = "LIMIT_SELL"
    target_price: float = Field(gt=0)


class StopLossOrder(_OrderBase):
    order_type: Literal["STOP_LOSS"] = "STOP_LOSS"
    stop_price: float = Field(gt=0)


class StopLimitOrder(_OrderBase):
    order_type: Literal["STOP_LIMIT"] = "STOP_LIMIT"
    stop_price: float = Field(gt=0)
    limit_price: float = Field(gt=0)


Order = Annotated[
    Union[LimitBuyOrder, LimitSellOrder, StopLossOrder, StopLimitOrder],
    Field(discriminator="order_type"),
]

_ORDER_ADAPTER: TypeAdapter[Any] = TypeAdapter(Order)


def parse_order(data: dict[str, Any]) -> Order:
    """Build the concrete order variant; missing type-specific fields raise."""
    return _ORDER_ADAPTER.validate_python(data)


# ── Prediction pools ─────────────────────────────────────────────────

class PredictionType(str, Enum):
    PUMP = "PUMP"
    DUMP = "DUMP"


class Prediction(str, Enum):
    YES = "YES"
    NO = "NO"


class PoolStatus(str, Enum):
    ACTIVE = "ACTIVE"
    RESOLVING = "RESOLVING"
    RESOLVED = "RESOLVED"


class ExecutionStatus(str, Enum):
    PENDING = "PENDING"
    EXECUTING = "EXECUTING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


POOL_TRANSITIONS: dict[PoolStatus, frozenset[PoolStatus]] = {
    PoolStatus.ACTIVE: frozenset({PoolStatus.RESOLVING}),
    # RESOLVING -> ACTIVE is the revert path after a failed resolution
    PoolStatus.RESOLVING: frozenset({PoolStatus.RESOLVED, PoolStatus.ACTIVE}),
}

EXECUTION_TRANSITIONS: dict[ExecutionStatus, frozenset[ExecutionStatus]] = {
    ExecutionStatus.PENDING: frozenset({ExecutionStatus.EXECUTING, ExecutionStatus.COMPLETED}),
    ExecutionStatus.EXECUTING: frozenset({ExecutionStatus.COMPLETED, ExecutionStatus.FAILED}),
}


class Participant(BaseModel):
    """A wallet's single stake in a pool."""
    wallet_address: str = Field(min_length=1)
    stake_amount: float = Field(gt=0)
    prediction: Prediction
    joined_at: float = Field(default_factory=time.time)
    is_winner: bool | None = None
    payout: float | None = None
    trade_status: str = ""  # "" | executed | pending_execution | failed
    trade_tx_hash: str | None = None


class PredictionPool(BaseModel):
    id: str = ""
    token_address: str = Field(min_length=1)
    token_symbol: str = ""
    creator_address: str | None = None
    description: str | None = None
    prediction_type: PredictionType
    threshold: float = Field(ge=1, le=100)
    timeframe_minutes: int = Field(gt=0)
    start_time: float
    end_time: float
    start_price: float = Field(gt=0)
    status: PoolStatus = PoolStatus.ACTIVE
    execution_status: ExecutionStatus = ExecutionStatus.PENDING
    auto_execute_trades: bool = True
    participants: list[Participant] = Field(default_factory=list)
    total_staked: float = 0.0
    liquidity: float = 0.0
    max_bet_size: float = 0.0

    # Resolution
    end_price: float | None = None
    price_change: float | None = None
    outcome: Prediction | None = None
    total_pot: float = 0.0
    gas_fee_pool: float = 0.0
    winner_count: int = 0
    loser_count: int = 0
    resolved_at: float | None = None

    # Set when a pass claims the pool (RESOLVING or execution EXECUTING)
    claimed_at: float | None = None

    created_at: float = Field(default_factory=time.time)
    updated_at: float = Field(default_factory=time.time)
    version: int = 0

    @model_validator(mode="after")
    def _check_window(self) -> "PredictionPool":
        if self.end_time <= self.start_time:
            raise ValueError("end_time must be after start_time")
        return self

    def accepts_participants(self, now: float) -> bool:
        return self.status == PoolStatus.ACTIVE and now < self.end_time

    def participant(self, wallet_address: str) -> Participant | None:
        wallet = wallet_address.lower()
        for p in self.participants:
            if p.wallet_address.lower() == wallet:
                return p
        return None


# ── Transaction log ──────────────────────────────────────────────────

class WalletTransaction(BaseModel):
    """Write-once record of a completed swap."""
    id: str = ""
    wallet_address: str
    tx_hash: str = ""
    input_token: str
    output_token: str
    input_amount: float = 0.0
    output_amount: float = 0.0
    input_value_usd: float = 0.0
    output_value_usd: float = 0.0
    gas_cost_usd: float = 0.0
    token_symbol: str = ""
    source: str = "swap"  # swap | order | prediction
    order_id: str | None = None
    timestamp: float = Field(default_factory=time.time)
