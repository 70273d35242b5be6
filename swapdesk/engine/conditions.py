"""Order trigger conditions.

Pure predicates over (order, current price). No I/O, no mutation.

  LIMIT_BUY   price <= target
  LIMIT_SELL  price >= target
  STOP_LOSS   price <= stop
  STOP_LIMIT  price <= stop and price >= limit (single sample), or
              price >= limit once the stop has been armed
"""

from __future__ import annotations

from typing import Callable

from swapdesk.storage.models import (
    LimitBuyOrder,
    LimitSellOrder,
    Order,
    StopLimitOrder,
    StopLossOrder,
)


def usable_price(current_price: float | None) -> float | None:
    """The price itself, or None when it is missing or non-positive."""
    if current_price is None or current_price <= 0:
        return None
    return current_price


def should_trigger(order: Order, current_price: float | None, armed: bool = False) -> bool:
    price = usable_price(current_price)
    if price is None:
        return False

    if isinstance(order, LimitBuyOrder):
        return price <= order.target_price
    if isinstance(order, LimitSellOrder):
        return price >= order.target_price
    if isinstance(order, StopLossOrder):
        return price <= order.stop_price
    if isinstance(order, StopLimitOrder):
        if armed:
            return price >= order.limit_price
        return order.limit_price <= price <= order.stop_price
    raise TypeError(f"unhandled order variant: {type(order).__name__}")


def stop_crossed(order: Order, current_price: float | None) -> bool:
    """True when a STOP_LIMIT order's stop should arm at this price."""
    if not isinstance(order, StopLimitOrder):
        return False
    price = usable_price(current_price)
    return price is not None and price <= order.stop_price


def traded_token(order: Order, is_native: Callable[[str], bool]) -> str:
    """The non-native leg, whose USD price drives the order."""
    if is_native(order.token_in):
        return order.token_out
    return order.token_in
