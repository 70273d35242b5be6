"""Tests for order trigger predicates."""

from __future__ import annotations

import pytest

from swapdesk.config import ZERO_ADDRESS
from swapdesk.engine.conditions import should_trigger, stop_crossed, traded_token, usable_price
from swapdesk.storage.models import parse_order

from tests.fakes import TOKEN, WALLET


def _order(order_type: str, **prices):
    return parse_order({
        "wallet_address": WALLET,
        "order_type": order_type,
        "token_in": ZERO_ADDRESS,
        "token_out": TOKEN,
        "amount_in": 1.0,
        **prices,
    })


LIMIT_BUY = _order("LIMIT_BUY", target_price=1.0)
LIMIT_SELL = _order("LIMIT_SELL", target_price=1.0)
STOP_LOSS = _order("STOP_LOSS", stop_price=1.0)
STOP_LIMIT = _order("STOP_LIMIT", stop_price=1.0, limit_price=0.9)


class TestShouldTrigger:

    @pytest.mark.parametrize("order,price,expected", [
        (LIMIT_BUY, 0.99, True),
        (LIMIT_BUY, 1.0, True),
        (LIMIT_BUY, 1.01, False),
        (LIMIT_SELL, 1.01, True),
        (LIMIT_SELL, 1.0, True),
        (LIMIT_SELL, 0.99, False),
        (STOP_LOSS, 0.5, True),
        (STOP_LOSS, 1.0, True),
        (STOP_LOSS, 1.01, False),
        (STOP_LIMIT, 0.95, True),
        (STOP_LIMIT, 1.0, True),
        (STOP_LIMIT, 0.9, True),
        (STOP_LIMIT, 0.89, False),
        (STOP_LIMIT, 1.01, False),
    ])
    def test_boundaries(self, order, price, expected):
        assert should_trigger(order, price) is expected

    @pytest.mark.parametrize("price", [None, 0.0, -1.0])
    def test_missing_price_never_triggers(self, price):
        for order in (LIMIT_BUY, LIMIT_SELL, STOP_LOSS, STOP_LIMIT):
            assert should_trigger(order, price) is False

    def test_armed_stop_limit_triggers_above_stop(self):
        assert should_trigger(STOP_LIMIT, 1.05, armed=True) is True
        assert should_trigger(STOP_LIMIT, 0.85, armed=True) is False

    def test_armed_flag_ignored_by_other_types(self):
        assert should_trigger(LIMIT_BUY, 1.5, armed=True) is False

    def test_unknown_variant_raises(self):
        with pytest.raises(TypeError):
            should_trigger(object(), 1.0)  # type: ignore[arg-type]


class TestHelpers:

    def test_usable_price(self):
        assert usable_price(0.0001) == 0.0001
        assert usable_price(None) is None
        assert usable_price(0) is None
        assert usable_price(-1.0) is None

    def test_stop_crossed_only_for_stop_limit(self):
        assert stop_crossed(STOP_LIMIT, 0.8)
        assert not stop_crossed(STOP_LIMIT, 1.2)
        assert not stop_crossed(STOP_LOSS, 0.8)
        assert not stop_crossed(STOP_LIMIT, None)

    def test_traded_token_is_non_native_leg(self):
        def is_native(t: str) -> bool:
            return t == ZERO_ADDRESS

        assert traded_token(LIMIT_BUY, is_native) == TOKEN
        sell = parse_order({
            "wallet_address": WALLET, "order_type": "LIMIT_SELL",
            "token_in": TOKEN, "token_out": ZERO_ADDRESS,
            "amount_in": 5.0, "target_price": 2.0,
        })
        assert traded_token(sell, is_native) == TOKEN


class TestOrderUnion:

    def test_limit_without_target_is_rejected(self):
        with pytest.raises(ValueError):
            _order("LIMIT_BUY")

    def test_stop_limit_requires_both_prices(self):
        with pytest.raises(ValueError):
            _order("STOP_LIMIT", stop_price=1.0)

    def test_unknown_type_is_rejected(self):
        with pytest.raises(ValueError):
            _order("TRAILING_STOP", stop_price=1.0)
