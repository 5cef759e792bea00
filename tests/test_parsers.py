"""Tests for normalizing raw venue and data-API payloads."""

import pytest

from convergence_trader.account_sources import parse_position
from convergence_trader.types import Direction, OutcomeSide, PositionSource
from convergence_trader.venue import parse_open_order, parse_trade


class TestParsePosition:
    """Tests for data-API position parsing."""

    def test_full_position(self):
        position = parse_position({
            "conditionId": "0xabc",
            "asset": "111",
            "outcome": "Yes",
            "size": "14.28",
            "avgPrice": "0.70",
            "curPrice": "0.75",
            "currentValue": "10.71",
            "cashPnl": "0.71",
            "title": "Will it rain?",
        })

        assert position.market_id == "0xabc"
        assert position.side is OutcomeSide.YES
        assert position.size == pytest.approx(14.28)
        assert position.current_value == pytest.approx(10.71)
        assert position.question == "Will it rain?"
        assert position.source is PositionSource.POSITIONS_API

    def test_value_derived_when_missing(self):
        position = parse_position({"conditionId": "0xabc", "outcome": "No", "size": 10, "curPrice": 0.3})

        assert position.side is OutcomeSide.NO
        assert position.current_value == pytest.approx(3.0)

    def test_zero_size_dropped(self):
        assert parse_position({"conditionId": "0xabc", "outcome": "Yes", "size": 0}) is None

    def test_non_binary_outcome_dropped(self):
        assert parse_position({"conditionId": "0xabc", "outcome": "Harris", "size": 5}) is None


class TestParseOpenOrder:
    def test_sell_order(self):
        order = parse_open_order({
            "id": "o1", "market": "m1", "asset_id": "111", "side": "sell",
            "price": "0.5", "original_size": "20", "size_matched": "5", "outcome": "Yes",
        })

        assert order.direction is Direction.SELL
        assert order.remaining_notional == pytest.approx(7.5)
        assert order.outcome == "Yes"

    def test_missing_side_defaults_to_buy(self):
        assert parse_open_order({"id": "o1"}).direction is Direction.BUY


class TestParseTrade:
    def test_epoch_seconds_match_time(self):
        trade = parse_trade({
            "id": "t1", "market": "m1", "asset_id": "111", "outcome": "Yes", "side": "BUY",
            "size": "10", "price": "0.7", "status": "confirmed", "match_time": "1717243200",
        })

        assert trade.match_time_ms == 1717243200000
        assert trade.status == "CONFIRMED"
        assert trade.size == pytest.approx(10.0)

    def test_iso_match_time(self):
        trade = parse_trade({"id": "t1", "match_time": "2024-06-01T12:00:00Z"})

        assert trade.match_time_ms == 1717243200000

    def test_missing_match_time(self):
        assert parse_trade({"id": "t1"}).match_time_ms == 0
