"""Tests for the market scanner."""

from datetime import timedelta
from unittest.mock import AsyncMock, Mock

import pytest

from convergence_trader.config import RiskConfig, StrategyConfig
from convergence_trader.scanner import MarketScanner
from convergence_trader.strategy import ConvergenceStrategy
from convergence_trader.types import FetchResult, OutcomeSide

from conftest import NOW, make_market


def make_scanner(markets=None, fetch_result=None) -> MarketScanner:
    manager = Mock()
    manager.fetch_markets = AsyncMock(
        return_value=fetch_result or FetchResult.ok(markets or [], source="gamma")
    )
    strategy = ConvergenceStrategy(StrategyConfig(), RiskConfig())
    return MarketScanner(manager, strategy, clock=lambda: NOW)


class TestScan:
    """Tests for scan()."""

    @pytest.mark.asyncio
    async def test_qualifying_market_found(self):
        scanner = make_scanner([make_market("m1", yes_price=0.70, days=3)])

        result = await scanner.scan()

        assert result.success is True
        assert result.markets_scanned == 1
        assert len(result.qualifying) == 1
        q = result.qualifying[0]
        assert q.side is OutcomeSide.YES
        assert q.token_id == "m1_yes"
        assert q.signal.entry_price == pytest.approx(0.70)

    @pytest.mark.asyncio
    async def test_filter_bounds_resolution_window(self):
        scanner = make_scanner()

        await scanner.scan()

        market_filter = scanner._data_sources.fetch_markets.await_args.args[0]
        assert market_filter.closed is False
        assert market_filter.end_date_min == NOW
        assert market_filter.end_date_max == NOW + timedelta(days=8)

    @pytest.mark.asyncio
    async def test_sorted_by_score(self):
        scanner = make_scanner([
            make_market("far", yes_price=0.78, days=6.5),
            make_market("best", yes_price=0.61, days=1.5, liquidity=20_000),
            make_market("mid", yes_price=0.70, days=3),
        ])

        result = await scanner.scan()

        assert [q.market.id for q in result.qualifying] == ["best", "mid", "far"]

    @pytest.mark.asyncio
    async def test_rejection_reasons_counted(self):
        non_binary = make_market("nb")
        non_binary.outcomes = ["A", "B", "C"]
        scanner = make_scanner([
            make_market("high", yes_price=0.90),
            make_market("low", yes_price=0.50),
            make_market("soon", days=0.5),
            make_market("late", days=10),
            make_market("closed", closed=True),
            non_binary,
        ])

        result = await scanner.scan()

        assert result.qualifying == []
        assert result.rejections == {
            "price_too_high": 1,
            "price_too_low": 1,
            "too_close_to_resolution": 1,
            "too_far_from_resolution": 1,
            "closed_or_inactive": 1,
            "not_binary": 1,
        }

    @pytest.mark.asyncio
    async def test_held_markets_skipped(self):
        scanner = make_scanner([make_market("m1"), make_market("m2")])

        result = await scanner.scan(held_markets={"m1"})

        assert [q.market.id for q in result.qualifying] == ["m2"]
        assert result.rejections["already_have_position"] == 1

    @pytest.mark.asyncio
    async def test_source_failure_is_not_an_empty_scan(self):
        scanner = make_scanner(fetch_result=FetchResult.fail("All data sources unavailable", source="none"))

        result = await scanner.scan()

        assert result.success is False
        assert result.error == "All data sources unavailable"

    @pytest.mark.asyncio
    async def test_scanned_markets_remembered(self):
        scanner = make_scanner([make_market("m1", yes_price=0.95)])

        await scanner.scan()

        assert scanner.known_market("m1").yes_price == pytest.approx(0.95)
        assert scanner.known_market("m2") is None


class TestRefreshMarket:
    """Tests for refresh_market()."""

    @pytest.mark.asyncio
    async def test_resolved_market_replaces_scanned_one(self):
        scanner = make_scanner([make_market("m1")])
        await scanner.scan()
        resolved = make_market("m1", days=-1, closed=True, resolved_outcome=OutcomeSide.YES)
        scanner._data_sources.fetch_market = AsyncMock(
            return_value=FetchResult.ok(resolved, source="gamma")
        )

        market = await scanner.refresh_market("m1")

        assert market is resolved
        assert scanner.known_market("m1").resolved_outcome is OutcomeSide.YES

    @pytest.mark.asyncio
    async def test_lookup_failure_keeps_last_known(self):
        scanner = make_scanner([make_market("m1")])
        await scanner.scan()
        scanner._data_sources.fetch_market = AsyncMock(
            return_value=FetchResult.fail("All data sources unavailable", source="none")
        )

        market = await scanner.refresh_market("m1")

        assert market is scanner.known_market("m1")
        assert market.closed is False

    @pytest.mark.asyncio
    async def test_unknown_everywhere(self):
        scanner = make_scanner()
        scanner._data_sources.fetch_market = AsyncMock(
            return_value=FetchResult.ok(None, source="gamma")
        )

        assert await scanner.refresh_market("m1") is None


class TestScore:
    """Tests for score()."""

    def test_score_components(self):
        scanner = make_scanner()
        market = make_market("m1", yes_price=0.70, days=3)
        q, _ = scanner.qualify(market, NOW)

        assert q.score == 40 + 15 + 13

    def test_liquidity_bonus(self):
        scanner = make_scanner()
        market = make_market("m1", yes_price=0.70, days=3, liquidity=15_000)
        q, _ = scanner.qualify(market, NOW)

        assert q.score == 40 + 15 + 13 + 10
        assert "Good liquidity" in q.reasons
