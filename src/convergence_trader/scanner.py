"""
Market scanner.

Pulls open markets resolving soon, qualifies them against the strategy
at their current prices and ranks the survivors.
"""

import logging
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Iterable, Optional

from .datasources import DataSourceManager
from .strategy import ConvergenceStrategy
from .types import MarketData, MarketFilter, OutcomeSide, PricePoint, TradeSignal
from .util import utc_now

logger = logging.getLogger(__name__)

LIQUIDITY_BONUS_THRESHOLD = 10_000.0


@dataclass
class QualifyingMarket:
    market: MarketData
    signal: TradeSignal
    score: int
    reasons: list[str] = field(default_factory=list)

    @property
    def side(self) -> OutcomeSide:
        return self.signal.side

    @property
    def token_id(self) -> str:
        return self.market.token_for(self.signal.side)


@dataclass
class ScanResult:
    success: bool
    qualifying: list[QualifyingMarket] = field(default_factory=list)
    rejections: Counter = field(default_factory=Counter)
    markets_scanned: int = 0
    source: str = ""
    error: Optional[str] = None


class MarketScanner:
    """Ranks tradeable markets for the next scan cycle."""

    def __init__(
        self,
        data_sources: DataSourceManager,
        strategy: ConvergenceStrategy,
        clock: Callable[[], datetime] = utc_now,
    ):
        self._data_sources = data_sources
        self._strategy = strategy
        self._clock = clock
        self._markets: dict[str, MarketData] = {}

    def known_market(self, market_id: str) -> Optional[MarketData]:
        """Most recent metadata seen for a market."""
        return self._markets.get(market_id)

    async def refresh_market(self, market_id: str) -> Optional[MarketData]:
        """
        Re-fetch one market by id, including closed and resolved ones.

        Scans only see open markets, so held positions past their end
        date need this to learn the resolved outcome.

        Returns:
            Fresh metadata, or the last known metadata if the lookup failed
        """
        fetched = await self._data_sources.fetch_market(market_id)
        if not fetched.success:
            logger.warning(f"Market lookup failed for {market_id}: {fetched.error}")
            return self._markets.get(market_id)
        if fetched.data is None:
            logger.warning(f"Market {market_id} not found in {fetched.source}")
            return self._markets.get(market_id)

        self._markets[market_id] = fetched.data
        return fetched.data

    async def scan(self, held_markets: Iterable[str] = ()) -> ScanResult:
        """
        Scan for qualifying markets.

        Args:
            held_markets: Market ids to skip (existing positions)

        Returns:
            ScanResult with qualifying markets sorted by score, best first
        """
        now = self._clock()
        days_max = self._strategy.config.time_to_resolution_days_max
        market_filter = MarketFilter(
            closed=False,
            end_date_min=now,
            end_date_max=now + timedelta(days=days_max + 1),
        )

        fetched = await self._data_sources.fetch_markets(market_filter)
        if not fetched.success:
            logger.warning(f"Market scan failed: {fetched.error}")
            return ScanResult(success=False, source=fetched.source, error=fetched.error)

        held = set(held_markets)
        result = ScanResult(success=True, source=fetched.source)
        for market in fetched.data or []:
            self._markets[market.id] = market
            result.markets_scanned += 1

            if market.id in held:
                result.rejections["already_have_position"] += 1
                continue

            qualified, reason = self.qualify(market, now)
            if qualified is None:
                result.rejections[reason] += 1
                continue
            result.qualifying.append(qualified)

        result.qualifying.sort(key=lambda q: q.score, reverse=True)
        logger.info(
            f"Scanned {result.markets_scanned} markets from {result.source}: "
            f"{len(result.qualifying)} qualifying, rejections {dict(result.rejections)}"
        )
        return result

    def qualify(self, market: MarketData, now: datetime) -> tuple[Optional[QualifyingMarket], str]:
        """
        Qualify one market at its current prices.

        Returns:
            (QualifyingMarket, "") or (None, rejection reason)
        """
        cfg = self._strategy.config

        if market.closed:
            return None, "closed_or_inactive"

        eligibility = self._strategy.check_eligibility(market)
        if not eligibility.eligible:
            return None, "not_binary" if not market.is_binary else "no_resolution_date"

        point = PricePoint(timestamp=now, yes_price=market.yes_price, no_price=market.no_price)
        signal = self._strategy.check_entry(market, point)
        if signal is None:
            days = self._strategy.days_to_resolution(market, now)
            if days is not None and days < cfg.time_to_resolution_days_min:
                return None, "too_close_to_resolution"
            if days is not None and days > cfg.time_to_resolution_days_max:
                return None, "too_far_from_resolution"
            if market.yes_price > cfg.entry_price_max:
                return None, "price_too_high"
            return None, "price_too_low"

        score, reasons = self.score(signal, market)
        return QualifyingMarket(market=market, signal=signal, score=score, reasons=reasons), ""

    def score(self, signal: TradeSignal, market: MarketData) -> tuple[int, list[str]]:
        """
        Rank a qualified market.

        20 for price in band, 20 for time in window, up to 30 more the
        closer the price sits to the bottom of its band, up to 20 more
        the closer to resolution, and 10 for deep liquidity.
        """
        cfg = self._strategy.config
        reasons = [signal.reason, f"{signal.days_to_resolution:.1f} days to resolution"]
        score = 40

        if signal.side is OutcomeSide.YES:
            band_min, band_max = cfg.entry_price_min, cfg.entry_price_max
        else:
            band_min, band_max = self._strategy.no_entry_band
        price_position = (signal.entry_price - band_min) / (band_max - band_min)
        score += round((1 - price_position) * 30)

        time_range = cfg.time_to_resolution_days_max - cfg.time_to_resolution_days_min
        time_position = (signal.days_to_resolution - cfg.time_to_resolution_days_min) / time_range
        score += round((1 - time_position) * 20)

        if market.liquidity > LIQUIDITY_BONUS_THRESHOLD:
            score += 10
            reasons.append("Good liquidity")

        return score, reasons
