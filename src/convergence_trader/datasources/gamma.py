"""
Polymarket Gamma API data source.

Markets come from the Gamma API; price history comes from the CLOB
prices-history endpoint, keyed by the YES token id.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Optional

import aiohttp
import orjson

from ..errors import DataSourceError
from ..types import FetchResult, MarketData, MarketFilter, OutcomeSide, PricePoint
from ..util import parse_iso_datetime, safe_float, wall_ms
from .base import BatchFetchable, DataSource

logger = logging.getLogger(__name__)


class RateLimiter:
    """Spaces requests at least 1/requests_per_second apart."""

    def __init__(self, requests_per_second: float = 2.0):
        self._min_interval_ms = 1000.0 / requests_per_second
        self._last_request_ms = 0
        self._lock = asyncio.Lock()

    async def wait(self) -> None:
        async with self._lock:
            elapsed = wall_ms() - self._last_request_ms
            if elapsed < self._min_interval_ms:
                await asyncio.sleep((self._min_interval_ms - elapsed) / 1000)
            self._last_request_ms = wall_ms()


def _parse_json_list(value) -> list:
    """Gamma encodes several list fields as JSON strings."""
    if isinstance(value, list):
        return value
    if not value:
        return []
    try:
        parsed = orjson.loads(value)
    except orjson.JSONDecodeError:
        return []
    return parsed if isinstance(parsed, list) else []


def parse_gamma_market(raw: dict) -> Optional[MarketData]:
    """
    Normalize a Gamma market dict.

    Returns:
        MarketData for YES/NO markets with token ids, else None
    """
    token_ids = _parse_json_list(raw.get("clobTokenIds"))
    if len(token_ids) < 2:
        return None

    outcomes = [str(o) for o in _parse_json_list(raw.get("outcomes"))]
    normalized = [o.lower() for o in outcomes]
    if len(outcomes) != 2 or "yes" not in normalized or "no" not in normalized:
        return None

    prices = [safe_float(p) for p in _parse_json_list(raw.get("outcomePrices"))]
    yes_price = prices[0] if prices else 0.0
    no_price = prices[1] if len(prices) > 1 else 1.0 - yes_price

    closed = bool(raw.get("closed", False))
    resolved_outcome = None
    if closed and prices:
        if yes_price > 0.99:
            resolved_outcome = OutcomeSide.YES
        elif yes_price < 0.01:
            resolved_outcome = OutcomeSide.NO

    return MarketData(
        id=raw.get("conditionId") or str(raw.get("id", "")),
        question=raw.get("question", ""),
        yes_token_id=str(token_ids[0]),
        no_token_id=str(token_ids[1]),
        yes_price=yes_price,
        no_price=no_price,
        end_date=parse_iso_datetime(raw.get("endDate")),
        outcomes=outcomes,
        volume=safe_float(raw.get("volume")),
        liquidity=safe_float(raw.get("liquidity")),
        slug=raw.get("slug", "") or "",
        closed=closed,
        resolved_outcome=resolved_outcome,
    )


class GammaDataSource(DataSource, BatchFetchable):
    """Gamma API markets plus CLOB price history."""

    name = "gamma"

    def __init__(
        self,
        gamma_url: str = "https://gamma-api.polymarket.com",
        clob_url: str = "https://clob.polymarket.com",
        requests_per_second: float = 2.0,
        page_size: int = 500,
    ):
        self._gamma_url = gamma_url.rstrip("/")
        self._clob_url = clob_url.rstrip("/")
        self._page_size = page_size
        self._rate_limiter = RateLimiter(requests_per_second)
        self._session: Optional[aiohttp.ClientSession] = None
        self._markets: dict[str, MarketData] = {}

    async def _ensure_session(self) -> aiohttp.ClientSession:
        """Ensure HTTP session is created."""
        if self._session is None or self._session.closed:
            timeout = aiohttp.ClientTimeout(total=15)
            self._session = aiohttp.ClientSession(timeout=timeout)
        return self._session

    async def close(self) -> None:
        """Close the HTTP session."""
        if self._session and not self._session.closed:
            await self._session.close()
            self._session = None

    async def _get_json(self, url: str, params: Optional[dict] = None):
        await self._rate_limiter.wait()
        session = await self._ensure_session()
        try:
            async with session.get(url, params=params) as resp:
                if resp.status == 404:
                    return None
                if resp.status != 200:
                    text = await resp.text()
                    raise DataSourceError(f"GET {url} failed: {resp.status} - {text[:200]}")
                return orjson.loads(await resp.read())
        except aiohttp.ClientError as e:
            raise DataSourceError(f"GET {url} failed: {e}") from e
        except orjson.JSONDecodeError as e:
            raise DataSourceError(f"GET {url} returned invalid JSON: {e}") from e

    async def is_available(self) -> bool:
        try:
            await self._get_json(f"{self._gamma_url}/markets", {"limit": 1})
            return True
        except DataSourceError as e:
            logger.warning(f"Gamma API unavailable: {e}")
            return False

    async def fetch_markets(self, market_filter: MarketFilter) -> list[MarketData]:
        """
        Page through Gamma markets matching the filter.

        Stops at the first short page or at market_filter.max_markets.
        """
        markets: list[MarketData] = []
        offset = 0
        while len(markets) < market_filter.max_markets:
            params: dict = {"limit": self._page_size, "offset": offset}
            if market_filter.closed is not None:
                params["closed"] = "true" if market_filter.closed else "false"
            if market_filter.end_date_max is not None:
                params["end_date_max"] = _iso(market_filter.end_date_max)
            if market_filter.end_date_min is not None:
                params["end_date_min"] = _iso(market_filter.end_date_min)
            if market_filter.min_liquidity > 0:
                params["liquidity_num_min"] = market_filter.min_liquidity

            page = await self._get_json(f"{self._gamma_url}/markets", params)
            if not page:
                break
            if not isinstance(page, list):
                raise DataSourceError(f"Unexpected markets payload: {type(page).__name__}")

            for raw in page:
                market = parse_gamma_market(raw)
                if market is None:
                    continue
                self._markets[market.id] = market
                markets.append(market)

            if len(page) < self._page_size:
                break
            offset += self._page_size

        logger.debug(f"Fetched {len(markets)} binary markets from Gamma")
        return markets[:market_filter.max_markets]

    async def fetch_market(self, market_id: str) -> Optional[MarketData]:
        """Look a market up by condition id, bypassing the cache."""
        page = await self._get_json(f"{self._gamma_url}/markets", {"condition_ids": market_id})
        if page is None:
            return None
        if not isinstance(page, list):
            raise DataSourceError(f"Unexpected markets payload: {type(page).__name__}")

        for raw in page:
            parsed = parse_gamma_market(raw)
            if parsed is not None and parsed.id == market_id:
                self._markets[market_id] = parsed
                return parsed
        return None

    async def _lookup_market(self, market_id: str) -> Optional[MarketData]:
        market = self._markets.get(market_id)
        if market is not None:
            return market
        return await self.fetch_market(market_id)

    async def fetch_price_history(self, market_id: str) -> list[PricePoint]:
        market = await self._lookup_market(market_id)
        if market is None:
            raise DataSourceError(f"Unknown market {market_id}, no token ids for price history")

        params: dict = {"market": market.yes_token_id, "fidelity": 60}
        if market.end_date is not None:
            # One day past resolution so the final prints are included
            params["endTs"] = int(market.end_date.timestamp()) + 24 * 60 * 60
            params["startTs"] = int(market.end_date.timestamp()) - 365 * 24 * 60 * 60
        else:
            params["interval"] = "max"

        data = await self._get_json(f"{self._clob_url}/prices-history", params)
        if data is None:
            raise DataSourceError(f"No price history endpoint for token {market.yes_token_id}")
        if not isinstance(data, dict) or not isinstance(data.get("history"), list):
            raise DataSourceError(f"Unexpected prices-history payload for {market_id}")

        return [
            PricePoint(
                timestamp=datetime.fromtimestamp(int(point["t"]), tz=timezone.utc),
                yes_price=safe_float(point["p"]),
                no_price=1.0 - safe_float(point["p"]),
            )
            for point in data["history"]
            if "t" in point and "p" in point
        ]

    async def fetch_price_history_batch(
        self,
        market_ids: list[str],
    ) -> dict[str, FetchResult[list[PricePoint]]]:
        result: dict[str, FetchResult[list[PricePoint]]] = {}
        for market_id in market_ids:
            try:
                history = await self.fetch_price_history(market_id)
            except DataSourceError as e:
                logger.warning(f"Price history failed for {market_id}: {e}")
                result[market_id] = FetchResult.fail(str(e), source=self.name)
                continue
            result[market_id] = FetchResult.ok(history, source=self.name)
        return result


def _iso(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
