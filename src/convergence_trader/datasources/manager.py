"""Primary/fallback routing across market data sources."""

import logging
from typing import Optional

from ..config import DataSourceConfig
from ..errors import ConfigurationError
from ..types import FetchResult, MarketData, MarketFilter, PricePoint
from .base import BatchFetchable, DataSource
from .gamma import GammaDataSource

logger = logging.getLogger(__name__)


class DataSourceManager:
    """
    Tries the primary source, then the fallback.

    Every read returns a FetchResult so callers can tell an empty answer
    from an unavailable one. Nothing here raises for upstream failures.
    """

    def __init__(self, primary: DataSource, fallback: Optional[DataSource] = None):
        self.primary = primary
        self.fallback = fallback

    @property
    def active_sources(self) -> list[str]:
        sources = [self.primary.name]
        if self.fallback is not None:
            sources.append(self.fallback.name)
        return sources

    def _sources(self) -> list[DataSource]:
        return [s for s in (self.primary, self.fallback) if s is not None]

    async def fetch_markets(self, market_filter: MarketFilter) -> FetchResult[list[MarketData]]:
        for source in self._sources():
            try:
                if await source.is_available():
                    data = await source.fetch_markets(market_filter)
                    return FetchResult.ok(data, source=source.name)
            except Exception as e:
                logger.warning(f"Data source {source.name} failed fetching markets: {e}")

        return FetchResult.fail("All data sources unavailable", source="none")

    async def fetch_market(self, market_id: str) -> FetchResult[Optional[MarketData]]:
        """Fresh metadata for one market; data is None if no source knows it."""
        for source in self._sources():
            try:
                if await source.is_available():
                    market = await source.fetch_market(market_id)
                    return FetchResult.ok(market, source=source.name)
            except Exception as e:
                logger.warning(f"Data source {source.name} failed looking up {market_id}: {e}")

        return FetchResult.fail(f"No data source available for market {market_id}", source="none")

    async def fetch_price_history(self, market_id: str) -> FetchResult[list[PricePoint]]:
        errors: list[str] = []
        for source in self._sources():
            try:
                if await source.is_available():
                    data = await source.fetch_price_history(market_id)
                    return FetchResult.ok(data, source=source.name)
            except Exception as e:
                logger.warning(f"Data source {source.name} failed for {market_id}: {e}")
                errors.append(f"{source.name}: {e}")

        if errors:
            return FetchResult.fail(
                f"Price history failed for {market_id}: {'; '.join(errors)}", source="none",
            )
        return FetchResult.fail(f"No data source available for market {market_id}", source="none")

    async def fetch_price_history_batch(
        self,
        market_ids: list[str],
    ) -> dict[str, FetchResult[list[PricePoint]]]:
        """
        Price histories for several markets.

        Uses the batch capability of the first available source when it
        has one, otherwise fetches one by one.
        """
        for source in self._sources():
            if not isinstance(source, BatchFetchable):
                continue
            try:
                if await source.is_available():
                    batch = await source.fetch_price_history_batch(market_ids)
                    return {
                        market_id: batch.get(market_id) or FetchResult.fail(
                            f"Market {market_id} missing from batch result", source=source.name,
                        )
                        for market_id in market_ids
                    }
            except Exception as e:
                logger.warning(f"Batch fetch from {source.name} failed, fetching individually: {e}")

        return {market_id: await self.fetch_price_history(market_id) for market_id in market_ids}

    async def close(self) -> None:
        for source in self._sources():
            await source.close()


def create_data_source(name: str, config: DataSourceConfig) -> DataSource:
    if name == "gamma":
        return GammaDataSource(
            gamma_url=config.gamma_api_url,
            clob_url=config.clob_api_url,
            requests_per_second=config.requests_per_second,
            page_size=config.page_size,
        )
    raise ConfigurationError(f"Unknown data source type: {name}")


def create_data_source_manager(config: DataSourceConfig) -> DataSourceManager:
    """Build a manager from explicit configuration."""
    primary = create_data_source(config.primary, config)
    fallback = None
    if config.fallback != "none":
        fallback = create_data_source(config.fallback, config)
    return DataSourceManager(primary, fallback)
