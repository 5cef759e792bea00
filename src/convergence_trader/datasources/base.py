"""Market data source interfaces."""

from abc import ABC, abstractmethod
from typing import Optional

from ..types import FetchResult, MarketData, MarketFilter, PricePoint


class DataSource(ABC):
    """A provider of market metadata and price history."""

    name: str = "base"

    @abstractmethod
    async def fetch_markets(self, market_filter: MarketFilter) -> list[MarketData]:
        """
        Fetch markets matching a filter.

        Raises:
            DataSourceError: the source could not be queried
        """

    @abstractmethod
    async def fetch_market(self, market_id: str) -> Optional[MarketData]:
        """
        Current metadata for one market, open or closed.

        Returns:
            The market, or None if the source does not know it

        Raises:
            DataSourceError: the source could not be queried
        """

    @abstractmethod
    async def fetch_price_history(self, market_id: str) -> list[PricePoint]:
        """
        Price history for one market, oldest first.

        Raises:
            DataSourceError: the source could not be queried or does not
                know the market
        """

    @abstractmethod
    async def is_available(self) -> bool:
        """Cheap reachability check."""

    async def close(self) -> None:
        """Release resources."""


class BatchFetchable(ABC):
    """Optional capability: fetch several price histories in one call."""

    @abstractmethod
    async def fetch_price_history_batch(
        self,
        market_ids: list[str],
    ) -> dict[str, FetchResult[list[PricePoint]]]:
        """Per-market results keyed by market id; one failure does not sink the batch."""
