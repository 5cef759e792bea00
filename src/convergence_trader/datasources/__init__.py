"""Market data sources."""

from .base import BatchFetchable, DataSource
from .gamma import GammaDataSource, parse_gamma_market
from .manager import DataSourceManager, create_data_source, create_data_source_manager

__all__ = [
    "BatchFetchable",
    "DataSource",
    "DataSourceManager",
    "GammaDataSource",
    "create_data_source",
    "create_data_source_manager",
    "parse_gamma_market",
]
