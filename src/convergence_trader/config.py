"""
Configuration for the convergence trader.

Settings come from an optional JSON config file (strategy, risk, data
source and bot sections) with environment variables layered on top.
Credentials are only ever read from the environment.
"""

import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Optional

import orjson

from .errors import ConfigurationError


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _section(cls, data: Optional[dict]):
    """Build a section dataclass from a dict, rejecting unknown keys."""
    if not data:
        return cls()
    known = {f.name for f in fields(cls)}
    unknown = set(data) - known
    if unknown:
        raise ConfigurationError(
            f"Unknown {cls.__name__} keys: {', '.join(sorted(unknown))}"
        )
    return cls(**data)


@dataclass
class StrategyConfig:
    """Entry and exit parameters for late-stage convergence."""
    name: str = "late-stage-convergence"
    entry_price_min: float = 0.60
    entry_price_max: float = 0.80
    exit_price_target: float = 0.95
    time_to_resolution_days_min: float = 1.0
    time_to_resolution_days_max: float = 7.0
    hold_to_resolution: bool = False

    def validate(self) -> None:
        for name in ("entry_price_min", "entry_price_max", "exit_price_target"):
            value = getattr(self, name)
            if not 0.0 <= value <= 1.0:
                raise ConfigurationError(f"{name} must be between 0 and 1")

        if self.entry_price_min >= self.entry_price_max:
            raise ConfigurationError("entry_price_min must be less than entry_price_max")

        if self.entry_price_max >= self.exit_price_target:
            raise ConfigurationError("entry_price_max must be less than exit_price_target")

        if self.time_to_resolution_days_min <= 0:
            raise ConfigurationError("time_to_resolution_days_min must be positive")

        if self.time_to_resolution_days_min >= self.time_to_resolution_days_max:
            raise ConfigurationError(
                "time_to_resolution_days_min must be less than time_to_resolution_days_max"
            )


@dataclass
class RiskConfig:
    """Position sizing and exposure limits."""
    position_size_usd: float = 10.0
    max_positions: int = 5
    max_exposure_usd: float = 50.0
    stop_loss_percent: Optional[float] = None  # None disables the stop

    def validate(self) -> None:
        if self.position_size_usd <= 0:
            raise ConfigurationError("position_size_usd must be positive")

        if self.max_positions < 1:
            raise ConfigurationError("max_positions must be at least 1")

        if self.max_exposure_usd <= 0:
            raise ConfigurationError("max_exposure_usd must be positive")

        if self.stop_loss_percent is not None and not 0.0 <= self.stop_loss_percent <= 100.0:
            raise ConfigurationError("stop_loss_percent must be between 0 and 100")


@dataclass
class DataSourceConfig:
    """Market data source selection."""
    primary: str = "gamma"
    fallback: str = "none"
    gamma_api_url: str = "https://gamma-api.polymarket.com"
    clob_api_url: str = "https://clob.polymarket.com"
    requests_per_second: float = 2.0
    page_size: int = 500

    SUPPORTED = ("gamma",)

    def validate(self) -> None:
        if self.primary not in self.SUPPORTED:
            raise ConfigurationError(f"Unsupported primary data source: {self.primary}")

        if self.fallback != "none" and self.fallback not in self.SUPPORTED:
            raise ConfigurationError(f"Unsupported fallback data source: {self.fallback}")

        if self.requests_per_second <= 0:
            raise ConfigurationError("requests_per_second must be positive")


@dataclass
class BotConfig:
    """Orchestrator timing and limits."""
    scan_interval_s: float = 60.0
    state_check_interval_s: float = 30.0
    max_trades_per_day: int = 10
    max_opportunities_per_scan: int = 3
    stale_threshold_ms: int = 30_000
    error_buffer_size: int = 100
    drain_timeout_s: float = 30.0
    pending_grace_s: float = 120.0  # before an unconfirmed pending trade is flagged
    closed_grace_s: float = 600.0  # a just-closed position may still be listed externally
    live_start_delay_s: float = 5.0

    def validate(self) -> None:
        if self.scan_interval_s <= 0 or self.state_check_interval_s <= 0:
            raise ConfigurationError("cycle intervals must be positive")

        if self.max_trades_per_day < 0:
            raise ConfigurationError("max_trades_per_day cannot be negative")

        if self.stale_threshold_ms <= 0:
            raise ConfigurationError("stale_threshold_ms must be positive")

        if self.error_buffer_size < 1:
            raise ConfigurationError("error_buffer_size must be at least 1")

        if self.pending_grace_s < 0:
            raise ConfigurationError("pending_grace_s cannot be negative")

        if self.closed_grace_s < 0:
            raise ConfigurationError("closed_grace_s cannot be negative")


@dataclass
class TraderConfig:
    """
    Top-level configuration container.

    Constructed once at startup and passed explicitly to every component.
    """
    strategy: StrategyConfig = field(default_factory=StrategyConfig)
    risk: RiskConfig = field(default_factory=RiskConfig)
    data_source: DataSourceConfig = field(default_factory=DataSourceConfig)
    bot: BotConfig = field(default_factory=BotConfig)

    # Polymarket credentials (environment only)
    private_key: str = ""
    proxy_address: str = ""  # funder / proxy wallet holding USDC and positions
    api_key: str = ""
    api_secret: str = ""
    api_passphrase: str = ""
    signature_type: int = 1
    chain_id: int = 137

    # Account state sources
    data_api_url: str = "https://data-api.polymarket.com"
    polygon_rpc_url: str = "https://polygon-rpc.com"
    usdc_contract: str = "0x2791Bca1f2de4661ED88A30C99A7a9449Aa84174"

    # Ledger
    db_path: str = "data/trader.db"

    dry_run: bool = True
    log_level: str = "INFO"

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TraderConfig":
        """Build from a parsed JSON document (sections only, no credentials)."""
        allowed = {"strategy", "risk", "data_source", "bot", "db_path", "log_level"}
        unknown = set(data) - allowed
        if unknown:
            raise ConfigurationError(f"Unknown config sections: {', '.join(sorted(unknown))}")

        try:
            config = cls(
                strategy=_section(StrategyConfig, data.get("strategy")),
                risk=_section(RiskConfig, data.get("risk")),
                data_source=_section(DataSourceConfig, data.get("data_source")),
                bot=_section(BotConfig, data.get("bot")),
            )
        except TypeError as e:
            raise ConfigurationError(f"Invalid config value: {e}") from e

        if "db_path" in data:
            config.db_path = data["db_path"]
        if "log_level" in data:
            config.log_level = data["log_level"]
        return config

    @classmethod
    def load_file(cls, path: str) -> "TraderConfig":
        """Load a JSON config file."""
        config_path = Path(path)
        if not config_path.exists():
            raise ConfigurationError(f"Config file not found: {path}")

        try:
            data = orjson.loads(config_path.read_bytes())
        except orjson.JSONDecodeError as e:
            raise ConfigurationError(f"Failed to parse config file {path}: {e}") from e

        if not isinstance(data, dict):
            raise ConfigurationError(f"Config file {path} must contain a JSON object")
        return cls.from_dict(data)

    @classmethod
    def from_env(cls, config_path: Optional[str] = None) -> "TraderConfig":
        """
        Load configuration from an optional JSON file plus environment.

        Args:
            config_path: JSON config file; falls back to $TRADER_CONFIG

        Returns:
            TraderConfig (not yet validated)
        """
        path = config_path or os.getenv("TRADER_CONFIG")
        config = cls.load_file(path) if path else cls()

        config.private_key = os.getenv("POLYMARKET_PRIVATE_KEY", "")
        config.proxy_address = os.getenv("POLYMARKET_PROXY_ADDRESS", "")
        config.api_key = os.getenv("POLYMARKET_API_KEY", "")
        config.api_secret = os.getenv("POLYMARKET_API_SECRET", "")
        config.api_passphrase = os.getenv("POLYMARKET_API_PASSPHRASE", "")

        try:
            config.signature_type = int(os.getenv("POLYMARKET_SIGNATURE_TYPE", str(config.signature_type)))
            config.chain_id = int(os.getenv("POLYMARKET_CHAIN_ID", str(config.chain_id)))
        except ValueError as e:
            raise ConfigurationError(f"Invalid integer in environment: {e}") from e

        config.data_api_url = os.getenv("POLYMARKET_DATA_API_URL", config.data_api_url)
        config.polygon_rpc_url = os.getenv("POLYGON_RPC_URL", config.polygon_rpc_url)
        config.db_path = os.getenv("TRADER_DB_PATH", config.db_path)
        config.log_level = os.getenv("LOG_LEVEL", config.log_level)
        config.dry_run = _env_bool("TRADER_DRY_RUN", config.dry_run)
        return config

    def validate(self, require_credentials: bool = True) -> None:
        """
        Validate configuration values.

        Raises:
            ConfigurationError: on the first invalid value found
        """
        self.strategy.validate()
        self.risk.validate()
        self.data_source.validate()
        self.bot.validate()

        if self.risk.position_size_usd > self.risk.max_exposure_usd:
            raise ConfigurationError("position_size_usd cannot exceed max_exposure_usd")

        if self.log_level.upper() not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ConfigurationError(f"Invalid log level: {self.log_level}")

        if require_credentials:
            if not self.private_key:
                raise ConfigurationError("POLYMARKET_PRIVATE_KEY not set")
            if not self.proxy_address:
                raise ConfigurationError("POLYMARKET_PROXY_ADDRESS not set")
