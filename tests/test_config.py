"""Tests for configuration loading and validation."""

import os
from unittest.mock import patch

import orjson
import pytest

from convergence_trader.config import (
    BotConfig, DataSourceConfig, RiskConfig, StrategyConfig, TraderConfig,
)
from convergence_trader.errors import ConfigurationError


def valid_config(**overrides) -> TraderConfig:
    config = TraderConfig(private_key="0xabc", proxy_address="0xdef")
    for name, value in overrides.items():
        setattr(config, name, value)
    return config


class TestDefaults:
    """Tests for default values."""

    def test_strategy_defaults(self):
        cfg = StrategyConfig()

        assert cfg.entry_price_min == 0.60
        assert cfg.entry_price_max == 0.80
        assert cfg.exit_price_target == 0.95
        assert cfg.time_to_resolution_days_min == 1.0
        assert cfg.time_to_resolution_days_max == 7.0
        assert cfg.hold_to_resolution is False

    def test_risk_defaults(self):
        cfg = RiskConfig()

        assert cfg.position_size_usd == 10.0
        assert cfg.max_positions == 5
        assert cfg.max_exposure_usd == 50.0
        assert cfg.stop_loss_percent is None

    def test_dry_run_is_default(self):
        assert TraderConfig().dry_run is True

    def test_defaults_validate(self):
        valid_config().validate()


class TestValidation:
    """Tests for validate()."""

    def test_entry_band_must_be_ordered(self):
        cfg = StrategyConfig(entry_price_min=0.8, entry_price_max=0.6)

        with pytest.raises(ConfigurationError, match="entry_price_min"):
            cfg.validate()

    def test_target_must_exceed_band(self):
        cfg = StrategyConfig(entry_price_max=0.96, exit_price_target=0.95)

        with pytest.raises(ConfigurationError, match="exit_price_target"):
            cfg.validate()

    def test_price_out_of_unit_interval(self):
        cfg = StrategyConfig(exit_price_target=1.5)

        with pytest.raises(ConfigurationError):
            cfg.validate()

    def test_time_window_must_be_ordered(self):
        cfg = StrategyConfig(time_to_resolution_days_min=7, time_to_resolution_days_max=1)

        with pytest.raises(ConfigurationError, match="time_to_resolution_days_min"):
            cfg.validate()

    def test_stop_loss_range(self):
        with pytest.raises(ConfigurationError, match="stop_loss_percent"):
            RiskConfig(stop_loss_percent=150).validate()

    def test_position_size_cannot_exceed_exposure(self):
        config = valid_config(risk=RiskConfig(position_size_usd=60, max_exposure_usd=50))

        with pytest.raises(ConfigurationError, match="position_size_usd"):
            config.validate()

    def test_unsupported_data_source(self):
        with pytest.raises(ConfigurationError, match="primary"):
            DataSourceConfig(primary="goldsky").validate()

    def test_negative_grace_rejected(self):
        with pytest.raises(ConfigurationError, match="pending_grace_s"):
            BotConfig(pending_grace_s=-1).validate()

    def test_negative_closed_grace_rejected(self):
        with pytest.raises(ConfigurationError, match="closed_grace_s"):
            BotConfig(closed_grace_s=-1).validate()

    def test_missing_credentials(self):
        with pytest.raises(ConfigurationError, match="POLYMARKET_PRIVATE_KEY"):
            TraderConfig().validate(require_credentials=True)

    def test_missing_proxy_address(self):
        with pytest.raises(ConfigurationError, match="POLYMARKET_PROXY_ADDRESS"):
            TraderConfig(private_key="0xabc").validate()

    def test_credentials_optional_when_not_required(self):
        TraderConfig().validate(require_credentials=False)

    def test_invalid_log_level(self):
        with pytest.raises(ConfigurationError, match="log level"):
            valid_config(log_level="LOUD").validate()


class TestLoading:
    """Tests for file and environment loading."""

    def test_from_dict_sections(self):
        config = TraderConfig.from_dict({
            "strategy": {"entry_price_min": 0.55, "hold_to_resolution": True},
            "risk": {"max_positions": 3},
            "db_path": "/tmp/x.db",
        })

        assert config.strategy.entry_price_min == 0.55
        assert config.strategy.hold_to_resolution is True
        assert config.strategy.entry_price_max == 0.80
        assert config.risk.max_positions == 3
        assert config.db_path == "/tmp/x.db"

    def test_from_dict_rejects_unknown_section(self):
        with pytest.raises(ConfigurationError, match="Unknown config sections"):
            TraderConfig.from_dict({"strategies": {}})

    def test_from_dict_rejects_unknown_key(self):
        with pytest.raises(ConfigurationError, match="StrategyConfig"):
            TraderConfig.from_dict({"strategy": {"entry_price": 0.7}})

    def test_load_file(self, tmp_path):
        path = tmp_path / "bot.json"
        path.write_bytes(orjson.dumps({"bot": {"scan_interval_s": 15}}))

        config = TraderConfig.load_file(str(path))

        assert config.bot.scan_interval_s == 15

    def test_load_missing_file(self, tmp_path):
        with pytest.raises(ConfigurationError, match="not found"):
            TraderConfig.load_file(str(tmp_path / "missing.json"))

    def test_load_malformed_file(self, tmp_path):
        path = tmp_path / "bad.json"
        path.write_text("{not json")

        with pytest.raises(ConfigurationError, match="Failed to parse"):
            TraderConfig.load_file(str(path))

    def test_from_env(self):
        env = {
            "POLYMARKET_PRIVATE_KEY": "0x1234",
            "POLYMARKET_PROXY_ADDRESS": "0x5678",
            "POLYMARKET_SIGNATURE_TYPE": "2",
            "TRADER_DB_PATH": "/tmp/ledger.db",
            "TRADER_DRY_RUN": "false",
        }
        with patch.dict(os.environ, env, clear=True):
            config = TraderConfig.from_env()

        assert config.private_key == "0x1234"
        assert config.proxy_address == "0x5678"
        assert config.signature_type == 2
        assert config.db_path == "/tmp/ledger.db"
        assert config.dry_run is False

    def test_from_env_reads_config_path(self, tmp_path):
        path = tmp_path / "bot.json"
        path.write_bytes(orjson.dumps({"risk": {"max_exposure_usd": 80}}))

        with patch.dict(os.environ, {"TRADER_CONFIG": str(path)}, clear=True):
            config = TraderConfig.from_env()

        assert config.risk.max_exposure_usd == 80

    def test_from_env_bad_integer(self):
        with patch.dict(os.environ, {"POLYMARKET_CHAIN_ID": "polygon"}, clear=True):
            with pytest.raises(ConfigurationError, match="Invalid integer"):
                TraderConfig.from_env()
