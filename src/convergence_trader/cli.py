"""
Command-line entry point.

Usage:
    python -m convergence_trader                 # dry run (default)
    python -m convergence_trader --live          # real orders
    python -m convergence_trader --config bot.json --log-level DEBUG

Credentials come from the environment (a .env file is loaded first):
    POLYMARKET_PRIVATE_KEY, POLYMARKET_PROXY_ADDRESS and optionally
    POLYMARKET_API_KEY / POLYMARKET_API_SECRET / POLYMARKET_API_PASSPHRASE
"""

import argparse
import asyncio
import logging
import sys
import time
from typing import Optional

from dotenv import load_dotenv

from .bot import TradingBot
from .config import TraderConfig
from .errors import ConfigurationError
from .util import setup_logging

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Late-stage convergence trading bot for Polymarket")
    parser.add_argument(
        "--live",
        action="store_true",
        help="Place real orders (default is dry run)",
    )
    parser.add_argument(
        "--config",
        default=None,
        help="JSON config file (default: $TRADER_CONFIG)",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        help="Override log level (DEBUG, INFO, WARNING, ERROR)",
    )
    return parser


def load_config(args: argparse.Namespace) -> TraderConfig:
    """Build and validate configuration from the environment and flags."""
    config = TraderConfig.from_env(args.config)
    config.dry_run = not args.live
    if args.log_level:
        config.log_level = args.log_level
    config.validate(require_credentials=True)
    return config


def main(argv: Optional[list[str]] = None) -> int:
    """Entry point for the bot."""
    load_dotenv()
    args = build_parser().parse_args(argv)

    try:
        config = load_config(args)
    except ConfigurationError as e:
        setup_logging("convergence_trader", level="INFO")
        logger.error(f"Configuration error: {e}")
        return 1

    setup_logging("convergence_trader", level=config.log_level)

    if config.dry_run:
        logger.info("Running in DRY RUN mode; no real orders will be placed")
    else:
        logger.warning("=" * 60)
        logger.warning("LIVE TRADING MODE - real money at risk")
        logger.warning(f"Starting in {config.bot.live_start_delay_s:.0f}s, Ctrl+C to abort")
        logger.warning("=" * 60)
        try:
            time.sleep(config.bot.live_start_delay_s)
        except KeyboardInterrupt:
            logger.info("Aborted before start")
            return 0

    bot = TradingBot.from_config(config)
    try:
        asyncio.run(bot.run())
    except KeyboardInterrupt:
        logger.info("Interrupted")
    except Exception as e:
        logger.error(f"Bot exited with error: {e}")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
