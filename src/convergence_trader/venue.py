"""
Execution venue abstraction and the Polymarket CLOB implementation.

ClobVenue wraps the official py-clob-client library. The library is
synchronous, so every call runs in a small thread pool and is awaited
from the event loop.

Read methods raise VenueError on failure so callers can tell "the venue
says there is nothing" from "the venue could not be asked".
submit_market_order returns an ack for venue-side rejections and raises
VenueError only when the call itself fails.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Optional

from .errors import VenueError
from .types import Direction, OpenOrderRef
from .util import parse_iso_datetime, safe_float, wall_ms

logger = logging.getLogger(__name__)

# Thread pool for running sync py-clob-client calls
_executor = ThreadPoolExecutor(max_workers=4)

USDC_DECIMALS = 1_000_000


@dataclass
class VenueOrderAck:
    """Acknowledgment from a market order submission."""
    success: bool
    order_id: str = ""
    status: str = ""
    error_msg: str = ""


@dataclass
class VenueCancelAllAck:
    """Acknowledgment from cancel-all."""
    success: bool
    cancelled_count: int = 0
    error_msg: str = ""


@dataclass(slots=True)
class VenueTrade:
    """One trade from the account's venue history."""
    trade_id: str
    market_id: str
    token_id: str
    outcome: str
    direction: Direction
    size: float
    price: float
    status: str
    match_time_ms: int = 0


class ExecutionVenue(ABC):
    """Where orders go and where account truth comes from."""

    @abstractmethod
    async def submit_market_order(
        self,
        token_id: str,
        direction: Direction,
        amount: float,
    ) -> VenueOrderAck:
        """
        Submit a fill-or-kill market order.

        Args:
            token_id: Outcome token to trade
            direction: BUY or SELL
            amount: USD notional for BUY, shares for SELL

        Raises:
            VenueError: the submission could not be completed
        """

    @abstractmethod
    async def get_open_orders(self) -> list[OpenOrderRef]:
        """All resting orders for the account."""

    @abstractmethod
    async def get_balance(self) -> float:
        """Collateral balance in USD as reported by the venue."""

    @abstractmethod
    async def cancel_all(self) -> VenueCancelAllAck:
        """Cancel every resting order."""

    @abstractmethod
    async def get_trades(self, after_ms: int) -> list[VenueTrade]:
        """Account trade history since after_ms (wall clock)."""

    @abstractmethod
    async def get_last_trade_price(self, token_id: str) -> Optional[float]:
        """Last traded price for a token, or None if unknown."""

    async def close(self) -> None:
        """Release resources."""


class ClobVenue(ExecutionVenue):
    """
    Polymarket CLOB venue using py-clob-client.

    Required credentials:
        - private_key: Wallet private key for signing (0x...)
        - funder: Proxy wallet address holding the collateral
        - api_key, api_secret, passphrase: L2 API credentials
          (derived from the private key if not provided)
    """

    def __init__(
        self,
        private_key: str,
        funder: str = "",
        signature_type: int = 1,
        api_key: str = "",
        api_secret: str = "",
        passphrase: str = "",
        chain_id: int = 137,
        host: str = "https://clob.polymarket.com",
    ):
        self._private_key = private_key
        self._funder = funder
        self._signature_type = signature_type
        self._api_key = api_key
        self._api_secret = api_secret
        self._passphrase = passphrase
        self._chain_id = chain_id
        self._host = host

        self._client = None
        self._initialized = False

        # Health tracking
        self._consecutive_errors: int = 0

        # Rate limiting
        self._last_request_ms: int = 0
        self._min_request_interval_ms: int = 50

    def _init_client(self) -> None:
        """Initialize the py-clob-client (sync, call from thread pool)."""
        if self._initialized and self._client is not None:
            return

        from py_clob_client.client import ClobClient
        from py_clob_client.clob_types import ApiCreds

        private_key = self._private_key
        if private_key and not private_key.startswith("0x"):
            private_key = "0x" + private_key

        # funder must be passed even if empty string, not None
        client = ClobClient(
            host=self._host,
            chain_id=self._chain_id,
            key=private_key,
            funder=self._funder,
            signature_type=self._signature_type,
        )

        if self._api_key and self._api_secret and self._passphrase:
            client.set_api_creds(ApiCreds(
                api_key=self._api_key,
                api_secret=self._api_secret,
                api_passphrase=self._passphrase,
            ))
            logger.info("CLOB client initialized with provided API credentials")
        else:
            creds = client.create_or_derive_api_creds()
            client.set_api_creds(creds)
            self._api_key = creds.api_key
            self._api_secret = creds.api_secret
            self._passphrase = creds.api_passphrase
            logger.info("CLOB client initialized with derived API credentials")

        self._client = client
        self._initialized = True

    async def initialize(self) -> None:
        """Initialize the client and verify connectivity."""
        await self._run(self._init_client)
        await self._run(lambda: self._client.get_ok())
        logger.info("Connected to Polymarket CLOB")

    async def _run(self, fn, *args):
        """Run a sync client call in the thread pool, translating failures."""
        loop = asyncio.get_event_loop()
        try:
            result = await loop.run_in_executor(_executor, fn, *args)
        except VenueError:
            raise
        except Exception as e:
            self._consecutive_errors += 1
            raise VenueError(f"{type(e).__name__}: {e}") from e
        self._consecutive_errors = 0
        return result

    async def _throttle(self) -> None:
        now = wall_ms()
        elapsed = now - self._last_request_ms
        if elapsed < self._min_request_interval_ms:
            await asyncio.sleep((self._min_request_interval_ms - elapsed) / 1000)
        self._last_request_ms = wall_ms()

    def _submit_sync(self, token_id: str, direction: Direction, amount: float) -> VenueOrderAck:
        self._init_client()

        from py_clob_client.clob_types import MarketOrderArgs, OrderType
        from py_clob_client.order_builder.constants import BUY, SELL

        order_args = MarketOrderArgs(
            token_id=token_id,
            amount=float(amount),
            side=BUY if direction is Direction.BUY else SELL,
        )
        signed_order = self._client.create_market_order(order_args)
        response = self._client.post_order(signed_order, OrderType.FOK)

        if not response:
            return VenueOrderAck(success=False, error_msg="Empty response from API")

        if isinstance(response, dict):
            order_id = response.get("orderID", response.get("id", "")) or ""
            error_msg = response.get("errorMsg", "") or ""
            success = bool(response.get("success", bool(order_id))) and not error_msg
            return VenueOrderAck(
                success=success and bool(order_id),
                order_id=order_id,
                status=response.get("status", "") or "",
                error_msg=error_msg or ("" if order_id else "No order id in response"),
            )

        return VenueOrderAck(success=True, order_id=str(response))

    async def submit_market_order(
        self,
        token_id: str,
        direction: Direction,
        amount: float,
    ) -> VenueOrderAck:
        await self._throttle()
        ack = await self._run(self._submit_sync, token_id, direction, amount)
        if not ack.success:
            self._consecutive_errors += 1
        return ack

    def _get_open_orders_sync(self) -> list:
        self._init_client()
        from py_clob_client.clob_types import OpenOrderParams
        return self._client.get_orders(OpenOrderParams()) or []

    async def get_open_orders(self) -> list[OpenOrderRef]:
        raw = await self._run(self._get_open_orders_sync)
        return [parse_open_order(o) for o in raw]

    def _get_balance_sync(self) -> dict:
        self._init_client()
        from py_clob_client.clob_types import AssetType, BalanceAllowanceParams
        return self._client.get_balance_allowance(
            BalanceAllowanceParams(
                asset_type=AssetType.COLLATERAL,
                signature_type=self._signature_type,
            )
        ) or {}

    async def get_balance(self) -> float:
        raw = await self._run(self._get_balance_sync)
        return safe_float(raw.get("balance")) / USDC_DECIMALS

    def _cancel_all_sync(self) -> VenueCancelAllAck:
        self._init_client()
        response = self._client.cancel_all()

        if not response:
            # Empty response means nothing to cancel
            return VenueCancelAllAck(success=True)

        canceled = response.get("canceled", []) if isinstance(response, dict) else []
        not_canceled = response.get("not_canceled", {}) if isinstance(response, dict) else {}
        cancelled_count = len(canceled) if isinstance(canceled, list) else 0

        if not_canceled:
            return VenueCancelAllAck(
                success=False,
                cancelled_count=cancelled_count,
                error_msg=f"Failed to cancel {len(not_canceled)} orders",
            )
        return VenueCancelAllAck(success=True, cancelled_count=cancelled_count)

    async def cancel_all(self) -> VenueCancelAllAck:
        await self._throttle()
        return await self._run(self._cancel_all_sync)

    def _get_trades_sync(self, after_ms: int) -> list:
        self._init_client()
        from py_clob_client.clob_types import TradeParams
        return self._client.get_trades(TradeParams(after=after_ms // 1000)) or []

    async def get_trades(self, after_ms: int) -> list[VenueTrade]:
        raw = await self._run(self._get_trades_sync, after_ms)
        return [parse_trade(t) for t in raw]

    def _last_price_sync(self, token_id: str):
        self._init_client()
        return self._client.get_last_trade_price(token_id)

    async def get_last_trade_price(self, token_id: str) -> Optional[float]:
        raw = await self._run(self._last_price_sync, token_id)
        if isinstance(raw, dict):
            price = raw.get("price")
            return safe_float(price) if price not in (None, "") else None
        return None

    @property
    def is_healthy(self) -> bool:
        """Whether the client appears healthy based on recent errors."""
        return self._consecutive_errors < 5


def parse_open_order(raw: dict) -> OpenOrderRef:
    """Normalize an open order dict from the CLOB API."""
    side = str(raw.get("side", "BUY")).upper()
    return OpenOrderRef(
        order_id=raw.get("id", ""),
        market_id=raw.get("market", ""),
        token_id=raw.get("asset_id", ""),
        direction=Direction.SELL if side == "SELL" else Direction.BUY,
        price=safe_float(raw.get("price")),
        original_size=safe_float(raw.get("original_size")),
        size_matched=safe_float(raw.get("size_matched")),
        outcome=raw.get("outcome"),
    )


def parse_trade(raw: dict) -> VenueTrade:
    """Normalize a trade dict from the CLOB API."""
    side = str(raw.get("side", "BUY")).upper()
    match_time = raw.get("match_time")
    match_time_ms = 0
    if match_time:
        if str(match_time).isdigit():
            match_time_ms = int(match_time) * 1000
        else:
            parsed = parse_iso_datetime(str(match_time))
            match_time_ms = int(parsed.timestamp() * 1000) if parsed else 0
    return VenueTrade(
        trade_id=raw.get("id", ""),
        market_id=raw.get("market", ""),
        token_id=raw.get("asset_id", ""),
        outcome=raw.get("outcome", "") or "",
        direction=Direction.SELL if side == "SELL" else Direction.BUY,
        size=safe_float(raw.get("size")),
        price=safe_float(raw.get("price")),
        status=str(raw.get("status", "")).upper(),
        match_time_ms=match_time_ms,
    )
